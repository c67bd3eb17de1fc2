"""Interactive input gathering for the deploy command."""

from dataclasses import asdict, fields

from rich import print
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .config import STORE_KEYS, default_app_dir, defaults
from .types import SSL_MODES, DeploymentConfig, PartialConfig

QUESTIONS = {
    "domain": "Domain name (e.g. school.example.com)",
    "email": "Email for Let's Encrypt notices",
    "registry_username": "Docker registry username (blank to skip login)",
    "app_dir": "Application directory",
}
# Answer that drops a saved registry username; Enter keeps the saved one
NO_REGISTRY = "-"

SSL_MODE_HELP = {
    "letsencrypt": "HTTPS with a Let's Encrypt certificate issued on this host",
    "cloudflare-origin": "HTTPS with a Cloudflare origin certificate (Full strict)",
    "http-only": "Plain HTTP, e.g. behind Cloudflare Flexible",
}


def ask_required(name: str) -> str | None:
    """Prompt for a required field until a non-empty answer is given."""
    return Prompt.ask(f"[bold]{QUESTIONS.get(name, name)}[/bold]").strip() or None


def ask_registry_password(username: str) -> str:
    return Prompt.ask(f"Registry password for '{username}'", password=True)


def gather(existing: DeploymentConfig | None, supplied: PartialConfig) -> PartialConfig:
    """Ask for every field not supplied on the command line.

    Answers default to the persisted value (or the documented default), so
    pressing Enter keeps the current setting.

    :param existing: Previously persisted config, or None on first run
    :param supplied: Values already given as flags; these are not asked again
    """
    current = {**defaults(), "app_dir": default_app_dir(), **(asdict(existing) if existing else {})}
    answers = {f.name: getattr(supplied, f.name) for f in fields(PartialConfig)}

    if answers["domain"] is None:
        answers["domain"] = Prompt.ask(QUESTIONS["domain"], default=current.get("domain")) or None

    if answers["app_dir"] is None:
        answers["app_dir"] = (
            Prompt.ask(QUESTIONS["app_dir"], default=current["app_dir"]).strip() or None
        )

    if answers["ssl_mode"] is None:
        print("\n[bold]SSL mode[/bold]")
        for mode in SSL_MODES:
            print(f"  [cyan]{mode}[/cyan]: {SSL_MODE_HELP[mode]}")
        answers["ssl_mode"] = Prompt.ask(
            "Choose", choices=list(SSL_MODES), default=current["ssl_mode"]
        )

    if answers["ssl_mode"] == "letsencrypt" and answers["email"] is None:
        answers["email"] = Prompt.ask(QUESTIONS["email"], default=current.get("email")) or None

    if answers["registry_username"] is None:
        saved = current.get("registry_username")
        if saved:
            username = Prompt.ask(
                f"Docker registry username ('{NO_REGISTRY}' to stop logging in)",
                default=saved,
            ).strip()
            # An empty string overrides the saved username in merge
            answers["registry_username"] = "" if username == NO_REGISTRY else username or saved
        else:
            username = Prompt.ask(QUESTIONS["registry_username"], default="")
            answers["registry_username"] = username.strip() or None

    if answers["firewall_enabled"] is None:
        answers["firewall_enabled"] = Confirm.ask(
            "Configure the ufw firewall (22, 80, 443)?", default=current["firewall_enabled"]
        )
    if answers["create_deployer_user"] is None:
        answers["create_deployer_user"] = Confirm.ask(
            "Create the 'deployer' user?", default=current["create_deployer_user"]
        )
    return PartialConfig(**answers)


def summary_table(config: DeploymentConfig) -> Table:
    table = Table(title="Deployment configuration", show_header=False)
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, key in STORE_KEYS.items():
        value = getattr(config, name)
        if isinstance(value, bool):
            value = "yes" if value else "no"
        table.add_row(key, str(value) if value is not None else "[dim]-[/dim]")
    return table


def confirm_deploy(config: DeploymentConfig) -> bool:
    print(summary_table(config))
    return Confirm.ask("Proceed with deployment?", default=True)

