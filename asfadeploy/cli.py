#!/usr/bin/env python3
"""Deploy the ASFA Django stack (Caddy + Django + Redis) to this host.

Run on the target Ubuntu/Debian server with sudo. The first deploy asks for
the domain and SSL mode and saves them to <app_dir>/.deployment_config;
later deploys reuse them and only redo what is out of date.

Usage: sudo asfa-deploy <command> [options]

Examples:
    sudo asfa-deploy deploy
    sudo asfa-deploy deploy --domain school.com --ssl-mode letsencrypt --email a@b.com --yes
    sudo asfa-deploy status
    sudo asfa-deploy logs web
    sudo asfa-deploy backup
    sudo asfa-deploy coolify restart --stop-only
"""

import os
import sys
from contextlib import contextmanager
from typing import Annotated

import cyclopts
from rich import print
from rich.table import Table

from . import ops, prompts
from .config import config_path, default_app_dir, load, merge
from .deploy import check_host, run_deployment
from .errors import DeployError, NotFound
from .layout import Layout
from .pipeline import PipelineReport
from .redact import register_secret
from .runner import CommandRunner
from .steps import registry_logged_in
from .types import DeploymentConfig, PartialConfig, SSLMode
from .utils import error, log, setup_logging, warn

app = cyclopts.App(
    name="asfa-deploy", help="Deploy and operate the ASFA Docker stack", sort_key=None
)
coolify_app = cyclopts.App(
    name="coolify", help="Stop or restart Coolify containers sharing this host", sort_key=20
)
app.command(coolify_app)

STATE_STYLES = {
    "succeeded": "green",
    "skipped": "dim",
    "failed": "red",
    "pending": "yellow",
    "running": "yellow",
}


@contextmanager
def exit_on_error():
    """Turn a DeployError into a logged error and its exit code."""
    try:
        yield
    except DeployError as e:
        error(str(e), code=e.exit_code)


def _load(app_dir: str | None) -> DeploymentConfig:
    path = config_path(app_dir or default_app_dir())
    try:
        return load(path)
    except NotFound as e:
        raise NotFound(f"{e}; run 'asfa-deploy deploy' first") from e


def print_report(report: PipelineReport) -> None:
    table = Table(title=f"Deployment {report.state}")
    table.add_column("#", justify="right")
    table.add_column("Step", style="cyan")
    table.add_column("State")
    table.add_column("Detail", overflow="fold")
    for r in report.results:
        style = STATE_STYLES.get(r.state, "")
        table.add_row(str(r.ordinal), r.name, f"[{style}]{r.state}[/{style}]", r.detail)
    print(table)


@app.command(name="deploy", sort_key=1)
def deploy(
    *,
    domain: str | None = None,
    ssl_mode: SSLMode | None = None,
    email: str | None = None,
    registry_username: str | None = None,
    firewall: bool | None = None,
    deployer_user: bool | None = None,
    image: str | None = None,
    repo_url: str | None = None,
    repo_branch: str | None = None,
    app_dir: str | None = None,
    non_interactive: bool = False,
    yes: bool = False,
):
    """Provision this host and start the stack, or bring an existing deployment up to date.

    Settings not given as options come from the saved configuration, then
    from prompts (interactive) or defaults.

    :param domain: Domain name served by the stack (www.<domain> is added)
    :param ssl_mode: letsencrypt, cloudflare-origin or http-only (default: letsencrypt)
    :param email: Email for Let's Encrypt (required for letsencrypt)
    :param registry_username: Docker registry user; the password is read from ASFA_REGISTRY_PASSWORD
    :param firewall: Configure ufw to allow 22, 80 and 443 (default: yes)
    :param deployer_user: Create the 'deployer' user (default: yes)
    :param image: Application image (default: acerschoolapp/acerschoolfinanceapp:latest)
    :param repo_url: Git repository checked out into the app directory
    :param repo_branch: Branch to deploy (default: main)
    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    :param non_interactive: Never prompt; fail if a required setting is missing
    :param yes: Skip the confirmation prompt
    """
    with exit_on_error():
        distro = check_host()
        log(f"Host: {distro}")
        if os.geteuid() != 0:
            error("deploy must run as root (use sudo)")

        resolved_dir = app_dir or default_app_dir()
        try:
            existing = load(config_path(resolved_dir))
            log(f"Loaded existing configuration for '{existing.domain}'")
        except NotFound:
            existing = None
            log("No saved configuration, this is a first deployment")

        supplied = PartialConfig(
            domain=domain,
            app_dir=app_dir,
            ssl_mode=ssl_mode,
            registry_username=registry_username,
            email=email,
            firewall_enabled=firewall,
            create_deployer_user=deployer_user,
            image=image,
            repo_url=repo_url,
            repo_branch=repo_branch,
        )
        interactive = not non_interactive and sys.stdin.isatty()
        if interactive:
            supplied = prompts.gather(existing, supplied)
        config = merge(existing, supplied, ask=prompts.ask_required if interactive else None)

        if interactive and not yes and not prompts.confirm_deploy(config):
            log("Cancelled")
            return

        layout = Layout.for_config(config)
        secrets = {}
        if config.registry_username and not registry_logged_in(layout, config.image):
            password = os.environ.get("ASFA_REGISTRY_PASSWORD")
            if not password and interactive:
                password = prompts.ask_registry_password(config.registry_username)
            if password:
                register_secret(password)
                secrets["registry_password"] = password

        print("=" * 50)
        report = run_deployment(config, CommandRunner(), secrets=secrets, layout=layout)
        print("=" * 50)
        print_report(report)

        if report.state != "completed":
            failed = report.aborted_at
            error(f"Deployment aborted at '{failed.name}': {failed.detail}")
        for r in report.failed:
            warn(f"'{r.name}' failed but was not required: {r.detail}")
        scheme = "https" if config.uses_tls else "http"
        log(f"Done! {scheme}://{config.domain}")


@app.command(name="status", sort_key=2)
def status_command(*, app_dir: str | None = None):
    """Show containers, the systemd unit and the health endpoint.

    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        result = ops.status(_load(app_dir), CommandRunner())
    if not result.healthy:
        sys.exit(1)


@app.command(name="logs", sort_key=3)
def logs_command(service: str | None = None, *, app_dir: str | None = None):
    """Follow container logs.

    :param service: caddy, web or redis (default: all)
    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        sys.exit(ops.logs(_load(app_dir), CommandRunner(), service))


@app.command(name="start", sort_key=4)
def start_command(*, app_dir: str | None = None):
    """Pull the latest images and start the stack.

    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        ops.start(_load(app_dir), CommandRunner())


@app.command(name="stop", sort_key=5)
def stop_command(*, app_dir: str | None = None):
    """Stop and remove the stack's containers.

    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        ops.stop(_load(app_dir), CommandRunner())


@app.command(name="reconfigure", sort_key=6)
def reconfigure_command(*, restart: bool = True, app_dir: str | None = None):
    """Edit the application environment file in $EDITOR.

    :param restart: Restart the stack after editing
    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        ops.reconfigure(
            _load(app_dir),
            CommandRunner(),
            restart=restart,
            editor=os.environ.get("EDITOR", "nano"),
        )


@app.command(name="backup", sort_key=7)
def backup_command(*, app_dir: str | None = None):
    """Export application data and upload it to the R2 bucket.

    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        result = ops.backup(_load(app_dir), CommandRunner())
    if not result.uploaded:
        error(f"{result.detail}; local copy kept at '{result.path}'")
    log(f"Backup uploaded to {result.detail}")


@app.command(name="shell", sort_key=8)
def shell_command(service: str = "web", *, app_dir: str | None = None):
    """Open a shell inside a running container.

    :param service: Container to enter (default: web)
    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        command = "sh" if service == "redis" else "bash"
        sys.exit(ops.shell(_load(app_dir), CommandRunner(), service, command))


@app.command(name="reload-proxy", sort_key=9)
def reload_proxy_command(*, app_dir: str | None = None):
    """Reload the Caddyfile without restarting the proxy.

    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        ops.reload_proxy(_load(app_dir), CommandRunner())


@app.command(name="show-config", sort_key=10)
def show_config(*, app_dir: str | None = None):
    """Print the saved deployment configuration.

    :param app_dir: Application directory (default: $ASFA_APP_DIR or /opt/apps/asfa)
    """
    with exit_on_error():
        print(prompts.summary_table(_load(app_dir)))


@coolify_app.command(name="stop")
def coolify_stop_command():
    """Stop all running Coolify-managed containers."""
    with exit_on_error():
        ops.coolify_stop(CommandRunner())


@coolify_app.command(name="restart")
def coolify_restart_command(*, stop_only: bool = False):
    """Restart all Coolify containers, running or stopped.

    :param stop_only: Stop the containers without starting them again
    """
    with exit_on_error():
        ops.coolify_restart(CommandRunner(), stop_only=stop_only)


@app.meta.default
def launcher(
    *tokens: Annotated[str, cyclopts.Parameter(show=False, allow_leading_hyphen=True)],
    log_level: str = "INFO",
):
    """
    :param log_level: DEBUG, INFO, WARNING or ERROR
    """
    setup_logging(log_level)
    return app(tokens)


def main():
    app.meta()


if __name__ == "__main__":
    main()
