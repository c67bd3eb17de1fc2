"""Provisioning steps for a fresh or previously deployed host.

Every step pairs a precondition (returns why the step can be skipped, or
None) with an action. Actions only touch the host through the context's
command runner and the artifact renderer.
"""

import getpass
import io
import json
import os
import secrets
import shutil
from pathlib import Path

from dotenv import dotenv_values

from . import render
from .errors import DeployError, IncompleteConfig, PersistenceError
from .layout import Layout
from .pipeline import PipelineContext, ProvisioningStep
from .stack import SERVICES, image_update_available, running_services, start_stack
from .types import ArtifactKind, DeploymentConfig
from .utils import log, warn, write_file_atomic

BASE_PACKAGES = ("curl", "wget", "git", "ufw", "nano", "lsof")
NGINX_PACKAGES = ("nginx", "nginx-common", "nginx-core", "nginx-full")
DEPLOYER_USER = "deployer"
FIREWALL_RULES = ("22/tcp", "80/tcp", "443/tcp")
DOCKER_HUB = "https://index.docker.io/v1/"
DOCKER_INSTALL_URL = "https://get.docker.com"

APT_TIMEOUT = 1800
DOCKER_INSTALL_TIMEOUT = 900
GIT_TIMEOUT = 600
CERTBOT_TIMEOUT = 600

# Env file keys that follow the SSL mode
MODE_ENV_KEYS = ("CSRF_ORIGINS", "SECURE_SSL_REDIRECT", "SITE_URL")


# ---------------------------------------------------------------------------
# Host helpers
# ---------------------------------------------------------------------------


def apt(ctx: PipelineContext, *args: str) -> None:
    ctx.runner.run(
        "env", "DEBIAN_FRONTEND=noninteractive", "apt-get", *args,
        sudo=True,
        timeout=APT_TIMEOUT,
    )


def package_installed(ctx: PipelineContext, name: str) -> bool:
    result = ctx.runner.run("dpkg-query", "-W", "-f=${Status}", name, check=False)
    return result.ok and "install ok installed" in result.stdout


def command_ok(ctx: PipelineContext, *args: str, sudo: bool = False) -> bool:
    return ctx.runner.run(*args, check=False, sudo=sudo).ok


def invoking_user() -> str:
    """The operator behind sudo, or the current user."""
    return os.environ.get("SUDO_USER") or getpass.getuser()


def registry_host(image: str) -> str:
    """Registry key used in docker's config.json for an image reference."""
    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return DOCKER_HUB


# ---------------------------------------------------------------------------
# 1. system-packages
# ---------------------------------------------------------------------------


def _packages_ready(ctx: PipelineContext) -> str | None:
    missing = [p for p in BASE_PACKAGES if not package_installed(ctx, p)]
    if missing:
        return None
    return "base packages installed"


def _install_packages(ctx: PipelineContext) -> None:
    log("Updating system packages...")
    apt(ctx, "update")
    apt(ctx, "upgrade", "-y")
    apt(ctx, "install", "-y", *BASE_PACKAGES)


# ---------------------------------------------------------------------------
# 2. remove-host-nginx
# ---------------------------------------------------------------------------


def _nginx_absent(ctx: PipelineContext) -> str | None:
    if command_ok(ctx, "systemctl", "is-active", "--quiet", "nginx"):
        return None
    if any(package_installed(ctx, p) for p in NGINX_PACKAGES):
        return None
    return "no host nginx"


def _port_holders(ctx: PipelineContext, port: int) -> list[str]:
    result = ctx.runner.run("lsof", "-t", f"-itcp:{port}", "-sTCP:LISTEN", check=False, sudo=True)
    pids = []
    for pid in result.stdout.split():
        comm = ctx.runner.run("ps", "-o", "comm=", "-p", pid, check=False).stdout.strip()
        # Ports published by running containers belong to docker
        if comm != "docker-proxy":
            pids.append(pid)
    return pids


def _remove_nginx(ctx: PipelineContext) -> None:
    log("Removing host nginx so the proxy container can bind 80/443...")
    ctx.runner.run("systemctl", "stop", "nginx", check=False, sudo=True)
    ctx.runner.run("systemctl", "disable", "nginx", check=False, sudo=True)
    installed = [p for p in NGINX_PACKAGES if package_installed(ctx, p)]
    if installed:
        apt(ctx, "purge", "-y", *installed)
        apt(ctx, "autoremove", "-y")
    for port in (80, 443):
        pids = _port_holders(ctx, port)
        if pids:
            warn(f"Port {port} still in use by PID {', '.join(pids)}, killing")
            ctx.runner.run("kill", "-9", *pids, check=False, sudo=True)


# ---------------------------------------------------------------------------
# 3. container-runtime
# ---------------------------------------------------------------------------


def _docker_ready(ctx: PipelineContext) -> str | None:
    version = ctx.runner.run("docker", "--version", check=False)
    if not version.ok or not command_ok(ctx, "docker", "compose", "version"):
        return None
    return version.stdout.strip() or "docker installed"


def _install_docker(ctx: PipelineContext) -> None:
    log("Installing Docker...")
    if not command_ok(ctx, "docker", "--version"):
        ctx.runner.run(
            "sh", "-c", f"curl -fsSL {DOCKER_INSTALL_URL} | sh",
            sudo=True,
            timeout=DOCKER_INSTALL_TIMEOUT,
        )
    if not command_ok(ctx, "docker", "compose", "version"):
        apt(ctx, "install", "-y", "docker-compose-plugin")
    ctx.runner.run("systemctl", "enable", "--now", "docker", sudo=True)
    user = invoking_user()
    if user != "root":
        ctx.runner.run("usermod", "-aG", "docker", user, sudo=True)
        log(f"Added '{user}' to the docker group (log out and back in to use it)")


# ---------------------------------------------------------------------------
# 4. deployer-user
# ---------------------------------------------------------------------------


def _deployer_exists(ctx: PipelineContext) -> str | None:
    if command_ok(ctx, "id", DEPLOYER_USER):
        return f"user '{DEPLOYER_USER}' exists"
    return None


def _create_deployer(ctx: PipelineContext) -> None:
    ctx.runner.run("useradd", "-m", "-s", "/bin/bash", DEPLOYER_USER, sudo=True)
    ctx.runner.run("usermod", "-aG", "docker", DEPLOYER_USER, sudo=True)
    log(f"Created user '{DEPLOYER_USER}'")


# ---------------------------------------------------------------------------
# 5. repository
# ---------------------------------------------------------------------------


def _git(ctx: PipelineContext, *args: str, check: bool = True, timeout: int = 60):
    return ctx.runner.run(
        "git", "-C", str(ctx.layout.app_dir), *args, check=check, timeout=timeout
    )


def _repo_current(ctx: PipelineContext) -> str | None:
    branch = ctx.config.repo_branch
    if not (ctx.layout.app_dir / ".git").is_dir():
        return None
    if not _git(ctx, "fetch", "origin", branch, check=False, timeout=GIT_TIMEOUT).ok:
        return None
    head = _git(ctx, "rev-parse", "HEAD", check=False)
    remote = _git(ctx, "rev-parse", f"origin/{branch}", check=False)
    if head.ok and remote.ok and head.stdout.strip() == remote.stdout.strip():
        return f"at origin/{branch} ({head.stdout.strip()[:7]})"
    return None


def _sync_repo(ctx: PipelineContext) -> None:
    config = ctx.config
    app_dir = ctx.layout.app_dir
    try:
        app_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PersistenceError(f"Cannot create '{app_dir}': {e}") from e

    # The directory already holds the config store and lock, so init in place
    # rather than clone
    if not (app_dir / ".git").is_dir():
        _git(ctx, "init", "-q")
    if _git(ctx, "remote", "get-url", "origin", check=False).ok:
        _git(ctx, "remote", "set-url", "origin", config.repo_url)
    else:
        _git(ctx, "remote", "add", "origin", config.repo_url)
    log(f"Fetching {config.repo_url} ({config.repo_branch})...")
    _git(ctx, "fetch", "origin", config.repo_branch, timeout=GIT_TIMEOUT)
    _git(ctx, "checkout", "-q", "-f", "-B", config.repo_branch, f"origin/{config.repo_branch}")


# ---------------------------------------------------------------------------
# 6. registry-login
# ---------------------------------------------------------------------------


def registry_logged_in(layout: Layout, image: str) -> bool:
    """True if docker's client config already holds auth for the image's registry."""
    try:
        data = json.loads(layout.docker_config_file.read_text())
    except (OSError, ValueError):
        return False
    return registry_host(image) in data.get("auths", {})


def _registry_logged_in(ctx: PipelineContext) -> str | None:
    if registry_logged_in(ctx.layout, ctx.config.image):
        return f"credentials for '{registry_host(ctx.config.image)}' present"
    return None


def _registry_login(ctx: PipelineContext) -> None:
    password = ctx.secrets.get("registry_password")
    if not password:
        raise IncompleteConfig(
            ["registry_password"],
            "Registry password required: set ASFA_REGISTRY_PASSWORD or run interactively",
        )
    registry = registry_host(ctx.config.image)
    args = ["docker", "login", "-u", ctx.config.registry_username, "--password-stdin"]
    if registry != DOCKER_HUB:
        args.append(registry)
    ctx.runner.run(*args, input=password, timeout=120)
    log(f"Logged in to '{registry}' as '{ctx.config.registry_username}'")


# ---------------------------------------------------------------------------
# 7. tls-certificate
# ---------------------------------------------------------------------------


def _certificate_present(ctx: PipelineContext) -> str | None:
    mode = ctx.config.ssl_mode
    layout = ctx.layout
    if mode == "http-only":
        return "plain HTTP, no certificate needed"
    if mode == "letsencrypt":
        # /etc/letsencrypt/live is root-only
        if command_ok(ctx, "test", "-f", str(layout.live_cert), sudo=True):
            return f"certificate for '{ctx.config.domain}' present"
        return None
    if layout.origin_cert.is_file() and layout.origin_key.is_file():
        return "origin certificate present"
    return None


def _obtain_certificate(ctx: PipelineContext) -> None:
    config = ctx.config
    layout = ctx.layout

    if config.ssl_mode == "cloudflare-origin":
        try:
            layout.certs_dir.mkdir(parents=True, exist_ok=True)
            layout.certs_dir.chmod(0o700)
        except OSError as e:
            raise PersistenceError(f"Cannot create '{layout.certs_dir}': {e}") from e
        raise IncompleteConfig(
            ["origin_certificate"],
            f"Create a Cloudflare origin certificate (SSL/TLS > Origin Server), save it as "
            f"'{layout.origin_cert}' and its private key as '{layout.origin_key}', "
            f"set Cloudflare SSL to 'Full (strict)', then re-run",
        )

    for host in (config.domain, f"www.{config.domain}"):
        if ctx.resolve_dns(host) is None:
            warn(f"'{host}' has no DNS A record yet; certbot will likely fail")

    if not package_installed(ctx, "certbot"):
        apt(ctx, "install", "-y", "certbot")

    unit = layout.unit_name
    log(f"Requesting Let's Encrypt certificate for '{config.domain}'...")
    ctx.runner.run(
        "certbot", "certonly", "--standalone", "--non-interactive", "--agree-tos",
        "--email", config.email,
        "-d", config.domain,
        "-d", f"www.{config.domain}",
        "--pre-hook", f"systemctl stop {unit} || true",
        "--post-hook", f"systemctl start {unit} || true",
        sudo=True,
        timeout=CERTBOT_TIMEOUT,
    )
    if not command_ok(ctx, "test", "-f", str(layout.live_cert), sudo=True):
        raise DeployError(f"certbot finished but '{layout.live_cert}' is missing")


# ---------------------------------------------------------------------------
# 8-11. artifacts
# ---------------------------------------------------------------------------


def _env_drift(ctx: PipelineContext) -> dict[str, str]:
    """Keys in the existing env file that disagree with the current SSL mode.

    Keys the operator removed are left alone.
    """
    rendered = render.build(ctx.config, "env-file", ctx.layout).content
    expected = dotenv_values(stream=io.StringIO(rendered))
    current = dotenv_values(ctx.layout.env_file)
    return {
        key: expected[key]
        for key in MODE_ENV_KEYS
        if key in current and current[key] != expected[key]
    }


def _env_file_present(ctx: PipelineContext) -> str | None:
    path = ctx.layout.env_file
    if not path.is_file():
        return None
    drift = _env_drift(ctx)
    if drift:
        log(f"'{path}' does not match SSL mode '{ctx.config.ssl_mode}': {', '.join(drift)}")
        return None
    return "exists, edit with 'asfa-deploy reconfigure'"


def _update_env_keys(path: Path, values: dict[str, str]) -> None:
    lines = path.read_text().splitlines(keepends=True)
    for i, line in enumerate(lines):
        key, sep, _ = line.partition("=")
        key = key.strip().removeprefix("export ").strip()
        if sep and key in values:
            lines[i] = f"{key}={values[key]}\n"

    backup = render.backup_path(path)
    try:
        shutil.copy2(path, backup)
    except OSError as e:
        raise PersistenceError(f"Cannot back up '{path}': {e}") from e
    write_file_atomic(path, "".join(lines), mode=0o600)
    log(f"Updated {', '.join(values)} in '{path}' (backup '{backup.name}')")


def _write_env_file(ctx: PipelineContext) -> None:
    path = ctx.layout.env_file
    if path.is_file():
        _update_env_keys(path, _env_drift(ctx))
        ctx.changed.add("env-file")
        return
    ctx.secrets.setdefault("SECRET_KEY", secrets.token_urlsafe(50))
    render.render(ctx.config, "env-file", ctx.layout, ctx.secrets)
    ctx.changed.add("env-file")
    warn(f"Fill in the __UNSET_*__ values in '{path}' (asfa-deploy reconfigure)")


def _artifact_current(kind: ArtifactKind):
    def check(ctx: PipelineContext) -> str | None:
        artifact = render.build(ctx.config, kind, ctx.layout, ctx.secrets)
        if render.is_current(artifact):
            return f"{Path(artifact.path).name} up to date"
        return None

    return check


def _write_artifact(kind: ArtifactKind):
    def action(ctx: PipelineContext) -> None:
        artifact = render.build(ctx.config, kind, ctx.layout, ctx.secrets)
        if not render.is_current(artifact):
            render.write(artifact)
            ctx.changed.add(kind)

    return action


def _unit_installed(ctx: PipelineContext) -> str | None:
    if _artifact_current("systemd-unit")(ctx) is None:
        return None
    if not command_ok(ctx, "systemctl", "is-enabled", "--quiet", ctx.layout.unit_name):
        return None
    return f"{ctx.layout.unit_name} installed and enabled"


def _install_unit(ctx: PipelineContext) -> None:
    _write_artifact("systemd-unit")(ctx)
    ctx.runner.run("systemctl", "daemon-reload", sudo=True)
    ctx.runner.run("systemctl", "enable", ctx.layout.unit_name, sudo=True)


# ---------------------------------------------------------------------------
# 12. firewall
# ---------------------------------------------------------------------------


def _firewall_ready(ctx: PipelineContext) -> str | None:
    status = ctx.runner.run("ufw", "status", check=False, sudo=True).stdout
    if "Status: active" not in status:
        return None
    if any(rule not in status for rule in FIREWALL_RULES):
        return None
    return "ufw active with 22, 80 and 443 open"


def _configure_firewall(ctx: PipelineContext) -> None:
    for rule in FIREWALL_RULES:
        ctx.runner.run("ufw", "allow", rule, sudo=True)
    ctx.runner.run("ufw", "--force", "enable", sudo=True)
    log("Firewall enabled")


# ---------------------------------------------------------------------------
# 13. start
# ---------------------------------------------------------------------------


def _stack_current(ctx: PipelineContext) -> str | None:
    if ctx.changed:
        return None
    missing = set(SERVICES) - running_services(ctx.runner, ctx.layout)
    if missing:
        return None
    if image_update_available(ctx.runner, ctx.config.image):
        log(f"Newer image available for '{ctx.config.image}'")
        return None
    return "stack running on the latest image"


def _start(ctx: PipelineContext) -> None:
    start_stack(
        ctx.runner, ctx.config, ctx.layout, reload_proxy="reverse-proxy" in ctx.changed
    )


def build_steps(config: DeploymentConfig) -> list[ProvisioningStep]:
    """The ordered steps for a config; optional steps are left out when not requested."""
    table = [
        ("system-packages", _packages_ready, _install_packages, "fatal", True),
        ("remove-host-nginx", _nginx_absent, _remove_nginx, "continuable", True),
        ("container-runtime", _docker_ready, _install_docker, "fatal", True),
        ("deployer-user", _deployer_exists, _create_deployer, "continuable", config.create_deployer_user),
        ("repository", _repo_current, _sync_repo, "fatal", True),
        ("registry-login", _registry_logged_in, _registry_login, "fatal", bool(config.registry_username)),
        ("tls-certificate", _certificate_present, _obtain_certificate, "fatal", True),
        ("env-file", _env_file_present, _write_env_file, "fatal", True),
        ("reverse-proxy", _artifact_current("reverse-proxy"), _write_artifact("reverse-proxy"), "fatal", True),
        ("compose", _artifact_current("compose"), _write_artifact("compose"), "fatal", True),
        ("service-unit", _unit_installed, _install_unit, "fatal", True),
        ("firewall", _firewall_ready, _configure_firewall, "continuable", config.firewall_enabled),
        ("start", _stack_current, _start, "fatal", True),
    ]
    return [
        ProvisioningStep(name, ordinal, precondition, action, severity)
        for ordinal, (name, precondition, action, severity, enabled) in enumerate(table, start=1)
        if enabled
    ]
