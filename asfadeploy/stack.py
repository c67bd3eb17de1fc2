"""Docker Compose operations on the deployed stack."""

from .layout import Layout
from .runner import CommandRunner
from .types import DeploymentConfig
from .utils import log, warn

SERVICES = ("caddy", "web", "redis")

PULL_TIMEOUT = 1800
UP_TIMEOUT = 900


def compose_cmd(layout: Layout, *args: str) -> tuple[str, ...]:
    return ("docker", "compose", "-f", str(layout.compose_file), *args)


def running_services(runner: CommandRunner, layout: Layout) -> set[str]:
    result = runner.run(
        *compose_cmd(layout, "ps", "--status", "running", "--services"),
        check=False,
        cwd=str(layout.app_dir),
    )
    if not result.ok:
        return set()
    return {line.strip() for line in result.stdout.splitlines() if line.strip()}


def local_image_digests(runner: CommandRunner, image: str) -> set[str]:
    """Repo digests ('repo@sha256:...') of the locally pulled image."""
    result = runner.run(
        "docker", "image", "inspect", "--format", "{{join .RepoDigests \",\"}}", image,
        check=False,
    )
    if not result.ok:
        return set()
    return {d.strip() for d in result.stdout.strip().split(",") if d.strip()}


def remote_image_digest(runner: CommandRunner, image: str) -> str | None:
    """Manifest digest of the image tag in its registry, or None if unknown."""
    result = runner.run(
        "docker", "buildx", "imagetools", "inspect", "--format", "{{.Manifest.Digest}}", image,
        check=False,
        timeout=120,
    )
    digest = result.stdout.strip()
    if not result.ok or not digest.startswith("sha256:"):
        return None
    return digest


def image_update_available(runner: CommandRunner, image: str) -> bool:
    remote = remote_image_digest(runner, image)
    if remote is None:
        return False
    local = local_image_digests(runner, image)
    return not any(d.endswith(f"@{remote}") for d in local)


def start_stack(
    runner: CommandRunner,
    config: DeploymentConfig,
    layout: Layout,
    *,
    reload_proxy: bool = False,
) -> None:
    """Pull the latest images and bring the stack up.

    :param reload_proxy: Restart caddy afterwards so a changed Caddyfile is read
    """
    cwd = str(layout.app_dir)
    log(f"Pulling images for '{config.service_name}'...")
    runner.run(*compose_cmd(layout, "pull"), timeout=PULL_TIMEOUT, cwd=cwd)
    log("Starting stack...")
    runner.run(*compose_cmd(layout, "up", "-d", "--remove-orphans"), timeout=UP_TIMEOUT, cwd=cwd)
    if reload_proxy:
        runner.run(*compose_cmd(layout, "restart", "caddy"), timeout=120, cwd=cwd)

    missing = set(SERVICES) - running_services(runner, layout)
    if missing:
        warn(f"Services not running yet: {', '.join(sorted(missing))}")
    else:
        log("All services running")


def stop_stack(runner: CommandRunner, layout: Layout) -> None:
    runner.run(*compose_cmd(layout, "down"), timeout=UP_TIMEOUT, cwd=str(layout.app_dir))
    log("Stack stopped")
