"""Operational commands on an already-deployed stack.

These act on the persisted configuration and never run provisioning steps.
"""

import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import dotenv_values
from rich import print

from .errors import DeployError, NotFound
from .layout import Layout
from .runner import CommandRunner
from .stack import SERVICES, compose_cmd, running_services, start_stack, stop_stack
from .templates import PLACEHOLDER_RE, find_placeholders
from .types import DeploymentConfig
from .utils import check_http_status, log, warn, write_file_atomic

COOLIFY_LABELS = ("com.docker.compose.project=coolify", "coolify.managed=true")
R2_KEYS = (
    "CLOUDFLARE_R2_ACCESS_KEY",
    "CLOUDFLARE_R2_SECRET_KEY",
    "CLOUDFLARE_R2_BUCKET",
    "CLOUDFLARE_R2_BUCKET_ENDPOINT",
)
EXPORT_TIMEOUT = 1800


def _layout(config: DeploymentConfig, layout: Layout | None) -> Layout:
    return layout or Layout.for_config(config)


@dataclass
class StackStatus:
    services: set[str]
    unit_state: str
    health_code: int | None
    health_detail: str
    placeholders: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return set(SERVICES) <= self.services and self.health_code == 200


def status(
    config: DeploymentConfig, runner: CommandRunner, layout: Layout | None = None
) -> StackStatus:
    """Report container state, the systemd unit and the public health endpoint."""
    layout = _layout(config, layout)
    ps = runner.run(*compose_cmd(layout, "ps"), check=False, cwd=str(layout.app_dir))
    print(ps.stdout.rstrip() or "[yellow](no containers)[/yellow]")

    unit = runner.run("systemctl", "is-active", layout.unit_name, check=False)
    unit_state = unit.stdout.strip() or "unknown"

    scheme = "https" if config.uses_tls else "http"
    url = f"{scheme}://{config.domain}/health/"
    code, detail = check_http_status(url)

    placeholders = []
    if layout.env_file.is_file():
        placeholders = find_placeholders(layout.env_file.read_text())

    result = StackStatus(
        services=running_services(runner, layout),
        unit_state=unit_state,
        health_code=code,
        health_detail=detail,
        placeholders=placeholders,
    )
    print(f"  Unit {layout.unit_name}: {unit_state}")
    print(f"  {url}: {detail}")
    missing = set(SERVICES) - result.services
    if missing:
        warn(f"Not running: {', '.join(sorted(missing))}")
    if placeholders:
        warn(f"Unset values in '{layout.env_file}': {', '.join(placeholders)}")
    return result


def logs(
    config: DeploymentConfig,
    runner: CommandRunner,
    service: str | None = None,
    layout: Layout | None = None,
) -> int:
    layout = _layout(config, layout)
    args = compose_cmd(layout, "logs", "-f", "--tail=100", *([service] if service else []))
    return runner.stream(*args, cwd=str(layout.app_dir))


def start(config: DeploymentConfig, runner: CommandRunner, layout: Layout | None = None) -> None:
    start_stack(runner, config, _layout(config, layout))


def stop(config: DeploymentConfig, runner: CommandRunner, layout: Layout | None = None) -> None:
    stop_stack(runner, _layout(config, layout))


def reconfigure(
    config: DeploymentConfig,
    runner: CommandRunner,
    *,
    restart: bool = True,
    editor: str = "nano",
    layout: Layout | None = None,
) -> None:
    """Edit the environment file, then optionally restart the stack.

    :param editor: Editor command line (usually from $EDITOR)
    :raises NotFound: If the environment file has not been created yet
    """
    layout = _layout(config, layout)
    if not layout.env_file.is_file():
        raise NotFound(f"No environment file at '{layout.env_file}', run 'asfa-deploy deploy' first")
    code = runner.stream(*shlex.split(editor), str(layout.env_file))
    if code != 0:
        raise DeployError(f"Editor '{editor}' exited with {code}, not restarting")

    remaining = find_placeholders(layout.env_file.read_text())
    if remaining:
        warn(f"Still unset: {', '.join(remaining)}")
    if restart:
        start_stack(runner, config, layout)
    else:
        log("Not restarting; run 'asfa-deploy start' to apply the changes")


@dataclass
class BackupResult:
    path: Path
    key: str
    uploaded: bool
    detail: str = ""


def _r2_settings(env_file: Path) -> dict[str, str] | None:
    if not env_file.is_file():
        return None
    values = dotenv_values(env_file)
    settings = {k: values.get(k) or "" for k in R2_KEYS}
    if any(not v or PLACEHOLDER_RE.search(v) for v in settings.values()):
        return None
    return settings


def r2_client(settings: dict[str, str]):
    session = boto3.Session(
        aws_access_key_id=settings["CLOUDFLARE_R2_ACCESS_KEY"],
        aws_secret_access_key=settings["CLOUDFLARE_R2_SECRET_KEY"],
        region_name="auto",
    )
    return session.client("s3", endpoint_url=settings["CLOUDFLARE_R2_BUCKET_ENDPOINT"])


def backup(
    config: DeploymentConfig,
    runner: CommandRunner,
    *,
    layout: Layout | None = None,
    client_factory: Callable[[dict[str, str]], object] = r2_client,
    now: datetime | None = None,
) -> BackupResult:
    """Export application data to a local file and copy it to the R2 bucket.

    The local file is kept whether or not the upload succeeds.

    :param client_factory: Builds the S3 client from the R2 settings
    :raises ExternalToolFailure: If the export command fails
    """
    layout = _layout(config, layout)
    log("Exporting application data...")
    result = runner.run(
        *compose_cmd(
            layout, "exec", "-T", "web", "python", "manage.py", "dumpdata",
            "--natural-foreign", "--natural-primary", "--indent", "2",
        ),
        timeout=EXPORT_TIMEOUT,
        cwd=str(layout.app_dir),
    )
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    name = f"{config.service_name}-{stamp}.json"
    path = layout.backups_dir / name
    write_file_atomic(path, result.stdout, mode=0o600)
    log(f"Saved '{path}' ({path.stat().st_size} bytes)")

    key = f"backups/{name}"
    settings = _r2_settings(layout.env_file)
    if settings is None:
        return BackupResult(
            path, key, False, f"R2 storage is not configured in '{layout.env_file}'"
        )

    bucket = settings["CLOUDFLARE_R2_BUCKET"]
    # upload_file wraps ClientError in S3UploadFailedError; a malformed
    # endpoint URL is rejected with ValueError
    try:
        client = client_factory(settings)
        log(f"Uploading to r2://{bucket}/{key}...")
        client.upload_file(str(path), bucket, key)
        head = client.head_object(Bucket=bucket, Key=key)
    except (BotoCoreError, ClientError, S3UploadFailedError, ValueError) as e:
        return BackupResult(path, key, False, f"Upload failed: {e}")

    size = path.stat().st_size
    if head.get("ContentLength") != size:
        return BackupResult(
            path, key, False,
            f"Uploaded size {head.get('ContentLength')} does not match local size {size}",
        )
    return BackupResult(path, key, True, f"r2://{bucket}/{key}")


def shell(
    config: DeploymentConfig,
    runner: CommandRunner,
    service: str = "web",
    command: str = "bash",
    layout: Layout | None = None,
) -> int:
    layout = _layout(config, layout)
    return runner.stream(*compose_cmd(layout, "exec", service, command), cwd=str(layout.app_dir))


def reload_proxy(
    config: DeploymentConfig, runner: CommandRunner, layout: Layout | None = None
) -> None:
    """Hot-reload the Caddyfile without restarting the proxy container."""
    layout = _layout(config, layout)
    runner.run(
        *compose_cmd(layout, "exec", "-T", "caddy", "caddy", "reload", "--config", "/etc/caddy/Caddyfile"),
        cwd=str(layout.app_dir),
    )
    log("Caddy configuration reloaded")


# ---------------------------------------------------------------------------
# Coolify containers sharing the host
# ---------------------------------------------------------------------------


def coolify_containers(runner: CommandRunner, *, include_stopped: bool = False) -> list[str]:
    ids: list[str] = []
    for label in COOLIFY_LABELS:
        args = ["docker", "ps", "--filter", f"label={label}", "-q"]
        if include_stopped:
            args.insert(2, "-a")
        result = runner.run(*args, check=False)
        for cid in result.stdout.split():
            if cid not in ids:
                ids.append(cid)
    return ids


def coolify_stop(runner: CommandRunner) -> list[str]:
    """Stop every running Coolify-managed container.

    :return: IDs of the containers stopped
    """
    running = coolify_containers(runner)
    if not running:
        log("No running Coolify containers")
        return []
    log(f"Stopping {len(running)} Coolify container(s)...")
    runner.run("docker", "stop", *running, timeout=600)
    return running


def coolify_restart(
    runner: CommandRunner,
    *,
    stop_only: bool = False,
    sleep: Callable[[float], None] = time.sleep,
) -> list[str]:
    """Stop then start every Coolify container, running or stopped.

    :return: IDs of all Coolify containers found
    """
    everything = coolify_containers(runner, include_stopped=True)
    if not everything:
        log("No Coolify containers found")
        return []
    coolify_stop(runner)
    if stop_only:
        log("Stopped only, not restarting")
        return everything
    # Let the ports be released
    sleep(2)
    log(f"Starting {len(everything)} Coolify container(s)...")
    runner.run("docker", "start", *everything, timeout=600)
    return everything
