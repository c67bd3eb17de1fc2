"""Host preflight and the locked, persisted deployment run."""

from pathlib import Path

from dotenv import dotenv_values

from .config import save
from .errors import UnsupportedHost
from .layout import Layout
from .pipeline import Pipeline, PipelineContext, PipelineReport, pipeline_lock
from .runner import CommandRunner
from .steps import build_steps
from .types import DeploymentConfig
from .utils import log

SUPPORTED_DISTROS = {"ubuntu", "debian"}
OS_RELEASE = "/etc/os-release"


def check_host(os_release: str | Path = OS_RELEASE) -> str:
    """Make sure the host is a distribution the provisioning steps know.

    :return: The distribution's pretty name
    :raises UnsupportedHost: If the host is not Ubuntu or Debian based
    """
    path = Path(os_release)
    if not path.is_file():
        raise UnsupportedHost(f"Cannot identify the operating system ('{path}' missing)")
    info = dotenv_values(path)
    ids = {(info.get("ID") or "").lower(), *(info.get("ID_LIKE") or "").lower().split()}
    name = info.get("PRETTY_NAME") or info.get("ID") or "unknown"
    if not ids & SUPPORTED_DISTROS:
        raise UnsupportedHost(f"Unsupported operating system '{name}' (Ubuntu or Debian required)")
    return name


def run_deployment(
    config: DeploymentConfig,
    runner: CommandRunner,
    *,
    secrets: dict[str, str] | None = None,
    layout: Layout | None = None,
    **context_options,
) -> PipelineReport:
    """Run every provisioning step under the app directory lock.

    The config is saved only when the run completes; an aborted run leaves
    the previously persisted config untouched.

    :param secrets: Run-local secrets (registry password), never persisted
    :param context_options: Extra PipelineContext fields (e.g. resolve_dns)
    :raises ConcurrentRunDetected: If another run holds the lock
    """
    layout = layout or Layout.for_config(config)
    ctx = PipelineContext(config, layout, runner, dict(secrets or {}), **context_options)
    with pipeline_lock(layout.lock_file):
        report = Pipeline(build_steps(config)).run(ctx)
        if report.state == "completed":
            save(config, layout.config_file)
        else:
            log("Configuration not saved; fix the cause and re-run 'asfa-deploy deploy'")
    return report
