"""Type definitions for asfa-deploy."""

from dataclasses import dataclass, fields
from typing import Literal

SSLMode = Literal["letsencrypt", "cloudflare-origin", "http-only"]
ArtifactKind = Literal["env-file", "reverse-proxy", "compose", "systemd-unit"]
Severity = Literal["fatal", "continuable"]
StepState = Literal["pending", "skipped", "running", "succeeded", "failed"]
PipelineState = Literal["running", "completed", "aborted"]

SSL_MODES: tuple[SSLMode, ...] = ("letsencrypt", "cloudflare-origin", "http-only")
ARTIFACT_KINDS: tuple[ArtifactKind, ...] = (
    "env-file",
    "reverse-proxy",
    "compose",
    "systemd-unit",
)


@dataclass(frozen=True)
class DeploymentConfig:
    """Deployment parameters persisted in <app_dir>/.deployment_config."""

    domain: str
    app_dir: str
    ssl_mode: SSLMode
    registry_username: str | None = None
    email: str | None = None  # required when ssl_mode is letsencrypt
    firewall_enabled: bool = True
    create_deployer_user: bool = True
    image: str = "acerschoolapp/acerschoolfinanceapp:latest"
    repo_url: str = "https://github.com/paulmbui20/asfa-deploy-script.git"
    repo_branch: str = "main"
    service_name: str = "asfa"

    @property
    def uses_tls(self) -> bool:
        return self.ssl_mode != "http-only"


@dataclass(frozen=True)
class PartialConfig:
    """Operator input for a run. None means the field was not supplied."""

    domain: str | None = None
    app_dir: str | None = None
    ssl_mode: SSLMode | None = None
    registry_username: str | None = None
    email: str | None = None
    firewall_enabled: bool | None = None
    create_deployer_user: bool | None = None
    image: str | None = None
    repo_url: str | None = None
    repo_branch: str | None = None
    service_name: str | None = None

    def is_empty(self) -> bool:
        return all(getattr(self, f.name) is None for f in fields(self))


@dataclass(frozen=True)
class RenderedArtifact:
    """A generated file and the template variant it came from."""

    kind: ArtifactKind
    path: str
    variant: SSLMode
    content: str
    checksum: str  # sha256 of content
