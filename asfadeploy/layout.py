"""Where each persisted file of a deployment lives."""

import os
from dataclasses import dataclass
from pathlib import Path

from .types import DeploymentConfig

CONFIG_FILENAME = ".deployment_config"
LOCK_FILENAME = ".deploy.lock"
ENV_FILENAME = ".env.docker"
COMPOSE_FILENAME = "compose.prod.yaml"
PROXY_DIRNAME = "caddy"
PROXY_FILENAME = "Caddyfile"

SYSTEMD_DIR = "/etc/systemd/system"
LETSENCRYPT_DIR = "/etc/letsencrypt"


def default_docker_config_dir() -> Path:
    return Path(os.environ.get("DOCKER_CONFIG", Path.home() / ".docker"))


@dataclass(frozen=True)
class Layout:
    """Resolved paths for one deployment.

    Host-level directories (systemd units, certbot live certs, docker client
    config) default to the standard locations and can be pointed elsewhere.
    """

    app_dir: Path
    service_name: str = "asfa"
    domain: str = ""
    systemd_dir: Path = Path(SYSTEMD_DIR)
    letsencrypt_dir: Path = Path(LETSENCRYPT_DIR)
    docker_config_dir: Path | None = None

    @classmethod
    def for_config(cls, config: DeploymentConfig, **overrides) -> "Layout":
        return cls(
            app_dir=Path(config.app_dir),
            service_name=config.service_name,
            domain=config.domain,
            **overrides,
        )

    @property
    def config_file(self) -> Path:
        return self.app_dir / CONFIG_FILENAME

    @property
    def lock_file(self) -> Path:
        return self.app_dir / LOCK_FILENAME

    @property
    def env_file(self) -> Path:
        return self.app_dir / ENV_FILENAME

    @property
    def proxy_dir(self) -> Path:
        return self.app_dir / PROXY_DIRNAME

    @property
    def proxy_file(self) -> Path:
        return self.proxy_dir / PROXY_FILENAME

    @property
    def certs_dir(self) -> Path:
        """Cloudflare origin certificate and key, pasted in by the operator."""
        return self.proxy_dir / "certs"

    @property
    def origin_cert(self) -> Path:
        return self.certs_dir / "origin.pem"

    @property
    def origin_key(self) -> Path:
        return self.certs_dir / "origin.key"

    @property
    def compose_file(self) -> Path:
        return self.app_dir / COMPOSE_FILENAME

    @property
    def backups_dir(self) -> Path:
        return self.app_dir / "backups"

    @property
    def unit_name(self) -> str:
        return f"{self.service_name}.service"

    @property
    def unit_file(self) -> Path:
        return self.systemd_dir / self.unit_name

    @property
    def live_cert(self) -> Path:
        return self.letsencrypt_dir / "live" / self.domain / "fullchain.pem"

    @property
    def docker_config_file(self) -> Path:
        return (self.docker_config_dir or default_docker_config_dir()) / "config.json"

    def artifact_path(self, kind: str) -> Path:
        return {
            "env-file": self.env_file,
            "reverse-proxy": self.proxy_file,
            "compose": self.compose_file,
            "systemd-unit": self.unit_file,
        }[kind]
