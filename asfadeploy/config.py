"""Configuration store: load, merge and persist the deployment record.

The store is a shell-sourceable key=value file, so a ``.deployment_config``
written by the older bash installer keeps working.
"""

import os
import re
from collections.abc import Callable
from dataclasses import MISSING, asdict, fields
from pathlib import Path, PurePosixPath

from dotenv import dotenv_values, load_dotenv

from .errors import IncompleteConfig, InvalidConfig, NotFound, PersistenceError
from .layout import CONFIG_FILENAME
from .types import SSL_MODES, DeploymentConfig, PartialConfig
from .utils import log, write_file_atomic

DEFAULT_APP_DIR = "/opt/apps/asfa"

# field name -> key in the store file
STORE_KEYS = {
    "domain": "DOMAIN_NAME",
    "registry_username": "DOCKER_USERNAME",
    "app_dir": "APP_DIR",
    "ssl_mode": "SETUP_SSL",
    "email": "SSL_EMAIL",
    "firewall_enabled": "SETUP_FIREWALL",
    "create_deployer_user": "CREATE_USER",
    "image": "IMAGE",
    "repo_url": "REPO_URL",
    "repo_branch": "REPO_BRANCH",
    "service_name": "SERVICE_NAME",
}

BOOL_FIELDS = {"firewall_enabled", "create_deployer_user"}

# Older stores wrote the Cloudflare "Flexible" setup (plain HTTP behind the CDN)
LEGACY_SSL_MODES = {"cloudflare": "http-only", "none": "http-only", "": None}

_TRUE = {"y", "yes", "true", "1", "on"}
_FALSE = {"n", "no", "false", "0", "off"}
_SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]*$")

Ask = Callable[[str], str | None]


def default_app_dir() -> str:
    """App directory from ASFA_APP_DIR (environment or local .env), else the default."""
    load_dotenv()
    return os.getenv("ASFA_APP_DIR", DEFAULT_APP_DIR)


def config_path(app_dir: str | Path) -> Path:
    return Path(app_dir) / CONFIG_FILENAME


def defaults() -> dict:
    """Documented defaults for every optional field."""
    values = {f.name: f.default for f in fields(DeploymentConfig) if f.default is not MISSING}
    values["app_dir"] = DEFAULT_APP_DIR
    values["ssl_mode"] = "letsencrypt"
    return values


def parse_bool(value: str, key: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise InvalidConfig(f"'{key}' must be yes/no, got '{value}'")


def _from_store(raw: dict[str, str | None]) -> tuple[dict, bool]:
    """Map store keys to field values.

    :return: (values, migrated) where migrated is True if a legacy value was rewritten
    """
    values: dict = {}
    migrated = False
    for name, key in STORE_KEYS.items():
        value = raw.get(key)
        if value is None or value == "":
            continue
        if name in BOOL_FIELDS:
            values[name] = parse_bool(value, key)
        elif name == "ssl_mode" and value in LEGACY_SSL_MODES:
            mode = LEGACY_SSL_MODES[value]
            if mode:
                values[name] = mode
            migrated = True
        else:
            values[name] = value
    return values, migrated


def validate(config: DeploymentConfig) -> DeploymentConfig:
    """Check the invariants of a deployment record.

    :raises IncompleteConfig: letsencrypt selected without an email
    :raises InvalidConfig: any other violated invariant
    """
    if not config.domain or not config.domain.strip():
        raise InvalidConfig("Domain name cannot be empty")
    if "://" in config.domain or "/" in config.domain or " " in config.domain:
        raise InvalidConfig(f"Domain must be a bare host name, got '{config.domain}'")
    if config.ssl_mode not in SSL_MODES:
        raise InvalidConfig(
            f"Unknown SSL mode '{config.ssl_mode}'. Available: {', '.join(SSL_MODES)}"
        )
    if config.ssl_mode == "letsencrypt" and not config.email:
        raise IncompleteConfig(
            ["email"], "An email address is required for Let's Encrypt certificates"
        )
    if config.email and "@" not in config.email:
        raise InvalidConfig(f"Invalid email address '{config.email}'")
    if not PurePosixPath(config.app_dir).is_absolute():
        raise InvalidConfig(f"Application directory must be absolute, got '{config.app_dir}'")
    if not _SERVICE_NAME_RE.match(config.service_name):
        raise InvalidConfig(f"Invalid service name '{config.service_name}'")
    return config


def load(path: str | Path) -> DeploymentConfig:
    """Read a persisted deployment record.

    :param path: Path to the .deployment_config file
    :raises NotFound: If no store exists yet (first run)
    """
    path = Path(path)
    if not path.is_file():
        raise NotFound(f"No deployment configuration at '{path}'")
    try:
        raw = dotenv_values(path)
    except OSError as e:
        raise PersistenceError(f"Cannot read '{path}': {e}") from e

    values, migrated = _from_store(raw)
    if migrated:
        log(f"Migrated legacy settings in '{path}' (saved in the new format on next deploy)")
    missing = [n for n in ("domain",) if n not in values]
    if missing:
        raise InvalidConfig(f"Configuration '{path}' is missing {', '.join(STORE_KEYS[n] for n in missing)}")
    merged = {**defaults(), **values}
    return validate(DeploymentConfig(**merged))


def _missing_required(values: dict) -> list[str]:
    missing = []
    if not values.get("domain"):
        missing.append("domain")
    if values.get("ssl_mode") == "letsencrypt" and not values.get("email"):
        missing.append("email")
    return missing


def merge(
    existing: DeploymentConfig | None,
    partial: PartialConfig,
    ask: Ask | None = None,
) -> DeploymentConfig:
    """Combine persisted state with operator input.

    Per field: explicit input wins, then the persisted value, then the default.
    Required fields still missing are requested through ``ask`` until answered;
    without ``ask`` the merge fails.

    :param existing: Previously persisted config, or None on first run
    :param partial: Fields supplied for this run
    :param ask: Interactive callback returning a value for a field name
    :raises IncompleteConfig: Required fields missing and no ``ask`` callback
    """
    base = asdict(existing) if existing is not None else defaults()
    values = dict(base)
    for f in fields(PartialConfig):
        supplied = getattr(partial, f.name)
        if supplied is not None:
            values[f.name] = supplied
    values.setdefault("domain", None)

    missing = _missing_required(values)
    if missing and ask is None:
        raise IncompleteConfig(missing)
    for name in missing:
        while not values.get(name):
            values[name] = ask(name)

    return validate(DeploymentConfig(**values))


def _quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def dumps(config: DeploymentConfig) -> str:
    lines = ["# ASFA Deployment Configuration"]
    for name, key in STORE_KEYS.items():
        value = getattr(config, name)
        if name in BOOL_FIELDS:
            text = "Y" if value else "n"
        else:
            text = value or ""
        lines.append(f"{key}={_quote(text)}")
    return "\n".join(lines) + "\n"


def save(config: DeploymentConfig, path: str | Path | None = None) -> Path:
    """Persist the record with owner-only permissions.

    :param path: Store path (default: <app_dir>/.deployment_config)
    :raises PersistenceError: If the file cannot be written
    """
    path = Path(path) if path is not None else config_path(config.app_dir)
    write_file_atomic(path, dumps(config), mode=0o600)
    log(f"Configuration saved to '{path}'")
    return path
