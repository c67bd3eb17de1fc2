"""Artifact renderer: build artifacts from a config and write them safely."""

import hashlib
import shutil
from datetime import datetime
from pathlib import Path

from .errors import PersistenceError, UnsupportedVariant
from .layout import Layout
from .templates import VARIANTS
from .types import ArtifactKind, DeploymentConfig, RenderedArtifact
from .utils import log, write_file_atomic

# Files holding credentials are written owner-only
FILE_MODES = {"env-file": 0o600}


def checksum(content: str) -> str:
    return hashlib.sha256(content.encode()).hexdigest()


def build(
    config: DeploymentConfig,
    kind: ArtifactKind,
    layout: Layout | None = None,
    secrets: dict[str, str] | None = None,
) -> RenderedArtifact:
    """Render an artifact in memory.

    Pure: the same (config, kind, layout, secrets) always yields the same bytes.

    :raises UnsupportedVariant: No template for (kind, config.ssl_mode)
    """
    template = VARIANTS.get((kind, config.ssl_mode))
    if template is None:
        raise UnsupportedVariant(kind, config.ssl_mode)
    layout = layout or Layout.for_config(config)
    content = template(config, layout, secrets or {})
    return RenderedArtifact(
        kind=kind,
        path=str(layout.artifact_path(kind)),
        variant=config.ssl_mode,
        content=content,
        checksum=checksum(content),
    )


def is_current(artifact: RenderedArtifact) -> bool:
    """True if the file on disk already has the artifact's exact content."""
    path = Path(artifact.path)
    try:
        return path.is_file() and checksum(path.read_text()) == artifact.checksum
    except OSError:
        return False


def backup_path(path: Path, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    candidate = path.with_name(f"{path.name}.backup.{stamp}")
    n = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.name}.backup.{stamp}_{n}")
        n += 1
    return candidate


def write(artifact: RenderedArtifact) -> Path | None:
    """Write an artifact, backing up any different pre-existing file first.

    :return: Path of the backup made, or None if nothing was backed up
    :raises PersistenceError: If the backup or the write fails
    """
    path = Path(artifact.path)
    if is_current(artifact):
        return None

    backup = None
    if path.exists():
        backup = backup_path(path)
        try:
            shutil.copy2(path, backup)
        except OSError as e:
            raise PersistenceError(f"Cannot back up '{path}': {e}") from e
        log(f"Backed up '{path}' to '{backup.name}'")

    write_file_atomic(path, artifact.content, mode=FILE_MODES.get(artifact.kind, 0o644))
    log(f"Wrote {artifact.kind} ({artifact.variant}) to '{path}'")
    return backup


def render(
    config: DeploymentConfig,
    kind: ArtifactKind,
    layout: Layout | None = None,
    secrets: dict[str, str] | None = None,
) -> RenderedArtifact:
    """Build an artifact and write it to its target path."""
    artifact = build(config, kind, layout, secrets)
    write(artifact)
    return artifact
