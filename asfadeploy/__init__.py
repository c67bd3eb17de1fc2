"""ASFA Deploy - provision a VPS and run the ASFA Docker stack on it."""

from .cli import app, main
from .config import load, merge, save
from .deploy import check_host, run_deployment
from .errors import (
    ConcurrentRunDetected,
    DeployError,
    ExternalToolFailure,
    IncompleteConfig,
    InvalidConfig,
    NotFound,
    PersistenceError,
    UnsupportedHost,
    UnsupportedVariant,
)
from .layout import Layout
from .pipeline import Pipeline, PipelineContext, PipelineReport, ProvisioningStep
from .runner import CommandResult, CommandRunner
from .types import (
    ArtifactKind,
    DeploymentConfig,
    PartialConfig,
    RenderedArtifact,
    SSLMode,
)
from .utils import error, log, warn

__all__ = [
    "app",
    "main",
    "load",
    "merge",
    "save",
    "check_host",
    "run_deployment",
    "Pipeline",
    "PipelineContext",
    "PipelineReport",
    "ProvisioningStep",
    "Layout",
    "CommandRunner",
    "CommandResult",
    "log",
    "warn",
    "error",
    "ArtifactKind",
    "DeploymentConfig",
    "PartialConfig",
    "RenderedArtifact",
    "SSLMode",
    "DeployError",
    "NotFound",
    "IncompleteConfig",
    "InvalidConfig",
    "UnsupportedVariant",
    "UnsupportedHost",
    "PersistenceError",
    "ExternalToolFailure",
    "ConcurrentRunDetected",
]
