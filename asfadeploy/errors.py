"""Exception types raised by the deployment core.

Every error carries the process exit code the CLI should use for it:
1 for fatal pipeline/command failures, 2 for invalid or incomplete
configuration.
"""


class DeployError(Exception):
    """Base class for all asfa-deploy failures."""

    exit_code = 1


class NotFound(DeployError):
    """No persisted deployment configuration exists yet (first run)."""

    exit_code = 2


class IncompleteConfig(DeployError):
    """A required value is missing and cannot be prompted for."""

    exit_code = 2

    def __init__(self, missing: list[str], message: str | None = None):
        self.missing = list(missing)
        super().__init__(
            message or f"Missing required configuration: {', '.join(self.missing)}"
        )


class InvalidConfig(DeployError):
    """A configuration value violates an invariant."""

    exit_code = 2


class UnsupportedVariant(DeployError):
    """The renderer has no template for an (artifact kind, SSL mode) pair."""

    def __init__(self, kind: str, ssl_mode: str):
        self.kind = kind
        self.ssl_mode = ssl_mode
        super().__init__(f"No '{kind}' template for SSL mode '{ssl_mode}'")


class PersistenceError(DeployError):
    """The configuration store or an artifact could not be written."""


class UnsupportedHost(DeployError):
    """The host operating system is not one the provisioning steps target."""


class ExternalToolFailure(DeployError):
    """An external command exited non-zero or timed out."""

    def __init__(
        self,
        command: list[str],
        returncode: int | None,
        stdout: str = "",
        stderr: str = "",
        *,
        timed_out: bool = False,
    ):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        if timed_out:
            summary = f"Command timed out: '{' '.join(self.command)}'"
        else:
            summary = f"Command failed ({returncode}): '{' '.join(self.command)}'"
        output = (stderr or stdout).strip()
        super().__init__(f"{summary}\n{output}" if output else summary)


class ConcurrentRunDetected(DeployError):
    """Another pipeline run holds the advisory lock for this app directory."""

    def __init__(self, lock_path: str):
        self.lock_path = lock_path
        super().__init__(
            f"Another deployment is already running (lock held: '{lock_path}')"
        )
