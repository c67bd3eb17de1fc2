"""Local command execution for provisioning steps and operational verbs."""

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass

from .errors import ExternalToolFailure
from .utils import LogStream

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs external tools and captures exit status and output.

    Commands flagged ``sudo=True`` are prefixed with ``sudo`` unless the
    process already runs as root.
    """

    def __init__(self):
        self.is_root = os.geteuid() == 0

    def _argv(self, args: tuple[str, ...], sudo: bool) -> list[str]:
        argv = [str(a) for a in args]
        if sudo and not self.is_root:
            argv = ["sudo", *argv]
        return argv

    def run(
        self,
        *args: str,
        check: bool = True,
        timeout: int = DEFAULT_TIMEOUT,
        input: str | None = None,
        cwd: str | None = None,
        sudo: bool = False,
    ) -> CommandResult:
        """Execute a command and return its result.

        :param check: Raise ExternalToolFailure on a non-zero exit
        :param timeout: Seconds before the command is killed
        :param input: Text fed to stdin (never logged)
        :raises ExternalToolFailure: On timeout, or on failure (including a missing executable) with check
        """
        argv = self._argv(args, sudo)
        logger.debug(f"$ {shlex.join(argv)}")

        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                input=input,
                cwd=cwd,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalToolFailure(
                argv, None, _text(e.stdout), _text(e.stderr), timed_out=True
            ) from e
        except FileNotFoundError as e:
            # Missing executable behaves like the shell: exit status 127
            proc = subprocess.CompletedProcess(argv, 127, "", str(e))

        result = CommandResult(argv, proc.returncode, proc.stdout, proc.stderr)
        if check and not result.ok:
            stream = LogStream(logging.DEBUG)
            stream.write(result.stdout)
            stream.flush()
            raise ExternalToolFailure(argv, result.returncode, result.stdout, result.stderr)
        return result

    def stream(self, *args: str, cwd: str | None = None, sudo: bool = False) -> int:
        """Run a command attached to the terminal (logs -f, editors, shells).

        :return: Exit code of the command
        """
        argv = self._argv(args, sudo)
        logger.debug(f"$ {shlex.join(argv)}")
        try:
            return subprocess.run(argv, cwd=cwd).returncode
        except FileNotFoundError as e:
            raise ExternalToolFailure(argv, 127, "", str(e)) from e
        except KeyboardInterrupt:
            return 130


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value
