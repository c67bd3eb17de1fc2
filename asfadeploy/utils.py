"""Shared utility functions."""

import logging
import os
import sys
import tempfile
from pathlib import Path

import dns.exception
import dns.resolver
import httpx
from rich.console import Console
from rich.logging import RichHandler

from .errors import PersistenceError
from .redact import SecretRedactingFilter

logger = logging.getLogger("asfadeploy")


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Used to replay captured tool output into the log at a chosen level.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        self._buf = ""
        self._level = level

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.log(self._level, line)

    def flush(self) -> None:
        if self._buf.strip():
            logger.log(self._level, self._buf)
            self._buf = ""


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=False,
    )
    rich_handler.setLevel(level)
    rich_handler.addFilter(SecretRedactingFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("s3transfer", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("httpx", logging.WARNING),
        ("httpcore", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str, code: int = 1) -> None:
    """Log error message and exit with the given code."""
    logger.error(msg)
    sys.exit(code)


def write_file_atomic(path: str | Path, content: str, mode: int = 0o644) -> None:
    """Write content via a temp file in the same directory and rename it into place.

    :param path: Destination file
    :param content: Full file content
    :param mode: Permission bits applied before the rename
    :raises PersistenceError: If the directory or file cannot be written
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        try:
            os.fchmod(fd, mode)
            with os.fdopen(fd, "w") as f:
                f.write(content)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise PersistenceError(f"Cannot write '{path}': {e}") from e


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address.

    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP or None
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A", lifetime=10)
        return str(answer[0]) if answer else None
    except dns.exception.DNSException:
        return None


def check_http_status(url: str, timeout: int = 5) -> tuple[int | None, str]:
    """:return: (status_code, status_line) or (None, error_message)

    HTTPS certificates are verified, so an expired or mismatched certificate
    is reported as an error.
    """
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=False, verify=True)
        return response.status_code, f"{response.http_version} {response.status_code} {response.reason_phrase}"
    except httpx.HTTPError as e:
        return None, str(e)
