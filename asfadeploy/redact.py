"""Secret redaction for log records.

Secrets collected during a run (registry password) are registered here so
that no log line, including captured tool output, ever shows them.
"""

import logging
import os
import re

# Env vars whose values are redacted from all output
_SECRET_ENV_VARS = [
    "ASFA_REGISTRY_PASSWORD",
    "AWS_SECRET_ACCESS_KEY",
]

_MIN_SECRET_LENGTH = 6  # env-var scan only; skip short values to avoid false positives

_registered: set[str] = set()
_patterns: list[re.Pattern] | None = None


def _collect_secret_values() -> set[str]:
    values = set(_registered)
    for var in _SECRET_ENV_VARS:
        val = os.environ.get(var, "")
        if len(val) >= _MIN_SECRET_LENGTH:
            values.add(val)
    return values


def _build_patterns(values: set[str]) -> list[re.Pattern]:
    # Longer values first so a secret containing another is fully masked
    return [re.compile(re.escape(v)) for v in sorted(values, key=len, reverse=True)]


def _get_patterns() -> list[re.Pattern]:
    global _patterns
    if _patterns is None:
        _patterns = _build_patterns(_collect_secret_values())
    return _patterns


def register_secret(value: str) -> None:
    """Add a run-local secret to the redaction set, whatever its length."""
    global _patterns
    if value:
        _registered.add(value)
        _patterns = None


def clear_secrets() -> None:
    global _patterns
    _registered.clear()
    _patterns = None


def redact_secrets(text: str) -> str:
    """Replace known secret values with '***'."""
    for pattern in _get_patterns():
        text = pattern.sub("***", text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Logging filter that replaces secret values in log records with '***'.

    Handles both pre-formatted messages and %-style messages with args.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        patterns = _get_patterns()
        if patterns:
            record.msg = redact_secrets(str(record.msg))
            if isinstance(record.args, dict):
                record.args = {
                    k: redact_secrets(v) if isinstance(v, str) else v
                    for k, v in record.args.items()
                }
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_secrets(a) if isinstance(a, str) else a for a in record.args
                )
        return True
