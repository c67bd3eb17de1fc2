"""Step pipeline: run ordered, idempotent provisioning steps.

Each step is evaluated in ordinal order. A step whose precondition already
holds is skipped; otherwise its action runs. A failed continuable step is
reported and the run goes on; a failed fatal step aborts the run and leaves
the remaining steps pending. Nothing is rolled back: the recovery path is
to fix the cause and run the pipeline again.
"""

import fcntl
import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConcurrentRunDetected, DeployError, ExternalToolFailure, PersistenceError
from .layout import Layout
from .runner import CommandRunner
from .types import DeploymentConfig, PipelineState, Severity, StepState
from .utils import resolve_dns_a

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    """Everything a step may read or touch during one run.

    ``secrets`` is run-local and never persisted. ``changed`` collects the
    artifact kinds rewritten during this run.
    """

    config: DeploymentConfig
    layout: Layout
    runner: CommandRunner
    secrets: dict[str, str] = field(default_factory=dict)
    changed: set[str] = field(default_factory=set)
    resolve_dns: Callable[[str], str | None] = resolve_dns_a


@dataclass(frozen=True)
class ProvisioningStep:
    name: str
    ordinal: int
    # Returns a skip reason when the step's effect already holds, else None
    precondition: Callable[[PipelineContext], str | None]
    action: Callable[[PipelineContext], None]
    severity: Severity = "fatal"
    description: str = ""


@dataclass
class StepResult:
    name: str
    ordinal: int
    severity: Severity
    state: StepState = "pending"
    detail: str = ""


@dataclass
class PipelineReport:
    state: PipelineState
    results: list[StepResult]

    def by_name(self, name: str) -> StepResult:
        for result in self.results:
            if result.name == name:
                return result
        raise KeyError(name)

    def states(self) -> dict[str, StepState]:
        return {r.name: r.state for r in self.results}

    @property
    def failed(self) -> list[StepResult]:
        return [r for r in self.results if r.state == "failed"]

    @property
    def aborted_at(self) -> StepResult | None:
        if self.state != "aborted":
            return None
        return next(r for r in self.results if r.state == "failed" and r.severity == "fatal")


def _failure_detail(exc: Exception) -> str:
    if isinstance(exc, ExternalToolFailure):
        output = (exc.stderr or exc.stdout).strip()
        cmd = " ".join(exc.command)
        if exc.timed_out:
            head = f"'{cmd}' timed out"
        else:
            head = f"'{cmd}' exited with {exc.returncode}"
        return f"{head}: {output}" if output else head
    if isinstance(exc, DeployError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"


class Pipeline:
    """Executes steps against a context and records per-step state."""

    def __init__(self, steps: list[ProvisioningStep]):
        self.steps = sorted(steps, key=lambda s: s.ordinal)
        names = [s.name for s in self.steps]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate step names: {names}")

    def run(self, ctx: PipelineContext) -> PipelineReport:
        results = [StepResult(s.name, s.ordinal, s.severity) for s in self.steps]
        report = PipelineReport("running", results)
        total = len(self.steps)

        for i, (step, result) in enumerate(zip(self.steps, results), start=1):
            label = f"[{i}/{total}] {step.name}"
            try:
                reason = step.precondition(ctx)
            except DeployError as e:
                # A precondition that cannot be evaluated counts as not satisfied
                logger.debug(f"{label}: precondition check failed: {e}")
                reason = None
            except Exception as e:
                if self._fail(step, result, label, e):
                    report.state = "aborted"
                    return report
                continue
            if reason:
                result.state = "skipped"
                result.detail = reason
                logger.info(f"{label}: skipped ({reason})")
                continue

            result.state = "running"
            logger.info(f"{label}: running{f' ({step.description})' if step.description else ''}")
            try:
                step.action(ctx)
            except Exception as e:
                if self._fail(step, result, label, e):
                    report.state = "aborted"
                    return report
                continue

            result.state = "succeeded"
            logger.info(f"{label}: done")

        report.state = "completed"
        return report

    @staticmethod
    def _fail(step: ProvisioningStep, result: StepResult, label: str, exc: Exception) -> bool:
        """Record a failed step.

        :return: True if the failure aborts the run
        """
        result.state = "failed"
        result.detail = _failure_detail(exc)
        if not isinstance(exc, DeployError):
            logger.debug(f"{label}: unexpected error", exc_info=exc)
        if step.severity == "fatal" or isinstance(exc, PersistenceError):
            result.severity = "fatal"
            logger.error(f"{label}: failed, aborting: {result.detail}")
            return True
        logger.warning(f"{label}: failed, continuing: {result.detail}")
        return False


@contextmanager
def pipeline_lock(lock_path: str | Path) -> Iterator[Path]:
    """Hold an exclusive advisory lock for one pipeline run.

    Creates the lock file's directory if needed. The lock is released when the
    block exits, including on KeyboardInterrupt.

    :raises ConcurrentRunDetected: If another process holds the lock
    :raises PersistenceError: If the lock file cannot be created
    """
    lock_path = Path(lock_path)
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as e:
        raise PersistenceError(f"Cannot create lock file '{lock_path}': {e}") from e
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise ConcurrentRunDetected(str(lock_path)) from e
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        try:
            yield lock_path
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)
