"""Per-run event helpers, naming, and the precondition error type."""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from stackrun.config import get_settings
from stackrun.event_bus import (
    ErrorEvent,
    LifecycleEvent,
    LifecycleStatus,
    PortsEvent,
    ResultEvent,
    RunEventBus,
)
from stackrun.types import PortBinding, RunMode, StartError

Clock = Callable[[], float]

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9_-]")


class RunPreconditionError(Exception):
    """A required step of a run failed; carries the user-facing error."""

    def __init__(self, error: StartError) -> None:
        super().__init__(error.message)
        self.error = error


def project_name(task_id: str) -> str:
    """Deterministic compose project / container name for a task."""
    slug = _UNSAFE_NAME_CHARS.sub("_", task_id.lower())
    return f"{get_settings().runner.project_prefix}{slug}"


def state_dir(task_path: Path) -> Path:
    return task_path / get_settings().runner.state_dir


def generate_run_id(clock: Clock) -> str:
    stamp = datetime.fromtimestamp(clock(), tz=UTC).isoformat(timespec="milliseconds")
    return f"r_{stamp.replace('+00:00', 'Z')}"


@dataclass(frozen=True)
class RunContext:
    """Identity of one run plus shortcuts for emitting its events."""

    bus: RunEventBus
    task_id: str
    run_id: str
    mode: RunMode
    clock: Clock

    def lifecycle(self, status: LifecycleStatus, container_id: str | None = None) -> None:
        self.bus.emit(
            LifecycleEvent(
                timestamp=self.clock(),
                task_id=self.task_id,
                run_id=self.run_id,
                mode=self.mode,
                status=status,
                container_id=container_id,
            )
        )

    def ports(self, bindings: Sequence[PortBinding], preview_service: str) -> None:
        self.bus.emit(
            PortsEvent(
                timestamp=self.clock(),
                task_id=self.task_id,
                run_id=self.run_id,
                mode=self.mode,
                preview_service=preview_service,
                ports=tuple(bindings),
            )
        )

    def error(self, error: StartError) -> None:
        self.bus.emit(
            ErrorEvent(
                timestamp=self.clock(),
                task_id=self.task_id,
                run_id=self.run_id,
                mode=self.mode,
                code=error.code,
                message=error.message,
            )
        )

    def result(self, succeeded: bool) -> None:
        self.bus.emit(
            ResultEvent(
                timestamp=self.clock(),
                task_id=self.task_id,
                run_id=self.run_id,
                mode=self.mode,
                status="succeeded" if succeeded else "failed",
            )
        )

    def fail(self, error: StartError) -> None:
        """Emit the error event followed by the failed result."""
        self.error(error)
        self.result(False)
