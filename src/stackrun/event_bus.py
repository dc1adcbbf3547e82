"""Synchronous in-process event bus for run events.

Listeners are called in registration order on the emitting call stack.
A listener that raises is logged and skipped; delivery to the rest
continues and the emitter never sees the exception.
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

from stackrun.logger import logger
from stackrun.types import PortBinding, RunMode

LifecycleStatus = Literal["building", "starting", "ready", "stopping", "stopped", "failed"]

# --- Event types ---


@dataclass(frozen=True)
class _RunEventBase:
    timestamp: float
    task_id: str
    run_id: str
    mode: RunMode

    def _envelope(self, type_: str) -> dict[str, Any]:
        return {
            "type": type_,
            "ts": self.timestamp,
            "taskId": self.task_id,
            "runId": self.run_id,
            "mode": self.mode,
        }


@dataclass(frozen=True)
class LifecycleEvent(_RunEventBase):
    """A status transition of a run."""

    status: LifecycleStatus
    container_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = self._envelope("lifecycle") | {"status": self.status}
        if self.container_id is not None:
            payload["containerId"] = self.container_id
        return payload


@dataclass(frozen=True)
class PortsEvent(_RunEventBase):
    """Host ports reachable for a run, plus the service to preview."""

    preview_service: str
    ports: tuple[PortBinding, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return self._envelope("ports") | {
            "previewService": self.preview_service,
            "ports": [p.to_dict() for p in self.ports],
        }


@dataclass(frozen=True)
class ErrorEvent(_RunEventBase):
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return self._envelope("error") | {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class ResultEvent(_RunEventBase):
    """Terminal outcome of a start attempt."""

    status: Literal["succeeded", "failed"]

    def to_dict(self) -> dict[str, Any]:
        return self._envelope("result") | {"status": self.status}


RunEvent: TypeAlias = LifecycleEvent | PortsEvent | ErrorEvent | ResultEvent
Listener: TypeAlias = Callable[[RunEvent], None]


class RunEventBus:
    """Ordered, exception-isolated fan-out of run events."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    def emit(self, event: RunEvent) -> None:
        # Iterate a snapshot: listeners may (un)subscribe while being called
        for listener in tuple(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.warning(
                    "Run event listener error",
                    err=str(exc),
                    event_type=type(event).__name__,
                    task_id=event.task_id,
                )
