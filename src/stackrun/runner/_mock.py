"""Engine-free run: the same event shape as a real start, nothing launched.

Used for ``mode="host"`` and for environments without a container engine.
"""

from __future__ import annotations

from stackrun.event_bus import LifecycleEvent, PortsEvent, RunEvent
from stackrun.ports import PortAllocator
from stackrun.runner._context import Clock, project_name
from stackrun.runner._preview import DEFAULT_PREVIEW_SERVICE, choose_preview_service
from stackrun.types import ResolvedTaskConfig, RunMode


def generate_mock_start_events(
    *,
    task_id: str,
    config: ResolvedTaskConfig,
    allocator: PortAllocator,
    run_id: str,
    mode: RunMode,
    clock: Clock,
) -> list[RunEvent]:
    """Allocate ports and build building → starting → ports → ready.

    Raises ``PortAllocationError`` before producing any event.
    """
    bindings = allocator.allocate(config.ports)
    preview_service = choose_preview_service(config.ports) or DEFAULT_PREVIEW_SERVICE
    base = {"task_id": task_id, "run_id": run_id, "mode": mode}
    return [
        LifecycleEvent(timestamp=clock(), status="building", **base),
        LifecycleEvent(
            timestamp=clock(),
            status="starting",
            container_id=project_name(task_id),
            **base,
        ),
        PortsEvent(
            timestamp=clock(),
            preview_service=preview_service,
            ports=tuple(bindings),
            **base,
        ),
        LifecycleEvent(timestamp=clock(), status="ready", **base),
    ]
