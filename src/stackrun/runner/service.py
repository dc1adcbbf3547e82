"""Run registry — the public start/stop/inspect surface.

At most one start is in flight per task.  A second ``start`` for the same
task joins the pending one instead of invoking the engine again.

asyncio.ensure_future doesn't run the coroutine synchronously up to the
first await, so the in-flight entry is inserted by the synchronous caller
right after scheduling, and removed in the coroutine's finally block
whatever the outcome.

Host ports reserved by a successful start stay with the task until it is
stopped or started again; either one hands them back to the allocator.
"""

from __future__ import annotations

import asyncio
import subprocess
import time
from collections.abc import Callable, Sequence
from pathlib import Path

from stackrun.config import get_settings
from stackrun.engine import describe_command_error, engine_responding, run_engine
from stackrun.event_bus import Listener, PortsEvent, RunEventBus
from stackrun.logger import logger
from stackrun.ports import PortAllocationError, PortAllocator
from stackrun.runner._compose import run_compose
from stackrun.runner._context import (
    Clock,
    RunContext,
    RunPreconditionError,
    generate_run_id,
    project_name,
)
from stackrun.runner._direct import run_direct
from stackrun.runner._mock import generate_mock_start_events
from stackrun.runner._preview import choose_preview_service
from stackrun.runner._published import (
    any_running,
    bindings_from_records,
    parse_container_inspect,
    parse_ps_records,
)
from stackrun.runner._strategy import find_compose_file
from stackrun.task_config import ConfigLoaded, ConfigLoadFailed, ConfigLoadResult, load_task_config
from stackrun.types import (
    InspectResult,
    PortBinding,
    RunFailure,
    RunMode,
    RunOptions,
    RunResult,
    RunSuccess,
    StartError,
    StopResult,
)

ConfigLoader = Callable[[str | Path], ConfigLoadResult]

_MISSING_IDS = StartError("INVALID_ARGUMENT", "`task_id` and `task_path` are required")


class ContainerRunnerService:
    """Starts, stops, and inspects per-task container runs."""

    def __init__(
        self,
        *,
        port_allocator: PortAllocator | None = None,
        bus: RunEventBus | None = None,
        config_loader: ConfigLoader = load_task_config,
    ) -> None:
        self.bus = bus or RunEventBus()
        self._allocator = port_allocator or PortAllocator()
        self._load_config = config_loader
        self._in_flight: dict[str, asyncio.Future[RunResult]] = {}
        self._allocations: dict[str, list[PortBinding]] = {}

    # -- events -----------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.bus.subscribe(listener)

    def unsubscribe(self, listener: Listener) -> None:
        self.bus.unsubscribe(listener)

    # -- port bookkeeping -------------------------------------------------

    def reserved_ports(self, task_id: str) -> list[PortBinding]:
        return list(self._allocations.get(task_id, ()))

    def _keep_ports(self, task_id: str, bindings: Sequence[PortBinding]) -> None:
        self._allocations[task_id] = list(bindings)

    def _release_ports(self, task_id: str) -> None:
        bindings = self._allocations.pop(task_id, None)
        if not bindings:
            return
        self._allocator.release(bindings)
        logger.info(
            "Released host ports",
            task_id=task_id,
            ports=[b.host_port for b in bindings],
        )

    # -- start ------------------------------------------------------------

    def is_starting(self, task_id: str) -> bool:
        return task_id in self._in_flight

    async def start(self, options: RunOptions) -> RunResult:
        """Start a run for the task, or join the start already in flight."""
        pending = self._in_flight.get(options.task_id)
        if pending is not None:
            logger.info("Start already in flight; joining", task_id=options.task_id)
            return await asyncio.shield(pending)

        future = asyncio.ensure_future(self._start_tracked(options))
        self._in_flight[options.task_id] = future
        # Shield: one caller being cancelled must not cancel the shared start
        return await asyncio.shield(future)

    async def _start_tracked(self, options: RunOptions) -> RunResult:
        try:
            return await self._start(options)
        finally:
            self._in_flight.pop(options.task_id, None)

    async def _prepare(self, options: RunOptions) -> tuple[RunContext, ConfigLoaded] | RunFailure:
        if not options.task_id or not options.task_path:
            return RunFailure(_MISSING_IDS)
        clock = options.clock or time.time
        ctx = RunContext(
            bus=self.bus,
            task_id=options.task_id,
            run_id=options.run_id or generate_run_id(clock),
            mode=options.mode,
            clock=clock,
        )
        try:
            loaded = await asyncio.to_thread(self._load_config, options.task_path)
        except Exception as exc:
            logger.exception("Task config loader crashed", task_id=options.task_id)
            error = StartError("UNKNOWN", describe_command_error(exc))
            ctx.fail(error)
            return RunFailure(error)

        if isinstance(loaded, ConfigLoadFailed):
            error = loaded.error.to_start_error()
            logger.warning(
                "Task config failed to load",
                task_id=options.task_id,
                code=error.code,
                key=error.config_key,
            )
            ctx.fail(error)
            return RunFailure(error)

        # A new start supersedes the previous run's reservation
        self._release_ports(ctx.task_id)
        return ctx, loaded

    async def _start(self, options: RunOptions) -> RunResult:
        prepared = await self._prepare(options)
        if isinstance(prepared, RunFailure):
            return prepared
        ctx, loaded = prepared

        if ctx.mode != "container":
            return self._run_mock(ctx, loaded)

        task_path = Path(options.task_path).resolve()
        compose_file = find_compose_file(task_path)
        try:
            if compose_file is not None:
                logger.info(
                    "Compose manifest detected", task_id=ctx.task_id, file=compose_file.name
                )
                result, allocated = await run_compose(
                    ctx,
                    task_path=task_path,
                    compose_file=compose_file,
                    config=loaded.config,
                    source_path=loaded.source_path,
                    allocator=self._allocator,
                )
            else:
                result, allocated = await run_direct(
                    ctx,
                    task_path=task_path,
                    config=loaded.config,
                    source_path=loaded.source_path,
                    allocator=self._allocator,
                )
        except RunPreconditionError as exc:
            error = exc.error
        except PortAllocationError as exc:
            error = StartError(exc.code, exc.message)
        except Exception as exc:
            logger.exception("Container run failed", task_id=ctx.task_id)
            error = StartError("UNKNOWN", describe_command_error(exc))
        else:
            self._keep_ports(ctx.task_id, allocated)
            ctx.result(True)
            return result

        ctx.fail(error)
        return RunFailure(error)

    async def start_mock(self, options: RunOptions) -> RunResult:
        """Emit a realistic start sequence without touching the engine."""
        prepared = await self._prepare(options)
        if isinstance(prepared, RunFailure):
            return prepared
        ctx, loaded = prepared
        return self._run_mock(ctx, loaded)

    def _run_mock(self, ctx: RunContext, loaded: ConfigLoaded) -> RunResult:
        try:
            events = generate_mock_start_events(
                task_id=ctx.task_id,
                config=loaded.config,
                allocator=self._allocator,
                run_id=ctx.run_id,
                mode=ctx.mode,
                clock=ctx.clock,
            )
        except PortAllocationError as exc:
            error = StartError(exc.code, exc.message)
            ctx.fail(error)
            return RunFailure(error)

        for event in events:
            if isinstance(event, PortsEvent):
                self._keep_ports(ctx.task_id, event.ports)
            self.bus.emit(event)
        ctx.result(True)
        return RunSuccess(run_id=ctx.run_id, config=loaded.config, source_path=loaded.source_path)

    # -- stop -------------------------------------------------------------

    async def stop(
        self,
        task_id: str,
        *,
        clock: Clock | None = None,
        mode: RunMode = "container",
    ) -> StopResult:
        """Tear down the task's compose project and container (best-effort steps).

        The task's reserved host ports go back to the allocator once teardown
        has run.
        """
        clock = clock or time.time
        ctx = RunContext(self.bus, task_id, generate_run_id(clock), mode, clock)

        pending = self._in_flight.get(task_id)
        if pending is not None:
            logger.info("Waiting for in-flight start before stopping", task_id=task_id)
            await asyncio.shield(pending)

        try:
            ctx.lifecycle("stopping")
            name = project_name(task_id)
            timeout = get_settings().engine.query_timeout
            await _best_effort("compose down", "compose", "-p", name, "down", "-v", timeout=timeout)
            await _best_effort("container rm", "rm", "-f", name, timeout=timeout)
            self._release_ports(task_id)
            ctx.lifecycle("stopped")
        except Exception as exc:
            message = str(exc)
            logger.exception("Stop failed", task_id=task_id)
            ctx.error(StartError("UNKNOWN", message))
            return StopResult(ok=False, error=message)
        return StopResult(ok=True)

    # -- inspect ----------------------------------------------------------

    async def inspect(self, task_id: str) -> InspectResult:
        """Read-only view of what is running for a task (no allocation, no events)."""
        name = project_name(task_id)
        timeout = get_settings().engine.query_timeout
        try:
            result = await run_engine(
                "compose", "-p", name, "ps", "--format", "json", timeout=timeout
            )
        except (subprocess.SubprocessError, OSError) as exc:
            message = describe_command_error(exc)
            if not await engine_responding():
                return InspectResult(ok=False, error=message)
            logger.info("compose ps failed; reporting not running", task_id=task_id, err=message)
            return InspectResult(ok=True, running=False)

        records = parse_ps_records(result.stdout)
        if records:
            running = any_running(records)
            ports = bindings_from_records(records)
        else:
            running, ports = await _inspect_container(name, timeout)
        return InspectResult(
            ok=True,
            running=running,
            ports=ports,
            preview_service=choose_preview_service(ports),
        )


async def _best_effort(step: str, *args: str, timeout: float) -> None:
    try:
        await run_engine(*args, timeout=timeout)
    except (subprocess.SubprocessError, OSError) as exc:
        logger.warning("Teardown step failed (ignored)", step=step, err=describe_command_error(exc))


async def _inspect_container(name: str, timeout: float) -> tuple[bool, list[PortBinding]]:
    try:
        result = await run_engine("inspect", name, check=False, timeout=timeout)
    except (subprocess.SubprocessError, OSError) as exc:
        logger.info("Container inspect failed", container=name, err=describe_command_error(exc))
        return False, []
    if result.returncode != 0:
        return False, []
    return parse_container_inspect(result.stdout)
