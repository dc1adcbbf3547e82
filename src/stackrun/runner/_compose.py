"""Lifecycle driver for tasks that ship a compose manifest.

Sequence: probe ``compose version`` → render + discover ports → allocate
host ports → sanitize manifest + write override → ``up -d`` → read back
published ports → ``ports`` + ``ready`` events.
"""

from __future__ import annotations

import contextlib
import subprocess
from pathlib import Path

from stackrun.config import get_settings
from stackrun.engine import describe_command_error, run_engine
from stackrun.logger import logger
from stackrun.ports import PortAllocator
from stackrun.runner._context import RunContext, RunPreconditionError, project_name, state_dir
from stackrun.runner._manifest import (
    SANITIZED_FILENAME,
    discover_compose_ports,
    render_compose_config,
    write_sanitized_manifest,
)
from stackrun.runner._override import write_override
from stackrun.runner._preview import DEFAULT_PREVIEW_SERVICE, choose_preview_service
from stackrun.runner._published import parse_published_ports
from stackrun.types import PortBinding, PortRequest, ResolvedTaskConfig, RunSuccess, StartError

COMPOSE_UNAVAILABLE_MESSAGE = (
    "Docker Compose is not available. Please install/update Docker Desktop."
)


async def _ensure_compose() -> None:
    try:
        await run_engine("compose", "version", timeout=get_settings().engine.probe_timeout)
    except (subprocess.SubprocessError, OSError) as exc:
        logger.warning("Compose probe failed", err=describe_command_error(exc))
        raise RunPreconditionError(StartError("UNKNOWN", COMPOSE_UNAVAILABLE_MESSAGE)) from exc


def _port_requests(discovered: list[PortRequest], config: ResolvedTaskConfig) -> list[PortRequest]:
    # Discovered ports win so we never invent services the manifest lacks
    if discovered:
        return discovered
    return [PortRequest(p.service, p.container_port, preview=p.preview) for p in config.ports]


def _prepare_sanitized(
    rendered: dict | None,
    requests: list[PortRequest],
    out_dir: Path,
) -> Path | None:
    """Write the sanitized manifest; ``None`` means use the original."""
    stale = out_dir / SANITIZED_FILENAME
    with contextlib.suppress(FileNotFoundError):
        stale.unlink()
    if rendered is None:
        logger.warning("No rendered manifest; proceeding with original compose file")
        return None
    try:
        return write_sanitized_manifest(rendered, requests, out_dir)
    except (OSError, TypeError, ValueError) as exc:
        logger.warning("Failed to sanitize compose file; proceeding with original", err=str(exc))
        return None


async def _published_ports(project: str, allocated: list[PortBinding]) -> list[PortBinding]:
    try:
        result = await run_engine(
            "compose",
            "-p",
            project,
            "ps",
            "--format",
            "json",
            timeout=get_settings().engine.query_timeout,
        )
    except (subprocess.SubprocessError, OSError) as exc:
        logger.warning(
            "compose ps failed; reporting allocated ports", err=describe_command_error(exc)
        )
        return list(allocated)
    return parse_published_ports(result.stdout, allocated)


async def run_compose(
    ctx: RunContext,
    *,
    task_path: Path,
    compose_file: Path,
    config: ResolvedTaskConfig,
    source_path: str | None,
    allocator: PortAllocator,
) -> tuple[RunSuccess, list[PortBinding]]:
    """Bring the stack up; returns the result plus the ports it reserved."""
    s = get_settings()
    project = project_name(ctx.task_id)

    await _ensure_compose()

    rendered = await render_compose_config(compose_file, task_path)
    requests = _port_requests(discover_compose_ports(rendered), config)
    logger.info(
        "Compose port requests",
        task_id=ctx.task_id,
        ports=[f"{r.service}:{r.container_port}" for r in requests],
    )

    allocated = allocator.allocate(requests)
    try:
        preview_service = choose_preview_service(requests) or DEFAULT_PREVIEW_SERVICE

        out_dir = state_dir(task_path)
        sanitized = _prepare_sanitized(rendered, requests, out_dir)
        override = write_override(allocated, out_dir)

        args: list[str] = ["compose"]
        if config.env_file:
            env_file = (task_path / config.env_file).resolve()
            if env_file.is_file():
                args += ["--env-file", str(env_file)]
        args += [
            "-p",
            project,
            "--project-directory",
            str(task_path),
            "-f",
            str(sanitized or compose_file),
            "-f",
            str(override),
            "up",
            "-d",
        ]

        ctx.lifecycle("starting")
        await run_engine(*args, cwd=task_path, timeout=s.engine.up_timeout)
    except BaseException:
        allocator.release(allocated)
        raise

    published = await _published_ports(project, allocated)
    ctx.ports(published, preview_service)
    ctx.lifecycle("ready")
    return RunSuccess(run_id=ctx.run_id, config=config, source_path=source_path), allocated
