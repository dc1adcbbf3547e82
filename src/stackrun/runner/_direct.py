"""Lifecycle driver for a single-container run (no compose manifest).

Preconditions are checked on the host before any engine call, so a
misconfigured ``workdir`` never leads to a container that installs into
the wrong directory.
"""

from __future__ import annotations

import posixpath
import subprocess
from pathlib import Path

from stackrun.config import get_settings
from stackrun.engine import describe_command_error, run_engine
from stackrun.logger import logger
from stackrun.ports import PortAllocator
from stackrun.runner._context import RunContext, RunPreconditionError, project_name
from stackrun.runner._preview import DEFAULT_PREVIEW_SERVICE
from stackrun.runner._published import SERVICE_LABEL_PREFIX
from stackrun.task_config import infer_package_manager
from stackrun.types import (
    PackageManager,
    PortBinding,
    ResolvedTaskConfig,
    RunSuccess,
    StartError,
)

CONTAINER_MOUNT = "/workspace"
PROJECT_MANIFEST = "package.json"
TASK_LABEL = "stackrun.task"
ENGINE_UNAVAILABLE_MESSAGE = (
    "Docker is not available or not responding. Please start Docker Desktop."
)

# Prefer the lockfile when it exists; never create a lockfile for another manager.
INSTALL_COMMANDS: dict[PackageManager, str] = {
    "npm": "if [ -f package-lock.json ]; then npm ci; else npm install --no-package-lock; fi",
    "bun": (
        "if [ -f bun.lockb ] || [ -f bun.lock ]; then bun install --frozen-lockfile; "
        "else bun install; fi"
    ),
    "pnpm": (
        "corepack enable && if [ -f pnpm-lock.yaml ]; then pnpm install --frozen-lockfile; "
        "else pnpm install; fi"
    ),
    "yarn": (
        "corepack enable && if [ -f yarn.lock ]; then yarn install --frozen-lockfile "
        "|| yarn install; else yarn install; fi"
    ),
}


def image_for(package_manager: PackageManager) -> str:
    s = get_settings().runner
    return s.bun_image if package_manager == "bun" else s.node_image


def build_start_script(package_manager: PackageManager, start_command: str) -> str:
    return f"{INSTALL_COMMANDS[package_manager]} && {start_command}"


def _invalid_workdir(message: str, workdir: Path) -> RunPreconditionError:
    return RunPreconditionError(
        StartError(
            "INVALID_ARGUMENT",
            message,
            config_path=str(workdir),
            config_key="workdir",
        )
    )


def check_workdir(task_path: Path, config: ResolvedTaskConfig) -> Path:
    """Resolve the workdir and verify it is a project directory inside the task."""
    workdir = (task_path / config.workdir).resolve()
    if not workdir.is_relative_to(task_path):
        raise _invalid_workdir(f"Configured workdir is outside the task: {workdir}", workdir)
    if not workdir.is_dir():
        raise _invalid_workdir(f"Configured workdir does not exist: {workdir}", workdir)
    if not (workdir / PROJECT_MANIFEST).is_file():
        state = get_settings().runner.state_dir
        raise _invalid_workdir(
            f"No {PROJECT_MANIFEST} found in workdir: {workdir}. "
            f"Set the correct 'workdir' in {state}/config.json",
            workdir,
        )
    return workdir


async def _ensure_engine() -> None:
    try:
        await run_engine(
            "info",
            "--format",
            "{{.ServerVersion}}",
            timeout=get_settings().engine.probe_timeout,
        )
    except (subprocess.SubprocessError, OSError) as exc:
        logger.warning("Engine probe failed", err=describe_command_error(exc))
        raise RunPreconditionError(StartError("UNKNOWN", ENGINE_UNAVAILABLE_MESSAGE)) from exc


async def _remove_stale_container(name: str) -> None:
    try:
        await run_engine("rm", "-f", name, check=False, timeout=get_settings().engine.query_timeout)
    except (subprocess.SubprocessError, OSError) as exc:
        logger.debug("Stale container cleanup skipped", container=name, err=str(exc))


async def run_direct(
    ctx: RunContext,
    *,
    task_path: Path,
    config: ResolvedTaskConfig,
    source_path: str | None,
    allocator: PortAllocator,
) -> tuple[RunSuccess, list[PortBinding]]:
    """Launch the dev container; returns the result plus the ports it reserved."""
    s = get_settings()
    workdir = check_workdir(task_path, config)
    await _ensure_engine()

    allocated = allocator.allocate(config.ports)
    try:
        preview = next((p for p in config.ports if p.preview), None) or (
            config.ports[0] if config.ports else None
        )
        preview_service = preview.service if preview else DEFAULT_PREVIEW_SERVICE
        preview_binding = next((b for b in allocated if b.service == preview_service), None)

        ctx.lifecycle("building")

        container_name = project_name(ctx.task_id)
        await _remove_stale_container(container_name)

        # Lockfiles in the workdir beat whatever the config claims
        package_manager = infer_package_manager(workdir) or config.package_manager
        if package_manager != config.package_manager:
            logger.info(
                "Package manager overridden by lockfile",
                configured=config.package_manager,
                detected=package_manager,
            )

        args: list[str] = ["run", "-d", "--name", container_name]
        args += ["--label", f"{TASK_LABEL}={ctx.task_id}"]
        for b in allocated:
            args += ["-p", f"{b.host_port}:{b.container_port}"]
            args += ["--label", f"{SERVICE_LABEL_PREFIX}{b.container_port}={b.service}"]

        args += ["-v", f"{task_path}:{CONTAINER_MOUNT}"]
        rel_workdir = workdir.relative_to(task_path).as_posix()
        args += ["-w", posixpath.normpath(posixpath.join(CONTAINER_MOUNT, rel_workdir))]

        # Dev servers must listen on all interfaces to be reachable via -p
        args += ["-e", "HOST=0.0.0.0"]
        if preview_binding is not None:
            args += ["-e", f"PORT={preview_binding.container_port}"]

        if config.env_file:
            env_file = (task_path / config.env_file).resolve()
            if not env_file.is_file():
                raise RunPreconditionError(
                    StartError(
                        "UNKNOWN",
                        f"Env file not found: {env_file}",
                        config_path=str(env_file),
                        config_key="envFile",
                    )
                )
            args += ["--env-file", str(env_file)]

        args += [
            image_for(package_manager),
            "bash",
            "-lc",
            build_start_script(package_manager, config.start_command),
        ]

        ctx.lifecycle("starting")
        result = await run_engine(*args, timeout=s.engine.run_timeout)
    except BaseException:
        allocator.release(allocated)
        raise

    container_id = (result.stdout or "").strip()
    ctx.ports(allocated, preview_service)
    ctx.lifecycle("starting", container_id=container_id)
    ctx.lifecycle("ready")
    return RunSuccess(run_id=ctx.run_id, config=config, source_path=source_path), allocated
