"""Container engine CLI helpers — subprocess wrappers used by the runner.

All public functions are async so they don't block the event loop.
The underlying subprocess calls run in a thread via ``asyncio.to_thread``
and always carry a timeout; a timed-out call raises
``subprocess.TimeoutExpired`` rather than hanging.
"""

from __future__ import annotations

import asyncio
import shutil
import subprocess
from pathlib import Path

from stackrun.config import get_settings
from stackrun.logger import logger


def engine_on_path() -> bool:
    """Check if the configured engine CLI is on PATH."""
    return shutil.which(get_settings().engine.cli) is not None


def _run_engine_sync(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
    timeout: float = 30,
) -> subprocess.CompletedProcess[str]:
    """Run an engine CLI command (blocking — internal only)."""
    return subprocess.run(
        [get_settings().engine.cli, *args],
        capture_output=True,
        text=True,
        cwd=str(cwd) if cwd is not None else None,
        timeout=timeout,
        check=check,
    )


async def run_engine(
    *args: str,
    cwd: str | Path | None = None,
    check: bool = True,
    timeout: float = 30,
) -> subprocess.CompletedProcess[str]:
    """Run an engine CLI command without blocking the event loop."""
    logger.info("Engine command", argv=[get_settings().engine.cli, *args], cwd=cwd)
    return await asyncio.to_thread(_run_engine_sync, *args, cwd=cwd, check=check, timeout=timeout)


def _as_text(value: str | bytes | None) -> str:
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return value or ""


def describe_command_error(
    exc: BaseException,
    default: str = "Failed to start container run",
) -> str:
    """Best user-facing text for a failed command: stderr, else stdout, else the error."""
    stderr = _as_text(getattr(exc, "stderr", None)).strip()
    if stderr:
        return stderr
    stdout = _as_text(getattr(exc, "stdout", None)).strip()
    if stdout:
        return stdout
    return str(exc) or default


async def engine_responding() -> bool:
    """True when the engine daemon answers ``info`` within the probe timeout."""
    try:
        await run_engine(
            "info",
            "--format",
            "{{.ServerVersion}}",
            timeout=get_settings().engine.probe_timeout,
        )
    except (subprocess.SubprocessError, OSError) as exc:
        logger.warning("Engine not responding", err=describe_command_error(exc))
        return False
    return True
