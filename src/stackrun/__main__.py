"""Entry point for `python -m stackrun` / `stackrun`.

Subcommands:
    stackrun config <task_path>        Print the resolved task config
    stackrun start <task_path>         Start a run, streaming events as JSON lines
    stackrun stop <task_id>            Tear down a task's run
    stackrun inspect <task_id>         Show what is running for a task
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from stackrun.config import get_settings
from stackrun.event_bus import RunEvent
from stackrun.logger import configure_level
from stackrun.runner import ContainerRunnerService
from stackrun.task_config import ConfigLoadFailed, load_task_config
from stackrun.types import RunFailure, RunOptions


def _print_json(payload: object) -> None:
    print(json.dumps(payload), flush=True)


def _config(task_path: str) -> int:
    loaded = load_task_config(task_path)
    if isinstance(loaded, ConfigLoadFailed):
        _print_json({"ok": False, "error": loaded.error.to_start_error().to_dict()})
        return 1
    _print_json({"ok": True, "config": loaded.config.to_dict(), "sourcePath": loaded.source_path})
    return 0


async def _start(task_path: str, task_id: str, mock: bool) -> int:
    service = ContainerRunnerService()

    def _on_event(event: RunEvent) -> None:
        _print_json(event.to_dict())

    service.subscribe(_on_event)
    options = RunOptions(task_id=task_id, task_path=task_path)
    result = await (service.start_mock(options) if mock else service.start(options))
    if isinstance(result, RunFailure):
        print(f"Error: {result.error.message}", file=sys.stderr)
        return 1
    return 0


async def _stop(task_id: str) -> int:
    service = ContainerRunnerService()
    service.subscribe(lambda event: _print_json(event.to_dict()))
    result = await service.stop(task_id)
    return 0 if result.ok else 1


async def _inspect(task_id: str) -> int:
    result = await ContainerRunnerService().inspect(task_id)
    if not result.ok:
        _print_json({"ok": False, "error": result.error})
        return 1
    _print_json(
        {
            "ok": True,
            "running": result.running,
            "ports": [p.to_dict() for p in result.ports],
            "previewService": result.preview_service,
        }
    )
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="stackrun",
        description="Run a task checkout in containers on collision-free host ports",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_config = sub.add_parser("config", help="Print the resolved task config")
    p_config.add_argument("task_path")

    p_start = sub.add_parser("start", help="Start a run and stream its events")
    p_start.add_argument("task_path")
    p_start.add_argument("--task-id", help="Task id (default: task directory name)")
    p_start.add_argument("--mock", action="store_true", help="Emit events without an engine")

    p_stop = sub.add_parser("stop", help="Stop a task's run")
    p_stop.add_argument("task_id")

    p_inspect = sub.add_parser("inspect", help="Show a task's running ports")
    p_inspect.add_argument("task_id")

    args = parser.parse_args()

    configure_level(get_settings().logging.level)

    match args.command:
        case "config":
            code = _config(args.task_path)
        case "start":
            task_id = args.task_id or Path(args.task_path).resolve().name
            code = asyncio.run(_start(args.task_path, task_id, args.mock))
        case "stop":
            code = asyncio.run(_stop(args.task_id))
        case "inspect":
            code = asyncio.run(_inspect(args.task_id))
        case _:
            parser.error(f"unknown command {args.command}")
    sys.exit(code)


if __name__ == "__main__":
    main()
