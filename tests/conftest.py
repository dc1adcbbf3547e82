"""Shared test fixtures for stackrun."""

from __future__ import annotations

import asyncio
import json
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from unittest.mock import patch

import pytest

from stackrun.event_bus import RunEvent
from stackrun.ports import PortAllocationError
from stackrun.types import PortBinding, PortRequest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Usage::

        s = make_settings(engine=EngineConfig(cli="podman"))
    """
    from stackrun.config import (
        EngineConfig,
        LoggingConfig,
        PortsConfig,
        RunnerConfig,
        Settings,
    )

    defaults = {
        "engine": EngineConfig(),
        "ports": PortsConfig(),
        "runner": RunnerConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    return Settings.model_construct(**defaults)


def write_task_config(task_path: Path, payload: dict) -> Path:
    config_dir = task_path / ".stackrun"
    config_dir.mkdir(parents=True, exist_ok=True)
    path = config_dir / "config.json"
    path.write_text(json.dumps(payload))
    return path


# ---------------------------------------------------------------------------
# Fake engine
# ---------------------------------------------------------------------------


@dataclass
class _Rule:
    tokens: tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    exc: BaseException | None = None
    delay: float = 0.0


class FakeEngine:
    """Scripted stand-in for ``run_engine``; records every argv.

    A rule matches when its first token equals the subcommand and every
    other token appears somewhere in the argv.  Later rules win.  Calls
    with no matching rule succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self.cwds: list[object] = []
        self._rules: list[_Rule] = []

    def on(self, *tokens: str, **kwargs) -> None:
        self._rules.append(_Rule(tokens=tokens, **kwargs))

    def _match(self, args: tuple[str, ...]) -> _Rule | None:
        for rule in reversed(self._rules):
            if args and args[0] == rule.tokens[0] and all(t in args for t in rule.tokens[1:]):
                return rule
        return None

    def called(self, *tokens: str) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c and c[0] == tokens[0] and all(t in c for t in tokens[1:])]

    async def __call__(self, *args: str, cwd=None, check: bool = True, timeout: float = 30):
        self.calls.append(args)
        self.cwds.append(cwd)
        rule = self._match(args) or _Rule(tokens=args)
        if rule.delay:
            await asyncio.sleep(rule.delay)
        if rule.exc is not None:
            raise rule.exc
        argv = ["docker", *args]
        if rule.returncode and check:
            raise subprocess.CalledProcessError(
                rule.returncode, argv, output=rule.stdout, stderr=rule.stderr
            )
        return subprocess.CompletedProcess(argv, rule.returncode, rule.stdout, rule.stderr)


_ENGINE_MODULES = [
    "stackrun.engine",
    "stackrun.runner._manifest",
    "stackrun.runner._compose",
    "stackrun.runner._direct",
    "stackrun.runner.service",
]


class FakeAllocator:
    """Deterministic allocator: hands out sequential host ports from *start*."""

    def __init__(self, start: int = 55231) -> None:
        self._next = start
        self.calls: list[list[PortRequest]] = []
        self.released: list[PortBinding] = []
        self.error: PortAllocationError | None = None

    def allocate(self, requests: Sequence[PortRequest]) -> list[PortBinding]:
        self.calls.append(list(requests))
        if self.error is not None:
            raise self.error
        bindings = []
        for req in requests:
            host = self._next
            self._next += 1
            bindings.append(PortBinding(req.service, req.container_port, host))
        return bindings

    def release(self, bindings: Sequence[PortBinding]) -> None:
        self.released.extend(bindings)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no stackrun.toml,
    no .env, no environment. Tests are isolated from local config.
    """
    safe = make_settings()
    monkeypatch.setattr("stackrun.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    """Patch ``run_engine`` everywhere it is imported with a FakeEngine."""
    fake = FakeEngine()
    patches = [patch(f"{mod}.run_engine", fake) for mod in _ENGINE_MODULES]
    for p in patches:
        p.start()
    try:
        yield fake
    finally:
        for p in patches:
            p.stop()


@pytest.fixture
def allocator() -> FakeAllocator:
    return FakeAllocator()


@pytest.fixture
def task_dir(tmp_path: Path) -> Path:
    """A task checkout with a package.json at its root."""
    root = tmp_path / "task"
    root.mkdir()
    (root / "package.json").write_text('{"name": "demo"}')
    return root


@pytest.fixture
def events() -> list[RunEvent]:
    return []


@pytest.fixture
def service(allocator, events):
    from stackrun.runner import ContainerRunnerService

    svc = ContainerRunnerService(port_allocator=allocator)
    svc.subscribe(events.append)
    return svc
