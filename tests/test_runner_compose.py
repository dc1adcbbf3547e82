"""Tests for compose-managed runs."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest
import yaml
from conftest import write_task_config

from stackrun.event_bus import ErrorEvent, LifecycleEvent, PortsEvent, ResultEvent
from stackrun.ports import PortAllocationError
from stackrun.runner._compose import COMPOSE_UNAVAILABLE_MESSAGE
from stackrun.runner._manifest import SANITIZED_FILENAME
from stackrun.runner._override import OVERRIDE_FILENAME
from stackrun.types import PortBinding, PortRequest, RunFailure, RunOptions, RunSuccess

_RENDERED = {
    "name": "demo",
    "services": {
        "web": {"image": "node:20", "ports": [{"target": 3000, "published": "3000"}]},
        "db": {"image": "postgres:16"},
    },
}

_PS = [
    {
        "Service": "web",
        "State": "running",
        "Publishers": [
            {"URL": "0.0.0.0", "TargetPort": 3000, "PublishedPort": 55231, "Protocol": "tcp"},
            {"URL": "::", "TargetPort": 3000, "PublishedPort": 55231, "Protocol": "tcp"},
        ],
    },
    {"Service": "db", "State": "running", "Publishers": []},
]


@pytest.fixture
def compose_task(task_dir: Path) -> Path:
    (task_dir / "docker-compose.yml").write_text("services:\n  web:\n    image: node:20\n")
    return task_dir.resolve()


def _options(task: Path, task_id: str = "t1") -> RunOptions:
    return RunOptions(task_id=task_id, task_path=str(task))


def _up_call(engine) -> tuple[str, ...]:
    calls = engine.called("compose", "up")
    assert len(calls) == 1
    return calls[0]


class TestComposeRun:
    @pytest.mark.asyncio
    async def test_successful_run(self, service, engine, events, compose_task: Path) -> None:
        engine.on("compose", "config", stdout=json.dumps(_RENDERED))
        engine.on("compose", "ps", stdout=json.dumps(_PS))

        result = await service.start(_options(compose_task))

        assert isinstance(result, RunSuccess)
        assert result.run_id.startswith("r_")
        assert result.source_path is None

        assert [type(e) for e in events] == [LifecycleEvent, PortsEvent, LifecycleEvent, ResultEvent]
        assert events[0].status == "starting"
        ports_event = events[1]
        assert ports_event.preview_service == "web"
        assert ports_event.ports == (PortBinding("web", 3000, 55231),)
        assert ports_event.ports[0].url == "http://localhost:55231"
        assert events[2].status == "ready"
        assert events[3].status == "succeeded"
        assert {e.run_id for e in events} == {result.run_id}

    @pytest.mark.asyncio
    async def test_up_uses_sanitized_manifest_and_override(
        self, service, engine, compose_task: Path
    ) -> None:
        engine.on("compose", "config", stdout=json.dumps(_RENDERED))

        await service.start(_options(compose_task))

        state = compose_task / ".stackrun"
        sanitized = state / SANITIZED_FILENAME
        override = state / OVERRIDE_FILENAME
        assert _up_call(engine) == (
            "compose",
            "-p",
            "stackrun_ws_t1",
            "--project-directory",
            str(compose_task),
            "-f",
            str(sanitized),
            "-f",
            str(override),
            "up",
            "-d",
        )

        manifest = json.loads(sanitized.read_text())
        assert "ports" not in manifest["services"]["web"]
        assert manifest["services"]["web"]["expose"] == [3000]
        assert manifest["services"]["db"] == {"image": "postgres:16"}

        fragment = yaml.safe_load(override.read_text())
        assert fragment == {
            "services": {"web": {"ports": [{"target": 3000, "published": 55231, "protocol": "tcp"}]}}
        }

    @pytest.mark.asyncio
    async def test_probe_then_render_then_up(self, service, engine, compose_task: Path) -> None:
        engine.on("compose", "config", stdout=json.dumps(_RENDERED))

        await service.start(_options(compose_task))

        assert engine.calls[0] == ("compose", "version")
        assert engine.calls[1][-3:] == ("config", "--format", "json")
        assert engine.calls[2][-2:] == ("up", "-d")
        assert engine.calls[3] == ("compose", "-p", "stackrun_ws_t1", "ps", "--format", "json")

    @pytest.mark.asyncio
    async def test_env_file_passed_when_present(self, service, engine, compose_task: Path) -> None:
        (compose_task / ".env.local").write_text("A=1\n")
        write_task_config(compose_task, {"envFile": ".env.local"})
        engine.on("compose", "config", stdout=json.dumps(_RENDERED))

        result = await service.start(_options(compose_task))

        assert isinstance(result, RunSuccess)
        assert result.source_path == str(compose_task / ".stackrun" / "config.json")
        up = _up_call(engine)
        assert up[1:3] == ("--env-file", str(compose_task / ".env.local"))

    @pytest.mark.asyncio
    async def test_render_failure_falls_back_to_original_manifest(
        self, service, engine, allocator, compose_task: Path
    ) -> None:
        engine.on("compose", "config", returncode=1, stderr="invalid interpolation")

        result = await service.start(_options(compose_task))

        assert isinstance(result, RunSuccess)
        # Nothing discovered: the task config's default port is used
        assert allocator.calls == [[PortRequest("app", 3000, preview=True)]]
        up = _up_call(engine)
        assert str(compose_task / "docker-compose.yml") in up
        assert not (compose_task / ".stackrun" / SANITIZED_FILENAME).exists()

    @pytest.mark.asyncio
    async def test_stale_sanitized_manifest_not_reused(
        self, service, engine, compose_task: Path
    ) -> None:
        state = compose_task / ".stackrun"
        state.mkdir()
        (state / SANITIZED_FILENAME).write_text("{}")
        engine.on("compose", "config", returncode=1)

        await service.start(_options(compose_task))

        assert not (state / SANITIZED_FILENAME).exists()
        assert str(state / SANITIZED_FILENAME) not in _up_call(engine)

    @pytest.mark.asyncio
    async def test_ps_failure_reports_allocated_ports(
        self, service, engine, events, compose_task: Path
    ) -> None:
        engine.on("compose", "config", stdout=json.dumps(_RENDERED))
        engine.on("compose", "ps", exc=subprocess.TimeoutExpired(["docker"], 30))

        result = await service.start(_options(compose_task))

        assert isinstance(result, RunSuccess)
        ports_event = next(e for e in events if isinstance(e, PortsEvent))
        assert ports_event.ports == (PortBinding("web", 3000, 55231),)


class TestComposeFailures:
    @pytest.mark.asyncio
    async def test_compose_unavailable(
        self, service, engine, allocator, events, compose_task: Path
    ) -> None:
        engine.on("compose", "version", returncode=1, stderr="unknown command")

        result = await service.start(_options(compose_task))

        assert isinstance(result, RunFailure)
        assert result.error.code == "UNKNOWN"
        assert result.error.message == COMPOSE_UNAVAILABLE_MESSAGE
        assert allocator.calls == []
        assert [type(e) for e in events] == [ErrorEvent, ResultEvent]
        assert events[1].status == "failed"

    @pytest.mark.asyncio
    async def test_up_failure_releases_ports(
        self, service, engine, allocator, events, compose_task: Path
    ) -> None:
        engine.on("compose", "config", stdout=json.dumps(_RENDERED))
        engine.on("compose", "up", returncode=1, stderr="pull access denied")

        result = await service.start(_options(compose_task))

        assert isinstance(result, RunFailure)
        assert result.error.message == "pull access denied"
        assert allocator.released == [PortBinding("web", 3000, 55231)]
        assert [type(e) for e in events] == [LifecycleEvent, ErrorEvent, ResultEvent]
        assert events[1].code == "UNKNOWN"
        assert not engine.called("compose", "ps")

    @pytest.mark.asyncio
    async def test_port_allocation_failure(
        self, service, engine, allocator, events, compose_task: Path
    ) -> None:
        engine.on("compose", "config", stdout=json.dumps(_RENDERED))
        allocator.error = PortAllocationError("Unable to allocate a free host port")

        result = await service.start(_options(compose_task))

        assert isinstance(result, RunFailure)
        assert result.error.code == "PORT_ALLOC_FAILED"
        assert not engine.called("compose", "up")
        assert [type(e) for e in events] == [ErrorEvent, ResultEvent]
