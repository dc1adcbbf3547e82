"""Data models for stackrun."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias

PackageManager = Literal["npm", "yarn", "pnpm", "bun"]
RunMode = Literal["container", "host"]
ErrorCode = str  # INVALID_ARGUMENT | IO_ERROR | INVALID_JSON | VALIDATION_FAILED | ...


@dataclass(frozen=True)
class RunOptions:
    task_id: str
    task_path: str
    run_id: str | None = None  # derived from the clock when absent
    mode: RunMode = "container"
    clock: Callable[[], float] | None = None  # epoch seconds; defaults to time.time


@dataclass(frozen=True)
class PortRequest:
    service: str
    container_port: int
    protocol: Literal["tcp"] = "tcp"
    preview: bool = False


@dataclass(frozen=True)
class PortBinding:
    service: str
    container_port: int
    host_port: int
    protocol: Literal["tcp"] = "tcp"

    @property
    def url(self) -> str:
        return f"http://localhost:{self.host_port}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "protocol": self.protocol,
            "containerPort": self.container_port,
            "hostPort": self.host_port,
            "url": self.url,
        }


@dataclass(frozen=True)
class ResolvedTaskConfig:
    """Fully resolved per-task run configuration (defaults applied)."""

    package_manager: PackageManager = "npm"
    start_command: str = "npm run dev"
    workdir: str = "."
    env_file: str | None = None
    ports: tuple[PortRequest, ...] = ()
    version: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "packageManager": self.package_manager,
            "start": self.start_command,
            "envFile": self.env_file,
            "workdir": self.workdir,
            "ports": [
                {
                    "service": p.service,
                    "container": p.container_port,
                    "protocol": p.protocol,
                    "preview": p.preview,
                }
                for p in self.ports
            ],
        }


@dataclass(frozen=True)
class StartError:
    """Failure payload shared by error events and failed results."""

    code: ErrorCode
    message: str
    config_path: str | None = None
    config_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "configPath": self.config_path,
            "configKey": self.config_key,
        }


@dataclass(frozen=True)
class RunSuccess:
    run_id: str
    config: ResolvedTaskConfig
    source_path: str | None = None
    ok: Literal[True] = True


@dataclass(frozen=True)
class RunFailure:
    error: StartError
    ok: Literal[False] = False


RunResult: TypeAlias = RunSuccess | RunFailure


@dataclass(frozen=True)
class StopResult:
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class InspectResult:
    ok: bool
    running: bool = False
    ports: list[PortBinding] = field(default_factory=list)
    preview_service: str | None = None
    error: str | None = None
