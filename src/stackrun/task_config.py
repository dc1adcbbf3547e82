"""Per-task run configuration — load, validate, apply defaults.

The config file lives at ``<task>/<state_dir>/config.json`` and is
optional: a task without one runs with defaults (``source_path`` is then
``None``).  Keys are camelCase to match the file the UI writes::

    {
      "packageManager": "pnpm",
      "start": "pnpm dev",
      "workdir": "apps/web",
      "envFile": ".env.local",
      "ports": [{"service": "web", "container": 5173, "preview": true}]
    }

Validation failures carry the offending key path (``ports[1].container``)
so the UI can point at the exact setting.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, TypeAlias

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from stackrun.config import get_settings
from stackrun.types import PackageManager, PortRequest, ResolvedTaskConfig, StartError

CONFIG_FILENAME = "config.json"
SUPPORTED_VERSION = 1
DEFAULT_START_COMMAND = "npm run dev"
DEFAULT_BUN_START_COMMAND = "bun run dev"
DEFAULT_WORKDIR = "."
DEFAULT_PREVIEW_SERVICE = "app"
DEFAULT_CONTAINER_PORT = 3000

# Checked in order; the first lockfile present decides.
PACKAGE_MANAGER_LOCKFILES: tuple[tuple[str, PackageManager], ...] = (
    ("bun.lockb", "bun"),
    ("bun.lock", "bun"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("npm-shrinkwrap.json", "npm"),
)
_PACKAGE_MANAGERS = ("npm", "pnpm", "yarn", "bun")


class ConfigLoadError(Exception):
    """Config could not be read, parsed, or validated."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        config_path: str | None = None,
        config_key: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.config_path = config_path
        self.config_key = config_key

    def to_start_error(self) -> StartError:
        return StartError(
            code=self.code,
            message=self.message,
            config_path=self.config_path,
            config_key=self.config_key,
        )


class ConfigValidationError(ValueError):
    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.key = key


@dataclass(frozen=True)
class ConfigLoaded:
    config: ResolvedTaskConfig
    source_path: str | None = None  # None when defaults were used
    ok: Literal[True] = True


@dataclass(frozen=True)
class ConfigLoadFailed:
    error: ConfigLoadError
    source_path: str | None = None
    ok: Literal[False] = False


ConfigLoadResult: TypeAlias = ConfigLoaded | ConfigLoadFailed


# ---------------------------------------------------------------------------
# File schema
# ---------------------------------------------------------------------------


class _PortEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    service: StrictStr
    container: StrictInt = Field(ge=1, le=65535)
    protocol: StrictStr | None = None
    preview: StrictBool = False

    @field_validator("service")
    @classmethod
    def validate_service(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("`service` must be a non-empty string")
        return v

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str | None) -> str | None:
        if v is not None and v.strip().lower() != "tcp":
            raise ValueError("Only TCP protocol is supported")
        return v


class _TaskConfigFile(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: StrictInt | None = None
    package_manager: StrictStr | None = Field(default=None, alias="packageManager")
    start: StrictStr | None = None
    env_file: StrictStr | None = Field(default=None, alias="envFile")
    workdir: StrictStr | None = None
    ports: list[_PortEntry] | None = None

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: int | None) -> int | None:
        if v is not None and v != SUPPORTED_VERSION:
            raise ValueError(f"Only config version {SUPPORTED_VERSION} is supported")
        return v

    @field_validator("package_manager")
    @classmethod
    def validate_package_manager(cls, v: str | None) -> str | None:
        if v is None:
            return None
        normalized = v.strip().lower()
        if normalized not in _PACKAGE_MANAGERS:
            raise ValueError('`packageManager` must be one of "npm", "pnpm", "yarn", or "bun"')
        return normalized

    @field_validator("start", "env_file", "workdir")
    @classmethod
    def validate_non_empty(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("value cannot be empty")
        return v


def _format_loc(loc: tuple[int | str, ...]) -> str | None:
    key = ""
    for part in loc:
        if isinstance(part, int):
            key += f"[{part}]"
        else:
            key += f".{part}" if key else str(part)
    return key or None


def _first_error(exc: ValidationError) -> ConfigValidationError:
    err = exc.errors()[0]
    message = err["msg"].removeprefix("Value error, ")
    return ConfigValidationError(message, _format_loc(tuple(err["loc"])))


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def infer_package_manager(directory: str | Path) -> PackageManager | None:
    """Infer the package manager from lockfiles present in *directory*."""
    root = Path(directory)
    for filename, manager in PACKAGE_MANAGER_LOCKFILES:
        if (root / filename).exists():
            return manager
    return None


def _resolve_ports(entries: list[_PortEntry] | None) -> tuple[PortRequest, ...]:
    if not entries:
        return (PortRequest(DEFAULT_PREVIEW_SERVICE, DEFAULT_CONTAINER_PORT, preview=True),)

    seen: set[str] = set()
    for idx, entry in enumerate(entries):
        if entry.service in seen:
            raise ConfigValidationError(
                f'Duplicate service name "{entry.service}" found in ports array',
                f"ports[{idx}].service",
            )
        seen.add(entry.service)

    # Exactly one preview: first flagged entry wins, else the first entry.
    preview_idx = next((i for i, e in enumerate(entries) if e.preview), 0)
    return tuple(
        PortRequest(e.service, e.container, preview=i == preview_idx)
        for i, e in enumerate(entries)
    )


def resolve_task_config(
    raw: Any,
    *,
    inferred_package_manager: PackageManager | None = None,
) -> ResolvedTaskConfig:
    """Validate a parsed config document and apply defaults.

    Raises :class:`ConfigValidationError` with the offending key path.
    """
    if not isinstance(raw, dict):
        raw = {}
    try:
        parsed = _TaskConfigFile.model_validate(raw)
    except ValidationError as exc:
        raise _first_error(exc) from exc

    package_manager = parsed.package_manager or inferred_package_manager or "npm"
    start = parsed.start or (
        DEFAULT_BUN_START_COMMAND if package_manager == "bun" else DEFAULT_START_COMMAND
    )
    return ResolvedTaskConfig(
        version=parsed.version or SUPPORTED_VERSION,
        package_manager=package_manager,  # type: ignore[arg-type]
        start_command=start,
        env_file=parsed.env_file,
        workdir=parsed.workdir or DEFAULT_WORKDIR,
        ports=_resolve_ports(parsed.ports),
    )


def config_path_for(task_path: str | Path) -> Path:
    return Path(task_path) / get_settings().runner.state_dir / CONFIG_FILENAME


def load_task_config(task_path: str | Path) -> ConfigLoadResult:
    """Load ``<task>/<state_dir>/config.json`` and resolve it.

    Never raises for user errors; failures come back as :class:`ConfigLoadFailed`
    carrying a :class:`ConfigLoadError` (IO_ERROR, INVALID_JSON, or VALIDATION_FAILED).
    """
    config_path = config_path_for(task_path)
    inferred = infer_package_manager(task_path)

    raw: Any = {}
    source_path: str | None = None
    try:
        content = config_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        content = None
    except OSError as exc:
        return ConfigLoadFailed(
            error=ConfigLoadError(
                "IO_ERROR",
                f"Failed to read {config_path}: {exc}",
                config_path=str(config_path),
            ),
        )

    if content is not None:
        try:
            raw = json.loads(content)
        except json.JSONDecodeError:
            return ConfigLoadFailed(
                error=ConfigLoadError(
                    "INVALID_JSON",
                    f"Invalid JSON in {config_path}",
                    config_path=str(config_path),
                ),
            )
        source_path = str(config_path)

    try:
        config = resolve_task_config(raw, inferred_package_manager=inferred)
    except ConfigValidationError as exc:
        return ConfigLoadFailed(
            source_path=source_path,
            error=ConfigLoadError(
                "VALIDATION_FAILED",
                exc.message,
                config_path=source_path or str(config_path),
                config_key=exc.key,
            ),
        )
    return ConfigLoaded(config=config, source_path=source_path)
