"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Settings live in stackrun.toml. Environment variables override it using
``__`` as the nested delimiter (e.g. ``ENGINE__CLI=podman``).

Priority (highest wins): init args > env vars > .env > stackrun.toml

Usage::

    from stackrun.config import get_settings

    s = get_settings()
    print(s.engine.cli)
    print(s.runner.state_dir)
"""

from __future__ import annotations

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in stackrun.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class EngineConfig(_StrictModel):
    cli: str = "docker"
    probe_timeout: float = 8.0  # seconds; `info` / `compose version`
    query_timeout: float = 30.0  # config render, ps, inspect, rm, down
    run_timeout: float = 120.0  # single-container `run -d`
    up_timeout: float = 600.0  # `compose up -d` may build images

    @field_validator("probe_timeout", "query_timeout", "run_timeout", "up_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class PortsConfig(_StrictModel):
    host: str = "127.0.0.1"  # bind address used to probe availability
    min_port: int = 49152
    max_port: int = 65535
    max_attempts: int = 128

    @model_validator(mode="after")
    def validate_range(self) -> PortsConfig:
        if not 1 <= self.min_port <= self.max_port <= 65535:
            raise ValueError("port range must satisfy 1 <= min_port <= max_port <= 65535")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")
        return self


class RunnerConfig(_StrictModel):
    state_dir: str = ".stackrun"  # per-task tool-state directory, relative to the task root
    project_prefix: str = "stackrun_ws_"
    node_image: str = "node:20"
    bun_image: str = "oven/bun:1.3.5"


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="stackrun.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    engine: EngineConfig = EngineConfig()
    ports: PortsConfig = PortsConfig()
    runner: RunnerConfig = RunnerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > stackrun.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = Settings()
    return _settings
