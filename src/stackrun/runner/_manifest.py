"""Compose manifest analysis — port discovery and sanitization.

Both operate on the engine's *rendered* config (``compose config --format
json``), i.e. after interpolation, ``extends`` and multi-file merges, so
the same code handles every way a project can spell its services.

Sanitization removes every host-side ``ports`` publish directive and moves
the container ports into ``expose``.  Host bindings are then re-added by a
separate override fragment built from allocated ports, so two tasks that
share one engine daemon can run the same manifest without colliding.
"""

from __future__ import annotations

import copy
import json
import re
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from stackrun.config import get_settings
from stackrun.engine import describe_command_error, run_engine
from stackrun.logger import logger
from stackrun.types import PortRequest

SANITIZED_FILENAME = "compose.sanitized.json"

# "CONTAINER", "HOST:CONTAINER" or "IP:HOST:CONTAINER", optional "/tcp"
_SHORT_PORT_RE = re.compile(r"^(?:(?:[\d.]+:)?\d*:)?(\d+)(?:/tcp)?$", re.IGNORECASE)
_LEADING_INT_RE = re.compile(r"^\s*(\d+)")

_TARGET_KEYS = ("target", "TargetPort", "ContainerPort", "Target", "containerPort")


def _services(cfg: Mapping[str, Any]) -> Mapping[str, Any]:
    services = cfg.get("services") or cfg.get("Services") or {}
    return services if isinstance(services, Mapping) else {}


def _as_port(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


async def render_compose_config(compose_file: Path, task_path: Path) -> dict[str, Any] | None:
    """Ask the engine for the fully rendered manifest; ``None`` if that fails."""
    try:
        result = await run_engine(
            "compose",
            "-f",
            str(compose_file),
            "config",
            "--format",
            "json",
            cwd=task_path,
            timeout=get_settings().engine.query_timeout,
        )
    except (subprocess.SubprocessError, OSError) as exc:
        logger.warning(
            "Compose config render failed",
            compose_file=str(compose_file),
            err=describe_command_error(exc),
        )
        return None

    try:
        rendered = json.loads(result.stdout or "{}")
    except json.JSONDecodeError:
        logger.warning("Compose config output is not JSON", compose_file=str(compose_file))
        return None
    return rendered if isinstance(rendered, dict) else None


def discover_compose_ports(cfg: Mapping[str, Any] | None) -> list[PortRequest]:
    """Collect TCP container ports declared by each service, deduplicated."""
    if not cfg:
        return []

    found: list[PortRequest] = []
    seen: set[tuple[str, int]] = set()
    for service, definition in _services(cfg).items():
        if not isinstance(definition, Mapping):
            continue
        ports = definition.get("ports") or definition.get("Ports") or []
        if not isinstance(ports, list):
            continue
        for entry in ports:
            container_port: int | None = None
            if isinstance(entry, Mapping):
                protocol = str(entry.get("protocol") or "tcp").lower()
                if protocol != "tcp":
                    continue
                target = next((entry[k] for k in _TARGET_KEYS if entry.get(k) is not None), None)
                container_port = _as_port(target)
            elif isinstance(entry, (str, int)) and not isinstance(entry, bool):
                match = _SHORT_PORT_RE.match(str(entry).strip())
                if match:
                    container_port = int(match.group(1))
            if container_port is None or (service, container_port) in seen:
                continue
            seen.add((service, container_port))
            found.append(PortRequest(service=service, container_port=container_port))
    return found


def _coerce_expose(values: Any) -> list[int]:
    ports: list[int] = []
    if not isinstance(values, list):
        return ports
    for value in values:
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            port = value
        else:
            match = _LEADING_INT_RE.match(str(value))
            if not match:
                continue
            port = int(match.group(1))
        if port not in ports:
            ports.append(port)
    return ports


def sanitize_compose_config(
    cfg: Mapping[str, Any],
    requested: Mapping[str, Sequence[int]],
) -> dict[str, Any]:
    """Strip host port publishing and merge *requested* container ports into ``expose``.

    Idempotent: sanitizing an already-sanitized manifest returns it unchanged.
    The input is not modified.
    """
    result = copy.deepcopy(dict(cfg))
    services = _services(result)
    next_services: dict[str, Any] = {}
    for name, definition in services.items():
        if not isinstance(definition, Mapping):
            next_services[name] = definition
            continue
        svc = dict(definition)
        expose = _coerce_expose(svc.get("expose"))
        for port in requested.get(name, ()):
            if port not in expose:
                expose.append(port)
        svc.pop("ports", None)
        svc.pop("Ports", None)
        if expose:
            svc["expose"] = expose
        next_services[name] = svc
    result.pop("Services", None)
    result["services"] = next_services
    return result


def requested_ports_by_service(requests: Sequence[PortRequest]) -> dict[str, list[int]]:
    by_service: dict[str, list[int]] = {}
    for req in requests:
        ports = by_service.setdefault(req.service, [])
        if req.container_port not in ports:
            ports.append(req.container_port)
    return by_service


def dump_manifest(cfg: Mapping[str, Any]) -> str:
    """Stable text form (JSON is valid compose YAML)."""
    return json.dumps(cfg, indent=2) + "\n"


def write_sanitized_manifest(
    cfg: Mapping[str, Any],
    requests: Sequence[PortRequest],
    out_dir: Path,
) -> Path:
    path = out_dir / SANITIZED_FILENAME
    sanitized = sanitize_compose_config(cfg, requested_ports_by_service(requests))
    out_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_manifest(sanitized), encoding="utf-8")
    return path
