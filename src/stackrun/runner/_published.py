"""Parsing of engine status output (``compose ps``, ``inspect``).

Field names drift between engine releases, so every lookup goes through
an alias table tried in order.  Parsing never raises: unusable output
yields an empty result and callers fall back to what they allocated.
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from typing import Any

from stackrun.types import PortBinding

SERVICE_KEYS = ("Service", "service", "Name", "name")
PUBLISHER_KEYS = ("Publishers", "Ports")
TARGET_KEYS = ("TargetPort", "target", "Target", "ContainerPort")
PUBLISHED_KEYS = ("PublishedPort", "published", "HostPort")
STATE_KEYS = ("State", "state", "Status")

SERVICE_LABEL_PREFIX = "stackrun.service."


def _first(record: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def _port_number(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def parse_ps_records(out: str | None) -> list[dict[str, Any]]:
    """Accept a JSON array or newline-delimited JSON objects."""
    text = (out or "").strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        records = []
        for line in text.splitlines():
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(item, dict):
                records.append(item)
        return records
    if isinstance(parsed, list):
        return [r for r in parsed if isinstance(r, dict)]
    if isinstance(parsed, dict):
        return [parsed]
    return []


def bindings_from_records(records: Sequence[Mapping[str, Any]]) -> list[PortBinding]:
    bindings: list[PortBinding] = []
    seen: set[tuple[str, int, int]] = set()
    for rec in records:
        service = _first(rec, SERVICE_KEYS)
        publishers = _first(rec, PUBLISHER_KEYS)
        if not service or not isinstance(publishers, list):
            continue
        for pub in publishers:
            if not isinstance(pub, Mapping):
                continue
            target = _port_number(_first(pub, TARGET_KEYS))
            published = _port_number(_first(pub, PUBLISHED_KEYS))
            # PublishedPort 0 means exposed-only
            if target is None or not published:
                continue
            key = (str(service), target, published)
            if key in seen:
                continue
            seen.add(key)
            bindings.append(PortBinding(str(service), target, published))
    return bindings


def parse_published_ports(out: str | None, fallback: Sequence[PortBinding]) -> list[PortBinding]:
    """Published bindings from ``compose ps`` output, else *fallback*."""
    return bindings_from_records(parse_ps_records(out)) or list(fallback)


def any_running(records: Sequence[Mapping[str, Any]]) -> bool:
    for rec in records:
        state = _first(rec, STATE_KEYS)
        if isinstance(state, str) and "running" in state.lower():
            return True
    return False


def parse_container_inspect(out: str | None) -> tuple[bool, list[PortBinding]]:
    """Running state and bindings of a single container from ``inspect`` output.

    Services are recovered from ``stackrun.service.<port>`` labels; ports
    without a label are reported under the container name.
    """
    try:
        parsed = json.loads(out or "[]")
    except json.JSONDecodeError:
        return False, []
    info = parsed[0] if isinstance(parsed, list) and parsed else parsed
    if not isinstance(info, dict):
        return False, []

    state = info.get("State") or {}
    running = bool(state.get("Running")) if isinstance(state, dict) else False

    labels = (info.get("Config") or {}).get("Labels") or {}
    fallback_service = str(info.get("Name") or "").lstrip("/") or "app"
    port_map = (info.get("NetworkSettings") or {}).get("Ports") or {}

    bindings: list[PortBinding] = []
    seen: set[tuple[int, int]] = set()
    for port_key, host_entries in port_map.items():
        port_str, _, protocol = str(port_key).partition("/")
        target = _port_number(port_str)
        if target is None or (protocol and protocol != "tcp") or not host_entries:
            continue
        service = labels.get(f"{SERVICE_LABEL_PREFIX}{target}", fallback_service)
        for entry in host_entries:
            published = _port_number((entry or {}).get("HostPort"))
            if not published or (target, published) in seen:
                continue
            seen.add((target, published))
            bindings.append(PortBinding(service, target, published))
    return running, bindings
