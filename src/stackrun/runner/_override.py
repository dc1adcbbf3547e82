"""Compose override fragment that binds allocated host ports.

Layered after the (sanitized) base manifest with a second ``-f`` so port
injection stays independent of sanitization.  Only ``ports`` is emitted;
no other service content is touched.
"""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import yaml

from stackrun.types import PortBinding

OVERRIDE_FILENAME = "compose.override.yml"


def build_override_yaml(bindings: Sequence[PortBinding]) -> str:
    services: dict[str, dict[str, list[dict[str, int | str]]]] = {}
    for b in bindings:
        entry = services.setdefault(b.service, {"ports": []})
        entry["ports"].append(
            {"target": b.container_port, "published": b.host_port, "protocol": "tcp"}
        )
    # No top-level `version`: Compose v2 warns about it and ignores it
    return yaml.safe_dump({"services": services}, sort_keys=False, default_flow_style=False)


def write_override(bindings: Sequence[PortBinding], out_dir: Path) -> Path:
    path = out_dir / OVERRIDE_FILENAME
    out_dir.mkdir(parents=True, exist_ok=True)
    path.write_text(build_override_yaml(bindings), encoding="utf-8")
    return path
