"""Run strategy selection: compose manifest at the task root, or a single container."""

from __future__ import annotations

from pathlib import Path

# Probed in order; the first that exists wins.
COMPOSE_FILE_CANDIDATES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)


def find_compose_file(task_path: str | Path) -> Path | None:
    """Return the compose manifest at the task root, or ``None`` for a direct run."""
    root = Path(task_path)
    for name in COMPOSE_FILE_CANDIDATES:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None
