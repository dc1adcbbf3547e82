"""Preview service heuristic.

Pure and stateless: used over port requests at start time and over
published bindings at inspect time, with identical results for identical
inputs.
"""

from __future__ import annotations

from collections.abc import Sequence

from stackrun.types import PortBinding, PortRequest

# Both lists are in priority order.
PREVIEW_SERVICE_NAMES = ("web", "app", "frontend", "ui")
PREVIEW_CONTAINER_PORTS = (3000, 5173, 8080, 8000)
DEFAULT_PREVIEW_SERVICE = "app"


def choose_preview_service(entries: Sequence[PortRequest | PortBinding]) -> str | None:
    """Pick the service to preview; ``None`` only when *entries* is empty.

    1. an entry explicitly flagged ``preview``
    2. the best-ranked conventional service name
    3. the best-ranked conventional dev-server port
    4. the first entry
    """
    if not entries:
        return None

    for entry in entries:
        if getattr(entry, "preview", False):
            return entry.service

    services = {e.service for e in entries}
    for name in PREVIEW_SERVICE_NAMES:
        if name in services:
            return name

    for port in PREVIEW_CONTAINER_PORTS:
        for entry in entries:
            if entry.container_port == port:
                return entry.service

    return entries[0].service
