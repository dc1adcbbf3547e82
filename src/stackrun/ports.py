"""Host port allocation for container runs.

Ports are picked at random from the ephemeral range and probed with a
socket bind on the configured host.  Ports handed out by an allocator are
remembered until released, so two tasks starting back-to-back never get
the same port even before the engine has bound it.
"""

from __future__ import annotations

import random
import socket
from collections.abc import Iterable

from stackrun.config import get_settings
from stackrun.logger import logger
from stackrun.types import PortBinding, PortRequest


class PortAllocationError(Exception):
    """No free host port could be found for a request."""

    def __init__(self, message: str, code: str = "PORT_ALLOC_FAILED") -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def is_port_free(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
        except OSError:
            return False
    return True


class PortAllocator:
    """Maps container port requests to free host ports."""

    def __init__(
        self,
        *,
        host: str | None = None,
        min_port: int | None = None,
        max_port: int | None = None,
        max_attempts: int | None = None,
    ) -> None:
        s = get_settings().ports
        self.host = host or s.host
        self.min_port = min_port or s.min_port
        self.max_port = max_port or s.max_port
        self.max_attempts = max_attempts or s.max_attempts
        self._reserved: set[int] = set()

    def allocate(self, requests: Iterable[PortRequest]) -> list[PortBinding]:
        """Return one binding per request, in request order."""
        bindings: list[PortBinding] = []
        try:
            for req in requests:
                host_port = self._find_available_port()
                self._reserved.add(host_port)
                bindings.append(PortBinding(req.service, req.container_port, host_port))
        except PortAllocationError:
            # All-or-nothing: hand back what this call already took
            self.release(bindings)
            raise
        return bindings

    def release(self, bindings: Iterable[PortBinding]) -> None:
        for b in bindings:
            self._reserved.discard(b.host_port)

    def _find_available_port(self) -> int:
        attempted: set[int] = set()
        for _ in range(self.max_attempts):
            candidate = random.randint(self.min_port, self.max_port)
            if candidate in attempted or candidate in self._reserved:
                continue
            attempted.add(candidate)
            if is_port_free(self.host, candidate):
                return candidate
        logger.warning(
            "Port allocation exhausted attempts",
            host=self.host,
            attempts=self.max_attempts,
            range=f"{self.min_port}-{self.max_port}",
        )
        raise PortAllocationError("Unable to allocate a free host port")
