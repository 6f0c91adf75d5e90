"""Port assignment policies for inference server instances."""

from __future__ import annotations

from collections.abc import Iterable
import threading
from typing import Protocol

from loguru import logger

from ..config import LmgoConfig
from ..const import PORT_MAX, PORT_POLICY_FIXED
from .errors import PortAllocationError


class PortAllocator(Protocol):
    """Hand out a port for each new instance."""

    def allocate(self) -> int:
        """Return the port the next instance should bind."""


class FixedPortAllocator:
    """Every instance reuses one configured port.

    Two processes cannot bind the same port, so this policy only makes sense
    with one instance at a time.
    """

    def __init__(self, port: int) -> None:
        self.port = port

    def allocate(self) -> int:
        """Return the configured port."""

        return self.port


class IncrementingPortAllocator:
    """Assign ``base_port + counter`` with a counter that never goes back.

    Ports are not reused after an instance stops, so a just-started instance
    never collides with one whose socket is still being torn down.
    """

    def __init__(self, base_port: int, *, reserved: Iterable[int] = ()) -> None:
        self.base_port = base_port
        self._reserved = frozenset(reserved)
        self._counter = 0
        self._lock = threading.Lock()

    def allocate(self) -> int:
        """Return the next unused port.

        Raises
        ------
        PortAllocationError
            If the counter ran past the highest valid port.
        """
        with self._lock:
            while True:
                port = self.base_port + self._counter
                if port > PORT_MAX:
                    raise PortAllocationError(
                        f"No ports left above base port {self.base_port}",
                    )
                self._counter += 1
                if port in self._reserved:
                    logger.debug(f"Skipping reserved port {port}")
                    continue
                return port


def build_port_allocator(config: LmgoConfig) -> PortAllocator:
    """Return the allocator selected by ``config.port_policy``."""

    if config.port_policy == PORT_POLICY_FIXED:
        return FixedPortAllocator(config.base_port)
    return IncrementingPortAllocator(config.base_port, reserved={config.api_port})
