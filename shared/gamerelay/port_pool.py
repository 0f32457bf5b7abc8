"""
Proxy Port Pool

Hands out proxy ports starting at a fixed base. Freed ports are reused
lowest-first, so the active range stays close to the peak number of
concurrent players:

    assigned = [40001, 40002, 40004]
    allocate() -> 40003   (fills the hole)
    allocate() -> 40005   (extends past the maximum)
"""

import bisect
import logging
import threading
from typing import List, Tuple

from .exceptions import PortPoolExhaustedError

logger = logging.getLogger("gamerelay.ports")

FIRST_PROXY_PORT = 40001
LAST_PROXY_PORT = 65535


class PortPool:
    """Sorted set of assigned proxy ports with lowest-hole allocation."""

    def __init__(self, first_port: int = FIRST_PROXY_PORT,
                 last_port: int = LAST_PROXY_PORT):
        if not 0 < first_port <= last_port <= 65535:
            raise ValueError(f"Invalid proxy port range {first_port}-{last_port}")

        self.first_port = first_port
        self.last_port = last_port

        # Always sorted ascending, every entry within [first_port, last_port]
        self._assigned: List[int] = []
        self._lock = threading.Lock()

    def allocate(self) -> int:
        """Assign the lowest free port, raising PortPoolExhaustedError if none."""
        with self._lock:
            next_port = self.first_port
            for port in self._assigned:
                if port != next_port:
                    break
                next_port = port + 1

            if next_port > self.last_port:
                raise PortPoolExhaustedError(self.first_port, self.last_port)

            bisect.insort(self._assigned, next_port)

        logger.debug(f"[PORTS] Allocated proxy port {next_port}")
        return next_port

    def release(self, port: int) -> bool:
        """Return a port to the pool. Unknown ports are ignored."""
        with self._lock:
            index = bisect.bisect_left(self._assigned, port)
            if index == len(self._assigned) or self._assigned[index] != port:
                logger.debug(f"[PORTS] Release of unassigned port {port} ignored")
                return False
            del self._assigned[index]

        logger.debug(f"[PORTS] Released proxy port {port}")
        return True

    @property
    def assigned(self) -> Tuple[int, ...]:
        with self._lock:
            return tuple(self._assigned)

    def __contains__(self, port: int) -> bool:
        with self._lock:
            index = bisect.bisect_left(self._assigned, port)
            return index < len(self._assigned) and self._assigned[index] == port

    def __len__(self) -> int:
        with self._lock:
            return len(self._assigned)
