"""
Port Allocator - Lease host ports to sandbox sessions.

Responsibilities:
- Hand out ports from a fixed range, one owner per port
- Confirm candidates are free at the OS level
- Reconcile leases against live workloads when the range runs dry
"""

import logging
import socket
import threading
from typing import Callable, Dict, Iterable, List, Optional

from preview_sandbox.sandbox.errors import PortExhaustionError

logger = logging.getLogger(__name__)


def is_port_free(port: int, host: str = "localhost") -> bool:
    """Check if a port is free on the system."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


class PortAllocator:
    """
    Thread-safe allocator over the range [start, end).

    The candidate counter advances on every successful lease and wraps, so a
    port released a moment ago is not handed straight back out while its old
    container may still be shutting down.
    """

    def __init__(
        self,
        start: int,
        end: int,
        host: str = "localhost",
        port_checker: Optional[Callable[[int], bool]] = None,
        in_use: Optional[Callable[[], Iterable[int]]] = None,
    ):
        if start >= end:
            raise ValueError(f"Empty port range: {start}-{end}")
        self.start = start
        self.end = end
        self.host = host
        self._port_checker = port_checker or (lambda port: is_port_free(port, self.host))
        self._in_use = in_use
        self._lock = threading.Lock()
        self._leases: Dict[int, str] = {}
        self._next = start

    @property
    def size(self) -> int:
        return self.end - self.start

    def set_in_use_source(self, in_use: Callable[[], Iterable[int]]) -> None:
        """Install the callable that reports ports backed by live workloads."""
        self._in_use = in_use

    def acquire(self, owner: str) -> int:
        """
        Lease a free port to `owner`.

        Raises:
            PortExhaustionError: If no port is free even after reconciliation
        """
        with self._lock:
            port = self._scan(owner)
            if port is not None:
                return port

        # Reconciliation asks the runtime, so it runs outside the lock
        freed = self.reconcile()
        with self._lock:
            port = self._scan(owner)
            if port is not None:
                return port

        logger.error(
            "No free port in %d-%d (%d leased, %d reclaimed)",
            self.start, self.end - 1, len(self._leases), len(freed),
        )
        raise PortExhaustionError(
            f"No free port available in range {self.start}-{self.end - 1}"
        )

    def _scan(self, owner: str) -> Optional[int]:
        """Walk the range once from the counter. Caller holds the lock."""
        for offset in range(self.size):
            candidate = self.start + (self._next - self.start + offset) % self.size
            if candidate in self._leases:
                continue
            if not self._port_checker(candidate):
                continue
            self._leases[candidate] = owner
            self._next = self.start + (candidate - self.start + 1) % self.size
            logger.debug("Leased port %d to %s", candidate, owner)
            return candidate
        return None

    def release(self, port: Optional[int], owner: Optional[str] = None) -> bool:
        """
        Release a lease.

        Args:
            port: Port to release (None is ignored)
            owner: When given, only release if the port is leased to this owner

        Returns:
            True if a lease was removed
        """
        if port is None:
            return False
        with self._lock:
            current = self._leases.get(port)
            if current is None:
                return False
            if owner is not None and current != owner:
                logger.debug("Ignoring release of port %d by %s (leased to %s)", port, owner, current)
                return False
            del self._leases[port]
            logger.debug("Released port %d from %s", port, current)
            return True

    def reconcile(self) -> List[int]:
        """
        Drop leases not backed by a live workload.

        Only leases that existed before the live-workload query, and still
        belong to the same owner afterwards, can be reclaimed. Leases granted
        while the query ran are left alone.

        Returns:
            Ports whose leases were released
        """
        if self._in_use is None:
            return []
        with self._lock:
            before = dict(self._leases)
        try:
            live = set(self._in_use())
        except Exception:  # a failed runtime query must not free live ports
            logger.exception("Port reconciliation could not list live workloads")
            return []

        stale: List[int] = []
        with self._lock:
            for port, owner in before.items():
                if port in live or self._leases.get(port) != owner:
                    continue
                logger.warning("Reclaiming leaked port %d (was %s)", port, owner)
                del self._leases[port]
                stale.append(port)
        return stale

    def leases(self) -> Dict[int, str]:
        """Copy of the current port -> owner map."""
        with self._lock:
            return dict(self._leases)

    def owner_of(self, port: int) -> Optional[str]:
        with self._lock:
            return self._leases.get(port)
