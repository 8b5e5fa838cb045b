"""Local port allocation against the live listener table."""

import socket
from collections.abc import Callable, Iterable

import psutil

from .common.exceptions import PortInUseError
from .common.logging import get_logger
from .common.utils import MAX_PORT, validate_port

logger = get_logger(__name__)


def listening_ports() -> set[int]:
    """Return the set of local TCP ports currently in LISTEN state."""
    ports = set()
    for conn in psutil.net_connections(kind="tcp"):
        if conn.status == psutil.CONN_LISTEN and conn.laddr:
            ports.add(conn.laddr.port)
    return ports


def _bind_probe(port: int, bind_address: str = "127.0.0.1") -> bool:
    """Return True if ``port`` can be bound locally."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((bind_address, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


class PortAllocator:
    """Deterministic lowest-available local port allocation.

    Every call re-reads the listener table, so a port bound by another process
    between two allocations of the same batch is skipped.
    """

    def __init__(
        self,
        listener_source: Callable[[], Iterable[int]] = listening_ports,
        bind_address: str = "127.0.0.1",
    ):
        self._listener_source = listener_source
        self.bind_address = bind_address

    def _snapshot(self) -> set[int] | None:
        try:
            return set(self._listener_source())
        except psutil.AccessDenied:
            # macOS needs root for the full table
            logger.debug("Listener table not readable, probing with bind")
            return None

    def is_port_free(self, port: int, reserved: Iterable[int] = ()) -> bool:
        """Whether ``port`` is neither listening nor in ``reserved``."""
        validate_port(port, "Local port")
        if port in set(reserved):
            return False
        listening = self._snapshot()
        if listening is None:
            return _bind_probe(port, self.bind_address)
        return port not in listening

    def next_free_port(self, starting_from: int, reserved: Iterable[int] = ()) -> int:
        """Return the smallest free port ``>= starting_from``.

        Args:
            starting_from: First candidate port
            reserved: Ports to treat as taken (e.g. already in the registry)

        Returns:
            Allocated port

        Raises:
            ValueError: If ``starting_from`` is not a valid port
            PortInUseError: If every port up to 65535 is taken
        """
        validate_port(starting_from, "Starting port")
        taken = set(reserved)
        listening = self._snapshot()

        for port in range(starting_from, MAX_PORT + 1):
            if port in taken:
                continue
            if listening is None:
                if _bind_probe(port, self.bind_address):
                    return port
            elif port not in listening:
                return port
            logger.debug("Port in use, advancing", port=port)

        raise PortInUseError(
            starting_from, f"No free local port at or above {starting_from}"
        )
