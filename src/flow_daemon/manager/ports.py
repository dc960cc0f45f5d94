"""Port allocation for child dashboard servers.

Ports are handed out starting at a fixed base. The first few candidates are
tried in order; if all are taken the allocator falls back to a linear scan of
a wider window. A port is considered free when a throwaway loopback listener
can bind it.

The allocator does not reserve anything: a returned port stays free only until
someone else binds it. Callers must serialize allocate-then-register.
"""

import logging
import socket
from collections.abc import Collection

from flow_daemon.core.config import (
    DEFAULT_BASE_PORT,
    DEFAULT_MAX_PORT_RETRIES,
    DEFAULT_PORT_SCAN_LIMIT,
)
from flow_daemon.core.exceptions import PortExhaustionError

logger = logging.getLogger(__name__)

PROBE_HOST = "127.0.0.1"


def is_port_available(port: int, host: str = PROBE_HOST) -> bool:
    """Check whether a TCP port can be bound.

    Args:
        port: Port number to test.
        host: Interface to test on.

    Returns:
        True if a listener could bind the port.

    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            # TIME_WAIT leftovers must not count as busy.
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            return True
    except OSError:
        return False


class PortAllocator:
    """Finds an unused local port for a new child server.

    Attributes:
        base_port: First candidate port.
        max_retries: Sequential candidates probed before the wide scan.
        scan_limit: Size of the window above base_port.
        host: Interface used for the bind probe.

    """

    def __init__(
        self,
        base_port: int = DEFAULT_BASE_PORT,
        max_retries: int = DEFAULT_MAX_PORT_RETRIES,
        scan_limit: int = DEFAULT_PORT_SCAN_LIMIT,
        host: str = PROBE_HOST,
    ) -> None:
        self.base_port = base_port
        self.max_retries = max_retries
        self.scan_limit = scan_limit
        self.host = host

    def candidates(self) -> list[int]:
        """Ports in the order they are tried."""
        upper = min(self.base_port + self.scan_limit, 65536)
        return list(range(self.base_port, upper))

    def allocate(self, claimed: Collection[int] = ()) -> int:
        """Return the first free port not already claimed.

        Args:
            claimed: Ports held by registered servers; never returned.

        Returns:
            A port that was bindable at the time of the call.

        Raises:
            PortExhaustionError: If the whole window is taken.

        """
        candidates = self.candidates()
        quick, wide = candidates[: self.max_retries], candidates[self.max_retries :]

        for port in quick:
            if port not in claimed and is_port_available(port, self.host):
                return port

        logger.debug(
            "Ports %d-%d busy, scanning up to %d",
            self.base_port,
            self.base_port + self.max_retries - 1,
            self.base_port + self.scan_limit - 1,
        )
        for port in wide:
            if port not in claimed and is_port_available(port, self.host):
                return port

        logger.error(
            "No free port in %d-%d", self.base_port, self.base_port + self.scan_limit - 1
        )
        raise PortExhaustionError()
