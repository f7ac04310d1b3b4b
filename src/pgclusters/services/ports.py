"""Free TCP port discovery for new clusters."""

import socket
from typing import Iterable, Optional

from pgclusters.constants import DEFAULT_PORT, MAX_PORT
from pgclusters.errors import ClusterError


class PortAllocator:
    """Finds the lowest port that no cluster claims and that binds on every address family."""

    def __init__(self, logger, socket_module=socket, first_port: int = DEFAULT_PORT, last_port: int = MAX_PORT):
        self.logger = logger
        self.socket = socket_module
        self.first_port = first_port
        self.last_port = last_port

    def _families(self):
        families = [(self.socket.AF_INET, "0.0.0.0")]
        if getattr(self.socket, "has_ipv6", False):
            families.append((self.socket.AF_INET6, "::"))
        return families

    def port_bindable(self, port: int) -> Optional[bool]:
        """True if ``port`` binds on all available families, None if no family is available."""
        have_family = False
        for family, address in self._families():
            try:
                sock = self.socket.socket(family, self.socket.SOCK_STREAM)
            except OSError:
                continue
            have_family = True
            try:
                sock.setsockopt(self.socket.SOL_SOCKET, self.socket.SO_REUSEADDR, 1)
                sock.bind((address, port))
                sock.listen(0)
            except OSError:
                self.logger.debug("Port %s is in use (family %s)", port, family)
                return False
            finally:
                sock.close()

        if not have_family:
            return None
        return True

    def find_free_port(self, claimed: Iterable[int] = ()) -> int:
        claimed_ports = set(claimed)
        for port in range(self.first_port, self.last_port + 1):
            if port in claimed_ports:
                continue
            available = self.port_bindable(port)
            if available is None:
                raise ClusterError(
                    "Could not create an IPv4 or IPv6 socket; PostgreSQL needs at least one working protocol."
                )
            if available:
                return port
        raise ClusterError("No free port found.")
