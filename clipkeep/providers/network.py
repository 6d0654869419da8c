"""
Network availability check run before every embedding request.

This only asks whether the machine has a usable network path, not whether
the target host exists. A local server that is down, or a mistyped local
host, surfaces from the request itself as a refused connection.
"""

import ipaddress
import logging
import socket
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Routable address used to ask the OS for a route; no packet is sent
PROBE_ADDRESS = ("8.8.8.8", 53)


def is_loopback_host(host: str) -> bool:
    """True for localhost and loopback IP literals."""
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def network_available() -> bool:
    """True if the OS has a route off this machine.

    Connecting a UDP socket selects a route without sending anything, so
    this fails fast when offline and never blocks on DNS.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(PROBE_ADDRESS)
        return True
    except OSError as e:
        logger.debug("No network route: %s", e)
        return False


def url_reachable(url: str) -> bool:
    """Whether a request to url can leave the machine (loopback always can)."""
    if is_loopback_host(urlparse(url).hostname or ""):
        return True
    return network_available()
