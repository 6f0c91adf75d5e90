"""Address helpers for the control API listener.

``apiHost`` is either a wildcard (listen everywhere), an IP literal or a
host name. The CLI dials the listener with :func:`client_host`, and
``lmgo serve`` checks :func:`is_port_available` before binding.
"""

from __future__ import annotations

import ipaddress
import socket

WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::", "[::]"})
LOOPBACK_HOST = "127.0.0.1"


def _unbracket(host: str) -> str:
    value = host.strip()
    if value.startswith("[") and value.endswith("]"):
        return value[1:-1]
    return value


def is_wildcard_host(host: str) -> bool:
    """Return True if ``host`` means "every interface"."""

    return host.strip() in WILDCARD_HOSTS


def client_host(host: str) -> str:
    """Return the address a local client should connect to for ``host``.

    Wildcards become the IPv4 loopback and IPv6 literals are bracketed so the
    result can be dropped into a URL.
    """
    if is_wildcard_host(host):
        return LOOPBACK_HOST
    value = _unbracket(host)
    return f"[{value}]" if _is_ipv6_literal(value) else value


def is_port_available(host: str, port: int) -> bool:
    """Check whether the control API could bind ``host:port``.

    Parameters
    ----------
    host : str
        ``apiHost`` as configured; a wildcard is tested on every interface of
        its address family.
    port : int
        The port to check.

    Returns
    -------
    bool
        True if a socket could be bound, False if the address is taken or
        cannot be bound at all.
    """
    value = _unbracket(host)
    family = socket.AF_INET6 if _is_ipv6_literal(value) else socket.AF_INET
    if not value:
        value = "0.0.0.0"
    try:
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((value, port))
    except OSError:
        return False
    return True


def _is_ipv6_literal(value: str) -> bool:
    try:
        return isinstance(ipaddress.ip_address(value), ipaddress.IPv6Address)
    except ValueError:
        return False
