"""Networking-related utility functions used by the socket transports."""

import socket
import trio.socket

from typing import Optional, Tuple

__all__ = ("create_async_socket", "family_for_type", "format_address")


#: Maps the datagram socket types accepted by the UDP transport to address
#: families
_FAMILIES = {"udp4": trio.socket.AF_INET, "udp6": trio.socket.AF_INET6}


def family_for_type(socket_type: str) -> int:
    """Returns the address family corresponding to a datagram socket type
    name (``udp4`` or ``udp6``).

    Raises:
        ValueError: if the socket type is not known
    """
    try:
        return _FAMILIES[socket_type]
    except KeyError:
        raise ValueError(f"unknown socket type: {socket_type!r}") from None


def create_async_socket(
    socket_type, family: int = trio.socket.AF_INET
) -> trio.socket.SocketType:
    """Creates an asynchronous socket with the given type.

    Asynchronous sockets have asynchronous sender and receiver methods so
    you need to use the `await` keyword with them.

    Parameters:
        socket_type: the type of the socket (``socket.SOCK_STREAM`` for
            TCP sockets, ``socket.SOCK_DGRAM`` for UDP sockets)
        family: the address family of the socket

    Returns:
        the newly created socket
    """
    sock = trio.socket.socket(family, socket_type)
    sock.setsockopt(trio.socket.SOL_SOCKET, trio.socket.SO_REUSEADDR, 1)
    if hasattr(socket, "SO_REUSEPORT"):
        # Lets a restarted process bind the same port while the previous
        # socket is still being torn down by the OS
        sock.setsockopt(trio.socket.SOL_SOCKET, trio.socket.SO_REUSEPORT, 1)
    return sock


def format_address(address: Optional[Tuple[str, int]]) -> str:
    """Formats an IP address and port in the standard hostname-port format,
    with brackets around IPv6 addresses.
    """
    if not address:
        return ""

    host, port = address[:2]
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}"
