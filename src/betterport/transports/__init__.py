"""Transports that ports can drive: serial ports, UDP sockets, TCP sockets
and arbitrary Trio byte streams.

Each transport owns at most one live OS-level handle at a time and reports
what happens to it through a set of callbacks. Transports register
themselves in `create_transport` so they can be constructed from URL-style
specifications.
"""

from .base import Transport, TransportBase, TransportCallbacks
from .factory import TransportFactory, create_transport, create_transport_factory
from .serial import SerialTransport
from .socket import ClientRegistry, TCPTransport, UDPTransport
from .stream import StreamTransport, StreamTransportBase

__all__ = (
    "ClientRegistry",
    "SerialTransport",
    "StreamTransport",
    "StreamTransportBase",
    "TCPTransport",
    "Transport",
    "TransportBase",
    "TransportCallbacks",
    "TransportFactory",
    "UDPTransport",
    "create_transport",
    "create_transport_factory",
)
