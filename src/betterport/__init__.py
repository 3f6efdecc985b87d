"""Ports that keep a serial, UDP or TCP link open, reconnecting silently
when the link is lost.
"""

from .config import PortConfig
from .errors import (
    AlreadyClosedError,
    AlreadyOpenError,
    DisconnectTimeoutError,
    NotFoundError,
    OpenTimeoutError,
    PortClosedError,
    PortError,
    TransportError,
    UnknownTransportTypeError,
    WriteRejectedError,
)
from .pipes import PipeRegistration, RawDataPipe
from .port import BetterPort, PortState, create_port, open_port
from .shutdown import ShutdownHook
from .transports import (
    SerialTransport,
    StreamTransport,
    TCPTransport,
    Transport,
    UDPTransport,
    create_transport,
)
from .version import __version__

__all__ = (
    "AlreadyClosedError",
    "AlreadyOpenError",
    "BetterPort",
    "DisconnectTimeoutError",
    "NotFoundError",
    "OpenTimeoutError",
    "PipeRegistration",
    "PortClosedError",
    "PortConfig",
    "PortError",
    "PortState",
    "RawDataPipe",
    "SerialTransport",
    "ShutdownHook",
    "StreamTransport",
    "TCPTransport",
    "Transport",
    "TransportError",
    "UDPTransport",
    "UnknownTransportTypeError",
    "WriteRejectedError",
    "__version__",
    "create_port",
    "create_transport",
    "open_port",
)
