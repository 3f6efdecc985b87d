"""Transports via UDP or TCP sockets."""

import logging

from collections import OrderedDict
from trio import (
    BrokenResourceError,
    ClosedResourceError,
    TooSlowError,
    fail_after,
    move_on_after,
    open_tcp_stream,
)
from trio.abc import Stream
from trio.socket import SOCK_DGRAM, SOL_SOCKET, SO_KEEPALIVE
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from betterport.errors import (
    AlreadyClosedError,
    OpenTimeoutError,
    TransportError,
    WriteRejectedError,
)
from betterport.networking import (
    create_async_socket,
    family_for_type,
    format_address,
)

from .base import IO_ERRORS, TransportBase
from .factory import create_transport
from .stream import StreamTransportBase

__all__ = ("ClientRegistry", "TCPTransport", "UDPTransport")

log = logging.getLogger(__name__.rpartition(".")[0])

#: Type specification for an IP address and port pair
IPAddressAndPort = Tuple[str, int]


class ClientRegistry:
    """Registry of the remote peers that a datagram transport sends its data
    to, mapping IP addresses to the last known source port of each peer.

    When the registry is created with a fixed list of peers, datagrams from
    other addresses are rejected. Otherwise every sender is accepted and
    remembered as a recipient of future writes.
    """

    def __init__(self, ips: Optional[Sequence[str]] = None):
        """Constructor.

        Parameters:
            ips: the fixed list of peer addresses, or `None` if the registry
                should learn its peers from the inbound traffic
        """
        self._fixed = ips is not None
        self._peers = OrderedDict((ip, None) for ip in (ips or ()))

    def __contains__(self, ip: str) -> bool:
        return ip in self._peers

    def __iter__(self) -> Iterator[Tuple[str, Optional[int]]]:
        return iter(list(self._peers.items()))

    def __len__(self) -> int:
        return len(self._peers)

    @property
    def fixed(self) -> bool:
        """Whether the set of peers was configured in advance."""
        return self._fixed

    def accept(self, address: IPAddressAndPort) -> bool:
        """Processes the source address of an inbound datagram.

        Returns:
            whether the datagram comes from an accepted peer
        """
        ip, port = address[:2]
        if ip not in self._peers and self._fixed:
            return False

        if ip not in self._peers:
            log.info(f"New UDP client: {format_address((ip, port))}")

        self._peers[ip] = port
        return True

    def forget(self) -> None:
        """Forgets the learned peers. The peers configured in advance are
        kept but their ports are forgotten.
        """
        if self._fixed:
            for ip in self._peers:
                self._peers[ip] = None
        else:
            self._peers.clear()

    def get_port(self, ip: str) -> Optional[int]:
        """Returns the last known source port of the given peer."""
        return self._peers.get(ip)


def _normalize_udp_parameters(parameters: Dict[str, Any]) -> Dict[str, Any]:
    host = parameters.pop("host", None)
    port = parameters.pop("port", None)
    parameters.pop("path", None)

    if host and parameters.get("ip") is None:
        parameters["ip"] = host

    # In URL-style specifications the port belongs to the peer if there is
    # one, otherwise it is the local port to listen on
    if port:
        key = "send_port" if parameters.get("ip") else "rec_port"
        if not parameters.get(key):
            parameters[key] = port

    return parameters


@create_transport.register(
    "udp",
    aliases={
        "bindAddress": "bind_address",
        "recPort": "rec_port",
        "sendPort": "send_port",
    },
    normalize=_normalize_udp_parameters,
)
class UDPTransport(TransportBase):
    """Transport that uses a UDP socket.

    The socket is bound to a local port when the transport is opened. Inbound
    datagrams are forwarded only if they come from an accepted peer (see
    ClientRegistry_), and writes are sent to every known peer.
    """

    def __init__(
        self,
        ip: Optional[Union[str, Sequence[str]]] = None,
        send_port: Optional[int] = None,
        rec_port: Optional[int] = None,
        bind_address: Optional[str] = None,
        type: str = "udp4",
        *,
        settle_delay: float = 1.0,
    ):
        """Constructor.

        Parameters:
            ip: the IP address or addresses of the peers to send data to and
                to accept data from. `None` means that we wait for peers to
                send us data and then reply to them.
            send_port: the port to send data to. `None` means that we send
                data to the port that the peer sent its data from.
            rec_port: the local port to listen on. `None` or zero means that
                the socket binds to a random ephemeral port.
            bind_address: the local address to bind to; `None` means all
                addresses
            type: ``udp4`` or ``udp6``
            settle_delay: number of seconds to wait after the socket was
                closed before reporting that it is closed
        """
        super().__init__(settle_delay=settle_delay)

        if isinstance(ip, str):
            ips = [ip] if ip else None
        elif ip is not None:
            ips = list(ip)
        else:
            ips = None

        self._ips = ips
        self._send_port = int(send_port) if send_port else None
        self._rec_port = int(rec_port) if rec_port else 0
        self._bind_address = bind_address or ""
        self._family = family_for_type(type)
        self._type = type

        self._registry = ClientRegistry(ips)
        self._bound_port = None

    @property
    def clients(self) -> List[Tuple[str, Optional[int]]]:
        """Returns the known peers of the transport and their ports."""
        return list(self._registry)

    @property
    def registry(self) -> ClientRegistry:
        return self._registry

    @property
    def path(self) -> str:
        if self._ips is None:
            ip = ""
        elif len(self._ips) == 1:
            ip = self._ips[0]
        else:
            ip = "[{0}]".format(",".join(self._ips))
        return f"{self._type}://{ip}:{self.send_port}:{self.rec_port}"

    @property
    def rec_port(self) -> int:
        """The local port that the socket is bound to, or the configured
        port if the socket is closed.
        """
        return self._bound_port or self._rec_port

    @property
    def send_port(self) -> int:
        return self._send_port or 0

    @property
    def socket(self):
        """Returns the socket object itself."""
        return self._handle

    async def exists(self) -> bool:
        # There is no reliable way to tell whether a peer is listening
        return True

    def check_writable(self) -> None:
        super().check_writable()
        if not len(self._registry):
            raise WriteRejectedError("No clients to send to")
        if not self._send_port and not any(port for _, port in self._registry):
            raise WriteRejectedError("No known port to send to")

    async def _send(self, data: bytes) -> None:
        errors = []
        sent = 0
        for ip, port in self._registry:
            port = self._send_port or port
            if not port:
                continue

            try:
                await self._handle.sendto(data, (ip, port))
                sent += 1
            except IO_ERRORS as ex:
                log.warning(
                    f"Failed to send datagram to {format_address((ip, port))}: {ex}"
                )
                errors.append(ex)

        if errors:
            total = len(errors) + sent
            raise TransportError(
                f"Failed to send datagram to {len(errors)} of {total} peers"
            ) from errors[0]
        elif not sent:
            raise WriteRejectedError("No known port to send to")

    async def _open(self) -> None:
        sock = create_async_socket(SOCK_DGRAM, self._family)
        self._handle = sock
        await sock.bind((self._bind_address, self._rec_port))
        self._bound_port = sock.getsockname()[1]
        log.debug(f"UDP socket bound to {format_address(sock.getsockname())}")

    async def _close(self) -> None:
        sock, self._handle = self._handle, None
        self._bound_port = None
        if sock is None:
            raise AlreadyClosedError()
        sock.close()

    async def _receive(self) -> Optional[bytes]:
        while True:
            data, address = await self._handle.recvfrom(65536)
            if self._registry.accept(address):
                return data
            log.debug(f"Ignoring datagram from unknown peer {format_address(address)}")

    def _forget(self) -> None:
        self._registry.forget()


def _normalize_tcp_parameters(parameters: Dict[str, Any]) -> Dict[str, Any]:
    parameters.pop("path", None)
    return parameters


@create_transport.register(
    "tcp",
    aliases={
        "closeTimeout": "close_timeout",
        "keepAlive": "keep_alive",
    },
    normalize=_normalize_tcp_parameters,
)
class TCPTransport(StreamTransportBase):
    """Transport that wraps a Trio TCP stream."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 0,
        *,
        timeout: float = 5.0,
        close_timeout: float = 5.0,
        keep_alive: bool = False,
        settle_delay: float = 1.0,
    ):
        """Constructor.

        Parameters:
            host: the IP address or hostname to connect to
            port: the port number to connect to
            timeout: number of seconds to wait for the connection to be
                established
            close_timeout: number of seconds to wait for the graceful shutdown
                of the outbound half of the connection before the socket is
                closed forcibly
            keep_alive: whether to enable TCP keepalive on the socket
            settle_delay: number of seconds to wait after the socket was
                closed before reporting that it is closed
        """
        super().__init__(settle_delay=settle_delay)

        if not port:
            raise ValueError("port must be given")

        self._address = (host or "localhost", int(port))
        self._timeout = float(timeout)
        self._close_timeout = float(close_timeout)
        self._keep_alive = bool(keep_alive)
        self._eof_sent = False

    @property
    def address(self) -> IPAddressAndPort:
        """The hostname and port that the transport connects to."""
        return self._address

    @property
    def keep_alive(self) -> bool:
        """Whether TCP keepalive is enabled on the socket."""
        return self._keep_alive

    @property
    def timeout(self) -> float:
        """Number of seconds to wait for the connection to be established."""
        return self._timeout

    @property
    def local_address(self) -> Optional[IPAddressAndPort]:
        stream = self.stream
        return stream.socket.getsockname() if stream is not None else None

    @property
    def remote_address(self) -> Optional[IPAddressAndPort]:
        stream = self.stream
        return stream.socket.getpeername() if stream is not None else None

    @property
    def path(self) -> str:
        return format_address(self._address)

    @property
    def writable(self) -> bool:
        return self.is_open and not self._eof_sent

    async def exists(self) -> bool:
        # There is no reliable way to tell whether the server is listening
        # without connecting to it
        return True

    async def _create_stream(self) -> Stream:
        """Connects to the target of the transport, giving up after the
        connection timeout.
        """
        host, port = self._address
        try:
            with fail_after(self._timeout):
                stream = await open_tcp_stream(host, port)
        except TooSlowError:
            raise OpenTimeoutError(self._timeout) from None
        except OSError as ex:
            raise TransportError(f"Failed to connect to {self.path}: {ex}") from ex

        if self._keep_alive:
            stream.setsockopt(SOL_SOCKET, SO_KEEPALIVE, 1)

        self._eof_sent = False
        return stream

    async def _close(self) -> None:
        """Shuts down the outbound half of the connection gracefully and then
        closes the socket.
        """
        stream, self._handle = self._handle, None
        if stream is None:
            raise AlreadyClosedError()

        try:
            with move_on_after(self._close_timeout):
                await stream.wait_send_all_might_not_block()
                await stream.send_eof()
                self._eof_sent = True
        except (BrokenResourceError, ClosedResourceError, OSError) as ex:
            log.debug(f"Graceful shutdown of {self.path} failed: {ex}")
        finally:
            await stream.aclose()
