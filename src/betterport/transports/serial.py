"""Transport for a serial port."""

import re

from errno import ENOENT
from os import dup
from os.path import basename, realpath
from serial import (
    PARITY_EVEN,
    PARITY_MARK,
    PARITY_NONE,
    PARITY_ODD,
    PARITY_SPACE,
    Serial,
    SerialException,
    STOPBITS_ONE,
    STOPBITS_ONE_POINT_FIVE,
    STOPBITS_TWO,
)
from serial.tools import list_ports
from trio import to_thread
from trio.abc import Stream
from trio.lowlevel import FdStream, wait_readable
from typing import Any, Dict, Iterable, Optional

from betterport.errors import NotFoundError, PortError, TransportError

from .factory import create_transport
from .stream import StreamTransportBase

__all__ = ("SerialPortStream", "SerialTransport", "port_matches")

_STOPBITS = {1: STOPBITS_ONE, 1.5: STOPBITS_ONE_POINT_FIVE, 2: STOPBITS_TWO}
_PARITIES = {
    "none": PARITY_NONE,
    "even": PARITY_EVEN,
    "odd": PARITY_ODD,
    "mark": PARITY_MARK,
    "space": PARITY_SPACE,
}

_INTERFACE_SUFFIX = re.compile(r"-if\d+.*$")


def _identifier_from_path(path: str) -> Optional[str]:
    """Returns the stable device identifier embedded in a symlink-style
    path such as ``/dev/serial/by-id/usb-Foo_Bar_1234-if00``, or `None` if
    the path does not look like one.
    """
    if "serial/by-id" in path.lower():
        return basename(path) or None
    return None


def port_matches(port: Any, path: str) -> bool:
    """Returns whether a port descriptor returned from
    `serial.tools.list_ports.comports()` refers to the device at the given
    path.

    The descriptor matches if its device path is the same as the given path
    or the path that the given path resolves to, or if the given path is a
    ``/dev/serial/by-id/`` link whose name ends with the serial number of
    the descriptor (before the interface suffix).
    """
    device = getattr(port, "device", None)
    if not device:
        return False

    if device == path or device == realpath(path):
        return True

    identifier = _identifier_from_path(path)
    if identifier is None:
        return False

    serial_number = getattr(port, "serial_number", None)
    if not serial_number:
        return False

    # usb-<vendor>_<model>_<serial>-if<NN>[-port<N>]
    head = _INTERFACE_SUFFIX.sub("", identifier)
    return head == serial_number or head.endswith("_" + serial_number)


class SerialPortStream(Stream):
    """A Trio stream implementation that talks to a serial port using
    PySerial in non-blocking mode.
    """

    @classmethod
    async def create(cls, *args, **kwds) -> Stream:
        """Constructs a new `pySerial` serial port object, associates it to a
        SerialPortStream_ and returns the serial stream itself.

        All positional and keyword arguments are forwarded to the constructor
        of the Serial_ object from `pySerial`. Opening the port happens in a
        worker thread.
        """
        device = await to_thread.run_sync(lambda: Serial(*args, timeout=0, **kwds))
        return cls(device)

    def __init__(self, device: Serial):
        """Constructor.

        Do not use this method unless you know what you are doing; use
        `SerialPortStream.create()` instead.

        Parameters:
            device: the `pySerial` serial port object to manage in this stream.
                It must already be open.
        """
        self._device = device
        self._device.nonblocking()
        self._fd_stream = FdStream(dup(self._device.fileno()))

    @property
    def device(self) -> Serial:
        """The `pySerial` serial port object managed by the stream."""
        return self._device

    async def aclose(self) -> None:
        """Closes the serial port."""
        try:
            await self._fd_stream.aclose()
        finally:
            self._device.close()

    async def flush(self) -> None:
        """Waits until all the data written to the serial port has been
        transmitted.
        """
        await to_thread.run_sync(self._device.flush)

    async def receive_some(self, max_bytes: Optional[int] = None) -> bytes:
        result = await self._fd_stream.receive_some(max_bytes)
        if result:
            return result

        # Spurious EOF; POSIX serial port devices may not return -1 with
        # errno = EWOULDBLOCK in case of an EOF condition. Wait for the port
        # to become readable again; if it still returns no bytes, then this
        # is a real EOF.
        await wait_readable(self._fd_stream.fileno())
        return await self._fd_stream.receive_some(max_bytes)

    async def send_all(self, data: bytes) -> None:
        await self._fd_stream.send_all(data)

    async def wait_send_all_might_not_block(self) -> None:
        await self._fd_stream.wait_send_all_might_not_block()


def _normalize_serial_parameters(parameters: Dict[str, Any]) -> Dict[str, Any]:
    # Transports never open themselves; the port decides when to open them
    parameters.pop("autoOpen", None)
    parameters.pop("auto_open", None)
    return parameters


@create_transport.register(
    "serial",
    aliases={
        "baudRate": "baud",
        "baudrate": "baud",
        "dataBits": "bytesize",
        "stopBits": "stopbits",
        "xon": "xonxoff",
    },
    normalize=_normalize_serial_parameters,
)
class SerialTransport(StreamTransportBase):
    """Transport for a serial port.

    The existence check enumerates the serial ports of the system, so a port
    that is unplugged is reported as missing before we even try to open it.
    """

    def __init__(
        self,
        path: str,
        baud: int = 115200,
        stopbits: float = 1,
        bytesize: int = 8,
        parity: str = "none",
        *,
        rtscts: bool = False,
        xonxoff: bool = False,
        settle_delay: float = 1.0,
    ):
        """Constructor.

        Parameters:
            path: full path to the serial port to open. Paths under
                ``/dev/serial/by-id/`` are matched by their identifier as well
                so the port is found even if the device node behind the link
                changes.
            baud: the baud rate to use when opening the port
            stopbits: the number of stop bits to use. Must be 1, 1.5 or 2.
            bytesize: the number of data bits per character; 5 to 8
            parity: ``none``, ``even``, ``odd``, ``mark`` or ``space``, or
                the single-letter pySerial constant
            rtscts: whether to use RTS/CTS hardware flow control
            xonxoff: whether to use XON/XOFF software flow control
            settle_delay: number of seconds to wait after the port was closed
                before reporting that it is closed
        """
        super().__init__(settle_delay=settle_delay)

        stopbits = float(stopbits)
        if stopbits not in _STOPBITS:
            raise ValueError("unsupported stop bit count: {0!r}".format(stopbits))

        bytesize = int(bytesize)
        if bytesize not in (5, 6, 7, 8):
            raise ValueError("unsupported data bit count: {0!r}".format(bytesize))

        parity = _PARITIES.get(str(parity).lower(), parity)
        if parity not in _PARITIES.values():
            raise ValueError("unsupported parity: {0!r}".format(parity))

        self._path = path
        self._baud = int(baud)
        self._stopbits = stopbits
        self._options = {
            "bytesize": bytesize,
            "parity": parity,
            "rtscts": bool(rtscts),
            "xonxoff": bool(xonxoff),
        }

    @property
    def baud(self) -> int:
        """The configured baud rate of the port."""
        return self._baud

    @property
    def path(self) -> str:
        return self._path

    @property
    def baud_rate(self) -> int:
        """The baud rate of the open port, or zero if the port is closed."""
        return self._baud if self.is_open else 0

    @property
    def writable(self) -> bool:
        stream = self.stream
        return self.is_open and stream is not None and stream.device.is_open

    async def exists(self) -> bool:
        if not self._path:
            raise PortError("Path is not set")
        ports = await to_thread.run_sync(list_ports.comports)
        return self._find_port(ports)

    def _find_port(self, ports: Iterable[Any]) -> bool:
        return any(port_matches(port, self._path) for port in ports)

    async def flush(self) -> None:
        stream = self.stream
        if stream is None:
            raise PortError("Port does not exist")
        await stream.flush()

    async def _create_stream(self) -> Stream:
        try:
            return await SerialPortStream.create(
                self._path,
                baudrate=self._baud,
                stopbits=_STOPBITS[self._stopbits],
                **self._options,
            )
        except SerialException as ex:
            if getattr(ex, "errno", None) == ENOENT:
                raise NotFoundError(self._path) from ex
            raise TransportError(f"Failed to open {self._path}: {ex}") from ex
