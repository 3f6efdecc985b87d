"""Base transport classes.

A transport owns a single live OS-level handle (a serial device, a datagram
socket or a stream socket) and exposes it through a uniform set of
operations that ports rely on. Transports know nothing about reconnection;
they simply open and close their handle when asked to and report what
happens to it through four callbacks.
"""

import attr
import logging

from abc import ABCMeta, abstractmethod, abstractproperty
from trio import (
    BrokenResourceError,
    BusyResourceError,
    CancelScope,
    ClosedResourceError,
    sleep,
)
from typing import Callable, List, Optional

from betterport.errors import (
    AlreadyClosedError,
    AlreadyOpenError,
    PortError,
    TransportError,
    WriteRejectedError,
)
from betterport.pipes import RawDataPipe, Sink

__all__ = ("Transport", "TransportBase", "TransportCallbacks")

log = logging.getLogger(__name__.rpartition(".")[0])

#: Exceptions raised by I/O primitives that mean that the handle is broken
IO_ERRORS = (OSError, BrokenResourceError, BusyResourceError, ClosedResourceError)


@attr.s(frozen=True)
class TransportCallbacks:
    """The four functions that a transport calls when something happens to
    its handle. All of them are synchronous.
    """

    #: Called when the handle became ready
    on_open: Callable[[], None] = attr.ib()

    #: Called when the handle was closed by the remote side or the OS,
    #: without the transport being asked to close it
    on_close: Callable[[], None] = attr.ib()

    #: Called when the handle reported an I/O error while it was live
    on_error: Callable[[Exception], None] = attr.ib()

    #: Called with each chunk of inbound data
    on_data: Callable[[bytes], None] = attr.ib()


class Transport(metaclass=ABCMeta):
    """Interface specification for transports."""

    @abstractproperty
    def path(self) -> str:
        """Human-readable description of the endpoint of the transport."""
        raise NotImplementedError

    @abstractmethod
    async def exists(self) -> bool:
        """Returns whether the device or endpoint of the transport seems to
        be present. Best-effort for transports that cannot check it.
        """
        raise NotImplementedError

    @abstractproperty
    def is_open(self) -> bool:
        """Returns whether the transport has a live handle."""
        raise NotImplementedError

    @property
    def writable(self) -> bool:
        """Returns whether data may be written to the transport."""
        return self.is_open

    @abstractmethod
    async def open(self, callbacks: TransportCallbacks, nursery) -> None:
        """Creates the handle of the transport and waits until it becomes
        ready.

        Parameters:
            callbacks: the functions to call when something happens to the
                handle. `on_open` is called before this function returns.
                None of the callbacks are called if opening fails.
            nursery: the nursery in which the transport may start the
                background task that reads the handle

        Raises:
            AlreadyOpenError: if the transport has a live handle already
            PortError: if the handle cannot be created
        """
        raise NotImplementedError

    @abstractmethod
    async def close(self, *, final: bool = False) -> None:
        """Closes the handle of the transport and releases all resources
        associated to it. No-op if the transport is closed already.

        Parameters:
            final: whether the transport will not be reopened; transports may
                forget state that they would otherwise keep across reconnections
        """
        raise NotImplementedError

    @abstractmethod
    def check_writable(self) -> None:
        """Checks whether a write would be accepted right now.

        Raises:
            WriteRejectedError: if the transport cannot accept data
        """
        raise NotImplementedError

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Writes some data to the transport.

        Raises:
            WriteRejectedError: if the transport cannot accept data
            TransportError: if the handle reported an error while writing
        """
        raise NotImplementedError

    @abstractmethod
    async def flush(self) -> None:
        """Waits until the data written to the transport has been handed
        over to the device or the network.
        """
        raise NotImplementedError

    @abstractmethod
    def pipe_raw_data(self, sink: Sink, *, end: bool = False) -> RawDataPipe:
        """Attaches a sink to the inbound data of the live handle.

        Returns:
            the pipe that forwards data to the sink until the handle is
            closed
        """
        raise NotImplementedError


class TransportBase(Transport):
    """Base class for transports that read their handle in a background task.

    Derived classes implement `_open()`, `_close()`, `_receive()` and
    `_send()`; this class takes care of the callbacks, the reader task and
    the pipes.

    Classes derived from this base class *MUST* store their handle in
    ``_handle`` so the base class can tell whether there is anything to close.
    """

    def __init__(self, *, settle_delay: float = 1.0):
        """Constructor.

        Parameters:
            settle_delay: number of seconds to wait after the handle was closed
                before `close()` returns. Some drivers report the device as
                closed before they actually release it.
        """
        self.settle_delay = float(settle_delay)

        self._handle = None
        self._callbacks: Optional[TransportCallbacks] = None
        self._pipes: List[RawDataPipe] = []
        self._reader_scope: Optional[CancelScope] = None
        self._live = False

    @property
    def is_open(self) -> bool:
        return self._handle is not None and self._live

    async def open(self, callbacks: TransportCallbacks, nursery) -> None:
        if self.is_open:
            raise AlreadyOpenError()

        if self._handle is not None:
            log.debug(f"Closing stale handle of {self.path}")
            await self.close()

        try:
            await self._open()
        except BaseException:
            with CancelScope(shield=True):
                await self._release()
            raise

        self._callbacks = callbacks
        self._live = True
        self._reader_scope = CancelScope()
        nursery.start_soon(self._run_reader, self._reader_scope)

        callbacks.on_open()

    async def close(self, *, final: bool = False) -> None:
        scope, self._reader_scope = self._reader_scope, None
        if scope is not None:
            scope.cancel()

        self._live = False
        self._callbacks = None

        pipes, self._pipes = self._pipes, []
        for pipe in pipes:
            pipe.detach()

        if final:
            self._forget()

        try:
            await self._close()
        except AlreadyClosedError:
            return
        except IO_ERRORS as ex:
            # The handle is gone either way
            log.debug(f"Error while closing {self.path}: {ex}")

        await sleep(self.settle_delay)

    def check_writable(self) -> None:
        if self._handle is None:
            raise WriteRejectedError("Port does not exist")
        if not self.is_open:
            raise WriteRejectedError("Port is not open")
        if not self.writable:
            raise WriteRejectedError("Port is not writable")

    async def write(self, data: bytes) -> None:
        self.check_writable()
        try:
            await self._send(data)
        except IO_ERRORS as ex:
            raise TransportError(f"Failed to write to {self.path}: {ex}") from ex

    async def flush(self) -> None:
        pass

    def pipe_raw_data(self, sink: Sink, *, end: bool = False) -> RawDataPipe:
        if not self.is_open:
            raise PortError("Port is not open")

        pipe = RawDataPipe(sink, end=end)
        pipe.on_detached(self._pipes_changed)
        self._pipes.append(pipe)
        return pipe

    def _pipes_changed(self, pipe: RawDataPipe) -> None:
        try:
            self._pipes.remove(pipe)
        except ValueError:
            pass

    async def _run_reader(self, scope: CancelScope) -> None:
        """Background task that reads the handle until it is closed."""
        error = None

        with scope:
            try:
                # The handle may be closed before this task gets to run
                while not scope.cancel_called and self._handle is not None:
                    data = await self._receive()
                    if data is None:
                        break
                    if data:
                        self._dispatch(data)
            except IO_ERRORS as ex:
                error = ex

        if scope.cancel_called or self._reader_scope is not scope:
            # We were asked to close the handle; nobody needs to know
            return

        self._live = False
        callbacks = self._callbacks
        if callbacks is None:
            return

        if error is not None:
            wrapped = TransportError(f"Error while reading {self.path}: {error}")
            wrapped.__cause__ = error
            callbacks.on_error(wrapped)
        else:
            callbacks.on_close()

    def _dispatch(self, data: bytes) -> None:
        for pipe in list(self._pipes):
            pipe.feed(data)
        if self._callbacks is not None:
            self._callbacks.on_data(data)

    def _forget(self) -> None:
        """Forgets any state that the transport keeps across reconnections.
        Called when the transport is closed for good.
        """
        pass

    async def _release(self) -> None:
        """Releases the handle after a failed open attempt."""
        self._live = False
        try:
            await self._close()
        except AlreadyClosedError:
            pass
        except IO_ERRORS as ex:
            log.debug(f"Error while releasing {self.path}: {ex}")

    @abstractmethod
    async def _open(self) -> None:
        """Creates the handle and stores it in ``_handle``."""
        raise NotImplementedError

    @abstractmethod
    async def _close(self) -> None:
        """Closes the handle and sets ``_handle`` to ``None``.

        Raises:
            AlreadyClosedError: if there is no handle
        """
        raise NotImplementedError

    @abstractmethod
    async def _receive(self) -> Optional[bytes]:
        """Waits for the next chunk of inbound data.

        Returns:
            the data, or `None` if the handle reached the end of its stream
        """
        raise NotImplementedError

    @abstractmethod
    async def _send(self, data: bytes) -> None:
        """Sends some data over the handle."""
        raise NotImplementedError
