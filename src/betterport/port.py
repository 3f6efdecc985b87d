"""Port object that keeps a transport open, reconnecting it silently when the
link is lost.

A port drives exactly one transport. It opens and closes the transport on
request, watches the inbound data for silence, reopens the transport after
unplanned closures and re-exposes everything that happens to the transport
through a stable set of signals, no matter how many times the underlying
handle was replaced.
"""

import logging

from blinker import Signal
from contextlib import asynccontextmanager
from enum import Enum
from functools import partial
from trio import (
    CancelScope,
    Event,
    Lock,
    TASK_STATUS_IGNORED,
    WouldBlock,
    current_time,
    open_memory_channel,
    open_nursery,
    sleep,
    sleep_forever,
)
from trio_util import AsyncBool
from typing import Callable, Optional, Union

from .config import PortConfig
from .errors import (
    DisconnectTimeoutError,
    NotFoundError,
    PortClosedError,
    PortError,
    TransportError,
    WriteRejectedError,
)
from .pipes import PipeRegistration, PipeRegistry, Sink
from .transports.base import Transport, TransportCallbacks
from .transports.factory import create_transport

__all__ = ("BetterPort", "PortState", "create_port", "open_port")

log = logging.getLogger(__name__.rpartition(".")[0])

#: Type specification for the callbacks that receive the outcome of a write
WriteCallback = Callable[[Optional[Exception]], None]


class PortState(Enum):
    CLOSED = "CLOSED"
    OPENING = "OPENING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"


class BetterPort:
    """Port object that keeps a transport open.

    Ports may be in one of the following four states:

        - ``CLOSED``: the transport is closed. The port may be waiting to
          reopen it.

        - ``OPENING``: the transport is being opened

        - ``OPEN``: the transport is open

        - ``CLOSING``: the transport is being closed

    There is no separate state for reconnection; a reconnection shows up as
    a ``closed`` signal followed by an ``opened`` signal when the link is
    back.

    A port needs a running Trio nursery to manage its timers and background
    tasks; start its `run()` method in a nursery (or use `open_port()`)
    before opening it. Opening, closing and reconnection attempts are
    serialized; a request that arrives while another one is in progress waits
    for it to finish.
    """

    opened = Signal(doc="Signal sent after the transport of the port was opened.")
    closed = Signal(
        doc="""\
        Signal sent after the transport of the port was closed.

        Parameters:
            reason (Optional[Exception]): the error that caused the closure,
                if any
        """
    )
    error_occurred = Signal(
        doc="""\
        Signal sent when the transport reported an error or could not be
        opened.

        Parameters:
            error (Exception): the error
        """
    )
    data_received = Signal(
        doc="""\
        Signal sent when a chunk of data arrived on the transport.

        Parameters:
            data (bytes): the data
        """
    )
    state_changed = Signal(
        doc="""\
        Signal sent whenever the state of the port changes.

        Parameters:
            new_state (PortState): the new state
            old_state (PortState): the old state
        """
    )

    def __init__(
        self,
        transport: Transport,
        config: Optional[PortConfig] = None,
        *,
        on_auto_open: Optional[Callable[[Optional[Exception]], None]] = None,
    ):
        """Constructor.

        Parameters:
            transport: the transport that the port drives
            config: the configuration of the port; defaults are used if
                omitted
            on_auto_open: function to call with `None` or the error that
                happened when the port finished its initial automatic open
                attempt
        """
        self._transport = transport
        self._config = config if config is not None else PortConfig()
        self._on_auto_open = on_auto_open

        self._keep_open = self._config.keep_open
        self._closed_permanently = False

        self._state = PortState.CLOSED
        self._is_open = AsyncBool(False)
        self._is_closed = AsyncBool(True)

        self._lock = Lock()
        self._nursery = None
        self._generation = 0
        self._drop_reason = None

        self._reconnect_scope: Optional[CancelScope] = None
        self._silence_timer: Optional[CancelScope] = None

        self._pipes = PipeRegistry()
        self._write_tx, self._write_rx = open_memory_channel(
            self._config.write_queue_size
        )

    @property
    def config(self) -> PortConfig:
        """The configuration of the port."""
        return self._config

    @property
    def is_open(self) -> bool:
        """Returns whether the port is open and its transport is live."""
        return self._state is PortState.OPEN and self._transport.is_open

    @property
    def keep_open(self) -> bool:
        """Whether the port reopens its transport automatically after an
        unplanned closure.
        """
        return self._keep_open

    @property
    def path(self) -> str:
        """Human-readable description of the endpoint of the transport."""
        return self._transport.path

    @property
    def state(self) -> PortState:
        """The state of the port."""
        return self._state

    @property
    def transport(self) -> Transport:
        """The transport driven by the port."""
        return self._transport

    async def run(self, *, task_status=TASK_STATUS_IGNORED) -> None:
        """Runs the background tasks of the port. Must be executed in a Trio
        nursery; the port closes its transport for good when the task is
        cancelled.
        """
        if self._nursery is not None:
            raise RuntimeError("Port is already running")

        async with open_nursery() as nursery:
            self._nursery = nursery
            try:
                nursery.start_soon(self._process_writes)
                task_status.started()
                if self._config.auto_open:
                    nursery.start_soon(self._auto_open)
                await sleep_forever()
            finally:
                with CancelScope(shield=True):
                    await self.close(permanent=True)
                self._nursery = None

    async def exists(self) -> bool:
        """Returns whether the device or endpoint of the transport seems to
        be present.
        """
        return await self._transport.exists()

    async def open(self, keep_open: Optional[bool] = None) -> None:
        """Opens the port. No-op if the port is open already.

        Parameters:
            keep_open: whether the port should be reopened automatically
                after unplanned closures from now on. `None` keeps the current
                setting. Must be given explicitly to reopen a port that was
                closed permanently.

        Raises:
            NotFoundError: if the device or endpoint of the transport does
                not exist
            PortClosedError: if the port was closed permanently and
                `keep_open` was not given
            PortError: if the transport could not be opened
        """
        if keep_open is None:
            if self._closed_permanently:
                raise PortClosedError()
        else:
            self._keep_open = bool(keep_open)
            self._closed_permanently = False

        self._require_nursery()

        async with self._lock:
            if self._state is PortState.OPEN:
                return

            if self._state is PortState.CLOSING:
                # The link was lost and the port has not cleaned up yet
                await self._close_transport(self._drop_reason)

            await self._open_transport()
            self._cancel_reconnection()

    async def close(
        self, permanent: bool = False, reason: Optional[Exception] = None
    ) -> None:
        """Closes the port. No-op if the port is closed already.

        A port that is not closed permanently is reopened after the
        reconnection delay if it is configured to be kept open, just like
        after an unplanned closure.

        Parameters:
            permanent: whether to stop reopening the port automatically
            reason: the error to send along with the ``closed`` signal
        """
        if permanent:
            self._keep_open = False
            self._closed_permanently = True
            self._cancel_reconnection()

        async with self._lock:
            if self._state is PortState.CLOSED:
                if permanent:
                    await self._transport.close(final=True)
                    self._pipes.end_all()
                return

            if reason is None and self._state is PortState.CLOSING:
                reason = self._drop_reason

            self._cancel_reconnection()
            await self._close_transport(reason, final=permanent)

        if permanent:
            self._pipes.end_all()
        else:
            self._schedule_reconnection(self._config.reconnect_delay)

    def write(
        self,
        data: Union[bytes, bytearray, str],
        callback: Optional[WriteCallback] = None,
        *,
        encoding: str = "utf-8",
    ) -> bool:
        """Queues some data to be written to the port.

        Writes are rejected immediately if the port is not open, if the
        transport cannot accept data or if too many writes are pending.
        Writes are not queued across reconnections.

        Parameters:
            data: the data to write; strings are encoded first
            callback: function to call with `None` when the data was handed
                over to the transport, or with the error that prevented it.
                Called synchronously if the write is rejected.
            encoding: the encoding to use when `data` is a string

        Returns:
            whether the data was accepted for writing. This does not mean
            that the data was delivered.
        """
        if isinstance(data, str):
            data = data.encode(encoding)

        try:
            if self._state is not PortState.OPEN:
                raise WriteRejectedError("Port is not open")
            self._transport.check_writable()
            self._write_tx.send_nowait((bytes(data), callback))
        except WouldBlock:
            error = WriteRejectedError("Too many pending writes")
        except WriteRejectedError as ex:
            error = ex
        else:
            return True

        log.debug(f"Write to {self.path} rejected: {error}")
        if callback is not None:
            callback(error)
        return False

    async def flush(self) -> None:
        """Waits until the pending writes were handed over to the transport
        and then flushes the transport.

        Raises:
            WriteRejectedError: if the port is not open
        """
        if self._state is not PortState.OPEN:
            raise WriteRejectedError("Port is not open")

        done = Event()
        await self._write_tx.send((None, lambda _: done.set()))
        await done.wait()
        await self._transport.flush()

    def pipe(self, sink: Sink, *, end: bool = False) -> PipeRegistration:
        """Registers a sink that receives a copy of the inbound data of the
        port, across reconnections.

        Parameters:
            sink: a Trio memory send channel, a callable that accepts bytes
                or an object with a ``write()`` method
            end: whether to close the sink when the port is closed permanently

        Returns:
            the registration of the sink. Its ``pipe`` attribute always refers
            to the attachment to the current transport handle, and its
            ``generation`` attribute counts the attachments.
        """
        registration = self._pipes.add(sink, end=end)
        if self.is_open and (
            registration.pipe is None or not registration.pipe.attached
        ):
            registration.pipe = self._transport.pipe_raw_data(sink)
            registration.generation += 1
        return registration

    def unpipe(self, sink: Sink) -> None:
        """Removes a sink registered with `pipe()`."""
        self._pipes.remove(sink)

    async def wait_until_open(self) -> None:
        """Blocks the execution until the port becomes open."""
        await self._is_open.wait_value(True)

    async def wait_until_closed(self) -> None:
        """Blocks the execution until the port becomes closed."""
        await self._is_closed.wait_value(True)

    async def _auto_open(self) -> None:
        """Performs the initial automatic open attempt of the port."""
        error = None
        try:
            await self.open()
        except PortError as ex:
            log.warning(f"Failed to open {self.path}: {ex}")
            error = ex

        if self._on_auto_open is not None:
            self._on_auto_open(error)

    async def _open_transport(self) -> None:
        """Opens the transport. Must be called with the lock held, in the
        ``CLOSED`` state.
        """
        try:
            exists = await self._transport.exists()
        except PortError:
            raise
        except Exception as ex:
            error = TransportError(f"Failed to look up {self.path}: {ex}")
            self.error_occurred.send(self, error=error)
            raise error from ex

        if not exists:
            raise NotFoundError(self.path)

        self._generation += 1
        callbacks = self._create_callbacks(self._generation)

        self._set_state(PortState.OPENING)
        try:
            await self._transport.open(callbacks, self._nursery)
        except BaseException as ex:
            if self._state is PortState.OPENING:
                self._set_state(PortState.CLOSED)

            if isinstance(ex, PortError):
                self.error_occurred.send(self, error=ex)
                raise
            elif isinstance(ex, Exception):
                error = TransportError(f"Failed to open {self.path}: {ex}")
                self.error_occurred.send(self, error=error)
                raise error from ex
            else:
                raise

    async def _close_transport(
        self, reason: Optional[Exception] = None, final: bool = False
    ) -> None:
        """Closes the transport and sends the ``closed`` signal if the port
        was open. Must be called with the lock held.
        """
        self._cancel_silence_timer()

        was_open = self._state in (PortState.OPEN, PortState.CLOSING)
        self._pipes.detach_all()
        self._set_state(PortState.CLOSING)
        self._drop_reason = None

        try:
            with CancelScope(shield=True):
                await self._transport.close(final=final)
        finally:
            self._set_state(PortState.CLOSED)

        if was_open:
            log.info(f"Closed {self.path}")
            self.closed.send(self, reason=reason)

    def _create_callbacks(self, generation: int) -> TransportCallbacks:
        return TransportCallbacks(
            on_open=partial(self._on_transport_opened, generation),
            on_close=partial(self._on_transport_closed, generation),
            on_error=partial(self._on_transport_error, generation),
            on_data=partial(self._on_transport_data, generation),
        )

    def _on_transport_opened(self, generation: int) -> None:
        if generation != self._generation:
            return

        self._set_state(PortState.OPEN)
        log.info(f"Opened {self.path}")
        self.opened.send(self)

        self._pipes.attach_all(self._transport.pipe_raw_data)

        if self._config.send_on_open:
            self.write(self._config.send_on_open)

        if self._config.close_on_no_data:
            self._arm_silence_timer(generation)

    def _on_transport_closed(self, generation: int) -> None:
        self._drop(generation, None)

    def _on_transport_error(self, generation: int, error: Exception) -> None:
        if generation != self._generation or self._state is not PortState.OPEN:
            return

        log.warning(f"Error on {self.path}: {error}")
        self.error_occurred.send(self, error=error)
        self._drop(generation, error)

    def _on_transport_data(self, generation: int, data: bytes) -> None:
        if generation != self._generation or self._state is not PortState.OPEN:
            return

        self.data_received.send(self, data=data)
        self._reset_silence_timer()

    def _drop(self, generation: int, reason: Optional[Exception]) -> None:
        """Handles the loss of the link of the transport: closes the
        transport in the background and schedules a reconnection.
        """
        if generation != self._generation or self._state is not PortState.OPEN:
            return

        log.warning(f"Lost connection to {self.path}")

        self._cancel_silence_timer()
        self._pipes.detach_all()
        self._set_state(PortState.CLOSING)
        self._drop_reason = reason
        self._nursery.start_soon(self._handle_drop, generation)

    async def _handle_drop(self, generation: int) -> None:
        async with self._lock:
            if generation != self._generation or self._state is not PortState.CLOSING:
                return
            await self._close_transport(self._drop_reason)

        self._schedule_reconnection(self._config.reconnect_delay)

    def _schedule_reconnection(self, delay: float) -> None:
        """Starts the background task that reopens the port, unless the port
        does not need to be kept open or the task is running already.
        """
        if (
            not self._keep_open
            or self._reconnect_scope is not None
            or self._nursery is None
        ):
            return

        scope = CancelScope()
        self._reconnect_scope = scope
        self._nursery.start_soon(self._reconnect, scope, delay)

    def _cancel_reconnection(self) -> None:
        scope, self._reconnect_scope = self._reconnect_scope, None
        if scope is not None:
            scope.cancel()

    async def _reconnect(self, scope: CancelScope, delay: float) -> None:
        """Background task that keeps on trying to reopen the port until it
        succeeds or the port no longer needs to be kept open.
        """
        try:
            with scope:
                await sleep(delay)
                while self._keep_open:
                    async with self._lock:
                        if self._state is not PortState.CLOSED:
                            return

                        log.debug(f"Trying to reopen {self.path}")
                        try:
                            await self._open_transport()
                        except PortError as ex:
                            log.warning(
                                f"Failed to reopen {self.path}, next attempt in "
                                f"{self._config.retry_delay:g} seconds: {ex}"
                            )
                        else:
                            if self._reconnect_scope is scope:
                                self._reconnect_scope = None
                            return

                    await sleep(self._config.retry_delay)
        finally:
            if self._reconnect_scope is scope:
                self._reconnect_scope = None

    def _arm_silence_timer(self, generation: int) -> None:
        self._cancel_silence_timer()
        timer = CancelScope(deadline=current_time() + self._config.disconnect_timeout)
        self._silence_timer = timer
        self._nursery.start_soon(self._run_silence_timer, timer, generation)

    def _reset_silence_timer(self) -> None:
        if self._silence_timer is not None:
            self._silence_timer.deadline = (
                current_time() + self._config.disconnect_timeout
            )

    def _cancel_silence_timer(self) -> None:
        timer, self._silence_timer = self._silence_timer, None
        if timer is not None:
            timer.cancel()

    async def _run_silence_timer(self, timer: CancelScope, generation: int) -> None:
        """Background task that drops the connection when the deadline of the
        given timer passes without being moved by incoming data.
        """
        with timer:
            await sleep_forever()

        if self._silence_timer is timer:
            self._silence_timer = None
            timeout = self._config.disconnect_timeout
            log.warning(f"No data from {self.path} in {timeout:g} seconds")
            self._drop(generation, DisconnectTimeoutError(timeout))

    async def _process_writes(self) -> None:
        """Background task that hands the queued writes over to the
        transport one by one.
        """
        async with self._write_rx:
            async for data, callback in self._write_rx:
                error = None
                if data is not None:
                    try:
                        if self._state is not PortState.OPEN:
                            raise WriteRejectedError("Port is not open")
                        await self._transport.write(data)
                    except PortError as ex:
                        log.debug(f"Write to {self.path} failed: {ex}")
                        error = ex

                if callback is not None:
                    callback(error)

    def _require_nursery(self) -> None:
        if self._nursery is None:
            raise RuntimeError(
                "Port is not running; start its run() method in a nursery first"
            )

    def _set_state(self, new_state: PortState) -> None:
        """Sets the state of the port to a new value and sends the
        appropriate signals.
        """
        old_state = self._state
        if new_state is old_state:
            return

        self._state = new_state
        self._is_open.value = new_state is PortState.OPEN
        self._is_closed.value = new_state is PortState.CLOSED

        log.debug(f"{self.path}: {old_state.value} -> {new_state.value}")
        self.state_changed.send(self, old_state=old_state, new_state=new_state)


def create_port(
    specification, config: Optional[PortConfig] = None, **options
) -> BetterPort:
    """Creates a port from the specification of its transport.

    Parameters:
        specification: URL-style string or dict that describes the transport;
            see `TransportFactory.create()`
        config: the configuration of the port
        options: options to construct the configuration of the port from when
            `config` is not given; see `PortConfig.from_dict()`
    """
    if config is None:
        config = PortConfig.from_dict(options)
    elif options:
        raise TypeError("options must not be given when config is specified")
    return BetterPort(create_transport(specification), config)


@asynccontextmanager
async def open_port(
    transport: Union[Transport, str, dict],
    config: Optional[PortConfig] = None,
    **kwds,
):
    """Async context manager that runs a port in a nursery while the context
    is active and closes it for good when the context is exited.

    Parameters:
        transport: the transport of the port, or its specification
        config: the configuration of the port

    Additional keyword arguments are forwarded to the constructor of the
    port.
    """
    if not isinstance(transport, Transport):
        transport = create_transport(transport)

    port = BetterPort(transport, config, **kwds)
    async with open_nursery() as nursery:
        await nursery.start(port.run)
        try:
            yield port
        finally:
            nursery.cancel_scope.cancel()
