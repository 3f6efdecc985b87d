"""Sinks that receive a copy of the raw data arriving on a transport, and the
registry that re-attaches them every time a port is reopened.
"""

import attr
import logging

from trio import BrokenResourceError, ClosedResourceError, WouldBlock
from typing import Any, Callable, Iterator, List, Optional

__all__ = ("PipeRegistration", "PipeRegistry", "RawDataPipe")

log = logging.getLogger(__name__.rpartition(".")[0])


#: Type specification for objects that may be used as the destination of a
#: pipe: a Trio memory send channel, a callable that accepts bytes or a
#: file-like object with a ``write()`` method
Sink = Any


class RawDataPipe:
    """Attachment of a sink to the live inbound data stream of a single
    transport handle.

    A pipe is detached automatically when the handle it belongs to is
    closed; after that, it does not forward any data even if the transport
    is reopened. Ports re-attach their sinks with a new pipe instead.
    """

    def __init__(self, sink: Sink, *, end: bool = False):
        """Constructor.

        Parameters:
            sink: the destination of the data; a Trio memory send channel, a
                callable or an object with a ``write()`` method
            end: whether to close the sink when the pipe is detached
        """
        self.sink = sink
        self.end = bool(end)
        self._attached = True
        self._on_detached: List[Callable[["RawDataPipe"], None]] = []

    @property
    def attached(self) -> bool:
        """Whether the pipe still forwards data to its sink."""
        return self._attached

    def feed(self, data: bytes) -> None:
        """Forwards a chunk of data to the sink of the pipe.

        Sinks that are closed on the other end are detached silently. Memory
        channels that are full drop the chunk.
        """
        if not self._attached:
            return

        sink = self.sink
        try:
            if hasattr(sink, "send_nowait"):
                sink.send_nowait(data)
            elif callable(sink):
                sink(data)
            else:
                sink.write(data)
        except WouldBlock:
            log.warning("Pipe sink is full, dropping {0} bytes".format(len(data)))
        except (BrokenResourceError, ClosedResourceError):
            self.detach()

    def detach(self) -> None:
        """Detaches the pipe from its transport. Closes the sink if the pipe
        was created with ``end=True``. No-op if the pipe is detached already.
        """
        if not self._attached:
            return

        self._attached = False

        if self.end:
            close = getattr(self.sink, "close", None)
            if close is not None:
                close()

        callbacks, self._on_detached = self._on_detached, []
        for callback in callbacks:
            callback(self)

    def on_detached(self, callback: Callable[["RawDataPipe"], None]) -> None:
        """Registers a function to call when the pipe is detached."""
        if self._attached:
            self._on_detached.append(callback)
        else:
            callback(self)


@attr.s
class PipeRegistration:
    """A sink registered on a port, together with the pipe that currently
    connects it to the live transport handle (if any).
    """

    sink: Sink = attr.ib()

    #: Whether to close the sink when the port is closed for good
    end: bool = attr.ib(default=False)
    pipe: Optional[RawDataPipe] = attr.ib(default=None)

    #: Number of times the sink was attached to a transport handle
    generation: int = attr.ib(default=0)


class PipeRegistry:
    """Ordered collection of the sinks registered on a port."""

    def __init__(self):
        self._registrations: List[PipeRegistration] = []

    def __iter__(self) -> Iterator[PipeRegistration]:
        return iter(list(self._registrations))

    def __len__(self) -> int:
        return len(self._registrations)

    def add(self, sink: Sink, *, end: bool = False) -> PipeRegistration:
        """Registers a new sink. Registering the same sink twice returns the
        existing registration.
        """
        registration = self.find(sink)
        if registration is None:
            registration = PipeRegistration(sink=sink, end=end)
            self._registrations.append(registration)
        return registration

    def find(self, sink: Sink) -> Optional[PipeRegistration]:
        for registration in self._registrations:
            if registration.sink is sink:
                return registration
        return None

    def remove(self, sink: Sink) -> Optional[PipeRegistration]:
        """Removes the registration of the given sink and detaches its
        current pipe.

        Returns:
            the removed registration or `None` if the sink was not
            registered
        """
        registration = self.find(sink)
        if registration is not None:
            self._registrations.remove(registration)
            if registration.pipe is not None:
                registration.pipe.detach()
        return registration

    def attach_all(self, attach: Callable[[Sink], RawDataPipe]) -> None:
        """Attaches every registered sink to a new transport handle.

        Parameters:
            attach: function that attaches a sink to the live transport
                handle and returns the new pipe
        """
        for registration in self._registrations:
            registration.pipe = attach(registration.sink)
            registration.generation += 1

    def detach_all(self) -> None:
        """Detaches the current pipe of every registered sink without closing
        the sinks. Called when the transport handle is about to be closed;
        `attach_all()` connects the sinks again to the next handle.
        """
        for registration in self._registrations:
            if registration.pipe is not None:
                registration.pipe.detach()

    def end_all(self) -> None:
        """Detaches every registered sink and closes the ones that were
        registered with ``end=True``. Called when the port is closed for good;
        the registrations themselves are kept so a later explicit reopen
        attaches them again.
        """
        for registration in self._registrations:
            if registration.pipe is not None:
                registration.pipe.detach()
                registration.pipe = None
            if registration.end:
                close = getattr(registration.sink, "close", None)
                if close is not None:
                    close()
