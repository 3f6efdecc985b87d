"""Transport classes that wrap a Trio bidirectional byte stream."""

from abc import abstractmethod
from inspect import iscoroutinefunction
from trio.abc import Stream
from typing import Awaitable, Callable, Optional, Union

from betterport.errors import AlreadyClosedError

from .base import TransportBase

__all__ = ("StreamTransport", "StreamTransportBase")


class StreamTransportBase(TransportBase):
    """Transport class that wraps a Trio bidirectional byte stream."""

    #: Maximum number of bytes to read from the stream in one go; `None` lets
    #: the stream pick a reasonable default
    receive_size: Optional[int] = None

    @abstractmethod
    async def _create_stream(self) -> Stream:
        """Creates the stream that the transport should operate on.

        Each invocation of this method should return a new Trio stream
        instance.
        """
        raise NotImplementedError

    @property
    def stream(self) -> Optional[Stream]:
        """Returns the stream wrapped by the transport, or `None` if the
        transport is closed.
        """
        return self._handle

    async def _open(self):
        """Opens the stream."""
        self._handle = await self._create_stream()

    async def _close(self):
        """Closes the stream."""
        stream, self._handle = self._handle, None
        if stream is None:
            raise AlreadyClosedError()
        await stream.aclose()

    async def _receive(self) -> Optional[bytes]:
        data = await self._handle.receive_some(self.receive_size)
        return data if data else None

    async def _send(self, data: bytes) -> None:
        await self._handle.send_all(data)


class StreamTransport(StreamTransportBase):
    """Transport class that wraps a Trio bidirectional byte stream that is
    constructed on-demand from a factory function.
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[Stream]],
        *,
        path: str = "stream",
        exists: Optional[Callable[[], Union[bool, Awaitable[bool]]]] = None,
        **kwds,
    ):
        """Constructor.

        Parameters:
            factory: async callable that must be called with no arguments
                and that will construct a new Trio bidirectional byte
                stream that the transport will wrap.
            path: human-readable description of the stream
            exists: optional sync or async callable that tells whether the
                stream can be constructed right now. The stream is assumed
                to exist if it is omitted.
        """
        super().__init__(**kwds)
        self._factory = factory
        self._path = path
        self._exists = exists

    @property
    def path(self) -> str:
        return self._path

    async def exists(self) -> bool:
        if self._exists is None:
            return True
        elif iscoroutinefunction(self._exists):
            return bool(await self._exists())
        else:
            return bool(self._exists())

    async def _create_stream(self) -> Stream:
        return await self._factory()
