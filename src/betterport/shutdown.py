"""Process-level hook that closes a set of ports for good when the process
is asked to terminate.

Ports never install signal handlers themselves; applications that want
their ports released on SIGINT or SIGTERM run a ShutdownHook_ next to them.
"""

import logging

from contextlib import contextmanager
from signal import SIGINT, SIGTERM
from trio import TASK_STATUS_IGNORED, open_nursery, open_signal_receiver
from typing import Iterator, List, Sequence

from .errors import PortError
from .port import BetterPort

__all__ = ("ShutdownHook",)

log = logging.getLogger(__name__.rpartition(".")[0])


class ShutdownHook:
    """Closes every registered port permanently when the process receives a
    termination signal.
    """

    def __init__(self, signals: Sequence[int] = (SIGINT, SIGTERM)):
        """Constructor.

        Parameters:
            signals: the signals that trigger the shutdown
        """
        self._ports: List[BetterPort] = []
        self._signals = tuple(signals)

    def __contains__(self, port: BetterPort) -> bool:
        return port in self._ports

    def __len__(self) -> int:
        return len(self._ports)

    def add(self, port: BetterPort) -> None:
        """Registers a port to close on shutdown."""
        if port not in self._ports:
            self._ports.append(port)

    def remove(self, port: BetterPort) -> None:
        """Unregisters a port. No-op if the port is not registered."""
        try:
            self._ports.remove(port)
        except ValueError:
            pass

    @contextmanager
    def watch(self, port: BetterPort) -> Iterator[BetterPort]:
        """Context manager that keeps a port registered while the context
        is active.
        """
        self.add(port)
        try:
            yield port
        finally:
            self.remove(port)

    async def close_all(self) -> None:
        """Closes all registered ports permanently, concurrently."""
        ports = list(self._ports)
        if not ports:
            return

        log.info(f"Closing {len(ports)} port(s)")
        async with open_nursery() as nursery:
            for port in ports:
                nursery.start_soon(self._close_port, port)

    async def run(self, *, task_status=TASK_STATUS_IGNORED) -> None:
        """Waits for one of the termination signals, then closes all
        registered ports and returns. The caller decides whether the
        process should exit afterwards.
        """
        with open_signal_receiver(*self._signals) as signals:
            task_status.started()
            async for signum in signals:
                log.info(f"Received signal {signum}, shutting down")
                break

        await self.close_all()

    @staticmethod
    async def _close_port(port: BetterPort) -> None:
        try:
            await port.close(permanent=True)
        except PortError as ex:
            log.warning(f"Failed to close {port.path}: {ex}")
