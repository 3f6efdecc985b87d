from pytest_trio import trio_fixture
from trio.testing import memory_stream_pair

from betterport import BetterPort, PortConfig, StreamTransport


class FakeDevice:
    """Remote end of a stream transport used in the tests.

    Each time the transport is opened, a new pair of connected in-memory
    streams is created; the transport gets one end and the device keeps the
    other one.
    """

    def __init__(self):
        self.present = True
        self.fail_exists = None
        self.fail_open = None
        self.open_count = 0
        self.remote = None

    def exists(self):
        if self.fail_exists is not None:
            raise self.fail_exists
        return self.present

    async def connect(self):
        if self.fail_open is not None:
            raise self.fail_open

        local, self.remote = memory_stream_pair()
        self.open_count += 1
        return local

    async def send(self, data):
        await self.remote.send_all(data)

    async def receive(self):
        return await self.remote.receive_some()

    async def hang_up(self):
        await self.remote.aclose()


class EventRecorder:
    """Records the signals sent by a port in the order they were sent."""

    def __init__(self, port):
        self.events = []
        port.opened.connect(self._on_opened, sender=port)
        port.closed.connect(self._on_closed, sender=port)
        port.error_occurred.connect(self._on_error, sender=port)
        port.data_received.connect(self._on_data, sender=port)

    @property
    def names(self):
        return [event[0] for event in self.events]

    def of_type(self, name):
        return [event[1] for event in self.events if event[0] == name]

    def clear(self):
        del self.events[:]

    def _on_opened(self, sender):
        self.events.append(("open", None))

    def _on_closed(self, sender, reason):
        self.events.append(("close", reason))

    def _on_error(self, sender, error):
        self.events.append(("error", error))

    def _on_data(self, sender, data):
        self.events.append(("data", data))


@trio_fixture
def device():
    return FakeDevice()


@trio_fixture
def transport(device):
    return StreamTransport(
        device.connect,
        path="fake://device",
        exists=device.exists,
        settle_delay=0,
    )


@trio_fixture
async def make_port(transport, nursery):
    async def factory(**options):
        options.setdefault("auto_open", False)
        options.setdefault("close_on_no_data", False)
        options.setdefault("disconnect_timeout", 1)
        options.setdefault("reconnect_delay", 0.5)
        options.setdefault("retry_delay", 1)
        on_auto_open = options.pop("on_auto_open", None)

        port = BetterPort(
            transport, PortConfig(**options), on_auto_open=on_auto_open
        )
        port.recorder = EventRecorder(port)
        await nursery.start(port.run)
        return port

    return factory
