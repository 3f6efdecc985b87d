from pytest import raises
from trio import open_memory_channel, sleep

from betterport import (
    BetterPort,
    DisconnectTimeoutError,
    NotFoundError,
    PortClosedError,
    PortState,
    TransportError,
    WriteRejectedError,
)


class TestOpenAndClose:
    async def test_open(self, make_port, device, autojump_clock):
        port = await make_port()
        assert port.state is PortState.CLOSED
        assert not port.is_open

        await port.open()

        assert port.state is PortState.OPEN
        assert port.is_open
        assert port.recorder.names == ["open"]
        assert device.open_count == 1

    async def test_state_changes(self, make_port, autojump_clock):
        port = await make_port()
        changes = []

        def on_state_changed(sender, old_state, new_state):
            changes.append((old_state, new_state))

        port.state_changed.connect(on_state_changed, sender=port)

        await port.open()
        await port.close(permanent=True)

        assert changes == [
            (PortState.CLOSED, PortState.OPENING),
            (PortState.OPENING, PortState.OPEN),
            (PortState.OPEN, PortState.CLOSING),
            (PortState.CLOSING, PortState.CLOSED),
        ]

    async def test_open_close_cycles(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=False)

        for _ in range(20):
            await port.open()
            await port.close()

        await sleep(1)
        assert port.recorder.names == ["open", "close"] * 20
        assert device.open_count == 20
        assert port.state is PortState.CLOSED

    async def test_open_with_failing_existence_check(
        self, make_port, device, autojump_clock
    ):
        device.fail_exists = OSError("enumeration failed")
        port = await make_port()

        with raises(TransportError) as info:
            await port.open()

        assert isinstance(info.value.__cause__, OSError)
        assert port.state is PortState.CLOSED
        assert port.recorder.names == ["error"]
        assert device.open_count == 0

    async def test_open_twice(self, make_port, device, autojump_clock):
        port = await make_port()
        await port.open()
        await port.open()

        assert port.recorder.names == ["open"]
        assert device.open_count == 1

    async def test_open_updates_keep_open_flag(self, make_port, autojump_clock):
        port = await make_port(keep_open=True)
        await port.open()
        assert port.keep_open

        await port.open(keep_open=False)
        assert not port.keep_open
        assert port.is_open
        assert port.recorder.names == ["open"]

    async def test_open_missing_device(self, make_port, device, autojump_clock):
        device.present = False
        port = await make_port()

        assert not await port.exists()
        with raises(NotFoundError):
            await port.open()

        assert port.state is PortState.CLOSED
        assert port.recorder.events == []
        assert device.open_count == 0

    async def test_open_failure(self, make_port, device, autojump_clock):
        device.fail_open = OSError("device busy")
        port = await make_port(keep_open=True)

        with raises(TransportError):
            await port.open()

        assert port.state is PortState.CLOSED
        assert port.recorder.names == ["error"]

        # Failures of an explicit open are not retried
        await sleep(10)
        assert port.recorder.names == ["error"]

    async def test_open_without_running(self, transport):
        port = BetterPort(transport)
        with raises(RuntimeError):
            await port.open()

    async def test_close(self, make_port, autojump_clock):
        port = await make_port(keep_open=False)
        await port.open()
        await port.close()

        assert port.state is PortState.CLOSED
        assert not port.is_open
        assert port.recorder.events == [("open", None), ("close", None)]

    async def test_close_twice(self, make_port, autojump_clock):
        port = await make_port(keep_open=False)
        await port.open()
        await port.close()
        port.recorder.clear()

        await port.close()
        await port.close(permanent=True)
        assert port.recorder.events == []

    async def test_close_with_reason(self, make_port, autojump_clock):
        port = await make_port(keep_open=False)
        await port.open()

        reason = RuntimeError("test")
        await port.close(reason=reason)
        assert port.recorder.of_type("close") == [reason]

    async def test_close_reopens_if_kept_open(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=True)
        await port.open()
        await port.close()

        await sleep(1)
        assert port.recorder.names == ["open", "close", "open"]
        assert device.open_count == 2

    async def test_permanent_close(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=True)
        await port.open()
        await port.close(permanent=True)

        await sleep(30)
        assert port.recorder.names == ["open", "close"]
        assert not port.keep_open

        with raises(PortClosedError):
            await port.open()

        await port.open(keep_open=True)
        assert port.is_open
        assert port.keep_open
        assert port.recorder.names == ["open", "close", "open"]

    async def test_write_after_permanent_close(self, make_port, autojump_clock):
        port = await make_port(keep_open=True)
        await port.open()
        await port.close(permanent=True)

        results = []
        for _ in range(5):
            assert not port.write(b"hello", results.append)
        await sleep(30)

        assert len(results) == 5
        assert all(isinstance(result, WriteRejectedError) for result in results)
        assert port.recorder.names == ["open", "close"]

    async def test_wait_until_open_and_closed(self, make_port, nursery, autojump_clock):
        port = await make_port(keep_open=False)

        async def open_later():
            await sleep(2)
            await port.open()

        nursery.start_soon(open_later)
        await port.wait_until_open()
        assert port.is_open

        nursery.start_soon(port.close)
        await port.wait_until_closed()
        assert port.state is PortState.CLOSED

    async def test_auto_open(self, make_port, autojump_clock):
        results = []
        port = await make_port(auto_open=True, on_auto_open=results.append)

        await sleep(0.1)
        assert port.is_open
        assert results == [None]

    async def test_auto_open_missing_device(self, make_port, device, autojump_clock):
        device.present = False
        results = []
        port = await make_port(auto_open=True, on_auto_open=results.append)

        await sleep(0.1)
        assert not port.is_open
        assert len(results) == 1
        assert isinstance(results[0], NotFoundError)


class TestReconnection:
    async def test_reopens_after_remote_close(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=True)
        await port.open()

        await device.hang_up()
        await sleep(0.1)
        assert port.recorder.names == ["open", "close"]
        assert port.state is PortState.CLOSED

        await sleep(1)
        assert port.recorder.names == ["open", "close", "open"]
        assert port.is_open
        assert device.open_count == 2

    async def test_stays_closed_if_not_kept_open(
        self, make_port, device, autojump_clock
    ):
        port = await make_port(keep_open=False)
        await port.open()

        await device.hang_up()
        await sleep(30)

        assert port.recorder.names == ["open", "close"]
        assert device.open_count == 1

    async def test_retries_until_device_returns(
        self, make_port, device, autojump_clock
    ):
        port = await make_port(keep_open=True)
        await port.open()

        device.present = False
        await device.hang_up()
        await sleep(10)

        # Missing devices are retried quietly
        assert port.recorder.names == ["open", "close"]
        assert device.open_count == 1

        device.present = True
        await sleep(1.5)

        assert port.recorder.names == ["open", "close", "open"]
        assert device.open_count == 2

    async def test_reports_failed_attempts(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=True)
        await port.open()

        device.fail_open = OSError("device busy")
        await device.hang_up()
        await sleep(2.7)

        # First attempt after 0.5 seconds, then two more, one second apart
        assert port.recorder.names == ["open", "close", "error", "error", "error"]

        device.fail_open = None
        await sleep(1)
        assert port.recorder.names[-1] == "open"
        assert port.is_open

    async def test_survives_failing_existence_check(
        self, make_port, device, autojump_clock
    ):
        port = await make_port(keep_open=True)
        await port.open()

        device.fail_exists = OSError("enumeration failed")
        await device.hang_up()
        await sleep(2.7)

        assert port.recorder.names == ["open", "close", "error", "error", "error"]
        assert device.open_count == 1

        device.fail_exists = None
        await sleep(1)
        assert port.recorder.names[-1] == "open"
        assert port.is_open

    async def test_permanent_close_stops_retries(
        self, make_port, device, autojump_clock
    ):
        port = await make_port(keep_open=True)
        await port.open()

        device.present = False
        await device.hang_up()
        await sleep(3)
        await port.close(permanent=True)

        device.present = True
        await sleep(30)
        assert port.recorder.names == ["open", "close"]
        assert not port.is_open

    async def test_explicit_open_during_reconnection(
        self, make_port, device, autojump_clock
    ):
        port = await make_port(keep_open=True, reconnect_delay=5)
        await port.open()

        await device.hang_up()
        await sleep(0.1)
        await port.open()
        await sleep(10)

        assert port.recorder.names == ["open", "close", "open"]
        assert device.open_count == 2


class TestDisconnectTimeout:
    async def test_closes_on_silence(self, make_port, autojump_clock):
        port = await make_port(keep_open=False, close_on_no_data=True)
        await port.open()

        await sleep(0.9)
        assert port.is_open

        await sleep(0.2)
        assert not port.is_open
        assert port.recorder.names == ["open", "close"]

        (reason,) = port.recorder.of_type("close")
        assert isinstance(reason, DisconnectTimeoutError)

    async def test_data_keeps_port_open(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=False, close_on_no_data=True)
        await port.open()

        for _ in range(10):
            await sleep(0.5)
            await device.send(b"ping")

        await sleep(0.1)
        assert port.is_open
        assert port.recorder.names == ["open"] + ["data"] * 10

        await sleep(1)
        assert not port.is_open

    async def test_reopens_after_silence(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=True, close_on_no_data=True)
        await port.open()

        await sleep(1.7)
        assert port.recorder.names == ["open", "close", "open"]
        assert device.open_count == 2

    async def test_disabled(self, make_port, autojump_clock):
        port = await make_port(keep_open=False, close_on_no_data=False)
        await port.open()

        await sleep(60)
        assert port.is_open
        assert port.recorder.names == ["open"]


class TestData:
    async def test_data_events(self, make_port, device, autojump_clock):
        port = await make_port()
        await port.open()

        await device.send(b"hello")
        await sleep(0.1)

        assert port.recorder.of_type("data") == [b"hello"]

    async def test_write(self, make_port, device, autojump_clock):
        port = await make_port()
        await port.open()

        results = []
        assert port.write(b"hello", results.append)
        await port.flush()

        assert results == [None]
        assert await device.receive() == b"hello"

    async def test_write_string(self, make_port, device, autojump_clock):
        port = await make_port()
        await port.open()

        assert port.write("héllo")
        await port.flush()
        assert await device.receive() == "héllo".encode("utf-8")

    async def test_write_when_closed(self, make_port, autojump_clock):
        port = await make_port()
        results = []

        assert not port.write(b"hello", results.append)
        assert len(results) == 1
        assert isinstance(results[0], WriteRejectedError)

    async def test_write_during_reconnection(self, make_port, device, autojump_clock):
        port = await make_port(keep_open=True)
        await port.open()
        await device.hang_up()
        await sleep(0.1)

        results = []
        assert not port.write(b"hello", results.append)
        assert isinstance(results[0], WriteRejectedError)

    async def test_write_queue_limit(self, make_port, autojump_clock):
        port = await make_port(write_queue_size=2)
        await port.open()

        results = []
        accepted = [port.write(b"x", results.append) for _ in range(10)]
        assert accepted[:2] == [True, True]
        assert not accepted[-1]
        assert len(results) == accepted.count(False)
        assert all(isinstance(result, WriteRejectedError) for result in results)

    async def test_flush_when_closed(self, make_port, autojump_clock):
        port = await make_port()
        with raises(WriteRejectedError):
            await port.flush()

    async def test_send_on_open(self, make_port, device, autojump_clock):
        port = await make_port(send_on_open="hello\r\n")
        await port.open()
        await sleep(0.1)

        assert await device.receive() == b"hello\r\n"

    async def test_pipe_survives_reconnection(
        self, make_port, device, autojump_clock
    ):
        port = await make_port(keep_open=True)
        tx, rx = open_memory_channel(16)

        registration = port.pipe(tx)
        assert registration.pipe is None

        await port.open()
        assert registration.generation == 1
        first_pipe = registration.pipe

        await device.send(b"one")
        assert await rx.receive() == b"one"

        await device.hang_up()
        await sleep(1)
        assert port.is_open
        assert registration.generation == 2
        assert registration.pipe is not first_pipe
        assert not first_pipe.attached

        await device.send(b"two")
        assert await rx.receive() == b"two"

    async def test_pipe_when_open(self, make_port, device, autojump_clock):
        port = await make_port()
        await port.open()

        chunks = []
        sink = chunks.append
        registration = port.pipe(sink)
        assert registration.pipe.attached
        assert registration.generation == 1

        await device.send(b"hello")
        await sleep(0.1)
        assert chunks == [b"hello"]

        port.unpipe(sink)
        assert not registration.pipe.attached

    async def test_pipe_detached_before_closing(self, make_port, autojump_clock):
        port = await make_port(keep_open=False, close_on_no_data=True)
        registration = port.pipe([].append)
        attached_when_closing = []

        def on_state_changed(sender, old_state, new_state):
            if new_state is PortState.CLOSING:
                attached_when_closing.append(registration.pipe.attached)

        port.state_changed.connect(on_state_changed, sender=port)

        await port.open()
        assert registration.pipe.attached

        # Silence drops the link
        await sleep(1.5)
        assert not port.is_open
        assert attached_when_closing == [False]

    async def test_pipe_end_on_permanent_close(self, make_port, autojump_clock):
        port = await make_port()
        tx, rx = open_memory_channel(16)
        port.pipe(tx, end=True)

        await port.open()
        await port.close(permanent=True)

        async for _ in rx:
            assert False, "channel should have been closed"
