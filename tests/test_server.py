"""
Tests for MockServer over real loopback sockets.

Tests cover:
- Single and multi connection scripts
- Accept-order script assignment and listener exhaustion
- Report-and-continue verification
- Code callbacks, sync and async
- Idle timeout, stream error and fatal error policies
- Setup failures and idempotent teardown
- Connect accessors
- Injected logger and debug tracing
"""
import asyncio
import socket
import time
from unittest.mock import ANY, MagicMock

import pytest

from mocktcp.engine.connection import Connection
from mocktcp.engine.reporter import FailFastReporter
from mocktcp.engine.runner import CHECK_LABEL_PREFIX, ConnectionRunner
from mocktcp.exceptions import (
    IdleTimeoutError,
    SetupError,
    StreamError,
    UnexpectedConnectionError,
    VerificationMismatch,
)
from mocktcp.server import MockServer, start_server


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


async def open_client(server: MockServer):
    host, port = await server.listening()
    return await asyncio.open_connection(host, port)


async def close_client(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass


async def read_all(reader: asyncio.StreamReader) -> bytes:
    try:
        return await asyncio.wait_for(reader.read(), timeout=2)
    except ConnectionResetError:
        return b""


class TestScripts:
    """End-to-end script execution."""

    @pytest.mark.asyncio
    async def test_single_exchange(self):
        async with MockServer([
            [("recv", b"HELLO", "wait for hello"), ("send", b"BYE", "say bye")],
        ]) as server:
            reader, writer = await open_client(server)
            writer.write(b"HELLO")
            await writer.drain()

            assert await read_all(reader) == b"BYE"
            await server.wait_finished(timeout=2)
            await close_client(writer)

        [check] = server.checks
        assert check.passed is True
        assert check.label == CHECK_LABEL_PREFIX + "wait for hello"
        server.reporter.assert_all_passed()

    @pytest.mark.asyncio
    async def test_scripts_follow_accept_order(self):
        """Test that clients answered out of order still get their own script."""
        async with MockServer([
            [("recv", b"A1", "first in"), ("send", b"B1", "first out")],
            [("recv", b"A2", "second in"), ("send", b"B2", "second out")],
        ]) as server:
            reader1, writer1 = await open_client(server)
            await wait_until(lambda: server.accepted == 1)
            reader2, writer2 = await open_client(server)
            await wait_until(lambda: server.accepted == 2)

            writer2.write(b"A2")
            assert await read_all(reader2) == b"B2"
            writer1.write(b"A1")
            assert await read_all(reader1) == b"B1"

            await server.wait_finished(timeout=2)
            await close_client(writer1)
            await close_client(writer2)

        assert len(server.checks) == 2
        assert server.failures == []

    @pytest.mark.asyncio
    async def test_fifo_of_three(self):
        async with MockServer([[("send", f"S{i}".encode(), f"script {i}")] for i in range(1, 4)]) as server:
            received = []
            for count in range(1, 4):
                reader, writer = await open_client(server)
                await wait_until(lambda: server.accepted == count)
                received.append(await read_all(reader))
                await close_client(writer)
            await server.wait_finished(timeout=2)

        assert received == [b"S1", b"S2", b"S3"]
        assert server.remaining_scripts == 0

    @pytest.mark.asyncio
    async def test_sleep_delays_next_action(self):
        async with MockServer([[("sleep", 0.1, "pause"), ("send", b"LATE", "late")]]) as server:
            started = time.monotonic()
            reader, writer = await open_client(server)

            assert await read_all(reader) == b"LATE"
            assert time.monotonic() - started >= 0.09
            await close_client(writer)

    @pytest.mark.asyncio
    async def test_sleep_is_per_connection(self):
        """Test that one sleeping connection does not hold back another."""
        async with MockServer([
            [("sleep", 1.0, "long pause"), ("send", b"late", "late")],
            [("send", b"now", "immediate")],
        ]) as server:
            reader1, writer1 = await open_client(server)
            await wait_until(lambda: server.accepted == 1)
            reader2, writer2 = await open_client(server)

            started = time.monotonic()
            assert await asyncio.wait_for(reader2.readexactly(3), timeout=0.5) == b"now"
            assert time.monotonic() - started < 0.5

            await close_client(writer1)
            await close_client(writer2)

    @pytest.mark.parametrize("send_entry, recv_entry", [
        (("send", b"HEL"), ("recv", b"OK")),
        (("packsend", "48 45 4c"), ("packrecv", "4f4b")),
        (("packsend", "48454C"), ("recv", b"OK")),
    ])
    @pytest.mark.asyncio
    async def test_hex_and_raw_forms_are_equivalent(self, send_entry, recv_entry):
        async with MockServer([[send_entry, recv_entry]]) as server:
            reader, writer = await open_client(server)

            assert await asyncio.wait_for(reader.readexactly(3), timeout=2) == b"HEL"
            writer.write(b"OK")
            await server.wait_finished(timeout=2)
            await close_client(writer)

        assert [check.passed for check in server.checks] == [True]


class TestVerification:
    """Tests for report-and-continue checks."""

    @pytest.mark.asyncio
    async def test_failed_check_does_not_stop_script(self):
        async with MockServer([[
            ("recv", b"AAA", "first"),
            ("recv", b"BBB", "second"),
            ("send", b"OK", "ack"),
        ]]) as server:
            reader, writer = await open_client(server)
            writer.write(b"AXABBB")

            assert await read_all(reader) == b"OK"
            await server.wait_finished(timeout=2)
            await close_client(writer)

        assert [check.passed for check in server.checks] == [False, True]
        [failure] = server.failures
        assert failure.actual == b"AXA"
        assert failure.expected == b"AAA"
        with pytest.raises(VerificationMismatch, match="1 of 2 checks failed"):
            server.reporter.assert_all_passed()

    @pytest.mark.asyncio
    async def test_mismatch_then_graceful_close(self):
        async with MockServer([[("recv", b"HELLO", "wait for hello")]]) as server:
            reader, writer = await open_client(server)
            writer.write(b"HELLX")

            assert await read_all(reader) == b""
            await server.wait_finished(timeout=2)
            await close_client(writer)

        [check] = server.checks
        assert check.passed is False

    @pytest.mark.asyncio
    async def test_fail_fast_reporter_is_fatal(self):
        server = MockServer([[("recv", b"A", "expect a"), ("send", b"late")]], reporter=FailFastReporter())
        await server.start()
        reader, writer = await open_client(server)
        writer.write(b"B")

        with pytest.raises(VerificationMismatch):
            await server.wait_finished(timeout=2)

        assert await read_all(reader) == b""
        await server.close()
        await close_client(writer)


class TestCallbacks:
    """Tests for code actions."""

    @pytest.mark.asyncio
    async def test_callbacks_run_in_order_with_arguments(self):
        calls = []
        first = MagicMock(side_effect=lambda *args: calls.append("first"))
        second = MagicMock(side_effect=lambda *args: calls.append("second"))

        async with MockServer([[
            ("code", first, "before"),
            ("send", b"X", "send"),
            ("code", second, "after"),
        ]]) as server:
            reader, writer = await open_client(server)
            assert await read_all(reader) == b"X"
            await server.wait_finished(timeout=2)
            await close_client(writer)

        assert calls == ["first", "second"]
        first.assert_called_once_with(server, ANY, "before")
        second.assert_called_once_with(server, ANY, "after")
        assert isinstance(first.call_args[0][1], Connection)

    @pytest.mark.asyncio
    async def test_async_callback_can_write(self):
        async def greet(server, connection, label):
            await asyncio.sleep(0.01)
            connection.write(label.encode())

        async with MockServer([[("code", greet, "hi there")]]) as server:
            reader, writer = await open_client(server)
            assert await read_all(reader) == b"hi there"
            await close_client(writer)

    @pytest.mark.asyncio
    async def test_destroy_twice_from_callback(self):
        def hang_up(server, connection, label):
            connection.destroy()
            connection.destroy()

        async with MockServer([[("code", hang_up, "hang up"), ("send", b"late", "late")]]) as server:
            reader, writer = await open_client(server)

            assert await read_all(reader) == b""
            await server.wait_finished(timeout=2)
            await close_client(writer)

        assert server.fatal_error is None
        assert server.active_connections == []

    @pytest.mark.asyncio
    async def test_raising_callback_is_fatal(self):
        def explode(server, connection, label):
            raise RuntimeError("boom")

        server = MockServer([[("code", explode, "explode")]])
        await server.start()
        reader, writer = await open_client(server)

        with pytest.raises(RuntimeError, match="boom"):
            await server.wait_finished(timeout=2)

        await server.close()
        await close_client(writer)

    @pytest.mark.asyncio
    async def test_custom_runner_class(self):
        slept = []

        class InstantRunner(ConnectionRunner):
            async def _sleep(self, action):
                slept.append(action.duration)

        async with MockServer(
            [[("sleep", 30, "long"), ("send", b"done", "done")]],
            runner_class=InstantRunner,
        ) as server:
            reader, writer = await open_client(server)
            assert await read_all(reader) == b"done"
            await close_client(writer)

        assert slept == [30]


class TestFailures:
    """Tests for timeouts, stream errors and unexpected connections."""

    @pytest.mark.asyncio
    async def test_unexpected_connection_is_fatal(self):
        server = await start_server([])
        await server.wait_finished(timeout=1)

        reader, writer = await open_client(server)
        await wait_until(lambda: server.fatal_error is not None)

        assert isinstance(server.fatal_error, UnexpectedConnectionError)
        assert server.is_listening is False
        with pytest.raises(UnexpectedConnectionError, match="unexpected connection"):
            server.raise_for_fatal()
        # Reported once only
        server.raise_for_fatal()

        await server.close()
        await close_client(writer)

    @pytest.mark.asyncio
    async def test_unexpected_connection_raises_from_context_manager(self):
        with pytest.raises(UnexpectedConnectionError):
            async with MockServer() as server:
                reader, writer = await open_client(server)
                await wait_until(lambda: server.fatal_error is not None)
                await close_client(writer)

    @pytest.mark.asyncio
    async def test_listener_closes_after_last_script(self):
        async with MockServer([[("recv", b"X", "one")]]) as server:
            host, port = server.connect_address()
            reader, writer = await open_client(server)
            await wait_until(lambda: server.accepted == 1)
            await wait_until(lambda: not server.is_listening)

            with pytest.raises(OSError):
                await asyncio.open_connection(host, port)

            writer.write(b"X")
            await server.wait_finished(timeout=2)
            await close_client(writer)

        assert server.accepted == 1

    @pytest.mark.asyncio
    async def test_default_timeout_is_fatal(self):
        server = MockServer([[("recv", b"X", "never arrives"), ("send", b"late")]], timeout=0.1)
        await server.start()
        reader, writer = await open_client(server)

        with pytest.raises(IdleTimeoutError, match="server timeout"):
            await server.wait_finished(timeout=2)

        assert await read_all(reader) == b""
        await server.close()
        await close_client(writer)

    @pytest.mark.asyncio
    async def test_custom_timeout_handler(self):
        on_timeout = MagicMock()

        async with MockServer(
            [[("recv", b"X", "never arrives"), ("send", b"late", "late")]],
            timeout=0.1,
            on_timeout=on_timeout,
        ) as server:
            reader, writer = await open_client(server)
            await server.wait_finished(timeout=2)

            assert await read_all(reader) == b""
            await close_client(writer)

        on_timeout.assert_called_once()
        assert isinstance(on_timeout.call_args[0][0], Connection)
        assert server.checks == []

    @pytest.mark.asyncio
    async def test_peer_close_calls_on_error(self):
        on_error = MagicMock()

        async with MockServer([[("recv", b"HELLO", "hello"), ("send", b"late")]], on_error=on_error) as server:
            reader, writer = await open_client(server)
            writer.write(b"HE")
            await writer.drain()
            await close_client(writer)
            await server.wait_finished(timeout=2)

        on_error.assert_called_once()
        connection, error = on_error.call_args[0]
        assert isinstance(connection, Connection)
        assert isinstance(error, StreamError)
        assert server.checks == []
        assert server.fatal_error is None


class TestLifecycle:
    """Tests for setup, teardown and accessors."""

    @pytest.mark.asyncio
    async def test_setup_failure_on_busy_port(self):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]

            server = MockServer([[("send", b"X")]], port=port)
            with pytest.raises(SetupError, match="tcp_server setup failed"):
                await server.start()

            with pytest.raises(SetupError):
                server.listening().wait(0)
            assert server.listening().poll() is None
        finally:
            blocker.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        server = await start_server([[("recv", b"X", "never arrives")]])
        reader, writer = await open_client(server)
        await wait_until(lambda: server.accepted == 1)

        await server.close()
        await server.close()

        assert server.active_connections == []
        assert server.is_listening is False
        await close_client(writer)

    @pytest.mark.asyncio
    async def test_close_before_start(self):
        server = MockServer([[("send", b"X")]])

        await server.close()
        await server.close()

        with pytest.raises(SetupError, match="closed before it was listening"):
            server.listening().wait(0)

    @pytest.mark.asyncio
    async def test_wait_finished_requires_start(self):
        server = MockServer()
        with pytest.raises(SetupError, match="not started"):
            await server.wait_finished()

    @pytest.mark.asyncio
    async def test_connect_accessors(self):
        async with MockServer([[("send", b"X")]], host="127.0.0.1") as server:
            host, port = await server.listening()

            assert server.connect_host() == "127.0.0.1"
            assert server.connect_port() == port
            assert server.connect_address() == (host, port)
            assert server.connect_string() == f"127.0.0.1:{port}"
            assert port > 0
            assert server.is_listening is True

    @pytest.mark.asyncio
    async def test_start_after_failed_setup(self):
        """Test that a server whose setup failed refuses to start again."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        server = MockServer([[("send", b"X")]], port=port, timeout=5)
        try:
            with pytest.raises(SetupError, match="tcp_server setup failed"):
                await server.start()
        finally:
            blocker.close()

        with pytest.raises(SetupError, match="already failed"):
            await server.start()
        with pytest.raises(SetupError, match="not started"):
            await server.wait_finished(timeout=1)

        assert server.is_listening is False
        await asyncio.wait_for(server.close(), timeout=1)

    @pytest.mark.asyncio
    async def test_wait_finished_after_early_close(self):
        server = await start_server([[("send", b"A")], [("send", b"B")]])

        await server.close()

        with pytest.raises(SetupError, match="2 unassigned scripts") as exc_info:
            await server.wait_finished(timeout=1)
        assert exc_info.value.details["unassigned_scripts"] == 2


class TestLogging:
    """Tests for the injected logger and the debug switch."""

    @staticmethod
    async def run_one_script(logger, debug):
        async with MockServer(
            [[("recv", b"HI", "hi"), ("send", b"X", "x")]],
            logger=logger,
            debug=debug,
        ) as server:
            reader, writer = await open_client(server)
            writer.write(b"HI")
            assert await read_all(reader) == b"X"
            await server.wait_finished(timeout=2)
            await close_client(writer)
        return server

    @pytest.mark.asyncio
    async def test_injected_logger_without_debug(self):
        logger = MagicMock()

        server = await self.run_one_script(logger, debug=False)

        server_log = logger.bind.return_value
        connection_log = server_log.bind.return_value
        assert server.reporter.log is server_log
        server_log.info.assert_any_call("check_passed", label=CHECK_LABEL_PREFIX + "hi")
        assert server_log.debug.call_count == 0
        assert connection_log.debug.call_count == 0

    @pytest.mark.asyncio
    async def test_debug_traces_actions_and_connection_events(self):
        logger = MagicMock()

        await self.run_one_script(logger, debug=True)

        server_log = logger.bind.return_value
        connection_log = server_log.bind.return_value
        server_events = [call.args[0] for call in server_log.debug.call_args_list]
        connection_events = [call.args[0] for call in connection_log.debug.call_args_list]
        assert server_events.count("action_executing") == 2
        assert "connection_shutdown" in connection_events
