"""
Threaded Mock Server - Runs a MockServer on its own event loop thread.

For tests whose client is synchronous (plain sockets, blocking libraries).
The loop thread owns every piece of server state; the test thread only
blocks on the ready signal and on futures handed across with
run_coroutine_threadsafe().
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Coroutine, List, Optional, Sequence

from mocktcp.engine.ready import Address, ReadySignal
from mocktcp.exceptions import SetupError
from mocktcp.models import CheckResult
from mocktcp.server import MockServer


class ThreadedMockServer:
    """
    MockServer driven from a background thread.

    Example:
        with ThreadedMockServer([[("recv", b"PING", "ping"), ("send", b"PONG", "pong")]]) as mock:
            sock = socket.create_connection(mock.connect_address())
            ...
            mock.wait_finished(timeout=5)
        assert not mock.failures
    """

    def __init__(self, connections: Sequence[Any] = (), **options: Any):
        self.server = MockServer(connections, **options)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = False

    def start(self, timeout: Optional[float] = None) -> "ThreadedMockServer":
        """Start the loop thread and block until the server listens."""
        if self._thread is not None:
            raise SetupError("Threaded mock server already started")

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="mocktcp-server", daemon=True)
        self._thread.start()
        try:
            self._call(self.server.start(), timeout)
        except BaseException:
            self.stop()
            raise
        self.server.trace("threaded_mock_server_started", address=self.server.listening().poll())
        return self

    def stop(self) -> None:
        """Close the server and join the loop thread. Safe to repeat."""
        if self._stopped or self._loop is None or self._thread is None:
            return
        self._stopped = True
        try:
            self._call(self.server.close())
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join()
            self._loop.close()

    def wait_finished(self, timeout: Optional[float] = None) -> None:
        """Block until every script has run, re-raising a fatal error."""
        if self._loop is None:
            raise SetupError("Threaded mock server not started")
        self._call(self.server.wait_finished(timeout))

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def _call(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result(timeout)

    def listening(self) -> ReadySignal:
        return self.server.listening()

    def connect_address(self, timeout: Optional[float] = None) -> Address:
        return self.server.connect_address(timeout)

    def connect_host(self) -> str:
        return self.server.connect_host()

    def connect_port(self) -> int:
        return self.server.connect_port()

    def connect_string(self) -> str:
        return self.server.connect_string()

    @property
    def checks(self) -> List[CheckResult]:
        return self.server.checks

    @property
    def failures(self) -> List[CheckResult]:
        return self.server.failures

    def __enter__(self) -> "ThreadedMockServer":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.stop()
        if exc_type is None:
            self.server.raise_for_fatal()
        return False
