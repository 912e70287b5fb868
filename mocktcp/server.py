"""
Mock Server - Scripted TCP endpoint for testing TCP clients.

Owns the listener, the FIFO of not-yet-assigned connection scripts and the
set of live connections:
- The i-th accepted connection is bound to the i-th script
- Listening stops once every script has been assigned
- An unscripted extra connection is fatal for the run
- Teardown destroys every live connection and is safe to repeat

Example usage:
    async with MockServer(connections=[
        [("recv", b"HELLO", "wait for hello"), ("send", b"BYE", "say bye")],
    ]) as server:
        reader, writer = await asyncio.open_connection(*server.connect_address())
        ...
        await server.wait_finished(timeout=5)
    server.reporter.assert_all_passed()
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Type

import structlog
from pydantic import ValidationError

from mocktcp.engine.connection import Connection
from mocktcp.engine.ready import Address, ReadySignal
from mocktcp.engine.reporter import CheckRecorder
from mocktcp.engine.runner import ConnectionRunner
from mocktcp.exceptions import ConfigurationError, SetupError, UnexpectedConnectionError
from mocktcp.models import CheckResult, ServerConfig, default_on_timeout

__all__ = ["MockServer", "start_server", "default_on_timeout"]

logger = structlog.get_logger()


class MockServer:
    """
    Listener that hands each accepted connection to its own scripted runner.

    Options mirror ServerConfig: host, port, timeout, on_timeout, on_error,
    reporter, logger and debug. Options left as None use the defaults from
    mocktcp.config.settings. A prebuilt ServerConfig can be passed instead.
    """

    def __init__(
        self,
        connections: Sequence[Any] = (),
        *,
        config: Optional[ServerConfig] = None,
        runner_class: Type[ConnectionRunner] = ConnectionRunner,
        **options: Any,
    ):
        if config is None:
            options = {key: value for key, value in options.items() if value is not None}
            try:
                config = ServerConfig(connections=connections, **options)
            except ValidationError as e:
                raise ConfigurationError(f"Invalid mock server options: {e}") from e
        elif connections or options:
            raise ConfigurationError("Pass either a ServerConfig or connection options, not both")

        self.config = config
        self.log = (config.logger if config.logger is not None else logger).bind(component="mock_server")
        self.reporter = config.reporter if config.reporter is not None else CheckRecorder(logger=self.log)

        self._runner_class = runner_class
        self._scripts = config.build_scripts()
        self._ready = ReadySignal()
        self._server: Optional[asyncio.AbstractServer] = None
        self._connections: Dict[int, Connection] = {}
        self._runners: Dict[int, ConnectionRunner] = {}
        self._accepted = 0
        self._listening = False
        self._closed = False
        self._fatal_error: Optional[BaseException] = None
        self._fatal_reported = False
        # Created in start() so the server can be built outside a running loop
        self._done: Optional[asyncio.Event] = None

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> "MockServer":
        """
        Bind and listen.

        Raises:
            SetupError: If the listener cannot be established
        """
        if self._server is not None or self._closed:
            raise SetupError("Mock server already started")
        if self._ready.done():
            raise SetupError("Mock server setup already failed")

        host, port = self.config.host, self.config.port or 0
        try:
            self._server = await asyncio.start_server(self._on_accept, host, port)
        except OSError as e:
            error = SetupError(
                f"tcp_server setup failed: {e}",
                details={"host": host, "port": port, "error": str(e)},
            )
            self._ready.fail(error)
            self.log.error("mock_server_setup_failed", host=host, port=port, error=str(e))
            raise error from e

        try:
            bound_host, bound_port = self._server.sockets[0].getsockname()[:2]
            self._ready.set(bound_host, bound_port)
        except BaseException:
            self._server.close()
            raise
        self._done = asyncio.Event()
        self._listening = True
        self.log.info(
            "mock_server_listening",
            host=bound_host,
            port=bound_port,
            scripts=len(self._scripts),
            timeout=self.config.timeout,
        )
        self._check_done()
        return self

    async def close(self) -> None:
        """Destroy live connections, stop listening and release the ready signal."""
        if self._closed:
            return
        self._closed = True
        self._teardown()

        current = asyncio.current_task()
        tasks = [
            runner.task
            for runner in self._runners.values()
            if runner.task is not None and runner.task is not current
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._server is not None:
            try:
                await asyncio.wait_for(self._server.wait_closed(), timeout=self.config.timeout)
            except asyncio.TimeoutError:
                self.log.warning("mock_server_close_timeout", timeout=self.config.timeout)

        if self._done is not None:
            self._done.set()
        self.log.info(
            "mock_server_closed",
            accepted=self._accepted,
            unused_scripts=len(self._scripts),
            checks=len(self.checks),
            failed_checks=len(self.failures),
        )

    async def wait_finished(self, timeout: Optional[float] = None) -> None:
        """
        Wait until every script was assigned and has run to its end.

        Raises:
            asyncio.TimeoutError: If timeout elapses first
            MockServerError: The fatal error that ended the run, if any
            SetupError: If the server was closed before every script was assigned
        """
        if self._done is None:
            raise SetupError("Mock server not started")
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        if self._fatal_error is not None:
            self._fatal_reported = True
            raise self._fatal_error
        if self._scripts:
            raise SetupError(
                f"Mock server closed with {len(self._scripts)} unassigned scripts",
                details={"accepted": self._accepted, "unassigned_scripts": len(self._scripts)},
            )

    def abort(self, error: BaseException) -> None:
        """Record a fatal error and tear the whole server down. The first error wins."""
        if self._fatal_error is None:
            self._fatal_error = error
            self.log.critical("mock_server_fatal", error=str(error), error_type=type(error).__name__)
        else:
            self.log.warning("mock_server_error_after_fatal", error=str(error), error_type=type(error).__name__)
        self._teardown()
        if self._done is not None:
            self._done.set()

    def raise_for_fatal(self) -> None:
        """Re-raise the fatal error once, unless wait_finished() already did."""
        if self._fatal_error is not None and not self._fatal_reported:
            self._fatal_reported = True
            raise self._fatal_error

    async def __aenter__(self) -> "MockServer":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        await self.close()
        if exc_type is None:
            self.raise_for_fatal()
        return False

    # -- accept / assignment --------------------------------------------------

    def _on_accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        # Plain callback: runs inside connection_made, so scripts are assigned in accept order
        self._accepted += 1
        connection = Connection(
            reader,
            writer,
            connection_id=self._accepted,
            timeout=self.config.timeout,
            log=self.log.bind(connection_id=self._accepted),
            debug=self.config.debug,
        )

        if self._closed or self._fatal_error is not None:
            connection.destroy()
            return

        if not self._scripts:
            connection.destroy()
            self.abort(
                UnexpectedConnectionError(
                    "Server received unexpected connection",
                    details={
                        "connection_id": connection.id,
                        "peer": connection.peer,
                        "scripts": len(self.config.connections),
                    },
                )
            )
            return

        script = self._scripts.popleft()
        if not self._scripts:
            self._stop_listening()

        runner = self._runner_class(self, connection, script)
        self._connections[connection.id] = connection
        self._runners[connection.id] = runner
        self.log.info(
            "connection_accepted",
            connection_id=connection.id,
            peer=connection.peer,
            actions=len(script),
            remaining_scripts=len(self._scripts),
        )
        runner.start()

    def discard(self, runner: ConnectionRunner) -> None:
        """Forget a runner whose connection has terminated."""
        self._connections.pop(runner.connection.id, None)
        self._runners.pop(runner.connection.id, None)
        self._check_done()

    def trace(self, event: str, **kwargs: Any) -> None:
        """Per-action debug events, emitted only when debug is enabled."""
        if self.config.debug:
            self.log.debug(event, **kwargs)

    def _stop_listening(self) -> None:
        if self._server is not None and self._listening:
            self._listening = False
            self._server.close()
            self.log.info("mock_server_stopped_listening", accepted=self._accepted)

    def _teardown(self) -> None:
        self._stop_listening()
        for connection in list(self._connections.values()):
            connection.destroy()
        self._ready.fail(SetupError("Mock server closed before it was listening"))

    def _check_done(self) -> None:
        if self._done is not None and not self._scripts and not self._runners:
            self._done.set()

    # -- accessors --------------------------------------------------------------

    def listening(self) -> ReadySignal:
        """One-shot signal resolving to the (host, port) the server listens on."""
        return self._ready

    def connect_address(self, timeout: Optional[float] = None) -> Address:
        """Block until listening, then return (host, port)."""
        return self._ready.wait(timeout)

    def connect_host(self) -> str:
        return self.connect_address()[0]

    def connect_port(self) -> int:
        return self.connect_address()[1]

    def connect_string(self) -> str:
        host, port = self.connect_address()
        return f"{host}:{port}"

    @property
    def checks(self) -> List[CheckResult]:
        return list(getattr(self.reporter, "results", []))

    @property
    def failures(self) -> List[CheckResult]:
        return [check for check in self.checks if not check.passed]

    @property
    def accepted(self) -> int:
        return self._accepted

    @property
    def remaining_scripts(self) -> int:
        return len(self._scripts)

    @property
    def active_connections(self) -> List[Connection]:
        return list(self._connections.values())

    @property
    def fatal_error(self) -> Optional[BaseException]:
        return self._fatal_error

    @property
    def is_listening(self) -> bool:
        return self._listening


async def start_server(connections: Sequence[Any] = (), **options: Any) -> MockServer:
    """Build a MockServer and start listening."""
    server = MockServer(connections, **options)
    return await server.start()
