"""
Connection Runner - Executes one connection's script against its stream.

The runner walks the script front to back. Every action completes before
the next one starts:
- send/packsend queue bytes and complete immediately
- recv/packrecv complete when exactly len(expected) bytes arrived
- sleep completes when its timer fires
- code completes when the callback returns

A mismatch on receive is reported and execution continues. Stream errors
and idle timeouts end the connection; remaining actions never run.
"""
from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from mocktcp.exceptions import IdleTimeoutError, StreamError
from mocktcp.models import (
    Action,
    ActionKind,
    ConnectionScript,
    InvokeAction,
    RecvAction,
    SendAction,
    SleepAction,
)

if TYPE_CHECKING:
    from mocktcp.engine.connection import Connection
    from mocktcp.server import MockServer

CHECK_LABEL_PREFIX = "... correct message received by server - "


class RunnerState(str, Enum):
    """Lifecycle of a connection runner."""
    RUNNING = "running"      # Executing or awaiting the current action
    ADVANCING = "advancing"  # Action completed, next one not yet popped
    CLOSED = "closed"        # Script exhausted, graceful shutdown issued
    FAILED = "failed"        # Stream error, timeout or teardown


class ConnectionRunner:
    """
    State machine for one accepted connection.

    Subclasses can override the per-kind handlers; pass the subclass to
    MockServer as runner_class.
    """

    def __init__(self, server: "MockServer", connection: "Connection", script: ConnectionScript):
        self.server = server
        self.connection = connection
        self.script = script
        self.state = RunnerState.RUNNING
        self.task: Optional[asyncio.Task] = None
        self.executed: List[Action] = []

        self._handlers: Dict[ActionKind, Callable[[Any], Awaitable[None]]] = {
            ActionKind.SEND: self._send,
            ActionKind.PACKSEND: self._send,
            ActionKind.RECV: self._recv,
            ActionKind.PACKRECV: self._recv,
            ActionKind.SLEEP: self._sleep,
            ActionKind.CODE: self._invoke,
        }
        self._log = server.log.bind(connection_id=connection.id)

    @property
    def finished(self) -> bool:
        return self.state in (RunnerState.CLOSED, RunnerState.FAILED)

    def start(self) -> asyncio.Task:
        """Schedule run() on the running loop and tie it to the connection."""
        self.task = asyncio.get_running_loop().create_task(
            self.run(), name=f"mocktcp-connection-{self.connection.id}"
        )
        self.connection.attach(self.task)
        return self.task

    async def run(self) -> None:
        """Drive next_action() until the script is exhausted or the connection fails."""
        try:
            while await self.next_action():
                pass
        except IdleTimeoutError as e:
            self._handle_timeout(e)
        except StreamError as e:
            self._handle_error(e)
        except asyncio.CancelledError:
            self.state = RunnerState.FAILED
            raise
        except Exception as e:
            # Raised by a test callback or reporter
            self.state = RunnerState.FAILED
            self.connection.destroy()
            self.server.abort(e)
        finally:
            self.server.discard(self)

    async def next_action(self) -> bool:
        """
        Execute the next action.

        Returns:
            True when an action ran, False once the script is exhausted and
            the connection was shut down
        """
        if self.connection.destroyed:
            self.state = RunnerState.FAILED
            return False

        if not self.script:
            self._log.info(
                "connection_closing",
                actions=len(self.executed),
                bytes_sent=self.connection.bytes_sent,
                bytes_received=self.connection.bytes_received,
            )
            self.connection.shutdown()
            self.state = RunnerState.CLOSED
            return False

        action = self.script.pop()
        handler = self._handlers[action.kind]
        self.state = RunnerState.RUNNING
        self.server.trace(
            "action_executing",
            connection_id=self.connection.id,
            kind=action.kind.value,
            detail=action.describe(),
            label=action.label,
            remaining=len(self.script),
        )
        await handler(action)
        self.executed.append(action)
        self.state = RunnerState.ADVANCING
        return True

    async def _send(self, action: SendAction) -> None:
        self.connection.write(action.payload)

    async def _recv(self, action: RecvAction) -> None:
        data = await self.connection.read_exactly(action.size)
        self.server.reporter.report(
            action.render(data),
            action.render(action.expected),
            CHECK_LABEL_PREFIX + action.label,
        )

    async def _sleep(self, action: SleepAction) -> None:
        await asyncio.sleep(action.duration)

    async def _invoke(self, action: InvokeAction) -> None:
        result = action.callback(self.server, self.connection, action.label)
        if inspect.isawaitable(result):
            await result

    def _handle_timeout(self, error: IdleTimeoutError) -> None:
        self.state = RunnerState.FAILED
        self._log.warning("connection_timeout", error=error.message, details=error.details)
        try:
            self.server.config.on_timeout(self.connection)
        except Exception as e:
            self.connection.destroy()
            self.server.abort(e)
            return
        self.connection.destroy()

    def _handle_error(self, error: StreamError) -> None:
        self.state = RunnerState.FAILED
        if self.connection.destroyed:
            # Destroyed locally; nothing left to report
            self.server.trace("connection_stream_closed", connection_id=self.connection.id, error=error.message)
            return

        self._log.warning("connection_error", error=error.message, details=error.details)
        on_error = self.server.config.on_error
        try:
            if on_error is not None:
                on_error(self.connection, error)
        except Exception as e:
            self.connection.destroy()
            self.server.abort(e)
            return
        self.connection.destroy()
