"""
Connection - One accepted client stream bound to one script.

Wraps the asyncio stream pair with the operations the action engine needs:
- Buffered push-write that never waits for the kernel buffer
- Exact-length reads guarded by the idle timeout
- Graceful half-close once the script is exhausted
- Idempotent abrupt destroy that also cancels the pending read or sleep
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

import structlog

from mocktcp.exceptions import IdleTimeoutError, StreamError

logger = structlog.get_logger()


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class Connection:
    """
    Stream adapter for one accepted client.

    The runner task executing this connection's script is attached with
    attach() so destroy() can cancel whatever the runner is waiting on.
    Lifecycle events go to the given logger and only when debug is set.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        connection_id: int,
        timeout: float,
        log: Optional[Any] = None,
        debug: bool = False,
    ):
        self.id = connection_id
        self.timeout = timeout
        self.debug = debug
        self._log = log if log is not None else logger.bind(connection_id=connection_id)
        self._reader = reader
        self._writer = writer
        self._task: Optional[asyncio.Task] = None

        # Connection state
        self._closing = False
        self._destroyed = False

        # Statistics
        self.created_at: datetime = datetime.now(timezone.utc)
        self.bytes_sent: int = 0
        self.bytes_received: int = 0

    @property
    def peer(self) -> Optional[Tuple[Any, ...]]:
        return self._writer.get_extra_info("peername")

    @property
    def closed(self) -> bool:
        """True once shutdown() or destroy() was issued."""
        return self._closing or self._destroyed

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def attach(self, task: asyncio.Task) -> None:
        self._task = task

    def write(self, data: bytes) -> None:
        """Queue data for the client without waiting for it to drain."""
        if self.closed:
            raise StreamError("Connection already closed", details={"connection_id": self.id})
        try:
            self._writer.write(data)
        except (OSError, RuntimeError) as e:
            raise StreamError(
                f"Failed to send data on connection {self.id}",
                details={"error": str(e), "data_size": len(data)},
            ) from e
        self.bytes_sent += len(data)

    async def read_exactly(self, size: int) -> bytes:
        """
        Read exactly size bytes.

        Raises:
            IdleTimeoutError: If the bytes do not arrive within the idle timeout
            StreamError: If the peer closes or resets the connection first
        """
        try:
            data = await asyncio.wait_for(self._reader.readexactly(size), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise IdleTimeoutError(
                f"Timeout waiting for {size} bytes on connection {self.id}",
                details={"connection_id": self.id, "timeout_sec": self.timeout, "expected_bytes": size},
            ) from None
        except asyncio.IncompleteReadError as e:
            raise StreamError(
                "Connection closed by peer",
                details={"connection_id": self.id, "expected_bytes": size, "received_bytes": len(e.partial)},
            ) from e
        except OSError as e:
            raise StreamError(
                f"Failed to receive data on connection {self.id}",
                details={"connection_id": self.id, "error": str(e)},
            ) from e

        self.bytes_received += len(data)
        return data

    def shutdown(self) -> None:
        """Half-close after queued writes are flushed, then close."""
        if self.closed:
            return
        self._closing = True
        try:
            if self._writer.can_write_eof():
                self._writer.write_eof()
        except OSError as e:
            self._trace("connection_write_eof_failed", error=str(e))
        self._writer.close()
        self._trace(
            "connection_shutdown",
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
        )

    def destroy(self) -> None:
        """Abort the stream and cancel the attached runner. Safe to repeat."""
        if self._destroyed:
            return
        self._destroyed = True
        self._writer.transport.abort()

        task = self._task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

        self._trace("connection_destroyed")

    def _trace(self, event: str, **kwargs: Any) -> None:
        if self.debug:
            self._log.debug(event, **kwargs)

    def __repr__(self) -> str:
        return f"Connection(id={self.id}, peer={self.peer!r}, closed={self.closed})"
