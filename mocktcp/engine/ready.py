"""
Ready Signal - One-shot resolver for the bound listen address.

Written exactly once by the server when its listener is live (or failed
when the listener could not be set up), read by any number of waiters:
- Blocking readers in other threads via wait()
- Coroutines on any loop via ``await signal``
- Non-blocking poll via poll()
"""
from __future__ import annotations

import asyncio
import concurrent.futures
from typing import Generator, Optional, Tuple

from mocktcp.exceptions import MockServerError

Address = Tuple[str, int]


class ReadySignal:
    """
    Write-once cell holding the (host, port) the server listens on.

    Example:
        signal = server.listening()
        host, port = signal.wait(timeout=5)
    """

    def __init__(self) -> None:
        self._future: concurrent.futures.Future = concurrent.futures.Future()

    def set(self, host: str, port: int) -> None:
        """Resolve the signal. A second write is a programming error."""
        if self._future.done():
            raise MockServerError("Ready signal already resolved", details={"host": host, "port": port})
        self._future.set_result((host, port))

    def fail(self, error: BaseException) -> None:
        """Wake every waiter with an error. No-op once resolved."""
        if not self._future.done():
            self._future.set_exception(error)

    def done(self) -> bool:
        return self._future.done()

    def poll(self) -> Optional[Address]:
        """Return the address if it is already known, else None."""
        if not self._future.done() or self._future.exception() is not None:
            return None
        return self._future.result()

    def wait(self, timeout: Optional[float] = None) -> Address:
        """
        Block until the address is known.

        Raises:
            concurrent.futures.TimeoutError: If timeout elapses first
            SetupError: If the listener could not be established
        """
        return self._future.result(timeout=timeout)

    def __await__(self) -> Generator[None, None, Address]:
        return asyncio.wrap_future(self._future).__await__()
