import asyncio
import logging
import threading
from typing import Awaitable, Optional, TypeVar

from fastapi import Request

from bandwidth_hero.proxy.errors import RequestCancelled

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


class CancellationToken:
    """
    Per-request cancellation signal.

    ``cancel()`` is called from the event loop. Worker threads running decode
    and encode steps poll :attr:`cancelled`, coroutines can race an awaitable
    against the token with :meth:`guard`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._async_event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        self._async_event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestCancelled(self.reason or "cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` but give up with ``RequestCancelled`` once the token fires."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(self._async_event.wait())
        try:
            await asyncio.wait({work, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()
                await asyncio.gather(work, return_exceptions=True)
        if work.cancelled():
            self.raise_if_cancelled()
        return work.result()


async def watch_disconnect(request: Request, token: CancellationToken) -> None:
    """Cancel ``token`` once the client disconnects.

    Only meant to run while the response has not started yet; once a streaming
    response is returned, Starlette listens for the disconnect itself.
    """
    while not token.cancelled:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            logger.debug("[Proxy] Client disconnected before the response started")
            token.cancel("client disconnected")
            return
