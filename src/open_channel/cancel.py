"""Cooperative cancellation token threaded through dispatcher, transport and delays."""

from __future__ import annotations

import asyncio

from open_channel.errors import cancelled_error


class CancelToken:
    """One-shot cancellation signal owned by the caller.

    The dispatcher checks it between attempts, the transport races every
    network wait against it, and retry delays wake up early when it fires.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        """Raise ``CANCELLED_ERROR`` if the token already fired."""
        if self._event.is_set():
            raise cancelled_error()

    async def sleep(self, seconds: float) -> None:
        """Sleep for *seconds*, raising ``CANCELLED_ERROR`` as soon as the token fires."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise cancelled_error()
