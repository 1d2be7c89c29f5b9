from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterable, AsyncIterator
from typing import TypeVar

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared by the provider stream and every tool call of a turn."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled by user") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    async def wait(self) -> None:
        await self._event.wait()


async def iterate_until_cancelled(
    source: AsyncIterable[T],
    cancel_token: CancellationToken | None,
) -> AsyncIterator[T]:
    """Yield items from ``source`` until it is exhausted or ``cancel_token`` fires.

    Each read is raced against the token, so a cancelled read stops promptly even
    while the underlying network read is still pending. Errors raised by the
    source propagate unchanged.
    """
    iterator = source.__aiter__()
    if cancel_token is None:
        async for item in iterator:
            yield item
        return

    while not cancel_token.cancelled:
        next_item = asyncio.ensure_future(iterator.__anext__())
        cancelled = asyncio.ensure_future(cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {next_item, cancelled},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            next_item.cancel()
            raise
        finally:
            cancelled.cancel()

        if next_item not in done:
            next_item.cancel()
            with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                await next_item
            return

        if cancel_token.cancelled:
            # Drop the item that raced the cancellation; retrieve any error so it is not lost silently.
            with contextlib.suppress(StopAsyncIteration):
                next_item.result()
            return

        try:
            item = next_item.result()
        except StopAsyncIteration:
            return
        yield item
