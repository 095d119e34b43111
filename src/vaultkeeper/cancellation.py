import asyncio
from collections.abc import Awaitable
from typing import TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised by :meth:`CancellationToken.guard` when the token fires first."""


class CancellationToken:
    """Cooperative cancellation shared by everything one submission starts.

    The orchestrator creates one token per submission and passes it to the
    transport and the dispatcher. ``cancel()`` is idempotent.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless the token fires first.

        The pending work is cancelled when the token wins.

        Raises:
            OperationCancelled: If the token was or becomes cancelled.
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise OperationCancelled()

        work = asyncio.ensure_future(awaitable)
        cancel_wait = asyncio.ensure_future(self._event.wait())
        try:
            done, _pending = await asyncio.wait(
                [work, cancel_wait],
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            work.cancel()
            cancel_wait.cancel()
            raise

        if work in done:
            cancel_wait.cancel()
            return work.result()

        work.cancel()
        work.add_done_callback(lambda t: t.cancelled() or t.exception())
        raise OperationCancelled()
