"""
Cancellation token for sync runs
Threads an operator stop / parent deadline through every suspension point
"""
import asyncio
import logging
import time
from typing import Awaitable, Optional, TypeVar

from app.services.sync.errors import SyncCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation signal.

    Every network call, persistence call, dispatch call and pacing sleep in a
    sync run goes through `guard()` or `sleep()`, so cancelling the token (or
    passing its deadline) aborts outstanding work with SyncCancelled.
    """

    def __init__(self, deadline_seconds: Optional[float] = None):
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + deadline_seconds if deadline_seconds else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by operator") -> None:
        if not self._event.is_set():
            self.reason = reason
            logger.warning(f"🛑 Sync cancellation requested: {reason}")
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise SyncCancelled(self.reason or "cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for `delay` seconds, waking early (and raising) on cancellation."""
        self.raise_if_cancelled()
        if delay <= 0:
            return
        remaining = self.remaining()
        timeout = delay if remaining is None else min(delay, remaining)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self.raise_if_cancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it if the token is cancelled first."""
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            await _abandon(work)
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        await _abandon(work)
        if not self.cancelled:
            self.cancel("deadline exceeded")
        raise SyncCancelled(self.reason or "deadline exceeded")


async def _abandon(work: "asyncio.Future") -> None:
    """
    Cancel `work` and wait for it to settle, so its cleanup has run before the
    caller sees SyncCancelled. A worker thread behind asyncio.to_thread is not
    interrupted by this; only the awaiting side is.
    """
    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Abandoned operation finished with an error: {e}")
