"""
Batch Scheduler
Bounded-concurrency fan-out over principals, channels or teams

Provider APIs enforce request-rate quotas, so units are processed in fixed
chunks of `concurrency_limit` with a pacing delay between chunks:

    chunk 1 (≤ limit in flight) → pacing delay → chunk 2 → pacing delay → ...

GUARANTEES:
- Never more than `concurrency_limit` operations in flight
- A failing unit never cancels its siblings; every outcome is captured
- Chunk i (including its pacing delay) completes before chunk i+1 starts
- Outcomes are returned in input order
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from app.services.sync.cancellation import CancellationToken
from app.services.sync.errors import SyncCancelled

logger = logging.getLogger(__name__)

U = TypeVar("U")
R = TypeVar("R")


@dataclass
class UnitOutcome(Generic[U, R]):
    """Result of one unit: either a value or the exception it raised."""
    unit: U
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PacingPolicy:
    """Fixed delay inserted after every chunk except the last."""
    delay_seconds: float = 0.0

    def delay_after(self, chunk_index: int, total_chunks: int) -> float:
        if chunk_index >= total_chunks - 1:
            return 0.0
        return max(0.0, self.delay_seconds)


class BatchScheduler:
    """
    Chunked scheduler with a first-class pacing policy.

    Args:
        concurrency_limit: Max units in flight (also the chunk size)
        pacing: Delay policy between chunks (float seconds accepted)
        fatal_exceptions: Exception types that stop the schedule after the
            current chunk settles (e.g. AuthFailure)
        label: Name used in progress logs
    """

    def __init__(
        self,
        concurrency_limit: int,
        pacing: Any = 0.0,
        fatal_exceptions: Tuple[Type[BaseException], ...] = (),
        label: str = "units"
    ):
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be >= 1, got {concurrency_limit}")
        self.concurrency_limit = concurrency_limit
        self.pacing = pacing if isinstance(pacing, PacingPolicy) else PacingPolicy(float(pacing))
        self.fatal_exceptions = fatal_exceptions
        self.label = label

    def chunk(self, units: Sequence[U]) -> List[Sequence[U]]:
        size = self.concurrency_limit
        return [units[i:i + size] for i in range(0, len(units), size)]

    async def run(
        self,
        units: Sequence[U],
        operation: Callable[[U], Awaitable[R]],
        cancel_token: Optional[CancellationToken] = None
    ) -> List[UnitOutcome[U, R]]:
        """
        Execute `operation` for every unit, chunk by chunk.

        Returns:
            One UnitOutcome per unit, in input order

        Raises:
            SyncCancelled: If the token is cancelled (between or during chunks)
            Any exception in `fatal_exceptions` raised by a unit, after its chunk settles
        """
        token = cancel_token or CancellationToken()
        chunks = self.chunk(list(units))
        outcomes: List[UnitOutcome[U, R]] = []

        for index, chunk in enumerate(chunks):
            token.raise_if_cancelled()

            results = await asyncio.gather(
                *(operation(unit) for unit in chunk),
                return_exceptions=True
            )

            chunk_outcomes = []
            for unit, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    chunk_outcomes.append(UnitOutcome(unit=unit, error=result))
                else:
                    chunk_outcomes.append(UnitOutcome(unit=unit, value=result))
            outcomes.extend(chunk_outcomes)

            failed = sum(1 for o in chunk_outcomes if not o.ok)
            logger.info(
                f"📈 Processed {self.label} batch {index + 1}/{len(chunks)} "
                f"({len(chunk)} units, {failed} failed)"
            )

            for outcome in chunk_outcomes:
                if isinstance(outcome.error, (SyncCancelled, asyncio.CancelledError)):
                    raise SyncCancelled(token.reason or "cancelled") from outcome.error
            for outcome in chunk_outcomes:
                if self.fatal_exceptions and isinstance(outcome.error, self.fatal_exceptions):
                    logger.error(f"❌ Fatal error in {self.label} batch {index + 1}, stopping: {outcome.error}")
                    raise outcome.error

            delay = self.pacing.delay_after(index, len(chunks))
            if delay:
                logger.debug(f"Pacing {self.label}: sleeping {delay}s before next batch")
                await token.sleep(delay)

        return outcomes
