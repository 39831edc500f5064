"""Concurrent bulk execution with per-item failure isolation.

`run_bulk` fans a homogeneous list of work items out to an async per-item
operation, waits for every item to settle and folds the unit outcomes into a
`BatchOutcome`. The engine never catches on behalf of an operation: each
operation is expected to turn its own failures into a failed `UnitOutcome`
(see `as_unit_operation`). An exception that escapes an operation does not cut the
batch short: every sibling still runs to completion, then the engine raises
`EscapedUnitError` carrying the outcomes that did settle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from errors import UnitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EscapedUnitError(Exception):
    """One or more unit operations raised instead of returning an outcome.

    `outcomes` is aligned with the input items; entries for the items whose
    operation raised are None.
    """

    def __init__(self, outcomes: List[Optional["UnitOutcome"]], errors: List[BaseException]) -> None:
        super().__init__(f"{len(errors)} unit operation(s) raised: {errors[0]}")
        self.outcomes = outcomes
        self.errors = errors


@dataclass(frozen=True)
class UnitOutcome:
    """Result of one work item. Exactly one of `result` / `error` is set."""

    item_ref: Optional[str]
    success: bool
    result: Any = None
    error: Optional[UnitError] = None

    def __post_init__(self) -> None:
        if self.success and self.error is not None:
            raise ValueError("A successful unit outcome cannot carry an error.")
        if not self.success and self.error is None:
            raise ValueError("A failed unit outcome must carry an error.")
        if not self.success and self.result is not None:
            raise ValueError("A failed unit outcome cannot carry a result.")

    @classmethod
    def ok(cls, item_ref: Optional[str], result: Any) -> "UnitOutcome":
        return cls(item_ref=item_ref, success=True, result=result)

    @classmethod
    def failed(cls, item_ref: Optional[str], error: UnitError) -> "UnitOutcome":
        return cls(item_ref=item_ref, success=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "item_ref": self.item_ref,
            "success": self.success,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
        }


UnitOperation = Callable[[T], Awaitable[UnitOutcome]]


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass(frozen=True)
class BatchOutcome:
    succeeded: Tuple[UnitOutcome, ...]
    failed: Tuple[UnitOutcome, ...]
    total_requested: int
    elapsed_seconds: float

    def __post_init__(self) -> None:
        if len(self.succeeded) + len(self.failed) != self.total_requested:
            raise ValueError(
                f"Outcome counts do not add up: {len(self.succeeded)} succeeded + "
                f"{len(self.failed)} failed != {self.total_requested} requested."
            )

    @classmethod
    def from_outcomes(cls, outcomes: Iterable[UnitOutcome], elapsed_seconds: float) -> "BatchOutcome":
        collected = list(outcomes)
        for outcome in collected:
            if not isinstance(outcome, UnitOutcome):
                raise TypeError(f"Unit operation returned {type(outcome).__name__}, expected UnitOutcome.")
        return cls(
            succeeded=tuple(outcome for outcome in collected if outcome.success),
            failed=tuple(outcome for outcome in collected if not outcome.success),
            total_requested=len(collected),
            elapsed_seconds=elapsed_seconds,
        )

    @property
    def status(self) -> OutcomeStatus:
        return decide_outcome_status(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "succeeded": [outcome.to_dict() for outcome in self.succeeded],
            "failed": [outcome.to_dict() for outcome in self.failed],
            "total_succeeded": len(self.succeeded),
            "total_failed": len(self.failed),
            "total_requested": self.total_requested,
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


def decide_outcome_status(outcome: BatchOutcome) -> OutcomeStatus:
    """Classify a batch as full success, partial success or full failure."""
    if outcome.total_requested <= 0:
        raise ValueError("An empty batch has no outcome status.")
    if not outcome.failed:
        return OutcomeStatus.SUCCESS
    if outcome.succeeded:
        return OutcomeStatus.PARTIAL
    return OutcomeStatus.FAILURE


async def run_bulk(
    items: Sequence[T],
    operation: UnitOperation[T],
    *,
    concurrency: Optional[int] = None,
) -> BatchOutcome:
    """Run `operation` for every item concurrently and aggregate the outcomes.

    Args:
        items: Work items. Must not be empty; callers validate batch size
            before reaching the engine.
        operation: Async per-item operation returning a `UnitOutcome`.
        concurrency: Optional cap on simultaneously running operations.
    """
    if not items:
        raise ValueError("run_bulk requires at least one work item.")

    started_at = time.perf_counter()
    limiter = asyncio.Semaphore(concurrency) if concurrency and concurrency > 0 else None

    async def run_one(item: T) -> UnitOutcome:
        if limiter is None:
            return await operation(item)
        async with limiter:
            return await operation(item)

    tasks = [asyncio.ensure_future(run_one(item)) for item in items]
    # Cancelling the gather cancels every task and waits for them.
    settled = await asyncio.gather(*tasks, return_exceptions=True)
    errors = [result for result in settled if isinstance(result, BaseException)]
    if errors:
        logger.error("bulk_run_escaped total=%s raised=%s", len(items), len(errors))
        raise EscapedUnitError(
            [None if isinstance(result, BaseException) else result for result in settled], errors
        ) from errors[0]
    outcomes = list(settled)
    outcome = BatchOutcome.from_outcomes(outcomes, time.perf_counter() - started_at)
    logger.info(
        "bulk_run total=%s succeeded=%s failed=%s status=%s elapsed_seconds=%.2f",
        outcome.total_requested,
        len(outcome.succeeded),
        len(outcome.failed),
        outcome.status.value,
        outcome.elapsed_seconds,
    )
    return outcome


def as_unit_operation(
    func: Callable[[T], Awaitable[Any]],
    item_ref: Callable[[T], Optional[str]],
    *,
    operation_name: str = "unit",
) -> UnitOperation[T]:
    """Wrap a plain async function so its failures become failed unit outcomes."""

    async def operation(item: T) -> UnitOutcome:
        ref = item_ref(item)
        try:
            result = await func(item)
        except Exception as exc:
            logger.warning("%s_failed item_ref=%s error=%s", operation_name, ref, exc)
            return UnitOutcome.failed(ref, UnitError.from_exception(exc))
        return UnitOutcome.ok(ref, result)

    return operation
