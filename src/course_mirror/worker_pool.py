"""Bounded worker pool draining a shared FIFO queue.

``K`` worker coroutines pull from one queue; a slot that finishes picks the
next item right away, so at most ``K`` handlers are ever in flight. Each
item gets ``1 + retries`` attempts inside its slot and only the last
error is reported.

The handle variant binds every slot to a stateful resource (a browser page,
an authenticated client) opened once before draining starts.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from course_mirror.cancellation import CancellationToken
from course_mirror.errors import WorkerPoolError

logger = structlog.get_logger()

P = TypeVar("P")
H = TypeVar("H")

ProgressCallback = Callable[[int, int], None]


@dataclass(frozen=True, slots=True)
class WorkItem(Generic[P]):
    id: str
    payload: P


@dataclass(frozen=True, slots=True)
class TaskFailure:
    id: str
    message: str
    error: BaseException | None = None


@dataclass(slots=True)
class PoolResult(Generic[H]):
    completed: int = 0
    failed: int = 0
    errors: list[TaskFailure] = field(default_factory=list)
    # Items never started because cancellation was requested.
    not_started: int = 0
    handles: list[H] = field(default_factory=list)


class WorkerPool(Generic[P]):
    """Concurrency-limited executor over a list of work items.

    Args:
        items: Work items, dequeued in order.
        concurrency: Maximum handlers in flight (``K``).
        retries: Extra attempts per item after the first failure.
        on_progress: Called with ``(done, total)`` after every item
            finishes, successfully or not.
        cancel: Checked before each dequeue; started items always finish.
        task_timeout: Optional per-attempt timeout in seconds. A timeout
            counts as an ordinary failed attempt.
    """

    def __init__(
        self,
        items: Sequence[WorkItem[P]],
        *,
        concurrency: int,
        retries: int = 0,
        on_progress: ProgressCallback | None = None,
        cancel: CancellationToken | None = None,
        task_timeout: float | None = None,
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be >= 1, got {concurrency}"
            raise ValueError(msg)
        if retries < 0:
            msg = f"retries must be >= 0, got {retries}"
            raise ValueError(msg)
        self._items = list(items)
        self._concurrency = concurrency
        self._retries = retries
        self._on_progress = on_progress
        self._cancel = cancel
        self._task_timeout = task_timeout

    @property
    def total(self) -> int:
        return len(self._items)

    async def process(self, handler: Callable[[P], Awaitable[Any]]) -> PoolResult[Any]:
        """Drain the queue with stateless workers."""

        async def _call(_: None, payload: P) -> Any:
            return await handler(payload)

        return await self._drain([None] * self._concurrency, _call)

    async def process_with_handles(
        self,
        open_handle: Callable[[], Awaitable[H]],
        handler: Callable[[H, P], Awaitable[Any]],
        *,
        fallback: H | None = None,
    ) -> PoolResult[H]:
        """Drain the queue with one stateful handle per slot.

        Handles are opened concurrently before any item starts. Slots whose
        handle fails to open are dropped; when none opens, ``fallback`` is
        used as the single slot.

        Returns:
            The pool result; ``handles`` lists the handles opened here, which
            the caller must dispose. ``fallback`` is never included.

        Raises:
            WorkerPoolError: If no handle opened and no fallback was given.
        """
        slots = min(self._concurrency, max(self.total, 1))
        outcomes = await asyncio.gather(
            *(open_handle() for _ in range(slots)), return_exceptions=True
        )
        handles: list[H] = []
        for index, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "worker_handle_open_failed", slot=index, error=str(outcome)
                )
            else:
                handles.append(outcome)

        if handles:
            active: list[H] = list(handles)
        elif fallback is not None:
            logger.warning("worker_handles_fallback", requested=slots)
            active = [fallback]
        else:
            msg = f"Could not open any of {slots} worker handles"
            raise WorkerPoolError(msg)

        if len(active) < slots:
            logger.info("worker_pool_degraded", requested=slots, active=len(active))

        result = await self._drain(active, handler)
        result.handles = handles
        return result

    async def _drain(
        self,
        slots: Sequence[Any],
        handler: Callable[[Any, P], Awaitable[Any]],
    ) -> PoolResult[Any]:
        queue: deque[WorkItem[P]] = deque(self._items)
        result: PoolResult[Any] = PoolResult()
        total = len(queue)

        async def _attempt(slot: Any, payload: P) -> None:
            if self._task_timeout is None:
                await handler(slot, payload)
            else:
                async with asyncio.timeout(self._task_timeout):
                    await handler(slot, payload)

        async def _worker(slot: Any) -> None:
            while queue:
                if self._cancel is not None and not self._cancel.should_continue():
                    return
                item = queue.popleft()
                last_error: BaseException | None = None
                for attempt in range(1, self._retries + 2):
                    try:
                        await _attempt(slot, item.payload)
                    except Exception as exc:
                        last_error = exc
                        logger.debug(
                            "worker_task_attempt_failed",
                            item_id=item.id,
                            attempt=attempt,
                            error=str(exc),
                        )
                        if self._cancel is not None and self._cancel.cancelled:
                            break
                    else:
                        last_error = None
                        break

                if last_error is None:
                    result.completed += 1
                else:
                    result.failed += 1
                    result.errors.append(
                        TaskFailure(
                            id=item.id,
                            message=_describe(last_error),
                            error=last_error,
                        )
                    )
                if self._on_progress is not None:
                    self._on_progress(result.completed + result.failed, total)

        await asyncio.gather(*(_worker(slot) for slot in slots))
        result.not_started = len(queue)
        return result


def _describe(error: BaseException) -> str:
    if isinstance(error, TimeoutError):
        return "Timed out"
    return str(error) or type(error).__name__
