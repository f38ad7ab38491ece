"""Bounded-concurrency task runner with a shared start deadline.

``run_bounded`` starts ``min(concurrency, len(tasks))`` workers that pull task
factories from one shared iterator. A worker checks the deadline before
starting each task and exits once it has passed; tasks already running are
never cancelled. Task exceptions are logged and counted so that one failing
node never aborts the batch.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

LOGGER = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass
class SchedulerStats:
    """Counters describing one ``run_bounded`` call."""

    total: int
    started: int = 0
    completed: int = 0
    failed: int = 0
    max_in_flight: int = 0
    deadline_hit: bool = False

    @property
    def not_started(self) -> int:
        return self.total - self.started


async def run_bounded(
    tasks: Iterable[TaskFactory],
    concurrency: int,
    deadline: Optional[float] = None,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> SchedulerStats:
    """Run task factories with at most ``concurrency`` in flight.

    Args:
        tasks: Zero-argument callables returning awaitables.
        concurrency: Maximum number of tasks running at once (>= 1).
        deadline: ``clock()`` value after which no new task starts; None
            means no deadline.
        clock: Monotonic time source, injectable for tests.

    Returns:
        ``SchedulerStats`` for the run. Results are observed through the
        tasks' own side effects.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")

    task_list = list(tasks)
    stats = SchedulerStats(total=len(task_list))
    if not task_list:
        return stats

    pending = iter(enumerate(task_list))
    in_flight = 0

    async def worker() -> None:
        nonlocal in_flight
        for index, factory in pending:
            if deadline is not None and clock() > deadline:
                stats.deadline_hit = True
                return
            stats.started += 1
            in_flight += 1
            stats.max_in_flight = max(stats.max_in_flight, in_flight)
            try:
                await factory()
            except Exception:  # noqa: BLE001 - isolate per-task failures
                stats.failed += 1
                LOGGER.warning("Task %d failed; continuing with the batch", index, exc_info=True)
            else:
                stats.completed += 1
            finally:
                in_flight -= 1

    workers = [asyncio.ensure_future(worker()) for _ in range(min(concurrency, len(task_list)))]
    await asyncio.gather(*workers)

    if stats.deadline_hit:
        LOGGER.info(
            "Deadline reached: started=%d skipped=%d of %d tasks",
            stats.started,
            stats.not_started,
            stats.total,
        )
    return stats


__all__ = ["SchedulerStats", "TaskFactory", "run_bounded"]
