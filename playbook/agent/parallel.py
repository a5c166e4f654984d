"""
Parallel execution helper: fan out independent async subtasks and join them.

Each task gets its own time bound; a timeout or error lands in that task's
result slot only. run_in_parallel never raises for individual task failures.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from playbook.core.config import MAX_PARALLEL_OPERATIONS, PARALLEL_TIMEOUT_MS
from playbook.core.errors import TaskTimeoutError

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


@dataclass
class TaskResult:
    name: str
    success: bool
    value: Any = None
    error: BaseException | None = None
    duration_ms: float = 0.0
    timed_out: bool = False


async def _run_one(
    name: str,
    factory: TaskFactory,
    timeout_ms: int,
    semaphore: asyncio.Semaphore | None,
) -> TaskResult:
    start = time.perf_counter()
    # The bound covers waiting for a concurrency slot as well as the run itself
    deadline = asyncio.timeout(timeout_ms / 1000)
    try:
        async with deadline:
            if semaphore is not None:
                async with semaphore:
                    value = await factory()
            else:
                value = await factory()
    except TimeoutError as e:
        if not deadline.expired():
            # Raised by the task itself, not by the bound
            return TaskResult(
                name=name,
                success=False,
                error=e,
                duration_ms=(time.perf_counter() - start) * 1000,
            )
        return TaskResult(
            name=name,
            success=False,
            error=TaskTimeoutError(name, timeout_ms),
            duration_ms=(time.perf_counter() - start) * 1000,
            timed_out=True,
        )
    except Exception as e:
        return TaskResult(
            name=name,
            success=False,
            error=e,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
    return TaskResult(
        name=name,
        success=True,
        value=value,
        duration_ms=(time.perf_counter() - start) * 1000,
    )


async def run_in_parallel(
    tasks: dict[str, TaskFactory],
    *,
    timeout_ms: int = PARALLEL_TIMEOUT_MS,
    fail_fast: bool = False,
    log_results: bool = True,
    max_concurrency: int | None = MAX_PARALLEL_OPERATIONS,
) -> dict[str, TaskResult]:
    """
    Start every task concurrently and collect a TaskResult per name.

    fail_fast=False waits for all tasks to settle. fail_fast=True returns on
    the first failure with whatever has settled; outstanding tasks are
    cancelled and left out of the result.
    """
    if not tasks:
        return {}
    start = time.perf_counter()
    logger.info(
        "[parallel:run_in_parallel] IN  tasks=%s timeout_ms=%d fail_fast=%s",
        list(tasks), timeout_ms, fail_fast,
    )
    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency and max_concurrency > 0 else None
    running = {
        asyncio.ensure_future(_run_one(name, factory, timeout_ms, semaphore)): name
        for name, factory in tasks.items()
    }
    results: dict[str, TaskResult] = {}

    if fail_fast:
        pending = set(running)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            failed = False
            for fut in done:
                result = fut.result()
                results[result.name] = result
                failed = failed or not result.success
            if failed:
                for fut in pending:
                    fut.cancel()
                if pending:
                    await asyncio.gather(*pending, return_exceptions=True)
                logger.info(
                    "[parallel:run_in_parallel] fail_fast abandoned=%s",
                    [running[f] for f in pending],
                )
                break
    else:
        for result in await asyncio.gather(*running):
            results[result.name] = result

    if log_results:
        ok = sum(1 for r in results.values() if r.success)
        logger.info(
            "[parallel:run_in_parallel] OUT settled=%d/%d succeeded=%d in %.1fms",
            len(results), len(tasks), ok, (time.perf_counter() - start) * 1000,
        )
        for r in results.values():
            if not r.success:
                logger.warning("[parallel:run_in_parallel] task=%s failed: %s", r.name, r.error)
    return results
