"""
Tests for run_in_parallel: per-task timeout, error tagging, fail-fast, concurrency bound.
"""

import asyncio
import time

import pytest

from playbook.agent.parallel import run_in_parallel
from playbook.core.errors import TaskTimeoutError


async def _after(seconds: float, value=None):
    await asyncio.sleep(seconds)
    return value


async def _boom():
    raise ValueError("boom")


@pytest.mark.asyncio
async def test_success_timeout_and_error_are_tagged_per_task() -> None:
    start = time.perf_counter()
    results = await run_in_parallel(
        {
            "a": lambda: _after(0.05, "A"),
            "b": lambda: _after(1.0, "B"),
            "c": _boom,
        },
        timeout_ms=100,
        fail_fast=False,
    )
    elapsed = time.perf_counter() - start

    assert set(results) == {"a", "b", "c"}
    assert results["a"].success and results["a"].value == "A"
    assert not results["b"].success and results["b"].timed_out
    assert isinstance(results["b"].error, TaskTimeoutError)
    assert "timed out after 100ms" in str(results["b"].error)
    assert not results["c"].success and not results["c"].timed_out
    assert isinstance(results["c"].error, ValueError)
    # Waits for the slowest task to settle (the 100ms timeout), not longer than its sleep
    assert 0.09 <= elapsed < 0.9


@pytest.mark.asyncio
async def test_durations_are_recorded() -> None:
    results = await run_in_parallel({"a": lambda: _after(0.05, 1)}, timeout_ms=1000)
    assert results["a"].duration_ms >= 40


@pytest.mark.asyncio
async def test_tasks_run_concurrently() -> None:
    start = time.perf_counter()
    results = await run_in_parallel(
        {name: (lambda: _after(0.1, True)) for name in ("x", "y", "z")},
        timeout_ms=1000,
        max_concurrency=None,
    )
    assert all(r.success for r in results.values())
    assert time.perf_counter() - start < 0.25


@pytest.mark.asyncio
async def test_fail_fast_returns_on_first_failure() -> None:
    start = time.perf_counter()
    results = await run_in_parallel(
        {"slow": lambda: _after(0.5, "late"), "bad": _boom},
        timeout_ms=1000,
        fail_fast=True,
    )
    assert time.perf_counter() - start < 0.4
    assert "bad" in results and not results["bad"].success
    assert "slow" not in results


@pytest.mark.asyncio
async def test_max_concurrency_bounds_running_tasks() -> None:
    running = 0
    peak = 0

    async def tracked():
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return True

    results = await run_in_parallel({str(i): tracked for i in range(4)}, timeout_ms=1000, max_concurrency=2)
    assert len(results) == 4
    assert peak == 2


@pytest.mark.asyncio
async def test_empty_task_map() -> None:
    assert await run_in_parallel({}) == {}


@pytest.mark.asyncio
async def test_time_waiting_for_a_slot_counts_against_the_bound() -> None:
    start = time.perf_counter()
    results = await run_in_parallel(
        {"first": lambda: _after(0.08, "first"), "second": lambda: _after(0.08, "second")},
        timeout_ms=100,
        max_concurrency=1,
    )
    elapsed = time.perf_counter() - start

    assert results["first"].success
    assert results["second"].timed_out
    assert isinstance(results["second"].error, TaskTimeoutError)
    assert elapsed < 0.15


@pytest.mark.asyncio
async def test_timeout_raised_by_task_keeps_its_own_error() -> None:
    async def upstream_timeout():
        raise TimeoutError("upstream read timed out")

    results = await run_in_parallel({"fetch": upstream_timeout}, timeout_ms=1000)

    result = results["fetch"]
    assert not result.success
    assert not result.timed_out
    assert isinstance(result.error, TimeoutError)
    assert not isinstance(result.error, TaskTimeoutError)
    assert str(result.error) == "upstream read timed out"
