from __future__ import annotations

import asyncio

import pytest

from hightide_bot.scheduler.scheduler import PeriodicTask


@pytest.mark.asyncio
async def test_periodic_task_runs_immediately_and_repeats() -> None:
    calls: list[float] = []
    two_runs = asyncio.Event()

    async def action() -> None:
        calls.append(asyncio.get_running_loop().time())
        if len(calls) >= 2:
            two_runs.set()

    task = PeriodicTask("test", action, 0.05, run_immediately=True)
    await task.start()
    try:
        await asyncio.wait_for(two_runs.wait(), timeout=1)
    finally:
        await task.stop()

    assert len(calls) >= 2
    assert not task.running


@pytest.mark.asyncio
async def test_periodic_task_waits_one_interval_by_default() -> None:
    calls = 0

    async def action() -> None:
        nonlocal calls
        calls += 1

    task = PeriodicTask("delayed", action, 10)
    await task.start()
    await asyncio.sleep(0.05)
    await task.stop()

    assert calls == 0


@pytest.mark.asyncio
async def test_failing_run_does_not_stop_the_task() -> None:
    attempts = 0
    recovered = asyncio.Event()

    async def action() -> None:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise RuntimeError("transient")
        recovered.set()

    task = PeriodicTask("flaky", action, 0.01, run_immediately=True)
    await task.start()
    try:
        await asyncio.wait_for(recovered.wait(), timeout=1)
    finally:
        await task.stop()

    assert attempts >= 2


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_run() -> None:
    started = asyncio.Event()
    finished = False

    async def action() -> None:
        nonlocal finished
        started.set()
        await asyncio.sleep(0.05)
        finished = True

    task = PeriodicTask("slow", action, 10, run_immediately=True)
    await task.start()
    await asyncio.wait_for(started.wait(), timeout=1)
    await task.stop()

    assert finished is True
    assert task.runs == 1
