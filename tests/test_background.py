import asyncio

from order_pipeline.core.background import PeriodicTask


async def test_runs_until_stopped():
    ticks = []
    task = PeriodicTask("test-loop", 0.01, lambda: ticks.append(1))

    task.start()
    await asyncio.sleep(0.05)
    await task.stop()
    count = len(ticks)
    await asyncio.sleep(0.03)

    assert count >= 2
    assert len(ticks) == count
    assert not task.running


async def test_failing_tick_does_not_kill_loop():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("boom")

    task = PeriodicTask("flaky-loop", 0.01, flaky)
    task.start()
    await asyncio.sleep(0.05)
    await task.stop()

    assert len(calls) >= 2


async def test_stop_waits_for_running_tick():
    finished = []

    async def slow():
        await asyncio.sleep(0.05)
        finished.append(1)

    task = PeriodicTask("slow-loop", 10, slow)
    task.start()
    await asyncio.sleep(0.01)
    await task.stop()

    assert finished == [1]
