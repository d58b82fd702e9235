import asyncio
from typing import List

import pytest

from gen_monitor.scheduler import TaskScheduler
from gen_monitor.testing import ManualScheduler


def test_task_scheduler_runs_in_delay_order() -> None:
    async def run() -> List[str]:
        sched = TaskScheduler(time_unit_s=0.001)
        out: List[str] = []

        async def mark(tag: str) -> None:
            out.append(tag)

        sched.schedule(20, lambda: mark("late"))
        sched.schedule(1, lambda: mark("early"))
        sched.spawn(lambda: mark("now"))
        await asyncio.sleep(0.1)
        return out

    assert asyncio.run(run()) == ["now", "early", "late"]


def test_cancel_from_inside_a_task_lets_it_finish() -> None:
    async def run() -> List[str]:
        sched = TaskScheduler(time_unit_s=0.001)
        out: List[str] = []

        async def teardown() -> None:
            sched.cancel()
            await asyncio.sleep(0)
            out.append("teardown finished")

        async def never() -> None:
            out.append("should not run")

        sched.schedule(50, never)
        handle = sched.schedule(1, teardown)
        await handle.wait()
        await asyncio.sleep(0.1)
        assert sched.closed
        with pytest.raises(RuntimeError):
            sched.schedule(0, never)
        return out

    assert asyncio.run(run()) == ["teardown finished"]


def test_failing_callback_is_logged_not_raised() -> None:
    async def run() -> bool:
        sched = TaskScheduler(time_unit_s=0.001)

        async def boom() -> None:
            raise ValueError("bad")

        handle = sched.spawn(boom)
        await handle.wait()
        return handle.done()

    assert asyncio.run(run()) is True


def test_manual_scheduler_orders_by_due_time() -> None:
    async def run() -> List[str]:
        sched = ManualScheduler()
        out: List[str] = []

        async def mark(tag: str) -> None:
            out.append(tag)

        sched.schedule(5, lambda: mark("b"), name="b")
        sched.schedule(2, lambda: mark("a"), name="a")
        t = sched.schedule(3, lambda: mark("cancelled"), name="c")
        t.cancel()
        await sched.advance(4)
        assert out == ["a"]
        assert sched.pending() == [(5.0, "b")]
        await sched.advance(1)
        return out

    assert asyncio.run(run()) == ["a", "b"]
