import asyncio
from typing import List

import pytest

from gen_monitor.environment import EnvironmentSignals, StaticEnvironmentProbe
from gen_monitor.monitor import JobMonitor
from gen_monitor.testing import CallbackRecorder, FakeJobApi, ManualScheduler
from gen_monitor.types import JobStatus, Variant

CHROME_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0 Safari/537.36"
RUNNING = JobStatus(status="running", progress=20)


class _Schedulers:
    def __init__(self) -> None:
        self.made: List[ManualScheduler] = []

    def __call__(self) -> ManualScheduler:
        s = ManualScheduler()
        self.made.append(s)
        return s


def _monitor(api: FakeJobApi, rec: CallbackRecorder, hostname: str = "app.example.com", user_agent: str = CHROME_UA):
    factory = _Schedulers()
    mon = JobMonitor(
        api,
        rec.callbacks(),
        probe=StaticEnvironmentProbe(EnvironmentSignals(user_agent=user_agent, hostname=hostname)),
        scheduler_factory=factory,
    )
    return mon, factory


def test_chrome_on_localhost_starts_with_polling() -> None:
    async def run() -> None:
        api = FakeJobApi(default_status=RUNNING)
        mon, factory = _monitor(api, CallbackRecorder(), hostname="localhost")
        s = mon.start_monitoring("job-1")
        assert s.strategy == "polling"
        assert s.assessment is not None and s.assessment.score == 3
        await factory.made[0].advance(0)
        assert api.streams == []
        assert api.status_calls == 1
        mon.cancel()

    asyncio.run(run())


def test_invalid_arguments_rejected() -> None:
    mon, _ = _monitor(FakeJobApi(), CallbackRecorder())
    with pytest.raises(ValueError):
        mon.start_monitoring("   ")
    with pytest.raises(ValueError):
        mon.start_monitoring("job-1", strategy="websocket")


def test_new_job_replaces_previous_session() -> None:
    async def run() -> None:
        api = FakeJobApi(default_status=RUNNING, variants=[Variant(id="v1", job_id="job-2", score=1.0)])
        rec = CallbackRecorder()
        mon, factory = _monitor(api, rec)
        first = mon.start_monitoring("job-1")
        await factory.made[0].advance(0)
        first_stream = api.last_stream

        second = mon.start_monitoring("job-2", strategy="polling")
        await factory.made[1].settle()

        assert first.cancelled
        assert factory.made[0].closed
        assert factory.made[0].pending() == []
        assert first_stream.closed
        assert mon.session is second
        assert mon.job is not None and mon.job.id == "job-2"

        api.queue_status(JobStatus(status="done", result_ids=["v1"]))
        await factory.made[1].advance(0)
        assert [[v.id for v in vs] for vs in rec.successes] == [["v1"]]
        assert rec.failures == []

    asyncio.run(run())


def test_cancel_closes_everything_without_callbacks() -> None:
    async def run() -> None:
        api = FakeJobApi(default_status=RUNNING)
        rec = CallbackRecorder()
        mon, factory = _monitor(api, rec)
        s = mon.start_monitoring("job-1")
        sched = factory.made[0]
        await sched.advance(0)

        mon.cancel()
        await mon.wait_closed()
        await sched.settle()

        assert s.cancelled
        assert not s.active
        assert sched.closed
        assert sched.pending() == []
        assert api.last_stream.closed
        assert rec.terminal_count == 0

        mon.refresh_now()
        assert await mon.refresh_now_async() is False
        assert api.status_calls == 0

    asyncio.run(run())


def test_refresh_now_probes_while_active() -> None:
    async def run() -> None:
        api = FakeJobApi(default_status=RUNNING)
        rec = CallbackRecorder()
        mon, factory = _monitor(api, rec)
        mon.start_monitoring("job-1")
        sched = factory.made[0]
        await sched.advance(0)

        mon.refresh_now()
        await sched.settle()
        assert api.status_calls == 1
        assert [(u.status, u.progress) for u in rec.progress] == [("running", 20.0)]
        mon.cancel()

    asyncio.run(run())


def test_refresh_after_terminal_is_noop() -> None:
    async def run() -> None:
        api = FakeJobApi(default_status=JobStatus(status="done", result_ids=["v1"]), variants=[Variant(id="v1", job_id="job-1", score=1.0)])
        rec = CallbackRecorder()
        mon, factory = _monitor(api, rec)
        mon.start_monitoring("job-1", strategy="polling")
        await factory.made[0].advance(0)
        await mon.wait_closed()
        assert len(rec.successes) == 1
        calls = api.status_calls

        mon.refresh_now()
        assert await mon.refresh_now_async() is True
        assert api.status_calls == calls
        assert len(rec.successes) == 1

    asyncio.run(run())


def test_refresh_without_session_is_noop() -> None:
    async def run() -> None:
        mon, _ = _monitor(FakeJobApi(), CallbackRecorder())
        mon.refresh_now()
        assert await mon.refresh_now_async() is False
        mon.cancel()
        await mon.wait_closed()

    asyncio.run(run())
