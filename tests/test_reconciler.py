import asyncio
from typing import List

from gen_monitor.errors import ErrorKind, TransportError
from gen_monitor.reconciler import OUTCOME_SUCCESS, JobStateReconciler, MonitorCallbacks, reconcile_once
from gen_monitor.session import MonitoringSession
from gen_monitor.testing import CallbackRecorder, FakeJobApi
from gen_monitor.types import Job, JobStatus, Variant

VARIANTS = [
    Variant(id="a", job_id="job-1", score=0.8),
    Variant(id="b", job_id="job-1", score=0.6),
    Variant(id="c", job_id="job-1", score=0.4),
]


class _SlowVariantsApi(FakeJobApi):
    async def get_job_variants(self, job_id: str) -> List[Variant]:
        for _ in range(3):
            await asyncio.sleep(0)
        return await super().get_job_variants(job_id)


def _make(api: FakeJobApi, rec: CallbackRecorder) -> JobStateReconciler:
    session = MonitoringSession(job=Job(id="job-1"))
    return JobStateReconciler(session, api, rec.callbacks())


def test_done_with_ids_fetches_variants_once() -> None:
    async def run() -> None:
        api = FakeJobApi(variants=VARIANTS)
        rec = CallbackRecorder()
        r = _make(api, rec)
        await r.report_terminal(JobStatus(status="done", result_ids=["b", "a"]))

        assert api.variant_calls == ["job-1"]
        assert [[v.id for v in vs] for vs in rec.successes] == [["b", "a"]]
        assert r.session.terminal
        assert r.session.outcome == OUTCOME_SUCCESS
        assert r.session.job.progress == 100.0
        assert r.session.job.result_ids == ["b", "a"]

    asyncio.run(run())


def test_interleaved_terminal_reports_fire_one_callback() -> None:
    async def run() -> None:
        api = _SlowVariantsApi(variants=VARIANTS)
        rec = CallbackRecorder()
        r = _make(api, rec)
        await asyncio.gather(
            r.report_terminal(JobStatus(status="done", result_ids=["a", "b"])),
            r.report_terminal(JobStatus(status="done", result_ids=["a", "b"])),
            r.report_terminal(JobStatus(status="failed", error_msg="late")),
        )
        r.finalize(ErrorKind.TIMEOUT, "too slow")

        assert rec.terminal_count == 1
        assert len(rec.successes) == 1
        assert api.variant_calls == ["job-1"]

    asyncio.run(run())


def test_progress_never_decreases_but_status_applies() -> None:
    rec = CallbackRecorder()
    r = _make(FakeJobApi(), rec)
    r.report_progress(JobStatus(status="queued", progress=30))
    r.report_progress(JobStatus(status="running", progress=20))
    r.report_progress(JobStatus(status="running", progress=55, model="sdxl"))
    r.report_progress(JobStatus(status="running"))

    assert [(u.status, u.progress) for u in rec.progress] == [
        ("queued", 30.0),
        ("running", 30.0),
        ("running", 55.0),
        ("running", 55.0),
    ]
    assert r.session.job.model == "sdxl"
    assert r.session.last_status == "running"


def test_non_terminal_report_routes_to_progress() -> None:
    async def run() -> None:
        rec = CallbackRecorder()
        r = _make(FakeJobApi(), rec)
        await r.report_terminal(JobStatus(status="running", progress=10))
        assert not r.session.terminal
        assert len(rec.progress) == 1

    asyncio.run(run())


def test_done_without_ids_is_completed_without_results() -> None:
    async def run() -> None:
        api = FakeJobApi(variants=VARIANTS)
        rec = CallbackRecorder()
        r = _make(api, rec)
        await r.report_terminal(JobStatus(status="done", progress=100))
        assert rec.failure_kinds == [ErrorKind.COMPLETED_WITHOUT_RESULTS]
        assert api.variant_calls == []

    asyncio.run(run())


def test_variant_fetch_failure_is_result_retrieval_failed() -> None:
    async def run() -> None:
        rec = CallbackRecorder()
        r = _make(FakeJobApi(variants=TransportError("HTTP 500", status=500)), rec)
        await r.report_terminal(JobStatus(status="done", result_ids=["a"]))
        assert rec.failure_kinds == [ErrorKind.RESULT_RETRIEVAL_FAILED]
        assert rec.successes == []

        rec2 = CallbackRecorder()
        r2 = _make(FakeJobApi(variants=VARIANTS), rec2)
        await r2.report_terminal(JobStatus(status="done", result_ids=["zzz"]))
        assert rec2.failure_kinds == [ErrorKind.RESULT_RETRIEVAL_FAILED]

    asyncio.run(run())


def test_failed_and_error_statuses() -> None:
    async def run() -> None:
        rec = CallbackRecorder()
        r = _make(FakeJobApi(), rec)
        await r.report_terminal(JobStatus(status="failed", error_msg="NSFW content rejected"))
        assert rec.failures == [(ErrorKind.JOB_FAILED, "NSFW content rejected")]
        assert r.session.job.error_msg == "NSFW content rejected"

        rec2 = CallbackRecorder()
        r2 = _make(FakeJobApi(), rec2)
        await r2.report_terminal(JobStatus(status="error"))
        assert rec2.failures == [(ErrorKind.JOB_FAILED, "Processing failed")]

    asyncio.run(run())


def test_cancel_during_variant_fetch_suppresses_callbacks() -> None:
    async def run() -> None:
        api = _SlowVariantsApi(variants=VARIANTS)
        rec = CallbackRecorder()
        r = _make(api, rec)
        task = asyncio.ensure_future(r.report_terminal(JobStatus(status="done", result_ids=["a"])))
        await asyncio.sleep(0)
        r.session.cancelled = True
        await task
        assert rec.terminal_count == 0
        assert api.variant_calls == ["job-1"]

    asyncio.run(run())


def test_raising_callback_is_contained() -> None:
    def boom(_update) -> None:
        raise RuntimeError("ui exploded")

    r = JobStateReconciler(MonitoringSession(job=Job(id="job-1")), FakeJobApi(), MonitorCallbacks(on_progress=boom))
    r.report_progress(JobStatus(status="running", progress=5))
    assert r.session.job.progress == 5.0


def test_reconcile_once() -> None:
    async def run() -> None:
        api = FakeJobApi(variants=VARIANTS)
        api.queue_status(TransportError("reset"), JobStatus(status="running", progress=40), JobStatus(status="done", result_ids=["c"]))
        rec = CallbackRecorder()
        r = _make(api, rec)

        assert await reconcile_once(api, r) is False
        assert await reconcile_once(api, r) is False
        assert r.session.job.progress == 40.0
        assert await reconcile_once(api, r) is True
        assert [[v.id for v in vs] for vs in rec.successes] == [["c"]]

        calls = api.status_calls
        assert await reconcile_once(api, r) is True
        assert api.status_calls == calls

    asyncio.run(run())
