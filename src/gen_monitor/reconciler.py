from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .api import JobApi
from .errors import ErrorKind, MonitorError, ResultRetrievalError, TransportError
from .session import MonitoringSession
from .types import STATUS_DONE, JobStatus, ProgressUpdate, Variant

logger = logging.getLogger(__name__)

OUTCOME_SUCCESS = "success"


@dataclass
class MonitorCallbacks:
    on_progress: Optional[Callable[[ProgressUpdate], None]] = None
    on_success: Optional[Callable[[List[Variant]], None]] = None
    on_failure: Optional[Callable[[ErrorKind, str], None]] = None


class JobStateReconciler:
    """
    The single writer of a session's job state and the only caller of the
    terminal callbacks.

    Every channel (stream, poller, backup poller, manual refresh) reports
    through `report_progress` / `report_terminal` / `finalize`. The session's
    terminal flag is set before any await so a second report arriving while
    variants are being fetched is dropped.
    """

    def __init__(
        self,
        session: MonitoringSession,
        api: JobApi,
        callbacks: MonitorCallbacks,
        *,
        on_settled: Optional[Callable[[], None]] = None,
    ) -> None:
        self.session = session
        self.api = api
        self.callbacks = callbacks
        self._on_settled = on_settled

    @property
    def active(self) -> bool:
        return self.session.active

    def report_progress(self, update: JobStatus) -> None:
        if not self.active:
            return
        job = self.session.job
        if update.status and update.status != job.status:
            logger.info(f"Job {job.id} status {job.status} -> {update.status}")
            job.status = update.status
        self.session.last_status = job.status
        if update.progress is not None:
            if update.progress >= job.progress:
                job.progress = update.progress
            else:
                logger.debug(f"Job {job.id} ignoring stale progress {update.progress} < {job.progress}")
        if update.model:
            job.model = update.model
        self._emit(self.callbacks.on_progress, ProgressUpdate(status=job.status, progress=job.progress))

    async def report_terminal(self, update: JobStatus) -> None:
        if not update.terminal:
            self.report_progress(update)
            return
        if not self.active:
            logger.debug(f"Job {self.session.job_id} already settled; dropping {update.status} report")
            return
        self.session.terminal = True

        job = self.session.job
        job.status = update.status
        self.session.last_status = update.status
        if update.model:
            job.model = update.model
        if update.error_msg:
            job.error_msg = update.error_msg
        job.result_ids = list(update.result_ids)

        if update.status == STATUS_DONE:
            job.progress = max(job.progress, update.progress if update.progress is not None else 100.0)
            await self._complete(job.result_ids)
        else:
            if update.progress is not None:
                job.progress = max(job.progress, update.progress)
            message = update.error_msg or "Processing failed"
            self._fail(ErrorKind.JOB_FAILED, message)
        self._settle()

    def finalize(self, kind: ErrorKind, message: str) -> None:
        """Terminal outcome decided by a channel rather than by the backend."""
        if not self.active:
            return
        self.session.terminal = True
        self._fail(kind, message)
        self._settle()

    async def _complete(self, result_ids: List[str]) -> None:
        job_id = self.session.job_id
        if not result_ids:
            logger.warning(f"Job {job_id} completed without result variants")
            self._fail(ErrorKind.COMPLETED_WITHOUT_RESULTS, "Processing completed but produced no results")
            return
        try:
            variants = await self._fetch_variants(result_ids)
        except MonitorError as e:
            logger.error(f"Job {job_id} succeeded but result retrieval failed: {e}")
            self._fail(ErrorKind.RESULT_RETRIEVAL_FAILED, f"Result retrieval failed: {e}")
            return
        if self.session.cancelled:
            return
        logger.info(f"Job {job_id} completed with {len(variants)} variant(s)")
        self.session.outcome = OUTCOME_SUCCESS
        self._emit(self.callbacks.on_success, variants)

    async def _fetch_variants(self, result_ids: List[str]) -> List[Variant]:
        variants = await self.api.get_job_variants(self.session.job_id)
        by_id = {v.id: v for v in variants}
        picked = [by_id[vid] for vid in result_ids if vid in by_id]
        if not picked:
            raise ResultRetrievalError(f"no records returned for result ids {result_ids}")
        return picked

    def _fail(self, kind: ErrorKind, message: str) -> None:
        if self.session.cancelled:
            return
        logger.info(f"Job {self.session.job_id} ended: {kind.value}: {message}")
        self.session.outcome = kind.value
        self._emit(self.callbacks.on_failure, kind, message)

    def _settle(self) -> None:
        if self._on_settled is not None and not self.session.cancelled:
            self._on_settled()

    def _emit(self, fn: Optional[Callable[..., Any]], *args: Any) -> None:
        if fn is None or self.session.cancelled:
            return
        try:
            fn(*args)
        except Exception:
            logger.exception(f"Monitor callback {getattr(fn, '__name__', fn)!r} raised")


async def reconcile_once(api: JobApi, reconciler: JobStateReconciler) -> bool:
    """
    Fast reconciliation probe: one status request routed through the
    reconciler. Returns True when the job is known to be terminal.
    """
    if not reconciler.active:
        return reconciler.session.terminal
    job_id = reconciler.session.job_id
    try:
        status = await api.get_job_status(job_id)
    except TransportError as e:
        logger.warning(f"Status probe for job {job_id} failed: {e}")
        return False
    if status.terminal:
        await reconciler.report_terminal(status)
        return True
    reconciler.report_progress(status)
    return False
