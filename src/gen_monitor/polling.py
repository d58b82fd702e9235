from __future__ import annotations

import logging

from .api import JobApi
from .config import MonitorSettings
from .errors import ErrorKind, RateLimitedError, TransportError
from .reconciler import JobStateReconciler
from .scheduler import Scheduler
from .session import MonitoringSession
from .types import STATUS_PENDING, STATUS_QUEUED, STATUS_RUNNING

logger = logging.getLogger(__name__)

_BASE_INTERVALS = {
    STATUS_RUNNING: 1.2,
    STATUS_QUEUED: 2.0,
    STATUS_PENDING: 2.5,
}
DEFAULT_BASE_INTERVAL = 1.5
EARLY_POLLS = 5
LATE_POLLS = 40


def compute_poll_interval(
    status: str,
    poll_count: int,
    backoff_level: int,
    *,
    min_interval: float = 1.0,
    slow_interval: float = 4.0,
    max_interval: float = 8.0,
) -> float:
    """
    Delay before the next normal poll, in time units.

    Running jobs are polled fastest, pending ones slowest. The first few polls
    are nudged down for responsiveness, long-running sessions are stretched to
    spare the server, and any outstanding rate-limit backoff multiplies the
    result by 1.5x/2x/2.5x.
    """
    interval = _BASE_INTERVALS.get(status, DEFAULT_BASE_INTERVAL)
    if poll_count < EARLY_POLLS:
        interval = max(interval * 0.9, min_interval)
    elif poll_count > LATE_POLLS:
        interval = min(interval * 1.3, slow_interval)
    if backoff_level > 0:
        interval = min(interval * (1 + 0.5 * backoff_level), max_interval)
    return interval


def rate_limit_delay(backoff_level: int) -> float:
    return float(2 ** backoff_level)


def failure_retry_delay(consecutive_failures: int) -> float:
    return float(min(2 + consecutive_failures, 6))


class AdaptivePollingEngine:
    def __init__(
        self,
        session: MonitoringSession,
        api: JobApi,
        reconciler: JobStateReconciler,
        scheduler: Scheduler,
        settings: MonitorSettings,
    ) -> None:
        self.session = session
        self.api = api
        self.reconciler = reconciler
        self.scheduler = scheduler
        self.settings = settings
        self.started = False

    def start(self, delay: float = 0.0) -> None:
        if self.started or not self.session.active:
            return
        self.started = True
        logger.info(f"Polling job {self.session.job_id} (max {self.settings.max_poll_count} polls)")
        self._schedule(delay)

    def _schedule(self, delay: float) -> None:
        if self.scheduler.closed or not self.session.active:
            return
        self.scheduler.schedule(delay, self._cycle, name=f"poll:{self.session.job_id}")

    async def _cycle(self) -> None:
        s = self.session
        if not s.active:
            return
        try:
            status = await self.api.get_job_status(s.job_id)
        except RateLimitedError:
            s.rate_limited_polls += 1
            s.backoff_level = min(s.backoff_level + 1, self.settings.max_backoff_level)
            delay = rate_limit_delay(s.backoff_level)
            if s.poll_attempts >= self.settings.max_poll_count:
                logger.warning(f"Polling job {s.job_id} rate limited at the attempt ceiling")
                await self._final_check()
                return
            logger.warning(f"Polling job {s.job_id} rate limited; backoff level {s.backoff_level}, retry in {delay}")
            self._schedule(delay)
            return
        except TransportError as e:
            s.poll_count += 1
            s.consecutive_failures += 1
            logger.warning(
                f"Poll {s.poll_count} for job {s.job_id} failed "
                f"({s.consecutive_failures}/{self.settings.max_consecutive_failures}): {e}"
            )
            if s.consecutive_failures >= self.settings.max_consecutive_failures:
                self.reconciler.finalize(
                    ErrorKind.NETWORK_ERROR,
                    "Network connection problem; check the network and refresh manually",
                )
                return
            if s.poll_attempts >= self.settings.max_poll_count:
                await self._final_check()
                return
            self._schedule(failure_retry_delay(s.consecutive_failures))
            return

        s.poll_count += 1
        s.consecutive_failures = 0
        if s.backoff_level > 0:
            s.backoff_level -= 1
        logger.debug(f"Poll {s.poll_count} for job {s.job_id}: status={status.status} progress={status.progress}")

        if status.terminal:
            await self.reconciler.report_terminal(status)
            return
        self.reconciler.report_progress(status)

        if s.poll_attempts >= self.settings.max_poll_count:
            await self._final_check()
            return

        interval = compute_poll_interval(
            s.last_status or status.status,
            s.poll_count,
            s.backoff_level,
            min_interval=self.settings.min_poll_interval,
            slow_interval=self.settings.slow_poll_interval,
            max_interval=self.settings.max_poll_interval,
        )
        self._schedule(interval)

    async def _final_check(self) -> None:
        s = self.session
        logger.info(f"Job {s.job_id} reached {s.poll_attempts} polls; running final status check")
        try:
            status = await self.api.get_job_status(s.job_id)
        except TransportError as e:
            logger.warning(f"Final status check for job {s.job_id} failed: {e}")
        else:
            if status.terminal:
                await self.reconciler.report_terminal(status)
                return
            self.reconciler.report_progress(status)
        self.reconciler.finalize(
            ErrorKind.TIMEOUT,
            "Processing is taking longer than expected; the job may still be running, check back later",
        )
