from __future__ import annotations

import asyncio
import functools
import logging
from typing import Callable, Optional

from .api import JobApi
from .backup import BackupPoller
from .config import MonitorSettings
from .environment import POLLING_PREFERRED, EnvironmentProbe, ProcessEnvironmentProbe, assess_environment
from .polling import AdaptivePollingEngine
from .reconciler import JobStateReconciler, MonitorCallbacks, reconcile_once
from .scheduler import Scheduler, TaskScheduler
from .session import STRATEGY_POLLING, STRATEGY_STREAMING, MonitoringSession
from .streaming import StreamingChannelManager
from .types import Job

logger = logging.getLogger(__name__)


class JobMonitor:
    """
    Tracks one backend job at a time until it succeeds, fails or times out.

    Usage (inside a running event loop):

        monitor = JobMonitor(JobApiClient(base_url), MonitorCallbacks(on_success=...))
        monitor.start_monitoring(job_id)
        await monitor.wait_closed()

    Starting a new job replaces the previous session: its timers are cancelled
    and its stream closed before anything new is scheduled.
    """

    def __init__(
        self,
        api: JobApi,
        callbacks: Optional[MonitorCallbacks] = None,
        *,
        probe: Optional[EnvironmentProbe] = None,
        settings: Optional[MonitorSettings] = None,
        scheduler_factory: Optional[Callable[[], Scheduler]] = None,
    ) -> None:
        self.api = api
        self.callbacks = callbacks or MonitorCallbacks()
        self.settings = (settings or MonitorSettings()).validate()
        self.probe = probe or ProcessEnvironmentProbe(self.settings.api_base_url)
        self._scheduler_factory = scheduler_factory or self._default_scheduler

        self.session: Optional[MonitoringSession] = None
        self.scheduler: Optional[Scheduler] = None
        self.reconciler: Optional[JobStateReconciler] = None
        self.streaming: Optional[StreamingChannelManager] = None
        self.polling: Optional[AdaptivePollingEngine] = None
        self.backup: Optional[BackupPoller] = None
        self._closed: Optional[asyncio.Event] = None

    def _default_scheduler(self) -> Scheduler:
        return TaskScheduler(time_unit_s=self.settings.time_unit_s)

    @property
    def job(self) -> Optional[Job]:
        return self.session.job if self.session is not None else None

    def start_monitoring(self, job_id: str, *, strategy: Optional[str] = None) -> MonitoringSession:
        job_id = (job_id or "").strip()
        if not job_id:
            raise ValueError("job_id required")
        if strategy not in (None, STRATEGY_STREAMING, STRATEGY_POLLING):
            raise ValueError(f"unknown strategy: {strategy!r}")

        if self.session is not None:
            if self.session.active:
                logger.info(f"Replacing monitoring session for job {self.session.job_id}")
                self.session.cancelled = True
            self._teardown()

        assessment = assess_environment(self.probe.read_signals())
        session = MonitoringSession(job=Job(id=job_id), assessment=assessment)
        scheduler = self._scheduler_factory()
        reconciler = JobStateReconciler(
            session, self.api, self.callbacks, on_settled=functools.partial(self._on_settled, session)
        )
        backup = BackupPoller(session, self.api, reconciler, scheduler, self.settings)
        polling = AdaptivePollingEngine(session, self.api, reconciler, scheduler, self.settings)
        streaming = StreamingChannelManager(
            session,
            self.api,
            reconciler,
            scheduler,
            self.settings,
            backup=backup,
            on_fallback=polling.start,
        )

        self.session = session
        self.scheduler = scheduler
        self.reconciler = reconciler
        self.backup = backup
        self.polling = polling
        self.streaming = streaming
        self._closed = asyncio.Event()

        if strategy is None:
            strategy = STRATEGY_POLLING if assessment.recommendation == POLLING_PREFERRED else STRATEGY_STREAMING
        session.strategy = strategy

        if strategy == STRATEGY_POLLING:
            logger.info(f"Monitoring job {job_id} by polling (score={assessment.score})")
            polling.start()
        else:
            session.max_streaming_attempts = max(assessment.max_streaming_attempts, 1)
            logger.info(
                f"Monitoring job {job_id} by streaming "
                f"(score={assessment.score}, attempts={session.max_streaming_attempts})"
            )
            scheduler.spawn(streaming.connect, name=f"stream-connect:{job_id}")
        return session

    def refresh_now(self) -> None:
        """Run one status probe in the background. No-op once the session has settled."""
        if self.session is None or not self.session.active or self.scheduler is None:
            return
        self.scheduler.spawn(self._refresh, name=f"refresh:{self.session.job_id}")

    async def refresh_now_async(self) -> bool:
        """Run one status probe and wait for it. Returns True when the job is terminal."""
        if self.session is None or self.reconciler is None:
            return False
        if not self.session.active:
            return self.session.terminal
        return await reconcile_once(self.api, self.reconciler)

    async def _refresh(self) -> None:
        await self.refresh_now_async()

    def cancel(self) -> None:
        """Tear down all channels and timers without invoking any callback."""
        if self.session is None:
            return
        if self.session.active:
            logger.info(f"Monitoring cancelled for job {self.session.job_id}")
            self.session.cancelled = True
        self._teardown()

    async def wait_closed(self) -> None:
        if self._closed is not None:
            await self._closed.wait()

    def _on_settled(self, session: MonitoringSession) -> None:
        if session is not self.session:
            return
        logger.debug(f"Session for job {session.job_id} settled ({session.outcome}); tearing down channels")
        self._teardown()

    def _teardown(self) -> None:
        if self.streaming is not None:
            self.streaming.shutdown()
        if self.backup is not None:
            self.backup.stop()
        if self.scheduler is not None:
            self.scheduler.cancel()
        if self._closed is not None:
            self._closed.set()
