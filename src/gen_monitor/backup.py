from __future__ import annotations

import logging

from .api import JobApi
from .config import MonitorSettings
from .errors import TransportError
from .reconciler import JobStateReconciler
from .scheduler import Scheduler
from .session import MonitoringSession

logger = logging.getLogger(__name__)


class BackupPoller:
    """
    Slow safety-net poller running next to an open event stream.

    It covers streams that look connected but have stopped delivering events.
    Only terminal observations are acted on, and it never ends the session on
    its own: exhausting its checks just stops it.
    """

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
        self.checks = 0
        self.started = False
        self.stopped = False

    def start(self) -> None:
        if self.started or self.stopped or not self.session.active:
            return
        self.started = True
        logger.info(f"Backup polling started for job {self.session.job_id}")
        self._schedule(0.0)

    def stop(self) -> None:
        if self.started and not self.stopped:
            logger.debug(f"Backup polling stopped for job {self.session.job_id} after {self.checks} check(s)")
        self.stopped = True

    def _schedule(self, delay: float) -> None:
        if self.stopped or self.scheduler.closed or not self.session.active:
            return
        self.scheduler.schedule(delay, self._check, name=f"backup-poll:{self.session.job_id}")

    async def _check(self) -> None:
        if self.stopped or not self.session.active:
            return
        self.checks += 1
        try:
            status = await self.api.get_job_status(self.session.job_id)
        except TransportError as e:
            logger.warning(f"Backup poll {self.checks} for job {self.session.job_id} failed: {e}")
            self._next(self.settings.backup_retry_interval)
            return
        if status.terminal:
            logger.info(f"Backup poll observed terminal status {status.status} for job {self.session.job_id}")
            self.stop()
            await self.reconciler.report_terminal(status)
            return
        self._next(self.settings.backup_interval)

    def _next(self, delay: float) -> None:
        if self.checks >= self.settings.backup_max_checks:
            self.stop()
            return
        self._schedule(delay)
