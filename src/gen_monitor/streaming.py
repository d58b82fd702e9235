from __future__ import annotations

import dataclasses
import functools
import logging
from typing import Callable, Optional

from .api import EventStream, JobApi
from .backup import BackupPoller
from .config import MonitorSettings
from .errors import ProtocolError, TransportError
from .reconciler import JobStateReconciler, reconcile_once
from .scheduler import ScheduledTask, Scheduler
from .session import STRATEGY_POLLING, MonitoringSession
from .sse import SseEvent
from .types import STATUS_DONE, JobStatus, parse_job_status

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_CONNECTING = "connecting"
STATE_OPEN = "open"
STATE_CLOSED = "closed"

EVENT_CONNECTION_ESTABLISHED = "connection-established"
EVENT_PROGRESS = "progress"
EVENT_COMPLETE = "complete"
EVENT_PING = "ping"
EVENT_CONNECTION_TEST = "connection-test"
EVENT_ERROR = "error"
EVENT_TIMEOUT = "timeout"


class StreamingChannelManager:
    """
    Push channel for one session.

    Connection establishment is itself a timed, fallible step: an attempt that
    has not opened within `connect_timeout` is abandoned. Attempts are bounded
    by the session; once they run out the manager hands control to the polling
    engine through `on_fallback` instead of failing the session.

    Only one attempt is live at a time. Events from an attempt that has been
    closed are ignored.
    """

    def __init__(
        self,
        session: MonitoringSession,
        api: JobApi,
        reconciler: JobStateReconciler,
        scheduler: Scheduler,
        settings: MonitorSettings,
        *,
        backup: BackupPoller,
        on_fallback: Callable[[], None],
    ) -> None:
        self.session = session
        self.api = api
        self.reconciler = reconciler
        self.scheduler = scheduler
        self.settings = settings
        self.backup = backup
        self._on_fallback = on_fallback

        self.state = STATE_IDLE
        self.finished = False
        self._live_attempt = 0
        self._stream: Optional[EventStream] = None
        self._reader: Optional[ScheduledTask] = None
        self._timer: Optional[ScheduledTask] = None
        self._idle: Optional[ScheduledTask] = None

    async def connect(self) -> None:
        s = self.session
        if self.finished or not s.active:
            return
        if not s.streaming_attempts_left:
            logger.info(f"Streaming attempts exhausted for job {s.job_id}; switching to polling")
            self._hand_off()
            return

        s.streaming_attempts += 1
        attempt = s.streaming_attempts
        self._live_attempt = attempt
        self.state = STATE_CONNECTING
        s.streaming_connected = False
        logger.info(f"Streaming attempt {attempt}/{s.max_streaming_attempts} for job {s.job_id}")

        stream = self.api.create_event_stream(s.job_id)
        self._stream = stream
        self._timer = self.scheduler.schedule(
            self.settings.connect_timeout,
            functools.partial(self._on_connect_timeout, attempt),
            name=f"stream-timeout:{s.job_id}:{attempt}",
        )
        self._reader = self.scheduler.spawn(
            functools.partial(self._run_attempt, stream, attempt),
            name=f"stream-reader:{s.job_id}:{attempt}",
        )

    def shutdown(self) -> None:
        """Stop acting on this channel. Task teardown belongs to the scheduler."""
        self.finished = True
        self._live_attempt = 0
        self.state = STATE_CLOSED
        self.session.streaming_connected = False
        for handle in (self._timer, self._idle, self._reader):
            if handle is not None:
                handle.cancel()
        self.backup.stop()

    def _is_live(self, attempt: int) -> bool:
        return attempt == self._live_attempt and not self.finished and self.session.active

    async def _run_attempt(self, stream: EventStream, attempt: int) -> None:
        try:
            await stream.open()
            if not self._is_live(attempt):
                return
            self._on_open(attempt)
            async for ev in stream.events():
                if not self._is_live(attempt):
                    return
                if await self._dispatch(ev, attempt):
                    return
                self._arm_idle_timer(attempt)
            await self._on_stream_error(attempt, "event stream ended before completion")
        except TransportError as e:
            await self._on_stream_error(attempt, str(e))
        finally:
            await stream.close()

    def _on_open(self, attempt: int) -> None:
        s = self.session
        self.state = STATE_OPEN
        s.streaming_connected = True
        self._cancel_timer()
        logger.info(f"Event stream open for job {s.job_id} (attempt {attempt})")
        self._arm_idle_timer(attempt)
        if not s.backup_scheduled:
            s.backup_scheduled = True
            self.scheduler.schedule(
                self.settings.backup_start_delay,
                self._maybe_start_backup,
                name=f"backup-start:{s.job_id}",
            )

    def _arm_idle_timer(self, attempt: int) -> None:
        self._cancel_idle_timer()
        if self.settings.stream_idle_timeout <= 0 or self.scheduler.closed or not self._is_live(attempt):
            return
        self._idle = self.scheduler.schedule(
            self.settings.stream_idle_timeout,
            functools.partial(self._on_stream_idle, attempt),
            name=f"stream-idle:{self.session.job_id}:{attempt}",
        )

    async def _on_stream_idle(self, attempt: int) -> None:
        self._idle = None
        await self._on_stream_error(attempt, f"no events within {self.settings.stream_idle_timeout}")

    async def _maybe_start_backup(self) -> None:
        if self.session.streaming_connected and self.session.active:
            self.backup.start()

    async def _dispatch(self, ev: SseEvent, attempt: int) -> bool:
        """Handle one event; True when this attempt is over."""
        s = self.session
        name = ev.event
        if name == EVENT_CONNECTION_ESTABLISHED:
            s.streaming_connected = True
            logger.info(f"Stream connection acknowledged for job {s.job_id}")
            return False
        if name in (EVENT_PING, EVENT_CONNECTION_TEST):
            logger.debug(f"Stream heartbeat for job {s.job_id}: {name}")
            return False
        if name == EVENT_PROGRESS:
            try:
                status = parse_job_status(ev.json(), default_status=s.job.status)
            except ProtocolError as e:
                logger.warning(f"Skipping malformed progress event for job {s.job_id}: {e}")
                return False
            self.reconciler.report_progress(status)
            return False
        if name == EVENT_COMPLETE:
            await self._on_complete(ev, attempt)
            return True
        if name in (EVENT_ERROR, EVENT_TIMEOUT):
            await self._on_stream_error(attempt, f"server sent {name!r} event")
            return True
        logger.debug(f"Ignoring stream event {name!r} for job {s.job_id}")
        return False

    async def _on_complete(self, ev: SseEvent, attempt: int) -> None:
        s = self.session
        try:
            status = parse_job_status(ev.json(), default_status=STATUS_DONE)
        except ProtocolError as e:
            logger.warning(f"Malformed complete event for job {s.job_id}: {e}")
            await self._on_stream_error(attempt, "malformed complete event")
            return
        if not status.terminal:
            status = dataclasses.replace(status, status=STATUS_DONE)
        if status.status == STATUS_DONE and not status.result_ids:
            status = await self._with_probed_result_ids(status)

        logger.info(f"Stream reported completion for job {s.job_id}")
        self.finished = True
        await self._close_attempt()
        self.backup.stop()
        await self.reconciler.report_terminal(status)

    async def _with_probed_result_ids(self, status: JobStatus) -> JobStatus:
        try:
            probed = await self.api.get_job_status(self.session.job_id)
        except TransportError as e:
            logger.warning(f"Could not look up result ids for job {self.session.job_id}: {e}")
            return status
        if probed.status == STATUS_DONE and probed.result_ids:
            return dataclasses.replace(status, result_ids=list(probed.result_ids))
        return status

    async def _on_connect_timeout(self, attempt: int) -> None:
        if not self._is_live(attempt) or self.state != STATE_CONNECTING:
            return
        s = self.session
        logger.warning(
            f"Event stream for job {s.job_id} did not open within {self.settings.connect_timeout} "
            f"(attempt {attempt}/{s.max_streaming_attempts})"
        )
        self._timer = None
        await self._close_attempt()
        if not s.active:
            return
        if s.streaming_attempts_left:
            self.scheduler.schedule(
                self.settings.reconnect_delay_after_timeout, self.connect, name=f"stream-retry:{s.job_id}"
            )
        else:
            self._hand_off()

    async def _on_stream_error(self, attempt: int, reason: str) -> None:
        if not self._is_live(attempt):
            return
        s = self.session
        logger.warning(f"Event stream error for job {s.job_id} (attempt {attempt}): {reason}")
        await self._close_attempt()
        if not s.active:
            return

        if await reconcile_once(self.api, self.reconciler):
            self.finished = True
            return
        if not s.active:
            return
        if s.streaming_attempts_left:
            self.scheduler.schedule(
                self.settings.reconnect_delay_after_error, self.connect, name=f"stream-retry:{s.job_id}"
            )
        else:
            self._hand_off()

    async def _close_attempt(self) -> None:
        self._live_attempt = 0
        self.state = STATE_CLOSED
        self.session.streaming_connected = False
        self._cancel_timer()
        self._cancel_idle_timer()
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.cancel()
            await reader.wait()
        stream, self._stream = self._stream, None
        if stream is not None:
            await stream.close()

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _cancel_idle_timer(self) -> None:
        idle, self._idle = self._idle, None
        if idle is not None:
            idle.cancel()

    def _hand_off(self) -> None:
        if self.finished:
            return
        self.finished = True
        self.state = STATE_CLOSED
        self.backup.stop()
        if self.session.active:
            logger.info(f"Falling back to polling for job {self.session.job_id}")
            self.session.strategy = STRATEGY_POLLING
            self._on_fallback()
