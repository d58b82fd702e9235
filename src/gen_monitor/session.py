from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .environment import QualityAssessment
from .types import Job

STRATEGY_STREAMING = "streaming"
STRATEGY_POLLING = "polling"


@dataclass
class MonitoringSession:
    """
    Mutable bookkeeping for one monitoring run of one job.

    Channels read and bump the counters; only the reconciler flips `terminal`.
    """

    job: Job
    strategy: str = STRATEGY_POLLING
    assessment: Optional[QualityAssessment] = None

    # streaming
    max_streaming_attempts: int = 0
    streaming_attempts: int = 0
    streaming_connected: bool = False
    backup_scheduled: bool = False

    # polling
    poll_count: int = 0
    rate_limited_polls: int = 0
    consecutive_failures: int = 0
    backoff_level: int = 0
    last_status: str = ""

    terminal: bool = False
    cancelled: bool = False
    outcome: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.job.id

    @property
    def active(self) -> bool:
        return not (self.terminal or self.cancelled)

    @property
    def poll_attempts(self) -> int:
        """Every status request the poller has made, rate-limited ones included."""
        return self.poll_count + self.rate_limited_polls

    @property
    def streaming_attempts_left(self) -> bool:
        return self.streaming_attempts < self.max_streaming_attempts
