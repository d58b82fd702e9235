from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional, Protocol
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

STREAMING_PREFERRED = "streaming_preferred"
STREAMING_FALLBACK = "streaming_fallback"
POLLING_PREFERRED = "polling_preferred"

LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "0.0.0.0"})


@dataclass(frozen=True)
class EnvironmentSignals:
    user_agent: str = ""
    effective_type: Optional[str] = None  # slow-2g|2g|3g|4g
    rtt_ms: Optional[float] = None
    hostname: str = ""
    scheme: str = "https"


@dataclass(frozen=True)
class QualityAssessment:
    score: int
    issues: FrozenSet[str] = field(default_factory=frozenset)
    recommendation: str = STREAMING_PREFERRED
    browser: str = "other"
    is_localhost: bool = False
    is_production: bool = False

    @property
    def max_streaming_attempts(self) -> int:
        if self.recommendation == STREAMING_PREFERRED:
            return 2
        if self.recommendation == STREAMING_FALLBACK:
            return 1
        return 0


class EnvironmentProbe(Protocol):
    """Source of ambient client/network signals."""

    def read_signals(self) -> EnvironmentSignals:
        ...


class StaticEnvironmentProbe:
    def __init__(self, signals: Optional[EnvironmentSignals] = None) -> None:
        self._signals = signals or EnvironmentSignals()

    def read_signals(self) -> EnvironmentSignals:
        return self._signals


class ProcessEnvironmentProbe:
    """
    Signals for non-browser clients, read from environment variables:

      - GEN_MONITOR_USER_AGENT
      - GEN_MONITOR_EFFECTIVE_TYPE
      - GEN_MONITOR_RTT_MS

    Hostname and scheme come from the API base URL the monitor talks to.
    """

    def __init__(self, api_base_url: str, environ: Optional[Mapping[str, str]] = None) -> None:
        self.api_base_url = api_base_url
        self._env = os.environ if environ is None else environ

    def read_signals(self) -> EnvironmentSignals:
        parts = urlsplit(self.api_base_url)
        return EnvironmentSignals(
            user_agent=self._env.get("GEN_MONITOR_USER_AGENT", "") or "",
            effective_type=(self._env.get("GEN_MONITOR_EFFECTIVE_TYPE") or "").strip().lower() or None,
            rtt_ms=_float_or_none(self._env.get("GEN_MONITOR_RTT_MS")),
            hostname=parts.hostname or "",
            scheme=parts.scheme or "http",
        )


def _float_or_none(raw: Optional[str]) -> Optional[float]:
    s = (raw or "").strip()
    if not s:
        return None
    try:
        return float(s)
    except ValueError:
        return None


def _browser_family(ua: str) -> str:
    if "chrome" in ua and "edge" not in ua:
        return "chrome"
    if "firefox" in ua:
        return "firefox"
    if "safari" in ua and "chrome" not in ua:
        return "safari"
    if "edge" in ua:
        return "edge"
    return "other"


def assess_environment(signals: EnvironmentSignals) -> QualityAssessment:
    """
    Score how well the client environment is expected to hold a streaming
    connection open, from 1 (hopeless) to 10.

    Chrome talking to a loopback origin force-closes event streams within a
    few hundred milliseconds; nothing at the application layer fixes that, so
    the combination starts at 3 and always lands on polling.
    """
    ua = (signals.user_agent or "").lower()
    host = (signals.hostname or "").strip().lower()
    is_localhost = host in LOOPBACK_HOSTS
    browser = _browser_family(ua)

    issues = set()
    if browser == "chrome" and is_localhost:
        score = 3
        issues.update({"chrome_localhost_policy", "forced_connection_close"})
    elif browser == "chrome":
        score = 9
    elif browser == "firefox":
        score = 8
    elif browser == "safari":
        score = 7
        issues.add("safari_sse_issues")
    elif browser == "edge":
        score = 8
    else:
        score = 6
        issues.add("unknown_browser")

    effective_type = (signals.effective_type or "").lower()
    if effective_type in ("slow-2g", "2g"):
        score -= 2
        issues.add("slow_network")
    elif effective_type == "3g":
        score -= 1
        issues.add("moderate_network")
    if signals.rtt_ms is not None and signals.rtt_ms > 1000:
        score -= 1
        issues.add("high_latency")

    if "mobile" in ua:
        score -= 1
        issues.add("mobile_device")
    if is_localhost:
        issues.add("localhost_environment")

    score = max(score, 1)
    if score >= 8:
        recommendation = STREAMING_PREFERRED
    elif score >= 6:
        recommendation = STREAMING_FALLBACK
    else:
        recommendation = POLLING_PREFERRED

    assessment = QualityAssessment(
        score=score,
        issues=frozenset(issues),
        recommendation=recommendation,
        browser=browser,
        is_localhost=is_localhost,
        is_production=not is_localhost and signals.scheme == "https",
    )
    logger.info(
        f"Streaming quality assessment: score={score} recommendation={recommendation} "
        f"browser={browser} issues={sorted(issues)}"
    )
    return assessment
