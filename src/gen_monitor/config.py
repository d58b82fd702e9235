from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import tomllib

ENV_PREFIX = "GEN_MONITOR_"


@dataclass(frozen=True)
class MonitorSettings:
    """
    Timing and endpoint settings for job monitoring.

    All durations are in abstract time units; `time_unit_s` converts them to
    wall-clock seconds.
    """

    api_base_url: str = "http://localhost:3001/api"
    api_token: Optional[str] = None
    http_timeout_s: float = 30.0
    time_unit_s: float = 1.0

    # streaming
    connect_timeout: float = 3.0
    reconnect_delay_after_timeout: float = 1.0
    reconnect_delay_after_error: float = 2.0
    backup_start_delay: float = 10.0
    # no event (heartbeats included) for this long means the stream has stalled; 0 disables
    stream_idle_timeout: float = 30.0

    # backup safety-net poller
    backup_interval: float = 8.0
    backup_retry_interval: float = 10.0
    backup_max_checks: int = 20

    # adaptive polling
    max_poll_count: int = 120
    max_consecutive_failures: int = 3
    max_backoff_level: int = 3
    min_poll_interval: float = 1.0
    slow_poll_interval: float = 4.0
    max_poll_interval: float = 8.0

    def validate(self) -> "MonitorSettings":
        if not self.api_base_url.strip():
            raise ValueError("api_base_url cannot be empty")
        for f in fields(self):
            v = getattr(self, f.name)
            if isinstance(v, (int, float)) and not isinstance(v, bool) and v < 0:
                raise ValueError(f"{f.name} must be >= 0")
        if self.time_unit_s <= 0:
            raise ValueError("time_unit_s must be > 0")
        if self.max_poll_count < 1:
            raise ValueError("max_poll_count must be >= 1")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be >= 1")
        return self

    def merged(self, overrides: Mapping[str, Any]) -> "MonitorSettings":
        return replace(self, **_coerce_overrides(overrides)).validate()

    @classmethod
    def from_env(cls, base: Optional["MonitorSettings"] = None, environ: Optional[Mapping[str, str]] = None) -> "MonitorSettings":
        env = os.environ if environ is None else environ
        raw: Dict[str, Any] = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key in env:
                raw[f.name] = env[key]
        return (base or cls()).merged(raw)


def _coerce_overrides(overrides: Mapping[str, Any]) -> Dict[str, Any]:
    known = {f.name: f for f in fields(MonitorSettings)}
    defaults = MonitorSettings()
    out: Dict[str, Any] = {}
    for name, value in overrides.items():
        if name not in known:
            raise ValueError(f"unknown monitor setting: {name}")
        default = getattr(defaults, name)
        try:
            if isinstance(default, bool):
                out[name] = str(value).strip().lower() in ("true", "1", "t", "yes")
            elif isinstance(default, int):
                out[name] = int(value)
            elif isinstance(default, float):
                out[name] = float(value)
            elif name == "api_token":
                out[name] = str(value or "").strip() or None
            else:
                out[name] = str(value).strip()
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid value for {name}: {value!r}") from e
    return out


def load_settings_toml(path: Path, base: Optional[MonitorSettings] = None) -> MonitorSettings:
    data = tomllib.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("settings file must be a TOML table at root")
    table = data.get("monitor", {})
    if not isinstance(table, dict):
        raise ValueError("[monitor] must be a table")
    return (base or MonitorSettings()).merged(table)
