from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .api import JobApiClient
from .config import MonitorSettings, load_settings_toml
from .environment import EnvironmentProbe, EnvironmentSignals, ProcessEnvironmentProbe, StaticEnvironmentProbe
from .errors import ErrorKind
from .monitor import JobMonitor
from .reconciler import MonitorCallbacks
from .types import ProgressUpdate, Variant

logger = logging.getLogger("MonitorEntrypoint")

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_TIMEOUT = 2


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="gen-monitor", description="Follow a backend image job to completion.")
    ap.add_argument("job_id")
    ap.add_argument("--base-url", default=None, help="API base URL (default: settings / GEN_MONITOR_API_BASE_URL)")
    ap.add_argument("--config", default=os.getenv("GEN_MONITOR_CONFIG"), help="TOML file with a [monitor] table")
    ap.add_argument("--strategy", choices=["streaming", "polling"], default=None)
    ap.add_argument("--user-agent", default=None)
    ap.add_argument("--hostname", default=None)
    ap.add_argument("--effective-type", default=None)
    ap.add_argument("--rtt-ms", type=float, default=None)
    ap.add_argument("--log-level", default=os.getenv("GEN_MONITOR_LOG_LEVEL", "INFO"))
    return ap


def load_settings(config_path: Optional[str], base_url: Optional[str]) -> MonitorSettings:
    settings = MonitorSettings()
    if config_path:
        settings = load_settings_toml(Path(config_path).expanduser(), settings)
    settings = MonitorSettings.from_env(settings)
    if base_url:
        settings = settings.merged({"api_base_url": base_url})
    return settings


def _build_probe(args: argparse.Namespace, settings: MonitorSettings) -> EnvironmentProbe:
    if not any(v is not None for v in (args.user_agent, args.hostname, args.effective_type, args.rtt_ms)):
        return ProcessEnvironmentProbe(settings.api_base_url)
    base = ProcessEnvironmentProbe(settings.api_base_url).read_signals()
    return StaticEnvironmentProbe(
        EnvironmentSignals(
            user_agent=args.user_agent if args.user_agent is not None else base.user_agent,
            effective_type=args.effective_type if args.effective_type is not None else base.effective_type,
            rtt_ms=args.rtt_ms if args.rtt_ms is not None else base.rtt_ms,
            hostname=args.hostname if args.hostname is not None else base.hostname,
            scheme=base.scheme,
        )
    )


async def run_monitor(job_id: str, settings: MonitorSettings, probe: EnvironmentProbe, strategy: Optional[str] = None) -> int:
    outcome = {"code": EXIT_FAILURE}

    def on_progress(update: ProgressUpdate) -> None:
        print(f"[{update.status}] {update.progress:.0f}%", flush=True)

    def on_success(variants: List[Variant]) -> None:
        outcome["code"] = EXIT_SUCCESS
        print(f"Job {job_id} completed with {len(variants)} variant(s):")
        for v in variants:
            print(f"  {v.id}  score={v.score:.3f}  {v.thumb_path or v.image_id}")

    def on_failure(kind: ErrorKind, message: str) -> None:
        outcome["code"] = EXIT_TIMEOUT if kind == ErrorKind.TIMEOUT else EXIT_FAILURE
        print(f"Job {job_id} {kind.value}: {message}", file=sys.stderr)

    api = JobApiClient(
        settings.api_base_url,
        token=settings.api_token,
        timeout_s=settings.http_timeout_s,
        stream_read_timeout_s=settings.stream_idle_timeout * settings.time_unit_s,
    )
    monitor = JobMonitor(
        api,
        MonitorCallbacks(on_progress=on_progress, on_success=on_success, on_failure=on_failure),
        probe=probe,
        settings=settings,
    )
    monitor.start_monitoring(job_id, strategy=strategy)
    try:
        await monitor.wait_closed()
    finally:
        monitor.cancel()
    return outcome["code"]


def main(argv: Optional[List[str]] = None) -> None:
    load_dotenv()
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        settings = load_settings(args.config, args.base_url)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid monitor configuration: {e}")
        sys.exit(EXIT_FAILURE)

    logger.info(f"Monitoring job {args.job_id}")
    logger.info(f"  API base URL: {settings.api_base_url}")
    logger.info(f"  Strategy: {args.strategy or 'auto'}")

    try:
        code = asyncio.run(run_monitor(args.job_id, settings, _build_probe(args, settings), args.strategy))
    except KeyboardInterrupt:
        logger.info("Interrupted; monitoring stopped.")
        code = EXIT_FAILURE
    sys.exit(code)


if __name__ == "__main__":
    main()
