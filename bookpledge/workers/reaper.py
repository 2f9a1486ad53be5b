"""Deadline reaper worker (scheduled invocation without HTTP).

Usage:
    python -m bookpledge.workers.reaper --once
    python -m bookpledge.workers.reaper --once --retry
    python -m bookpledge.workers.reaper --loop --sleep 300

In loop mode a retry pass runs every PENALTY_RETRY_INTERVAL_HOURS next to the
normal passes.
"""
from __future__ import annotations

import argparse
import os
import time
from typing import Optional

from bookpledge.core.config import settings
from bookpledge.core.logging import configure_logging
from bookpledge.core.observability import init_observability
from bookpledge.features.notifications.dispatcher import build_dispatcher
from bookpledge.features.penalties.stripe_gateway import StripeGateway
from bookpledge.features.reaper.service import SweepStats, run_deadline_sweep


DEFAULT_LOOP_SECONDS = int(os.getenv("REAPER_LOOP_SECONDS", "300") or 300)


def _run_once(retry_mode: bool, limit: Optional[int] = None) -> SweepStats:
    return run_deadline_sweep(
        retry_mode=retry_mode,
        gateway=StripeGateway(),
        dispatcher=build_dispatcher(),
        limit=limit,
        source="worker",
    )


def _summary(stats: SweepStats) -> str:
    return (
        f"processed={stats.processed} defaulted={stats.defaulted} charged={stats.charged} "
        f"failed={stats.failed} skipped={stats.skipped} errors={len(stats.errors)}"
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Deadline reaper worker")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--retry", action="store_true", help="Retry pass instead of the overdue scan (with --once)")
    parser.add_argument("--loop", action="store_true", help="Run in continuous loop")
    parser.add_argument("--limit", type=int, default=None, help="Batch size per pass")
    parser.add_argument(
        "--sleep",
        type=int,
        default=DEFAULT_LOOP_SECONDS,
        help="Seconds to sleep between loops (when --loop)",
    )
    args = parser.parse_args()

    configure_logging(settings.ENV)
    init_observability()

    if args.once:
        stats = _run_once(args.retry, args.limit)
        print(f"[reaper-worker] {'retry' if args.retry else 'normal'}: {_summary(stats)}")
        return

    retry_every = settings.PENALTY_RETRY_INTERVAL_HOURS * 3600
    last_retry = 0.0
    print(f"[reaper-worker] Starting loop (sleep={args.sleep}s). CTRL+C to stop.")
    try:
        while True:
            stats = _run_once(False, args.limit)
            if stats.processed:
                print(f"[reaper-worker] normal: {_summary(stats)}")
            if time.monotonic() - last_retry >= retry_every:
                stats = _run_once(True, args.limit)
                last_retry = time.monotonic()
                if stats.processed:
                    print(f"[reaper-worker] retry: {_summary(stats)}")
            time.sleep(args.sleep)
    except KeyboardInterrupt:
        print("[reaper-worker] Stopped")


if __name__ == "__main__":
    main()
