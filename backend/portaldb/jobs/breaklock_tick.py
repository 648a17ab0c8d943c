"""BreakLock expiry tick.

Ends every break whose time is up. Safe to run from cron or as a
long-lived loop (`--loop`): an already-ended break is skipped, never
ended twice.
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from datetime import datetime, timezone

from portaldb.database import WriteSessionLocal
from portaldb.apps.breaklock import services as breaklock_services

logger = logging.getLogger(__name__)

TICK_INTERVAL_SEC = int(os.getenv("BREAKLOCK_TICK_INTERVAL_SEC", "30"))


def run() -> dict:
    db = WriteSessionLocal()
    try:
        summary = breaklock_services.run_expiry_sweep(db, now=datetime.now(timezone.utc))
        db.commit()
        return summary
    finally:
        db.close()


def run_forever(interval: int, *, max_ticks: int | None = None) -> int:
    """Tick every `interval` seconds; a failed tick is logged and the loop goes on."""
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        try:
            summary = run()
            if summary["failed"]:
                logger.warning("BreakLock tick had failures", extra=summary)
        except Exception:
            logger.exception("BreakLock tick failed")
        ticks += 1
        if max_ticks is None or ticks < max_ticks:
            time.sleep(interval)
    return ticks


def main() -> None:
    parser = argparse.ArgumentParser(description="End BreakLock breaks whose time is up.")
    parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep running and tick every --interval seconds instead of once.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=TICK_INTERVAL_SEC,
        help="Seconds between ticks in --loop mode (default: BREAKLOCK_TICK_INTERVAL_SEC or 30).",
    )
    args = parser.parse_args()
    if args.interval <= 0:
        parser.error("--interval must be a positive number of seconds")

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "info").upper())

    if args.loop:
        run_forever(args.interval)
        return
    result = run()
    print("BreakLock tick completed:", result)


if __name__ == "__main__":
    main()
