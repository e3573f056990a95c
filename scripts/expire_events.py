"""
Flip ended events to status=expired. Schedule with cron or a task runner.

Usage examples:
    python -m scripts.expire_events
    python -m scripts.expire_events --now 2026-01-01T00:00:00Z
"""

import argparse

from dotenv import load_dotenv

from db import SessionLocal
from eventlens.core.logging_utils import configure_logging
from eventlens.core.settings import settings
from eventlens.jobs.expire_events_job import run_expiry_sweep
from eventlens.services.temporal import normalize_instant


def main() -> int:
    parser = argparse.ArgumentParser(description="Expire events whose end time has passed")
    parser.add_argument(
        "--now", type=str, default=None, help="Optional ISO-8601 instant to evaluate against"
    )
    args = parser.parse_args()

    load_dotenv()
    configure_logging(settings)
    db = SessionLocal()
    try:
        count = run_expiry_sweep(db, normalize_instant(args.now) if args.now else None)
    finally:
        db.close()
    print(f"Expired {count} event(s)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
