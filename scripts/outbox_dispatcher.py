import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from slotkeeper.core.logging_config import setup_logging  # noqa: E402
from slotkeeper.db import SessionLocal  # noqa: E402
from slotkeeper.platform import (  # noqa: E402
    cleanup_outbox_events,
    dispatch_outbox_events,
    retry_outbox_events,
)


def process_once(batch_size: int) -> dict:
    with SessionLocal() as db:
        return dispatch_outbox_events(
            db=db, batch_size=max(1, min(int(batch_size), 500))
        )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Publish committed booking events to the Redis stream"
    )
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--poll-seconds", type=float, default=2.0)
    parser.add_argument("--once", action="store_true")
    parser.add_argument("--retry-failed", action="store_true")
    parser.add_argument("--cleanup-hours", type=int, default=0)
    args = parser.parse_args()

    setup_logging()
    if args.retry_failed or args.cleanup_hours:
        with SessionLocal() as db:
            if args.retry_failed:
                retry_outbox_events(db)
            if args.cleanup_hours:
                cleanup_outbox_events(db, older_than_hours=args.cleanup_hours)

    while True:
        result = process_once(args.batch_size)
        if args.once:
            return 0
        if int(result.get("processed", 0)) == 0:
            time.sleep(max(0.2, float(args.poll_seconds)))


if __name__ == "__main__":
    raise SystemExit(main())
