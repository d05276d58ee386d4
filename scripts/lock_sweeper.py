import argparse
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from slotkeeper.config import settings  # noqa: E402
from slotkeeper.core.locks import sweep_expired_locks  # noqa: E402
from slotkeeper.core.logging_config import setup_logging  # noqa: E402
from slotkeeper.db import SessionLocal  # noqa: E402


def sweep_once() -> int:
    with SessionLocal() as db:
        return sweep_expired_locks(db)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired reservation locks"
    )
    parser.add_argument(
        "--interval-seconds", type=float, default=float(settings.LOCK_SWEEP_INTERVAL_SECONDS)
    )
    parser.add_argument("--once", action="store_true")
    args = parser.parse_args()

    setup_logging()
    while True:
        sweep_once()
        if args.once:
            return 0
        time.sleep(max(1.0, float(args.interval_seconds)))


if __name__ == "__main__":
    raise SystemExit(main())
