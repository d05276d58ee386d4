from contextlib import contextmanager

import structlog
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..errors import BookingError, TransientConflict

log = structlog.get_logger("slotkeeper.transaction")


@contextmanager
def atomic(db: Session, operation: str):
    """Commit on success, roll back everything on any failure.

    Database level conflicts (lock timeouts, serialization failures, unique
    races) surface as TransientConflict; the whole operation is safe to retry.
    """
    try:
        yield
        db.commit()
    except BookingError as exc:
        db.rollback()
        log.info("operation_rejected", operation=operation, code=exc.code, reason=exc.message)
        raise
    except (OperationalError, IntegrityError) as exc:
        db.rollback()
        log.warning("operation_conflict", operation=operation, error=str(exc.orig)[:300])
        raise TransientConflict(
            "Concurrent update detected, retry the request", operation=operation
        ) from exc
    except Exception:
        db.rollback()
        log.exception("operation_failed", operation=operation)
        raise
