from datetime import datetime, timedelta

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import CapacityExceeded, LockExpired, LockMismatch, NotFound, ValidationError
from ..models import ReservationLock, Slot, utc_now_naive
from .transaction import atomic

log = structlog.get_logger("slotkeeper.locks")


def _require_session_id(session_id: str | None) -> str:
    value = (session_id or "").strip()
    if not value:
        raise ValidationError("session_id is required")
    return value


def lock_slot(db: Session, tenant_id: int, slot_id: int) -> Slot:
    """Load the slot under a row lock; its capacity counter is the contended resource."""
    slot = db.execute(
        select(Slot)
        .where(Slot.id == slot_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if slot is None or slot.tenant_id != tenant_id:
        raise NotFound("Slot not found", slot_id=slot_id)
    if not slot.is_active:
        raise NotFound("Slot is not available", slot_id=slot_id)
    return slot


def active_lock_totals(
    db: Session,
    slot_ids,
    now: datetime | None = None,
    *,
    exclude_session_id: str | None = None,
    exclude_lock_id: int | None = None,
) -> dict[int, int]:
    """Reserved capacity per slot over unexpired locks.

    Expiry is checked here on every read; the sweeper only reclaims rows.
    """
    ids = sorted({int(s) for s in slot_ids})
    if not ids:
        return {}
    now = now or utc_now_naive()
    q = select(ReservationLock.slot_id, func.sum(ReservationLock.reserved_capacity)).where(
        ReservationLock.slot_id.in_(ids),
        ReservationLock.expires_at > now,
    )
    if exclude_session_id:
        q = q.where(ReservationLock.session_id != exclude_session_id)
    if exclude_lock_id is not None:
        q = q.where(ReservationLock.id != exclude_lock_id)
    rows = db.execute(q.group_by(ReservationLock.slot_id)).all()
    return {int(slot_id): int(total or 0) for slot_id, total in rows}


def session_locked_slot_ids(db: Session, slot_ids, session_id: str | None, now: datetime | None = None) -> set[int]:
    ids = sorted({int(s) for s in slot_ids})
    if not ids or not session_id:
        return set()
    now = now or utc_now_naive()
    return set(
        db.execute(
            select(ReservationLock.slot_id).where(
                ReservationLock.slot_id.in_(ids),
                ReservationLock.session_id == session_id,
                ReservationLock.expires_at > now,
            )
        ).scalars()
    )


def available_capacity(slot: Slot, locked: int) -> int:
    return max(0, int(slot.capacity_total) - int(slot.capacity_booked) - int(locked))


def acquire_lock(
    db: Session,
    tenant_id: int,
    slot_id: int,
    requested_capacity: int,
    session_id: str,
    *,
    now: datetime | None = None,
    ttl_seconds: int | None = None,
) -> ReservationLock:
    session_id = _require_session_id(session_id)
    requested = int(requested_capacity)
    if requested < 1:
        raise ValidationError("requested_capacity must be at least 1")
    now = now or utc_now_naive()
    ttl = int(ttl_seconds or settings.LOCK_TTL_SECONDS)

    with atomic(db, "lock_acquire"):
        slot = lock_slot(db, tenant_id, slot_id)
        locked = active_lock_totals(db, [slot.id], now, exclude_session_id=session_id).get(slot.id, 0)
        available = available_capacity(slot, locked)
        if requested > available:
            raise CapacityExceeded(
                f"Not enough capacity available. Only {available} available, but {requested} requested.",
                slot_id=slot.id,
                available=available,
                requested=requested,
            )
        # One hold per session and slot: re-acquiring replaces the old hold.
        db.execute(
            delete(ReservationLock).where(
                ReservationLock.slot_id == slot.id,
                ReservationLock.session_id == session_id,
            )
        )
        lock = ReservationLock(
            tenant_id=tenant_id,
            slot_id=slot.id,
            session_id=session_id,
            reserved_capacity=requested,
            expires_at=now + timedelta(seconds=ttl),
            created_at=now,
        )
        db.add(lock)
    db.refresh(lock)
    log.info(
        "lock_acquired",
        tenant_id=tenant_id,
        slot_id=slot_id,
        lock_id=lock.id,
        reserved_capacity=requested,
        expires_at=lock.expires_at.isoformat(),
    )
    return lock


def validate_lock(
    db: Session,
    tenant_id: int,
    lock_id: int,
    session_id: str,
    *,
    slot_id: int | None = None,
    now: datetime | None = None,
) -> ReservationLock:
    session_id = _require_session_id(session_id)
    now = now or utc_now_naive()
    lock = db.execute(
        select(ReservationLock)
        .where(ReservationLock.id == lock_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if lock is None or lock.tenant_id != tenant_id:
        raise LockExpired("Reservation lock not found or already released", lock_id=lock_id)
    if lock.session_id != session_id:
        raise LockMismatch("Reservation lock belongs to another session", lock_id=lock_id)
    if slot_id is not None and lock.slot_id != slot_id:
        raise LockMismatch(
            "Reservation lock does not match the requested slot",
            lock_id=lock_id,
            slot_id=slot_id,
        )
    if lock.expires_at <= now:
        raise LockExpired("Reservation lock has expired", lock_id=lock_id)
    return lock


def release_lock(db: Session, tenant_id: int, lock_id: int, session_id: str) -> None:
    session_id = _require_session_id(session_id)
    with atomic(db, "lock_release"):
        result = db.execute(
            delete(ReservationLock).where(
                ReservationLock.id == lock_id,
                ReservationLock.tenant_id == tenant_id,
                ReservationLock.session_id == session_id,
            )
        )
        if result.rowcount == 0:
            raise NotFound("Lock not found or does not belong to this session", lock_id=lock_id)
    log.info("lock_released", tenant_id=tenant_id, lock_id=lock_id)


def consume_lock(db: Session, lock: ReservationLock) -> None:
    """Delete a lock inside the caller's booking transaction."""
    db.execute(delete(ReservationLock).where(ReservationLock.id == lock.id))


def list_active_locks(
    db: Session, tenant_id: int, slot_ids=None, now: datetime | None = None
) -> list[ReservationLock]:
    now = now or utc_now_naive()
    q = select(ReservationLock).where(
        ReservationLock.tenant_id == tenant_id,
        ReservationLock.expires_at > now,
    )
    if slot_ids is not None:
        q = q.where(ReservationLock.slot_id.in_([int(s) for s in slot_ids]))
    return list(db.execute(q.order_by(ReservationLock.expires_at.asc())).scalars())


def sweep_expired_locks(db: Session, now: datetime | None = None) -> int:
    now = now or utc_now_naive()
    with atomic(db, "lock_sweep"):
        result = db.execute(delete(ReservationLock).where(ReservationLock.expires_at <= now))
    deleted = int(result.rowcount or 0)
    log.info("expired_locks_swept", deleted=deleted)
    return deleted
