from datetime import timedelta

import pytest
from sqlalchemy import func, select

from slotkeeper.core.availability import resolve_availability
from slotkeeper.core.locks import (
    acquire_lock,
    active_lock_totals,
    list_active_locks,
    release_lock,
    sweep_expired_locks,
    validate_lock,
)
from slotkeeper.errors import CapacityExceeded, LockExpired, LockMismatch, NotFound, ValidationError
from slotkeeper.models import ReservationLock, Slot, Tenant

from conftest import DAY, NOW


def _group_tour(seed, capacity: int = 5):
    tenant_id = seed.tenant()
    service_id = seed.service(tenant_id, capacity_per_slot=capacity)
    seed.shift(tenant_id, service_id)
    slot_ids = seed.ensure_slots(tenant_id, service_id)
    return tenant_id, service_id, slot_ids[0]


def _availability(session_factory, tenant_id, service_id, now, **kwargs):
    with session_factory() as db:
        tenant = db.get(Tenant, tenant_id)
        result = resolve_availability(db, tenant, service_id, DAY, now=now, **kwargs)
    return {row.slot_id: row for row in result.slots}


def test_acquire_sets_absolute_expiry(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed)
    with session_factory() as db:
        lock = acquire_lock(db, tenant_id, slot_id, 2, "checkout-a", now=NOW, ttl_seconds=120)
        assert lock.reserved_capacity == 2
        assert lock.expires_at == NOW + timedelta(seconds=120)


def test_acquire_beyond_available_capacity_fails(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed, capacity=3)
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 2, "checkout-a", now=NOW)
    with session_factory() as db:
        with pytest.raises(CapacityExceeded) as excinfo:
            acquire_lock(db, tenant_id, slot_id, 2, "checkout-b", now=NOW)
    assert excinfo.value.context["available"] == 1


def test_reacquire_by_same_session_replaces_prior_hold(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed, capacity=3)
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 2, "checkout-a", now=NOW)
    with session_factory() as db:
        lock = acquire_lock(db, tenant_id, slot_id, 3, "checkout-a", now=NOW)
        assert lock.reserved_capacity == 3
    with session_factory() as db:
        count = db.execute(
            select(func.count(ReservationLock.id)).where(ReservationLock.slot_id == slot_id)
        ).scalar_one()
    assert count == 1


def test_acquire_validates_input(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed)
    with session_factory() as db:
        with pytest.raises(ValidationError):
            acquire_lock(db, tenant_id, slot_id, 0, "checkout-a", now=NOW)
        with pytest.raises(ValidationError):
            acquire_lock(db, tenant_id, slot_id, 1, "  ", now=NOW)


def test_acquire_on_foreign_or_inactive_slot_is_not_found(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed)
    other = seed.tenant("other")
    with session_factory() as db:
        with pytest.raises(NotFound):
            acquire_lock(db, other, slot_id, 1, "checkout-a", now=NOW)
    with session_factory() as db:
        db.get(Slot, slot_id).is_active = False
        db.commit()
    with session_factory() as db:
        with pytest.raises(NotFound):
            acquire_lock(db, tenant_id, slot_id, 1, "checkout-a", now=NOW)


def test_own_lock_is_selected_not_unavailable(seed, session_factory):
    tenant_id, service_id, slot_id = _group_tour(seed, capacity=1)
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 1, "checkout-a", now=NOW)

    mine = _availability(session_factory, tenant_id, service_id, NOW, session_id="checkout-a")
    theirs = _availability(session_factory, tenant_id, service_id, NOW, session_id="checkout-b")

    assert mine[slot_id].is_selected
    assert mine[slot_id].available_capacity == 1
    assert slot_id not in theirs


def test_locked_slots_are_flagged_for_back_office(seed, session_factory):
    tenant_id, service_id, slot_id = _group_tour(seed, capacity=2)
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 2, "checkout-a", now=NOW)

    rows = _availability(session_factory, tenant_id, service_id, NOW, include_locked=True)

    assert rows[slot_id].is_locked
    assert rows[slot_id].locked_capacity == 2
    assert rows[slot_id].available_capacity == 0


def test_expired_lock_stops_counting_before_any_sweep(seed, session_factory):
    tenant_id, service_id, slot_id = _group_tour(seed, capacity=1)
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 1, "checkout-a", now=NOW, ttl_seconds=120)

    during = _availability(session_factory, tenant_id, service_id, NOW + timedelta(seconds=119))
    after = _availability(session_factory, tenant_id, service_id, NOW + timedelta(seconds=120))

    assert slot_id not in during
    assert after[slot_id].available_capacity == 1
    with session_factory() as db:
        # Row still exists; only the read filter ignores it.
        assert db.execute(select(func.count(ReservationLock.id))).scalar_one() == 1
        assert active_lock_totals(db, [slot_id], NOW + timedelta(seconds=120)) == {}


def test_expired_lock_does_not_block_new_acquire(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed, capacity=1)
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 1, "checkout-a", now=NOW, ttl_seconds=60)
    with session_factory() as db:
        lock = acquire_lock(db, tenant_id, slot_id, 1, "checkout-b", now=NOW + timedelta(minutes=5))
        assert lock.session_id == "checkout-b"


def test_validate_lock_distinguishes_foreign_and_expired(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed)
    with session_factory() as db:
        lock_id = acquire_lock(db, tenant_id, slot_id, 1, "checkout-a", now=NOW, ttl_seconds=120).id

    with session_factory() as db:
        assert validate_lock(db, tenant_id, lock_id, "checkout-a", now=NOW).id == lock_id
        with pytest.raises(LockMismatch):
            validate_lock(db, tenant_id, lock_id, "checkout-b", now=NOW)
        with pytest.raises(LockMismatch):
            validate_lock(db, tenant_id, lock_id, "checkout-a", slot_id=slot_id + 1, now=NOW)
        with pytest.raises(LockExpired):
            validate_lock(db, tenant_id, lock_id, "checkout-a", now=NOW + timedelta(seconds=121))
        with pytest.raises(LockExpired):
            validate_lock(db, tenant_id, lock_id + 100, "checkout-a", now=NOW)


def test_release_requires_owning_session(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed)
    with session_factory() as db:
        lock_id = acquire_lock(db, tenant_id, slot_id, 1, "checkout-a", now=NOW).id

    with session_factory() as db:
        with pytest.raises(NotFound):
            release_lock(db, tenant_id, lock_id, "checkout-b")
    with session_factory() as db:
        release_lock(db, tenant_id, lock_id, "checkout-a")
    with session_factory() as db:
        assert list_active_locks(db, tenant_id, now=NOW) == []
        with pytest.raises(NotFound):
            release_lock(db, tenant_id, lock_id, "checkout-a")


def test_sweep_deletes_only_expired_locks(seed, session_factory):
    tenant_id, _, slot_id = _group_tour(seed)
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 1, "checkout-a", now=NOW - timedelta(minutes=10))
    with session_factory() as db:
        acquire_lock(db, tenant_id, slot_id, 1, "checkout-b", now=NOW)

    with session_factory() as db:
        assert sweep_expired_locks(db, now=NOW) == 1
    with session_factory() as db:
        remaining = list_active_locks(db, tenant_id, [slot_id], now=NOW)
        assert [lock.session_id for lock in remaining] == ["checkout-b"]
