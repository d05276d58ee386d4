from datetime import datetime, time

import pytest

from slotkeeper.core.assignment import (
    eligible_employee_ids,
    find_conflicting_booking,
    next_in_rotation,
    overlaps,
    read_rotation_pointer,
    validate_manual_selection,
)
from slotkeeper.core.availability import resolve_availability, suggest_assignment
from slotkeeper.core.booking_engine import commit_booking
from slotkeeper.errors import EmployeeUnavailable, ValidationError
from slotkeeper.models import Slot, Tenant

from conftest import DAY, NOW


def _at(hour: int) -> datetime:
    return datetime.combine(DAY, time(hour, 0))


def _slot_for(seed, slot_ids, employee_id, start):
    for slot_id in slot_ids:
        slot = seed.get(Slot, slot_id)
        if slot.employee_id == employee_id and slot.start_time == start:
            return slot_id
    raise AssertionError("slot not generated")


def _availability(session_factory, tenant_id, service_id, **kwargs):
    with session_factory() as db:
        tenant = db.get(Tenant, tenant_id)
        return resolve_availability(db, tenant, service_id, DAY, now=NOW, **kwargs)


def test_overlap_is_half_open():
    assert overlaps(_at(9), _at(10), _at(9), _at(10))
    assert overlaps(_at(9), _at(11), _at(10), _at(12))
    assert not overlaps(_at(9), _at(10), _at(10), _at(11))
    assert not overlaps(_at(10), _at(11), _at(9), _at(10))


def test_rotation_starts_after_pointer_and_wraps():
    assert next_in_rotation([7, 3, 5], None) == 3
    assert next_in_rotation([7, 3, 5], 3) == 5
    assert next_in_rotation([7, 3, 5], 7) == 3
    # Pointer at an employee no longer eligible.
    assert next_in_rotation([7, 3, 5], 4) == 5


def test_rotation_skips_busy_and_gives_up_when_all_busy():
    assert next_in_rotation([1, 2, 3], 1, skip={2}) == 3
    assert next_in_rotation([1, 2, 3], 3, skip={1}) == 2
    assert next_in_rotation([1, 2], None, skip={1, 2}) is None
    assert next_in_rotation([], None) is None


def test_busy_employee_is_hidden_in_other_services(staffed, seed, session_factory):
    tenant_id, eve = staffed["tenant_id"], staffed["eve"]
    x_slots = seed.ensure_slots(tenant_id, staffed["service_x"])
    with session_factory() as db:
        commit_booking(
            db,
            tenant_id=tenant_id,
            service_id=staffed["service_x"],
            slot_id=_slot_for(seed, x_slots, eve, time(9, 0)),
            customer_name="Ada",
            now=NOW,
        )

    result = _availability(session_factory, tenant_id, staffed["service_y"])
    offered = {(row.employee_id, row.start_time) for row in result.slots}

    assert (eve, time(9, 0)) not in offered
    assert (eve, time(10, 0)) in offered
    assert (staffed["finn"], time(9, 0)) in offered


def test_conflict_query_spans_services_and_ignores_cancelled(staffed, seed, session_factory):
    tenant_id, eve = staffed["tenant_id"], staffed["eve"]
    x_slots = seed.ensure_slots(tenant_id, staffed["service_x"])
    with session_factory() as db:
        booking = commit_booking(
            db,
            tenant_id=tenant_id,
            service_id=staffed["service_x"],
            slot_id=_slot_for(seed, x_slots, eve, time(10, 0)),
            customer_name="Ada",
            now=NOW,
        )
        booking_id = booking.id

    with session_factory() as db:
        assert find_conflicting_booking(db, tenant_id, eve, _at(9), _at(10)) is None
        assert find_conflicting_booking(db, tenant_id, eve, _at(10), _at(11)).id == booking_id
        assert find_conflicting_booking(db, tenant_id, eve, _at(10), _at(11), exclude_booking_id=booking_id) is None


def test_manual_selection_requires_assignment_and_no_pause(staffed, seed, session_factory):
    tenant_id = staffed["tenant_id"]
    outsider = seed.employee(tenant_id, "Ivy")
    paused = seed.employee(tenant_id, "Jo", paused_until=DAY)
    seed.assign(tenant_id, paused, staffed["service_x"])

    with session_factory() as db:
        assert validate_manual_selection(db, tenant_id, staffed["service_x"], staffed["eve"], DAY).name == "Eve"
        with pytest.raises(EmployeeUnavailable):
            validate_manual_selection(db, tenant_id, staffed["service_x"], outsider, DAY)
        with pytest.raises(EmployeeUnavailable):
            validate_manual_selection(db, tenant_id, staffed["service_x"], paused, DAY)
        assert paused not in eligible_employee_ids(db, tenant_id, staffed["service_x"], DAY)


def test_automatic_mode_keeps_rows_and_attaches_rotation_hint(staffed, session_factory):
    result = _availability(session_factory, staffed["tenant_id"], staffed["service_y"])

    nine = [row for row in result.slots if row.start_time == time(9, 0)]
    assert {row.employee_id for row in nine} == {staffed["eve"], staffed["finn"]}
    assert {row.suggested_employee_id for row in nine} == {min(staffed["eve"], staffed["finn"])}
    assert sum(1 for row in nine if row.is_suggested) == 1


def test_automatic_booking_advances_rotation_pointer(staffed, session_factory):
    tenant_id, service_y = staffed["tenant_id"], staffed["service_y"]
    first_id = min(staffed["eve"], staffed["finn"])
    second_id = max(staffed["eve"], staffed["finn"])

    with session_factory() as db:
        tenant = db.get(Tenant, tenant_id)
        pick = suggest_assignment(db, tenant, service_y, DAY, time(9, 0), now=NOW)
    assert pick.employee_id == first_id
    with session_factory() as db:
        commit_booking(db, tenant_id=tenant_id, service_id=service_y, slot_id=pick.slot_id, customer_name="Ada", now=NOW)
    with session_factory() as db:
        assert read_rotation_pointer(db, service_y) == first_id

    with session_factory() as db:
        tenant = db.get(Tenant, tenant_id)
        pick = suggest_assignment(db, tenant, service_y, DAY, time(10, 0), now=NOW)
    assert pick.employee_id == second_id


def test_rotation_skips_employee_busy_elsewhere(staffed, seed, session_factory):
    tenant_id = staffed["tenant_id"]
    first_id = min(staffed["eve"], staffed["finn"])
    second_id = max(staffed["eve"], staffed["finn"])
    x_slots = seed.ensure_slots(tenant_id, staffed["service_x"])
    with session_factory() as db:
        commit_booking(
            db,
            tenant_id=tenant_id,
            service_id=staffed["service_x"],
            slot_id=_slot_for(seed, x_slots, first_id, time(9, 0)),
            customer_name="Ada",
            now=NOW,
        )

    with session_factory() as db:
        tenant = db.get(Tenant, tenant_id)
        pick = suggest_assignment(db, tenant, staffed["service_y"], DAY, time(9, 0), now=NOW)
    assert pick.employee_id == second_id


def test_no_suggestion_when_everyone_is_busy(staffed, seed, session_factory):
    tenant_id = staffed["tenant_id"]
    x_slots = seed.ensure_slots(tenant_id, staffed["service_x"])
    for employee_id in (staffed["eve"], staffed["finn"]):
        with session_factory() as db:
            commit_booking(
                db,
                tenant_id=tenant_id,
                service_id=staffed["service_x"],
                slot_id=_slot_for(seed, x_slots, employee_id, time(9, 0)),
                customer_name="Ada",
                now=NOW,
            )

    with session_factory() as db:
        tenant = db.get(Tenant, tenant_id)
        with pytest.raises(EmployeeUnavailable):
            suggest_assignment(db, tenant, staffed["service_y"], DAY, time(9, 0), now=NOW)


def test_suggestion_requires_automatic_service(staffed, session_factory):
    with session_factory() as db:
        tenant = db.get(Tenant, staffed["tenant_id"])
        with pytest.raises(ValidationError):
            suggest_assignment(db, tenant, staffed["service_x"], DAY, time(9, 0), now=NOW)
