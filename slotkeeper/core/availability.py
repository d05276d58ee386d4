from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import EmployeeUnavailable, InvalidSlot, NotFound, ValidationError
from ..models import (
    ASSIGNMENT_AUTOMATIC,
    ASSIGNMENT_BOTH,
    SCHEDULING_EMPLOYEE_BASED,
    Service,
    Shift,
    Tenant,
    utc_now_naive,
)
from .assignment import (
    busy_windows,
    eligible_employee_ids,
    is_busy_in,
    next_in_rotation,
    read_rotation_pointer,
)
from .locks import active_lock_totals, available_capacity, session_locked_slot_ids
from .slot_catalog import covers_weekday, effective_scheduling_mode, ensure_slots, list_slots

log = structlog.get_logger("slotkeeper.availability")


@dataclass
class SlotAvailability:
    slot_id: int
    service_id: int
    employee_id: int | None
    slot_date: date
    start_time: time
    end_time: time
    capacity_total: int
    capacity_booked: int
    locked_capacity: int
    available_capacity: int
    is_locked: bool = False
    is_selected: bool = False
    is_past: bool = False
    suggested_employee_id: int | None = None
    is_suggested: bool = False


@dataclass
class AvailabilityResult:
    tenant_id: int
    service_id: int
    day: date
    scheduling_mode: str
    assignment_mode: str
    slots: list[SlotAvailability] = field(default_factory=list)
    reason: str | None = None


def tenant_local_now(tenant: Tenant, utc_now: datetime) -> datetime:
    """Naive UTC instant as naive wall-clock time in the tenant's zone."""
    name = (tenant.timezone or settings.DEFAULT_TIMEZONE).strip()
    try:
        zone = ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone {name!r}", tenant_id=tenant.id) from None
    return utc_now.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)


def get_service(db: Session, tenant_id: int, service_id: int) -> Service:
    service = db.get(Service, service_id)
    if service is None or service.tenant_id != tenant_id:
        raise NotFound("Service not found", service_id=service_id)
    if not service.is_active:
        raise NotFound("Service is not active", service_id=service_id)
    return service


def _employee_slots(db: Session, tenant: Tenant, service: Service, day: date, slots):
    eligible = set(eligible_employee_ids(db, tenant.id, service.id, day))
    slots = [s for s in slots if s.employee_id is not None and s.employee_id in eligible]
    windows = busy_windows(db, tenant.id, {s.employee_id for s in slots}, day)
    return [
        s
        for s in slots
        if not is_busy_in(windows.get(s.employee_id, ()), s.starts_at, s.ends_at, exclude_slot_id=s.id)
    ]


def _service_slots(db: Session, tenant: Tenant, service: Service, day: date, slots):
    shifts = {
        shift.id: shift
        for shift in db.execute(
            select(Shift).where(
                Shift.tenant_id == tenant.id,
                Shift.service_id == service.id,
                Shift.is_active.is_(True),
            )
        ).scalars()
    }
    # Slots outlive template edits; re-check the weekday set.
    return [
        s
        for s in slots
        if s.shift_id in shifts and covers_weekday(shifts[s.shift_id].days_of_week, day)
    ]


def _attach_rotation_hints(db: Session, service: Service, rows: list[SlotAvailability]) -> None:
    pointer = read_rotation_pointer(db, service.id)
    by_start: dict[time, list[SlotAvailability]] = defaultdict(list)
    for row in rows:
        if row.employee_id is not None and row.available_capacity > 0 and not row.is_past:
            by_start[row.start_time].append(row)
    for candidates in by_start.values():
        chosen = next_in_rotation([r.employee_id for r in candidates], pointer)
        for row in candidates:
            row.suggested_employee_id = chosen
            row.is_suggested = row.employee_id == chosen


def resolve_availability(
    db: Session,
    tenant: Tenant,
    service_id: int,
    day: date,
    *,
    session_id: str | None = None,
    include_locked: bool = False,
    include_past: bool = False,
    include_full: bool = False,
    now: datetime | None = None,
) -> AvailabilityResult:
    now = now or utc_now_naive()
    session_id = (session_id or "").strip() or None
    service = get_service(db, tenant.id, service_id)
    local_now = tenant_local_now(tenant, now)
    mode = effective_scheduling_mode(tenant, service)
    result = AvailabilityResult(
        tenant_id=tenant.id,
        service_id=service.id,
        day=day,
        scheduling_mode=mode,
        assignment_mode=service.assignment_mode,
    )

    try:
        ensure_slots(db, tenant, service, day)
    except InvalidSlot as exc:
        db.rollback()
        result.reason = exc.message
        return result

    slots = list_slots(db, tenant.id, service.id, day)
    if mode == SCHEDULING_EMPLOYEE_BASED:
        slots = _employee_slots(db, tenant, service, day, slots)
    else:
        slots = _service_slots(db, tenant, service, day, slots)

    slot_ids = [s.id for s in slots]
    foreign = active_lock_totals(db, slot_ids, now, exclude_session_id=session_id)
    own = session_locked_slot_ids(db, slot_ids, session_id, now)

    for slot in slots:
        locked = foreign.get(slot.id, 0)
        row = SlotAvailability(
            slot_id=slot.id,
            service_id=slot.service_id,
            employee_id=slot.employee_id,
            slot_date=slot.slot_date,
            start_time=slot.start_time,
            end_time=slot.end_time,
            capacity_total=slot.capacity_total,
            capacity_booked=slot.capacity_booked,
            locked_capacity=locked,
            available_capacity=available_capacity(slot, locked),
            is_locked=locked > 0 and slot.id not in own,
            is_selected=slot.id in own,
            is_past=slot.starts_at <= local_now,
        )
        if row.is_past and not include_past:
            continue
        if row.is_locked and not include_locked:
            continue
        if row.available_capacity <= 0 and not include_full and not (include_locked and row.is_locked):
            continue
        result.slots.append(row)

    if mode == SCHEDULING_EMPLOYEE_BASED and service.assignment_mode in (ASSIGNMENT_AUTOMATIC, ASSIGNMENT_BOTH):
        _attach_rotation_hints(db, service, result.slots)

    # Ends the read transaction and keeps any lazily created slots.
    db.commit()

    log.info(
        "availability_resolved",
        tenant_id=result.tenant_id,
        service_id=result.service_id,
        day=day.isoformat(),
        mode=mode,
        offered=len(result.slots),
    )
    return result


def suggest_assignment(
    db: Session,
    tenant: Tenant,
    service_id: int,
    day: date,
    start_time: time,
    *,
    session_id: str | None = None,
    now: datetime | None = None,
) -> SlotAvailability:
    """Pick the (employee, slot) pair the rotation would assign at a start time."""
    service = get_service(db, tenant.id, service_id)
    if effective_scheduling_mode(tenant, service) != SCHEDULING_EMPLOYEE_BASED:
        raise ValidationError("Service is not scheduled per employee", service_id=service_id)
    if service.assignment_mode not in (ASSIGNMENT_AUTOMATIC, ASSIGNMENT_BOTH):
        raise ValidationError("Service does not use automatic assignment", service_id=service_id)

    result = resolve_availability(db, tenant, service_id, day, session_id=session_id, now=now)
    for row in result.slots:
        if row.start_time == start_time and row.is_suggested:
            return row
    raise EmployeeUnavailable(
        "No eligible employee is free at this time",
        service_id=service_id,
        day=day.isoformat(),
        start_time=start_time.isoformat(),
    )
