from bisect import bisect_right
from collections import defaultdict
from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..errors import EmployeeUnavailable, NotFound
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    Employee,
    EmployeeService,
    ServiceRotationState,
    utc_now_naive,
)

log = structlog.get_logger("slotkeeper.assignment")


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    return a_start < b_end and b_start < a_end


def is_employee_paused(employee: Employee, day: date) -> bool:
    return employee.paused_until is not None and day <= employee.paused_until


def find_conflicting_booking(
    db: Session,
    tenant_id: int,
    employee_id: int,
    starts_at: datetime,
    ends_at: datetime,
    *,
    exclude_booking_id: int | None = None,
    exclude_slot_id: int | None = None,
) -> Booking | None:
    """Active booking of the employee, in any service, overlapping the window."""
    q = select(Booking).where(
        Booking.tenant_id == tenant_id,
        Booking.employee_id == employee_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.starts_at < ends_at,
        Booking.ends_at > starts_at,
    )
    if exclude_booking_id is not None:
        q = q.where(Booking.id != exclude_booking_id)
    if exclude_slot_id is not None:
        q = q.where(Booking.slot_id != exclude_slot_id)
    return db.execute(q.order_by(Booking.starts_at.asc()).limit(1)).scalars().first()


def busy_windows(
    db: Session, tenant_id: int, employee_ids, day: date
) -> dict[int, list[tuple[datetime, datetime, int]]]:
    ids = sorted({int(e) for e in employee_ids if e is not None})
    if not ids:
        return {}
    day_start = datetime.combine(day, time.min)
    day_end = day_start + timedelta(days=1)
    rows = db.execute(
        select(Booking.employee_id, Booking.starts_at, Booking.ends_at, Booking.slot_id).where(
            Booking.tenant_id == tenant_id,
            Booking.employee_id.in_(ids),
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.starts_at < day_end,
            Booking.ends_at > day_start,
        )
    ).all()
    windows: dict[int, list[tuple[datetime, datetime, int]]] = defaultdict(list)
    for employee_id, starts_at, ends_at, slot_id in rows:
        windows[int(employee_id)].append((starts_at, ends_at, int(slot_id)))
    return dict(windows)


def is_busy_in(windows, starts_at: datetime, ends_at: datetime, exclude_slot_id: int | None = None) -> bool:
    # Bookings on the same slot share its capacity and do not make it busy.
    return any(
        overlaps(b_start, b_end, starts_at, ends_at)
        for b_start, b_end, slot_id in windows
        if exclude_slot_id is None or slot_id != exclude_slot_id
    )


def eligible_employee_ids(
    db: Session, tenant_id: int, service_id: int, day: date | None = None
) -> list[int]:
    rows = db.execute(
        select(Employee)
        .join(EmployeeService, EmployeeService.employee_id == Employee.id)
        .where(
            EmployeeService.tenant_id == tenant_id,
            EmployeeService.service_id == service_id,
            Employee.is_active.is_(True),
        )
    ).scalars().all()
    return sorted(
        e.id for e in rows if day is None or not is_employee_paused(e, day)
    )


def validate_manual_selection(
    db: Session, tenant_id: int, service_id: int, employee_id: int, day: date
) -> Employee:
    employee = db.execute(
        select(Employee)
        .join(EmployeeService, EmployeeService.employee_id == Employee.id)
        .where(
            Employee.id == employee_id,
            Employee.tenant_id == tenant_id,
            EmployeeService.service_id == service_id,
        )
    ).scalar_one_or_none()
    if employee is None:
        raise EmployeeUnavailable(
            "Employee is not assigned to this service", employee_id=employee_id
        )
    if not employee.is_active:
        raise EmployeeUnavailable("Employee is not active", employee_id=employee_id)
    if is_employee_paused(employee, day):
        raise EmployeeUnavailable(
            f"Employee is paused until {employee.paused_until.isoformat()}",
            employee_id=employee_id,
        )
    return employee


def lock_employee(db: Session, tenant_id: int, employee_id: int) -> Employee:
    """Row lock on the employee; serializes concurrent busy checks for them."""
    employee = db.execute(
        select(Employee)
        .where(Employee.id == employee_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if employee is None or employee.tenant_id != tenant_id:
        raise NotFound("Employee not found", employee_id=employee_id)
    return employee


def next_in_rotation(candidate_ids, last_assigned_id: int | None, skip=()) -> int | None:
    """Round robin over a stable id order, starting after the pointer.

    The pointer does not have to be among the candidates; the next higher id
    wins, wrapping around. Ids in ``skip`` (busy employees) are passed over.
    """
    ordered = sorted({int(c) for c in candidate_ids})
    if not ordered:
        return None
    start = 0 if last_assigned_id is None else bisect_right(ordered, int(last_assigned_id))
    skipped = set(skip)
    for offset in range(len(ordered)):
        candidate = ordered[(start + offset) % len(ordered)]
        if candidate not in skipped:
            return candidate
    return None


def read_rotation_pointer(db: Session, service_id: int) -> int | None:
    state = db.get(ServiceRotationState, service_id)
    return state.last_assigned_employee_id if state else None


def advance_rotation(db: Session, service_id: int, employee_id: int) -> ServiceRotationState:
    state = db.execute(
        select(ServiceRotationState)
        .where(ServiceRotationState.service_id == service_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if state is None:
        state = ServiceRotationState(service_id=service_id)
        db.add(state)
    state.last_assigned_employee_id = employee_id
    state.updated_at = utc_now_naive()
    db.flush()
    log.info("rotation_advanced", service_id=service_id, employee_id=employee_id)
    return state
