"""Materializes concrete per-date slots from recurring weekly templates.

Slots are created lazily, one date at a time, the first time a date is
queried. Generation is idempotent: existing windows are skipped and a unique
constraint catches anything created concurrently.
"""
from datetime import date, datetime, time, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import InvalidSlot, NotFound, ValidationError
from ..models import (
    SCHEDULING_EMPLOYEE_BASED,
    SCHEDULING_TYPES,
    Employee,
    EmployeeService,
    EmployeeShift,
    Service,
    Shift,
    Slot,
    Tenant,
)
from .assignment import is_employee_paused

log = structlog.get_logger("slotkeeper.slot_catalog")

MAX_GENERATION_DAYS = 366


def effective_scheduling_mode(tenant: Tenant, service: Service) -> str:
    override = (tenant.scheduling_mode or "").strip().lower()
    if override in SCHEDULING_TYPES:
        return override
    return service.scheduling_type


def covers_weekday(days_of_week, day: date) -> bool:
    return day.weekday() in {int(d) for d in (days_of_week or [])}


def build_windows(start_time: time, end_time: time, duration_min: int) -> list[tuple[time, time]]:
    if int(duration_min) <= 0:
        raise ValidationError("Slot duration must be positive", duration_min=duration_min)
    step = timedelta(minutes=int(duration_min))
    cursor = datetime.combine(date.min, start_time)
    limit = datetime.combine(date.min, end_time)
    windows = []
    while cursor + step <= limit:
        windows.append((cursor.time(), (cursor + step).time()))
        cursor += step
    return windows


def _materialize(
    db: Session,
    *,
    tenant_id: int,
    service_id: int,
    day: date,
    windows: list[tuple[time, time]],
    capacity: int,
    shift_id: int | None = None,
    employee_shift_id: int | None = None,
    employee_id: int | None = None,
) -> int:
    q = select(Slot.start_time).where(Slot.slot_date == day)
    if shift_id is not None:
        q = q.where(Slot.shift_id == shift_id)
    else:
        q = q.where(Slot.employee_id == employee_id, Slot.service_id == service_id)
    existing = set(db.execute(q).scalars().all())

    created = 0
    for start, end in windows:
        if start in existing:
            continue
        try:
            with db.begin_nested():
                db.add(
                    Slot(
                        tenant_id=tenant_id,
                        service_id=service_id,
                        shift_id=shift_id,
                        employee_shift_id=employee_shift_id,
                        employee_id=employee_id,
                        slot_date=day,
                        start_time=start,
                        end_time=end,
                        capacity_total=int(capacity),
                        capacity_booked=0,
                        is_active=True,
                    )
                )
        except IntegrityError:
            # Created by a concurrent request.
            continue
        created += 1
    return created


def ensure_service_slots(db: Session, tenant_id: int, service: Service, day: date) -> int:
    shifts = db.execute(
        select(Shift)
        .where(
            Shift.tenant_id == tenant_id,
            Shift.service_id == service.id,
            Shift.is_active.is_(True),
        )
        .order_by(Shift.start_time.asc(), Shift.id.asc())
    ).scalars().all()
    if not shifts:
        raise InvalidSlot("Service has no active shifts", service_id=service.id)

    created = 0
    for shift in shifts:
        if not covers_weekday(shift.days_of_week, day):
            continue
        created += _materialize(
            db,
            tenant_id=tenant_id,
            service_id=service.id,
            day=day,
            windows=build_windows(shift.start_time, shift.end_time, service.duration_min),
            capacity=service.capacity_per_slot,
            shift_id=shift.id,
        )
    return created


def ensure_employee_slots(db: Session, tenant_id: int, service: Service, day: date) -> int:
    assignments = db.execute(
        select(EmployeeService, Employee)
        .join(Employee, Employee.id == EmployeeService.employee_id)
        .where(
            EmployeeService.tenant_id == tenant_id,
            EmployeeService.service_id == service.id,
            Employee.is_active.is_(True),
        )
        .order_by(Employee.id.asc())
    ).all()
    if not assignments:
        raise InvalidSlot("No employees are assigned to this service", service_id=service.id)

    employee_ids = [employee.id for _, employee in assignments]
    shifts_by_employee: dict[int, list[EmployeeShift]] = {}
    for shift in db.execute(
        select(EmployeeShift)
        .where(
            EmployeeShift.tenant_id == tenant_id,
            EmployeeShift.employee_id.in_(employee_ids),
            EmployeeShift.is_active.is_(True),
        )
        .order_by(EmployeeShift.start_time.asc(), EmployeeShift.id.asc())
    ).scalars():
        shifts_by_employee.setdefault(shift.employee_id, []).append(shift)
    if not shifts_by_employee:
        raise InvalidSlot("Assigned employees have no active shifts", service_id=service.id)

    created = 0
    for assignment, employee in assignments:
        if is_employee_paused(employee, day):
            continue
        duration = assignment.duration_min or service.duration_min
        capacity = assignment.capacity_per_slot or service.capacity_per_slot
        for shift in shifts_by_employee.get(employee.id, []):
            if not covers_weekday(shift.days_of_week, day):
                continue
            created += _materialize(
                db,
                tenant_id=tenant_id,
                service_id=service.id,
                day=day,
                windows=build_windows(shift.start_time, shift.end_time, duration),
                capacity=capacity,
                employee_shift_id=shift.id,
                employee_id=employee.id,
            )
    return created


def ensure_slots(db: Session, tenant: Tenant, service: Service, day: date) -> int:
    """Flushes new slots into the caller's transaction; the caller commits."""
    if effective_scheduling_mode(tenant, service) == SCHEDULING_EMPLOYEE_BASED:
        created = ensure_employee_slots(db, tenant.id, service, day)
    else:
        created = ensure_service_slots(db, tenant.id, service, day)
    if created:
        log.info(
            "slots_materialized",
            tenant_id=tenant.id,
            service_id=service.id,
            day=day.isoformat(),
            created=created,
        )
    return created


def list_slots(
    db: Session,
    tenant_id: int,
    service_id: int,
    day: date,
    *,
    employee_ids=None,
) -> list[Slot]:
    q = select(Slot).where(
        Slot.tenant_id == tenant_id,
        Slot.service_id == service_id,
        Slot.slot_date == day,
        Slot.is_active.is_(True),
    )
    if employee_ids is not None:
        q = q.where(Slot.employee_id.in_(list(employee_ids)))
    return list(
        db.execute(q.order_by(Slot.start_time.asc(), Slot.employee_id.asc(), Slot.id.asc())).scalars()
    )


def generate_shift_slots(
    db: Session, tenant_id: int, shift_id: int, start_date: date, end_date: date
) -> dict:
    if end_date < start_date:
        raise ValidationError("end_date must not be before start_date")
    days = (end_date - start_date).days + 1
    if days > MAX_GENERATION_DAYS:
        raise ValidationError(f"Cannot generate more than {MAX_GENERATION_DAYS} days at once")

    shift = db.get(Shift, shift_id)
    if shift is None or shift.tenant_id != tenant_id:
        raise NotFound("Shift not found", shift_id=shift_id)
    if not shift.is_active:
        raise InvalidSlot("Shift is not active", shift_id=shift_id)
    service = db.get(Service, shift.service_id)

    windows = build_windows(shift.start_time, shift.end_time, service.duration_min)
    created = 0
    for offset in range(days):
        day = start_date + timedelta(days=offset)
        if not covers_weekday(shift.days_of_week, day):
            continue
        created += _materialize(
            db,
            tenant_id=tenant_id,
            service_id=service.id,
            day=day,
            windows=windows,
            capacity=service.capacity_per_slot,
            shift_id=shift.id,
        )
    db.commit()
    log.info(
        "shift_slots_generated",
        tenant_id=tenant_id,
        shift_id=shift_id,
        start_date=start_date.isoformat(),
        end_date=end_date.isoformat(),
        created=created,
    )
    return {"shift_id": shift_id, "days": days, "created": created}
