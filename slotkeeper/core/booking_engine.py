"""The only write path for bookings.

Every operation runs in one database transaction: the slot row is locked, all
preconditions are re-checked against committed state, and capacity, locks,
package balances, the rotation pointer and outbox events change together or
not at all. Lock order is slot(s) by id, employee, package usage, rotation.
"""
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import (
    CapacityExceeded,
    EmployeeUnavailable,
    LockMismatch,
    NotFound,
    TransientConflict,
    ValidationError,
)
from ..models import (
    ASSIGNMENT_AUTOMATIC,
    ASSIGNMENT_BOTH,
    BOOKING_CANCELLED,
    BOOKING_CONFIRMED,
    BOOKING_PENDING_PAYMENT,
    SCHEDULING_EMPLOYEE_BASED,
    Booking,
    BookingStatusEvent,
    Customer,
    Service,
    Slot,
    Tenant,
    utc_now_naive,
)
from ..platform import enqueue_outbox_event
from .assignment import (
    advance_rotation,
    find_conflicting_booking,
    lock_employee,
    validate_manual_selection,
)
from .locks import active_lock_totals, available_capacity, consume_lock, lock_slot, validate_lock
from .package_ledger import consume_package_capacity, record_allocations, restore_package_capacity
from .slot_catalog import effective_scheduling_mode
from .transaction import atomic

log = structlog.get_logger("slotkeeper.booking_engine")


@dataclass
class BulkItem:
    slot_id: int
    visitor_count: int = 1
    lock_id: int | None = None
    employee_id: int | None = None


def _new_entry_token() -> str:
    return secrets.token_urlsafe(24)


def _visitor_count(value) -> int:
    try:
        count = int(value)
    except (TypeError, ValueError):
        raise ValidationError("visitor_count must be an integer") from None
    if count < 1:
        raise ValidationError("visitor_count must be at least 1")
    return count


def _get_active_tenant(db: Session, tenant_id: int) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if tenant is None or not tenant.is_active:
        raise NotFound("Tenant not found or inactive", tenant_id=tenant_id)
    return tenant


def _get_active_service(db: Session, tenant_id: int, service_id: int) -> Service:
    service = db.get(Service, service_id)
    if service is None or service.tenant_id != tenant_id:
        raise NotFound("Service not found", service_id=service_id)
    if not service.is_active:
        raise NotFound("Service is not active", service_id=service_id)
    return service


def _resolve_customer(
    db: Session,
    tenant_id: int,
    customer_id: int | None,
    customer_name: str | None,
    customer_phone: str | None,
) -> Customer:
    if customer_id is not None:
        customer = db.get(Customer, customer_id)
        if customer is None or customer.tenant_id != tenant_id:
            raise NotFound("Customer not found", customer_id=customer_id)
        return customer

    name = (customer_name or "").strip()
    if not name:
        raise ValidationError("customer_id or customer_name is required")
    phone = (customer_phone or "").strip() or None
    if phone:
        existing = db.execute(
            select(Customer)
            .where(Customer.tenant_id == tenant_id, Customer.phone == phone)
            .order_by(Customer.id.asc())
            .limit(1)
        ).scalars().first()
        if existing is not None:
            return existing
    customer = Customer(tenant_id=tenant_id, name=name, phone=phone)
    db.add(customer)
    db.flush()
    return customer


def _add_status_event(
    db: Session,
    booking: Booking,
    *,
    event: str,
    from_status: str | None,
    to_status: str,
    actor: str | None = None,
    note: str | None = None,
) -> None:
    db.add(
        BookingStatusEvent(
            tenant_id=booking.tenant_id,
            booking_id=booking.id,
            event=event,
            from_status=from_status,
            to_status=to_status,
            actor=(actor or "").strip() or None,
            note=(note or "").strip()[:500] or None,
        )
    )


def _booking_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "service_id": booking.service_id,
        "slot_id": booking.slot_id,
        "employee_id": booking.employee_id,
        "customer_id": booking.customer_id,
        "visitor_count": booking.visitor_count,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "total_price": float(booking.total_price or 0),
        "booking_group_id": booking.booking_group_id,
        "starts_at": booking.starts_at.isoformat(),
        "ends_at": booking.ends_at.isoformat(),
    }


def _reserve_capacity(db: Session, slot_id: int, quantity: int) -> None:
    result = db.execute(
        update(Slot)
        .where(Slot.id == slot_id, Slot.capacity_booked + quantity <= Slot.capacity_total)
        .values(capacity_booked=Slot.capacity_booked + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise CapacityExceeded("Slot just became full", slot_id=slot_id, requested=quantity)


def _release_capacity(db: Session, slot_id: int, quantity: int) -> None:
    result = db.execute(
        update(Slot)
        .where(Slot.id == slot_id, Slot.capacity_booked >= quantity)
        .values(capacity_booked=Slot.capacity_booked - quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise TransientConflict("Slot capacity counter is out of sync", slot_id=slot_id)


def _check_capacity(
    db: Session, slot: Slot, quantity: int, now: datetime, exclude_lock_id: int | None
) -> None:
    locked = active_lock_totals(db, [slot.id], now, exclude_lock_id=exclude_lock_id).get(slot.id, 0)
    available = available_capacity(slot, locked)
    if quantity > available:
        raise CapacityExceeded(
            f"Not enough capacity available. Only {available} available, but {quantity} requested.",
            slot_id=slot.id,
            available=available,
            requested=quantity,
        )


def _check_lock(
    db: Session,
    tenant_id: int,
    slot: Slot,
    quantity: int,
    lock_id: int | None,
    session_id: str | None,
    now: datetime,
):
    if lock_id is None:
        return None
    lock = validate_lock(db, tenant_id, lock_id, session_id, slot_id=slot.id, now=now)
    if lock.reserved_capacity < quantity:
        raise LockMismatch(
            f"Lock holds {lock.reserved_capacity} places, but {quantity} requested",
            lock_id=lock_id,
        )
    return lock


def _check_employee(
    db: Session,
    tenant_id: int,
    service: Service,
    mode: str,
    slot: Slot,
    requested_employee_id: int | None,
    *,
    exclude_booking_id: int | None = None,
) -> tuple[int | None, bool]:
    """Return (employee_id, assigned_by_rotation) after the global busy check."""
    if mode == SCHEDULING_EMPLOYEE_BASED:
        if slot.employee_id is None:
            raise ValidationError("Slot is not tied to an employee", slot_id=slot.id)
        if requested_employee_id is not None and requested_employee_id != slot.employee_id:
            raise ValidationError(
                "Requested employee does not match the slot",
                slot_id=slot.id,
                employee_id=requested_employee_id,
            )
        validate_manual_selection(db, tenant_id, service.id, slot.employee_id, slot.slot_date)
        by_rotation = service.assignment_mode == ASSIGNMENT_AUTOMATIC or (
            service.assignment_mode == ASSIGNMENT_BOTH and requested_employee_id is None
        )
        employee_id = slot.employee_id
    else:
        employee_id = slot.employee_id
        if employee_id is None and requested_employee_id is not None:
            # The id feeds the tenant-wide busy check; only staff of this service.
            validate_manual_selection(
                db, tenant_id, service.id, requested_employee_id, slot.slot_date
            )
            employee_id = requested_employee_id
        by_rotation = False

    if employee_id is None:
        return None, False
    lock_employee(db, tenant_id, employee_id)
    conflict = find_conflicting_booking(
        db,
        tenant_id,
        employee_id,
        slot.starts_at,
        slot.ends_at,
        exclude_booking_id=exclude_booking_id,
        exclude_slot_id=slot.id,
    )
    if conflict is not None:
        raise EmployeeUnavailable(
            "Employee is already booked at this time",
            employee_id=employee_id,
            conflicting_booking_id=conflict.id,
        )
    return employee_id, by_rotation


def _place_booking(
    db: Session,
    *,
    tenant: Tenant,
    service: Service,
    mode: str,
    customer: Customer,
    slot_id: int,
    visitor_count: int,
    employee_id: int | None,
    lock_id: int | None,
    session_id: str | None,
    now: datetime,
    booking_group_id: str | None = None,
) -> Booking:
    slot = lock_slot(db, tenant.id, slot_id)
    if slot.service_id != service.id:
        raise NotFound("Slot does not belong to this service", slot_id=slot_id, service_id=service.id)
    lock = _check_lock(db, tenant.id, slot, visitor_count, lock_id, session_id, now)
    _check_capacity(db, slot, visitor_count, now, exclude_lock_id=lock.id if lock else None)
    assigned_employee_id, by_rotation = _check_employee(
        db, tenant.id, service, mode, slot, employee_id
    )

    _reserve_capacity(db, slot.id, visitor_count)
    if lock is not None:
        consume_lock(db, lock)
    if by_rotation:
        advance_rotation(db, service.id, assigned_employee_id)

    booking = Booking(
        tenant_id=tenant.id,
        service_id=service.id,
        slot_id=slot.id,
        employee_id=assigned_employee_id,
        customer_id=customer.id,
        visitor_count=visitor_count,
        status=BOOKING_CONFIRMED,
        payment_status="unpaid",
        total_price=0,
        package_covered_quantity=0,
        booking_group_id=booking_group_id,
        entry_token=_new_entry_token(),
        starts_at=slot.starts_at,
        ends_at=slot.ends_at,
        created_at=now,
        updated_at=now,
    )
    db.add(booking)
    # Visible to the overlap query of the next booking in this transaction.
    db.flush()
    return booking


def _list_price(service: Service, visitor_count: int) -> float:
    return float(service.price or 0) * visitor_count


def _standard_price(service: Service, visitor_count: int, total_price: float | None) -> float:
    if total_price is not None:
        if float(total_price) < 0:
            raise ValidationError("total_price must not be negative")
        return float(total_price)
    return _list_price(service, visitor_count)


def _apply_pricing(
    tenant: Tenant, booking: Booking, service: Service, price: float, covered: bool
) -> None:
    if covered:
        booking.total_price = 0
        booking.payment_status = "paid"
        booking.status = BOOKING_CONFIRMED
        return
    booking.total_price = price
    # A client-quoted price never settles payment; only a free service does.
    list_price = _list_price(service, int(booking.visitor_count))
    booking.payment_status = "paid" if list_price == 0 else "unpaid"
    if tenant.booking_status_policy == BOOKING_PENDING_PAYMENT and list_price > 0:
        booking.status = BOOKING_PENDING_PAYMENT
    else:
        booking.status = BOOKING_CONFIRMED


def _finish_created(db: Session, booking: Booking, actor: str | None) -> None:
    _add_status_event(
        db, booking, event="created", from_status=None, to_status=booking.status, actor=actor
    )
    enqueue_outbox_event(
        db,
        topic="booking.created",
        payload=_booking_payload(booking),
        tenant_id=booking.tenant_id,
        key=f"booking:{booking.id}",
    )


def commit_booking(
    db: Session,
    *,
    tenant_id: int,
    service_id: int,
    slot_id: int,
    visitor_count: int = 1,
    customer_id: int | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    employee_id: int | None = None,
    lock_id: int | None = None,
    session_id: str | None = None,
    total_price: float | None = None,
    use_package: bool = True,
    actor: str | None = None,
    now: datetime | None = None,
) -> Booking:
    count = _visitor_count(visitor_count)
    now = now or utc_now_naive()
    if lock_id is not None and not (session_id or "").strip():
        raise ValidationError("session_id is required when a lock is supplied")

    with atomic(db, "booking_commit"):
        tenant = _get_active_tenant(db, tenant_id)
        service = _get_active_service(db, tenant_id, service_id)
        mode = effective_scheduling_mode(tenant, service)
        price = _standard_price(service, count, total_price)
        customer = _resolve_customer(db, tenant_id, customer_id, customer_name, customer_phone)
        booking = _place_booking(
            db,
            tenant=tenant,
            service=service,
            mode=mode,
            customer=customer,
            slot_id=slot_id,
            visitor_count=count,
            employee_id=employee_id,
            lock_id=lock_id,
            session_id=session_id,
            now=now,
        )
        covered = False
        if use_package:
            consumption = consume_package_capacity(
                db,
                tenant_id=tenant_id,
                customer_id=customer.id,
                service_id=service.id,
                quantity=count,
                now=now,
            )
            if consumption.covered:
                record_allocations(db, consumption, [booking])
                covered = True
        _apply_pricing(tenant, booking, service, price, covered)
        db.flush()
        _finish_created(db, booking, actor)

    log.info(
        "booking_committed",
        tenant_id=tenant_id,
        booking_id=booking.id,
        slot_id=slot_id,
        employee_id=booking.employee_id,
        visitor_count=count,
        package_covered=covered,
    )
    return booking


def commit_bulk_booking(
    db: Session,
    *,
    tenant_id: int,
    service_id: int,
    items: list[BulkItem],
    customer_id: int | None = None,
    customer_name: str | None = None,
    customer_phone: str | None = None,
    session_id: str | None = None,
    use_package: bool = True,
    actor: str | None = None,
    now: datetime | None = None,
) -> list[Booking]:
    """Book several slots for one customer; all of them or none.

    Package coverage is decided over the total number of units.
    """
    if not items:
        raise ValidationError("At least one item is required")
    if len(items) > settings.BULK_BOOKING_MAX_ITEMS:
        raise ValidationError(f"At most {settings.BULK_BOOKING_MAX_ITEMS} items per bulk booking")
    counts = [_visitor_count(item.visitor_count) for item in items]
    if any(item.lock_id is not None for item in items) and not (session_id or "").strip():
        raise ValidationError("session_id is required when a lock is supplied")
    now = now or utc_now_naive()
    group_id = uuid.uuid4().hex

    with atomic(db, "bulk_booking_commit"):
        tenant = _get_active_tenant(db, tenant_id)
        service = _get_active_service(db, tenant_id, service_id)
        mode = effective_scheduling_mode(tenant, service)
        customer = _resolve_customer(db, tenant_id, customer_id, customer_name, customer_phone)

        bookings = []
        # Slot row locks are always taken in id order.
        for index in sorted(range(len(items)), key=lambda i: (items[i].slot_id, i)):
            item = items[index]
            bookings.append(
                _place_booking(
                    db,
                    tenant=tenant,
                    service=service,
                    mode=mode,
                    customer=customer,
                    slot_id=item.slot_id,
                    visitor_count=counts[index],
                    employee_id=item.employee_id,
                    lock_id=item.lock_id,
                    session_id=session_id,
                    now=now,
                    booking_group_id=group_id,
                )
            )

        covered = False
        if use_package:
            consumption = consume_package_capacity(
                db,
                tenant_id=tenant_id,
                customer_id=customer.id,
                service_id=service.id,
                quantity=sum(counts),
                now=now,
            )
            if consumption.covered:
                record_allocations(db, consumption, bookings)
                covered = True
        for booking in bookings:
            price = _list_price(service, booking.visitor_count)
            _apply_pricing(tenant, booking, service, price, covered)
        db.flush()
        for booking in bookings:
            _finish_created(db, booking, actor)

    log.info(
        "bulk_booking_committed",
        tenant_id=tenant_id,
        booking_group_id=group_id,
        bookings=len(bookings),
        units=sum(counts),
        package_covered=covered,
    )
    return bookings


def _lock_booking(db: Session, tenant_id: int, booking_id: int) -> Booking:
    booking = db.execute(
        select(Booking)
        .where(Booking.id == booking_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if booking is None or booking.tenant_id != tenant_id:
        raise NotFound("Booking not found", booking_id=booking_id)
    return booking


def reschedule_booking(
    db: Session,
    *,
    tenant_id: int,
    booking_id: int,
    new_slot_id: int,
    employee_id: int | None = None,
    lock_id: int | None = None,
    session_id: str | None = None,
    actor: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or utc_now_naive()
    if lock_id is not None and not (session_id or "").strip():
        raise ValidationError("session_id is required when a lock is supplied")

    with atomic(db, "booking_reschedule"):
        tenant = _get_active_tenant(db, tenant_id)
        booking = _lock_booking(db, tenant_id, booking_id)
        if booking.status == BOOKING_CANCELLED:
            raise ValidationError("Cancelled bookings cannot be rescheduled", booking_id=booking_id)
        if booking.slot_id == new_slot_id:
            return booking

        old_slot_id = booking.slot_id
        for slot_id in sorted({old_slot_id, new_slot_id}):
            if slot_id == new_slot_id:
                new_slot = lock_slot(db, tenant_id, slot_id)
            else:
                db.execute(
                    select(Slot.id).where(Slot.id == slot_id).with_for_update()
                )
        if new_slot.service_id != booking.service_id:
            raise ValidationError(
                "A booking can only be moved to a slot of the same service",
                booking_id=booking_id,
                slot_id=new_slot_id,
            )
        service = db.get(Service, booking.service_id)
        mode = effective_scheduling_mode(tenant, service)
        count = int(booking.visitor_count)

        lock = _check_lock(db, tenant_id, new_slot, count, lock_id, session_id, now)
        _check_capacity(db, new_slot, count, now, exclude_lock_id=lock.id if lock else None)
        new_employee_id, _ = _check_employee(
            db,
            tenant_id,
            service,
            mode,
            new_slot,
            employee_id,
            exclude_booking_id=booking.id,
        )

        _release_capacity(db, old_slot_id, count)
        _reserve_capacity(db, new_slot.id, count)
        if lock is not None:
            consume_lock(db, lock)

        previous_starts_at = booking.starts_at
        booking.slot_id = new_slot.id
        booking.employee_id = new_employee_id
        booking.starts_at = new_slot.starts_at
        booking.ends_at = new_slot.ends_at
        # The old entry credential named the old time; it must stop working.
        booking.entry_token = _new_entry_token()
        booking.entry_token_invalidated_at = now
        booking.updated_at = now
        _add_status_event(
            db,
            booking,
            event="rescheduled",
            from_status=booking.status,
            to_status=booking.status,
            actor=actor,
            note=f"slot {old_slot_id} -> {new_slot.id}",
        )
        payload = _booking_payload(booking)
        payload["previous_slot_id"] = old_slot_id
        payload["previous_starts_at"] = previous_starts_at.isoformat()
        enqueue_outbox_event(
            db,
            topic="booking.rescheduled",
            payload=payload,
            tenant_id=tenant_id,
            key=f"booking:{booking.id}",
        )

    log.info(
        "booking_rescheduled",
        tenant_id=tenant_id,
        booking_id=booking_id,
        old_slot_id=old_slot_id,
        new_slot_id=new_slot_id,
    )
    return booking


def cancel_booking(
    db: Session,
    *,
    tenant_id: int,
    booking_id: int,
    actor: str | None = None,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or utc_now_naive()
    with atomic(db, "booking_cancel"):
        booking = _lock_booking(db, tenant_id, booking_id)
        if booking.status == BOOKING_CANCELLED:
            return booking
        db.execute(select(Slot.id).where(Slot.id == booking.slot_id).with_for_update())
        _release_capacity(db, booking.slot_id, int(booking.visitor_count))
        restored = restore_package_capacity(db, booking, now)

        previous_status = booking.status
        booking.status = BOOKING_CANCELLED
        booking.cancelled_at = now
        booking.updated_at = now
        booking.entry_token = None
        booking.entry_token_invalidated_at = now
        _add_status_event(
            db,
            booking,
            event="cancelled",
            from_status=previous_status,
            to_status=BOOKING_CANCELLED,
            actor=actor,
            note=reason,
        )
        payload = _booking_payload(booking)
        payload["package_units_restored"] = restored
        enqueue_outbox_event(
            db,
            topic="booking.cancelled",
            payload=payload,
            tenant_id=tenant_id,
            key=f"booking:{booking.id}",
        )

    log.info("booking_cancelled", tenant_id=tenant_id, booking_id=booking_id, restored=restored)
    return booking


def get_booking(db: Session, tenant_id: int, booking_id: int) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None or booking.tenant_id != tenant_id:
        raise NotFound("Booking not found", booking_id=booking_id)
    return booking


def get_booking_by_entry_token(db: Session, tenant_id: int, entry_token: str) -> Booking:
    token = (entry_token or "").strip()
    booking = None
    if token:
        booking = db.execute(
            select(Booking).where(Booking.tenant_id == tenant_id, Booking.entry_token == token)
        ).scalar_one_or_none()
    if booking is None:
        raise NotFound("Entry token is not valid")
    return booking


def list_booking_events(db: Session, tenant_id: int, booking_id: int) -> list[BookingStatusEvent]:
    get_booking(db, tenant_id, booking_id)
    return list(
        db.execute(
            select(BookingStatusEvent)
            .where(
                BookingStatusEvent.tenant_id == tenant_id,
                BookingStatusEvent.booking_id == booking_id,
            )
            .order_by(BookingStatusEvent.created_at.asc(), BookingStatusEvent.id.asc())
        ).scalars()
    )
