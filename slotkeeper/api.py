from dataclasses import asdict
from datetime import date, time
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .core.availability import SlotAvailability, resolve_availability, suggest_assignment
from .core.booking_engine import (
    BulkItem,
    cancel_booking,
    commit_booking,
    commit_bulk_booking,
    get_booking,
    get_booking_by_entry_token,
    list_booking_events,
    reschedule_booking,
)
from .core.locks import acquire_lock, list_active_locks, release_lock, validate_lock
from .core.package_ledger import resolve_customer_service_capacity
from .core.slot_catalog import generate_shift_slots
from .db import get_db
from .errors import BookingError
from .models import Booking, BookingStatusEvent, ReservationLock, Tenant, utc_now_naive
from .platform import get_outbox_health
from .schemas import (
    AvailabilityOut,
    BookingCancel,
    BookingCreate,
    BookingEventOut,
    BookingOut,
    BookingReschedule,
    BulkBookingCreate,
    BulkBookingOut,
    LockCreate,
    LockOut,
    PackageCapacityOut,
    SlotAvailabilityOut,
    SlotGenerationCreate,
    SlotGenerationOut,
    SubscriptionBalanceOut,
)

router = APIRouter(prefix="/api")


def _http_error(exc: BookingError) -> HTTPException:
    return HTTPException(status_code=exc.http_status, detail=exc.to_dict())


def _to_slot_out(row: SlotAvailability) -> SlotAvailabilityOut:
    return SlotAvailabilityOut(**asdict(row))


def _to_lock_out(lock: ReservationLock) -> LockOut:
    remaining = int((lock.expires_at - utc_now_naive()).total_seconds())
    return LockOut(
        id=lock.id,
        slot_id=lock.slot_id,
        session_id=lock.session_id,
        reserved_capacity=lock.reserved_capacity,
        expires_at=lock.expires_at,
        seconds_remaining=max(0, remaining),
    )


def _to_booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        service_id=b.service_id,
        slot_id=b.slot_id,
        employee_id=b.employee_id,
        customer_id=b.customer_id,
        visitor_count=b.visitor_count,
        status=b.status,
        payment_status=b.payment_status,
        total_price=float(b.total_price or 0),
        package_subscription_id=b.package_subscription_id,
        package_covered_quantity=b.package_covered_quantity or 0,
        booking_group_id=b.booking_group_id,
        entry_token=b.entry_token,
        starts_at=b.starts_at,
        ends_at=b.ends_at,
        created_at=b.created_at,
        cancelled_at=b.cancelled_at,
    )


def _to_event_out(e: BookingStatusEvent) -> BookingEventOut:
    return BookingEventOut(
        id=e.id,
        booking_id=e.booking_id,
        event=e.event,
        from_status=e.from_status,
        to_status=e.to_status,
        actor=e.actor,
        note=e.note,
        created_at=e.created_at,
    )


def get_current_tenant(
    db: Session = Depends(get_db),
    x_tenant_slug: Optional[str] = Header(default=None),
) -> Tenant:
    slug = (x_tenant_slug or settings.DEFAULT_TENANT_SLUG).strip().lower()
    if not slug:
        raise HTTPException(
            status_code=400,
            detail={"code": "validation_error", "message": "X-Tenant-Slug header is required"},
        )
    tenant = db.execute(select(Tenant).where(Tenant.slug == slug)).scalar_one_or_none()
    if tenant is None or not tenant.is_active:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Tenant not found or inactive"},
        )
    return tenant


@router.get("/services/{service_id}/availability", response_model=AvailabilityOut)
def get_availability(
    service_id: int,
    day: date = Query(...),
    session_id: Optional[str] = Query(default=None, max_length=128),
    include_locked: bool = Query(default=False),
    include_past: bool = Query(default=False),
    include_full: bool = Query(default=False),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        result = resolve_availability(
            db,
            tenant,
            service_id,
            day,
            session_id=session_id,
            include_locked=include_locked,
            include_past=include_past,
            include_full=include_full,
        )
    except BookingError as exc:
        raise _http_error(exc)
    return AvailabilityOut(
        service_id=result.service_id,
        day=result.day,
        scheduling_mode=result.scheduling_mode,
        assignment_mode=result.assignment_mode,
        reason=result.reason,
        slots=[_to_slot_out(row) for row in result.slots],
    )


@router.get("/services/{service_id}/assignment", response_model=SlotAvailabilityOut)
def get_assignment(
    service_id: int,
    day: date = Query(...),
    start_time: time = Query(...),
    session_id: Optional[str] = Query(default=None, max_length=128),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        row = suggest_assignment(db, tenant, service_id, day, start_time, session_id=session_id)
    except BookingError as exc:
        raise _http_error(exc)
    return _to_slot_out(row)


@router.post("/shifts/{shift_id}/generate-slots", response_model=SlotGenerationOut)
def post_generate_slots(
    shift_id: int,
    payload: SlotGenerationCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        result = generate_shift_slots(db, tenant.id, shift_id, payload.start_date, payload.end_date)
    except BookingError as exc:
        raise _http_error(exc)
    return SlotGenerationOut(**result)


@router.post("/locks", response_model=LockOut, status_code=status.HTTP_201_CREATED)
def post_lock(
    payload: LockCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        lock = acquire_lock(
            db, tenant.id, payload.slot_id, payload.requested_capacity, payload.session_id
        )
    except BookingError as exc:
        raise _http_error(exc)
    return _to_lock_out(lock)


@router.get("/locks", response_model=List[LockOut])
def get_locks(
    slot_ids: List[int] = Query(default=[]),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    locks = list_active_locks(db, tenant.id, slot_ids or None)
    return [_to_lock_out(lock) for lock in locks]


@router.get("/locks/{lock_id}", response_model=LockOut)
def get_lock(
    lock_id: int,
    session_id: str = Query(..., min_length=1, max_length=128),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        lock = validate_lock(db, tenant.id, lock_id, session_id)
    except BookingError as exc:
        raise _http_error(exc)
    return _to_lock_out(lock)


@router.delete("/locks/{lock_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lock(
    lock_id: int,
    session_id: str = Query(..., min_length=1, max_length=128),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        release_lock(db, tenant.id, lock_id, session_id)
    except BookingError as exc:
        raise _http_error(exc)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
def post_booking(
    payload: BookingCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        booking = commit_booking(
            db,
            tenant_id=tenant.id,
            service_id=payload.service_id,
            slot_id=payload.slot_id,
            visitor_count=payload.visitor_count,
            customer_id=payload.customer_id,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            employee_id=payload.employee_id,
            lock_id=payload.lock_id,
            session_id=payload.session_id,
            total_price=payload.total_price,
            use_package=payload.use_package,
            actor=payload.actor,
        )
    except BookingError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@router.post("/bookings/bulk", response_model=BulkBookingOut, status_code=status.HTTP_201_CREATED)
def post_bulk_booking(
    payload: BulkBookingCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        bookings = commit_bulk_booking(
            db,
            tenant_id=tenant.id,
            service_id=payload.service_id,
            items=[
                BulkItem(
                    slot_id=item.slot_id,
                    visitor_count=item.visitor_count,
                    lock_id=item.lock_id,
                    employee_id=item.employee_id,
                )
                for item in payload.items
            ],
            customer_id=payload.customer_id,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            session_id=payload.session_id,
            use_package=payload.use_package,
            actor=payload.actor,
        )
    except BookingError as exc:
        raise _http_error(exc)
    return BulkBookingOut(
        booking_group_id=bookings[0].booking_group_id,
        bookings=[_to_booking_out(b) for b in bookings],
    )


@router.get("/bookings/{booking_id}", response_model=BookingOut)
def read_booking(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        booking = get_booking(db, tenant.id, booking_id)
    except BookingError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@router.get("/entry/{entry_token}", response_model=BookingOut)
def read_booking_by_entry_token(
    entry_token: str,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        booking = get_booking_by_entry_token(db, tenant.id, entry_token)
    except BookingError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@router.get("/bookings/{booking_id}/events", response_model=List[BookingEventOut])
def read_booking_events(
    booking_id: int,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        events = list_booking_events(db, tenant.id, booking_id)
    except BookingError as exc:
        raise _http_error(exc)
    return [_to_event_out(e) for e in events]


@router.post("/bookings/{booking_id}/reschedule", response_model=BookingOut)
def post_reschedule(
    booking_id: int,
    payload: BookingReschedule,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        booking = reschedule_booking(
            db,
            tenant_id=tenant.id,
            booking_id=booking_id,
            new_slot_id=payload.new_slot_id,
            employee_id=payload.employee_id,
            lock_id=payload.lock_id,
            session_id=payload.session_id,
            actor=payload.actor,
        )
    except BookingError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
def post_cancel(
    booking_id: int,
    payload: BookingCancel,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    try:
        booking = cancel_booking(
            db,
            tenant_id=tenant.id,
            booking_id=booking_id,
            actor=payload.actor,
            reason=payload.reason,
        )
    except BookingError as exc:
        raise _http_error(exc)
    return _to_booking_out(booking)


@router.get("/customers/{customer_id}/package-capacity", response_model=PackageCapacityOut)
def get_package_capacity(
    customer_id: int,
    service_id: int = Query(...),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    resolution = resolve_customer_service_capacity(db, tenant.id, customer_id, service_id)
    return PackageCapacityOut(
        customer_id=resolution.customer_id,
        service_id=resolution.service_id,
        total_remaining=resolution.total_remaining,
        subscriptions=[
            SubscriptionBalanceOut(
                subscription_id=s.subscription_id,
                remaining=s.remaining,
                expires_at=s.expires_at,
            )
            for s in resolution.subscriptions
        ],
    )


@router.get("/outbox/health")
def outbox_health(
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_current_tenant),
):
    return get_outbox_health(db, tenant_id=tenant.id)
