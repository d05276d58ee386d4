from datetime import date, datetime, time

from pydantic import BaseModel, Field, field_validator


class SlotAvailabilityOut(BaseModel):
    slot_id: int
    service_id: int
    employee_id: int | None = None
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


class AvailabilityOut(BaseModel):
    service_id: int
    day: date
    scheduling_mode: str
    assignment_mode: str
    reason: str | None = None
    slots: list[SlotAvailabilityOut]


class SlotGenerationCreate(BaseModel):
    start_date: date
    end_date: date

    @field_validator("end_date")
    @classmethod
    def validate_end_date(cls, value: date, info) -> date:
        start = info.data.get("start_date")
        if start is not None and value < start:
            raise ValueError("end_date must not be before start_date")
        return value


class SlotGenerationOut(BaseModel):
    shift_id: int
    days: int
    created: int


class LockCreate(BaseModel):
    slot_id: int
    session_id: str = Field(min_length=1, max_length=128)
    requested_capacity: int = Field(default=1, ge=1)


class LockOut(BaseModel):
    id: int
    slot_id: int
    session_id: str
    reserved_capacity: int
    expires_at: datetime
    seconds_remaining: int


class BookingCreate(BaseModel):
    service_id: int
    slot_id: int
    visitor_count: int = Field(default=1, ge=1, le=500)
    customer_id: int | None = None
    customer_name: str | None = Field(default=None, min_length=2, max_length=120)
    customer_phone: str | None = Field(default=None, min_length=7, max_length=40)
    employee_id: int | None = None
    lock_id: int | None = None
    session_id: str | None = Field(default=None, max_length=128)
    total_price: float | None = Field(default=None, ge=0)
    use_package: bool = True
    actor: str | None = Field(default=None, max_length=120)


class BulkBookingItemIn(BaseModel):
    slot_id: int
    visitor_count: int = Field(default=1, ge=1, le=500)
    lock_id: int | None = None
    employee_id: int | None = None


class BulkBookingCreate(BaseModel):
    service_id: int
    items: list[BulkBookingItemIn] = Field(min_length=1)
    customer_id: int | None = None
    customer_name: str | None = Field(default=None, min_length=2, max_length=120)
    customer_phone: str | None = Field(default=None, min_length=7, max_length=40)
    session_id: str | None = Field(default=None, max_length=128)
    use_package: bool = True
    actor: str | None = Field(default=None, max_length=120)


class BookingReschedule(BaseModel):
    new_slot_id: int
    employee_id: int | None = None
    lock_id: int | None = None
    session_id: str | None = Field(default=None, max_length=128)
    actor: str | None = Field(default=None, max_length=120)


class BookingCancel(BaseModel):
    actor: str | None = Field(default=None, max_length=120)
    reason: str | None = Field(default=None, max_length=500)


class BookingOut(BaseModel):
    id: int
    service_id: int
    slot_id: int
    employee_id: int | None = None
    customer_id: int
    visitor_count: int
    status: str
    payment_status: str
    total_price: float
    package_subscription_id: int | None = None
    package_covered_quantity: int = 0
    booking_group_id: str | None = None
    entry_token: str | None = None
    starts_at: datetime
    ends_at: datetime
    created_at: datetime
    cancelled_at: datetime | None = None


class BulkBookingOut(BaseModel):
    booking_group_id: str
    bookings: list[BookingOut]


class BookingEventOut(BaseModel):
    id: int
    booking_id: int
    event: str
    from_status: str | None = None
    to_status: str
    actor: str | None = None
    note: str | None = None
    created_at: datetime


class SubscriptionBalanceOut(BaseModel):
    subscription_id: int
    remaining: int
    expires_at: datetime | None = None


class PackageCapacityOut(BaseModel):
    customer_id: int
    service_id: int
    total_remaining: int
    subscriptions: list[SubscriptionBalanceOut]
