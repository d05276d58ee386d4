from datetime import date, datetime, time, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

SCHEDULING_SERVICE_BASED = "service_based"
SCHEDULING_EMPLOYEE_BASED = "employee_based"
SCHEDULING_TYPES = {SCHEDULING_SERVICE_BASED, SCHEDULING_EMPLOYEE_BASED}

ASSIGNMENT_MANUAL = "manual"
ASSIGNMENT_AUTOMATIC = "automatic"
ASSIGNMENT_BOTH = "both"

BOOKING_CONFIRMED = "confirmed"
BOOKING_PENDING_PAYMENT = "pending_payment"
BOOKING_CANCELLED = "cancelled"
# Bookings in these states occupy the employee's time.
ACTIVE_BOOKING_STATUSES = (BOOKING_CONFIRMED, BOOKING_PENDING_PAYMENT)


def utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(80), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Tenant-wide override of every service's scheduling_type.
    scheduling_mode: Mapped[str | None] = mapped_column(String(32), nullable=True)
    booking_status_policy: Mapped[str] = mapped_column(String(32), default=BOOKING_CONFIRMED)
    # IANA zone name; slot dates and times are wall-clock values in it.
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Service(Base):
    __tablename__ = "services"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_services_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    scheduling_type: Mapped[str] = mapped_column(String(32), default=SCHEDULING_SERVICE_BASED)
    assignment_mode: Mapped[str] = mapped_column(String(32), default=ASSIGNMENT_MANUAL)
    duration_min: Mapped[int] = mapped_column(Integer, default=60)
    capacity_per_slot: Mapped[int] = mapped_column(Integer, default=1)
    price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Shift(Base):
    __tablename__ = "shifts"
    __table_args__ = (CheckConstraint("end_time > start_time", name="ck_shifts_time_order"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), index=True)
    days_of_week: Mapped[list] = mapped_column(JSON, default=list)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (UniqueConstraint("tenant_id", "name", name="uq_employees_tenant_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Inclusive: no bookings on or before this date.
    paused_until: Mapped[date | None] = mapped_column(Date, nullable=True)


class EmployeeShift(Base):
    __tablename__ = "employee_shifts"
    __table_args__ = (CheckConstraint("end_time > start_time", name="ck_employee_shifts_time_order"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), index=True)
    days_of_week: Mapped[list] = mapped_column(JSON, default=list)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class EmployeeService(Base):
    __tablename__ = "employee_services"
    __table_args__ = (
        UniqueConstraint("employee_id", "service_id", name="uq_employee_services_pair"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    employee_id: Mapped[int] = mapped_column(ForeignKey("employees.id"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), index=True)
    duration_min: Mapped[int | None] = mapped_column(Integer, nullable=True)
    capacity_per_slot: Mapped[int | None] = mapped_column(Integer, nullable=True)

    employee = relationship("Employee")


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        CheckConstraint(
            "capacity_booked >= 0 AND capacity_booked <= capacity_total",
            name="ck_slots_capacity_bounds",
        ),
        UniqueConstraint("shift_id", "slot_date", "start_time", name="uq_slots_shift_date_start"),
        UniqueConstraint(
            "employee_id", "service_id", "slot_date", "start_time",
            name="uq_slots_employee_service_date_start",
        ),
        Index("ix_slots_service_date", "tenant_id", "service_id", "slot_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"))
    shift_id: Mapped[int | None] = mapped_column(ForeignKey("shifts.id"), nullable=True)
    employee_shift_id: Mapped[int | None] = mapped_column(
        ForeignKey("employee_shifts.id"), nullable=True
    )
    employee_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id"), nullable=True, index=True)
    slot_date: Mapped[date] = mapped_column(Date)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    capacity_total: Mapped[int] = mapped_column(Integer)
    capacity_booked: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.start_time)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.slot_date, self.end_time)


class ReservationLock(Base):
    __tablename__ = "reservation_locks"
    __table_args__ = (Index("ix_reservation_locks_slot_expiry", "slot_id", "expires_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    slot_id: Mapped[int] = mapped_column(ForeignKey("slots.id", ondelete="CASCADE"))
    session_id: Mapped[str] = mapped_column(String(128), index=True)
    reserved_capacity: Mapped[int] = mapped_column(Integer)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Customer(Base):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        Index("ix_bookings_employee_window", "tenant_id", "employee_id", "starts_at", "ends_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"))
    slot_id: Mapped[int] = mapped_column(ForeignKey("slots.id"), index=True)
    employee_id: Mapped[int | None] = mapped_column(ForeignKey("employees.id"), nullable=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), index=True)
    visitor_count: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(32), default=BOOKING_CONFIRMED, index=True)
    payment_status: Mapped[str] = mapped_column(String(32), default="unpaid")
    total_price: Mapped[float] = mapped_column(Numeric(10, 2), default=0)
    package_subscription_id: Mapped[int | None] = mapped_column(
        ForeignKey("package_subscriptions.id"), nullable=True
    )
    package_covered_quantity: Mapped[int] = mapped_column(Integer, default=0)
    booking_group_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    entry_token: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    entry_token_invalidated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    starts_at: Mapped[datetime] = mapped_column(DateTime)
    ends_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    customer = relationship("Customer")
    service = relationship("Service")
    employee = relationship("Employee")


class BookingStatusEvent(Base):
    __tablename__ = "booking_status_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    event: Mapped[str] = mapped_column(String(32))
    from_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_status: Mapped[str] = mapped_column(String(32))
    actor: Mapped[str | None] = mapped_column(String(120), nullable=True)
    note: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)


class ServicePackage(Base):
    __tablename__ = "service_packages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    name: Mapped[str] = mapped_column(String(120))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class PackageService(Base):
    __tablename__ = "package_services"
    __table_args__ = (UniqueConstraint("package_id", "service_id", name="uq_package_services_pair"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("service_packages.id"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), index=True)
    quantity: Mapped[int] = mapped_column(Integer)


class PackageSubscription(Base):
    __tablename__ = "package_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"), index=True)
    package_id: Mapped[int] = mapped_column(ForeignKey("service_packages.id"))
    status: Mapped[str] = mapped_column(String(32), default="active")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    purchased_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class PackageSubscriptionUsage(Base):
    __tablename__ = "package_subscription_usage"
    __table_args__ = (
        UniqueConstraint("subscription_id", "service_id", name="uq_package_usage_subscription_service"),
        CheckConstraint("remaining_quantity >= 0", name="ck_package_usage_remaining"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("package_subscriptions.id"), index=True)
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), index=True)
    original_quantity: Mapped[int] = mapped_column(Integer)
    used_quantity: Mapped[int] = mapped_column(Integer, default=0)
    remaining_quantity: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class BookingPackageAllocation(Base):
    __tablename__ = "booking_package_allocations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    booking_id: Mapped[int] = mapped_column(ForeignKey("bookings.id"), index=True)
    usage_id: Mapped[int] = mapped_column(ForeignKey("package_subscription_usage.id"))
    subscription_id: Mapped[int] = mapped_column(ForeignKey("package_subscriptions.id"))
    quantity: Mapped[int] = mapped_column(Integer)
    restored_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class PackageExhaustionNotice(Base):
    __tablename__ = "package_exhaustion_notices"
    __table_args__ = (
        UniqueConstraint("subscription_id", "service_id", name="uq_package_exhaustion_subscription_service"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int] = mapped_column(ForeignKey("tenants.id"), index=True)
    subscription_id: Mapped[int] = mapped_column(ForeignKey("package_subscriptions.id"))
    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"))
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class ServiceRotationState(Base):
    __tablename__ = "service_rotation_state"

    service_id: Mapped[int] = mapped_column(ForeignKey("services.id"), primary_key=True)
    last_assigned_employee_id: Mapped[int | None] = mapped_column(
        ForeignKey("employees.id"), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_id: Mapped[int | None] = mapped_column(ForeignKey("tenants.id"), nullable=True, index=True)
    topic: Mapped[str] = mapped_column(String(120), index=True)
    key: Mapped[str | None] = mapped_column(String(120), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    status: Mapped[str] = mapped_column(String(32), default="pending", index=True)
    retries: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now_naive)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
