"""Pre-paid package capacity.

Coverage is all-or-nothing: a booking is either fully paid from packages or
fully standard-priced. Balances are only ever decremented inside the booking
transaction, with a guarded UPDATE so a balance can never go negative.
"""
from dataclasses import dataclass, field
from datetime import datetime

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import TransientConflict, ValidationError
from ..models import (
    Booking,
    BookingPackageAllocation,
    PackageExhaustionNotice,
    PackageSubscription,
    PackageSubscriptionUsage,
    utc_now_naive,
)
from ..platform import enqueue_outbox_event

log = structlog.get_logger("slotkeeper.package_ledger")


@dataclass
class SubscriptionBalance:
    subscription_id: int
    usage_id: int
    remaining: int
    purchased_at: datetime
    expires_at: datetime | None = None


@dataclass
class CapacityResolution:
    customer_id: int
    service_id: int
    total_remaining: int
    subscriptions: list[SubscriptionBalance] = field(default_factory=list)


@dataclass
class Allocation:
    subscription_id: int
    usage_id: int
    quantity: int


@dataclass
class PackageConsumption:
    covered: bool
    requested: int
    remaining_after: int
    allocations: list[Allocation] = field(default_factory=list)
    exhausted_subscription_ids: list[int] = field(default_factory=list)

    @property
    def primary_subscription_id(self) -> int | None:
        return self.allocations[0].subscription_id if self.allocations else None


def _priority(balance: SubscriptionBalance):
    # Soonest-expiring first, open-ended last, then oldest purchase.
    return (
        balance.expires_at is None,
        balance.expires_at or datetime.max,
        balance.purchased_at,
        balance.subscription_id,
    )


def _load_balances(
    db: Session,
    tenant_id: int,
    customer_id: int,
    service_id: int,
    now: datetime,
    *,
    for_update: bool = False,
) -> list[SubscriptionBalance]:
    q = (
        select(PackageSubscriptionUsage, PackageSubscription)
        .join(PackageSubscription, PackageSubscription.id == PackageSubscriptionUsage.subscription_id)
        .where(
            PackageSubscription.tenant_id == tenant_id,
            PackageSubscription.customer_id == customer_id,
            PackageSubscription.status == "active",
            PackageSubscription.is_active.is_(True),
            or_(PackageSubscription.expires_at.is_(None), PackageSubscription.expires_at > now),
            PackageSubscriptionUsage.service_id == service_id,
            PackageSubscriptionUsage.remaining_quantity > 0,
        )
    )
    if for_update:
        q = q.with_for_update(of=PackageSubscriptionUsage).execution_options(populate_existing=True)
    balances = [
        SubscriptionBalance(
            subscription_id=subscription.id,
            usage_id=usage.id,
            remaining=int(usage.remaining_quantity),
            purchased_at=subscription.purchased_at,
            expires_at=subscription.expires_at,
        )
        for usage, subscription in db.execute(q).all()
    ]
    return sorted(balances, key=_priority)


def _holds_subscription(
    db: Session, tenant_id: int, customer_id: int, service_id: int, now: datetime
) -> bool:
    """Any live subscription for the service, used up or not."""
    return db.execute(
        select(PackageSubscriptionUsage.id)
        .join(PackageSubscription, PackageSubscription.id == PackageSubscriptionUsage.subscription_id)
        .where(
            PackageSubscription.tenant_id == tenant_id,
            PackageSubscription.customer_id == customer_id,
            PackageSubscription.status == "active",
            PackageSubscription.is_active.is_(True),
            or_(PackageSubscription.expires_at.is_(None), PackageSubscription.expires_at > now),
            PackageSubscriptionUsage.service_id == service_id,
        )
        .limit(1)
    ).first() is not None


def resolve_customer_service_capacity(
    db: Session,
    tenant_id: int,
    customer_id: int,
    service_id: int,
    now: datetime | None = None,
) -> CapacityResolution:
    balances = _load_balances(db, tenant_id, customer_id, service_id, now or utc_now_naive())
    return CapacityResolution(
        customer_id=customer_id,
        service_id=service_id,
        total_remaining=sum(b.remaining for b in balances),
        subscriptions=balances,
    )


def _record_exhaustion(
    db: Session, *, tenant_id: int, customer_id: int, subscription_id: int, service_id: int
) -> None:
    try:
        with db.begin_nested():
            db.add(
                PackageExhaustionNotice(
                    tenant_id=tenant_id,
                    subscription_id=subscription_id,
                    service_id=service_id,
                    customer_id=customer_id,
                )
            )
    except IntegrityError:
        # Already notified once for this subscription and service.
        return
    enqueue_outbox_event(
        db,
        topic="package.capacity_exhausted",
        payload={
            "customer_id": customer_id,
            "subscription_id": subscription_id,
            "service_id": service_id,
        },
        tenant_id=tenant_id,
        key=f"subscription:{subscription_id}",
    )


def consume_package_capacity(
    db: Session,
    *,
    tenant_id: int,
    customer_id: int,
    service_id: int,
    quantity: int,
    now: datetime | None = None,
) -> PackageConsumption:
    """Decrement package balances inside the caller's transaction.

    Returns ``covered=False`` without touching any balance when the total
    remaining capacity is smaller than ``quantity``.
    """
    quantity = int(quantity)
    if quantity < 1:
        raise ValidationError("quantity must be at least 1")
    now = now or utc_now_naive()
    balances = _load_balances(db, tenant_id, customer_id, service_id, now, for_update=True)
    total = sum(b.remaining for b in balances)

    if quantity > total:
        if balances or _holds_subscription(db, tenant_id, customer_id, service_id, now):
            enqueue_outbox_event(
                db,
                topic="package.capacity_insufficient",
                payload={
                    "customer_id": customer_id,
                    "service_id": service_id,
                    "requested": quantity,
                    "remaining": total,
                },
                tenant_id=tenant_id,
                key=f"customer:{customer_id}",
            )
        log.info(
            "package_capacity_insufficient",
            customer_id=customer_id,
            service_id=service_id,
            requested=quantity,
            remaining=total,
        )
        return PackageConsumption(covered=False, requested=quantity, remaining_after=total)

    consumption = PackageConsumption(
        covered=True, requested=quantity, remaining_after=total - quantity
    )
    needed = quantity
    for balance in balances:
        if needed == 0:
            break
        take = min(needed, balance.remaining)
        result = db.execute(
            update(PackageSubscriptionUsage)
            .where(
                PackageSubscriptionUsage.id == balance.usage_id,
                PackageSubscriptionUsage.remaining_quantity >= take,
            )
            .values(
                remaining_quantity=PackageSubscriptionUsage.remaining_quantity - take,
                used_quantity=PackageSubscriptionUsage.used_quantity + take,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransientConflict(
                "Package balance changed during booking", subscription_id=balance.subscription_id
            )
        consumption.allocations.append(
            Allocation(subscription_id=balance.subscription_id, usage_id=balance.usage_id, quantity=take)
        )
        if balance.remaining == take:
            consumption.exhausted_subscription_ids.append(balance.subscription_id)
            _record_exhaustion(
                db,
                tenant_id=tenant_id,
                customer_id=customer_id,
                subscription_id=balance.subscription_id,
                service_id=service_id,
            )
        needed -= take

    log.info(
        "package_capacity_consumed",
        customer_id=customer_id,
        service_id=service_id,
        quantity=quantity,
        remaining_after=consumption.remaining_after,
    )
    return consumption


def record_allocations(db: Session, consumption: PackageConsumption, bookings: list[Booking]) -> None:
    """Split the consumed units over the bookings they paid for, in order."""
    pool = [[a.subscription_id, a.usage_id, a.quantity] for a in consumption.allocations]
    for booking in bookings:
        needed = int(booking.visitor_count)
        first_subscription_id = None
        while needed > 0 and pool:
            subscription_id, usage_id, left = pool[0]
            take = min(needed, left)
            db.add(
                BookingPackageAllocation(
                    booking_id=booking.id,
                    usage_id=usage_id,
                    subscription_id=subscription_id,
                    quantity=take,
                )
            )
            if first_subscription_id is None:
                first_subscription_id = subscription_id
            needed -= take
            pool[0][2] -= take
            if pool[0][2] == 0:
                pool.pop(0)
        booking.package_subscription_id = first_subscription_id
        booking.package_covered_quantity = int(booking.visitor_count)
    db.flush()


def restore_package_capacity(db: Session, booking: Booking, now: datetime | None = None) -> int:
    now = now or utc_now_naive()
    allocations = db.execute(
        select(BookingPackageAllocation).where(
            BookingPackageAllocation.booking_id == booking.id,
            BookingPackageAllocation.restored_at.is_(None),
        )
    ).scalars().all()
    restored = 0
    for allocation in allocations:
        result = db.execute(
            update(PackageSubscriptionUsage)
            .where(
                PackageSubscriptionUsage.id == allocation.usage_id,
                PackageSubscriptionUsage.used_quantity >= allocation.quantity,
            )
            .values(
                remaining_quantity=PackageSubscriptionUsage.remaining_quantity + allocation.quantity,
                used_quantity=PackageSubscriptionUsage.used_quantity - allocation.quantity,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransientConflict("Package usage is out of sync", usage_id=allocation.usage_id)
        allocation.restored_at = now
        restored += allocation.quantity
    if restored:
        log.info("package_capacity_restored", booking_id=booking.id, quantity=restored)
    return restored
