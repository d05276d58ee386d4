import os
import tempfile
from datetime import date, datetime, time
from pathlib import Path

# Settings are read at import time; keep the app database out of the repo.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite:///{Path(tempfile.mkdtemp(prefix='slotkeeper-tests-')) / 'app.db'}",
)
os.environ.setdefault("EVENT_BUS_ENABLED", "0")
os.environ.setdefault("LOG_JSON", "0")

import pytest  # noqa: E402
from sqlalchemy import select  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from slotkeeper import models  # noqa: E402
from slotkeeper.core.slot_catalog import ensure_slots  # noqa: E402
from slotkeeper.db import Base, build_engine  # noqa: E402

# Monday; every test runs "the day before" so no slot is in the past.
DAY = date(2030, 1, 7)
NOW = datetime(2030, 1, 6, 12, 0)


class Seed:
    """Inserts fixture rows through short-lived sessions and returns ids."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def _insert(self, obj) -> int:
        with self.session_factory() as db:
            db.add(obj)
            db.commit()
            return obj.id

    def tenant(self, slug: str = "acme", **kwargs) -> int:
        return self._insert(models.Tenant(slug=slug, name=slug.title(), **kwargs))

    def service(self, tenant_id: int, name: str = "Tour", **kwargs) -> int:
        values = {"duration_min": 60, "capacity_per_slot": 1, "price": 50}
        values.update(kwargs)
        return self._insert(models.Service(tenant_id=tenant_id, name=name, **values))

    def shift(self, tenant_id: int, service_id: int, start=time(9, 0), end=time(12, 0), days=None) -> int:
        return self._insert(
            models.Shift(
                tenant_id=tenant_id,
                service_id=service_id,
                days_of_week=list(range(7)) if days is None else list(days),
                start_time=start,
                end_time=end,
            )
        )

    def employee(self, tenant_id: int, name: str, **kwargs) -> int:
        return self._insert(models.Employee(tenant_id=tenant_id, name=name, **kwargs))

    def employee_shift(self, tenant_id: int, employee_id: int, start=time(9, 0), end=time(12, 0), days=None) -> int:
        return self._insert(
            models.EmployeeShift(
                tenant_id=tenant_id,
                employee_id=employee_id,
                days_of_week=list(range(7)) if days is None else list(days),
                start_time=start,
                end_time=end,
            )
        )

    def assign(self, tenant_id: int, employee_id: int, service_id: int, **kwargs) -> int:
        return self._insert(
            models.EmployeeService(
                tenant_id=tenant_id, employee_id=employee_id, service_id=service_id, **kwargs
            )
        )

    def customer(self, tenant_id: int, name: str = "Ada Lovelace", phone: str | None = None) -> int:
        return self._insert(models.Customer(tenant_id=tenant_id, name=name, phone=phone))

    def subscription(
        self,
        tenant_id: int,
        customer_id: int,
        service_id: int,
        quantity: int,
        *,
        expires_at: datetime | None = None,
        purchased_at: datetime | None = None,
        status: str = "active",
    ) -> int:
        with self.session_factory() as db:
            package = models.ServicePackage(tenant_id=tenant_id, name=f"{quantity}-pack")
            db.add(package)
            db.flush()
            db.add(models.PackageService(package_id=package.id, service_id=service_id, quantity=quantity))
            subscription = models.PackageSubscription(
                tenant_id=tenant_id,
                customer_id=customer_id,
                package_id=package.id,
                status=status,
                expires_at=expires_at,
                purchased_at=purchased_at or datetime(2029, 12, 1),
            )
            db.add(subscription)
            db.flush()
            db.add(
                models.PackageSubscriptionUsage(
                    subscription_id=subscription.id,
                    service_id=service_id,
                    original_quantity=quantity,
                    used_quantity=0,
                    remaining_quantity=quantity,
                )
            )
            db.commit()
            return subscription.id

    def ensure_slots(self, tenant_id: int, service_id: int, day: date = DAY) -> list[int]:
        with self.session_factory() as db:
            tenant = db.get(models.Tenant, tenant_id)
            service = db.get(models.Service, service_id)
            ensure_slots(db, tenant, service, day)
            db.commit()
            return list(
                db.execute(
                    select(models.Slot.id)
                    .where(models.Slot.service_id == service_id, models.Slot.slot_date == day)
                    .order_by(models.Slot.start_time, models.Slot.employee_id)
                ).scalars()
            )

    def get(self, model, pk):
        with self.session_factory() as db:
            obj = db.get(model, pk)
            if obj is not None:
                db.expunge(obj)
            return obj

    def usage_remaining(self, subscription_id: int) -> int:
        with self.session_factory() as db:
            return db.execute(
                select(models.PackageSubscriptionUsage.remaining_quantity).where(
                    models.PackageSubscriptionUsage.subscription_id == subscription_id
                )
            ).scalar_one()

    def outbox_topics(self) -> list[str]:
        with self.session_factory() as db:
            return list(
                db.execute(select(models.OutboxEvent.topic).order_by(models.OutboxEvent.id)).scalars()
            )


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'slotkeeper_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def seed(session_factory):
    return Seed(session_factory)


@pytest.fixture
def service_based(seed):
    """Service-based tour: 09:00-12:00 shift, three one-hour slots of capacity 1."""
    tenant_id = seed.tenant()
    service_id = seed.service(tenant_id)
    seed.shift(tenant_id, service_id)
    slot_ids = seed.ensure_slots(tenant_id, service_id)
    return {"tenant_id": tenant_id, "service_id": service_id, "slot_ids": slot_ids}


@pytest.fixture
def staffed(seed):
    """Two employee-based services X and Y sharing employees Eve and Finn."""
    tenant_id = seed.tenant("salon")
    service_x = seed.service(
        tenant_id, "Haircut", scheduling_type="employee_based", assignment_mode="manual"
    )
    service_y = seed.service(
        tenant_id, "Coloring", scheduling_type="employee_based", assignment_mode="automatic"
    )
    eve = seed.employee(tenant_id, "Eve")
    finn = seed.employee(tenant_id, "Finn")
    for employee_id in (eve, finn):
        seed.employee_shift(tenant_id, employee_id)
        seed.assign(tenant_id, employee_id, service_x)
        seed.assign(tenant_id, employee_id, service_y)
    return {
        "tenant_id": tenant_id,
        "service_x": service_x,
        "service_y": service_y,
        "eve": eve,
        "finn": finn,
    }
