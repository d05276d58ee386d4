import json
from datetime import timedelta

from slotkeeper.config import settings
from slotkeeper.core.booking_engine import cancel_booking, commit_booking
from slotkeeper.models import OutboxEvent, utc_now_naive
from slotkeeper.platform import (
    cleanup_outbox_events,
    dispatch_outbox_events,
    get_outbox_health,
    list_outbox_events,
    retry_outbox_events,
)

from conftest import NOW


class RecordingStream:
    def __init__(self):
        self.calls = []

    def xadd(self, name, fields, maxlen=None, approximate=True):
        self.calls.append((name, fields))
        return f"{len(self.calls)}-0"


class BrokenStream:
    def xadd(self, name, fields, maxlen=None, approximate=True):
        raise ConnectionError("redis is down")


def _book(session_factory, service_based):
    with session_factory() as db:
        return commit_booking(
            db,
            tenant_id=service_based["tenant_id"],
            service_id=service_based["service_id"],
            slot_id=service_based["slot_ids"][0],
            customer_name="Ada Lovelace",
            now=NOW,
        ).id


def test_committed_booking_stages_a_pending_event(service_based, session_factory):
    booking_id = _book(session_factory, service_based)

    with session_factory() as db:
        rows = list_outbox_events(db, status="pending")
        assert [row.topic for row in rows] == ["booking.created"]
        payload = json.loads(rows[0].payload_json)
        assert rows[0].key == f"booking:{booking_id}"
    assert payload["booking_id"] == booking_id
    assert payload["slot_id"] == service_based["slot_ids"][0]


def test_dispatch_publishes_to_stream(service_based, session_factory):
    booking_id = _book(session_factory, service_based)
    with session_factory() as db:
        cancel_booking(db, tenant_id=service_based["tenant_id"], booking_id=booking_id, now=NOW)

    stream = RecordingStream()
    with session_factory() as db:
        result = dispatch_outbox_events(db, client=stream)

    assert result == {"processed": 2, "published": 2, "failed": 0, "dead_lettered": 0}
    assert [fields["topic"] for _, fields in stream.calls] == ["booking.created", "booking.cancelled"]
    assert {name for name, _ in stream.calls} == {settings.EVENT_BUS_STREAM}
    with session_factory() as db:
        assert list_outbox_events(db, status="pending") == []
        health = get_outbox_health(db, tenant_id=service_based["tenant_id"])
    assert health["topics"] == {"booking.created": {"published": 1}, "booking.cancelled": {"published": 1}}
    assert health["pending_count"] == 0
    assert health["bookings_with_undelivered_events"] == 0


def test_failed_delivery_is_retried_then_dead_lettered(service_based, session_factory):
    _book(session_factory, service_based)
    previous = settings.OUTBOX_MAX_RETRIES
    settings.OUTBOX_MAX_RETRIES = 2
    try:
        with session_factory() as db:
            first = dispatch_outbox_events(db, client=BrokenStream())
        with session_factory() as db:
            assert retry_outbox_events(db) == {"retried": 1, "by_topic": {"booking.created": 1}}
        with session_factory() as db:
            second = dispatch_outbox_events(db, client=BrokenStream())
    finally:
        settings.OUTBOX_MAX_RETRIES = previous

    assert first["failed"] == 1 and first["dead_lettered"] == 0
    assert second["dead_lettered"] == 1
    with session_factory() as db:
        row = db.query(OutboxEvent).one()
        assert row.status == "dead_letter"
        assert row.retries == 2
        assert "redis is down" in row.last_error


def test_health_counts_bookings_still_waiting_for_delivery(service_based, session_factory):
    booking_id = _book(session_factory, service_based)
    with session_factory() as db:
        cancel_booking(db, tenant_id=service_based["tenant_id"], booking_id=booking_id, now=NOW)

    with session_factory() as db:
        health = get_outbox_health(db, tenant_id=service_based["tenant_id"])

    assert health["pending_count"] == 2
    # Two events, one booking.
    assert health["bookings_with_undelivered_events"] == 1


def test_cleanup_drops_old_published_events_and_keeps_dead_letters(service_based, session_factory):
    _book(session_factory, service_based)
    with session_factory() as db:
        dispatch_outbox_events(db, client=RecordingStream())
    _book(session_factory, {**service_based, "slot_ids": service_based["slot_ids"][1:]})
    with session_factory() as db:
        week_ago = utc_now_naive() - timedelta(days=8)
        for row in db.query(OutboxEvent).all():
            if row.status == "published":
                row.published_at = week_ago
            else:
                row.status = "dead_letter"
                row.updated_at = week_ago
        db.commit()

    with session_factory() as db:
        result = cleanup_outbox_events(db, tenant_id=service_based["tenant_id"])

    assert result["deleted"] == 1
    with session_factory() as db:
        assert [row.status for row in db.query(OutboxEvent).all()] == ["dead_letter"]
