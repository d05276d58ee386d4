import json
from datetime import timedelta

import redis
import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from .config import settings
from .models import OutboxEvent, utc_now_naive

log = structlog.get_logger("slotkeeper.platform")


def _json_dumps(payload: dict | None) -> str:
    return json.dumps(payload or {}, ensure_ascii=True, sort_keys=True, default=str)


def enqueue_outbox_event(
    db: Session,
    *,
    topic: str,
    payload: dict,
    tenant_id: int | None = None,
    key: str | None = None,
) -> OutboxEvent:
    """Stage an event inside the caller's transaction.

    Only flushes; the row becomes visible to the dispatcher when the caller
    commits, so an event never outlives a rolled back booking.
    """
    row = OutboxEvent(
        tenant_id=tenant_id,
        topic=(topic or "").strip(),
        key=(key or "").strip() or None,
        payload_json=_json_dumps(payload),
        status="pending",
        retries=0,
        created_at=utc_now_naive(),
        updated_at=utc_now_naive(),
    )
    db.add(row)
    db.flush()
    return row


def list_outbox_events(
    db: Session,
    *,
    tenant_id: int | None = None,
    status: str | None = None,
    topic: str | None = None,
    limit: int = 200,
) -> list[OutboxEvent]:
    q = db.query(OutboxEvent)
    if tenant_id is not None:
        q = q.filter(OutboxEvent.tenant_id == tenant_id)
    if status:
        q = q.filter(OutboxEvent.status == status.strip().lower())
    if topic:
        q = q.filter(OutboxEvent.topic == topic.strip())
    return (
        q.order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
        .limit(max(1, min(limit, 1000)))
        .all()
    )


def _redis_client() -> redis.Redis | None:
    if not settings.REDIS_URL:
        return None
    try:
        return redis.from_url(settings.REDIS_URL, decode_responses=True)
    except Exception:
        log.warning("redis_client_unavailable", redis_url=settings.REDIS_URL)
        return None


def dispatch_outbox_events(
    db: Session,
    *,
    tenant_id: int | None = None,
    batch_size: int = 50,
    client: redis.Redis | None = None,
) -> dict:
    rows = list_outbox_events(
        db=db, tenant_id=tenant_id, status="pending", limit=batch_size
    )
    if not rows:
        return {"processed": 0, "published": 0, "failed": 0, "dead_lettered": 0}

    if client is None and settings.EVENT_BUS_ENABLED:
        client = _redis_client()
    published = 0
    failed = 0
    dead_lettered = 0
    max_retries = max(1, int(settings.OUTBOX_MAX_RETRIES))
    for row in rows:
        try:
            if client is not None:
                payload = json.loads(row.payload_json or "{}")
                fields = {
                    "event_id": str(row.id),
                    "topic": row.topic,
                    "tenant_id": str(row.tenant_id or ""),
                    "key": row.key or "",
                    "payload_json": _json_dumps(payload),
                }
                client.xadd(
                    settings.EVENT_BUS_STREAM,
                    fields=fields,
                    maxlen=50000,
                    approximate=True,
                )
            row.status = "published"
            row.published_at = utc_now_naive()
            row.last_error = None
            published += 1
        except Exception as exc:
            # Delivery problems stay in the outbox; bookings are already committed.
            row.retries = int(row.retries or 0) + 1
            row.last_error = str(exc)[:500]
            if int(row.retries) >= max_retries:
                row.status = "dead_letter"
                dead_lettered += 1
            else:
                row.status = "failed"
            failed += 1
            log.warning(
                "outbox_publish_failed",
                event_id=row.id,
                topic=row.topic,
                retries=row.retries,
                error=row.last_error,
            )
        row.updated_at = utc_now_naive()
    db.commit()
    result = {
        "processed": len(rows),
        "published": published,
        "failed": failed,
        "dead_lettered": dead_lettered,
    }
    log.info("outbox_dispatched", **result)
    return result


BOOKING_TOPICS = ("booking.created", "booking.rescheduled", "booking.cancelled")
PACKAGE_TOPICS = ("package.capacity_exhausted", "package.capacity_insufficient")


def _scoped(q, tenant_id: int | None, topics):
    if tenant_id is not None:
        q = q.where(OutboxEvent.tenant_id == tenant_id)
    if topics:
        q = q.where(OutboxEvent.topic.in_(list(topics)))
    return q


def retry_outbox_events(
    db: Session,
    *,
    tenant_id: int | None = None,
    topics=None,
    include_dead_letter: bool = False,
    limit: int = 100,
) -> dict:
    """Put failed booking and package events back in the dispatch queue.

    Events are requeued oldest booking first so consumers see a booking's
    created/rescheduled/cancelled sequence in order.
    """
    statuses = ["failed", "dead_letter"] if include_dead_letter else ["failed"]
    q = _scoped(select(OutboxEvent).where(OutboxEvent.status.in_(statuses)), tenant_id, topics)
    rows = db.execute(
        q.order_by(OutboxEvent.key.asc(), OutboxEvent.id.asc()).limit(max(1, min(limit, 1000)))
    ).scalars().all()
    by_topic: dict[str, int] = {}
    for row in rows:
        row.status = "pending"
        row.last_error = None
        row.updated_at = utc_now_naive()
        by_topic[row.topic] = by_topic.get(row.topic, 0) + 1
    db.commit()
    if rows:
        log.info("outbox_requeued", tenant_id=tenant_id, by_topic=by_topic)
    return {"retried": len(rows), "by_topic": by_topic}


def cleanup_outbox_events(
    db: Session,
    *,
    tenant_id: int | None = None,
    topics=BOOKING_TOPICS + PACKAGE_TOPICS,
    older_than_hours: int = 24 * 7,
) -> dict:
    # Dead letters stay until someone has looked at them.
    cutoff = utc_now_naive() - timedelta(hours=max(1, int(older_than_hours)))
    q = _scoped(
        delete(OutboxEvent).where(
            OutboxEvent.status == "published",
            OutboxEvent.published_at < cutoff,
        ),
        tenant_id,
        topics,
    )
    deleted = int(db.execute(q.execution_options(synchronize_session=False)).rowcount or 0)
    db.commit()
    log.info("outbox_cleaned", tenant_id=tenant_id, deleted=deleted, cutoff=cutoff.isoformat())
    return {"deleted": deleted, "cutoff": cutoff}


def get_outbox_health(db: Session, *, tenant_id: int | None = None) -> dict:
    """Event counts per topic and status, plus the age of the oldest backlog."""
    now = utc_now_naive()
    counts = db.execute(
        _scoped(
            select(OutboxEvent.topic, OutboxEvent.status, func.count(OutboxEvent.id)),
            tenant_id,
            None,
        ).group_by(OutboxEvent.topic, OutboxEvent.status)
    ).all()
    topics: dict[str, dict[str, int]] = {}
    for topic, status, count in counts:
        topics.setdefault(topic, {})[status] = int(count)
    oldest = db.execute(
        _scoped(
            select(func.min(OutboxEvent.created_at)).where(OutboxEvent.status == "pending"),
            tenant_id,
            None,
        )
    ).scalar_one()
    # Anything still pending for a booking means a consumer has not heard of it yet.
    unannounced = db.execute(
        _scoped(
            select(func.count(func.distinct(OutboxEvent.key))).where(
                OutboxEvent.status.in_(["pending", "failed", "dead_letter"])
            ),
            tenant_id,
            BOOKING_TOPICS,
        )
    ).scalar_one()
    return {
        "tenant_id": tenant_id,
        "checked_at": now,
        "topics": topics,
        "pending_count": sum(by_status.get("pending", 0) for by_status in topics.values()),
        "dead_letter_count": sum(by_status.get("dead_letter", 0) for by_status in topics.values()),
        "bookings_with_undelivered_events": int(unannounced or 0),
        "oldest_pending_age_seconds": max(0, int((now - oldest).total_seconds())) if oldest else 0,
    }
