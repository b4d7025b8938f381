"""Reusable helpers for transactional outbox delivery.

These utilities are model-agnostic: any table with `id`, `status`,
`attempts`, `next_attempt_at`, `claimed_at` and `created_at` columns can be
claimed, acknowledged and rescheduled with the same logic.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select, update

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"
FAILED = "FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def claim_outbox_batch(db, outbox_model, limit: int = 100, processing_timeout_seconds: int = 60) -> list:
    """Claim due pending rows (and stale in-flight rows) for delivery.

    Rows are locked with `SKIP LOCKED` on Postgres so concurrent dispatchers
    never claim the same row twice.
    """

    table = outbox_model.__table__
    now = utcnow()
    stale_before = now - timedelta(seconds=processing_timeout_seconds)
    claim_ids = (
        db.execute(
            select(table.c.id)
            .where(
                or_(
                    and_(table.c.status == PENDING, table.c.next_attempt_at <= now),
                    and_(table.c.status == PROCESSING, table.c.claimed_at < stale_before),
                )
            )
            .order_by(table.c.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    if not claim_ids:
        return []
    db.execute(
        update(table)
        .where(table.c.id.in_(claim_ids))
        .values(status=PROCESSING, claimed_at=now, attempts=table.c.attempts + 1)
    )
    return (
        db.execute(select(outbox_model).where(outbox_model.id.in_(claim_ids)).order_by(outbox_model.created_at))
        .scalars()
        .all()
    )


def mark_outbox_sent(db, outbox_model, row_id: str, response_status: int | None = None) -> None:
    """Mark one claimed row as delivered."""

    table = outbox_model.__table__
    db.execute(
        update(table)
        .where(table.c.id == row_id, table.c.status == PROCESSING)
        .values(status=SENT, sent_at=utcnow(), last_response_status=response_status, last_error=None)
    )


def reschedule_outbox_event(
    db,
    outbox_model,
    row_id: str,
    error: str,
    next_attempt_at: datetime | None,
    response_status: int | None = None,
) -> None:
    """Return a claimed row to `PENDING`, or give up when `next_attempt_at` is None."""

    table = outbox_model.__table__
    values = {"last_error": error[:1000], "last_response_status": response_status}
    if next_attempt_at is None:
        values["status"] = FAILED
    else:
        values["status"] = PENDING
        values["next_attempt_at"] = next_attempt_at
    db.execute(update(table).where(table.c.id == row_id, table.c.status == PROCESSING).values(**values))


def count_pending(db, outbox_model) -> int:
    table = outbox_model.__table__
    return db.execute(
        select(func.count()).select_from(table).where(table.c.status.in_((PENDING, PROCESSING)))
    ).scalar_one()
