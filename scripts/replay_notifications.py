"""Requeue merchant callbacks that exhausted their delivery attempts.

Replay keeps the original payload, so merchants see the same event body and
signature input as the first attempt.
"""

import argparse

from sqlalchemy import select, update

from bgpay.common.db import SessionLocal
from bgpay.common.outbox import FAILED, PENDING, utcnow
from bgpay.services.notifications.models import NotificationOutbox


def replay(payment_id: str | None, notification_id: str | None, dry_run: bool) -> int:
    """Reset matching FAILED rows to PENDING; returns the number matched."""

    with SessionLocal() as db:
        query = select(NotificationOutbox).where(NotificationOutbox.status == FAILED)
        if payment_id:
            query = query.where(NotificationOutbox.payment_id == payment_id)
        if notification_id:
            query = query.where(NotificationOutbox.id == notification_id)
        rows = db.execute(query).scalars().all()
        for row in rows:
            print(f"Matched id={row.id} payment_id={row.payment_id} event={row.event_type} attempts={row.attempts}")
        if dry_run or not rows:
            return len(rows)

        db.execute(
            update(NotificationOutbox)
            .where(NotificationOutbox.id.in_([row.id for row in rows]), NotificationOutbox.status == FAILED)
            .values(status=PENDING, attempts=0, next_attempt_at=utcnow(), claimed_at=None)
        )
        db.commit()
        return len(rows)


def main() -> None:
    """CLI entrypoint for manual callback replay."""

    parser = argparse.ArgumentParser(description="Requeue FAILED merchant callbacks for delivery.")
    parser.add_argument("--payment-id", default=None)
    parser.add_argument("--id", dest="notification_id", default=None, help="Outbox row id")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.payment_id and not args.notification_id:
        raise SystemExit("Provide --payment-id or --id")

    matched = replay(args.payment_id, args.notification_id, args.dry_run)
    if matched == 0:
        print("No FAILED callbacks matched.")
        raise SystemExit(1)
    print("Dry run only; nothing requeued." if args.dry_run else f"Requeued {matched} callback(s).")


if __name__ == "__main__":
    main()
