"""Exactly-once bookkeeping for inbound payment webhooks."""

from __future__ import annotations

import logging
import time

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from backend.app.core.database import Database, session_scope, upsert_insert
from backend.app.core.errors import ValidationError
from backend.app.db.models import DbProcessedWebhookEvent

logger = logging.getLogger(__name__)


def _now() -> int:
    return int(time.time())


SECONDS_PER_DAY = 24 * 60 * 60


class WebhookDeduplicator:
    """Claims webhook event ids through a uniqueness-guarded insert."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def mark_processed(self, event_id: str, event_type: str, *, session: Session | None = None) -> bool:
        """Return ``True`` only for the single caller whose insert landed.

        Run inside the processing transaction, a rollback releases the claim and a
        concurrent redelivery waits on the row until this transaction resolves.
        """
        if not event_id or not event_id.strip():
            raise ValidationError("Invalid event id")

        now = _now()
        with session_scope(self.db, session) as s:
            insert_stmt = (
                upsert_insert(s, DbProcessedWebhookEvent)
                .values(event_id=event_id, event_type=(event_type or "unknown")[:100], processed_at=now)
                .on_conflict_do_nothing(index_elements=[DbProcessedWebhookEvent.event_id])
            )
            inserted = (
                s.execute(insert_stmt.returning(DbProcessedWebhookEvent.event_id)).scalar_one_or_none()
                is not None
            )

        if not inserted:
            logger.info(
                "Duplicate webhook event",
                extra={"data": {"event_id": event_id, "event_type": event_type}},
            )
        return inserted

    def is_processed(self, event_id: str) -> bool:
        with self.db.session() as session:
            found = session.scalar(
                select(DbProcessedWebhookEvent.event_id)
                .where(DbProcessedWebhookEvent.event_id == event_id)
                .limit(1)
            )
            return found is not None

    def prune(self, older_than_seconds: int, *, now: int | None = None) -> int:
        if older_than_seconds <= 0:
            raise ValidationError("Retention must be positive")
        cutoff = (_now() if now is None else now) - older_than_seconds
        with self.db.session() as session:
            result = session.execute(
                delete(DbProcessedWebhookEvent).where(DbProcessedWebhookEvent.processed_at < cutoff)
            )
            removed = int(result.rowcount or 0)
        logger.info("Pruned processed webhook events", extra={"data": {"removed": removed, "cutoff": cutoff}})
        return removed

    def prune_days(self, retention_days: int, *, now: int | None = None) -> int:
        return self.prune(retention_days * SECONDS_PER_DAY, now=now)
