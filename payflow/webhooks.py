"""
Webhook event deduplication.

The marker row is written and committed before business processing, so a
duplicate delivery arriving while the first is still running already sees
it. Two truly simultaneous deliveries can still both pass the existence
check; the unique constraint on (provider, event_id) makes one of them lose
at insert time, and the transaction upsert on its natural key covers what
remains.
"""
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.models import WebhookEvent, utcnow

logger = structlog.get_logger(__name__)


class WebhookDeduplicator:
    def __init__(self, db: Session, now: Callable = utcnow):
        self.db = db
        self.now = now

    def _find(self, provider: str, event_id: str) -> Optional[WebhookEvent]:
        return self.db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.event_id == event_id,
            )
        ).scalar_one_or_none()

    def claim(self, provider: str, event_id: str, event_type: Optional[str], payload: dict) -> bool:
        """Check-and-mark. Returns False when the event was already handled."""
        existing = self._find(provider, event_id)
        if existing is not None:
            if existing.processed_at is not None:
                logger.info("webhook.duplicate", provider=provider, event_id=event_id)
                return False
            existing.processed_at = self.now()
            existing.event_type = event_type
            existing.payload = payload
        else:
            self.db.add(WebhookEvent(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                processed_at=self.now(),
            ))
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info("webhook.duplicate_race", provider=provider, event_id=event_id)
            return False
        return True

    def record_failure(self, provider: str, event_id: str, reason: str) -> None:
        marker = self._find(provider, event_id)
        if marker is not None:
            marker.failure_reason = reason[:2000]
