"""
Scheduled reminder delivery, driven by an external cron hitting
``POST /reminders/dispatch``.

A reminder is claimed (``scheduled -> processing``) by a conditional update
committed before delivery, so two overlapping dispatch runs never deliver the
same reminder twice. A run that dies between claim and outcome leaves the
reminder in ``processing``; the recovery sweep at the start of the next run
puts it back in the queue or gives up on it after ``max_attempts`` claims.
Each run also purges expired idempotency records.
"""
from datetime import timedelta
from typing import Callable, Optional, Protocol

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from payflow.audit import record_audit
from payflow.errors import PayflowError, ProviderError, ValidationError
from payflow.idempotency import IdempotencyLedger
from payflow.models import Reminder, utcnow
from payflow.notifications import EmailClient
from payflow.reporting import capture_exception
from payflow.schemas import DispatchSummary

logger = structlog.get_logger(__name__)

STALE_AFTER = timedelta(minutes=15)
MAX_ATTEMPTS = 3


class Channel(Protocol):
    def deliver(self, reminder: Reminder) -> None: ...


class EmailChannel:
    def __init__(self, email_client: EmailClient):
        self.email_client = email_client

    def deliver(self, reminder: Reminder) -> None:
        payload = reminder.payload or {}
        recipient = payload.get("to") or payload.get("email")
        if not recipient:
            raise ValidationError("Reminder has no recipient address")
        self.email_client.send(
            to=recipient,
            template=reminder.template or "reminder_upcoming",
            data=payload.get("data") or payload,
            locale=payload.get("locale", "en-CH"),
            tenant_id=reminder.tenant_id,
        )


class WebhookChannel:
    def __init__(self, client: Optional[httpx.Client] = None):
        self.client = client or httpx.Client(timeout=10.0)

    def deliver(self, reminder: Reminder) -> None:
        payload = reminder.payload or {}
        url = payload.get("webhookUrl")
        if not url:
            raise ValidationError("Reminder has no webhookUrl")
        try:
            response = self.client.post(url, json={
                "reminderId": reminder.id,
                "tenantId": reminder.tenant_id,
                "resourceType": reminder.resource_type,
                "resourceId": reminder.resource_id,
                "template": reminder.template,
                "payload": payload,
            })
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProviderError("webhook", str(e))
        if response.is_error:
            raise ProviderError("webhook", response.text, response.status_code)


class ReminderDispatcher:
    def __init__(
        self,
        db: Session,
        channels: dict[str, Channel],
        now: Callable = utcnow,
        stale_after: timedelta = STALE_AFTER,
        max_attempts: int = MAX_ATTEMPTS,
    ):
        self.db = db
        self.channels = channels
        self.now = now
        self.stale_after = stale_after
        self.max_attempts = max_attempts

    def recover_stale(self) -> int:
        cutoff = self.now() - self.stale_after
        stale = update(Reminder).where(Reminder.status == "processing", Reminder.claimed_at < cutoff)

        requeued = self.db.execute(
            stale.where(Reminder.attempts < self.max_attempts).values(status="scheduled", claimed_at=None)
        ).rowcount
        abandoned = self.db.execute(
            stale.where(Reminder.attempts >= self.max_attempts)
            .values(status="failed", last_error="stale claim abandoned")
        ).rowcount
        self.db.commit()

        if requeued or abandoned:
            logger.warning("reminder.stale_recovered", requeued=requeued, abandoned=abandoned)
        return requeued + abandoned

    def claim(self, reminder_id: str) -> bool:
        result = self.db.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.status == "scheduled")
            .values(status="processing", claimed_at=self.now(), attempts=Reminder.attempts + 1)
        )
        self.db.commit()
        return result.rowcount == 1

    def dispatch(self, limit: int = 25) -> DispatchSummary:
        summary = DispatchSummary(
            recovered=self.recover_stale(),
            purged=IdempotencyLedger(self.db, self.now).purge_expired(),
        )

        due = self.db.execute(
            select(Reminder.id)
            .where(Reminder.status == "scheduled", Reminder.deliver_at <= self.now())
            .order_by(Reminder.deliver_at)
            .limit(limit)
        ).scalars().all()
        summary.selected = len(due)

        for reminder_id in due:
            if not self.claim(reminder_id):
                logger.info("reminder.claim_skipped", reminder_id=reminder_id)
                summary.skipped += 1
                continue
            summary.claimed += 1
            if self._deliver(self.db.get(Reminder, reminder_id)):
                summary.sent += 1
            else:
                summary.failed += 1

        logger.info("reminder.dispatch_finished", **summary.model_dump())
        return summary

    def _deliver(self, reminder: Reminder) -> bool:
        reminder_id, tenant_id, channel_name = reminder.id, reminder.tenant_id, reminder.channel
        try:
            channel = self.channels.get(channel_name)
            if channel is None:
                raise ValidationError(f"Unknown reminder channel: {channel_name}")
            channel.deliver(reminder)
        except Exception as e:
            message = e.message if isinstance(e, PayflowError) else str(e)
            self.db.rollback()
            self._finish(reminder_id, status="failed", last_error=message)
            self.db.commit()
            logger.error("reminder.failed", reminder_id=reminder_id, channel=channel_name, error=message)
            capture_exception(e, reminder_id=reminder_id, tenant_id=tenant_id)
            return False

        self._finish(reminder_id, status="sent", sent_at=self.now(), last_error=None)
        record_audit(
            self.db,
            tenant_id=tenant_id,
            actor_role="system",
            action="reminder.sent",
            resource=reminder_id,
            changes={"channel": channel_name, "resourceType": reminder.resource_type},
        )
        self.db.commit()
        logger.info("reminder.sent", reminder_id=reminder_id, channel=channel_name)
        return True

    def _finish(self, reminder_id: str, **values) -> None:
        self.db.execute(
            update(Reminder)
            .where(Reminder.id == reminder_id, Reminder.status == "processing")
            .values(**values)
        )
