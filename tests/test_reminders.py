import json
from datetime import datetime, timedelta

import httpx
import pytest

from payflow.errors import ProviderError
from payflow.models import AuditLogEntry, IdempotencyRecord, Reminder
from payflow.reminders import EmailChannel, ReminderDispatcher, WebhookChannel

NOW = datetime(2026, 3, 1, 8, 0)


class RecordingEmail:
    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def send(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.sent.append(kwargs)


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def make_reminder(db):
    def _make(reminder_id, channel="email", deliver_at=NOW - timedelta(minutes=5), status="scheduled",
              payload=None, **values):
        db.add(Reminder(
            id=reminder_id,
            tenant_id="tenant-1",
            resource_type="appointment",
            resource_id="appt-1",
            channel=channel,
            template="reminder_upcoming",
            payload=payload if payload is not None else {"to": "guest@example.com", "data": {"time": "18:00"}},
            deliver_at=deliver_at,
            status=status,
            **values,
        ))
        db.commit()
        return reminder_id
    return _make


def dispatcher_for(db, email, **channels):
    return ReminderDispatcher(db, {"email": EmailChannel(email), **channels}, now=lambda: NOW)


def test_dispatch_sends_due_reminders_in_order(db, email, make_reminder):
    make_reminder("r2", deliver_at=NOW - timedelta(minutes=1))
    make_reminder("r1", deliver_at=NOW - timedelta(minutes=10))
    make_reminder("later", deliver_at=NOW + timedelta(hours=1))

    summary = dispatcher_for(db, email).dispatch(limit=25)

    assert (summary.selected, summary.claimed, summary.sent, summary.failed) == (2, 2, 2, 0)
    assert [m["data"] for m in email.sent] == [{"time": "18:00"}, {"time": "18:00"}]
    assert email.sent[0]["template"] == "reminder_upcoming"
    sent = db.get(Reminder, "r1")
    assert (sent.status, sent.attempts, sent.sent_at) == ("sent", 1, NOW)
    assert db.get(Reminder, "later").status == "scheduled"
    assert db.query(AuditLogEntry).filter_by(action="reminder.sent").count() == 2


def test_dispatch_respects_limit(db, email, make_reminder):
    for i in range(3):
        make_reminder(f"r{i}", deliver_at=NOW - timedelta(minutes=10 - i))

    summary = dispatcher_for(db, email).dispatch(limit=2)

    assert summary.sent == 2
    assert db.get(Reminder, "r2").status == "scheduled"


def test_claim_is_exclusive(db, session_factory, email, make_reminder):
    make_reminder("r1")
    other = session_factory()
    try:
        first = dispatcher_for(db, email)
        second = dispatcher_for(other, email)

        assert first.claim("r1") is True
        assert second.claim("r1") is False
    finally:
        other.close()


def test_delivery_failure_marks_failed_and_reports(db, make_reminder, mocker):
    capture = mocker.patch("payflow.reminders.capture_exception")
    make_reminder("r1")
    failing = RecordingEmail(error=ProviderError("email", "smtp down", 502))

    summary = dispatcher_for(db, failing).dispatch()

    assert (summary.sent, summary.failed) == (0, 1)
    reminder = db.get(Reminder, "r1")
    assert reminder.status == "failed"
    assert reminder.last_error == "email error: smtp down"
    assert capture.call_count == 1


def test_unknown_channel_fails(db, email, make_reminder, mocker):
    mocker.patch("payflow.reminders.capture_exception")
    make_reminder("r1", channel="sms")

    summary = dispatcher_for(db, email).dispatch()

    assert summary.failed == 1
    assert db.get(Reminder, "r1").last_error == "Unknown reminder channel: sms"


def test_webhook_channel_posts_payload(db, email, make_reminder):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    make_reminder("r1", channel="webhook", payload={"webhookUrl": "https://hooks.test/reminders", "table": 7})
    channel = WebhookChannel(httpx.Client(transport=httpx.MockTransport(handler)))

    summary = dispatcher_for(db, email, webhook=channel).dispatch()

    assert summary.sent == 1
    assert str(seen[0].url) == "https://hooks.test/reminders"
    body = json.loads(seen[0].content)
    assert body["reminderId"] == "r1"
    assert body["payload"]["table"] == 7


def test_stale_claims_are_requeued_or_abandoned(db, email, make_reminder):
    stale = NOW - timedelta(minutes=20)
    make_reminder("retry", status="processing", claimed_at=stale, attempts=1, deliver_at=NOW - timedelta(hours=1))
    make_reminder("give-up", status="processing", claimed_at=stale, attempts=3)
    make_reminder("fresh", status="processing", claimed_at=NOW - timedelta(minutes=5), attempts=1)

    summary = dispatcher_for(db, email).dispatch()

    assert summary.recovered == 2
    retried = db.get(Reminder, "retry")
    assert (retried.status, retried.attempts) == ("sent", 2)
    abandoned = db.get(Reminder, "give-up")
    assert (abandoned.status, abandoned.last_error) == ("failed", "stale claim abandoned")
    assert db.get(Reminder, "fresh").status == "processing"


def test_dispatch_purges_expired_idempotency_records(db, email):
    for key, expires_at in (("payment:order-1", NOW - timedelta(minutes=1)), ("invoice:order-1", NOW + timedelta(days=1))):
        db.add(IdempotencyRecord(key=key, tenant_id="tenant-1", request_hash="h", response={},
                                 expires_at=expires_at, created_at=NOW - timedelta(hours=1)))
    db.commit()

    summary = dispatcher_for(db, email).dispatch()

    assert summary.purged == 1
    assert [r.key for r in db.query(IdempotencyRecord).all()] == ["invoice:order-1"]
