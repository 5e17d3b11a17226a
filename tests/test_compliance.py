import base64
import json
from datetime import datetime

import pytest

from payflow.compliance import ComplianceWorkflow
from payflow.errors import NotFoundError
from payflow.models import Appointment, AuditLogEntry, ComplianceRequest, Consent, Profile
from payflow.schemas import ComplianceRequestIn, ConsentRequest


@pytest.fixture
def workflow(db):
    return ComplianceWorkflow(db, now=lambda: datetime(2026, 3, 1, 12, 0))


@pytest.fixture
def guest(db, make_order):
    db.add(Profile(id="guest-1", tenant_id="tenant-1", full_name="Anna Muster",
                   email="anna@example.com", phone="+41 79 000 00 00", details={"allergies": "nuts"}))
    db.add(Appointment(id="appt-1", tenant_id="tenant-1", customer_id="guest-1", notes="window table",
                       details={"occasion": "birthday"}))
    db.add(Consent(tenant_id="tenant-1", subject_id="guest-1", consent_type="marketing", granted=True))
    db.commit()
    make_order(customer_id="guest-1")
    make_order(order_id="other", customer_id="guest-2")
    return "guest-1"


def test_export_collects_subject_data(db, workflow, guest):
    response = workflow.process_request(ComplianceRequestIn(tenant_id="tenant-1", subject_id=guest, type="export"))

    assert response.status == "completed"
    prefix = "data:application/json;base64,"
    assert response.export_url.startswith(prefix)
    document = json.loads(base64.b64decode(response.export_url[len(prefix):]))
    assert document["subjectId"] == guest
    assert document["generatedAt"] == "2026-03-01T12:00:00"
    assert [o["id"] for o in document["orders"]] == ["order-1"]
    assert document["appointments"][0]["notes"] == "window table"
    assert document["consents"][0]["consentType"] == "marketing"
    assert db.query(AuditLogEntry).filter_by(action="compliance.export.completed").count() == 1


def test_delete_twice_anonymises_once(db, workflow, guest):
    request = ComplianceRequestIn(tenant_id="tenant-1", subject_id=guest, type="delete", reason="guest request")

    first = workflow.process_request(request)
    second = workflow.process_request(request)

    assert first == second
    assert first.status == "completed"
    profile = db.get(Profile, guest)
    assert (profile.full_name, profile.email, profile.phone) == (None, None, None)
    assert profile.details == {"anonymised": True}
    appointment = db.get(Appointment, "appt-1")
    assert appointment.notes is None
    assert appointment.details == {}
    assert db.query(ComplianceRequest).count() == 1
    assert db.query(AuditLogEntry).filter_by(action="compliance.delete.completed").count() == 1


def test_delete_without_profile_still_completes(workflow):
    response = workflow.process_request(ComplianceRequestIn(tenant_id="tenant-1", subject_id="nobody", type="delete"))

    assert response.status == "completed"


def test_record_consent_revocation(db, workflow):
    response = workflow.record_consent(ConsentRequest(
        tenant_id="tenant-1", subject_id="guest-1", consent_type="marketing", granted=False,
        metadata={"source": "settings-page"},
    ))

    consent = db.get(Consent, response.consent_id)
    assert consent.granted is False
    assert consent.revoked_at == datetime(2026, 3, 1, 12, 0)
    assert consent.details == {"source": "settings-page"}
    assert db.query(AuditLogEntry).filter_by(action="consent.updated").count() == 1


def test_get_status(workflow):
    created = workflow.process_request(ComplianceRequestIn(tenant_id="tenant-1", subject_id="guest-1", type="delete"))

    status = workflow.get_status(created.request_id)

    assert status.status == "completed"
    assert status.completed_at == datetime(2026, 3, 1, 12, 0)
    with pytest.raises(NotFoundError):
        workflow.get_status(created.request_id, tenant_id="tenant-2")
    with pytest.raises(NotFoundError):
        workflow.get_status("missing")
