"""
GDPR data-subject requests: export and delete, plus consent records.

Each request runs under the ledger key ``compliance:{tenant}:{subject}:{type}``
so a retried request within the hour replays instead of running twice.
Both sub-steps overwrite rather than append, so a resumed run converges to
the same end state.
"""
import base64
import json
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from payflow.audit import record_audit
from payflow.errors import NotFoundError
from payflow.idempotency import COMPLIANCE_TTL, IdempotencyLedger, derive_key
from payflow.models import Appointment, ComplianceRequest, Consent, Order, Profile, utcnow
from payflow.schemas import (
    ComplianceRequestIn,
    ComplianceResponse,
    ComplianceStatusResponse,
    ConsentRequest,
    ConsentResponse,
)

logger = structlog.get_logger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _orders(db: Session, tenant_id: str, subject_id: str) -> list[dict]:
    rows = db.execute(
        select(Order).where(Order.tenant_id == tenant_id, Order.customer_id == subject_id)
    ).scalars()
    return [
        {
            "id": o.id,
            "status": o.status,
            "totalCents": o.total_cents,
            "currency": o.currency,
            "createdAt": _iso(o.created_at),
        }
        for o in rows
    ]


def _appointments(db: Session, tenant_id: str, subject_id: str) -> list[dict]:
    rows = db.execute(
        select(Appointment).where(Appointment.tenant_id == tenant_id, Appointment.customer_id == subject_id)
    ).scalars()
    return [
        {
            "id": a.id,
            "serviceId": a.service_id,
            "status": a.status,
            "startAt": _iso(a.start_at),
            "endAt": _iso(a.end_at),
            "notes": a.notes,
        }
        for a in rows
    ]


def _consents(db: Session, tenant_id: str, subject_id: str) -> list[dict]:
    rows = db.execute(
        select(Consent).where(Consent.tenant_id == tenant_id, Consent.subject_id == subject_id)
    ).scalars()
    return [
        {
            "consentType": c.consent_type,
            "granted": c.granted,
            "grantedAt": _iso(c.granted_at),
            "revokedAt": _iso(c.revoked_at),
        }
        for c in rows
    ]


EXPORT_SECTIONS = {
    "orders": _orders,
    "appointments": _appointments,
    "consents": _consents,
}


class ComplianceWorkflow:
    def __init__(self, db: Session, now: Callable = utcnow, session_factory: Optional[sessionmaker] = None):
        self.db = db
        self.now = now
        self.ledger = IdempotencyLedger(db, now)
        # Export readers each get their own session; a Session is not thread-safe.
        self.session_factory = session_factory or sessionmaker(bind=db.get_bind())

    def process_request(self, request: ComplianceRequestIn) -> ComplianceResponse:
        key = derive_key("compliance", request.tenant_id, request.subject_id, request.type)
        return self.ledger.execute(
            key,
            COMPLIANCE_TTL,
            lambda: self._process(request),
            ComplianceResponse,
            tenant_id=request.tenant_id,
        )

    def _process(self, request: ComplianceRequestIn) -> ComplianceResponse:
        export_url = None
        if request.type == "export":
            export_url = self._export(request.tenant_id, request.subject_id)

        row = ComplianceRequest(
            tenant_id=request.tenant_id,
            subject_id=request.subject_id,
            request_type=request.type,
            status="in_progress",
            initiated_by=request.initiated_by,
            reason=request.reason,
            created_at=self.now(),
        )
        self.db.add(row)
        self.db.flush()

        if request.type == "delete":
            self._anonymise(request.tenant_id, request.subject_id)

        row.export_url = export_url
        row.status = "completed"
        row.completed_at = self.now()
        record_audit(
            self.db,
            tenant_id=request.tenant_id,
            actor_id=request.subject_id if request.initiated_by == "customer" else None,
            actor_role=request.initiated_by,
            action=f"compliance.{request.type}.completed",
            resource=row.id,
            changes={"subjectId": request.subject_id, "type": request.type},
        )
        logger.info("compliance.completed", request_id=row.id, type=request.type, tenant_id=request.tenant_id)
        return ComplianceResponse(request_id=row.id, status=row.status, export_url=export_url)

    def _export(self, tenant_id: str, subject_id: str) -> str:
        def gather(section):
            reader = self.session_factory()
            try:
                return section, EXPORT_SECTIONS[section](reader, tenant_id, subject_id)
            finally:
                reader.close()

        with ThreadPoolExecutor(max_workers=len(EXPORT_SECTIONS)) as pool:
            sections = dict(pool.map(gather, EXPORT_SECTIONS))

        document = {"subjectId": subject_id, "generatedAt": self.now().isoformat(), **sections}
        encoded = base64.b64encode(json.dumps(document).encode()).decode("ascii")
        return f"data:application/json;base64,{encoded}"

    def _anonymise(self, tenant_id: str, subject_id: str) -> None:
        profile = self.db.get(Profile, subject_id)
        if profile is not None and profile.tenant_id == tenant_id:
            profile.full_name = None
            profile.email = None
            profile.phone = None
            profile.details = {"anonymised": True}

        self.db.execute(
            update(Appointment)
            .where(Appointment.tenant_id == tenant_id, Appointment.customer_id == subject_id)
            .values(notes=None, details={})
        )

    def record_consent(self, request: ConsentRequest) -> ConsentResponse:
        now = self.now()
        consent = Consent(
            tenant_id=request.tenant_id,
            subject_id=request.subject_id,
            consent_type=request.consent_type,
            granted=request.granted,
            granted_at=now,
            revoked_at=None if request.granted else now,
            details=dict(request.metadata),
        )
        self.db.add(consent)
        self.db.flush()
        record_audit(
            self.db,
            tenant_id=request.tenant_id,
            actor_id=request.subject_id,
            actor_role="customer",
            action="consent.updated",
            resource=consent.id,
            changes={"consentType": request.consent_type, "granted": request.granted},
        )
        self.db.commit()
        return ConsentResponse(consent_id=consent.id)

    def get_status(self, request_id: str, tenant_id: Optional[str] = None) -> ComplianceStatusResponse:
        row = self.db.get(ComplianceRequest, request_id)
        if row is None or (tenant_id is not None and row.tenant_id != tenant_id):
            raise NotFoundError("Compliance request not found")
        return ComplianceStatusResponse(
            request_id=row.id,
            status=row.status,
            export_url=row.export_url,
            completed_at=row.completed_at,
        )
