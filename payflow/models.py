import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import relationship

from payflow.database import Base
from payflow.errors import ConflictError


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    # Naive UTC everywhere; SQLite drops tzinfo on the way back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Allowed source statuses for each target order status. Updates outside this
# map match no row and are reported as "not advanced".
ORDER_TRANSITIONS = {
    "pending": ("draft", "pending", "errored"),
    "paid": ("draft", "pending", "errored"),
    "refunded": ("paid", "completed", "refunded"),
    "completed": ("paid",),
    "errored": ("draft", "pending"),
}


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    details = Column(JSON, default=dict)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    customer_id = Column(String, index=True, nullable=True)
    status = Column(String, nullable=False, default="draft")  # draft | pending | paid | refunded | completed | errored
    total_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    payment_intent_id = Column(String, nullable=True)
    billing = Column(JSON, default=dict)  # name, address, postal, city, country, email
    created_at = Column(DateTime, default=utcnow)

    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.position")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    position = Column(Integer, default=0)
    description = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price_cents = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    customer_id = Column(String, index=True, nullable=True)
    service_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")  # pending | confirmed | cancelled | completed
    start_at = Column(DateTime, nullable=True)
    end_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    details = Column(JSON, default=dict)


class Consent(Base):
    __tablename__ = "consents"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    subject_id = Column(String, index=True, nullable=False)
    consent_type = Column(String, nullable=False)
    granted = Column(Boolean, nullable=False)
    granted_at = Column(DateTime, default=utcnow)
    revoked_at = Column(DateTime, nullable=True)
    details = Column(JSON, default=dict)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    __table_args__ = (
        UniqueConstraint("provider", "provider_payment_id", name="uq_transaction_provider_payment"),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    appointment_id = Column(String, nullable=True)
    provider = Column(String, nullable=False)                # stripe | sumup
    provider_payment_id = Column(String, nullable=False)     # PaymentIntent / checkout id
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String, nullable=False)
    details = Column(JSON, default=dict)
    version = Column(Integer, nullable=False, default=0)     # bumped by every conditional write
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    refunds = relationship("Refund", back_populates="transaction")


class SumUpSession(Base):
    __tablename__ = "sumup_sessions"

    checkout_id = Column(String, primary_key=True)
    tenant_id = Column(String, index=True, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    deeplink = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    details = Column(JSON, default=dict)
    last_polled_at = Column(DateTime, nullable=True)


class Refund(Base):
    __tablename__ = "payment_refunds"

    id = Column(String, primary_key=True, default=new_id)
    transaction_id = Column(String, ForeignKey("payment_transactions.id"), index=True, nullable=False)
    provider_refund_id = Column(String, nullable=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String, nullable=False)                  # pending | succeeded | failed
    reason = Column(String, nullable=True)
    initiated_by = Column(String, nullable=False)            # customer | staff | system
    created_at = Column(DateTime, default=utcnow)

    transaction = relationship("PaymentTransaction", back_populates="refunds")


class WebhookEvent(Base):
    __tablename__ = "payment_webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_provider_event"),
    )

    id = Column(String, primary_key=True, default=new_id)
    provider = Column(String, nullable=False)
    event_id = Column(String, nullable=False)
    event_type = Column(String, nullable=True)
    payload = Column(JSON, default=dict)
    processed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_keys"

    key = Column(String, primary_key=True)
    tenant_id = Column(String, nullable=True)
    request_hash = Column(String(64), nullable=False)
    response = Column(JSON, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class VatSetting(Base):
    __tablename__ = "vat_settings"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    rate = Column(Numeric(5, 2), nullable=False)             # percent, e.g. 7.70
    label = Column(String, nullable=True)
    effective_from = Column(Date, nullable=False)


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_tenant_number"),
    )

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    invoice_number = Column(String, nullable=False)          # {year}-{sequence}
    issued_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False)
    currency = Column(String(3), nullable=False)
    total_cents = Column(Integer, nullable=False)
    vat_summary = Column(JSON, default=list)
    qr_bill_payload = Column(Text, nullable=False)
    locale = Column(String, nullable=True)
    archived_at = Column(DateTime, nullable=True)

    items = relationship("InvoiceItem", back_populates="invoice", order_by="InvoiceItem.position")
    archive = relationship("InvoiceArchive", back_populates="invoice", uselist=False)


class InvoiceItem(Base):
    __tablename__ = "invoice_items"

    id = Column(String, primary_key=True, default=new_id)
    invoice_id = Column(String, ForeignKey("invoices.id"), index=True, nullable=False)
    position = Column(Integer, default=0)
    description = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_cents = Column(Integer, nullable=False)
    vat_rate = Column(Numeric(5, 2), nullable=True)

    invoice = relationship("Invoice", back_populates="items")


class InvoiceArchive(Base):
    __tablename__ = "invoice_archives"

    id = Column(String, primary_key=True, default=new_id)
    invoice_id = Column(String, ForeignKey("invoices.id"), unique=True, nullable=False)
    storage_path = Column(String, nullable=False)
    checksum = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    invoice = relationship("Invoice", back_populates="archive")


class ComplianceRequest(Base):
    __tablename__ = "compliance_requests"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    subject_id = Column(String, index=True, nullable=False)
    request_type = Column(String, nullable=False)            # export | delete
    status = Column(String, nullable=False, default="queued")  # queued | in_progress | completed | rejected
    initiated_by = Column(String, nullable=False, default="customer")
    reason = Column(String, nullable=True)
    export_url = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)


class Reminder(Base):
    __tablename__ = "reminders"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=False)
    resource_type = Column(String, nullable=False)
    resource_id = Column(String, nullable=False)
    channel = Column(String, nullable=False)                 # email | webhook
    template = Column(String, nullable=True)
    payload = Column(JSON, default=dict)
    deliver_at = Column(DateTime, index=True, nullable=False)
    status = Column(String, index=True, nullable=False, default="scheduled")  # scheduled | processing | sent | failed
    attempts = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AuditLogEntry(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_id)
    tenant_id = Column(String, index=True, nullable=True)
    actor_id = Column(String, nullable=True)
    actor_role = Column(String, nullable=True)
    action = Column(String, index=True, nullable=False)
    resource = Column(String, nullable=True)
    changes = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)


@event.listens_for(AuditLogEntry, "before_update")
@event.listens_for(AuditLogEntry, "before_delete")
def _audit_log_is_append_only(mapper, connection, target):
    raise ConflictError("Audit log entries are append-only")


@event.listens_for(Invoice, "before_update")
@event.listens_for(Invoice, "before_delete")
def _archived_invoice_is_immutable(mapper, connection, target):
    if target.archived_at is not None:
        raise ConflictError(f"Invoice {target.invoice_number} is archived and cannot change")


@event.listens_for(InvoiceItem, "before_update")
@event.listens_for(InvoiceItem, "before_delete")
def _invoice_items_are_write_once(mapper, connection, target):
    raise ConflictError("Invoice line items cannot change once issued")
