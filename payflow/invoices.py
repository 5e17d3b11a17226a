"""
Invoice issuance.

One invoice per order, forever: issuance runs under the ledger key
``invoice:{orderId}`` with a TTL far beyond any retry window. Numbers are
``{year}-{sequence}`` per tenant, the sequence restarting at 001 each
calendar year. Issued invoices carry an archive checksum and are immutable.
"""
import base64
import hashlib
import json
from datetime import date, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.audit import canonical_json, record_audit
from payflow.config import Settings
from payflow.errors import ConfigurationError, ConflictError, ProviderError
from payflow.idempotency import INVOICE_TTL, IdempotencyLedger, derive_key
from payflow.models import Invoice, InvoiceArchive, InvoiceItem, Profile, VatSetting, utcnow
from payflow.money import format_major, round_half_up
from payflow.notifications import EmailClient
from payflow.orders import get_order
from payflow.qrbill import Address, build_qr_bill, creditor_reference, encode_payload
from payflow.schemas import InvoiceLineItem, InvoiceRequest, InvoiceResponse, VatLine

logger = structlog.get_logger(__name__)

PAYMENT_TERM = timedelta(days=30)


def compute_vat(total_cents: int, rate) -> int:
    """VAT contained in a VAT-inclusive total, rounded to the nearest minor unit."""
    total = Decimal(total_cents)
    return round_half_up(total - total / (1 + Decimal(str(rate)) / 100))


def current_vat_setting(db: Session, tenant_id: str, today: date) -> Optional[VatSetting]:
    return db.execute(
        select(VatSetting)
        .where(VatSetting.tenant_id == tenant_id, VatSetting.effective_from <= today)
        .order_by(VatSetting.effective_from.desc())
        .limit(1)
    ).scalar_one_or_none()


def next_invoice_number(db: Session, tenant_id: str, year: int) -> str:
    numbers = db.execute(
        select(Invoice.invoice_number).where(
            Invoice.tenant_id == tenant_id,
            Invoice.invoice_number.like(f"{year}-%"),
        )
    ).scalars()
    sequences = []
    for number in numbers:
        suffix = number.split("-", 1)[1]
        if suffix.isdigit():
            sequences.append(int(suffix))
    return f"{year}-{max(sequences, default=0) + 1:03d}"


def invoice_checksum(invoice_number: str) -> str:
    return hashlib.sha256(canonical_json({"invoiceNumber": invoice_number}).encode()).hexdigest()


class InvoiceGenerator:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        email_client: Optional[EmailClient] = None,
        now: Callable = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.now = now
        self.ledger = IdempotencyLedger(db, now)
        self._email_client = email_client
        self.iban = settings.require("BILLING_IBAN")
        self.creditor = Address(
            name=settings.require("BILLING_COMPANY_NAME"),
            street=settings.require("BILLING_COMPANY_ADDRESS"),
            postal_code=settings.require("BILLING_COMPANY_POSTAL_CODE"),
            city=settings.require("BILLING_COMPANY_CITY"),
            country=settings.require("BILLING_COMPANY_COUNTRY"),
        )
        self._outbox = None

    def issue_invoice(self, request: InvoiceRequest) -> InvoiceResponse:
        self._outbox = None
        result = self.ledger.execute(
            derive_key("invoice", request.order_id),
            INVOICE_TTL,
            lambda: self._issue(request),
            InvoiceResponse,
            tenant_id=request.tenant_id,
        )
        # Only notify for an invoice this call actually committed.
        if self._outbox is not None and self._outbox[1].invoice_id == result.invoice_id:
            self._notify(*self._outbox)
        return result

    def _issue(self, request: InvoiceRequest) -> InvoiceResponse:
        order = get_order(self.db, request.tenant_id, request.order_id)
        billing = order.billing or {}
        issued_at = self.now()

        items = [
            InvoiceLineItem(description=i.description, quantity=i.quantity, unit_price_cents=i.unit_price_cents)
            for i in order.items
        ] or [InvoiceLineItem(description=f"Order {order.id}", quantity=1, unit_price_cents=order.total_cents)]

        vat = current_vat_setting(self.db, request.tenant_id, issued_at.date())
        rate = vat.rate if vat is not None and vat.rate else None
        vat_summary = []
        if rate:
            vat_summary.append(VatLine(rate=float(rate), amount_cents=compute_vat(order.total_cents, rate),
                                       label=vat.label))
            for item in items:
                item.vat_rate = float(rate)

        if request.due_date is not None:
            due_at = request.due_date
            if due_at.tzinfo is not None:
                due_at = due_at.astimezone(timezone.utc).replace(tzinfo=None)
        else:
            due_at = issued_at + PAYMENT_TERM

        number = next_invoice_number(self.db, request.tenant_id, issued_at.year)
        reference = creditor_reference(number)
        qr_bill = encode_payload(build_qr_bill(
            iban=self.iban,
            creditor=self.creditor,
            reference=reference,
            amount_cents=order.total_cents,
            currency=order.currency,
            debtor=self._debtor(order, billing),
            message=f"Invoice {number}",
        ))

        invoice = Invoice(
            tenant_id=request.tenant_id,
            order_id=order.id,
            invoice_number=number,
            issued_at=issued_at,
            due_at=due_at,
            currency=order.currency,
            total_cents=order.total_cents,
            vat_summary=[line.model_dump(mode="json", by_alias=True) for line in vat_summary],
            qr_bill_payload=qr_bill,
            locale=request.locale,
            archived_at=issued_at,
        )
        self.db.add(invoice)
        try:
            self.db.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Invoice number {number} was allocated concurrently, retry") from exc

        for position, item in enumerate(items):
            self.db.add(InvoiceItem(
                invoice_id=invoice.id,
                position=position,
                description=item.description,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                vat_rate=rate,
            ))

        checksum = invoice_checksum(number)
        self.db.add(InvoiceArchive(
            invoice_id=invoice.id,
            storage_path=f"invoices/{invoice.id}.json",
            checksum=checksum,
        ))
        record_audit(
            self.db,
            tenant_id=request.tenant_id,
            actor_role="system",
            action="invoice.generated",
            resource=invoice.id,
            changes={"invoiceNumber": number, "orderId": order.id},
        )
        logger.info("invoice.generated", invoice_number=number, order_id=order.id)

        response = InvoiceResponse(
            invoice_id=invoice.id,
            invoice_number=number,
            issued_at=issued_at,
            due_date=due_at,
            total_cents=order.total_cents,
            currency=order.currency,
            reference=reference,
            qr_bill_payload=qr_bill,
            checksum=checksum,
            line_items=items,
            vat_summary=vat_summary,
        )
        recipient = request.email_override or billing.get("email")
        if request.send_email and recipient:
            self._outbox = (request, response, recipient)
        return response

    def _debtor(self, order, billing: dict) -> Optional[Address]:
        profile = self.db.get(Profile, order.customer_id) if order.customer_id else None
        name = billing.get("name") or (profile.full_name if profile is not None else None)
        if not name and profile is None:
            return None
        return Address(
            name=name or "Customer",
            street=billing.get("address", ""),
            postal_code=billing.get("postal", ""),
            city=billing.get("city", ""),
            country=billing.get("country", "CH"),
        )

    def _notify(self, request: InvoiceRequest, invoice: InvoiceResponse, recipient: str) -> None:
        document = invoice.model_dump(mode="json", by_alias=True)
        try:
            client = self._email_client or EmailClient(self.settings)
            client.send(
                to=recipient,
                template="invoice_ready",
                locale=request.locale,
                tenant_id=request.tenant_id,
                data={
                    "invoiceNumber": invoice.invoice_number,
                    "amount": format_major(invoice.total_cents),
                    "currency": invoice.currency,
                    "dueDate": document["dueDate"],
                },
                attachments=[{
                    "filename": f"invoice-{invoice.invoice_number}.json",
                    "content": base64.b64encode(json.dumps(document).encode()).decode("ascii"),
                    "type": "application/json",
                }],
            )
        except (ProviderError, ConfigurationError) as e:
            # The invoice is already committed; only the notification is lost.
            logger.warning("invoice.email_failed", invoice_number=invoice.invoice_number, error=e.message)
