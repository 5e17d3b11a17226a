from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

Scalar = Union[str, int, float, bool]
Provider = Literal["stripe", "sumup"]
Initiator = Literal["customer", "staff", "system"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TransactionMetadata(CamelModel):
    """Known metadata fields; anything else lands in ``extras`` as a scalar."""

    item_name: Optional[str] = None
    source: Optional[str] = None
    manual: Optional[bool] = None
    notes: Optional[str] = None
    provider_status: Optional[str] = None
    event_type: Optional[str] = None
    event_id: Optional[str] = None
    extras: dict[str, Scalar] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_extras(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set()
        for name, info in cls.model_fields.items():
            known.add(name)
            if info.alias:
                known.add(info.alias)
        values = {k: v for k, v in data.items() if k in known}
        extras = dict(values.get("extras") or {})
        for key, value in data.items():
            if key in known:
                continue
            if isinstance(value, (str, int, float, bool)):
                extras[key] = value
        values["extras"] = extras
        return values

    def flatten(self) -> dict[str, Scalar]:
        values = {k: v for k, v in self.model_dump(exclude={"extras"}).items() if v is not None}
        for key, value in self.extras.items():
            values.setdefault(key, value)
        return values


class NextAction(CamelModel):
    type: Literal["redirect", "use-sdk", "app-switch"]
    url: Optional[str] = None


# Payments

class PaymentIntentRequest(CamelModel):
    tenant_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    amount_cents: int = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    customer_email: EmailStr
    customer_name: Optional[str] = None
    locale: Optional[str] = None
    mode: Literal["payment_intent", "checkout_session"] = "payment_intent"
    provider: Provider = "stripe"
    appointment_id: Optional[str] = None
    metadata: TransactionMetadata = Field(default_factory=TransactionMetadata)


class PaymentIntentResponse(CamelModel):
    provider: Provider
    intent_id: str
    transaction_id: str
    status: str
    amount_cents: int
    currency: str
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    next_action: Optional[NextAction] = None


class RefundRequest(CamelModel):
    tenant_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    transaction_id: str = Field(min_length=1)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    reason: Optional[str] = None
    initiated_by: Initiator


class RefundResponse(CamelModel):
    refund_id: str
    transaction_id: str
    status: str
    amount_cents: int
    currency: str
    provider: Provider


class WebhookAck(CamelModel):
    received: bool = True
    duplicate: bool = False
    event_id: Optional[str] = None


class SumUpStatusResponse(CamelModel):
    checkout_id: str
    status: str
    amount_cents: int
    currency: str
    last_polled_at: datetime
    deeplink: Optional[str] = None


class ManualPaymentRequest(CamelModel):
    tenant_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    checkout_id: str = Field(min_length=1)
    staff_id: Optional[str] = None
    notes: Optional[str] = None


class ManualPaymentResponse(CamelModel):
    ok: bool = True
    transaction_id: str
    order_status: str


# Invoices

class InvoiceRequest(CamelModel):
    tenant_id: str = Field(min_length=1)
    order_id: str = Field(min_length=1)
    locale: str = "en-CH"
    due_date: Optional[datetime] = None
    send_email: bool = False
    email_override: Optional[EmailStr] = None


class InvoiceLineItem(CamelModel):
    description: str
    quantity: int
    unit_price_cents: int
    vat_rate: Optional[float] = None


class VatLine(CamelModel):
    rate: float
    amount_cents: int
    label: Optional[str] = None


class InvoiceResponse(CamelModel):
    invoice_id: str
    invoice_number: str
    issued_at: datetime
    due_date: datetime
    total_cents: int
    currency: str
    reference: str
    qr_bill_payload: str
    checksum: str
    line_items: list[InvoiceLineItem]
    vat_summary: list[VatLine]


# Compliance

class ComplianceRequestIn(CamelModel):
    tenant_id: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    type: Literal["export", "delete"]
    initiated_by: Initiator = "customer"
    reason: Optional[str] = None


class ComplianceResponse(CamelModel):
    request_id: str
    status: str
    export_url: Optional[str] = None


class ConsentRequest(CamelModel):
    tenant_id: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    consent_type: str = Field(min_length=1)
    granted: bool
    metadata: dict[str, Scalar] = Field(default_factory=dict)


class ConsentResponse(CamelModel):
    ok: bool = True
    consent_id: str


class ComplianceStatusResponse(CamelModel):
    request_id: str
    status: str
    export_url: Optional[str] = None
    completed_at: Optional[datetime] = None


# Reminders

class DispatchRequest(CamelModel):
    limit: int = Field(default=25, ge=1, le=100)


class DispatchSummary(CamelModel):
    selected: int = 0
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    recovered: int = 0
    purged: int = 0
