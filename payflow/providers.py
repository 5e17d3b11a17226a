"""Provider-neutral types shared by the payment adapters."""
import enum
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from payflow.config import Settings
from payflow.errors import ValidationError
from payflow.schemas import NextAction, TransactionMetadata

PROVIDERS = ("stripe", "sumup")


class PaymentOutcome(str, enum.Enum):
    SUCCEEDED = "succeeded"
    PENDING = "pending"        # requires action, cancelled or failed: order goes back to pending
    REFUNDED = "refunded"
    IGNORED = "ignored"


@dataclass
class IntentRequest:
    tenant_id: str
    order_id: str
    amount_cents: int
    currency: str
    customer_email: str
    idempotency_key: str
    mode: str = "payment_intent"
    customer_name: Optional[str] = None
    locale: Optional[str] = None
    appointment_id: Optional[str] = None
    metadata: TransactionMetadata = field(default_factory=TransactionMetadata)

    def provider_metadata(self) -> dict[str, str]:
        values = {"order_id": self.order_id, "tenant_id": self.tenant_id}
        if self.appointment_id:
            values["appointment_id"] = self.appointment_id
        for key, value in self.metadata.flatten().items():
            values.setdefault(key, str(value))
        return values


@dataclass
class IntentResult:
    provider_id: str
    status: str
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None
    next_action: Optional[NextAction] = None


@dataclass
class RefundResult:
    provider_refund_id: str
    status: str  # pending | succeeded | failed


@dataclass
class NormalizedEvent:
    provider: str
    event_id: str
    event_type: str
    outcome: PaymentOutcome
    provider_payment_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    order_id: Optional[str] = None
    tenant_id: Optional[str] = None
    appointment_id: Optional[str] = None
    checkout_session_id: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    name: str

    def create_intent(self, request: IntentRequest) -> IntentResult: ...

    def refund(self, transaction, amount_cents: Optional[int], reason: Optional[str],
               idempotency_key: Optional[str] = None) -> RefundResult: ...

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str],
                                 secret: Optional[str] = None) -> bool: ...

    def parse_event(self, raw_body: bytes) -> NormalizedEvent: ...


def normalize_refund_status(status: Optional[str]) -> str:
    if status in ("succeeded", "successful"):
        return "succeeded"
    if status in ("failed", "canceled", "cancelled"):
        return "failed"
    return "pending"


def build_provider(name: str, settings: Settings, http_client: Optional[httpx.Client] = None) -> PaymentProvider:
    if name == "stripe":
        from payflow.stripe_service import StripeAdapter
        return StripeAdapter(settings)
    if name == "sumup":
        from payflow.sumup_service import SumUpAdapter
        return SumUpAdapter(settings, client=http_client)
    raise ValidationError(f"Unsupported payment provider: {name}")
