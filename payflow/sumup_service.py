import hashlib
import json
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from payflow.config import Settings
from payflow.errors import ConfigurationError, ProviderError, ValidationError
from payflow.money import to_major, to_minor
from payflow.providers import (
    IntentRequest,
    IntentResult,
    NormalizedEvent,
    PaymentOutcome,
    RefundResult,
    normalize_refund_status,
)
from payflow.schemas import NextAction
from payflow.signatures import verify_signature

logger = structlog.get_logger(__name__)

SUCCESS_STATUSES = ("successful", "paid")
PENDING_STATUSES = ("failed", "cancelled", "canceled", "expired")


@dataclass
class CheckoutState:
    checkout_id: str
    status: str
    amount_cents: int
    currency: str
    deeplink: Optional[str] = None


class SumUpAdapter:
    name = "sumup"

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.access_token = settings.require("SUMUP_ACCESS_TOKEN")
        self.merchant_code = settings.require("SUMUP_MERCHANT_CODE")
        self.webhook_secret = settings.get("SUMUP_WEBHOOK_SECRET")
        self.base_url = settings.get("SUMUP_API_URL", "https://api.sumup.com").rstrip("/")
        self.client = client or httpx.Client(timeout=10.0)

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = self.client.request(
                method,
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.access_token}"},
                **kwargs,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProviderError("sumup", str(e))
        return response

    @staticmethod
    def _json(response: httpx.Response):
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            raise ProviderError("sumup", response.text, response.status_code)

    def create_intent(self, request: IntentRequest) -> IntentResult:
        # Same ledger key -> same reference, so a retry finds the checkout instead of duplicating it.
        reference = hashlib.sha256(request.idempotency_key.encode()).hexdigest()[:32]
        response = self._request("POST", "/v0.1/checkouts", json={
            "amount": float(to_major(request.amount_cents)),
            "currency": request.currency.upper(),
            "checkout_reference": reference,
            "merchant_code": self.merchant_code,
            "description": f"Order {request.order_id}",
            "hosted_checkout": {"enabled": True},
        })

        if response.status_code == 409:
            checkout = self._find_by_reference(reference)
        elif response.is_error:
            logger.error("sumup.create_checkout_failed", order_id=request.order_id, status=response.status_code)
            raise ProviderError("sumup", response.text, response.status_code)
        else:
            checkout = self._json(response)

        checkout_id = checkout.get("id") or checkout.get("checkout_reference") or reference
        url = checkout.get("hosted_checkout_url") or checkout.get("checkout_url")
        return IntentResult(
            provider_id=checkout_id,
            status="pending",
            checkout_url=url,
            next_action=NextAction(type="app-switch", url=url) if url else None,
        )

    def _find_by_reference(self, reference: str) -> dict:
        response = self._request("GET", "/v0.1/checkouts", params={"checkout_reference": reference})
        if response.is_error:
            raise ProviderError("sumup", response.text, response.status_code)
        found = self._json(response)
        if isinstance(found, list):
            found = found[0] if found else None
        if not found:
            raise ProviderError("sumup", f"checkout {reference} reported as duplicate but not found")
        return found

    def get_checkout(self, checkout_id: str) -> CheckoutState:
        response = self._request("GET", f"/v0.1/checkouts/{checkout_id}")
        if response.is_error:
            raise ProviderError("sumup", response.text, response.status_code)
        checkout = self._json(response)
        return CheckoutState(
            checkout_id=checkout_id,
            status=str(checkout.get("status", "pending")).lower(),
            amount_cents=to_minor(checkout.get("amount", 0)),
            currency=checkout.get("currency", ""),
            deeplink=checkout.get("hosted_checkout_url") or checkout.get("checkout_url"),
        )

    def refund(self, transaction, amount_cents: Optional[int], reason: Optional[str],
               idempotency_key: Optional[str] = None) -> RefundResult:
        extras = (transaction.details or {}).get("extras") or {}
        transaction_code = extras.get("transaction_code") or transaction.provider_payment_id
        body = {}
        if amount_cents is not None:
            body["amount"] = float(to_major(amount_cents))

        response = self._request("POST", f"/v0.1/me/refund/{transaction_code}", json=body)
        if response.is_error:
            logger.error("sumup.refund_failed", transaction_id=transaction.id, status=response.status_code)
            raise ProviderError("sumup", response.text, response.status_code)

        data = self._json(response)
        refund_id = data.get("id") or f"{transaction_code}:refund:{amount_cents or 'full'}"
        # SumUp answers 204 once the refund is accepted.
        status = normalize_refund_status(data.get("status")) if data.get("status") else "succeeded"
        return RefundResult(provider_refund_id=refund_id, status=status)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str],
                                 secret: Optional[str] = None) -> bool:
        secret = secret or self.webhook_secret
        if not secret:
            raise ConfigurationError("SUMUP_WEBHOOK_SECRET is not set. Check your .env file.")
        return verify_signature(raw_body, signature_header, secret)

    def parse_event(self, raw_body: bytes) -> NormalizedEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Invalid payload")
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ValidationError("SumUp event without id")

        status = str(payload.get("status") or "pending").lower()
        # SumUp reuses the checkout id across status changes, so the status is part of the event identity.
        event_id = payload.get("event_id") or f"{payload['id']}:{status}"
        checkout_id = payload.get("checkout_id") or payload["id"]

        if status in SUCCESS_STATUSES:
            outcome = PaymentOutcome.SUCCEEDED
        elif status in PENDING_STATUSES:
            outcome = PaymentOutcome.PENDING
        else:
            outcome = PaymentOutcome.IGNORED

        metadata = payload.get("metadata") or {}
        amount = payload.get("amount")
        return NormalizedEvent(
            provider=self.name,
            event_id=event_id,
            event_type=payload.get("event_type") or "CHECKOUT_STATUS_CHANGED",
            outcome=outcome,
            provider_payment_id=checkout_id,
            amount_cents=to_minor(amount) if amount is not None else None,
            currency=payload.get("currency"),
            status="succeeded" if outcome is PaymentOutcome.SUCCEEDED else status,
            order_id=metadata.get("order_id") or metadata.get("orderId"),
            tenant_id=metadata.get("tenant_id") or metadata.get("tenantId"),
            payload=payload,
        )
