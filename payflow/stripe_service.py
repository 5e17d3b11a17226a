import json
from typing import Optional

import stripe
import structlog

from payflow.config import Settings
from payflow.errors import ConfigurationError, ProviderError, ValidationError
from payflow.providers import (
    IntentRequest,
    IntentResult,
    NormalizedEvent,
    PaymentOutcome,
    RefundResult,
    normalize_refund_status,
)
from payflow.schemas import NextAction
from payflow.signatures import DEFAULT_TOLERANCE

logger = structlog.get_logger(__name__)

STRIPE_REFUND_REASONS = ("duplicate", "fraudulent", "requested_by_customer")

SUCCESS_EVENTS = (
    "payment_intent.succeeded",
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)
PENDING_EVENTS = (
    "payment_intent.requires_action",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
)
REFUND_EVENTS = ("charge.refunded",)


def _raw(error: stripe.StripeError) -> str:
    return error.http_body or error.user_message or str(error)


class StripeAdapter:
    name = "stripe"

    def __init__(self, settings: Settings):
        self.settings = settings
        self.api_key = settings.require("STRIPE_SECRET_KEY")
        self.webhook_secret = settings.get("STRIPE_WEBHOOK_SECRET")

    def create_intent(self, request: IntentRequest) -> IntentResult:
        try:
            if request.mode == "checkout_session":
                return self._create_checkout(request)
            return self._create_payment_intent(request)
        except stripe.StripeError as e:
            logger.error("stripe.create_intent_failed", order_id=request.order_id, error=str(e))
            raise ProviderError("stripe", _raw(e), e.http_status)

    def _create_payment_intent(self, request: IntentRequest) -> IntentResult:
        intent = stripe.PaymentIntent.create(
            api_key=self.api_key,
            amount=request.amount_cents,
            currency=request.currency.lower(),
            automatic_payment_methods={"enabled": True},
            payment_method_options={"card": {"request_three_d_secure": "any"}},
            receipt_email=request.customer_email,
            description=f"Order {request.order_id}",
            metadata=request.provider_metadata(),
            idempotency_key=request.idempotency_key,
        )

        next_action = None
        raw_action = getattr(intent, "next_action", None)
        if raw_action:
            if raw_action.get("type") == "redirect_to_url":
                redirect = raw_action.get("redirect_to_url") or {}
                next_action = NextAction(type="redirect", url=redirect.get("url"))
            elif raw_action.get("type") == "use_stripe_sdk":
                next_action = NextAction(type="use-sdk")

        return IntentResult(
            provider_id=intent.id,
            status=intent.status,
            client_secret=intent.client_secret,
            next_action=next_action,
        )

    def _create_checkout(self, request: IntentRequest) -> IntentResult:
        success_url = self.settings.require("CHECKOUT_SUCCESS_URL")
        cancel_url = self.settings.require("CHECKOUT_CANCEL_URL")
        metadata = request.provider_metadata()

        session = stripe.checkout.Session.create(
            api_key=self.api_key,
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            customer_email=request.customer_email,
            locale=(request.locale or "auto").split("-")[0],
            phone_number_collection={"enabled": True},
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            line_items=[{
                "price_data": {
                    "currency": request.currency.lower(),
                    "unit_amount": request.amount_cents,
                    "product_data": {"name": request.metadata.item_name or f"Order {request.order_id}"},
                },
                "quantity": 1,
            }],
            idempotency_key=request.idempotency_key,
        )

        return IntentResult(
            provider_id=getattr(session, "payment_intent", None) or session.id,
            status="requires_action",
            checkout_url=session.url,
            next_action=NextAction(type="redirect", url=session.url) if session.url else None,
        )

    def refund(self, transaction, amount_cents: Optional[int], reason: Optional[str],
               idempotency_key: Optional[str] = None) -> RefundResult:
        params = {
            "payment_intent": transaction.provider_payment_id,
            "reason": reason if reason in STRIPE_REFUND_REASONS else "requested_by_customer",
        }
        if amount_cents is not None:
            params["amount"] = amount_cents
        if reason and reason not in STRIPE_REFUND_REASONS:
            params["metadata"] = {"reason": reason}

        try:
            refund = stripe.Refund.create(api_key=self.api_key, idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            logger.error("stripe.refund_failed", transaction_id=transaction.id, error=str(e))
            raise ProviderError("stripe", _raw(e), e.http_status)

        return RefundResult(provider_refund_id=refund.id, status=normalize_refund_status(refund.status))

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str],
                                 secret: Optional[str] = None) -> bool:
        secret = secret or self.webhook_secret
        if not secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not set. Check your .env file.")
        if not signature_header:
            return False
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"), signature_header, secret, tolerance=DEFAULT_TOLERANCE
            )
        except (stripe.SignatureVerificationError, ValueError, IndexError):
            return False
        return True

    def parse_event(self, raw_body: bytes) -> NormalizedEvent:
        try:
            event = json.loads(raw_body)
            event_id = event["id"]
            event_type = event["type"]
            obj = event["data"]["object"]
        except (ValueError, KeyError, TypeError):
            raise ValidationError("Invalid payload")

        status = obj.get("status")
        if event_type in SUCCESS_EVENTS:
            paid = obj.get("object") != "checkout.session" or obj.get("payment_status") in ("paid", "no_payment_required")
            outcome = PaymentOutcome.SUCCEEDED if paid else PaymentOutcome.IGNORED
            status = "succeeded" if paid else status
        elif event_type in PENDING_EVENTS:
            outcome = PaymentOutcome.PENDING
            status = status or "requires_payment_method"
        elif event_type in REFUND_EVENTS:
            outcome = PaymentOutcome.REFUNDED
            status = "refunded"
        elif event_type.startswith("payment_intent.") and status == "succeeded":
            outcome = PaymentOutcome.SUCCEEDED
        elif event_type.startswith("payment_intent.") and status in ("requires_payment_method", "canceled"):
            outcome = PaymentOutcome.PENDING
        else:
            outcome = PaymentOutcome.IGNORED

        if obj.get("object") == "payment_intent":
            provider_payment_id = obj.get("id")
        else:
            provider_payment_id = obj.get("payment_intent") or obj.get("id")

        amount = obj.get("amount_received") or obj.get("amount") or obj.get("amount_total")
        currency = obj.get("currency")
        metadata = obj.get("metadata") or {}

        return NormalizedEvent(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            outcome=outcome,
            provider_payment_id=provider_payment_id,
            amount_cents=amount if isinstance(amount, int) else None,
            currency=currency.upper() if isinstance(currency, str) else None,
            status=status,
            order_id=metadata.get("order_id") or metadata.get("orderId"),
            tenant_id=metadata.get("tenant_id") or metadata.get("tenantId"),
            appointment_id=metadata.get("appointment_id") or metadata.get("appointmentId"),
            checkout_session_id=obj.get("id") if obj.get("object") == "checkout.session" else None,
            payload=event,
        )
