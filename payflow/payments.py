"""
Payment orchestration.

Owns the order/payment lifecycle: create intent or checkout, record the
transaction, reconcile provider webhooks against it, and refund. Every write
path either runs inside the idempotency ledger or behind the webhook dedup
gate.
"""
from typing import Callable, Mapping, Optional

import httpx
import structlog
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from payflow.audit import record_audit
from payflow.config import Settings
from payflow.errors import ConflictError, NotFoundError, SignatureError, ValidationError
from payflow.idempotency import (
    CHECKOUT_TTL,
    MANUAL_PAYMENT_TTL,
    REFUND_TTL,
    IdempotencyLedger,
    resolve_key,
)
from payflow.models import (
    Appointment,
    Order,
    PaymentTransaction,
    Refund,
    SumUpSession,
    new_id,
    utcnow,
)
from payflow.orders import advance_order, get_order
from payflow.providers import (
    IntentRequest,
    NormalizedEvent,
    PaymentOutcome,
    PaymentProvider,
    build_provider,
)
from payflow.reporting import capture_exception
from payflow.schemas import (
    ManualPaymentRequest,
    ManualPaymentResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
    SumUpStatusResponse,
    TransactionMetadata,
    WebhookAck,
)
from payflow.webhooks import WebhookDeduplicator

logger = structlog.get_logger(__name__)

SETTLED_STATUSES = ("succeeded", "refunded")


def find_transaction(db: Session, provider: str, provider_payment_id: str) -> Optional[PaymentTransaction]:
    return db.execute(
        select(PaymentTransaction)
        .where(
            PaymentTransaction.provider == provider,
            PaymentTransaction.provider_payment_id == provider_payment_id,
        )
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def merge_details(current: Optional[dict], metadata: TransactionMetadata) -> dict:
    """Layer new metadata over what is stored; fields the update leaves unset are kept."""
    merged = dict(current or {})
    update_values = metadata.model_dump(mode="json", exclude_none=True)
    extras = {**(merged.get("extras") or {}), **update_values.pop("extras", {})}
    merged.update(update_values)
    merged["extras"] = extras
    return merged


def upsert_transaction(
    db: Session,
    *,
    tenant_id: str,
    order_id: str,
    provider: str,
    provider_payment_id: str,
    amount_cents: int,
    currency: str,
    status: str,
    metadata: TransactionMetadata,
    appointment_id: Optional[str] = None,
    now: Callable = utcnow,
) -> PaymentTransaction:
    """Insert or update the transaction on its natural key in one statement."""
    table = PaymentTransaction.__table__
    timestamp = now()
    current = find_transaction(db, provider, provider_payment_id)
    details = merge_details(current.details if current is not None else None, metadata)
    insert = pg_insert if db.get_bind().dialect.name == "postgresql" else sqlite_insert
    stmt = insert(table).values(
        id=new_id(),
        tenant_id=tenant_id,
        order_id=order_id,
        appointment_id=appointment_id,
        provider=provider,
        provider_payment_id=provider_payment_id,
        amount_cents=amount_cents,
        currency=currency.upper(),
        status=status,
        details=details,
        version=0,
        created_at=timestamp,
        updated_at=timestamp,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.provider, table.c.provider_payment_id],
        set_={
            "status": stmt.excluded.status,
            "amount_cents": stmt.excluded.amount_cents,
            "currency": stmt.excluded.currency,
            "details": stmt.excluded.details,
            "appointment_id": stmt.excluded.appointment_id if appointment_id else table.c.appointment_id,
            "version": table.c.version + 1,
            "updated_at": timestamp,
        },
    )
    db.execute(stmt)
    return find_transaction(db, provider, provider_payment_id)


class PaymentOrchestrator:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        providers: Optional[Mapping[str, PaymentProvider]] = None,
        now: Callable = utcnow,
        http_client: Optional[httpx.Client] = None,
    ):
        self.db = db
        self.settings = settings
        self.now = now
        self.http_client = http_client
        self._providers = dict(providers or {})
        self.ledger = IdempotencyLedger(db, now)
        self.dedup = WebhookDeduplicator(db, now)

    def provider(self, name: str) -> PaymentProvider:
        if name not in self._providers:
            self._providers[name] = build_provider(name, self.settings, self.http_client)
        return self._providers[name]

    # Intents

    def create_payment_intent(self, request: PaymentIntentRequest,
                              idempotency_key: Optional[str] = None) -> PaymentIntentResponse:
        key = resolve_key(idempotency_key, "payment", request.order_id, tenant_id=request.tenant_id)
        return self.ledger.execute(
            key,
            CHECKOUT_TTL,
            lambda: self._create_payment_intent(request, key),
            PaymentIntentResponse,
            tenant_id=request.tenant_id,
        )

    def _create_payment_intent(self, request: PaymentIntentRequest, key: str) -> PaymentIntentResponse:
        order = get_order(self.db, request.tenant_id, request.order_id)
        if order.status in ("paid", "refunded", "completed"):
            raise ConflictError(f"Order {order.id} is already {order.status}")

        adapter = self.provider(request.provider)
        result = adapter.create_intent(IntentRequest(
            tenant_id=request.tenant_id,
            order_id=request.order_id,
            amount_cents=request.amount_cents,
            currency=request.currency,
            customer_email=request.customer_email,
            idempotency_key=key,
            mode=request.mode,
            customer_name=request.customer_name,
            locale=request.locale,
            appointment_id=request.appointment_id,
            metadata=request.metadata,
        ))

        if request.provider == "sumup":
            self.db.merge(SumUpSession(
                checkout_id=result.provider_id,
                tenant_id=request.tenant_id,
                order_id=request.order_id,
                deeplink=result.checkout_url,
                status="pending",
                amount_cents=request.amount_cents,
                currency=request.currency.upper(),
                details=request.metadata.model_dump(mode="json"),
            ))

        transaction = upsert_transaction(
            self.db,
            tenant_id=request.tenant_id,
            order_id=request.order_id,
            provider=request.provider,
            provider_payment_id=result.provider_id,
            amount_cents=request.amount_cents,
            currency=request.currency,
            status=result.status,
            metadata=request.metadata,
            appointment_id=request.appointment_id,
            now=self.now,
        )

        order.payment_intent_id = result.provider_id
        advance_order(self.db, request.tenant_id, order.id, "pending")
        record_audit(
            self.db,
            tenant_id=request.tenant_id,
            actor_id=request.customer_email,
            actor_role="customer",
            action="payment.intent.created",
            resource=order.id,
            changes={"provider": request.provider, "transactionId": transaction.id, "status": result.status},
        )
        logger.info("payment.intent.created", order_id=order.id, provider=request.provider,
                    intent_id=result.provider_id)

        return PaymentIntentResponse(
            provider=request.provider,
            intent_id=result.provider_id,
            transaction_id=transaction.id,
            status=result.status,
            amount_cents=request.amount_cents,
            currency=request.currency,
            client_secret=result.client_secret,
            checkout_url=result.checkout_url,
            next_action=result.next_action,
        )

    # Webhooks

    def handle_webhook(self, provider_name: str, raw_body: bytes, signature: Optional[str]) -> WebhookAck:
        adapter = self.provider(provider_name)
        if not adapter.verify_webhook_signature(raw_body, signature):
            logger.warning("payment.webhook.invalid_signature", provider=provider_name)
            raise SignatureError("Invalid signature")

        event = adapter.parse_event(raw_body)
        if not self.dedup.claim(provider_name, event.event_id, event.event_type, event.payload):
            return WebhookAck(duplicate=True, event_id=event.event_id)

        try:
            self.reconcile_webhook(event)
            self.db.commit()
        except Exception as exc:
            # The marker is durable; acknowledge anyway so the provider does not redeliver forever.
            self.db.rollback()
            logger.exception("payment.webhook.failed", provider=provider_name, event_id=event.event_id)
            capture_exception(exc, provider=provider_name, event_id=event.event_id)
            self.dedup.record_failure(provider_name, event.event_id, str(exc))
            record_audit(
                self.db,
                tenant_id=event.tenant_id,
                actor_role="system",
                action="payment.webhook.failed",
                resource=event.event_id,
                changes={"provider": provider_name, "eventType": event.event_type, "error": str(exc)},
            )
            self.db.commit()

        return WebhookAck(event_id=event.event_id)

    def reconcile_webhook(self, event: NormalizedEvent) -> Optional[PaymentTransaction]:
        order_id, tenant_id, appointment_id = event.order_id, event.tenant_id, event.appointment_id
        amount, currency = event.amount_cents, event.currency

        existing = None
        if event.provider_payment_id:
            existing = find_transaction(self.db, event.provider, event.provider_payment_id)
        if event.checkout_session_id and event.checkout_session_id != event.provider_payment_id:
            existing = self._adopt_checkout_transaction(event, existing)
        if existing is not None:
            order_id = order_id or existing.order_id
            tenant_id = tenant_id or existing.tenant_id
            appointment_id = appointment_id or existing.appointment_id
            amount = amount or existing.amount_cents
            currency = currency or existing.currency

        session = None
        if event.provider == "sumup" and event.provider_payment_id:
            session = self.db.get(SumUpSession, event.provider_payment_id)
            if session is not None:
                order_id = order_id or session.order_id
                tenant_id = tenant_id or session.tenant_id
                amount = amount or session.amount_cents
                currency = currency or session.currency
                session.status = event.status if event.outcome is not PaymentOutcome.SUCCEEDED else "successful"

        if not (event.provider_payment_id and order_id and tenant_id and amount and currency):
            logger.warning("payment.webhook.unmatched", provider=event.provider, event_id=event.event_id,
                           provider_payment_id=event.provider_payment_id)
            return None

        status = event.status or "unknown"
        if (existing is not None and existing.status in SETTLED_STATUSES
                and event.outcome is not PaymentOutcome.REFUNDED):
            # A late or out-of-order event never moves a settled transaction back.
            status = existing.status

        metadata = TransactionMetadata(
            provider_status=event.status,
            event_type=event.event_type,
            event_id=event.event_id,
            extras={k: v for k, v in {"transaction_code": event.payload.get("transaction_code")}.items() if v},
        )
        transaction = upsert_transaction(
            self.db,
            tenant_id=tenant_id,
            order_id=order_id,
            provider=event.provider,
            provider_payment_id=event.provider_payment_id,
            amount_cents=amount,
            currency=currency,
            status=status,
            metadata=metadata,
            appointment_id=appointment_id,
            now=self.now,
        )

        if event.outcome is PaymentOutcome.SUCCEEDED:
            advance_order(self.db, tenant_id, order_id, "paid", actor_role="system")
            if appointment_id:
                self.db.execute(
                    update(Appointment)
                    .where(Appointment.id == appointment_id, Appointment.status != "cancelled")
                    .values(status="confirmed")
                )
        elif event.outcome is PaymentOutcome.PENDING:
            advance_order(self.db, tenant_id, order_id, "pending", actor_role="system")
            if event.provider == "sumup":
                record_audit(
                    self.db,
                    tenant_id=tenant_id,
                    actor_role="system",
                    action="payment.sumup.failed",
                    resource=order_id,
                    changes={"status": event.status},
                )
        elif event.outcome is PaymentOutcome.REFUNDED:
            advance_order(self.db, tenant_id, order_id, "refunded", actor_role="system")

        logger.info("payment.webhook.reconciled", provider=event.provider, event_id=event.event_id,
                    order_id=order_id, outcome=event.outcome.value)
        return transaction

    def _adopt_checkout_transaction(self, event: NormalizedEvent,
                                    existing: Optional[PaymentTransaction]) -> Optional[PaymentTransaction]:
        """Move a transaction recorded under its Checkout Session id onto the payment intent id.

        Stripe only creates the payment intent once the customer pays, so the
        row written at checkout creation is keyed on ``cs_...``.
        """
        session_row = find_transaction(self.db, event.provider, event.checkout_session_id)
        if session_row is None or event.provider_payment_id is None:
            return existing

        if existing is None:
            session_row.provider_payment_id = event.provider_payment_id
            existing = session_row
        else:
            # A payment_intent event already created the intent row; the checkout row is redundant.
            existing.details = merge_details(session_row.details, TransactionMetadata.model_validate(
                existing.details or {}))
            existing.appointment_id = existing.appointment_id or session_row.appointment_id
            self.db.delete(session_row)

        self.db.execute(
            update(Order)
            .where(Order.id == existing.order_id, Order.payment_intent_id == event.checkout_session_id)
            .values(payment_intent_id=event.provider_payment_id)
        )
        self.db.flush()
        logger.info("payment.checkout.rekeyed", checkout_session_id=event.checkout_session_id,
                    intent_id=event.provider_payment_id, transaction_id=existing.id)
        return existing

    # Refunds

    def refund(self, request: RefundRequest, idempotency_key: Optional[str] = None,
               actor_id: Optional[str] = None) -> RefundResponse:
        key = resolve_key(idempotency_key, "refund", request.transaction_id, request.amount_cents or "full",
                          tenant_id=request.tenant_id)
        return self.ledger.execute(
            key,
            REFUND_TTL,
            lambda: self._refund(request, key, actor_id),
            RefundResponse,
            tenant_id=request.tenant_id,
        )

    def _refund(self, request: RefundRequest, key: str, actor_id: Optional[str]) -> RefundResponse:
        transaction = self.db.get(PaymentTransaction, request.transaction_id)
        if (transaction is None or transaction.tenant_id != request.tenant_id
                or transaction.order_id != request.order_id):
            raise NotFoundError("Transaction not found")
        if transaction.status not in SETTLED_STATUSES:
            raise ValidationError(f"Transaction is {transaction.status} and cannot be refunded")

        already = sum(r.amount_cents for r in transaction.refunds if r.status in ("pending", "succeeded"))
        remaining = transaction.amount_cents - already
        amount = request.amount_cents
        if amount is not None and amount > transaction.amount_cents:
            raise ValidationError(
                f"Refund amount {amount} exceeds original amount {transaction.amount_cents}")
        if remaining <= 0:
            raise ValidationError("Transaction is already fully refunded")
        if amount is not None and amount > remaining:
            raise ValidationError(f"Refund amount {amount} exceeds refundable remainder {remaining}")

        # Claim the row before calling out: a concurrent refund on the same
        # transaction either waits on this write or finds the version moved.
        claimed = self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction.id,
                   PaymentTransaction.version == transaction.version)
            .values(version=PaymentTransaction.version + 1)
        )
        if claimed.rowcount == 0:
            raise ConflictError("Transaction changed concurrently, retry the refund")

        provider_amount = amount if amount is not None or already == 0 else remaining
        adapter = self.provider(transaction.provider)
        result = adapter.refund(transaction, provider_amount, request.reason, idempotency_key=key)

        refund = Refund(
            transaction_id=transaction.id,
            provider_refund_id=result.provider_refund_id,
            amount_cents=provider_amount if provider_amount is not None else remaining,
            status=result.status,
            reason=request.reason,
            initiated_by=request.initiated_by,
        )
        self.db.add(refund)

        if result.status != "failed":
            transaction.status = "refunded"
            advance_order(self.db, request.tenant_id, request.order_id, "refunded",
                          actor_id=actor_id, actor_role=request.initiated_by)
        self.db.flush()

        record_audit(
            self.db,
            tenant_id=request.tenant_id,
            actor_id=actor_id,
            actor_role=request.initiated_by,
            action="payment.refund.created",
            resource=request.order_id,
            changes={"refundId": refund.id, "transactionId": transaction.id, "status": refund.status,
                     "amountCents": refund.amount_cents},
        )
        logger.info("payment.refund.created", refund_id=refund.id, transaction_id=transaction.id,
                    status=refund.status)

        return RefundResponse(
            refund_id=refund.id,
            transaction_id=transaction.id,
            status=refund.status,
            amount_cents=refund.amount_cents,
            currency=transaction.currency,
            provider=transaction.provider,
        )

    # SumUp extras

    def sumup_status(self, checkout_id: str, tenant_id: Optional[str] = None) -> SumUpStatusResponse:
        session = self.db.get(SumUpSession, checkout_id)
        if session is not None and tenant_id is not None and session.tenant_id != tenant_id:
            raise NotFoundError("Checkout not found")

        state = self.provider("sumup").get_checkout(checkout_id)
        polled_at = self.now()
        if session is not None:
            session.status = state.status
            session.last_polled_at = polled_at
            if state.deeplink:
                session.deeplink = state.deeplink
            self.db.commit()

        return SumUpStatusResponse(
            checkout_id=checkout_id,
            status=state.status,
            amount_cents=state.amount_cents,
            currency=state.currency,
            last_polled_at=polled_at,
            deeplink=state.deeplink,
        )

    def record_manual_payment(self, request: ManualPaymentRequest, idempotency_key: Optional[str] = None,
                              staff_id: Optional[str] = None) -> ManualPaymentResponse:
        key = resolve_key(idempotency_key, "sumup-manual", request.checkout_id, tenant_id=request.tenant_id)
        return self.ledger.execute(
            key,
            MANUAL_PAYMENT_TTL,
            lambda: self._record_manual_payment(request, staff_id or request.staff_id),
            ManualPaymentResponse,
            tenant_id=request.tenant_id,
        )

    def _record_manual_payment(self, request: ManualPaymentRequest, staff_id: Optional[str]) -> ManualPaymentResponse:
        order = get_order(self.db, request.tenant_id, request.order_id)
        session = self.db.get(SumUpSession, request.checkout_id)
        if session is not None and session.order_id != order.id:
            raise ValidationError("Checkout belongs to a different order")

        if session is not None:
            session.status = "successful"
            session.details = {**(session.details or {}), "manual": True, "notes": request.notes}
            amount, currency = session.amount_cents, session.currency
        else:
            amount, currency = order.total_cents, order.currency

        transaction = upsert_transaction(
            self.db,
            tenant_id=request.tenant_id,
            order_id=order.id,
            provider="sumup",
            provider_payment_id=request.checkout_id,
            amount_cents=amount,
            currency=currency,
            status="succeeded",
            metadata=TransactionMetadata(manual=True, notes=request.notes, source="staff"),
            now=self.now,
        )
        advance_order(self.db, request.tenant_id, order.id, "paid", actor_id=staff_id, actor_role="staff")
        record_audit(
            self.db,
            tenant_id=request.tenant_id,
            actor_id=staff_id,
            actor_role="staff",
            action="payment.sumup.manual_recorded",
            resource=order.id,
            changes={"checkoutId": request.checkout_id, "notes": request.notes},
        )
        self.db.flush()
        self.db.refresh(order)

        return ManualPaymentResponse(transaction_id=transaction.id, order_status=order.status)
