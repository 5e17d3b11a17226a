from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from payflow.auth import Claims, require_staff, verify_cron_token, verify_token
from payflow.compliance import ComplianceWorkflow
from payflow.dependencies import (
    get_compliance_workflow,
    get_invoice_generator,
    get_orchestrator,
    get_reminder_dispatcher,
)
from payflow.errors import ForbiddenError
from payflow.invoices import InvoiceGenerator
from payflow.payments import PaymentOrchestrator
from payflow.reminders import ReminderDispatcher
from payflow.schemas import (
    ComplianceRequestIn,
    ComplianceResponse,
    ComplianceStatusResponse,
    ConsentRequest,
    ConsentResponse,
    DispatchRequest,
    DispatchSummary,
    InvoiceRequest,
    InvoiceResponse,
    ManualPaymentRequest,
    ManualPaymentResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    RefundRequest,
    RefundResponse,
    SumUpStatusResponse,
    WebhookAck,
)

router = APIRouter()


def _check_subject(claims: Claims, tenant_id: str, subject_id: str) -> None:
    claims.check_tenant(tenant_id)
    if not claims.is_staff and claims.subject != subject_id:
        raise ForbiddenError("Customers may only act on their own data")


# Payments

@router.post("/payments", response_model=PaymentIntentResponse)
def create_payment(
    request: PaymentIntentRequest,
    idempotency_key: Optional[str] = Header(None),
    claims: Claims = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    claims.check_tenant(request.tenant_id)
    return orchestrator.create_payment_intent(request, idempotency_key)


@router.post("/payments/refunds", response_model=RefundResponse)
def create_refund(
    request: RefundRequest,
    idempotency_key: Optional[str] = Header(None),
    claims: Claims = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    claims.check_tenant(request.tenant_id)
    return orchestrator.refund(request, idempotency_key, actor_id=claims.subject)


@router.post("/payments/webhooks/{provider}", response_model=WebhookAck)
async def payment_webhook(
    provider: str,
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    sumup_signature: Optional[str] = Header(None),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    payload = await request.body()
    signature = stripe_signature if provider == "stripe" else sumup_signature
    return orchestrator.handle_webhook(provider, payload, signature)


@router.get("/payments/sumup/status/{checkout_id}", response_model=SumUpStatusResponse)
def sumup_status(
    checkout_id: str,
    claims: Claims = Depends(verify_token),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.sumup_status(checkout_id, tenant_id=claims.tenant_id)


@router.post("/payments/sumup/manual", response_model=ManualPaymentResponse)
def sumup_manual_payment(
    request: ManualPaymentRequest,
    idempotency_key: Optional[str] = Header(None),
    claims: Claims = Depends(require_staff),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    claims.check_tenant(request.tenant_id)
    return orchestrator.record_manual_payment(request, idempotency_key, staff_id=claims.subject)


# Invoices

@router.post("/invoices", response_model=InvoiceResponse)
def create_invoice(
    request: InvoiceRequest,
    claims: Claims = Depends(verify_token),
    generator: InvoiceGenerator = Depends(get_invoice_generator),
):
    claims.check_tenant(request.tenant_id)
    return generator.issue_invoice(request)


# Compliance

@router.post("/compliance", response_model=ComplianceResponse)
def compliance_request(
    request: ComplianceRequestIn,
    claims: Claims = Depends(verify_token),
    workflow: ComplianceWorkflow = Depends(get_compliance_workflow),
):
    _check_subject(claims, request.tenant_id, request.subject_id)
    return workflow.process_request(request)


@router.post("/compliance/consent", response_model=ConsentResponse)
def record_consent(
    request: ConsentRequest,
    claims: Claims = Depends(verify_token),
    workflow: ComplianceWorkflow = Depends(get_compliance_workflow),
):
    _check_subject(claims, request.tenant_id, request.subject_id)
    return workflow.record_consent(request)


@router.get("/compliance/status/{request_id}", response_model=ComplianceStatusResponse)
def compliance_status(
    request_id: str,
    claims: Claims = Depends(verify_token),
    workflow: ComplianceWorkflow = Depends(get_compliance_workflow),
):
    return workflow.get_status(request_id, tenant_id=claims.tenant_id)


# Reminders

@router.post("/reminders/dispatch", response_model=DispatchSummary, dependencies=[Depends(verify_cron_token)])
def dispatch_reminders(
    request: Optional[DispatchRequest] = None,
    dispatcher: ReminderDispatcher = Depends(get_reminder_dispatcher),
):
    return dispatcher.dispatch((request or DispatchRequest()).limit)
