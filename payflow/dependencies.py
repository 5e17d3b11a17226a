"""FastAPI dependency providers wiring sessions and configuration into the services."""
from fastapi import Depends
from sqlalchemy.orm import Session

from payflow.compliance import ComplianceWorkflow
from payflow.config import Settings, get_settings
from payflow.database import get_db
from payflow.invoices import InvoiceGenerator
from payflow.notifications import EmailClient
from payflow.payments import PaymentOrchestrator
from payflow.reminders import EmailChannel, ReminderDispatcher, WebhookChannel


def get_orchestrator(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return PaymentOrchestrator(db, settings)


def get_invoice_generator(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    return InvoiceGenerator(db, settings)


def get_compliance_workflow(db: Session = Depends(get_db)):
    return ComplianceWorkflow(db)


def get_reminder_dispatcher(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)):
    channels = {
        "email": EmailChannel(EmailClient(settings)),
        "webhook": WebhookChannel(),
    }
    return ReminderDispatcher(db, channels)
