from typing import Any, Optional

import httpx
import structlog

from payflow.config import Settings
from payflow.errors import ProviderError, ValidationError

logger = structlog.get_logger(__name__)

TEMPLATES = (
    "booking_confirmation",
    "payment_receipt",
    "invoice_ready",
    "reminder_upcoming",
    "gdpr_export_ready",
    "gdpr_deletion_confirmed",
    "custom",
)


class EmailClient:
    """Posts templated messages to the email delivery function."""

    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.endpoint = settings.require("EMAIL_FUNCTION_URL")
        self.client = client or httpx.Client(timeout=10.0)

    def send(
        self,
        to: str,
        template: str,
        data: dict[str, Any],
        locale: str = "en-CH",
        tenant_id: Optional[str] = None,
        attachments: Optional[list[dict[str, str]]] = None,
    ) -> None:
        if template not in TEMPLATES:
            raise ValidationError(f"Unknown email template: {template}")
        body = {"to": to, "template": template, "locale": locale, "data": data}
        if tenant_id:
            body["tenantId"] = tenant_id
        if attachments:
            body["attachments"] = attachments

        try:
            response = self.client.post(self.endpoint, json=body)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise ProviderError("email", str(e))
        if response.is_error:
            raise ProviderError("email", response.text, response.status_code)
        logger.info("email.sent", template=template, tenant_id=tenant_id)
