"""Append-only audit trail for state-changing actions."""
import json
from typing import Any, Optional

import structlog
from sqlalchemy.orm import Session

from payflow.models import AuditLogEntry

logger = structlog.get_logger(__name__)


def canonical_json(obj: Optional[dict]) -> str:
    return json.dumps(obj or {}, sort_keys=True, separators=(",", ":"), default=str)


def record_audit(
    db: Session,
    *,
    tenant_id: Optional[str],
    action: str,
    resource: Optional[str] = None,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    changes: Optional[dict[str, Any]] = None,
) -> AuditLogEntry:
    """Stage an audit entry in the caller's transaction.

    The entry commits or rolls back together with the change it describes.
    """
    entry = AuditLogEntry(
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        resource=resource,
        changes=json.loads(canonical_json(changes)),
    )
    db.add(entry)
    logger.info("audit.recorded", action=action, resource=resource, tenant_id=tenant_id)
    return entry
