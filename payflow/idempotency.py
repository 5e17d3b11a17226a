"""
Idempotency ledger.

Records the outcome of a logical operation under a key and replays the stored
result instead of re-executing it. The ledger row is committed in the same
database transaction as the operation's own writes, so a failed operation
leaves nothing behind and a later retry with the same key runs again.
"""
import hashlib
from datetime import timedelta
from typing import Callable, Optional, Type, TypeVar

import structlog
from pydantic import BaseModel
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from payflow.errors import ConflictError
from payflow.models import IdempotencyRecord, utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=BaseModel)

CHECKOUT_TTL = 30 * 60
REFUND_TTL = 24 * 60 * 60
MANUAL_PAYMENT_TTL = 24 * 60 * 60
COMPLIANCE_TTL = 60 * 60
# One invoice per order, forever (relative to normal usage).
INVOICE_TTL = 100 * 365 * 24 * 60 * 60


def derive_key(scope: str, *parts) -> str:
    return ":".join([scope, *(str(part) for part in parts)])


def resolve_key(header: Optional[str], scope: str, *parts, tenant_id: str) -> str:
    """Prefer the caller's Idempotency-Key header, else a deterministic fallback.

    Header keys are chosen by clients, so they are namespaced per tenant.
    """
    if header and header.strip():
        return derive_key(scope, tenant_id, "key", header.strip())
    return derive_key(scope, *parts)


class IdempotencyLedger:
    def __init__(self, db: Session, now: Callable = utcnow):
        self.db = db
        self.now = now

    def lookup(self, key: str, tenant_id: Optional[str] = None) -> Optional[dict]:
        record = self.db.execute(
            select(IdempotencyRecord)
            .where(IdempotencyRecord.key == key)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if record is None or record.expires_at <= self.now():
            return None
        if tenant_id is not None and record.tenant_id is not None and record.tenant_id != tenant_id:
            logger.warning("idempotency.tenant_mismatch", idempotency_key=key, tenant_id=tenant_id)
            raise ConflictError("Idempotency key is already in use")
        return record.response

    def execute(
        self,
        key: str,
        ttl: int,
        operation: Callable[[], T],
        schema: Type[T],
        tenant_id: Optional[str] = None,
    ) -> T:
        stored = self.lookup(key, tenant_id)
        if stored is not None:
            logger.info("idempotency.replayed", idempotency_key=key)
            return schema.model_validate(stored)

        try:
            result = operation()
            self._store(key, ttl, result.model_dump(mode="json", by_alias=True), tenant_id)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            stored = self.lookup(key, tenant_id)
            if stored is None:
                logger.warning("idempotency.conflict", idempotency_key=key, error=str(exc.orig))
                raise ConflictError("Concurrent request conflicted, retry with the same key") from exc
            logger.info("idempotency.race_lost", idempotency_key=key)
            return schema.model_validate(stored)
        except Exception:
            self.db.rollback()
            raise

        logger.info("idempotency.stored", idempotency_key=key, ttl=ttl)
        return result

    def _store(self, key: str, ttl: int, response: dict, tenant_id: Optional[str]) -> None:
        now = self.now()
        expires_at = now + timedelta(seconds=ttl)
        request_hash = hashlib.sha256(key.encode()).hexdigest()

        existing = self.db.get(IdempotencyRecord, key)
        if existing is not None:
            # Expired: the key is eligible for reuse.
            existing.response = response
            existing.request_hash = request_hash
            existing.tenant_id = tenant_id
            existing.expires_at = expires_at
            existing.created_at = now
        else:
            self.db.add(IdempotencyRecord(
                key=key,
                tenant_id=tenant_id,
                request_hash=request_hash,
                response=response,
                expires_at=expires_at,
                created_at=now,
            ))
        self.db.flush()

    def purge_expired(self) -> int:
        result = self.db.execute(
            delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= self.now())
        )
        self.db.commit()
        return result.rowcount
