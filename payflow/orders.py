import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from payflow.audit import record_audit
from payflow.errors import NotFoundError
from payflow.models import ORDER_TRANSITIONS, Order

logger = structlog.get_logger(__name__)


def get_order(db: Session, tenant_id: str, order_id: str) -> Order:
    order = db.get(Order, order_id)
    if order is None or order.tenant_id != tenant_id:
        raise NotFoundError("Order not found")
    return order


def advance_order(db: Session, tenant_id: str, order_id: str, status: str, **audit) -> bool:
    """Move an order to ``status`` if its current status allows it.

    A conditional update: concurrent or stale writers match no row instead of
    regressing the order. Returns whether the order actually changed.
    """
    sources = [s for s in ORDER_TRANSITIONS[status] if s != status]
    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status.in_(sources))
        .values(status=status)
    )
    if result.rowcount == 0:
        logger.info("order.status_unchanged", order_id=order_id, target=status)
        return False

    record_audit(
        db,
        tenant_id=tenant_id,
        action="order.status_updated",
        resource=order_id,
        changes={"status": status},
        **audit,
    )
    return True
