import logging
from typing import Optional

from sqlalchemy.orm import Session

from blindbid.models import Order, OrderStatusHistory

logger = logging.getLogger(__name__)


def record_order_status(
    db: Session,
    order: Order,
    from_status: Optional[str],
    to_status: str,
    source: str,
    note: Optional[str] = None,
) -> OrderStatusHistory:
    """주문 상태 변경 이력 기록 (source: settlement, rollover, force_expire, webhook)"""
    entry = OrderStatusHistory(
        order_id=order.id,
        from_status=from_status,
        to_status=to_status,
        source=source,
        note=note,
    )
    db.add(entry)
    logger.debug(f"주문 상태 이력: order={order.id}, {from_status} → {to_status} ({source})")
    return entry
