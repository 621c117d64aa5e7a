"""
결제 게이트웨이 콜백 처리

- paid: 주문 결제 완료, 현재 정산 주문이면 경매 settled → sold
- expired: payment_status만 expired로 변경 (롤오버는 스케줄러가 처리)
- 같은 콜백이 여러 번 와도 결과는 한 번 처리한 것과 같습니다.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from blindbid.models import Auction, AuctionStatus, Order, OrderStatus, PaymentStatus
from blindbid.services.order_history import record_order_status
from blindbid.timeutils import utcnow
from blindbid.xendit_client import normalize_status, parse_datetime

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    action: str  # paid, already_paid, late_payment, expired, ignored
    order_id: Optional[uuid.UUID] = None
    auction_id: Optional[uuid.UUID] = None


def _parse_fee(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        logger.warning(f"결제 수수료 값을 해석할 수 없습니다: {value!r}")
        return None


class PaymentWebhookService:
    def __init__(self, db: Session):
        self.db = db

    def handle_callback(self, payload: Dict[str, Any]) -> WebhookOutcome:
        reference = payload.get("external_id") or payload.get("externalReference")
        if not reference:
            logger.warning(f"결제 콜백에 참조 번호가 없습니다: keys={sorted(payload)}")
            return WebhookOutcome(action="ignored")

        found = self.db.execute(
            select(Order.id, Order.auction_id).where(Order.payment_reference == str(reference))
        ).first()
        if not found:
            logger.warning(f"알 수 없는 결제 참조 번호, 무시: {reference}")
            return WebhookOutcome(action="ignored")

        # 롤오버와 같은 순서로 경매 → 주문 순으로 잠근 뒤 최신 상태를 다시 읽음
        auction = self._lock_auction(found.auction_id)
        order = self.db.scalars(
            select(Order)
            .where(Order.id == found.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).one()

        status = normalize_status(payload.get("status"))
        if status == "paid":
            return self._handle_paid(order, auction, payload)
        if status == "expired":
            return self._handle_expired(order)

        logger.info(f"처리하지 않는 결제 상태: order={order.id}, status={payload.get('status')}")
        return WebhookOutcome(action="ignored", order_id=order.id, auction_id=order.auction_id)

    def _lock_auction(self, auction_id: Optional[uuid.UUID]) -> Optional[Auction]:
        if not auction_id:
            return None
        return self.db.scalars(
            select(Auction)
            .where(Auction.id == auction_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()

    def _handle_paid(self, order: Order, auction: Optional[Auction], payload: Dict[str, Any]) -> WebhookOutcome:
        if order.payment_status == PaymentStatus.PAID:
            return WebhookOutcome(action="already_paid", order_id=order.id, auction_id=order.auction_id)

        paid_at = parse_datetime(payload.get("paid_at") or payload.get("paidAt")) or utcnow()
        fee = _parse_fee(payload.get("fees_paid_amount", payload.get("fee")))

        order.payment_status = PaymentStatus.PAID
        order.paid_at = paid_at
        if fee is not None:
            order.payment_fee = fee

        if order.status == OrderStatus.CANCELLED:
            # 롤오버로 이미 취소된 주문에 늦게 결제됨: 기록만 하고 경매는 건드리지 않음
            record_order_status(
                self.db, order, OrderStatus.CANCELLED.value, OrderStatus.CANCELLED.value, "webhook",
                note="취소된 주문에 결제 완료 콜백 수신 (환불 검토 필요)",
            )
            self.db.flush()
            logger.warning(f"취소된 주문에 결제 완료 콜백: order={order.id}, auction={order.auction_id}")
            return WebhookOutcome(action="late_payment", order_id=order.id, auction_id=order.auction_id)

        previous = order.status.value
        order.status = OrderStatus.PAID
        record_order_status(self.db, order, previous, OrderStatus.PAID.value, "webhook")

        if auction and auction.status == AuctionStatus.SETTLED and auction.settlement_order_id == order.id:
            auction.status = AuctionStatus.SOLD
            logger.info(f"경매 판매 완료: auction={auction.id}, order={order.id}")

        self.db.flush()
        logger.info(f"결제 완료: order={order.id}, paid_at={paid_at.isoformat()}")
        return WebhookOutcome(action="paid", order_id=order.id, auction_id=order.auction_id)

    def _handle_expired(self, order: Order) -> WebhookOutcome:
        if order.payment_status in (PaymentStatus.PAID, PaymentStatus.EXPIRED):
            return WebhookOutcome(action="ignored", order_id=order.id, auction_id=order.auction_id)

        order.payment_status = PaymentStatus.EXPIRED
        record_order_status(
            self.db, order, order.status.value, order.status.value, "webhook", note="결제 링크 만료"
        )
        self.db.flush()
        logger.info(f"결제 링크 만료: order={order.id}, auction={order.auction_id}")
        return WebhookOutcome(action="expired", order_id=order.id, auction_id=order.auction_id)
