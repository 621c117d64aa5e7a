"""
정산 서비스 (ended → settled)

낙찰자에게 주문과 결제 링크를 생성합니다.

- 멱등: 이미 정산된 경매는 기존 주문을 반환
- 결제 링크 생성 실패 시 주문/주문 항목을 삭제하고 예외 전파 (보상 처리)
- 최종 상태 전환은 settlement_order_id IS NULL 조건의 compare-and-set UPDATE
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from blindbid.exceptions import AuctionStateError, DataIntegrityError, ExternalServiceError
from blindbid.models import (
    Auction,
    AuctionBid,
    AuctionItem,
    AuctionStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
)
from blindbid.services.auction_state_machine import AuctionStateMachine
from blindbid.services.order_history import record_order_status
from blindbid.services.shipping import get_quote
from blindbid.settings import settings
from blindbid.timeutils import utcnow
from blindbid.xendit_client import PaymentLink, XenditClient

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class SettlementResult:
    order: Order
    payment_link: Optional[PaymentLink]
    created: bool


def platform_fee_for(subtotal: Decimal, rate: Optional[float] = None) -> Decimal:
    rate = settings.auction_platform_fee_rate if rate is None else rate
    return (Decimal(subtotal) * Decimal(str(rate))).quantize(CENT, rounding=ROUND_HALF_UP)


class SettlementService:
    def __init__(self, db: Session, payment_client: XenditClient):
        self.db = db
        self.payment_client = payment_client
        self.state_machine = AuctionStateMachine(db)

    def settle(self, auction_id: uuid.UUID, now: Optional[datetime] = None) -> SettlementResult:
        now = now or utcnow()
        auction = self.state_machine.get_auction(auction_id, for_update=True)

        # 이미 정산됨
        if auction.settlement_order_id:
            order = self.db.get(Order, auction.settlement_order_id)
            if not order:
                raise DataIntegrityError(
                    "정산 주문을 찾을 수 없습니다", table_name="orders", row_id=auction.settlement_order_id
                )
            return SettlementResult(order=order, payment_link=self._refetch_link(order), created=False)

        if auction.status != AuctionStatus.ENDED or not auction.winner_user_id:
            raise AuctionStateError(
                "낙찰자가 확정된 마감 경매만 정산할 수 있습니다", current_status=auction.status.value
            )

        # 같은 낙찰자의 미취소 주문이 이미 있으면 그 주문을 정산 주문으로 사용
        existing = self._open_order_for(auction.id, auction.winner_user_id)
        if existing:
            logger.warning(f"기존 주문을 정산 주문으로 연결: auction={auction.id}, order={existing.id}")
            self._mark_settled(auction, existing, now)
            return SettlementResult(order=existing, payment_link=self._refetch_link(existing), created=False)

        winning_bid = self.db.get(AuctionBid, auction.winning_bid_id) if auction.winning_bid_id else None
        if not winning_bid:
            raise DataIntegrityError("낙찰 입찰을 찾을 수 없습니다", table_name="auction_bids", row_id=auction.winning_bid_id)
        item = self.db.get(AuctionItem, auction.auction_item_id)
        if not item:
            raise DataIntegrityError("경매 작품을 찾을 수 없습니다", table_name="auction_items", row_id=auction.auction_item_id)

        order, order_item = self._create_order(auction, item, winning_bid)

        try:
            link = self.payment_client.create_payment_link(
                amount=order.total_amount,
                description=f"Auction Order {order.id}",
                metadata={
                    "order_id": order.id,
                    "user_id": auction.winner_user_id,
                    "auction_id": auction.id,
                    "winning_bid_amount": winning_bid.amount,
                },
                duration_seconds=int(settings.auction_payment_window_hours * 3600),
            )
        except ExternalServiceError as e:
            logger.error(f"결제 링크 생성 실패, 주문 삭제: auction={auction.id}, order={order.id}: {e}")
            self._delete_order(order)
            raise

        order.payment_provider = settings.payment_provider
        order.payment_link_id = link.id
        order.payment_reference = link.reference
        order.checkout_url = link.checkout_url
        self.db.flush()

        if not self._mark_settled(auction, order, now):
            # 동시 정산에서 밀림: 방금 만든 주문을 지우고 먼저 확정된 주문을 반환
            logger.warning(f"동시 정산 감지, 생성한 주문 폐기: auction={auction.id}, order={order.id}")
            self._delete_order(order)
            self._cancel_link_quietly(link.id)
            self.db.refresh(auction)
            winner_order = self.db.get(Order, auction.settlement_order_id) if auction.settlement_order_id else None
            if not winner_order:
                raise DataIntegrityError("정산 주문을 찾을 수 없습니다", table_name="auctions", row_id=auction.id)
            return SettlementResult(order=winner_order, payment_link=self._refetch_link(winner_order), created=False)

        logger.info(
            f"정산 완료: auction={auction.id}, order={order.id}, total={order.total_amount}, link={link.id}"
        )
        return SettlementResult(order=order, payment_link=link, created=True)

    def _open_order_for(self, auction_id: uuid.UUID, user_id: uuid.UUID) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.auction_id == auction_id)
            .where(Order.user_id == user_id)
            .where(Order.status != OrderStatus.CANCELLED)
            .order_by(Order.created_at.desc())
        )
        return self.db.scalars(stmt).first()

    def _create_order(self, auction: Auction, item: AuctionItem, winning_bid: AuctionBid) -> tuple[Order, OrderItem]:
        subtotal = Decimal(winning_bid.amount).quantize(CENT)
        fee = platform_fee_for(subtotal)
        shipping = get_quote(winning_bid.courier, winning_bid.courier_service).price
        total = subtotal + shipping

        order = Order(
            auction_id=auction.id,
            user_id=auction.winner_user_id,
            seller_user_id=auction.seller_user_id,
            status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            subtotal=subtotal,
            platform_fee=fee,
            shipping_cost=shipping,
            total_amount=total,
            shipping_method=winning_bid.courier_service or "standard",
            courier=winning_bid.courier,
            courier_service=winning_bid.courier_service,
            user_address_id=winning_bid.user_address_id,
            order_notes=f"Auction Order - {item.title}",
            is_auction=True,
        )
        self.db.add(order)
        self.db.flush()

        order_item = OrderItem(
            order_id=order.id,
            auction_item_id=item.id,
            seller_user_id=auction.seller_user_id,
            user_id=auction.winner_user_id,
            title=item.title,
            price_at_purchase=subtotal,
            quantity=1,
            item_total=subtotal,
            platform_fee_amount=fee,
            seller_earnings=subtotal - fee,
        )
        self.db.add(order_item)
        record_order_status(self.db, order, None, OrderStatus.PENDING.value, "settlement")
        self.db.flush()
        return order, order_item

    def _delete_order(self, order: Order) -> None:
        self.db.execute(delete(OrderStatusHistory).where(OrderStatusHistory.order_id == order.id))
        self.db.execute(delete(OrderItem).where(OrderItem.order_id == order.id))
        self.db.delete(order)
        self.db.flush()

    def _mark_settled(self, auction: Auction, order: Order, now: datetime) -> bool:
        """settlement_order_id가 비어 있고 ended일 때만 settled로 전환. 성공하면 True"""
        result = self.db.execute(
            update(Auction)
            .where(Auction.id == auction.id)
            .where(Auction.settlement_order_id.is_(None))
            .where(Auction.status == AuctionStatus.ENDED)
            .values(settlement_order_id=order.id, status=AuctionStatus.SETTLED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(auction)
        return result.rowcount == 1

    def _refetch_link(self, order: Order) -> Optional[PaymentLink]:
        if not order.payment_link_id:
            return None
        try:
            status = self.payment_client.get_payment_link(order.payment_link_id)
        except ExternalServiceError as e:
            logger.warning(f"결제 링크 재조회 실패: order={order.id}, link={order.payment_link_id}: {e}")
            return None
        return PaymentLink(
            id=status.id,
            checkout_url=status.checkout_url or order.checkout_url,
            reference=status.reference or order.payment_reference or "",
        )

    def _cancel_link_quietly(self, payment_link_id: str) -> None:
        try:
            self.payment_client.cancel_payment_link(payment_link_id)
        except ExternalServiceError as e:
            logger.warning(f"결제 링크 취소 실패 (무시): link={payment_link_id}: {e}")
