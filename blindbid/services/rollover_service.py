"""
롤오버 서비스

낙찰자가 결제 기한 내에 결제하지 않으면 기존 주문을 취소하고
다음 순위 입찰자에게 낙찰을 넘긴 뒤 다시 정산합니다.
미결제 주문 이력이 있는 사용자는 다시 낙찰자가 될 수 없습니다.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from blindbid.exceptions import (
    AuctionPermissionError,
    AuctionStateError,
    DataIntegrityError,
    ExternalServiceError,
)
from blindbid.models import Auction, AuctionStatus, Order, OrderStatus, PaymentStatus
from blindbid.services.auction_state_machine import Actor, AuctionStateMachine
from blindbid.services.bid_ledger import BidLedger, WinnerCandidate
from blindbid.services.order_history import record_order_status
from blindbid.services.settlement_service import SettlementResult, SettlementService
from blindbid.settings import settings
from blindbid.timeutils import ensure_aware, utcnow
from blindbid.xendit_client import XenditClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RolloverResult:
    """
    action:
        noop: 정산 상태가 아니거나 결제 완료 / 기한 전
        unsold: 다음 후보 없음, 낙찰자 없이 종료
        reassigned: 새 낙찰자로 재정산 완료
        pending_settlement: 새 낙찰자 지정, 재정산은 스케줄러가 재시도
    """
    action: str
    auction_id: uuid.UUID
    cancelled_order_id: Optional[uuid.UUID] = None
    new_winner: Optional[WinnerCandidate] = None
    settlement: Optional[SettlementResult] = None


class RolloverService:
    def __init__(self, db: Session, payment_client: XenditClient):
        self.db = db
        self.payment_client = payment_client
        self.state_machine = AuctionStateMachine(db)
        self.ledger = BidLedger(db)

    def rollover_if_unpaid(self, auction_id: uuid.UUID, now: Optional[datetime] = None) -> RolloverResult:
        now = now or utcnow()
        auction = self.state_machine.get_auction(auction_id, for_update=True)

        if auction.status != AuctionStatus.SETTLED:
            return RolloverResult(action="noop", auction_id=auction.id)

        order = self._settlement_order(auction)
        if order.payment_status == PaymentStatus.PAID:
            return RolloverResult(action="noop", auction_id=auction.id)

        overdue = auction.payment_due_at is not None and ensure_aware(auction.payment_due_at) <= now
        if not overdue and order.payment_status != PaymentStatus.EXPIRED:
            return RolloverResult(action="noop", auction_id=auction.id)

        return self._rollover(auction, order, now, source="rollover")

    def force_expire(self, actor: Actor, auction_id: uuid.UUID, now: Optional[datetime] = None) -> RolloverResult:
        """관리자 강제 만료: 결제 기한과 무관하게 즉시 롤오버"""
        if not actor.is_admin:
            raise AuctionPermissionError("관리자만 결제 기한을 강제 만료할 수 있습니다", auction_id=str(auction_id))

        now = now or utcnow()
        auction = self.state_machine.get_auction(auction_id, for_update=True)
        if auction.status != AuctionStatus.SETTLED:
            raise AuctionStateError("정산된 경매만 강제 만료할 수 있습니다", current_status=auction.status.value)

        order = self._settlement_order(auction)
        if order.payment_status == PaymentStatus.PAID:
            raise AuctionStateError("이미 결제가 완료된 주문입니다", current_status=auction.status.value)

        if order.payment_link_id:
            try:
                self.payment_client.cancel_payment_link(order.payment_link_id)
            except ExternalServiceError as e:
                logger.warning(f"결제 링크 만료 요청 실패 (계속 진행): order={order.id}, link={order.payment_link_id}: {e}")

        logger.info(f"강제 만료: auction={auction.id}, order={order.id}, by={actor.user_id}")
        return self._rollover(auction, order, now, source="force_expire")

    def _settlement_order(self, auction: Auction) -> Order:
        order = self.db.get(Order, auction.settlement_order_id) if auction.settlement_order_id else None
        if not order:
            raise DataIntegrityError(
                "정산 주문을 찾을 수 없습니다", table_name="orders", row_id=auction.settlement_order_id
            )
        return order

    def _rollover(self, auction: Auction, order: Order, now: datetime, source: str) -> RolloverResult:
        previous_winner = auction.winner_user_id

        # 1. 기존 주문 취소
        previous_status = order.status.value
        order.status = OrderStatus.CANCELLED
        order.payment_status = PaymentStatus.EXPIRED
        order.cancelled_at = now
        record_order_status(self.db, order, previous_status, OrderStatus.CANCELLED.value, source, note="결제 기한 만료")
        self.db.flush()

        # 2. 다음 후보
        candidate = self.ledger.next_eligible_winner(
            auction.id, exclude_user_ids=[previous_winner] if previous_winner else []
        )

        if candidate is None:
            auction.status = AuctionStatus.ENDED
            auction.winner_user_id = None
            auction.winning_bid_id = None
            auction.payment_due_at = None
            auction.settlement_order_id = None
            self.db.flush()
            logger.info(f"롤오버 후보 없음, 유찰 처리: auction={auction.id}, cancelled_order={order.id}")
            return RolloverResult(action="unsold", auction_id=auction.id, cancelled_order_id=order.id)

        # 3. 새 낙찰자 지정 후 재정산
        auction.status = AuctionStatus.ENDED
        auction.winner_user_id = candidate.user_id
        auction.winning_bid_id = candidate.bid_id
        auction.payment_due_at = now + timedelta(hours=settings.auction_payment_window_hours)
        auction.settlement_order_id = None
        self.db.flush()
        logger.info(f"롤오버: auction={auction.id}, new_bid={candidate.bid_id}, cancelled_order={order.id}")

        try:
            settlement = SettlementService(self.db, self.payment_client).settle(auction.id, now=now)
        except ExternalServiceError as e:
            logger.error(f"롤오버 재정산 실패, 다음 스케줄러 실행에서 재시도: auction={auction.id}: {e}")
            return RolloverResult(
                action="pending_settlement",
                auction_id=auction.id,
                cancelled_order_id=order.id,
                new_winner=candidate,
            )

        return RolloverResult(
            action="reassigned",
            auction_id=auction.id,
            cancelled_order_id=order.id,
            new_winner=candidate,
            settlement=settlement,
        )
