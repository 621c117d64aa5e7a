"""
입찰 접수 서비스

검증 순서:
1. 멱등키 중복 → 기존 입찰 그대로 반환 (재검증하지 않음)
2. 입찰 기간 (start_at ≤ now < end_at)
3. 경매 상태 (active만 허용)
4. 경매 정책 (single_bid_only, allow_bid_updates)
5. 금액 (첫 입찰 ≥ 시작가, 재입찰은 본인 최고가 + 최소 입찰 단위 이상)
6. 입찰 원장에 기록

금액 검증에는 입찰자 본인의 이력만 사용합니다 (블라인드 경매).
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from blindbid.exceptions import BidRejectedError
from blindbid.models import AuctionBid, AuctionStatus
from blindbid.services.auction_state_machine import AuctionStateMachine
from blindbid.services.bid_ledger import BidLedger
from blindbid.timeutils import ensure_aware, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlacedBid:
    bid: AuctionBid
    created: bool


class BidAdmissionService:
    def __init__(self, db):
        self.db = db
        self.ledger = BidLedger(db)
        self.state_machine = AuctionStateMachine(db)

    def place_bid(
        self,
        auction_id: uuid.UUID,
        bidder_user_id: uuid.UUID,
        amount,
        user_address_id: Optional[uuid.UUID] = None,
        idempotency_key: Optional[str] = None,
        courier: Optional[str] = None,
        courier_service: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> PlacedBid:
        now = now or utcnow()

        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise BidRejectedError("INVALID_AMOUNT", "입찰 금액이 올바르지 않습니다", amount=str(amount))
        if not amount.is_finite() or amount <= 0:
            raise BidRejectedError("INVALID_AMOUNT", "입찰 금액은 0보다 커야 합니다", amount=str(amount))

        # 1. 멱등키
        if idempotency_key:
            existing = self.ledger.find_by_idempotency_key(auction_id, bidder_user_id, idempotency_key)
            if existing:
                logger.info(f"중복 입찰 요청, 기존 입찰 반환: auction={auction_id}, bid={existing.id}")
                return PlacedBid(bid=existing, created=False)

        # 조회 → 삽입 구간 동안 경매 행 잠금
        auction = self.state_machine.get_auction(auction_id, for_update=True)

        # 2. 입찰 기간
        if not (ensure_aware(auction.start_at) <= now < ensure_aware(auction.end_at)):
            raise BidRejectedError("WINDOW_CLOSED", "입찰 기간이 아닙니다", auction_id=str(auction_id))

        # 3. 상태
        if auction.status == AuctionStatus.CANCELLED:
            raise BidRejectedError("AUCTION_CANCELLED", "취소된 경매입니다", auction_id=str(auction_id))
        if auction.status == AuctionStatus.PAUSED:
            raise BidRejectedError("AUCTION_PAUSED", "일시 정지된 경매입니다", auction_id=str(auction_id))
        if auction.status != AuctionStatus.ACTIVE:
            raise BidRejectedError(
                "AUCTION_NOT_ACTIVE", "진행 중인 경매가 아닙니다",
                auction_id=str(auction_id), status=auction.status.value,
            )

        # 4. 정책
        own_bids = self.ledger.bidder_bids(auction_id, bidder_user_id)
        has_bid = bool(own_bids)
        if auction.single_bid_only and has_bid:
            raise BidRejectedError("SINGLE_BID_ONLY", "이 경매는 1회만 입찰할 수 있습니다", auction_id=str(auction_id))
        if not auction.allow_bid_updates and has_bid:
            raise BidRejectedError("BID_UPDATES_DISABLED", "이 경매는 입찰 수정이 허용되지 않습니다", auction_id=str(auction_id))

        # 5. 금액
        if not has_bid:
            if amount < auction.start_price:
                raise BidRejectedError(
                    "BELOW_START_PRICE", f"입찰 금액은 시작가({auction.start_price}) 이상이어야 합니다",
                    auction_id=str(auction_id),
                )
        else:
            own_highest = own_bids[0].amount
            if amount <= own_highest:
                raise BidRejectedError(
                    "NOT_HIGHER_THAN_PREVIOUS", "새 입찰 금액은 이전 입찰보다 높아야 합니다",
                    auction_id=str(auction_id),
                )
            min_increment = auction.min_increment or Decimal("0")
            if min_increment > 0 and amount - own_highest < min_increment:
                raise BidRejectedError(
                    "INCREMENT_TOO_SMALL", f"최소 입찰 단위는 {min_increment}입니다",
                    auction_id=str(auction_id),
                )

        # 6. 기록
        bid = self.ledger.record_bid(
            auction_id=auction_id,
            bidder_user_id=bidder_user_id,
            amount=amount,
            idempotency_key=idempotency_key,
            user_address_id=user_address_id,
            courier=courier,
            courier_service=courier_service,
            now=now,
        )
        return PlacedBid(bid=bid, created=True)

    def my_bid(self, auction_id: uuid.UUID, bidder_user_id: uuid.UUID) -> Optional[AuctionBid]:
        """본인의 최근 입찰만 반환 (다른 입찰자 정보는 노출하지 않음)"""
        self.state_machine.get_auction(auction_id)
        return self.ledger.latest_bid(auction_id, bidder_user_id)
