"""
입찰 원장 (Bid Ledger)

경매별 입찰 기록을 추가 전용으로 저장하고, 입찰자별 최고 입찰과 전체 순위를 계산합니다.
순위 계산은 블라인드 방식입니다: 이 모듈의 결과는 다른 입찰자에게 노출하지 않습니다.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Set

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from blindbid.models import AuctionBid, Order, PaymentStatus
from blindbid.timeutils import ensure_aware, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RankingResult:
    winner: Optional[AuctionBid]
    ranking: List[AuctionBid] = field(default_factory=list)


@dataclass(frozen=True)
class WinnerCandidate:
    user_id: uuid.UUID
    bid_id: uuid.UUID
    amount: Decimal


def _is_better(candidate: AuctionBid, current: AuctionBid) -> bool:
    """금액이 높으면 우선, 같으면 먼저 들어온 입찰이 우선"""
    if candidate.amount != current.amount:
        return candidate.amount > current.amount
    candidate_at = ensure_aware(candidate.created_at)
    current_at = ensure_aware(current.created_at)
    if candidate_at != current_at:
        return candidate_at < current_at
    return str(candidate.id) < str(current.id)


def rank_bids(bids: Iterable[AuctionBid]) -> RankingResult:
    """
    입찰 목록으로 낙찰 순위를 계산합니다.

    1. 철회된 입찰 제외
    2. 입찰자별 최고 입찰만 유지 (동액이면 가장 이른 created_at)
    3. 금액 내림차순, created_at 오름차순 정렬

    Returns:
        RankingResult(winner=순위 1위 또는 None, ranking=입찰자당 1건)
    """
    best_by_bidder: dict[uuid.UUID, AuctionBid] = {}
    for bid in bids:
        if bid.is_withdrawn:
            continue
        existing = best_by_bidder.get(bid.bidder_user_id)
        if existing is None or _is_better(bid, existing):
            best_by_bidder[bid.bidder_user_id] = bid

    # 금액/시각까지 같으면 bidder id로 고정해 입력 순서와 무관한 결과를 보장
    ranking = sorted(
        best_by_bidder.values(),
        key=lambda b: (-b.amount, ensure_aware(b.created_at), str(b.bidder_user_id)),
    )
    return RankingResult(winner=ranking[0] if ranking else None, ranking=ranking)


class BidLedger:
    def __init__(self, db: Session):
        self.db = db

    def find_by_idempotency_key(
        self, auction_id: uuid.UUID, bidder_user_id: uuid.UUID, idempotency_key: str
    ) -> Optional[AuctionBid]:
        stmt = (
            select(AuctionBid)
            .where(AuctionBid.auction_id == auction_id)
            .where(AuctionBid.bidder_user_id == bidder_user_id)
            .where(AuctionBid.idempotency_key == idempotency_key)
        )
        return self.db.scalars(stmt).first()

    def record_bid(
        self,
        auction_id: uuid.UUID,
        bidder_user_id: uuid.UUID,
        amount: Decimal,
        idempotency_key: Optional[str] = None,
        user_address_id: Optional[uuid.UUID] = None,
        courier: Optional[str] = None,
        courier_service: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuctionBid:
        """
        입찰 행을 추가합니다.
        같은 (경매, 입찰자, 멱등키) 행이 이미 있으면 새로 만들지 않고 기존 행을 반환합니다.
        """
        if idempotency_key:
            existing = self.find_by_idempotency_key(auction_id, bidder_user_id, idempotency_key)
            if existing:
                return existing

        bid = AuctionBid(
            auction_id=auction_id,
            bidder_user_id=bidder_user_id,
            amount=Decimal(amount),
            idempotency_key=idempotency_key,
            user_address_id=user_address_id,
            courier=courier,
            courier_service=courier_service,
            is_withdrawn=False,
            created_at=now or utcnow(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(bid)
                self.db.flush()
        except IntegrityError:
            # 동시 요청이 같은 멱등키로 먼저 저장한 경우
            if not idempotency_key:
                raise
            existing = self.find_by_idempotency_key(auction_id, bidder_user_id, idempotency_key)
            if existing is None:
                raise
            logger.info(f"멱등키 충돌, 기존 입찰 반환: auction={auction_id}, bid={existing.id}")
            return existing

        logger.info(f"입찰 기록: auction={auction_id}, bid={bid.id}")
        return bid

    def active_bids(self, auction_id: uuid.UUID) -> List[AuctionBid]:
        stmt = (
            select(AuctionBid)
            .where(AuctionBid.auction_id == auction_id)
            .where(AuctionBid.is_withdrawn.is_(False))
        )
        return list(self.db.scalars(stmt).all())

    def bidder_bids(self, auction_id: uuid.UUID, bidder_user_id: uuid.UUID) -> List[AuctionBid]:
        """입찰자 본인의 유효 입찰 (금액 내림차순)"""
        stmt = (
            select(AuctionBid)
            .where(AuctionBid.auction_id == auction_id)
            .where(AuctionBid.bidder_user_id == bidder_user_id)
            .where(AuctionBid.is_withdrawn.is_(False))
            .order_by(AuctionBid.amount.desc(), AuctionBid.created_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def latest_bid(self, auction_id: uuid.UUID, bidder_user_id: uuid.UUID) -> Optional[AuctionBid]:
        stmt = (
            select(AuctionBid)
            .where(AuctionBid.auction_id == auction_id)
            .where(AuctionBid.bidder_user_id == bidder_user_id)
            .where(AuctionBid.is_withdrawn.is_(False))
            .order_by(AuctionBid.created_at.desc())
            .limit(1)
        )
        return self.db.scalars(stmt).first()

    def participants_count(self, auction_id: uuid.UUID) -> int:
        stmt = (
            select(func.count(func.distinct(AuctionBid.bidder_user_id)))
            .where(AuctionBid.auction_id == auction_id)
            .where(AuctionBid.is_withdrawn.is_(False))
        )
        return int(self.db.scalar(stmt) or 0)

    def has_bids(self, auction_id: uuid.UUID) -> bool:
        stmt = (
            select(AuctionBid.id)
            .where(AuctionBid.auction_id == auction_id)
            .where(AuctionBid.is_withdrawn.is_(False))
            .limit(1)
        )
        return self.db.scalar(stmt) is not None

    def rank(self, auction_id: uuid.UUID) -> RankingResult:
        return rank_bids(self.active_bids(auction_id))

    def non_paid_order_user_ids(self, auction_id: uuid.UUID) -> Set[uuid.UUID]:
        """이 경매에서 결제 완료되지 않은 주문을 가진 사용자"""
        stmt = (
            select(Order.user_id)
            .where(Order.auction_id == auction_id)
            .where(Order.payment_status != PaymentStatus.PAID)
        )
        return set(self.db.scalars(stmt).all())

    def next_eligible_winner(
        self,
        auction_id: uuid.UUID,
        exclude_user_ids: Iterable[uuid.UUID] = (),
    ) -> Optional[WinnerCandidate]:
        """
        다음 낙찰 후보를 찾습니다.

        제외 대상: exclude_user_ids + 이 경매에 미결제 주문 이력이 있는 사용자
        (결제하지 않은 낙찰자에게 다시 기회를 주지 않음)
        """
        excluded = set(exclude_user_ids) | self.non_paid_order_user_ids(auction_id)
        result = self.rank(auction_id)
        for bid in result.ranking:
            if bid.bidder_user_id in excluded:
                continue
            return WinnerCandidate(user_id=bid.bidder_user_id, bid_id=bid.id, amount=bid.amount)
        return None
