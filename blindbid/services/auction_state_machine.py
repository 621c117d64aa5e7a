"""
경매 상태 머신

scheduled → active → (paused ↔ active) → ended → settled → sold
                                           ↑________↓ (rollover)
어느 비종료 상태에서든 → cancelled

정산(ended → settled), 결제 확인(settled → sold), 롤오버는 각각
SettlementService, PaymentWebhookService, RolloverService가 담당합니다.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from blindbid.exceptions import (
    AuctionItemNotFoundError,
    AuctionNotFoundError,
    AuctionPermissionError,
    AuctionStateError,
    AuctionValidationError,
)
from blindbid.models import (
    CLOSABLE_AUCTION_STATUSES,
    TERMINAL_AUCTION_STATUSES,
    Auction,
    AuctionItem,
    AuctionStatus,
)
from blindbid.services.bid_ledger import BidLedger
from blindbid.settings import settings
from blindbid.timeutils import ensure_aware, utcnow

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

# update()로 변경 가능한 필드
UPDATABLE_FIELDS = (
    "start_price",
    "reserve_price",
    "min_increment",
    "start_at",
    "end_at",
    "single_bid_only",
    "allow_bid_updates",
)


@dataclass(frozen=True)
class Actor:
    """요청 주체 (상위 인증 계층에서 전달)"""
    user_id: uuid.UUID
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def _to_decimal(value: Any, field_name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise AuctionValidationError(f"{field_name} 값이 올바르지 않습니다: {value}", field=field_name)


def _validate_pricing(start_price: Decimal, reserve_price: Optional[Decimal], min_increment: Decimal) -> None:
    if start_price <= 0:
        raise AuctionValidationError("시작가는 0보다 커야 합니다", field="start_price")
    if reserve_price is not None and reserve_price < 0:
        raise AuctionValidationError("최저 낙찰가는 0 이상이어야 합니다", field="reserve_price")
    if min_increment < 0:
        raise AuctionValidationError("최소 입찰 단위는 0 이상이어야 합니다", field="min_increment")


def _validate_window(start_at: datetime, end_at: datetime) -> None:
    if ensure_aware(end_at) <= ensure_aware(start_at):
        raise AuctionValidationError("종료 시각은 시작 시각보다 이후여야 합니다", field="end_at")


class AuctionStateMachine:
    def __init__(self, db: Session):
        self.db = db
        self.ledger = BidLedger(db)

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def get_auction(self, auction_id: uuid.UUID, for_update: bool = False) -> Auction:
        stmt = select(Auction).where(Auction.id == auction_id)
        if for_update:
            stmt = stmt.with_for_update()
        auction = self.db.scalars(stmt).first()
        if not auction:
            raise AuctionNotFoundError(auction_id)
        return auction

    def list_auctions(
        self,
        status: Optional[AuctionStatus] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> Tuple[List[Auction], int]:
        """마감 임박 순 목록 (items, total)"""
        limit = limit or settings.auction_default_page_size
        page = max(page, 1)

        stmt = select(Auction)
        count_stmt = select(func.count(Auction.id))
        if status:
            stmt = stmt.where(Auction.status == status)
            count_stmt = count_stmt.where(Auction.status == status)

        stmt = stmt.order_by(Auction.end_at.asc()).offset((page - 1) * limit).limit(limit)
        items = list(self.db.scalars(stmt).all())
        total = int(self.db.scalar(count_stmt) or 0)
        return items, total

    def list_seller_auctions(
        self, seller_user_id: uuid.UUID, status: Optional[AuctionStatus] = None
    ) -> List[Auction]:
        stmt = select(Auction).where(Auction.seller_user_id == seller_user_id)
        if status:
            stmt = stmt.where(Auction.status == status)
        stmt = stmt.order_by(Auction.created_at.desc())
        return list(self.db.scalars(stmt).all())

    def list_seller_items(self, seller_user_id: uuid.UUID) -> List[AuctionItem]:
        stmt = (
            select(AuctionItem)
            .where(AuctionItem.seller_user_id == seller_user_id)
            .order_by(AuctionItem.created_at.desc())
        )
        return list(self.db.scalars(stmt).all())

    def can_view_participants(self, actor: Optional[Actor], auction: Auction) -> bool:
        """참여자 수는 판매자와 관리자에게만 노출"""
        if actor is None:
            return False
        return actor.is_admin or auction.seller_user_id == actor.user_id

    def due_for_activation(self, now: Optional[datetime] = None) -> List[uuid.UUID]:
        now = now or utcnow()
        stmt = (
            select(Auction.id)
            .where(Auction.status == AuctionStatus.SCHEDULED)
            .where(Auction.start_at <= now)
            .order_by(Auction.start_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def due_for_closing(self, now: Optional[datetime] = None) -> List[uuid.UUID]:
        now = now or utcnow()
        stmt = (
            select(Auction.id)
            .where(Auction.status.in_(CLOSABLE_AUCTION_STATUSES))
            .where(Auction.end_at <= now)
            .order_by(Auction.end_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    # ------------------------------------------------------------------
    # 생성
    # ------------------------------------------------------------------

    def create_auction_item(
        self,
        actor: Actor,
        title: str,
        description: Optional[str] = None,
        images: Optional[List[str]] = None,
        primary_image: Optional[str] = None,
        medium: Optional[str] = None,
        dimensions: Optional[str] = None,
        year_created: Optional[int] = None,
        weight_kg: Optional[Decimal] = None,
        is_original: bool = True,
        is_framed: bool = False,
        condition: Optional[str] = None,
        categories: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        seller_profile_id: Optional[uuid.UUID] = None,
    ) -> AuctionItem:
        if not title or not title.strip():
            raise AuctionValidationError("작품 제목은 필수입니다", field="title")

        item = AuctionItem(
            seller_user_id=actor.user_id,
            seller_profile_id=seller_profile_id,
            title=title.strip(),
            description=description,
            images=images or [],
            primary_image=primary_image or (images[0] if images else None),
            medium=medium,
            dimensions=dimensions,
            year_created=year_created,
            weight_kg=weight_kg,
            is_original=is_original,
            is_framed=is_framed,
            condition=condition,
            categories=categories or [],
            tags=tags or [],
        )
        self.db.add(item)
        self.db.flush()
        logger.info(f"경매 작품 등록: item={item.id}, seller={actor.user_id}")
        return item

    def create_auction(
        self,
        actor: Actor,
        auction_item_id: uuid.UUID,
        start_price: Decimal,
        start_at: datetime,
        end_at: datetime,
        reserve_price: Optional[Decimal] = None,
        min_increment: Decimal = Decimal("0"),
        single_bid_only: bool = False,
        allow_bid_updates: bool = True,
        now: Optional[datetime] = None,
    ) -> Auction:
        """
        경매 생성

        시작 시각이 미래면 scheduled, 아니면 바로 active로 생성합니다.
        작품은 요청자 소유여야 합니다 (관리자 제외).
        """
        now = now or utcnow()
        item = self.db.get(AuctionItem, auction_item_id)
        if not item:
            raise AuctionItemNotFoundError(auction_item_id)
        if not actor.is_admin and item.seller_user_id != actor.user_id:
            raise AuctionPermissionError("본인 소유 작품만 경매에 등록할 수 있습니다", auction_item_id=str(auction_item_id))

        start_price = _to_decimal(start_price, "start_price")
        reserve_price = _to_decimal(reserve_price, "reserve_price") if reserve_price is not None else None
        min_increment = _to_decimal(min_increment or 0, "min_increment")
        _validate_pricing(start_price, reserve_price, min_increment)

        start_at = ensure_aware(start_at)
        end_at = ensure_aware(end_at)
        _validate_window(start_at, end_at)
        if end_at <= now:
            raise AuctionValidationError("종료 시각이 이미 지났습니다", field="end_at")

        status = AuctionStatus.SCHEDULED if start_at > now else AuctionStatus.ACTIVE
        auction = Auction(
            auction_item_id=item.id,
            seller_user_id=item.seller_user_id,
            start_price=start_price,
            reserve_price=reserve_price,
            min_increment=min_increment,
            start_at=start_at,
            end_at=end_at,
            single_bid_only=single_bid_only,
            allow_bid_updates=allow_bid_updates,
            status=status,
        )
        self.db.add(auction)
        self.db.flush()
        logger.info(f"경매 생성: auction={auction.id}, status={status.value}, end_at={end_at.isoformat()}")
        return auction

    # ------------------------------------------------------------------
    # 수정 / 수동 전이
    # ------------------------------------------------------------------

    def _require_owner_or_admin(self, actor: Actor, auction: Auction) -> None:
        if actor.is_admin or auction.seller_user_id == actor.user_id:
            return
        raise AuctionPermissionError(auction_id=str(auction.id))

    def update(
        self,
        actor: Actor,
        auction_id: uuid.UUID,
        changes: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Auction:
        """
        경매 조건 수정

        - 취소된 경매는 수정 불가
        - 판매자: 입찰이 없고, 종료되지 않았고, 마감 전일 때만
        - 관리자: 취소 외 모든 상태에서 가능
        """
        now = now or utcnow()
        auction = self.get_auction(auction_id, for_update=True)
        self._require_owner_or_admin(actor, auction)

        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise AuctionValidationError(f"수정할 수 없는 필드입니다: {', '.join(sorted(unknown))}")

        if auction.status == AuctionStatus.CANCELLED:
            raise AuctionStateError("취소된 경매는 수정할 수 없습니다", current_status=auction.status.value)

        if not actor.is_admin:
            if auction.status in TERMINAL_AUCTION_STATUSES or now >= ensure_aware(auction.end_at):
                raise AuctionStateError("종료된 경매는 수정할 수 없습니다", current_status=auction.status.value)
            if self.ledger.has_bids(auction.id):
                raise AuctionStateError("입찰이 있는 경매는 수정할 수 없습니다", current_status=auction.status.value)

        start_price = _to_decimal(changes.get("start_price", auction.start_price), "start_price")
        if "reserve_price" in changes:
            reserve_raw = changes["reserve_price"]
        else:
            reserve_raw = auction.reserve_price
        reserve_price = _to_decimal(reserve_raw, "reserve_price") if reserve_raw is not None else None
        min_increment = _to_decimal(changes.get("min_increment", auction.min_increment) or 0, "min_increment")
        _validate_pricing(start_price, reserve_price, min_increment)

        start_at = ensure_aware(changes.get("start_at") or auction.start_at)
        end_at = ensure_aware(changes.get("end_at") or auction.end_at)
        _validate_window(start_at, end_at)
        if not actor.is_admin and end_at <= now:
            raise AuctionValidationError("종료 시각이 이미 지났습니다", field="end_at")

        auction.start_price = start_price
        auction.reserve_price = reserve_price
        auction.min_increment = min_increment
        auction.start_at = start_at
        auction.end_at = end_at
        if changes.get("single_bid_only") is not None:
            auction.single_bid_only = bool(changes["single_bid_only"])
        if changes.get("allow_bid_updates") is not None:
            auction.allow_bid_updates = bool(changes["allow_bid_updates"])

        self.db.flush()
        logger.info(f"경매 수정: auction={auction.id}, by={actor.user_id}, fields={sorted(changes)}")
        return auction

    def activate_now(self, actor: Actor, auction_id: uuid.UUID, now: Optional[datetime] = None) -> Auction:
        """예약된 경매를 즉시 시작합니다. 시작 시각이 미래면 현재 시각으로 당깁니다."""
        now = now or utcnow()
        auction = self.get_auction(auction_id, for_update=True)
        self._require_owner_or_admin(actor, auction)

        if auction.status == AuctionStatus.ACTIVE:
            raise AuctionStateError("이미 진행 중인 경매입니다", current_status=auction.status.value)
        if auction.status != AuctionStatus.SCHEDULED:
            raise AuctionStateError("예약 상태의 경매만 즉시 시작할 수 있습니다", current_status=auction.status.value)
        if now >= ensure_aware(auction.end_at):
            raise AuctionStateError("이미 마감 시각이 지난 경매입니다", current_status=auction.status.value)

        if ensure_aware(auction.start_at) > now:
            auction.start_at = now
        auction.status = AuctionStatus.ACTIVE
        self.db.flush()
        logger.info(f"경매 즉시 시작: auction={auction.id}, by={actor.user_id}")
        return auction

    def pause(self, actor: Actor, auction_id: uuid.UUID, now: Optional[datetime] = None) -> Auction:
        now = now or utcnow()
        auction = self.get_auction(auction_id, for_update=True)
        self._require_owner_or_admin(actor, auction)

        if auction.status != AuctionStatus.ACTIVE:
            raise AuctionStateError("진행 중인 경매만 일시 정지할 수 있습니다", current_status=auction.status.value)
        if now >= ensure_aware(auction.end_at):
            raise AuctionStateError("마감 시각이 지난 경매는 일시 정지할 수 없습니다", current_status=auction.status.value)

        auction.status = AuctionStatus.PAUSED
        self.db.flush()
        logger.info(f"경매 일시 정지: auction={auction.id}, by={actor.user_id}")
        return auction

    def resume(self, actor: Actor, auction_id: uuid.UUID, now: Optional[datetime] = None) -> Auction:
        now = now or utcnow()
        auction = self.get_auction(auction_id, for_update=True)
        self._require_owner_or_admin(actor, auction)

        if auction.status != AuctionStatus.PAUSED:
            raise AuctionStateError("일시 정지된 경매만 재개할 수 있습니다", current_status=auction.status.value)
        if now >= ensure_aware(auction.end_at):
            raise AuctionStateError("마감 시각이 지난 경매는 재개할 수 없습니다", current_status=auction.status.value)

        auction.status = AuctionStatus.ACTIVE
        self.db.flush()
        logger.info(f"경매 재개: auction={auction.id}, by={actor.user_id}")
        return auction

    def cancel(
        self,
        actor: Actor,
        auction_id: uuid.UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Auction:
        """
        경매 취소

        - 종료 상태(ended, settled, sold, cancelled)는 누구도 취소 불가
        - 관리자: 나머지 모든 상태
        - 판매자: scheduled/paused, 또는 입찰이 없는 active
        """
        now = now or utcnow()
        auction = self.get_auction(auction_id, for_update=True)
        self._require_owner_or_admin(actor, auction)

        if auction.status in TERMINAL_AUCTION_STATUSES:
            raise AuctionStateError("이미 종료된 경매는 취소할 수 없습니다", current_status=auction.status.value)

        if not actor.is_admin and auction.status == AuctionStatus.ACTIVE and self.ledger.has_bids(auction.id):
            raise AuctionPermissionError(
                "입찰이 있는 진행 중 경매는 관리자만 취소할 수 있습니다",
                auction_id=str(auction.id),
                current_status=auction.status.value,
            )

        previous = auction.status
        auction.status = AuctionStatus.CANCELLED
        auction.cancelled_at = now
        auction.cancelled_by = actor.user_id
        auction.cancel_reason = reason
        self.db.flush()
        logger.info(f"경매 취소: auction={auction.id}, from={previous.value}, by={actor.user_id}, reason={reason}")
        return auction

    # ------------------------------------------------------------------
    # 스케줄러 전이
    # ------------------------------------------------------------------

    def activate(self, auction_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """시작 시각이 된 예약 경매 1건을 active로 전환. 전환했으면 True"""
        now = now or utcnow()
        auction = self.get_auction(auction_id, for_update=True)
        if auction.status != AuctionStatus.SCHEDULED or ensure_aware(auction.start_at) > now:
            return False
        auction.status = AuctionStatus.ACTIVE
        self.db.flush()
        logger.info(f"경매 시작: auction={auction.id}")
        return True

    def activate_due(self, now: Optional[datetime] = None) -> List[uuid.UUID]:
        now = now or utcnow()
        return [auction_id for auction_id in self.due_for_activation(now) if self.activate(auction_id, now)]

    def close(self, auction_id: uuid.UUID, now: Optional[datetime] = None) -> Auction:
        """
        마감 처리 (active/paused → ended)

        일시 정지 중 마감 시각이 지난 경매도 같은 규칙으로 마감합니다.

        입찰이 없거나 최고가가 최저 낙찰가 미만이면 낙찰자 없이 종료합니다.
        낙찰자가 있으면 결제 기한(payment_due_at)을 설정합니다.
        이미 종료된 경매는 그대로 반환합니다.
        """
        now = now or utcnow()
        auction = self.get_auction(auction_id, for_update=True)

        if auction.status in TERMINAL_AUCTION_STATUSES:
            return auction
        if auction.status not in CLOSABLE_AUCTION_STATUSES:
            raise AuctionStateError("진행 중이거나 일시 정지된 경매만 마감할 수 있습니다", current_status=auction.status.value)
        if now < ensure_aware(auction.end_at):
            raise AuctionStateError("아직 마감 시각이 아닙니다", current_status=auction.status.value)

        winner = self.ledger.rank(auction.id).winner
        auction.status = AuctionStatus.ENDED

        if winner is None:
            logger.info(f"경매 마감 (입찰 없음): auction={auction.id}")
        elif auction.reserve_price is not None and winner.amount < auction.reserve_price:
            logger.info(
                f"경매 마감 (최저가 미달): auction={auction.id}, top={winner.amount}, reserve={auction.reserve_price}"
            )
        else:
            auction.winner_user_id = winner.bidder_user_id
            auction.winning_bid_id = winner.id
            auction.payment_due_at = now + timedelta(hours=settings.auction_payment_window_hours)
            logger.info(f"경매 마감 (낙찰): auction={auction.id}, bid={winner.id}")

        self.db.flush()
        return auction
