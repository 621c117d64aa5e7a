from datetime import datetime
from decimal import Decimal
from enum import Enum
import uuid

from sqlalchemy import Boolean, DateTime, Enum as SAEnum, ForeignKey, Index, Integer, Numeric, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func

from blindbid.timeutils import utcnow


class Base(DeclarativeBase):
    pass


class AuctionStatus(str, Enum):
    """경매 상태"""
    SCHEDULED = "scheduled"  # 시작 대기
    ACTIVE = "active"        # 입찰 진행 중
    PAUSED = "paused"        # 일시 정지
    ENDED = "ended"          # 마감 (낙찰자 유무와 무관)
    SETTLED = "settled"      # 주문/결제 링크 생성 완료
    SOLD = "sold"            # 결제 완료
    CANCELLED = "cancelled"  # 취소


TERMINAL_AUCTION_STATUSES = frozenset(
    {AuctionStatus.ENDED, AuctionStatus.SETTLED, AuctionStatus.SOLD, AuctionStatus.CANCELLED}
)

# 마감 시각이 지나면 스케줄러가 마감하는 상태
CLOSABLE_AUCTION_STATUSES = frozenset({AuctionStatus.ACTIVE, AuctionStatus.PAUSED})


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"


def _enum_column(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


class AuctionItem(Base):
    """
    경매 출품 작품 정보.
    경매가 참조한 이후에는 수정하지 않습니다.
    """
    __tablename__ = "auction_items"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    seller_profile_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    images: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    primary_image: Mapped[str | None] = mapped_column(Text, nullable=True)
    medium: Mapped[str | None] = mapped_column(Text, nullable=True)
    dimensions: Mapped[str | None] = mapped_column(Text, nullable=True)
    year_created: Mapped[int | None] = mapped_column(Integer, nullable=True)
    weight_kg: Mapped[Decimal | None] = mapped_column(Numeric(8, 2), nullable=True)
    is_original: Mapped[bool] = mapped_column(Boolean, default=True)
    is_framed: Mapped[bool] = mapped_column(Boolean, default=False)
    condition: Mapped[str | None] = mapped_column(Text, nullable=True)
    categories: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    tags: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Auction(Base):
    __tablename__ = "auctions"
    __table_args__ = (
        Index("ix_auctions_status_start_at", "status", "start_at"),
        Index("ix_auctions_status_end_at", "status", "end_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    auction_item_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("auction_items.id"), nullable=False)
    seller_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)

    start_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reserve_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    min_increment: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))

    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    single_bid_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    allow_bid_updates: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    status: Mapped[AuctionStatus] = mapped_column(
        _enum_column(AuctionStatus, "auction_status"), nullable=False, default=AuctionStatus.SCHEDULED
    )

    # 낙찰 정보 (마감 후에만 채워짐)
    winner_user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    winning_bid_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    payment_due_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settlement_order_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_by: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class AuctionBid(Base):
    """
    입찰 기록. 한 번 저장된 행은 금액을 수정하거나 삭제하지 않습니다.
    """
    __tablename__ = "auction_bids"
    __table_args__ = (
        UniqueConstraint(
            "auction_id", "bidder_user_id", "idempotency_key",
            name="uq_auction_bids_auction_bidder_idempotency_key",
        ),
        Index("ix_auction_bids_auction_bidder", "auction_id", "bidder_user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    auction_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("auctions.id"), nullable=False)
    bidder_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    is_withdrawn: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    idempotency_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 배송 정보 (입찰 시점에 고정)
    user_address_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    courier: Mapped[str | None] = mapped_column(Text, nullable=True)
    courier_service: Mapped[str | None] = mapped_column(Text, nullable=True)

    # 동점 처리 기준이므로 서버에서 명시적으로 기록
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_auction_user", "auction_id", "user_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    auction_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("auctions.id"), nullable=True)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    seller_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus, "order_status"), nullable=False, default=OrderStatus.PENDING
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus, "payment_status"), nullable=False, default=PaymentStatus.PENDING
    )

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    shipping_method: Mapped[str | None] = mapped_column(Text, nullable=True)
    courier: Mapped[str | None] = mapped_column(Text, nullable=True)
    courier_service: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_address_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    order_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_auction: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # 결제 링크
    payment_provider: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_link_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_reference: Mapped[str | None] = mapped_column(Text, nullable=True, unique=True)
    checkout_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_fee: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("orders.id"), nullable=False)
    auction_item_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), ForeignKey("auction_items.id"), nullable=True)
    seller_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    price_at_purchase: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    item_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    seller_earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    from_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    to_status: Mapped[str] = mapped_column(Text, nullable=False)
    source: Mapped[str | None] = mapped_column(Text, nullable=True)  # settlement, rollover, force_expire, webhook
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class SchedulerRun(Base):
    """스케줄러 1회 실행(tick) 기록"""
    __tablename__ = "auction_scheduler_runs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    step: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False)  # SUCCESS, PARTIAL, FAILED
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
