from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from blindbid.models import AuctionStatus, OrderStatus, PaymentStatus


class CamelModel(BaseModel):
    """요청/응답 JSON은 camelCase, 내부 필드는 snake_case"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ==================== Requests ====================

class AuctionItemCreate(CamelModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    images: List[str] = []
    primary_image: Optional[str] = None
    medium: Optional[str] = None
    dimensions: Optional[str] = None
    year_created: Optional[int] = None
    weight_kg: Optional[Decimal] = None
    is_original: bool = True
    is_framed: bool = False
    condition: Optional[str] = None
    categories: List[str] = []
    tags: List[str] = []
    seller_profile_id: Optional[uuid.UUID] = None


class AuctionCreate(CamelModel):
    auction_item_id: uuid.UUID
    start_price: Decimal
    reserve_price: Optional[Decimal] = None
    min_increment: Decimal = Decimal("0")
    start_at: datetime
    end_at: datetime
    single_bid_only: bool = False
    allow_bid_updates: bool = True


class AuctionUpdate(CamelModel):
    start_price: Optional[Decimal] = None
    reserve_price: Optional[Decimal] = None
    min_increment: Optional[Decimal] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    single_bid_only: Optional[bool] = None
    allow_bid_updates: Optional[bool] = None


class BidCreate(CamelModel):
    amount: Decimal
    user_address_id: Optional[uuid.UUID] = None
    idempotency_key: Optional[str] = Field(default=None, max_length=200)
    courier: Optional[str] = None
    courier_service: Optional[str] = None


class CancelRequest(CamelModel):
    reason: Optional[str] = None


# ==================== Responses ====================

class AuctionItemResponse(CamelModel):
    id: uuid.UUID
    seller_user_id: uuid.UUID
    title: str
    description: Optional[str] = None
    images: Optional[List[str]] = None
    primary_image: Optional[str] = None
    medium: Optional[str] = None
    dimensions: Optional[str] = None
    year_created: Optional[int] = None
    is_original: Optional[bool] = None
    is_framed: Optional[bool] = None
    condition: Optional[str] = None
    categories: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    created_at: Optional[datetime] = None


class AuctionResponse(CamelModel):
    id: uuid.UUID
    auction_item_id: uuid.UUID
    seller_user_id: uuid.UUID
    start_price: Decimal
    reserve_price: Optional[Decimal] = None
    min_increment: Decimal
    start_at: datetime
    end_at: datetime
    single_bid_only: bool
    allow_bid_updates: bool
    status: AuctionStatus
    winner_user_id: Optional[uuid.UUID] = None
    payment_due_at: Optional[datetime] = None
    settlement_order_id: Optional[uuid.UUID] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int


class AuctionListResponse(CamelModel):
    data: List[AuctionResponse]
    pagination: Pagination


class BidResponse(CamelModel):
    """입찰자 본인에게만 반환"""
    id: uuid.UUID
    auction_id: uuid.UUID
    amount: Decimal
    idempotency_key: Optional[str] = None
    user_address_id: Optional[uuid.UUID] = None
    courier: Optional[str] = None
    courier_service: Optional[str] = None
    created_at: datetime


class MyBidResponse(CamelModel):
    amount: Decimal
    created_at: datetime


class OrderResponse(CamelModel):
    id: uuid.UUID
    auction_id: Optional[uuid.UUID] = None
    user_id: uuid.UUID
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: Decimal
    platform_fee: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    courier: Optional[str] = None
    courier_service: Optional[str] = None
    payment_reference: Optional[str] = None
    checkout_url: Optional[str] = None


class SettlementResponse(CamelModel):
    order: OrderResponse
    checkout_url: Optional[str] = None
    created: bool


class RolloverResponse(CamelModel):
    action: str
    cancelled_order_id: Optional[uuid.UUID] = None
    new_winner_user_id: Optional[uuid.UUID] = None
    order_id: Optional[uuid.UUID] = None
