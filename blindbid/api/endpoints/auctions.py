"""
경매 API 엔드포인트

블라인드 경매: 입찰자는 자신의 입찰만 조회할 수 있으며,
참여자 수는 판매자와 관리자에게만 노출됩니다.
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from blindbid.api.deps import get_current_actor, get_optional_actor, get_payment_client, require_admin
from blindbid.db import get_session
from blindbid.models import AuctionStatus
from blindbid.schemas.auction import (
    AuctionCreate,
    AuctionItemCreate,
    AuctionItemResponse,
    AuctionListResponse,
    AuctionResponse,
    AuctionUpdate,
    BidCreate,
    BidResponse,
    CancelRequest,
    MyBidResponse,
    OrderResponse,
    Pagination,
    RolloverResponse,
    SettlementResponse,
)
from blindbid.services.auction_scheduler import AuctionScheduler, get_auction_scheduler
from blindbid.services.auction_state_machine import Actor, AuctionStateMachine
from blindbid.services.bid_admission import BidAdmissionService
from blindbid.services.bid_ledger import BidLedger
from blindbid.services.rollover_service import RolloverService
from blindbid.services.settlement_service import SettlementService
from blindbid.xendit_client import XenditClient

router = APIRouter()
logger = logging.getLogger(__name__)


# ==================== 판매자: 작품 / 경매 등록 ====================

@router.post("/items", response_model=AuctionItemResponse, status_code=201)
def create_auction_item(
    payload: AuctionItemCreate,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    item = AuctionStateMachine(session).create_auction_item(actor, **payload.model_dump())
    return item


@router.get("/items/my-items", response_model=list[AuctionItemResponse])
def list_my_items(
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    return AuctionStateMachine(session).list_seller_items(actor.user_id)


@router.get("/seller/my-auctions", response_model=list[AuctionResponse])
def list_my_auctions(
    status: Optional[AuctionStatus] = Query(default=None),
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    return AuctionStateMachine(session).list_seller_auctions(actor.user_id, status=status)


@router.post("/scheduler/run")
def run_scheduler(
    actor: Actor = Depends(require_admin),
    scheduler: AuctionScheduler = Depends(get_auction_scheduler),
):
    """스케줄러 1회 수동 실행 (관리자)"""
    logger.info(f"스케줄러 수동 실행: by={actor.user_id}")
    return scheduler.run_once()


@router.post("", response_model=AuctionResponse, status_code=201)
def create_auction(
    payload: AuctionCreate,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    return AuctionStateMachine(session).create_auction(actor, **payload.model_dump())


@router.get("", response_model=AuctionListResponse)
def list_auctions(
    status: Optional[AuctionStatus] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    session: Session = Depends(get_session),
):
    items, total = AuctionStateMachine(session).list_auctions(status=status, page=page, limit=limit)
    return AuctionListResponse(
        data=[AuctionResponse.model_validate(a) for a in items],
        pagination=Pagination(page=page, limit=limit, total=total),
    )


# ==================== 조회 / 입찰 ====================

@router.get("/{auction_id}")
def get_auction(
    auction_id: uuid.UUID,
    actor: Optional[Actor] = Depends(get_optional_actor),
    session: Session = Depends(get_session),
):
    """경매 상세. 참여자 수는 판매자/관리자에게만 포함"""
    machine = AuctionStateMachine(session)
    auction = machine.get_auction(auction_id)
    data = AuctionResponse.model_validate(auction).model_dump(mode="json", by_alias=True)
    if machine.can_view_participants(actor, auction):
        data["participantsCount"] = BidLedger(session).participants_count(auction.id)
    return JSONResponse(content=data)


@router.get("/{auction_id}/my-bid")
def get_my_bid(
    auction_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    bid = BidAdmissionService(session).my_bid(auction_id, actor.user_id)
    if bid is None:
        return {"data": None}
    return {"data": MyBidResponse.model_validate(bid).model_dump(mode="json", by_alias=True)}


@router.post("/{auction_id}/bids", response_model=BidResponse, status_code=201)
def place_bid(
    auction_id: uuid.UUID,
    payload: BidCreate,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    placed = BidAdmissionService(session).place_bid(
        auction_id=auction_id,
        bidder_user_id=actor.user_id,
        amount=payload.amount,
        user_address_id=payload.user_address_id,
        idempotency_key=payload.idempotency_key,
        courier=payload.courier,
        courier_service=payload.courier_service,
    )
    return placed.bid


# ==================== 경매 관리 ====================

@router.patch("/{auction_id}", response_model=AuctionResponse)
def update_auction(
    auction_id: uuid.UUID,
    payload: AuctionUpdate,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    changes = payload.model_dump(exclude_unset=True)
    return AuctionStateMachine(session).update(actor, auction_id, changes)


@router.post("/{auction_id}/cancel", response_model=AuctionResponse)
def cancel_auction(
    auction_id: uuid.UUID,
    payload: Optional[CancelRequest] = None,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    reason = payload.reason if payload else None
    return AuctionStateMachine(session).cancel(actor, auction_id, reason=reason)


@router.post("/{auction_id}/pause", response_model=AuctionResponse)
def pause_auction(
    auction_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    return AuctionStateMachine(session).pause(actor, auction_id)


@router.post("/{auction_id}/resume", response_model=AuctionResponse)
def resume_auction(
    auction_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    return AuctionStateMachine(session).resume(actor, auction_id)


@router.post("/{auction_id}/activate-now", response_model=AuctionResponse)
def activate_auction_now(
    auction_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
):
    return AuctionStateMachine(session).activate_now(actor, auction_id)


@router.post("/{auction_id}/settle", response_model=SettlementResponse)
def settle_auction(
    auction_id: uuid.UUID,
    actor: Actor = Depends(require_admin),
    session: Session = Depends(get_session),
    payment_client: XenditClient = Depends(get_payment_client),
):
    """수동 정산 (관리자). 이미 정산된 경매는 기존 주문을 반환"""
    result = SettlementService(session, payment_client).settle(auction_id)
    return SettlementResponse(
        order=OrderResponse.model_validate(result.order),
        checkout_url=result.payment_link.checkout_url if result.payment_link else result.order.checkout_url,
        created=result.created,
    )


@router.post("/{auction_id}/force-expire", response_model=RolloverResponse)
def force_expire_payment(
    auction_id: uuid.UUID,
    actor: Actor = Depends(get_current_actor),
    session: Session = Depends(get_session),
    payment_client: XenditClient = Depends(get_payment_client),
):
    """결제 기한 강제 만료 후 다음 순위로 롤오버 (관리자)"""
    result = RolloverService(session, payment_client).force_expire(actor, auction_id)
    return RolloverResponse(
        action=result.action,
        cancelled_order_id=result.cancelled_order_id,
        new_winner_user_id=result.new_winner.user_id if result.new_winner else None,
        order_id=result.settlement.order.id if result.settlement else None,
    )
