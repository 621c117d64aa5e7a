import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from blindbid.db import get_session
from blindbid.services.payment_webhook import PaymentWebhookService
from blindbid.settings import settings

router = APIRouter()
logger = logging.getLogger(__name__)


def verify_callback_token(x_callback_token: Optional[str] = Header(default=None)) -> None:
    """PAYMENT_WEBHOOK_TOKEN이 설정된 경우에만 검증"""
    expected = settings.payment_webhook_token
    if not expected:
        logger.warning("PAYMENT_WEBHOOK_TOKEN이 설정되지 않아 콜백 토큰 검증을 건너뜁니다")
        return
    if not x_callback_token or not hmac.compare_digest(x_callback_token, expected):
        logger.warning("결제 콜백 토큰 불일치")
        raise HTTPException(status_code=401, detail="콜백 토큰이 올바르지 않습니다")


@router.post("/payments")
def payment_callback(
    payload: dict = Body(...),
    _: None = Depends(verify_callback_token),
    session: Session = Depends(get_session),
):
    """결제 게이트웨이 콜백. 처리된 콜백은 항상 200으로 응답"""
    outcome = PaymentWebhookService(session).handle_callback(payload)
    return {
        "success": True,
        "action": outcome.action,
        "orderId": str(outcome.order_id) if outcome.order_id else None,
    }
