"""
요청 주체 / 외부 클라이언트 의존성

사용자 인증은 상위 계층에서 처리하고, 검증된 사용자 정보를
X-User-Id / X-User-Role 헤더로 전달받습니다.
"""
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException

from blindbid.services.auction_state_machine import Actor
from blindbid.xendit_client import XenditClient


def _parse_actor(user_id: Optional[str], role: Optional[str]) -> Optional[Actor]:
    if not user_id:
        return None
    try:
        parsed = uuid.UUID(user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="사용자 ID 형식이 올바르지 않습니다")
    return Actor(user_id=parsed, role=(role or "").strip().lower() or None)


def get_optional_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> Optional[Actor]:
    return _parse_actor(x_user_id, x_user_role)


def get_current_actor(actor: Optional[Actor] = Depends(get_optional_actor)) -> Actor:
    if actor is None:
        raise HTTPException(status_code=401, detail="로그인이 필요합니다")
    return actor


def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="관리자 권한이 필요합니다")
    return actor


def get_payment_client() -> XenditClient:
    return XenditClient.from_settings()
