from __future__ import annotations

import base64
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from blindbid.exceptions import ExternalServiceError
from blindbid.settings import settings

logger = logging.getLogger(__name__)

# Xendit 인보이스 상태 → 내부 결제 상태
_STATUS_MAP = {
    "PENDING": "pending",
    "PAID": "paid",
    "SETTLED": "paid",
    "EXPIRED": "expired",
}


@dataclass(frozen=True)
class PaymentLink:
    id: str
    checkout_url: str | None
    reference: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class PaymentLinkStatus:
    id: str
    status: str
    reference: str | None
    checkout_url: str | None
    raw: dict[str, Any] = field(default_factory=dict)


class XenditClient:
    """
    결제 게이트웨이 클라이언트 (Xendit v2 invoices)

    - create_payment_link: 인보이스 생성 (재시도하지 않음, 중복 결제 링크 방지)
    - get_payment_link: 인보이스 조회 (전송 오류 시 재시도)
    - cancel_payment_link: 인보이스 만료 처리 (이미 만료/없음은 성공으로 간주)
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.xendit.co",
        timeout: float = 15.0,
        connect_timeout: float = 5.0,
        currency: str = "PHP",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._secret_key = secret_key
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=connect_timeout)
        self._currency = currency
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "XenditClient":
        return cls(
            secret_key=settings.payment_gateway_secret_key,
            base_url=settings.payment_gateway_base_url,
            timeout=settings.payment_timeout_seconds,
            connect_timeout=settings.payment_connect_timeout_seconds,
            currency=settings.payment_currency,
        )

    def _headers(self) -> dict[str, str]:
        if not self._secret_key:
            raise ExternalServiceError("PAYMENT_GATEWAY_SECRET_KEY가 설정되어 있지 않습니다")
        # Basic Auth: secret key를 username, 비밀번호는 빈 값
        token = base64.b64encode(f"{self._secret_key}:".encode()).decode()
        return {"Authorization": f"Basic {token}", "Content-Type": "application/json"}

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> tuple[int, dict[str, Any]]:
        url = f"{self._base_url}{path}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.request(method, url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            raise ExternalServiceError(f"결제 게이트웨이 응답 시간 초과: {e}", url=url) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError(f"결제 게이트웨이 연결 실패: {e}", url=url) from e

        if not resp.content:
            return resp.status_code, {}
        try:
            data = resp.json()
        except ValueError:
            return resp.status_code, {"_raw_text": resp.text}

        if isinstance(data, dict):
            return resp.status_code, data
        return resp.status_code, {"_raw": data}

    def create_payment_link(
        self,
        amount: Decimal,
        description: str,
        metadata: dict[str, Any] | None = None,
        duration_seconds: int = 86400,
    ) -> PaymentLink:
        metadata = metadata or {}
        external_id = f"BLINDBID_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
        payload = {
            "external_id": external_id,
            "amount": float(amount),
            "description": description,
            "invoice_duration": duration_seconds,
            "currency": self._currency,
            "success_redirect_url": f"{settings.frontend_url}/marketplace/myorders",
            "failure_redirect_url": f"{settings.frontend_url}/marketplace",
            "metadata": {**{k: str(v) for k, v in metadata.items()}, "source": "blindbid"},
        }

        status_code, data = self._request("POST", "/v2/invoices", payload)
        if status_code >= 300:
            message = data.get("message") or f"HTTP {status_code}"
            raise ExternalServiceError(
                f"결제 링크 생성 실패: {message}",
                http_status=status_code,
                response_body=str(data),
                error_code=data.get("error_code"),
            )

        invoice_id = data.get("id")
        if not invoice_id:
            raise ExternalServiceError("결제 링크 생성 응답에 id가 없습니다", http_status=status_code, response_body=str(data))

        logger.info(f"결제 링크 생성: invoice={invoice_id}, external_id={external_id}, amount={amount}")
        return PaymentLink(
            id=str(invoice_id),
            checkout_url=data.get("invoice_url"),
            reference=str(data.get("external_id") or external_id),
            expires_at=parse_datetime(data.get("expiry_date")),
        )

    @retry(
        stop=stop_after_attempt(settings.payment_retry_count),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception(lambda e: _is_transient(e)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            f"결제 링크 조회 재시도 중... ({retry_state.attempt_number}회째): {retry_state.outcome.exception()}"
        ),
    )
    def get_payment_link(self, payment_link_id: str) -> PaymentLinkStatus:
        status_code, data = self._request("GET", f"/v2/invoices/{payment_link_id}")
        if status_code >= 300:
            raise ExternalServiceError(
                f"결제 링크 조회 실패: {data.get('message') or f'HTTP {status_code}'}",
                http_status=status_code,
                response_body=str(data),
            )

        return PaymentLinkStatus(
            id=str(data.get("id") or payment_link_id),
            status=normalize_status(data.get("status")),
            reference=data.get("external_id"),
            checkout_url=data.get("invoice_url"),
            raw=data,
        )

    def cancel_payment_link(self, payment_link_id: str) -> dict[str, Any]:
        status_code, data = self._request("POST", f"/invoices/{payment_link_id}/expire!")
        if status_code == 404:
            logger.warning(f"결제 링크 {payment_link_id}를 찾을 수 없습니다 (이미 만료 또는 삭제)")
            return {"success": True, "already_expired": True}
        if status_code == 400 and data.get("error_code") == "INVOICE_ALREADY_EXPIRED":
            logger.warning(f"결제 링크 {payment_link_id}는 이미 만료되었습니다")
            return {"success": True, "already_expired": True}
        if status_code >= 300:
            raise ExternalServiceError(
                f"결제 링크 취소 실패: {data.get('message') or f'HTTP {status_code}'}",
                http_status=status_code,
                response_body=str(data),
            )
        return {"success": True, "already_expired": False, "status": data.get("status")}


def normalize_status(value: Any) -> str:
    """게이트웨이 상태 문자열을 pending / paid / expired로 변환. 모르는 값은 pending"""
    return _STATUS_MAP.get(str(value or "").upper(), "pending")


def parse_datetime(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _is_transient(error: BaseException) -> bool:
    """전송 오류와 5xx만 재시도합니다."""
    if not isinstance(error, ExternalServiceError):
        return False
    return error.http_status is None or error.http_status >= 500
