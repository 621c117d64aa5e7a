"""
경매 엔진 예외 클래스

모든 예외는 AuctionError를 상속받으며, API 계층에서 HTTP 상태 코드로 변환됩니다.
"""
from typing import Any, Dict, Optional


class AuctionError(Exception):
    """
    Base exception for all auction engine errors

    Attributes:
        message: 에러 메시지 (사용자에게 그대로 노출 가능)
        error_code: 에러 코드
        context: 추가 컨텍스트 정보
        recoverable: 재시도로 복구 가능한지 여부
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "recoverable": self.recoverable,
        }


# =============================================================================
# 사용자 입력/상태 검증 (4xx, 재시도하지 않음)
# =============================================================================


class AuctionValidationError(AuctionError):
    """잘못된 금액, 닫힌 입찰 기간, 잘못된 상태, 정책 위반"""

    status_code = 400

    def __init__(self, message: str, error_code: str = "VALIDATION_ERROR", **context: Any):
        super().__init__(message=message, error_code=error_code, context=context, recoverable=False)


class BidRejectedError(AuctionValidationError):
    """
    입찰 거부

    reason은 거부 사유 코드입니다:
    WINDOW_CLOSED, AUCTION_CANCELLED, AUCTION_PAUSED, AUCTION_NOT_ACTIVE,
    SINGLE_BID_ONLY, BID_UPDATES_DISABLED, BELOW_START_PRICE,
    NOT_HIGHER_THAN_PREVIOUS, INCREMENT_TOO_SMALL, INVALID_AMOUNT
    """

    def __init__(self, reason: str, message: str, **context: Any):
        self.reason = reason
        super().__init__(message, error_code=reason, **context)


class AuctionStateError(AuctionValidationError):
    """현재 상태에서 허용되지 않는 전이"""

    def __init__(self, message: str, current_status: Optional[str] = None, **context: Any):
        self.current_status = current_status
        super().__init__(message, error_code="INVALID_STATE", current_status=current_status, **context)


class AuctionPermissionError(AuctionError):
    """판매자/관리자 권한 없음"""

    status_code = 403

    def __init__(self, message: str = "이 작업을 수행할 권한이 없습니다", **context: Any):
        super().__init__(message=message, error_code="FORBIDDEN", context=context)


# =============================================================================
# 외부 서비스 / 데이터 무결성
# =============================================================================


class ExternalServiceError(AuctionError):
    """
    결제 게이트웨이 타임아웃/실패

    Attributes:
        service: 외부 서비스 이름
        status_code_from_service: 외부 서비스 HTTP 상태 코드
        response_body: 응답 본문
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        service: str = "payment_gateway",
        http_status: Optional[int] = None,
        response_body: Optional[str] = None,
        **context: Any,
    ):
        self.service = service
        self.http_status = http_status
        self.response_body = response_body
        super().__init__(
            message=message,
            error_code="EXTERNAL_SERVICE_ERROR",
            context={"service": service, "http_status": http_status, "response_body": response_body, **context},
            recoverable=True,
        )


class DataIntegrityError(AuctionError):
    """있어야 할 행이 없음 (낙찰 입찰, 경매 등). 현재 작업은 중단됩니다."""

    status_code = 500

    def __init__(self, message: str, table_name: Optional[str] = None, row_id: Optional[Any] = None, **context: Any):
        self.table_name = table_name
        self.row_id = row_id
        super().__init__(
            message=message,
            error_code="DATA_INTEGRITY_ERROR",
            context={"table_name": table_name, "row_id": str(row_id) if row_id is not None else None, **context},
        )


class AuctionNotFoundError(DataIntegrityError):
    """경매를 찾을 수 없음"""

    status_code = 404

    def __init__(self, auction_id: Any):
        self.auction_id = auction_id
        super().__init__(f"경매를 찾을 수 없습니다: {auction_id}", table_name="auctions", row_id=auction_id)
        self.error_code = "AUCTION_NOT_FOUND"


class AuctionItemNotFoundError(DataIntegrityError):
    """경매 작품을 찾을 수 없음"""

    status_code = 404

    def __init__(self, auction_item_id: Any):
        self.auction_item_id = auction_item_id
        super().__init__(f"경매 작품을 찾을 수 없습니다: {auction_item_id}", table_name="auction_items", row_id=auction_item_id)
        self.error_code = "AUCTION_ITEM_NOT_FOUND"
