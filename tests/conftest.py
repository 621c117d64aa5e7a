"""Pytest configuration and fixtures."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import pytest
from sqlalchemy import JSON, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from blindbid.models import Auction, AuctionBid, AuctionItem, AuctionStatus, Base
from blindbid.xendit_client import PaymentLink, PaymentLinkStatus, XenditClient


# 테스트용 메모리 SQLite 엔진
TEST_DATABASE_URL = "sqlite:///:memory:"

# TestClient는 별도 스레드에서 요청을 처리하므로 단일 커넥션을 공유
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False  # 테스트 로그 줄이기
)

TestSessionLocal = sessionmaker(
    bind=test_engine,
    autoflush=False,
    expire_on_commit=False,
)

# 테스트 기준 시각
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _patch_jsonb_to_json(base):
    """
    SQLite에서 JSONB를 JSON으로 변경하여 컴파일 오류 방지.
    테스트용으로만 사용.
    """
    from sqlalchemy.dialects.postgresql import JSONB

    for table in base.metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, JSONB):
                # JSONB → JSON으로 변경 (SQLite 호환)
                column.type = JSON()


@pytest.fixture(scope="function")
def test_session() -> Session:
    """
    테스트용 데이터베이스 세션 fixture.
    각 테스트마다 새로운 메모리 DB 생성.
    """
    _patch_jsonb_to_json(Base)
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()
    try:
        yield session
        session.commit()  # 테스트 성공 시 commit
    except Exception:
        session.rollback()  # 실패 시 rollback
        raise
    finally:
        session.close()
        # 모든 테이블 삭제
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def db_session(test_session: Session):
    """
    test_session alias.
    """
    yield test_session


@pytest.fixture
def session_factory():
    """스케줄러/API가 여는 세션도 같은 메모리 DB를 보도록 TestSessionLocal 제공"""
    return TestSessionLocal


@pytest.fixture
def payment_client():
    """결제 게이트웨이 Mock (호출마다 새 결제 링크 발급)"""
    client = Mock(spec=XenditClient)
    counter = {"n": 0}

    def _create(amount, description, metadata=None, duration_seconds=86400):
        counter["n"] += 1
        n = counter["n"]
        return PaymentLink(
            id=f"inv_{n}",
            checkout_url=f"https://checkout.example/inv_{n}",
            reference=f"BLINDBID_TEST_{n}",
        )

    def _get(payment_link_id):
        return PaymentLinkStatus(
            id=payment_link_id,
            status="pending",
            reference=None,
            checkout_url=f"https://checkout.example/{payment_link_id}",
        )

    client.create_payment_link.side_effect = _create
    client.get_payment_link.side_effect = _get
    client.cancel_payment_link.return_value = {"success": True, "already_expired": False}
    return client


# ==================== 데이터 생성 헬퍼 ====================

class Seed:
    """테스트 데이터 생성 (flush만 하고 commit은 테스트에서)"""

    def __init__(self, session: Session):
        self.session = session

    def item(self, seller_user_id: uuid.UUID | None = None, title: str = "Untitled No. 7") -> AuctionItem:
        item = AuctionItem(
            seller_user_id=seller_user_id or uuid.uuid4(), title=title, images=[], categories=[], tags=[]
        )
        self.session.add(item)
        self.session.flush()
        return item

    def auction(
        self,
        status: AuctionStatus = AuctionStatus.ACTIVE,
        start_price: str = "1000",
        reserve_price: str | None = None,
        min_increment: str = "0",
        start_at: datetime | None = None,
        end_at: datetime | None = None,
        seller_user_id: uuid.UUID | None = None,
        **kwargs,
    ) -> Auction:
        item = self.item(seller_user_id=seller_user_id)
        auction = Auction(
            auction_item_id=item.id,
            seller_user_id=item.seller_user_id,
            start_price=Decimal(start_price),
            reserve_price=Decimal(reserve_price) if reserve_price is not None else None,
            min_increment=Decimal(min_increment),
            start_at=start_at or NOW - timedelta(hours=1),
            end_at=end_at or NOW + timedelta(hours=1),
            status=status,
            **kwargs,
        )
        self.session.add(auction)
        self.session.flush()
        return auction

    def bid(
        self,
        auction: Auction,
        bidder_user_id: uuid.UUID,
        amount: str,
        created_at: datetime | None = None,
        **kwargs,
    ) -> AuctionBid:
        bid = AuctionBid(
            auction_id=auction.id,
            bidder_user_id=bidder_user_id,
            amount=Decimal(amount),
            created_at=created_at or NOW - timedelta(minutes=30),
            is_withdrawn=kwargs.pop("is_withdrawn", False),
            **kwargs,
        )
        self.session.add(bid)
        self.session.flush()
        return bid


@pytest.fixture
def seed(test_session: Session) -> Seed:
    return Seed(test_session)


@pytest.fixture
def now() -> datetime:
    return NOW


# 테스트 마커 정의
def pytest_configure(config):
    """Pytest 마커 등록."""
    config.addinivalue_line("markers", "unit: 단위 테스트 (DB 불필요)")
    config.addinivalue_line("markers", "integration: 통합 테스트 (API/DB)")
    config.addinivalue_line("markers", "slow: 느린 테스트 (> 1분)")
