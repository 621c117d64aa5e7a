"""
입찰 접수 테스트.

검증 순서(멱등키 → 기간 → 상태 → 정책 → 금액)와 거부 사유 코드를 확인합니다.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from blindbid.exceptions import AuctionNotFoundError, BidRejectedError
from blindbid.models import AuctionBid, AuctionStatus
from blindbid.services.bid_admission import BidAdmissionService


def _count_bids(session, auction_id):
    return session.query(AuctionBid).filter(AuctionBid.auction_id == auction_id).count()


@pytest.mark.unit
class TestPlaceBidAmounts:
    def test_increment_scenario(self, test_session, seed, now):
        """시작가 1000, 최소 단위 100: 1000 수락 → 1050 거부 → 1200 수락"""
        auction = seed.auction(start_price="1000", min_increment="100")
        bidder = uuid.uuid4()
        service = BidAdmissionService(test_session)

        first = service.place_bid(auction.id, bidder, Decimal("1000"), now=now)
        assert first.created is True

        with pytest.raises(BidRejectedError) as excinfo:
            service.place_bid(auction.id, bidder, Decimal("1050"), now=now + timedelta(seconds=1))
        assert excinfo.value.reason == "INCREMENT_TOO_SMALL"

        third = service.place_bid(auction.id, bidder, Decimal("1200"), now=now + timedelta(seconds=2))
        assert third.bid.amount == Decimal("1200")
        assert _count_bids(test_session, auction.id) == 2

    def test_first_bid_below_start_price_rejected(self, test_session, seed, now):
        auction = seed.auction(start_price="1000")

        with pytest.raises(BidRejectedError) as excinfo:
            BidAdmissionService(test_session).place_bid(auction.id, uuid.uuid4(), Decimal("999.99"), now=now)

        assert excinfo.value.reason == "BELOW_START_PRICE"
        assert excinfo.value.status_code == 400

    def test_repeat_bid_not_higher_rejected(self, test_session, seed, now):
        auction = seed.auction(start_price="1000")
        bidder = uuid.uuid4()
        service = BidAdmissionService(test_session)
        service.place_bid(auction.id, bidder, Decimal("1500"), now=now)

        with pytest.raises(BidRejectedError) as excinfo:
            service.place_bid(auction.id, bidder, Decimal("1500"), now=now)

        assert excinfo.value.reason == "NOT_HIGHER_THAN_PREVIOUS"

    def test_only_own_history_is_consulted(self, test_session, seed, now):
        """다른 입찰자의 더 높은 입찰은 내 입찰 검증에 영향이 없음"""
        auction = seed.auction(start_price="1000", min_increment="100")
        seed.bid(auction, uuid.uuid4(), "9000")

        placed = BidAdmissionService(test_session).place_bid(auction.id, uuid.uuid4(), Decimal("1000"), now=now)

        assert placed.bid.amount == Decimal("1000")

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_amount_rejected(self, test_session, seed, now, amount):
        auction = seed.auction()

        with pytest.raises(BidRejectedError) as excinfo:
            BidAdmissionService(test_session).place_bid(auction.id, uuid.uuid4(), Decimal(amount), now=now)

        assert excinfo.value.reason == "INVALID_AMOUNT"


@pytest.mark.unit
class TestPlaceBidWindowAndStatus:
    def test_before_start_rejected(self, test_session, seed, now):
        auction = seed.auction(start_at=now + timedelta(minutes=5), end_at=now + timedelta(hours=1))

        with pytest.raises(BidRejectedError) as excinfo:
            BidAdmissionService(test_session).place_bid(auction.id, uuid.uuid4(), Decimal("1000"), now=now)

        assert excinfo.value.reason == "WINDOW_CLOSED"

    def test_at_end_rejected(self, test_session, seed, now):
        auction = seed.auction(end_at=now)

        with pytest.raises(BidRejectedError) as excinfo:
            BidAdmissionService(test_session).place_bid(auction.id, uuid.uuid4(), Decimal("1000"), now=now)

        assert excinfo.value.reason == "WINDOW_CLOSED"

    @pytest.mark.parametrize(
        "status, reason",
        [
            (AuctionStatus.CANCELLED, "AUCTION_CANCELLED"),
            (AuctionStatus.PAUSED, "AUCTION_PAUSED"),
            (AuctionStatus.SCHEDULED, "AUCTION_NOT_ACTIVE"),
            (AuctionStatus.ENDED, "AUCTION_NOT_ACTIVE"),
        ],
    )
    def test_non_active_status_rejected(self, test_session, seed, now, status, reason):
        auction = seed.auction(status=status)

        with pytest.raises(BidRejectedError) as excinfo:
            BidAdmissionService(test_session).place_bid(auction.id, uuid.uuid4(), Decimal("1000"), now=now)

        assert excinfo.value.reason == reason

    def test_unknown_auction(self, test_session, now):
        with pytest.raises(AuctionNotFoundError):
            BidAdmissionService(test_session).place_bid(uuid.uuid4(), uuid.uuid4(), Decimal("1000"), now=now)


@pytest.mark.unit
class TestPlaceBidPolicies:
    def test_single_bid_only(self, test_session, seed, now):
        auction = seed.auction(single_bid_only=True)
        bidder = uuid.uuid4()
        service = BidAdmissionService(test_session)
        service.place_bid(auction.id, bidder, Decimal("1000"), now=now)

        with pytest.raises(BidRejectedError) as excinfo:
            service.place_bid(auction.id, bidder, Decimal("2000"), now=now)

        assert excinfo.value.reason == "SINGLE_BID_ONLY"

    def test_bid_updates_disabled(self, test_session, seed, now):
        auction = seed.auction(allow_bid_updates=False)
        bidder = uuid.uuid4()
        service = BidAdmissionService(test_session)
        service.place_bid(auction.id, bidder, Decimal("1000"), now=now)

        with pytest.raises(BidRejectedError) as excinfo:
            service.place_bid(auction.id, bidder, Decimal("2000"), now=now)

        assert excinfo.value.reason == "BID_UPDATES_DISABLED"


@pytest.mark.unit
class TestPlaceBidIdempotency:
    def test_same_key_returns_identical_bid(self, test_session, seed, now):
        auction = seed.auction()
        bidder = uuid.uuid4()
        service = BidAdmissionService(test_session)

        first = service.place_bid(auction.id, bidder, Decimal("1000"), idempotency_key="abc", now=now)
        again = service.place_bid(auction.id, bidder, Decimal("1000"), idempotency_key="abc", now=now)

        assert again.created is False
        assert again.bid.id == first.bid.id
        assert _count_bids(test_session, auction.id) == 1

    def test_duplicate_key_skips_revalidation(self, test_session, seed, now):
        """기간이 지난 뒤의 재요청도 기존 입찰을 그대로 반환"""
        auction = seed.auction()
        bidder = uuid.uuid4()
        service = BidAdmissionService(test_session)
        first = service.place_bid(auction.id, bidder, Decimal("1000"), idempotency_key="abc", now=now)

        again = service.place_bid(
            auction.id, bidder, Decimal("1000"), idempotency_key="abc", now=now + timedelta(days=2)
        )

        assert again.bid.id == first.bid.id

    def test_shipping_preference_stored_with_bid(self, test_session, seed, now):
        auction = seed.auction()
        address_id = uuid.uuid4()

        placed = BidAdmissionService(test_session).place_bid(
            auction.id, uuid.uuid4(), Decimal("1000"),
            user_address_id=address_id, courier="LBC", courier_service="express", now=now,
        )

        assert placed.bid.courier == "LBC"
        assert placed.bid.courier_service == "express"
        assert placed.bid.user_address_id == address_id


@pytest.mark.unit
def test_my_bid_returns_latest_own_bid(test_session, seed, now):
    auction = seed.auction()
    me, other = uuid.uuid4(), uuid.uuid4()
    seed.bid(auction, me, "1000", created_at=now - timedelta(minutes=10))
    seed.bid(auction, me, "1400", created_at=now - timedelta(minutes=2))
    seed.bid(auction, other, "8000", created_at=now - timedelta(minutes=1))
    service = BidAdmissionService(test_session)

    assert service.my_bid(auction.id, me).amount == Decimal("1400")
    assert service.my_bid(auction.id, uuid.uuid4()) is None
