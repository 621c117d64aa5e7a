"""
정산 서비스 테스트.

결제 게이트웨이는 conftest의 payment_client Mock을 사용합니다.
"""

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from blindbid.exceptions import AuctionStateError, ExternalServiceError
from blindbid.models import (
    Auction,
    AuctionStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
)
from blindbid.services.settlement_service import SettlementService, platform_fee_for


@pytest.fixture
def won_auction(seed, now):
    """낙찰자가 확정된 ended 경매"""
    auction = seed.auction(status=AuctionStatus.ENDED, end_at=now - timedelta(minutes=5))
    winner = uuid.uuid4()
    bid = seed.bid(auction, winner, "10000", courier="LBC", courier_service="express")
    auction.winner_user_id = winner
    auction.winning_bid_id = bid.id
    auction.payment_due_at = now + timedelta(hours=24)
    seed.session.flush()
    return auction


@pytest.mark.unit
class TestPlatformFee:
    def test_default_rate(self):
        assert platform_fee_for(Decimal("10000")) == Decimal("400.00")

    def test_rounds_half_up(self):
        assert platform_fee_for(Decimal("0.125"), rate=0.1) == Decimal("0.01")
        assert platform_fee_for(Decimal("1.25"), rate=0.5) == Decimal("0.63")


@pytest.mark.unit
class TestSettle:
    def test_creates_order_and_payment_link(self, test_session, payment_client, won_auction, now):
        result = SettlementService(test_session, payment_client).settle(won_auction.id, now=now)

        order = result.order
        assert result.created is True
        assert won_auction.status == AuctionStatus.SETTLED
        assert won_auction.settlement_order_id == order.id
        assert order.user_id == won_auction.winner_user_id
        assert order.status == OrderStatus.PENDING
        assert order.payment_status == PaymentStatus.PENDING
        assert order.subtotal == Decimal("10000.00")
        assert order.platform_fee == Decimal("400.00")
        assert order.shipping_cost == Decimal("250")
        assert order.total_amount == Decimal("10250.00")
        assert order.payment_link_id == "inv_1"
        assert order.payment_reference == "BLINDBID_TEST_1"
        assert result.payment_link.checkout_url == "https://checkout.example/inv_1"

        item = test_session.query(OrderItem).filter(OrderItem.order_id == order.id).one()
        assert item.seller_earnings == Decimal("9600.00")
        history = test_session.query(OrderStatusHistory).filter(OrderStatusHistory.order_id == order.id).one()
        assert history.source == "settlement"

        kwargs = payment_client.create_payment_link.call_args.kwargs
        assert kwargs["amount"] == Decimal("10250.00")
        assert kwargs["duration_seconds"] == 24 * 3600
        assert kwargs["metadata"]["auction_id"] == won_auction.id

    def test_settling_twice_keeps_single_order(self, test_session, payment_client, won_auction, now):
        service = SettlementService(test_session, payment_client)

        first = service.settle(won_auction.id, now=now)
        second = service.settle(won_auction.id, now=now + timedelta(minutes=1))

        assert second.created is False
        assert second.order.id == first.order.id
        assert test_session.query(Order).filter(Order.auction_id == won_auction.id).count() == 1
        assert payment_client.create_payment_link.call_count == 1
        payment_client.get_payment_link.assert_called_once_with("inv_1")

    def test_link_refetch_failure_still_returns_order(self, test_session, payment_client, won_auction, now):
        service = SettlementService(test_session, payment_client)
        first = service.settle(won_auction.id, now=now)
        payment_client.get_payment_link.side_effect = ExternalServiceError("timeout")

        again = service.settle(won_auction.id, now=now)

        assert again.order.id == first.order.id
        assert again.payment_link is None

    def test_gateway_failure_leaves_no_order(self, test_session, payment_client, won_auction, now):
        payment_client.create_payment_link.side_effect = ExternalServiceError("gateway down")

        with pytest.raises(ExternalServiceError):
            SettlementService(test_session, payment_client).settle(won_auction.id, now=now)

        assert test_session.query(Order).count() == 0
        assert test_session.query(OrderItem).count() == 0
        assert test_session.query(OrderStatusHistory).count() == 0
        assert won_auction.status == AuctionStatus.ENDED
        assert won_auction.settlement_order_id is None

    def test_lost_race_discards_own_order(self, test_session, payment_client, won_auction, now):
        create = payment_client.create_payment_link.side_effect
        rival = {}

        def _settled_elsewhere(**kwargs):
            # 결제 링크를 만드는 동안 다른 워커가 먼저 정산을 확정
            order = Order(
                auction_id=won_auction.id,
                user_id=won_auction.winner_user_id,
                seller_user_id=won_auction.seller_user_id,
                subtotal=Decimal("10000"),
                total_amount=Decimal("10250"),
                payment_link_id="inv_rival",
            )
            test_session.add(order)
            test_session.flush()
            test_session.execute(
                update(Auction)
                .where(Auction.id == won_auction.id)
                .values(settlement_order_id=order.id, status=AuctionStatus.SETTLED)
                .execution_options(synchronize_session=False)
            )
            rival["order"] = order
            return create(**kwargs)

        payment_client.create_payment_link.side_effect = _settled_elsewhere

        result = SettlementService(test_session, payment_client).settle(won_auction.id, now=now)

        assert result.created is False
        assert result.order.id == rival["order"].id
        assert won_auction.settlement_order_id == rival["order"].id
        assert won_auction.status == AuctionStatus.SETTLED
        assert [o.id for o in test_session.query(Order).all()] == [rival["order"].id]
        assert test_session.query(OrderItem).count() == 0
        assert test_session.query(OrderStatusHistory).count() == 0
        payment_client.cancel_payment_link.assert_called_once_with("inv_1")
        payment_client.get_payment_link.assert_called_once_with("inv_rival")

    def test_no_shipping_preference_means_free_shipping(self, test_session, payment_client, seed, now):
        auction = seed.auction(status=AuctionStatus.ENDED, end_at=now - timedelta(minutes=1))
        bid = seed.bid(auction, uuid.uuid4(), "999.99")
        auction.winner_user_id = bid.bidder_user_id
        auction.winning_bid_id = bid.id
        test_session.flush()

        order = SettlementService(test_session, payment_client).settle(auction.id, now=now).order

        assert order.shipping_cost == Decimal("0")
        assert order.total_amount == Decimal("999.99")
        assert order.platform_fee == Decimal("40.00")

    def test_existing_open_order_is_adopted(self, test_session, payment_client, won_auction, now):
        existing = Order(
            auction_id=won_auction.id,
            user_id=won_auction.winner_user_id,
            seller_user_id=won_auction.seller_user_id,
            subtotal=Decimal("10000"),
            total_amount=Decimal("10000"),
            payment_link_id="inv_old",
        )
        test_session.add(existing)
        test_session.flush()

        result = SettlementService(test_session, payment_client).settle(won_auction.id, now=now)

        assert result.created is False
        assert result.order.id == existing.id
        assert won_auction.settlement_order_id == existing.id
        payment_client.create_payment_link.assert_not_called()

    def test_without_winner_rejected(self, test_session, payment_client, seed, now):
        auction = seed.auction(status=AuctionStatus.ENDED, end_at=now - timedelta(minutes=1))

        with pytest.raises(AuctionStateError):
            SettlementService(test_session, payment_client).settle(auction.id, now=now)

    def test_active_auction_rejected(self, test_session, payment_client, seed, now):
        auction = seed.auction()

        with pytest.raises(AuctionStateError):
            SettlementService(test_session, payment_client).settle(auction.id, now=now)
