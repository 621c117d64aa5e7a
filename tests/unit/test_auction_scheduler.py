"""
경매 스케줄러 테스트.

스케줄러는 자체 세션을 열어 경매 단위로 커밋하므로,
테스트 데이터는 먼저 커밋하고 실행 후 test_session을 expire하여 다시 읽습니다.
"""

import asyncio
import uuid
from datetime import timedelta
from unittest.mock import Mock

import pytest

from blindbid.exceptions import ExternalServiceError
from blindbid.models import Auction, AuctionStatus, Order, OrderStatus, SchedulerRun
from blindbid.services.auction_scheduler import STAGES, AuctionScheduler


@pytest.fixture
def scheduler(payment_client, session_factory):
    return AuctionScheduler(session_factory=session_factory, payment_client=payment_client)


def _reload(session, auction_id):
    session.expire_all()
    return session.get(Auction, auction_id)


@pytest.mark.unit
class TestRunOnce:
    def test_full_tick_runs_stages_in_order(self, test_session, seed, scheduler, now):
        scheduled = seed.auction(status=AuctionStatus.SCHEDULED, start_at=now - timedelta(minutes=1))
        closing = seed.auction(end_at=now - timedelta(minutes=1))
        winner = uuid.uuid4()
        seed.bid(closing, winner, "2500")
        unsold = seed.auction(end_at=now - timedelta(minutes=1))
        test_session.commit()

        results = scheduler.run_once(now=now)

        assert list(results)[: len(STAGES)] == list(STAGES)
        assert results["activation"]["outcomes"] == {"activated": 1}
        assert results["closing"]["outcomes"] == {"won": 1, "unsold": 1}
        # 같은 tick 안에서 마감된 경매가 바로 정산됨
        assert results["settlement"]["outcomes"] == {"created": 1}
        assert results["rollover"]["checked"] == 0
        assert results["errors"] == []

        assert _reload(test_session, scheduled.id).status == AuctionStatus.ACTIVE
        settled = _reload(test_session, closing.id)
        assert settled.status == AuctionStatus.SETTLED
        assert settled.winner_user_id == winner
        assert _reload(test_session, unsold.id).status == AuctionStatus.ENDED

        run = test_session.query(SchedulerRun).one()
        assert run.step == "AUCTION_LIFECYCLE"
        assert run.status == "SUCCESS"
        assert run.details["settlement"]["processed"] == 1

    def test_second_tick_is_idempotent(self, test_session, seed, scheduler, payment_client, now):
        auction = seed.auction(end_at=now - timedelta(minutes=1))
        seed.bid(auction, uuid.uuid4(), "2500")
        test_session.commit()

        scheduler.run_once(now=now)
        second = scheduler.run_once(now=now + timedelta(minutes=1))

        assert second["closing"]["checked"] == 0
        assert second["settlement"]["checked"] == 0
        assert payment_client.create_payment_link.call_count == 1
        test_session.expire_all()
        assert test_session.query(Order).count() == 1

    def test_failure_is_isolated_per_auction(self, test_session, seed, scheduler, payment_client, now):
        first = seed.auction(end_at=now - timedelta(minutes=2))
        seed.bid(first, uuid.uuid4(), "2000")
        second = seed.auction(end_at=now - timedelta(minutes=1))
        seed.bid(second, uuid.uuid4(), "3000")
        test_session.commit()

        create = payment_client.create_payment_link.side_effect
        calls = {"n": 0}

        def _fail_first(**kwargs):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ExternalServiceError("gateway timeout")
            return create(**kwargs)

        payment_client.create_payment_link.side_effect = _fail_first

        results = scheduler.run_once(now=now)

        assert results["settlement"]["checked"] == 2
        assert results["settlement"]["processed"] == 1
        assert len(results["errors"]) == 1
        assert _reload(test_session, first.id).status == AuctionStatus.ENDED
        assert _reload(test_session, second.id).status == AuctionStatus.SETTLED
        assert test_session.query(SchedulerRun).one().status == "PARTIAL"

        # 다음 tick에서 재시도
        retry = scheduler.run_once(now=now + timedelta(minutes=1))
        assert retry["settlement"]["outcomes"] == {"created": 1}
        assert _reload(test_session, first.id).status == AuctionStatus.SETTLED

    def test_paused_auction_past_end_is_closed_and_settled(self, test_session, seed, scheduler, now):
        auction = seed.auction(status=AuctionStatus.PAUSED, end_at=now - timedelta(minutes=1))
        winner = uuid.uuid4()
        seed.bid(auction, winner, "2500")
        test_session.commit()

        results = scheduler.run_once(now=now)

        assert results["closing"]["outcomes"] == {"won": 1}
        assert results["settlement"]["outcomes"] == {"created": 1}
        reloaded = _reload(test_session, auction.id)
        assert reloaded.status == AuctionStatus.SETTLED
        assert reloaded.winner_user_id == winner

    def test_unpaid_winner_rolled_over_after_deadline(self, test_session, seed, scheduler, now):
        auction = seed.auction(end_at=now - timedelta(minutes=1))
        first, runner_up = uuid.uuid4(), uuid.uuid4()
        seed.bid(auction, first, "3000")
        seed.bid(auction, runner_up, "2000")
        test_session.commit()

        scheduler.run_once(now=now)
        results = scheduler.run_once(now=now + timedelta(hours=25))

        assert results["rollover"]["outcomes"] == {"reassigned": 1}
        reloaded = _reload(test_session, auction.id)
        assert reloaded.status == AuctionStatus.SETTLED
        assert reloaded.winner_user_id == runner_up
        statuses = {o.user_id: o.status for o in test_session.query(Order).all()}
        assert statuses == {first: OrderStatus.CANCELLED, runner_up: OrderStatus.PENDING}


@pytest.mark.unit
class TestRunForever:
    def test_stops_when_event_set(self, scheduler, monkeypatch):
        run_once = Mock(return_value={})
        monkeypatch.setattr(scheduler, "run_once", run_once)

        async def _run():
            stop = asyncio.Event()
            task = asyncio.create_task(scheduler.run_forever(interval=0.01, stop_event=stop))
            await asyncio.sleep(0.1)
            stop.set()
            await task

        asyncio.run(_run())

        assert run_once.call_count >= 1
        assert scheduler.is_running is False

    def test_keeps_running_after_error(self, scheduler, monkeypatch):
        run_once = Mock(side_effect=RuntimeError("boom"))
        monkeypatch.setattr(scheduler, "run_once", run_once)

        async def _run():
            stop = asyncio.Event()
            task = asyncio.create_task(scheduler.run_forever(interval=0.01, stop_event=stop))
            await asyncio.sleep(0.2)
            stop.set()
            await task

        asyncio.run(_run())

        assert run_once.call_count >= 2
