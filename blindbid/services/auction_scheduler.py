"""
경매 라이프사이클 스케줄러

1회 실행(tick)마다 아래 단계를 고정 순서로 처리합니다.
1. 시작 (scheduled → active)
2. 마감 (active → ended, 낙찰자 결정)
3. 정산 (낙찰자가 있고 정산 주문이 없는 ended 경매)
4. 롤오버 (결제 기한이 지났거나 결제 링크가 만료된 settled 경매)

경매 단위로 커밋하며, 한 경매의 실패는 로그만 남기고 다음 경매로 넘어갑니다.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from blindbid.models import Auction, AuctionStatus, Order, PaymentStatus, SchedulerRun
from blindbid.services.auction_state_machine import AuctionStateMachine
from blindbid.services.rollover_service import RolloverService
from blindbid.services.settlement_service import SettlementService
from blindbid.session_factory import session_factory as default_session_factory
from blindbid.settings import settings
from blindbid.timeutils import utcnow
from blindbid.xendit_client import XenditClient

logger = logging.getLogger(__name__)

STAGES = ("activation", "closing", "settlement", "rollover")


class AuctionScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session] = default_session_factory,
        payment_client: Optional[XenditClient] = None,
    ):
        self.session_factory = session_factory
        self.payment_client = payment_client or XenditClient.from_settings()
        self.is_running = False

    # ------------------------------------------------------------------
    # 후보 조회
    # ------------------------------------------------------------------

    def _activation_candidates(self, session: Session, now: datetime) -> List[uuid.UUID]:
        return AuctionStateMachine(session).due_for_activation(now)

    def _closing_candidates(self, session: Session, now: datetime) -> List[uuid.UUID]:
        return AuctionStateMachine(session).due_for_closing(now)

    def _settlement_candidates(self, session: Session, now: datetime) -> List[uuid.UUID]:
        stmt = (
            select(Auction.id)
            .where(Auction.status == AuctionStatus.ENDED)
            .where(Auction.winner_user_id.is_not(None))
            .where(Auction.settlement_order_id.is_(None))
            .order_by(Auction.end_at.asc())
        )
        return list(session.scalars(stmt).all())

    def _rollover_candidates(self, session: Session, now: datetime) -> List[uuid.UUID]:
        stmt = (
            select(Auction.id)
            .outerjoin(Order, Order.id == Auction.settlement_order_id)
            .where(Auction.status == AuctionStatus.SETTLED)
            .where(or_(Auction.payment_due_at <= now, Order.payment_status == PaymentStatus.EXPIRED))
            .order_by(Auction.payment_due_at.asc())
        )
        return list(session.scalars(stmt).all())

    # ------------------------------------------------------------------
    # 단계 처리
    # ------------------------------------------------------------------

    def _process(self, session: Session, stage: str, auction_id: uuid.UUID, now: datetime) -> Optional[str]:
        """경매 1건 처리. 결과 분류(outcome)를 반환"""
        if stage == "activation":
            return "activated" if AuctionStateMachine(session).activate(auction_id, now) else None
        if stage == "closing":
            auction = AuctionStateMachine(session).close(auction_id, now)
            return "won" if auction.winner_user_id else "unsold"
        if stage == "settlement":
            result = SettlementService(session, self.payment_client).settle(auction_id, now=now)
            return "created" if result.created else "existing"
        if stage == "rollover":
            return RolloverService(session, self.payment_client).rollover_if_unpaid(auction_id, now=now).action
        raise ValueError(f"알 수 없는 단계: {stage}")

    def _run_stage(self, stage: str, now: datetime) -> Dict[str, Any]:
        result: Dict[str, Any] = {"checked": 0, "processed": 0, "outcomes": {}, "errors": []}
        candidates_for = getattr(self, f"_{stage}_candidates")

        with self.session_factory() as session:
            auction_ids = candidates_for(session, now)
            session.rollback()
            result["checked"] = len(auction_ids)

            for auction_id in auction_ids:
                try:
                    outcome = self._process(session, stage, auction_id, now)
                    session.commit()
                except Exception as e:
                    session.rollback()
                    logger.error(f"[{stage}] 경매 처리 실패 (auction={auction_id}): {e}", exc_info=True)
                    result["errors"].append(f"{auction_id}: {e}")
                    continue

                if outcome:
                    result["processed"] += 1
                    result["outcomes"][outcome] = result["outcomes"].get(outcome, 0) + 1

        logger.info(
            f"[{stage}] 대상 {result['checked']}건, 처리 {result['processed']}건, 오류 {len(result['errors'])}건"
        )
        return result

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        스케줄러 1회 실행

        Returns:
            {
                "activation": {"checked": 1, "processed": 1, "outcomes": {...}, "errors": []},
                "closing": {...},
                "settlement": {...},
                "rollover": {...},
                "execution_time_seconds": 0.12,
                "errors": [...]
            }
        """
        now = now or utcnow()
        started = utcnow()
        logger.info(f"경매 스케줄러 실행 시작: now={now.isoformat()}")

        results: Dict[str, Any] = {}
        for stage in STAGES:
            results[stage] = self._run_stage(stage, now)

        results["errors"] = [f"{stage}: {err}" for stage in STAGES for err in results[stage]["errors"]]
        results["execution_time_seconds"] = round((utcnow() - started).total_seconds(), 2)

        self._record_run(results)

        logger.info(
            f"경매 스케줄러 실행 완료: 시작 {results['activation']['processed']}건, "
            f"마감 {results['closing']['processed']}건, 정산 {results['settlement']['processed']}건, "
            f"롤오버 {results['rollover']['processed']}건, 실행 시간 {results['execution_time_seconds']}초"
        )
        if results["errors"]:
            logger.warning(f"  오류: {len(results['errors'])}건")
        return results

    def _record_run(self, results: Dict[str, Any]) -> None:
        """실행 기록 (실패해도 스케줄러는 계속 동작)"""
        try:
            with self.session_factory() as session:
                run = SchedulerRun(
                    step="AUCTION_LIFECYCLE",
                    status="SUCCESS" if not results["errors"] else "PARTIAL",
                    message=(
                        f"시작 {results['activation']['processed']}건, 마감 {results['closing']['processed']}건, "
                        f"정산 {results['settlement']['processed']}건, 롤오버 {results['rollover']['processed']}건"
                    ),
                    details={
                        **{
                            stage: {
                                "checked": results[stage]["checked"],
                                "processed": results[stage]["processed"],
                                "outcomes": results[stage]["outcomes"],
                            }
                            for stage in STAGES
                        },
                        "execution_time_seconds": results["execution_time_seconds"],
                        "errors": results["errors"],
                    },
                )
                session.add(run)
                session.commit()
        except Exception as e:
            logger.error(f"스케줄러 실행 기록 실패: {e}", exc_info=True)

    async def run_forever(
        self,
        interval: Optional[float] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """stop_event가 설정될 때까지 interval초마다 run_once 실행"""
        interval = interval or settings.auction_scheduler_interval_seconds
        stop_event = stop_event or asyncio.Event()
        self.is_running = True
        logger.info(f"경매 스케줄러 루프 시작 (간격 {interval}초)")

        try:
            while not stop_event.is_set():
                try:
                    await asyncio.to_thread(self.run_once)
                except Exception as e:
                    logger.error(f"경매 스케줄러 실행 중 오류: {e}", exc_info=True)

                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.is_running = False
            logger.info("경매 스케줄러 루프 종료")


# 싱글톤 인스턴스
_auction_scheduler: Optional[AuctionScheduler] = None


def get_auction_scheduler() -> AuctionScheduler:
    """경매 스케줄러 인스턴스 가져오기"""
    global _auction_scheduler
    if _auction_scheduler is None:
        _auction_scheduler = AuctionScheduler()
    return _auction_scheduler
