import argparse
import asyncio
import logging
import sys

from blindbid.services.auction_scheduler import get_auction_scheduler
from blindbid.settings import settings

# 로그 설정
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("blindbid.cli")


def run_scheduler_command(args):
    """경매 스케줄러 실행 (cron: --once, 상주 프로세스: --loop)"""
    scheduler = get_auction_scheduler()
    try:
        if args.loop:
            interval = args.interval or settings.auction_scheduler_interval_seconds
            logger.info(f"[CLI] 경매 스케줄러 루프 시작 (간격 {interval}초)")
            asyncio.run(scheduler.run_forever(interval=interval))
            return

        results = scheduler.run_once()
        if results["errors"]:
            logger.warning(f"[CLI] 경매 스케줄러 완료 (오류 {len(results['errors'])}건)")
            sys.exit(2)
        logger.info("[CLI] 경매 스케줄러 완료")

    except KeyboardInterrupt:
        logger.info("[CLI] 중단됨")
    except Exception as e:
        logger.exception(f"[CLI] Critical error: {e}")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(description="blindbid operations CLI")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    scheduler_parser = subparsers.add_parser("scheduler", help="Run the auction lifecycle scheduler")
    mode = scheduler_parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single tick (default)")
    mode.add_argument("--loop", action="store_true", help="Run ticks until interrupted")
    scheduler_parser.add_argument("--interval", type=float, default=None, help="Seconds between ticks in --loop mode")

    args = parser.parse_args()

    if args.command == "scheduler":
        run_scheduler_command(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
