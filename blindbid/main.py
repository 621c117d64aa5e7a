import asyncio
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from blindbid.api.endpoints import auctions, webhooks
from blindbid.db import engine, get_session
from blindbid.exceptions import AuctionError
from blindbid.models import Base
from blindbid.services.auction_scheduler import get_auction_scheduler
from blindbid.settings import settings

logger = logging.getLogger(__name__)

app = FastAPI(title="blindbid")

app.include_router(auctions.router, prefix="/api/auctions", tags=["Auctions"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])

_scheduler_task: asyncio.Task | None = None
_scheduler_stop: asyncio.Event | None = None


@app.exception_handler(AuctionError)
async def auction_error_handler(request: Request, exc: AuctionError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} 처리 실패: {exc.message}", exc_info=exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.error_code, "context": exc.context},
    )


@app.on_event("startup")
async def on_startup() -> None:
    global _scheduler_task, _scheduler_stop

    # 로컬 개발용 (운영은 Alembic 마이그레이션 사용)
    if settings.db_auto_create_tables:
        Base.metadata.create_all(bind=engine)

    if settings.auction_scheduler_enabled:
        _scheduler_stop = asyncio.Event()
        _scheduler_task = asyncio.create_task(
            get_auction_scheduler().run_forever(
                interval=settings.auction_scheduler_interval_seconds,
                stop_event=_scheduler_stop,
            )
        )


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if _scheduler_stop is not None:
        _scheduler_stop.set()
    if _scheduler_task is not None:
        await _scheduler_task


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/db/ping")
def db_ping(session: Session = Depends(get_session)) -> dict:
    value = session.execute(text("SELECT 1")).scalar_one()
    return {"ok": value == 1}
