from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from tourpay.api.v1 import coupons
from tourpay.api.v1 import payments
from tourpay.core.metrics import snapshot as metrics_snapshot
from tourpay.db.session import get_session

api_router = APIRouter()

api_router.include_router(coupons.router)
api_router.include_router(payments.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@api_router.get("/health/ready", tags=["health"])
async def readiness(session: AsyncSession = Depends(get_session)) -> dict[str, str]:
    await session.execute(text("SELECT 1"))
    return {"status": "ready"}


@api_router.get("/metrics", tags=["metrics"])
def metrics() -> dict:
    return metrics_snapshot()
