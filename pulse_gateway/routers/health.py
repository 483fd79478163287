from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> JSONResponse:
    ready_payload = await _readiness_payload(request)
    status = 200 if ready_payload["status"] == "ok" else 503
    payload = {"liveliness": "ok", "readiness": ready_payload}
    return JSONResponse(status_code=status, content=payload)


@router.get("/health/liveliness")
async def liveliness() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/health/readiness")
async def readiness(request: Request) -> JSONResponse:
    payload = await _readiness_payload(request)
    status = 200 if payload["status"] == "ok" else 503
    return JSONResponse(status_code=status, content=payload)


async def _readiness_payload(request: Request) -> dict[str, object]:
    checks: dict[str, bool] = {}

    redis_client = getattr(request.app.state, "redis", None)
    if redis_client is None:
        checks["redis"] = True
    else:
        try:
            checks["redis"] = bool(await redis_client.ping())
        except Exception:
            logger.warning("redis readiness check failed", exc_info=True)
            checks["redis"] = False

    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        checks["database"] = True
    else:
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = True
        except Exception:
            logger.warning("database readiness check failed", exc_info=True)
            checks["database"] = False

    status = "ok" if all(checks.values()) else "degraded"
    return {"status": status, "checks": checks}
