"""
Health Check Endpoints

- /health/live  - Basic liveness (app is running)
- /health/ready - Readiness check (state store reachable)
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from sandbox_relay.core.config import settings
from sandbox_relay.core.logging_config import logger
from sandbox_relay.services.state_store import state_store


router = APIRouter(prefix="/health", tags=["Health Checks"])


@router.get("/live")
async def liveness():
    return {"status": "alive"}


@router.get("/ready")
async def readiness():
    """Ready when the state store answers"""
    start = time.time()
    store_ok = await state_store.ping()
    latency = (time.time() - start) * 1000

    body = {
        "status": "ready" if store_ok else "not_ready",
        "checks": {
            "state_store": {
                "status": "healthy" if store_ok else "unhealthy",
                "backend": state_store.backend,
                "latency_ms": round(latency, 2),
            },
            "provider": {
                "configured": bool(settings.DAYTONA_API_KEY),
            },
        },
    }
    if not store_ok:
        logger.warning("[HealthCheck] State store unreachable")
        return JSONResponse(status_code=503, content=body)
    return body
