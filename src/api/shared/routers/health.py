"""
Health Endpoints

/health answers while the process is up, /health/live is the liveness
probe and /health/ready reports whether this instance can serve: the
store answers a query and, when the delivery worker runs in-process,
its loop is alive.
"""

import os
from typing import Any, Dict

from fastapi import APIRouter, Request, Response

from ....core.database.adapter import get_database
from ....core.outbox.lifecycle import is_worker_enabled
from ....core.outbox.processor import get_delivery_worker
from ....core.timeutil import utcnow

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": os.getenv("APP_VERSION", "0.1.0"),
    }


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    return {"status": "alive"}


async def _check_store(request: Request) -> str:
    try:
        db = getattr(request.app.state, "db", None) or await get_database()
        await db.fetchval("SELECT 1")
    except Exception as e:
        return f"unhealthy: {str(e)[:100]}"
    return "healthy"


def _check_worker() -> str:
    if not is_worker_enabled():
        return "disabled"
    worker = get_delivery_worker()
    return "running" if worker is not None and worker.is_running else "not running"


@router.get("/health/ready")
async def readiness_check(request: Request, response: Response) -> Dict[str, Any]:
    checks = {
        "database": await _check_store(request),
        "delivery_worker": _check_worker(),
    }
    ready = checks["database"] == "healthy" and checks["delivery_worker"] in ("running", "disabled")
    if not ready:
        response.status_code = 503

    return {
        "status": "ready" if ready else "not_ready",
        "checks": checks,
        "timestamp": utcnow().isoformat(),
    }
