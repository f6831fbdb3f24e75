# app/routes/health.py
"""
Liveness and readiness endpoints.
"""

import time

from fastapi import APIRouter, Depends

from app.config import settings
from app.container import ServiceContainer
from app.dependencies import get_container

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "blood-match-backend"}


@router.get("/readyz")
async def readyz(container: ServiceContainer = Depends(get_container)):
    """
    Readiness check across storage, redis and the dispatch workers.

    Redis is optional: without it dead letters are kept in process, so a
    failed ping is reported but does not make the service unready.
    """
    checks = {}
    overall_ok = True

    # 1) Storage
    t0 = time.time()
    if container.db_pool is not None:
        try:
            db_health = await container.db_pool.health_check()
            is_healthy = db_health.get("healthy", False)
            checks["database"] = {
                "ok": is_healthy,
                "latency_ms": round((time.time() - t0) * 1000, 1),
            }
            if "pool_stats" in db_health:
                checks["database"].update(db_health["pool_stats"])
            if not is_healthy:
                checks["database"]["error"] = db_health.get("error", "Database unhealthy")
            overall_ok = overall_ok and is_healthy
        except Exception as e:
            checks["database"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False
    else:
        checks["database"] = {"ok": True, "backend": settings.STORAGE_BACKEND}

    # 2) Redis
    if container.redis is not None:
        t0 = time.time()
        redis_ok = await container.redis.ping()
        checks["redis"] = {
            "ok": redis_ok,
            "latency_ms": round((time.time() - t0) * 1000, 1),
            "required": False,
        }
    else:
        checks["redis"] = {"ok": True, "configured": False}

    # 3) Dispatch workers
    pipeline_stats = container.pipeline.stats()
    checks["dispatch"] = {"ok": pipeline_stats["running"], **pipeline_stats}
    try:
        checks["dispatch"]["dead_letters"] = await container.dead_letters.count()
    except Exception as e:
        checks["dispatch"]["dead_letters_error"] = f"{type(e).__name__}: {e}"
    overall_ok = overall_ok and pipeline_stats["running"]

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
