# segmentation/routes/health.py
"""
Health check endpoints with database pool and Redis monitoring.
"""

import time

from fastapi import APIRouter

from segmentation.db.pool import db_health_check
from segmentation.services.redis_client import fast_redis

router = APIRouter()

_REDIS_PROBE_KEY = "segments:health_check"


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "segmentation"}


async def redis_ping() -> bool:
    """Ping plus a set/get/delete round trip, as build leases need writes."""
    if not await fast_redis.ping():
        return False
    if not await fast_redis.set_with_ttl(_REDIS_PROBE_KEY, "ok", 10):
        return False
    value = await fast_redis.get(_REDIS_PROBE_KEY)
    await fast_redis.delete(_REDIS_PROBE_KEY)
    return value == "ok"


@router.get("/readyz")
async def readyz():
    """Readiness check covering the database pool and Redis."""
    checks = {}
    overall_ok = True

    t0 = time.time()
    try:
        redis_ok = await redis_ping()
        checks["redis"] = {"ok": redis_ok, "latency_ms": round((time.time() - t0) * 1000, 1)}
        overall_ok = overall_ok and redis_ok
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    t0 = time.time()
    db_health = await db_health_check()
    is_healthy = bool(db_health.get("healthy", False))
    checks["database"] = {"ok": is_healthy, "latency_ms": round((time.time() - t0) * 1000, 1)}
    if "pool_stats" in db_health:
        checks["database"]["pool_stats"] = db_health["pool_stats"]
    if "warnings" in db_health:
        checks["database"]["warnings"] = db_health["warnings"]
    if not is_healthy:
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    overall_ok = overall_ok and is_healthy

    return {"overall_ok": overall_ok, "checks": checks}
