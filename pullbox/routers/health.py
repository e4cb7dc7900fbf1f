"""
Health Check 라우터.

애플리케이션의 상태를 확인하는 엔드포인트를 제공합니다.
"""
import asyncio
import logging
import time
from typing import Any, Dict

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import text

from pullbox.config import get_settings
from pullbox.database import engine
from pullbox.utils.prometheus_metrics import REGISTRY, Gauge, ready

logger = logging.getLogger("pullbox.health")
router = APIRouter(prefix="/health", tags=["Health"])

settings = get_settings()

# Health check 상태 메트릭
health_check_status = Gauge(
    "pullbox_health_check_status",
    "Health check status (1=healthy, 0=unhealthy)",
    ["check_type"],
    registry=REGISTRY,
)


async def _check_db(timeout: float = 1.0) -> None:
    async def _select_one():
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))

    await asyncio.wait_for(_select_one(), timeout=timeout)


def _ensure_ready(check_type: str) -> None:
    if ready._value.get() == 0:
        health_check_status.labels(check_type=check_type).set(0)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Application is shutting down",
        )


@router.get(
    "/",
    summary="Health check (fast)",
)
async def health_check() -> Dict[str, Any]:
    """
    빠른 Health Check (로드밸런서용).

    - Ready 상태 + DB 연결 확인 (타임아웃 1초)
    """
    start_time = time.perf_counter()
    _ensure_ready("fast")

    try:
        await _check_db()
    except asyncio.TimeoutError:
        logger.warning("DB health check timeout", extra={"event": "health"})
        health_check_status.labels(check_type="fast").set(0)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection timeout",
        )
    except Exception as e:
        logger.warning("DB health check failed", extra={"event": "health", "error": str(e)[:200]})
        health_check_status.labels(check_type="fast").set(0)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database connection failed",
        )

    health_check_status.labels(check_type="fast").set(1)
    return {
        "status": "healthy",
        "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
        "instance": settings.instance_ip or "unknown",
    }


@router.get(
    "/liveness",
    summary="Liveness probe (Kubernetes)",
)
async def liveness_probe() -> Dict[str, str]:
    """애플리케이션이 살아있는지만 확인합니다."""
    _ensure_ready("liveness")
    return {"status": "alive"}


@router.get(
    "/detailed",
    summary="Detailed health check (monitoring)",
)
async def detailed_health_check() -> Dict[str, Any]:
    """
    상세 Health Check (모니터링 시스템용).

    - DB 연결 확인
    - Google OAuth client 설정 여부 (토큰 갱신 가능 여부)
    """
    start_time = time.perf_counter()
    _ensure_ready("detailed")
    checks: Dict[str, Any] = {"status": "healthy", "checks": {}}

    try:
        await _check_db()
        checks["checks"]["database"] = {"status": "up"}
    except asyncio.TimeoutError:
        checks["status"] = "unhealthy"
        checks["checks"]["database"] = {"status": "down", "error": "Timeout"}
    except Exception as e:
        checks["status"] = "unhealthy"
        checks["checks"]["database"] = {"status": "down", "error": str(e)[:200]}
        logger.warning("DB health check failed", extra={"event": "health", "error": str(e)[:200]})

    # 토큰 갱신은 client 자격 증명이 있어야 가능 (외부 호출은 하지 않음)
    if settings.google_oauth_client_id and settings.google_oauth_client_secret:
        checks["checks"]["token_refresh"] = {"status": "configured"}
    else:
        checks["status"] = "unhealthy"
        checks["checks"]["token_refresh"] = {"status": "down", "error": "OAuth client not configured"}

    checks["duration_ms"] = round((time.perf_counter() - start_time) * 1000, 2)
    checks["instance"] = settings.instance_ip or "unknown"

    if checks["status"] == "unhealthy":
        health_check_status.labels(check_type="detailed").set(0)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=checks,
        )

    health_check_status.labels(check_type="detailed").set(1)
    return checks
