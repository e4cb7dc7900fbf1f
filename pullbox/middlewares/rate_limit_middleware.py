"""
Rate limiting using slowapi.
Protects the public link endpoints against code enumeration and upload floods.
"""
import logging
from typing import Callable

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from pullbox.config import get_settings
from pullbox.utils.client_ip import get_client_identifier
from pullbox.utils.prometheus_metrics import (
    rate_limit_hits_total,
    rate_limit_requests_total,
)

logger = logging.getLogger("pullbox.rate_limit")
settings = get_settings()

# 메모리 기반 (인스턴스별 카운트)
limiter = Limiter(
    key_func=get_client_identifier,
    default_limits=[f"{settings.rate_limit_per_minute}/minute"] if settings.rate_limit_enabled else [],
    storage_uri="memory://",
    enabled=settings.rate_limit_enabled,
)


def setup_rate_limit_exception_handler(app) -> None:
    """
    Rate limit 초과 시 예외 처리 핸들러 등록.
    """
    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        client_id = get_client_identifier(request)
        endpoint = request.url.path

        rate_limit_hits_total.labels(
            endpoint=endpoint,
            client_id=client_id[:16],  # IP 주소 일부만 (개인정보 보호)
        ).inc()
        rate_limit_requests_total.labels(endpoint=endpoint, status="blocked").inc()

        logger.warning(
            "Rate limit exceeded",
            extra={
                "event": "rate_limit",
                "client_id": client_id,
                "endpoint": endpoint,
                "limit": getattr(exc, "detail", "unknown"),
            },
        )
        return _rate_limit_exceeded_handler(request, exc)


def get_rate_limit_decorator(limit: str) -> Callable:
    """
    Rate limit 데코레이터 생성 헬퍼.

    Args:
        limit: Rate limit 문자열 (예: "30/minute")
    """
    if not settings.rate_limit_enabled:
        def noop_decorator(func: Callable) -> Callable:
            return func
        return noop_decorator

    return limiter.limit(limit)


def record_allowed(request: Request) -> None:
    """Count a request that passed the limiter."""
    rate_limit_requests_total.labels(endpoint=request.url.path, status="allowed").inc()
