"""
FastAPI Pull-Box API Application.

Main application entry point that configures:
- CORS middleware
- API routers
- Database lifecycle
- Logging system
- Exception handlers (domain errors + global)
- Prometheus metrics
- Rate limiting
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pullbox.config import get_settings
from pullbox.database import close_db, init_db
from pullbox.errors import PullBoxError
from pullbox.middlewares.logging_middleware import LoggingMiddleware
from pullbox.middlewares.rate_limit_middleware import limiter, setup_rate_limit_exception_handler
from pullbox.routers import auth_router, collections_router, public_router
from pullbox.routers.health import router as health_router
from pullbox.utils.logger import get_request_id, log_error, log_info, log_warning, setup_logging
from pullbox.utils.prometheus_metrics import exceptions_total, ready, setup_prometheus

settings = get_settings()
logger = logging.getLogger("pullbox")

# Python logging 설정
setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan.

    1. 설정 검증 (프로덕션 환경에서만, 실패 시 시작 중단)
    2. 테이블 생성
    3. ready=1 (health check 통과)
    종료 시 ready=0 → DB 연결 종료
    """
    if settings.is_production:
        from pullbox.utils.config_validator import validate_configuration
        try:
            await validate_configuration()
        except ValueError as e:
            log_error(
                "Startup failed: configuration validation errors",
                error_message=str(e),
                event="lifecycle",
            )
            raise RuntimeError(str(e)) from e
        log_info("Configuration validation passed", event="lifecycle")

    await init_db()
    ready.set(1)
    log_info(
        "Application startup completed",
        event="lifecycle",
        version=settings.app_version,
        environment=settings.environment.value,
    )

    yield

    # Health check 즉시 실패 (로드밸런서가 새 요청 차단)
    ready.set(0)
    log_info("Application shutdown initiated", event="lifecycle")
    await close_db()
    log_info("Shutdown completed", event="lifecycle")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
## Pull-Box API

Owners create time-boxed collections backed by a Google Drive folder and share
a short link; anyone with the link can drop photos into the folder without an
account.

### Features
- **Provider credential**: persisted at login, refreshed transparently
- **Collections**: Drive folder + collision-safe short link code
- **Public upload**: expiry-gated, uploads on the owner's behalf
- **Live sync**: Server-Sent Events for owner dashboards

### Authentication
Owner endpoints require the identity provider's session JWT as a Bearer token.
Public endpoints only need the link code.
    """,
    openapi_tags=[
        {"name": "Authentication", "description": "Owner provider credential"},
        {"name": "Collections", "description": "Collection management and live sync"},
        {"name": "Public", "description": "Share link landing and anonymous upload"},
    ],
    lifespan=lifespan,
)

# Prometheus: FastAPI metrics + node info at /metrics
setup_prometheus(app)

# Rate limiting
app.state.limiter = limiter
setup_rate_limit_exception_handler(app)

# Configure CORS (공개 업로드 페이지는 다른 origin에서 호출됨)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

# Add structured logging middleware
app.add_middleware(LoggingMiddleware)


@app.exception_handler(PullBoxError)
async def pullbox_error_handler(request: Request, exc: PullBoxError):
    """
    Domain error handler.

    - 4xx (무효/만료 링크, owner 미연결) → WARNING
    - 5xx (토큰 갱신 실패, 외부 서비스 오류) → ERROR
    """
    rid = get_request_id()
    context = {
        k: v for k, v in exc.context.items()
        if isinstance(v, (str, int, float, bool)) and k != "message"
    }
    context.update(
        event="domain_error",
        error_code=exc.error_code,
        http_status=exc.status_code,
        http_method=request.method,
        http_path=request.url.path,
    )
    log = log_error if exc.status_code >= 500 else log_warning
    log(exc.message, **context)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.message,
            "error_code": exc.error_code,
            "request_id": rid,
        },
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Unhandled exception handler with structured logging.

    모든 처리되지 않은 예외를 캐치하여:
    - ERROR 로그 남김 (구조화된 포맷)
    - 500 응답 반환
    - Request ID 포함 (장애 추적용)
    """
    exceptions_total.inc()
    rid = get_request_id()

    log_error(
        "Unhandled exception occurred",
        exc_info=True,
        error_type=type(exc).__name__,
        error_code="INTERNAL_SERVER_ERROR",
        http_method=request.method,
        http_path=request.url.path,
        event="exception",
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "request_id": rid,  # 사용자가 이 ID로 문의 가능
        },
    )


# Include routers
app.include_router(health_router)
app.include_router(auth_router)
app.include_router(collections_router)
app.include_router(public_router)


# Root endpoint
@app.get(
    "/",
    tags=["Root"],
    summary="API information",
)
async def root():
    """
    Root endpoint with API information.
    """
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
