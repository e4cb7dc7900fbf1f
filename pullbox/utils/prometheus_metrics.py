"""
Prometheus metrics for stability, credential lifecycle and public uploads.

- FastAPI: request count, latency (Instrumentator)
- Node/instance: app_info
- Stability: exceptions_total, db_errors_total, external_request_errors_total
- HA: ready gauge (1=up, 0=shutting down)
- Credentials: token refresh results, 401 refresh-retry outcomes
- Links: allocation results, code collisions
- Public uploads: request/file outcomes, share link access patterns
- Dashboard sync: published events, connected subscribers
"""
import logging
import socket
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from prometheus_client import REGISTRY, Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator

from pullbox.config import get_settings

logger = logging.getLogger(__name__)

# --- Stability ---
exceptions_total = Counter(
    "pullbox_exceptions_total",
    "Total unhandled exceptions",
    registry=REGISTRY,
)
db_errors_total = Counter(
    "pullbox_db_errors_total",
    "Total database session/transaction errors",
    registry=REGISTRY,
)
external_request_errors_total = Counter(
    "pullbox_external_request_errors_total",
    "Total external API request failures",
    ["service"],
    registry=REGISTRY,
)

# 외부 서비스 요청 수 (성공/실패 구분, 에러율 계산용)
external_request_total = Counter(
    "pullbox_external_request_total",
    "Total external API requests by service and outcome",
    ["service", "status"],  # status: success | failure
    registry=REGISTRY,
)

# --- HA ---
ready = Gauge(
    "pullbox_ready",
    "Application ready (1=up, 0=shutting down)",
    registry=REGISTRY,
)

# --- Performance ---
external_request_duration_seconds = Histogram(
    "pullbox_external_request_duration_seconds",
    "External API request duration in seconds",
    ["service", "result"],  # result: success | failure
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
    registry=REGISTRY,
)

# --- Rate Limiting ---
rate_limit_hits_total = Counter(
    "pullbox_rate_limit_hits_total",
    "Total number of rate limit hits (requests blocked)",
    ["endpoint", "client_id"],  # client_id는 IP 주소 일부 (개인정보 보호)
    registry=REGISTRY,
)

rate_limit_requests_total = Counter(
    "pullbox_rate_limit_requests_total",
    "Total number of requests checked for rate limiting",
    ["endpoint", "status"],  # status: allowed | blocked
    registry=REGISTRY,
)

# --- Credential lifecycle ---
token_refresh_total = Counter(
    "pullbox_token_refresh_total",
    "Provider token refresh attempts by result",
    # result: success | reused | no_refresh_token | rejected | error
    ["result"],
    registry=REGISTRY,
)

provider_auth_retry_total = Counter(
    "pullbox_provider_auth_retry_total",
    "401 responses from the provider that triggered a refresh-retry",
    ["outcome"],  # outcome: recovered | unauthorized | refresh_failed
    registry=REGISTRY,
)

owner_token_requests_total = Counter(
    "pullbox_owner_token_requests_total",
    "Owner token endpoint calls by result",
    ["result"],  # result: cached | refreshed | not_connected | refresh_failed
    registry=REGISTRY,
)

# --- Share links ---
link_allocation_total = Counter(
    "pullbox_link_allocation_total",
    "Collection link allocations by result",
    ["result"],  # result: success | exhausted
    registry=REGISTRY,
)

link_code_collisions_total = Counter(
    "pullbox_link_code_collisions_total",
    "Link code uniqueness violations during allocation",
    registry=REGISTRY,
)

share_link_access_total = Counter(
    "pullbox_share_link_access_total",
    "Public link resolutions by code status and result",
    # code_status: valid | invalid | expired
    # result: success | denied
    ["code_status", "result"],
    registry=REGISTRY,
)

# --- Public uploads ---
public_upload_requests_total = Counter(
    "pullbox_public_upload_requests_total",
    "Public upload batches by final result",
    # result: success | partial | failed | rejected
    ["result"],
    registry=REGISTRY,
)

public_upload_files_total = Counter(
    "pullbox_public_upload_files_total",
    "Files submitted through the public gateway by outcome",
    ["result"],  # result: completed | error
    registry=REGISTRY,
)

public_upload_file_size_bytes = Histogram(
    "pullbox_public_upload_file_size_bytes",
    "Size of files accepted by the public gateway",
    buckets=(
        64 * 1024,
        256 * 1024,
        1024 * 1024,
        4 * 1024 * 1024,
        10 * 1024 * 1024,
        25 * 1024 * 1024,
    ),
    registry=REGISTRY,
)

counter_update_failures_total = Counter(
    "pullbox_counter_update_failures_total",
    "Best-effort item counter increments that failed after a successful upload",
    registry=REGISTRY,
)

# --- Dashboard sync ---
collection_events_published_total = Counter(
    "pullbox_collection_events_published_total",
    "Collection change events published to dashboards",
    ["type"],  # type: created | updated | deleted
    registry=REGISTRY,
)

collection_event_subscribers = Gauge(
    "pullbox_collection_event_subscribers",
    "Currently connected dashboard event streams",
    registry=REGISTRY,
)


def _node_identity() -> str:
    """Node/instance identifier: INSTANCE_IP env or hostname."""
    settings = get_settings()
    if settings.instance_ip:
        return settings.instance_ip
    try:
        return socket.gethostname()
    except Exception:
        return "unknown"


@asynccontextmanager
async def record_external_request(service: str) -> AsyncGenerator[None, None]:
    """
    Context manager to record external request duration, total count, and errors.
    Use around Google OAuth / Drive HTTP calls.
    """
    start = time.perf_counter()
    exc_raised = None
    try:
        yield
    except Exception as e:
        exc_raised = e
        external_request_errors_total.labels(service=service).inc()
        external_request_total.labels(service=service, status="failure").inc()
        raise
    finally:
        duration = time.perf_counter() - start
        result = "failure" if exc_raised is not None else "success"
        if exc_raised is None:
            external_request_total.labels(service=service, status="success").inc()
        external_request_duration_seconds.labels(service=service, result=result).observe(duration)


def setup_prometheus(app) -> None:
    """
    Register Prometheus instrumentation and custom metrics.

    1. app_info + Instrumentator (FastAPI request metrics).
    2. /metrics 엔드포인트 노출 (스크래핑용).
    """
    settings = get_settings()

    app_info = Gauge(
        "pullbox_app_info",
        "Application and node identity (labels only, value is 1)",
        ["node", "app", "version", "environment"],
        registry=REGISTRY,
    )
    app_info.labels(
        node=_node_identity(),
        app=settings.app_name,
        version=settings.app_version,
        environment=settings.environment.value,
    ).set(1)

    # status 라벨을 2xx/3xx 대신 구체 코드(200, 403, 410, 502 등)로 노출
    Instrumentator(should_group_status_codes=False).instrument(app).expose(
        app, endpoint="/metrics"
    )
