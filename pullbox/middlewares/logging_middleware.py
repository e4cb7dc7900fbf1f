"""
구조화된 로깅 미들웨어.

모든 HTTP 요청에 Request ID를 부여하고, 오류/느린 응답만 로깅합니다.
"""
import time
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from pullbox.utils.client_ip import get_client_ip
from pullbox.utils.logger import log_error, log_warning, set_request_id

# 느린 응답 임계값 (ms). 업로드는 파일 수에 비례하므로 여유 있게
SLOW_REQUEST_THRESHOLD_MS = 5000

# Request ID 헤더 이름
REQUEST_ID_HEADER = "X-Request-ID"

# 로깅 제외할 경로
EXCLUDED_PATHS = {"/docs", "/openapi.json", "/redoc", "/metrics", "/favicon.ico"}
EXCLUDED_PREFIXES = ("/health",)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    구조화된 로깅을 위한 미들웨어.

    로깅 기준 (운영 노이즈 최소화):
    - 5xx 에러 응답 → ERROR
    - 4xx 에러 응답 → WARNING (무효/만료 링크, 인증 실패)
    - 느린 응답 → WARNING
    - 정상 응답 → 로깅 안 함 (비즈니스 이벤트는 서비스 계층에서 INFO)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in EXCLUDED_PATHS or path.startswith(EXCLUDED_PREFIXES):
            return await call_next(request)

        # 클라이언트 제공 Request ID 사용, 없으면 생성
        rid = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        client_ip = get_client_ip(request)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            log_error(
                "Request exception",
                exc_info=True,
                event="request",
                error_type=type(e).__name__,
                http_method=request.method,
                http_path=path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
                client_ip=client_ip,
            )
            # global exception handler가 처리하도록 다시 발생
            raise

        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = rid

        status_code = response.status_code
        context = dict(
            event="request",
            http_method=request.method,
            http_path=path,
            http_status=status_code,
            duration_ms=duration_ms,
            client_ip=client_ip,
        )
        if status_code >= 500:
            log_error("Request failed - Server error", **context)
        elif status_code >= 400:
            log_warning("Request failed - Client error", **context)
        elif duration_ms >= SLOW_REQUEST_THRESHOLD_MS:
            log_warning("Slow request detected", performance_issue=True, **context)

        return response
