"""
클라이언트 IP 추출 유틸리티.

프록시나 로드밸런서를 거치는 경우 실제 클라이언트 IP를 추출합니다.
Rate limit 키와 요청 로그에서 같은 규칙을 사용합니다.
"""
from typing import Optional

from fastapi import Request

# 확인 순서: 프록시 체인 → nginx → Cloudflare → Akamai
_PROXY_HEADERS = ("X-Real-IP", "CF-Connecting-IP", "True-Client-IP")


def get_client_ip(request: Request) -> Optional[str]:
    """
    요청에서 실제 클라이언트 IP를 추출합니다.

    Args:
        request: FastAPI Request 객체

    Returns:
        클라이언트 IP 주소 또는 None

    Security:
        이 헤더들은 위조 가능하므로 로드밸런서에서 외부 요청의 값을 제거해야 합니다.
    """
    x_forwarded_for = request.headers.get("X-Forwarded-For")
    if x_forwarded_for:
        # "client, proxy1, proxy2" 형식에서 첫 번째가 원본 클라이언트
        client_ip = x_forwarded_for.split(",")[0].strip()
        if client_ip:
            return client_ip

    for header in _PROXY_HEADERS:
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()

    if request.client:
        return request.client.host

    return None


def get_client_identifier(request: Request) -> str:
    """Rate limiting 키. IP를 알 수 없으면 "unknown"."""
    return get_client_ip(request) or "unknown"
