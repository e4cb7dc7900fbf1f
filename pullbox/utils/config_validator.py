"""
설정 검증 유틸리티.

애플리케이션 시작 시 필수 설정을 검증합니다.
프로덕션 환경에서만 실행됩니다.
"""
import logging
from typing import List

from sqlalchemy import text

from pullbox.config import Environment, Settings, get_settings
from pullbox.database import engine

logger = logging.getLogger("pullbox.config_validator")

DEFAULT_SESSION_SECRET = "jwt-secret-change-in-production"


async def validate_configuration() -> None:
    """
    애플리케이션 설정을 검증합니다.

    검증 실패 시 ValueError를 발생시켜 애플리케이션 시작을 중단합니다.
    """
    settings = get_settings()

    if settings.environment != Environment.PRODUCTION:
        logger.info(
            "Config validation skipped (not production)",
            extra={"event": "config", "environment": settings.environment.value},
        )
        return

    errors: List[str] = []

    # DB 연결 테스트
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info("Database connection: OK", extra={"event": "config"})
    except Exception as e:
        error_msg = f"Database connection failed: {str(e)}"
        errors.append(error_msg)
        logger.error(error_msg, extra={"event": "config"}, exc_info=True)

    errors.extend(validate_provider_config(settings))
    errors.extend(validate_session_config(settings))

    if errors:
        error_summary = "\n".join(f"  - {e}" for e in errors)
        raise ValueError(
            f"Configuration validation failed:\n{error_summary}\n"
            "Please check your environment variables and configuration."
        )

    logger.info("Configuration validation completed successfully", extra={"event": "config"})


def validate_provider_config(settings: Settings) -> List[str]:
    """Google OAuth client 설정 검증 (토큰 갱신에 필수)."""
    errors: List[str] = []

    if not settings.google_oauth_client_id:
        errors.append("GOOGLE_OAUTH_CLIENT_ID is required")
    if not settings.google_oauth_client_secret:
        errors.append("GOOGLE_OAUTH_CLIENT_SECRET is required")

    if errors:
        logger.error(
            "Provider configuration validation failed",
            extra={"event": "config", "errors": errors},
        )
    return errors


def validate_session_config(settings: Settings) -> List[str]:
    """세션 JWT 및 공개 링크 설정 검증."""
    errors: List[str] = []

    if not settings.session_jwt_secret or settings.session_jwt_secret == DEFAULT_SESSION_SECRET:
        errors.append("SESSION_JWT_SECRET must be set to a non-default value")

    if not settings.app_origin.startswith("https://"):
        # 공유 링크가 http로 나가도 동작은 하므로 경고만
        logger.warning(
            "APP_ORIGIN is not https",
            extra={"event": "config", "app_origin": settings.app_origin},
        )

    if not settings.upload_gate_secret:
        logger.info("Upload gate disabled (UPLOAD_GATE_SECRET empty)", extra={"event": "config"})

    return errors
