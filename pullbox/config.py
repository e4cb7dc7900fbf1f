"""
Application configuration using Pydantic Settings.
Manages all environment variables and settings.
"""
from enum import Enum
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator


class Environment(str, Enum):
    """Application environment modes."""
    DEV = "DEV"
    PRODUCTION = "PRODUCTION"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    environment: Environment = Field(
        default=Environment.DEV,
        description="Application environment: DEV or PRODUCTION"
    )

    # Application
    app_name: str = Field(default="Pull-Box API")
    app_version: str = Field(default="1.0.0")
    debug: bool = Field(default=False)

    @model_validator(mode='after')
    def set_debug_from_environment(self):
        """Set debug mode based on environment if not explicitly set via environment variable."""
        # DEBUG 환경 변수가 명시적으로 설정되지 않은 경우에만 환경 모드에 따라 설정
        import os
        if 'DEBUG' not in os.environ:
            self.debug = self.environment == Environment.DEV
        return self

    @property
    def is_dev(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEV

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    # Database (빈 문자열이면 기본값 사용)
    database_url: str = Field(default="sqlite+aiosqlite:///./pullbox.db")
    db_pool_size: int = Field(default=10)
    db_max_overflow: int = Field(default=20)
    db_pool_timeout: int = Field(default=30)
    db_pool_recycle: int = Field(default=1800)

    @field_validator("database_url", mode="before")
    @classmethod
    def coerce_empty_database_url(cls, v: str) -> str:
        if not v or not str(v).strip():
            return "sqlite+aiosqlite:///./pullbox.db"
        return v

    # Owner session (identity provider가 발급한 JWT 검증용)
    session_jwt_secret: str = Field(default="jwt-secret-change-in-production")
    session_jwt_algorithm: str = Field(default="HS256")
    session_jwt_audience: str = Field(default="authenticated")

    # Google OAuth client (confidential, 호출자에게 노출 금지)
    google_oauth_client_id: str = Field(default="")
    google_oauth_client_secret: str = Field(default="")
    google_token_url: str = Field(default="https://oauth2.googleapis.com/token")
    google_drive_api_url: str = Field(default="https://www.googleapis.com/drive/v3")
    google_drive_upload_url: str = Field(default="https://www.googleapis.com/upload/drive/v3")
    google_userinfo_url: str = Field(default="https://www.googleapis.com/oauth2/v3/userinfo")

    # Provider call limits
    provider_timeout_seconds: float = Field(default=30.0)
    provider_upload_timeout_seconds: float = Field(default=120.0)
    token_refresh_margin_seconds: int = Field(
        default=30,
        description="만료까지 이 시간(초) 이내로 남은 토큰은 요청 전에 미리 갱신",
    )
    refresh_lock_enabled: bool = Field(
        default=True,
        description="같은 owner에 대한 동시 토큰 갱신을 프로세스 내에서 직렬화",
    )

    # Collections / share links
    app_origin: str = Field(default="http://localhost:5173")
    collection_retention_days: int = Field(default=90, ge=1)
    link_code_length: int = Field(default=6, ge=4, le=12)
    link_code_max_attempts: int = Field(default=3, ge=1)

    # Public upload
    upload_gate_secret: str = Field(
        default="",
        description="설정 시 공개 업로드 요청에 X-Upload-Token 헤더 또는 token 쿼리 필요",
    )
    max_upload_file_size: int = Field(default=25 * 1024 * 1024)
    max_files_per_upload: int = Field(default=20)
    upload_concurrency: int = Field(default=3, ge=1)

    # Rate limiting
    rate_limit_enabled: bool = Field(default=True)
    rate_limit_per_minute: int = Field(default=120)
    rate_limit_public_per_minute: int = Field(default=30)

    # Dashboard sync (SSE)
    event_queue_size: int = Field(default=100)
    event_keepalive_seconds: float = Field(default=15.0)

    # Logging. 비우면 파일 로그 비활성화
    log_dir: str = Field(default="/var/log/pullbox")
    # 인스턴스 식별용 사설 IP (로그용). 비우면 자동 감지
    instance_ip: str = Field(default="", description="서버 사설 IP (비우면 자동 감지)")

    class Config:
        # 환경변수만 사용 (.env 파일 미사용)
        env_file = None
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Using lru_cache to avoid reading the environment on every request.
    """
    return Settings()
