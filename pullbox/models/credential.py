"""
Owner credential model for the storage provider OAuth tokens.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pullbox.database import Base
from pullbox.utils.clock import utcnow


class OwnerCredential(Base):
    """
    Provider tokens for one owner.

    At most one row per (owner_id, provider); all writes are upserts keyed on
    that pair. Rows are only rewritten by token persistence and refresh.
    """

    __tablename__ = "owner_credentials"
    __table_args__ = (
        UniqueConstraint("owner_id", "provider", name="uq_owner_credentials_owner_provider"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)

    # Identity provider subject (uuid string)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)

    # Opaque provider tokens
    access_token: Mapped[str] = mapped_column(Text, nullable=False, default="")
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # None이면 만료 정보 없음 → 유효한 것으로 간주
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        # 토큰 값은 repr에 포함하지 않음
        return f"<OwnerCredential(owner_id={self.owner_id}, provider={self.provider})>"
