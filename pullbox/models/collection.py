"""
Collection model: a shareable, expiring photo-drop target bound to one Drive folder.
"""
import uuid
from datetime import datetime

from sqlalchemy import String, DateTime, Integer, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column

from pullbox.database import Base
from pullbox.utils.clock import utcnow


def _new_collection_id() -> str:
    return str(uuid.uuid4())


class Collection(Base):
    """
    Collection (Pull-Box) model.

    The link code is globally unique. Anonymous uploaders can only advance
    ``item_count``, and only through an atomic SQL increment.
    """

    __tablename__ = "collections"
    __table_args__ = (
        CheckConstraint("item_count >= 0", name="ck_collections_item_count_non_negative"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=_new_collection_id
    )
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    # Collection information
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    drive_folder_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Public short code (4-12 alphanumerics)
    link_code: Mapped[str] = mapped_column(
        String(12), unique=True, index=True, nullable=False
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Statistics (best-effort count of successful uploads)
    item_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def is_expired(self, now: datetime) -> bool:
        """Expired once ``expires_at`` is at or before ``now``."""
        return self.expires_at <= now

    def __repr__(self) -> str:
        return f"<Collection(id={self.id}, link_code={self.link_code})>"
