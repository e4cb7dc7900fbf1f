"""
Collision-safe collection creation with short public link codes.
"""
import re
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pullbox.config import Settings, get_settings
from pullbox.errors import AllocationExhausted, ValidationError
from pullbox.models.collection import Collection
from pullbox.utils.clock import Clock, utcnow
from pullbox.utils.logger import log_error, log_info, log_warning
from pullbox.utils.prometheus_metrics import link_allocation_total, link_code_collisions_total
from pullbox.utils.security import generate_link_code

LINK_CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{4,12}$")

# "#/box/AB12CD", "/box/AB12CD", "https://app/#/box/AB12CD?x=1"
_BOX_PATH_PATTERN = re.compile(r"/box/([^/?#&\s]+)")


def build_share_url(code: str, settings: Optional[Settings] = None) -> str:
    """Public link for a collection code."""
    settings = settings or get_settings()
    return f"{settings.app_origin.rstrip('/')}/#/box/{code}"


def extract_link_code(value: Optional[str]) -> str:
    """
    Accept a bare code, a ``#/box/{code}`` share URL or a ``/box/{code}``
    path and return the code.

    Raises:
        ValidationError: if no valid code can be extracted
    """
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("Link code is required")

    match = _BOX_PATH_PATTERN.search(raw)
    code = match.group(1) if match else raw

    if not LINK_CODE_PATTERN.match(code):
        raise ValidationError("Invalid link")
    return code


def _is_link_code_violation(error: IntegrityError) -> bool:
    # SQLite: "UNIQUE constraint failed: collections.link_code"
    # PostgreSQL: 'duplicate key ... constraint "ix_collections_link_code"'
    return "link_code" in str(error.orig)


class LinkAllocator:
    """
    Creates collection rows with a unique link code.

    Uniqueness is enforced by the database constraint; on a collision the
    insert is rolled back and retried with a fresh code. Existing rows are
    never touched.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        code_generator: Optional[Callable[[], str]] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.code_generator = code_generator or (
            lambda: generate_link_code(self.settings.link_code_length)
        )
        self.clock = clock

    async def allocate(self, owner_id: str, name: str, folder_id: str) -> Collection:
        """
        Insert a collection with a freshly generated link code.

        Commits on success so the code is visible to other requests immediately.

        Raises:
            AllocationExhausted: if every attempt collided
        """
        max_attempts = self.settings.link_code_max_attempts

        for attempt in range(1, max_attempts + 1):
            code = self.code_generator()
            now = self.clock()
            collection = Collection(
                owner_id=owner_id,
                name=name,
                drive_folder_id=folder_id,
                link_code=code,
                created_at=now,
                expires_at=now + timedelta(days=self.settings.collection_retention_days),
                item_count=0,
            )
            self.db.add(collection)
            try:
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                if not _is_link_code_violation(e):
                    raise
                link_code_collisions_total.inc()
                log_warning(
                    "Link code collision",
                    event="link",
                    owner_id=owner_id,
                    attempt=attempt,
                )
                continue

            await self.db.refresh(collection)
            link_allocation_total.labels(result="success").inc()
            log_info(
                "Collection link allocated",
                event="link",
                owner_id=owner_id,
                collection_id=collection.id,
                attempt=attempt,
            )
            return collection

        link_allocation_total.labels(result="exhausted").inc()
        log_error("Link code allocation exhausted", event="link", owner_id=owner_id, attempts=max_attempts)
        raise AllocationExhausted(owner_id=owner_id)
