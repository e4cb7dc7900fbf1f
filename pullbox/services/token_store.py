"""
Durable storage for owner provider credentials.

All reads return a validated ``CredentialRecord``; all writes are keyed on
(owner_id, provider). Login persistence uses a dialect-native atomic upsert so
concurrent logins never produce a second row.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from pullbox.models.credential import OwnerCredential
from pullbox.schemas.credential import CredentialRecord
from pullbox.utils.clock import utcnow

logger = logging.getLogger("pullbox.token_store")

GOOGLE_PROVIDER = "google"

_UPSERT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}


class TokenStore:
    """
    Token store backed by the ``owner_credentials`` table.

    The store never commits on its own; callers decide the transaction
    boundary (the refresher commits right after a refresh write).
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, owner_id: str, provider: str = GOOGLE_PROVIDER) -> Optional[CredentialRecord]:
        """
        Load the credential for (owner_id, provider).

        Returns:
            CredentialRecord if a row exists, None otherwise
        """
        result = await self.db.execute(
            select(OwnerCredential)
            .where(OwnerCredential.owner_id == owner_id)
            .where(OwnerCredential.provider == provider)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return CredentialRecord.model_validate(row)

    async def upsert(
        self,
        owner_id: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        provider: str = GOOGLE_PROVIDER,
    ) -> CredentialRecord:
        """
        Insert or update the credential for (owner_id, provider).

        The stored refresh token is only replaced when a non-empty one is
        given; providers often omit it on re-consent.
        """
        now = utcnow()
        values = {
            "owner_id": owner_id,
            "provider": provider,
            "access_token": access_token,
            "expires_at": expires_at,
            "created_at": now,
            "updated_at": now,
        }
        set_ = {
            "access_token": access_token,
            "expires_at": expires_at,
            "updated_at": now,
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
            set_["refresh_token"] = refresh_token

        insert_fn = self._dialect_insert()
        stmt = insert_fn(OwnerCredential).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[OwnerCredential.owner_id, OwnerCredential.provider],
            set_=set_,
        )
        await self.db.execute(stmt)

        record = await self.get(owner_id, provider)
        # upsert 직후 조회이므로 None이 될 수 없음
        assert record is not None
        return record

    async def save_refreshed(
        self,
        owner_id: str,
        access_token: str,
        expires_at: Optional[datetime],
        refresh_token: Optional[str] = None,
        provider: str = GOOGLE_PROVIDER,
    ) -> bool:
        """
        Persist the result of a successful refresh.

        Returns:
            True if a row was updated
        """
        values = {
            "access_token": access_token,
            "expires_at": expires_at,
            "updated_at": utcnow(),
        }
        if refresh_token:
            values["refresh_token"] = refresh_token

        result = await self.db.execute(
            update(OwnerCredential)
            .where(OwnerCredential.owner_id == owner_id)
            .where(OwnerCredential.provider == provider)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    def _dialect_insert(self):
        dialect = self.db.get_bind().dialect.name
        try:
            return _UPSERT_INSERTS[dialect]
        except KeyError:
            raise NotImplementedError(
                f"Atomic credential upsert is not supported for dialect '{dialect}'"
            ) from None
