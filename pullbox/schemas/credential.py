"""
Credential-related Pydantic schemas.

``CredentialRecord`` is the only shape in which stored provider tokens leave
the token store; it never appears in an API response.
"""
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator

from pullbox.utils.clock import to_naive_utc, utcnow


class CredentialRecord(BaseModel):
    """Validated, immutable view of an ``owner_credentials`` row."""

    owner_id: str = Field(..., min_length=1)
    provider: str = Field(..., min_length=1)
    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, frozen=True)

    @field_validator("refresh_token", mode="before")
    @classmethod
    def blank_refresh_token_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not str(v).strip():
            return None
        return v

    @field_validator("access_token", mode="before")
    @classmethod
    def null_access_token_is_empty(cls, v: Optional[str]) -> str:
        return v or ""

    @property
    def is_connected(self) -> bool:
        """A row with neither token cannot act for the owner."""
        return bool(self.access_token or self.refresh_token)

    def needs_refresh(self, now: datetime, margin_seconds: int) -> bool:
        """
        True if the access token is missing or expires within the margin.
        A missing expiry means "assume valid".
        """
        if not self.access_token:
            return True
        if self.expires_at is None:
            return False
        return self.expires_at <= now + timedelta(seconds=margin_seconds)


class ProviderTokenPersist(BaseModel):
    """
    Schema for persisting the provider token obtained at owner login.

    Either ``expires_at`` or ``expires_in`` may be given; ``expires_in`` wins.
    """

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    expires_in: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def resolve_expiry(self):
        if self.expires_in is not None:
            self.expires_at = utcnow() + timedelta(seconds=self.expires_in)
        else:
            self.expires_at = to_naive_utc(self.expires_at)
        return self


class AccessTokenResponse(BaseModel):
    """Owner token endpoint response."""

    access_token: str
    expires_at: Optional[datetime] = None


class ProviderTokenPersistResponse(BaseModel):
    """Acknowledgement for a persisted login token (tokens are not echoed)."""

    provider: str
    has_refresh_token: bool
    expires_at: Optional[datetime] = None


class OwnerProfileResponse(BaseModel):
    """Session identity plus the connected Drive profile."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    drive_name: Optional[str] = None
    drive_email: Optional[str] = None
    drive_photo_url: Optional[str] = None


class OwnerIdentity(BaseModel):
    """Owner identity decoded from the identity-provider session JWT."""

    id: str = Field(..., min_length=1)
    email: Optional[str] = None
    name: Optional[str] = None
