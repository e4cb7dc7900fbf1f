"""
Authentication router for the owner's provider credential.

The identity provider signs the owner in; these endpoints persist the Google
token it returned and hand out a valid access token on demand.
"""
import httpx
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from pullbox.config import get_settings
from pullbox.database import get_db
from pullbox.dependencies.auth import get_current_owner, get_http_client
from pullbox.errors import OwnerDisconnected, RefreshFailed
from pullbox.schemas.credential import (
    AccessTokenResponse,
    OwnerIdentity,
    OwnerProfileResponse,
    ProviderTokenPersist,
    ProviderTokenPersistResponse,
)
from pullbox.services.drive_client import build_owner_drive
from pullbox.services.token_refresher import TokenRefresher
from pullbox.services.token_store import TokenStore
from pullbox.utils.clock import utcnow
from pullbox.utils.logger import log_info
from pullbox.utils.prometheus_metrics import owner_token_requests_total

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/provider-token",
    response_model=ProviderTokenPersistResponse,
    summary="Persist the provider token obtained at login",
)
async def persist_provider_token(
    token_data: ProviderTokenPersist,
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
) -> ProviderTokenPersistResponse:
    """
    Store the Google token returned by the identity provider's OAuth login.

    - **access_token**: Google access token
    - **refresh_token**: Optional; an empty value never replaces a stored one
    - **expires_at** / **expires_in**: Optional expiry
    """
    record = await TokenStore(db).upsert(
        owner.id,
        access_token=token_data.access_token,
        refresh_token=token_data.refresh_token,
        expires_at=token_data.expires_at,
    )

    log_info(
        "Provider token persisted",
        event="auth",
        owner_id=owner.id,
        has_refresh_token=record.refresh_token is not None,
    )
    return ProviderTokenPersistResponse(
        provider=record.provider,
        has_refresh_token=record.refresh_token is not None,
        expires_at=record.expires_at,
    )


@router.post(
    "/drive-token",
    response_model=AccessTokenResponse,
    summary="Get a valid provider access token",
)
async def get_drive_token(
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> AccessTokenResponse:
    """
    Return the owner's access token, refreshing it first if it is expired or
    about to expire.

    - 403: no credential stored
    - 502: refresh rejected by the provider
    """
    settings = get_settings()
    record = await TokenStore(db).get(owner.id)
    if record is None or not record.is_connected:
        owner_token_requests_total.labels(result="not_connected").inc()
        raise OwnerDisconnected(owner_id=owner.id)

    if not record.needs_refresh(utcnow(), settings.token_refresh_margin_seconds):
        owner_token_requests_total.labels(result="cached").inc()
        return AccessTokenResponse(access_token=record.access_token, expires_at=record.expires_at)

    try:
        refreshed = await TokenRefresher(db, http_client, settings).refresh(
            owner.id, record.provider, stale_token=record.access_token
        )
    except RefreshFailed:
        owner_token_requests_total.labels(result="refresh_failed").inc()
        raise

    owner_token_requests_total.labels(result="refreshed").inc()
    return AccessTokenResponse(access_token=refreshed.access_token, expires_at=refreshed.expires_at)


@router.get(
    "/me",
    response_model=OwnerProfileResponse,
    summary="Get current owner profile",
)
async def get_me(
    db: AsyncSession = Depends(get_db),
    owner: OwnerIdentity = Depends(get_current_owner),
    http_client: httpx.AsyncClient = Depends(get_http_client),
) -> OwnerProfileResponse:
    """
    Session identity plus the connected Drive profile.
    Drive fields are empty when no credential is stored.
    """
    profile = OwnerProfileResponse(id=owner.id, email=owner.email, name=owner.name)

    try:
        drive = await build_owner_drive(db, http_client, owner.id)
    except OwnerDisconnected:
        # Drive 미연결은 정상 상태 (로그인 직후 토큰 저장 전)
        return profile

    info = await drive.get_user_info()
    profile.drive_name = info.get("name")
    profile.drive_email = info.get("email")
    profile.drive_photo_url = info.get("picture")
    return profile
