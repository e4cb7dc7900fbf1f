"""
Provider token refresh.

Exchanges the stored refresh token for a new access token at the Google token
endpoint and persists the result. The OAuth client secret stays on the server;
callers only ever see the resulting access token.
"""
import asyncio
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from pullbox.config import Settings, get_settings
from pullbox.errors import NoRefreshToken, ProviderRejected, RefreshFailed
from pullbox.services.token_store import GOOGLE_PROVIDER, TokenStore
from pullbox.utils.clock import Clock, utcnow
from pullbox.utils.logger import log_error, log_info, log_warning
from pullbox.utils.prometheus_metrics import record_external_request, token_refresh_total

# (owner_id, provider) -> Lock. 사용하는 요청이 없으면 자동으로 사라짐
_refresh_locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()


def _owner_lock(owner_id: str, provider: str) -> asyncio.Lock:
    key = (owner_id, provider)
    lock = _refresh_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _refresh_locks[key] = lock
    return lock


@dataclass(frozen=True)
class RefreshedToken:
    """A freshly usable access token and its expiry (None = unknown)."""
    access_token: str
    expires_at: Optional[datetime]


class TokenRefresher:
    """
    Refresh-and-persist for one (owner, provider) credential.

    Failures are terminal for the caller's chain:
    - NoRefreshToken: nothing stored to refresh with
    - ProviderRejected: the token endpoint refused the grant (revoked/invalid)
    - RefreshFailed: timeout or network error talking to the token endpoint
    Nothing is written when a refresh fails.
    """

    def __init__(
        self,
        db: AsyncSession,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.store = TokenStore(db)
        self.http_client = http_client
        self.settings = settings or get_settings()
        self.clock = clock

    async def refresh(
        self,
        owner_id: str,
        provider: str = GOOGLE_PROVIDER,
        stale_token: Optional[str] = None,
    ) -> RefreshedToken:
        """
        Refresh the owner's access token.

        Args:
            owner_id: Credential owner
            provider: Provider key
            stale_token: The token the caller found unusable. If the stored
                token already differs from it and is still fresh, another
                request refreshed in the meantime and that token is returned.

        Returns:
            RefreshedToken with the new access token and expiry
        """
        if not self.settings.refresh_lock_enabled:
            return await self._refresh(owner_id, provider, stale_token)

        async with _owner_lock(owner_id, provider):
            return await self._refresh(owner_id, provider, stale_token)

    async def _refresh(
        self,
        owner_id: str,
        provider: str,
        stale_token: Optional[str],
    ) -> RefreshedToken:
        record = await self.store.get(owner_id, provider)
        if record is None or not record.refresh_token:
            token_refresh_total.labels(result="no_refresh_token").inc()
            log_warning("No refresh token stored", event="oauth", owner_id=owner_id, provider=provider)
            raise NoRefreshToken(owner_id=owner_id)

        # Double-check: 락 대기 중 다른 요청이 이미 갱신했으면 재사용
        if (
            stale_token is not None
            and record.access_token
            and record.access_token != stale_token
            and not record.needs_refresh(self.clock(), self.settings.token_refresh_margin_seconds)
        ):
            token_refresh_total.labels(result="reused").inc()
            return RefreshedToken(record.access_token, record.expires_at)

        payload = await self._request_grant(owner_id, record.refresh_token)

        access_token = payload.get("access_token")
        if not access_token:
            token_refresh_total.labels(result="rejected").inc()
            log_error("Token endpoint returned no access token", event="oauth", owner_id=owner_id)
            raise ProviderRejected(owner_id=owner_id)

        expires_at = None
        expires_in = payload.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = self.clock() + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                expires_at = None

        new_refresh_token = payload.get("refresh_token") or None

        await self.store.save_refreshed(
            owner_id,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=new_refresh_token,
            provider=provider,
        )
        # rotation된 refresh token은 이후 요청이 롤백되어도 유지되어야 함
        await self.db.commit()

        token_refresh_total.labels(result="success").inc()
        log_info(
            "Provider token refreshed",
            event="oauth",
            owner_id=owner_id,
            provider=provider,
            rotated=new_refresh_token is not None,
        )
        return RefreshedToken(access_token, expires_at)

    async def _request_grant(self, owner_id: str, refresh_token: str) -> dict:
        data = {
            "client_id": self.settings.google_oauth_client_id,
            "client_secret": self.settings.google_oauth_client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        try:
            async with record_external_request("google_oauth"):
                response = await self.http_client.post(
                    self.settings.google_token_url,
                    data=data,
                    timeout=self.settings.provider_timeout_seconds,
                )
                if response.status_code >= 400:
                    token_refresh_total.labels(result="rejected").inc()
                    log_warning(
                        "Token refresh rejected",
                        event="oauth",
                        owner_id=owner_id,
                        status=response.status_code,
                    )
                    raise ProviderRejected(owner_id=owner_id, provider_status=response.status_code)
                return response.json()
        except httpx.TimeoutException:
            token_refresh_total.labels(result="error").inc()
            log_error("Token refresh timeout", event="oauth", owner_id=owner_id)
            raise RefreshFailed(owner_id=owner_id, reason="timeout")
        except httpx.HTTPError as e:
            token_refresh_total.labels(result="error").inc()
            log_error("Token refresh network error", event="oauth", owner_id=owner_id, error=str(e)[:200])
            raise RefreshFailed(owner_id=owner_id, reason="network")
        except ValueError:
            token_refresh_total.labels(result="error").inc()
            log_error("Token refresh response is not JSON", event="oauth", owner_id=owner_id)
            raise RefreshFailed(owner_id=owner_id, reason="invalid_response")
