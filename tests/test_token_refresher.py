"""
Tests for the provider token refresh flow.
"""
import asyncio
from datetime import timedelta

import httpx
import pytest

from conftest import FRESH_TOKEN, seed_credential
from pullbox.errors import NoRefreshToken, ProviderRejected, RefreshFailed
from pullbox.services.token_refresher import TokenRefresher
from pullbox.services.token_store import TokenStore
from pullbox.utils.clock import utcnow


class TestRefreshSuccess:
    """Tests for successful refresh-and-persist."""

    @pytest.mark.asyncio
    async def test_refresh_persists_new_token(self, session_factory, http_client, fake_google):
        await seed_credential(session_factory, access_token="stale", refresh_token="r1")

        async with session_factory() as session:
            refreshed = await TokenRefresher(session, http_client).refresh("owner-1")

        assert refreshed.access_token == FRESH_TOKEN
        assert refreshed.expires_at > utcnow() + timedelta(minutes=59)

        form = fake_google.token_calls[0]
        assert form["grant_type"] == "refresh_token"
        assert form["refresh_token"] == "r1"
        assert form["client_id"] == "test-client-id"
        assert form["client_secret"] == "test-client-secret"

        # 커밋되었으므로 다른 세션에서도 보임
        async with session_factory() as session:
            record = await TokenStore(session).get("owner-1")
        assert record.access_token == FRESH_TOKEN
        assert record.refresh_token == "r1"

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_is_kept(self, session_factory, http_client, fake_google):
        await seed_credential(session_factory, access_token="stale", refresh_token="r1")
        fake_google.refresh_payload = {"access_token": FRESH_TOKEN, "expires_in": 3600, "refresh_token": "r2"}

        async with session_factory() as session:
            await TokenRefresher(session, http_client).refresh("owner-1")

        async with session_factory() as session:
            record = await TokenStore(session).get("owner-1")
        assert record.refresh_token == "r2"

    @pytest.mark.asyncio
    async def test_missing_expires_in_means_unknown_expiry(self, session_factory, http_client, fake_google):
        await seed_credential(session_factory, access_token="stale", refresh_token="r1")
        fake_google.refresh_payload = {"access_token": FRESH_TOKEN}

        async with session_factory() as session:
            refreshed = await TokenRefresher(session, http_client).refresh("owner-1")

        assert refreshed.expires_at is None


class TestRefreshFailures:
    """Tests for terminal refresh failures."""

    @pytest.mark.asyncio
    async def test_no_row_raises_no_refresh_token(self, db, http_client, fake_google):
        with pytest.raises(NoRefreshToken):
            await TokenRefresher(db, http_client).refresh("nobody")
        assert fake_google.token_calls == []

    @pytest.mark.asyncio
    async def test_no_refresh_token_skips_provider(self, session_factory, http_client, fake_google):
        await seed_credential(session_factory, access_token="stale", refresh_token=None)

        async with session_factory() as session:
            with pytest.raises(NoRefreshToken) as exc_info:
                await TokenRefresher(session, http_client).refresh("owner-1")

        assert isinstance(exc_info.value, RefreshFailed)
        assert fake_google.token_calls == []

    @pytest.mark.asyncio
    async def test_revoked_grant_raises_provider_rejected(self, session_factory, http_client, fake_google):
        await seed_credential(session_factory, access_token="stale", refresh_token="revoked")
        fake_google.refresh_status = 400

        async with session_factory() as session:
            with pytest.raises(ProviderRejected) as exc_info:
                await TokenRefresher(session, http_client).refresh("owner-1")

        assert exc_info.value.provider_status == 400
        async with session_factory() as session:
            record = await TokenStore(session).get("owner-1")
        assert record.access_token == "stale"

    @pytest.mark.asyncio
    async def test_timeout_raises_refresh_failed(self, session_factory, http_client, fake_google):
        await seed_credential(session_factory, access_token="stale", refresh_token="r1")
        fake_google.refresh_exception = httpx.ConnectTimeout("timed out")

        async with session_factory() as session:
            with pytest.raises(RefreshFailed) as exc_info:
                await TokenRefresher(session, http_client).refresh("owner-1")

        assert not isinstance(exc_info.value, ProviderRejected)


class TestConcurrentRefresh:
    """Tests for the per-owner refresh lock and double-check."""

    @pytest.mark.asyncio
    async def test_fresh_stored_token_is_reused(self, session_factory, http_client, fake_google):
        await seed_credential(
            session_factory,
            access_token="already-fresh",
            refresh_token="r1",
            expires_at=utcnow() + timedelta(hours=1),
        )

        async with session_factory() as session:
            refreshed = await TokenRefresher(session, http_client).refresh("owner-1", stale_token="old")

        assert refreshed.access_token == "already-fresh"
        assert fake_google.token_calls == []

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_call_provider_once(self, session_factory, http_client, fake_google):
        await seed_credential(
            session_factory,
            access_token="old",
            refresh_token="r1",
            expires_at=utcnow() - timedelta(minutes=5),
        )

        async def _refresh():
            async with session_factory() as session:
                return await TokenRefresher(session, http_client).refresh("owner-1", stale_token="old")

        results = await asyncio.gather(_refresh(), _refresh(), _refresh())

        assert [r.access_token for r in results] == [FRESH_TOKEN] * 3
        assert len(fake_google.token_calls) == 1
