"""
Tests for AuthorizedClient (refresh-retry) and DriveService operations.
"""
from datetime import timedelta

import httpx
import pytest

from conftest import FRESH_TOKEN, VALID_TOKEN, seed_credential
from pullbox.errors import UpstreamError
from pullbox.services.drive_client import AuthorizedClient, DriveService, OwnerSession, build_owner_drive
from pullbox.services.token_refresher import TokenRefresher
from pullbox.utils.clock import utcnow


def _drive(db, http_client, session: OwnerSession) -> DriveService:
    refresher = TokenRefresher(db, http_client)
    return DriveService(AuthorizedClient(session, refresher, http_client))


class TestRefreshRetry:
    """Tests for the single refresh-retry on expiry and 401."""

    @pytest.mark.asyncio
    async def test_forced_expiry_refreshes_once_then_succeeds(self, session_factory, db, http_client, fake_google):
        expired_at = utcnow() - timedelta(minutes=1)
        await seed_credential(session_factory, access_token="expired-token", expires_at=expired_at)
        session = OwnerSession("owner-1", "expired-token", expired_at)

        files = await _drive(db, http_client, session).list_files("folder-1")

        assert files == []
        assert len(fake_google.token_calls) == 1
        assert len(fake_google.drive_calls) == 1
        assert session.access_token == FRESH_TOKEN

    @pytest.mark.asyncio
    async def test_token_within_margin_is_refreshed_first(self, session_factory, db, http_client, fake_google):
        soon = utcnow() + timedelta(seconds=10)
        await seed_credential(session_factory, access_token="expired-token", expires_at=soon)
        session = OwnerSession("owner-1", "expired-token", soon)

        await _drive(db, http_client, session).list_files("folder-1")

        assert len(fake_google.token_calls) == 1

    @pytest.mark.asyncio
    async def test_401_triggers_refresh_and_retry(self, session_factory, db, http_client, fake_google):
        later = utcnow() + timedelta(hours=1)
        await seed_credential(session_factory, access_token="revoked-token", expires_at=later)
        session = OwnerSession("owner-1", "revoked-token", later)

        files = await _drive(db, http_client, session).list_files("folder-1")

        assert files == []
        assert len(fake_google.token_calls) == 1
        assert len(fake_google.drive_calls) == 2
        assert fake_google.drive_calls[1].headers["authorization"] == f"Bearer {FRESH_TOKEN}"

    @pytest.mark.asyncio
    async def test_second_401_raises_unauthorized_without_loop(self, session_factory, db, http_client, fake_google):
        await seed_credential(session_factory, access_token=VALID_TOKEN)
        fake_google.always_unauthorized = True
        session = OwnerSession("owner-1", VALID_TOKEN)

        with pytest.raises(UpstreamError) as exc_info:
            await _drive(db, http_client, session).list_files("folder-1")

        assert exc_info.value.unauthorized
        assert exc_info.value.status_code == 502
        assert len(fake_google.token_calls) == 1
        assert len(fake_google.drive_calls) == 2

    @pytest.mark.asyncio
    async def test_failed_refresh_fails_fast_afterwards(self, session_factory, db, http_client, fake_google):
        await seed_credential(session_factory, access_token="revoked-token", refresh_token="revoked")
        fake_google.refresh_status = 400
        drive = _drive(db, http_client, OwnerSession("owner-1", "revoked-token"))

        with pytest.raises(UpstreamError) as first:
            await drive.list_files("folder-1")
        with pytest.raises(UpstreamError) as second:
            await drive.list_files("folder-1")

        assert first.value.unauthorized and second.value.unauthorized
        assert len(fake_google.token_calls) == 1
        # 두 번째 호출은 401을 한 번 받은 뒤 refresh 없이 즉시 실패
        assert len(fake_google.drive_calls) == 2

    @pytest.mark.asyncio
    async def test_missing_expiry_sends_without_refresh(self, session_factory, db, http_client, fake_google):
        await seed_credential(session_factory, access_token=VALID_TOKEN, expires_at=None)

        await _drive(db, http_client, OwnerSession("owner-1", VALID_TOKEN)).list_files("folder-1")

        assert fake_google.token_calls == []


class TestTransportErrors:
    """Tests for timeout and provider error mapping."""

    @pytest.mark.asyncio
    async def test_timeout_maps_to_upstream_timeout(self, db):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            drive = _drive(db, client, OwnerSession("owner-1", VALID_TOKEN))
            with pytest.raises(UpstreamError) as exc_info:
                await drive.list_files("folder-1")

        assert exc_info.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_network_error_maps_to_upstream_network(self, db):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            drive = _drive(db, client, OwnerSession("owner-1", VALID_TOKEN))
            with pytest.raises(UpstreamError) as exc_info:
                await drive.create_folder("Party")

        assert exc_info.value.reason == "network"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            httpx.Response(200, text="<html>gateway</html>"),
            httpx.Response(200, json={"name": "a.jpg"}),
            httpx.Response(200, json=["not", "an", "object"]),
        ],
    )
    async def test_unreadable_2xx_body_maps_to_invalid_response(self, db, reply):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: reply)) as client:
            drive = _drive(db, client, OwnerSession("owner-1", VALID_TOKEN))
            with pytest.raises(UpstreamError) as exc_info:
                await drive.upload_file("folder-1", b"jpeg", "a.jpg", "image/jpeg", "key-1")

        assert exc_info.value.reason == "invalid_response"
        assert exc_info.value.upstream_status == 200

    @pytest.mark.asyncio
    async def test_folder_reply_without_id_maps_to_invalid_response(self, db):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={}))) as client:
            drive = _drive(db, client, OwnerSession("owner-1", VALID_TOKEN))
            with pytest.raises(UpstreamError) as exc_info:
                await drive.create_folder("Party")

        assert exc_info.value.reason == "invalid_response"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_with_provider_status(self, db, http_client):
        drive = _drive(db, http_client, OwnerSession("owner-1", VALID_TOKEN))

        with pytest.raises(UpstreamError) as exc_info:
            await drive.download_file("missing-file")

        assert exc_info.value.upstream_status == 404


class TestDriveOperations:
    """Tests for the Drive request shapes."""

    @pytest.mark.asyncio
    async def test_upload_stores_idempotency_key(self, db, http_client, fake_google):
        drive = _drive(db, http_client, OwnerSession("owner-1", VALID_TOKEN))

        uploaded = await drive.upload_file("folder-9", b"jpeg-bytes", "a.jpg", "image/jpeg", "key-123")

        assert uploaded.id == "file-1"
        assert uploaded.upload_key == "key-123"
        stored = fake_google.uploads[0]
        assert stored["parents"] == ["folder-9"]
        assert stored["content"] == b"jpeg-bytes"
        assert stored["upload_key"] == "key-123"

    @pytest.mark.asyncio
    async def test_create_folder_uses_folder_mime_type(self, db, http_client, fake_google):
        drive = _drive(db, http_client, OwnerSession("owner-1", VALID_TOKEN))

        folder_id = await drive.create_folder("Graduation")

        assert folder_id == "folder-1"
        assert fake_google.folders[0]["mimeType"] == "application/vnd.google-apps.folder"

    @pytest.mark.asyncio
    async def test_list_files_reads_upload_keys(self, db, http_client):
        drive = _drive(db, http_client, OwnerSession("owner-1", VALID_TOKEN))
        await drive.upload_file("folder-1", b"one", "1.jpg", "image/jpeg", "k1")
        await drive.upload_file("folder-1", b"two", "2.jpg", "image/jpeg", "k2")

        files = await drive.list_files("folder-1")

        assert [f.upload_key for f in files] == ["k2", "k1"]
        assert files[0].size == 3

    @pytest.mark.asyncio
    async def test_build_owner_drive_requires_credential(self, db, http_client):
        from pullbox.errors import OwnerDisconnected

        with pytest.raises(OwnerDisconnected):
            await build_owner_drive(db, http_client, "nobody")
