"""
Google Drive access on behalf of a collection owner.

AuthorizedClient attaches the owner's bearer token to every request and
recovers from an expired token exactly once per call. DriveService layers the
handful of Drive operations the service needs on top of it.
"""
import asyncio
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional, Tuple

import httpx

from pullbox.config import Settings, get_settings
from pullbox.errors import OwnerDisconnected, RefreshFailed, UpstreamError
from pullbox.schemas.collection import DriveFileResponse
from pullbox.schemas.credential import CredentialRecord
from pullbox.services.token_refresher import TokenRefresher
from pullbox.services.token_store import GOOGLE_PROVIDER, TokenStore
from pullbox.utils.clock import Clock, utcnow
from pullbox.utils.logger import log_error, log_warning
from pullbox.utils.prometheus_metrics import provider_auth_retry_total, record_external_request

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
UPLOAD_KEY_PROPERTY = "pullboxUploadKey"

_FILE_FIELDS = "id,name,mimeType,thumbnailLink,webContentLink,size,createdTime,appProperties"


@dataclass
class OwnerSession:
    """
    Credential state for one owner within one request.

    Mutated in place when AuthorizedClient swaps in a refreshed token.
    """
    owner_id: str
    access_token: str
    expires_at: Optional[datetime] = None
    provider: str = GOOGLE_PROVIDER

    @classmethod
    def from_record(cls, record: CredentialRecord) -> "OwnerSession":
        return cls(
            owner_id=record.owner_id,
            access_token=record.access_token,
            expires_at=record.expires_at,
            provider=record.provider,
        )


class AuthorizedClient:
    """
    Bearer-authenticated HTTP client for one owner session.

    - 만료 임박 토큰은 요청 전에 갱신
    - 401 응답 시 호출당 최대 1회 refresh 후 재시도
    - refresh 실패 후에는 같은 세션의 이후 호출도 즉시 실패
    """

    def __init__(
        self,
        session: OwnerSession,
        refresher: TokenRefresher,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        service_name: str = "google_drive",
    ):
        self.session = session
        self.refresher = refresher
        self.http_client = http_client
        self.settings = settings or get_settings()
        self.clock = clock
        self.service_name = service_name
        self._lock = asyncio.Lock()
        self._refresh_failed = False

    def _is_stale(self) -> bool:
        if not self.session.access_token:
            return True
        if self.session.expires_at is None:
            return False
        margin = timedelta(seconds=self.settings.token_refresh_margin_seconds)
        return self.session.expires_at <= self.clock() + margin

    async def _refresh(self, stale_token: str) -> None:
        if self._refresh_failed:
            raise UpstreamError("Owner token refresh failed earlier", reason="unauthorized")

        async with self._lock:
            # Double-check: 다른 태스크가 이미 토큰을 교체했으면 그대로 사용
            if self.session.access_token != stale_token and not self._is_stale():
                return
            if self._refresh_failed:
                raise UpstreamError("Owner token refresh failed earlier", reason="unauthorized")

            try:
                refreshed = await self.refresher.refresh(
                    self.session.owner_id,
                    self.session.provider,
                    stale_token=stale_token,
                )
            except RefreshFailed as e:
                self._refresh_failed = True
                raise UpstreamError("Owner token refresh failed", reason="unauthorized") from e

            self.session.access_token = refreshed.access_token
            self.session.expires_at = refreshed.expires_at

    async def _send(self, method: str, url: str, token: str, **kwargs: Any) -> httpx.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        kwargs.setdefault("timeout", self.settings.provider_timeout_seconds)

        try:
            async with record_external_request(self.service_name):
                response = await self.http_client.request(method, url, headers=headers, **kwargs)
                if response.status_code >= 500:
                    raise UpstreamError(reason="http_error", upstream_status=response.status_code)
                return response
        except UpstreamError:
            raise
        except httpx.TimeoutException:
            log_error("Provider request timeout", event="drive", method=method, url=url)
            raise UpstreamError("Provider request timed out", reason="timeout")
        except httpx.HTTPError as e:
            log_error("Provider request failed", event="drive", method=method, url=url, error=str(e)[:200])
            raise UpstreamError("Provider request failed", reason="network")

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Send an authenticated request.

        Returns the provider response for any status except 401 and 5xx;
        callers decide what other non-2xx codes mean.

        Raises:
            UpstreamError: unauthorized after the single refresh-retry,
                timeout, network failure, or provider 5xx
        """
        refreshed = False
        if self._is_stale():
            await self._refresh(self.session.access_token)
            refreshed = True

        token = self.session.access_token
        response = await self._send(method, url, token, **kwargs)
        if response.status_code != 401:
            return response

        if refreshed:
            # 이번 호출에서 이미 갱신한 토큰도 거부됨 → 재시도 없음
            provider_auth_retry_total.labels(outcome="unauthorized").inc()
            raise UpstreamError("Provider rejected refreshed token", reason="unauthorized", upstream_status=401)

        try:
            await self._refresh(token)
        except UpstreamError:
            provider_auth_retry_total.labels(outcome="refresh_failed").inc()
            raise

        response = await self._send(method, url, self.session.access_token, **kwargs)
        if response.status_code == 401:
            provider_auth_retry_total.labels(outcome="unauthorized").inc()
            log_warning("Provider rejected token after refresh", event="drive", owner_id=self.session.owner_id)
            raise UpstreamError("Provider rejected refreshed token", reason="unauthorized", upstream_status=401)

        provider_auth_retry_total.labels(outcome="recovered").inc()
        return response


def _parse_drive_file(item: dict) -> DriveFileResponse:
    size = item.get("size")
    return DriveFileResponse(
        id=item["id"],
        name=item.get("name") or "",
        mime_type=item.get("mimeType"),
        thumbnail_link=item.get("thumbnailLink"),
        web_content_link=item.get("webContentLink"),
        size=int(size) if size is not None else None,
        created_time=item.get("createdTime"),
        upload_key=(item.get("appProperties") or {}).get(UPLOAD_KEY_PROPERTY),
    )


class DriveService:
    """
    Thin Drive v3 operations. No retry logic of their own; any non-2xx
    response raises UpstreamError with the provider status.
    """

    def __init__(self, client: AuthorizedClient, settings: Optional[Settings] = None):
        self.client = client
        self.settings = settings or get_settings()

    @property
    def api_url(self) -> str:
        return self.settings.google_drive_api_url.rstrip("/")

    @property
    def upload_url(self) -> str:
        return self.settings.google_drive_upload_url.rstrip("/")

    def _check(self, response: httpx.Response, operation: str) -> None:
        if 200 <= response.status_code < 300:
            return
        log_error(
            "Drive operation failed",
            event="drive",
            operation=operation,
            status=response.status_code,
            owner_id=self.client.session.owner_id,
        )
        raise UpstreamError(
            f"Drive {operation} failed",
            reason="http_error",
            upstream_status=response.status_code,
        )

    def _invalid_response(self, response: httpx.Response, operation: str) -> UpstreamError:
        log_error(
            "Drive returned an unreadable body",
            event="drive",
            operation=operation,
            status=response.status_code,
            owner_id=self.client.session.owner_id,
        )
        return UpstreamError(
            f"Drive {operation} returned an invalid response",
            reason="invalid_response",
            upstream_status=response.status_code,
        )

    def _json(self, response: httpx.Response, operation: str) -> dict:
        """Checked 2xx body as a JSON object."""
        self._check(response, operation)
        try:
            data = response.json()
        except ValueError as e:
            raise self._invalid_response(response, operation) from e
        if not isinstance(data, dict):
            raise self._invalid_response(response, operation)
        return data

    def _file(self, response: httpx.Response, operation: str, data: dict) -> DriveFileResponse:
        try:
            return _parse_drive_file(data)
        except (KeyError, TypeError, ValueError) as e:
            raise self._invalid_response(response, operation) from e

    async def create_folder(self, name: str) -> str:
        """Create a folder in the owner's Drive root. Returns the folder id."""
        response = await self.client.request(
            "POST",
            f"{self.api_url}/files",
            params={"fields": "id"},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE},
        )
        folder_id = self._json(response, "create_folder").get("id")
        if not folder_id:
            raise self._invalid_response(response, "create_folder")
        return folder_id

    async def list_files(self, folder_id: str) -> List[DriveFileResponse]:
        """List non-trashed files in a folder, newest first."""
        response = await self.client.request(
            "GET",
            f"{self.api_url}/files",
            params={
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": f"files({_FILE_FIELDS})",
                "orderBy": "createdTime desc",
                "pageSize": 1000,
            },
        )
        data = self._json(response, "list_files")
        return [self._file(response, "list_files", item) for item in data.get("files") or []]

    async def upload_file(
        self,
        folder_id: str,
        content: bytes,
        filename: str,
        content_type: str,
        upload_key: str,
    ) -> DriveFileResponse:
        """
        Upload one file into the folder (multipart/related, single request).

        The idempotency key is stored in ``appProperties`` so a later listing
        can confirm which submissions actually landed.
        """
        metadata = {
            "name": filename,
            "parents": [folder_id],
            "mimeType": content_type,
            "appProperties": {UPLOAD_KEY_PROPERTY: upload_key},
        }
        boundary = f"pullbox-{uuid.uuid4().hex}"
        body = b"".join(
            [
                f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
                json.dumps(metadata).encode("utf-8"),
                f"\r\n--{boundary}\r\nContent-Type: {content_type}\r\n\r\n".encode(),
                content,
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )

        response = await self.client.request(
            "POST",
            f"{self.upload_url}/files",
            params={"uploadType": "multipart", "fields": _FILE_FIELDS},
            content=body,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            timeout=self.settings.provider_upload_timeout_seconds,
        )
        data = self._json(response, "upload_file")
        data.setdefault("appProperties", {UPLOAD_KEY_PROPERTY: upload_key})
        return self._file(response, "upload_file", data)

    async def download_file(self, file_id: str) -> Tuple[bytes, str]:
        """Download file content. Returns (bytes, content type)."""
        response = await self.client.request(
            "GET",
            f"{self.api_url}/files/{file_id}",
            params={"alt": "media"},
            timeout=self.settings.provider_upload_timeout_seconds,
        )
        self._check(response, "download_file")
        return response.content, response.headers.get("content-type", "application/octet-stream")

    async def delete_file(self, file_id: str) -> None:
        response = await self.client.request("DELETE", f"{self.api_url}/files/{file_id}")
        self._check(response, "delete_file")

    async def get_user_info(self) -> dict:
        """Fetch the owner's Google profile (name, email, picture)."""
        response = await self.client.request("GET", self.settings.google_userinfo_url)
        return self._json(response, "get_user_info")


async def build_owner_drive(
    db,
    http_client: httpx.AsyncClient,
    owner_id: str,
    settings: Optional[Settings] = None,
    clock: Clock = utcnow,
) -> DriveService:
    """
    DriveService for an owner's own requests (dashboard endpoints).

    Raises:
        OwnerDisconnected: no usable credential stored for the owner
    """
    settings = settings or get_settings()
    record = await TokenStore(db).get(owner_id)
    if record is None or not record.is_connected:
        raise OwnerDisconnected(owner_id=owner_id)

    refresher = TokenRefresher(db, http_client, settings, clock)
    client = AuthorizedClient(OwnerSession.from_record(record), refresher, http_client, settings, clock)
    return DriveService(client, settings)
