"""
Public upload gateway.

Anonymous uploaders present a link code and image files; the gateway checks
the code and its expiry, then uploads into the owner's Drive folder using the
owner's stored credential. Uploaders never see or supply any owner credential,
and the only collection field they can change is ``item_count``.

Pipeline:
    Validate -> ResolveCode -> CheckExpiry -> ResolveOwnerToken
    -> Upload (per file, bounded concurrency) -> UpdateCounter -> Publish
"""
import asyncio
import re
from dataclasses import dataclass
from typing import List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pullbox.config import Settings, get_settings
from pullbox.errors import (
    NoRefreshToken,
    OwnerDisconnected,
    PullBoxError,
    RefreshFailed,
    UpstreamError,
    ValidationError,
)
from pullbox.models.collection import Collection
from pullbox.schemas.upload import FileUploadResult, UploadBatchResponse, UploadStatus
from pullbox.services.collection import CollectionService
from pullbox.services.collection_events import CollectionEventBus
from pullbox.services.drive_client import AuthorizedClient, DriveService, OwnerSession
from pullbox.services.link_allocator import extract_link_code
from pullbox.services.token_refresher import TokenRefresher
from pullbox.services.token_store import TokenStore
from pullbox.utils.clock import Clock, utcnow
from pullbox.utils.logger import log_error, log_info
from pullbox.utils.prometheus_metrics import (
    counter_update_failures_total,
    public_upload_file_size_bytes,
    public_upload_files_total,
    public_upload_requests_total,
)
from pullbox.utils.security import generate_upload_key

UPLOAD_KEY_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,64}")


@dataclass
class IncomingFile:
    """One file as received from the uploader (already read into memory)."""
    filename: str
    content_type: str
    content: bytes
    upload_key: Optional[str] = None


@dataclass
class UploadAttempt:
    """Per-file state within one request. Not persisted."""
    filename: str
    content_type: str
    content: bytes
    upload_key: str
    status: UploadStatus = UploadStatus.PENDING
    file_id: Optional[str] = None
    error: Optional[str] = None

    def to_result(self) -> FileUploadResult:
        return FileUploadResult(
            filename=self.filename,
            status=self.status,
            upload_key=self.upload_key,
            file_id=self.file_id,
            error=self.error,
        )


class PublicUploadGateway:
    """Expiry-gated, owner-delegated uploads for one request."""

    def __init__(
        self,
        db: AsyncSession,
        http_client: httpx.AsyncClient,
        event_bus: Optional[CollectionEventBus] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        refresher: Optional[TokenRefresher] = None,
        collection_service: Optional[CollectionService] = None,
    ):
        self.db = db
        self.http_client = http_client
        self.settings = settings or get_settings()
        self.clock = clock
        self.refresher = refresher or TokenRefresher(db, http_client, self.settings, clock)
        self.collections = collection_service or CollectionService(
            db, event_bus, self.settings, clock
        )

    async def upload(self, raw_code: Optional[str], files: List[IncomingFile]) -> UploadBatchResponse:
        """
        Run the full pipeline for one batch.

        Raises:
            ValidationError: bad code, no files, non-image, oversized file or bad upload key
            NotFound: unknown code
            Expired: collection past its retention window
            OwnerDisconnected: no usable owner credential (403) or refresh failed (502)
            UpstreamError: every file failed at the provider
        """
        try:
            code = extract_link_code(raw_code)
            self._validate_files(files)
            collection = await self.collections.resolve_public(code)
            session = await self._resolve_owner_session(collection, len(files))
        except PullBoxError:
            public_upload_requests_total.labels(result="rejected").inc()
            raise

        # 예외 후 롤백되면 ORM 속성 접근이 불가하므로 미리 복사
        collection_id = collection.id
        folder_id = collection.drive_folder_id

        drive = DriveService(
            AuthorizedClient(session, self.refresher, self.http_client, self.settings, self.clock),
            self.settings,
        )
        attempts = [
            UploadAttempt(
                filename=f.filename,
                content_type=f.content_type,
                content=f.content,
                upload_key=f.upload_key or generate_upload_key(),
            )
            for f in files
        ]

        semaphore = asyncio.Semaphore(self.settings.upload_concurrency)
        await asyncio.gather(
            *(self._upload_one(drive, collection_id, folder_id, attempt, semaphore) for attempt in attempts)
        )

        succeeded = sum(1 for a in attempts if a.status == UploadStatus.COMPLETED)
        failed = len(attempts) - succeeded

        if succeeded == 0:
            public_upload_requests_total.labels(result="failed").inc()
            log_error(
                "Upload batch failed",
                event="upload",
                collection_id=collection_id,
                failed=failed,
            )
            raise UpstreamError(collection_id=collection_id, failed=failed)

        item_count = await self._update_counter(collection, succeeded)

        public_upload_requests_total.labels(result="success" if failed == 0 else "partial").inc()
        log_info(
            "Upload batch done",
            event="upload",
            collection_id=collection_id,
            uploaded=succeeded,
            failed=failed,
        )
        return UploadBatchResponse(
            collection_id=collection_id,
            item_count=item_count,
            uploaded=succeeded,
            failed=failed,
            files=[a.to_result() for a in attempts],
        )

    def _validate_files(self, files: List[IncomingFile]) -> None:
        if not files:
            raise ValidationError("No files provided")
        if len(files) > self.settings.max_files_per_upload:
            raise ValidationError(
                f"Too many files (max {self.settings.max_files_per_upload})"
            )
        for f in files:
            if not (f.content_type or "").lower().startswith("image/"):
                raise ValidationError("Only image files are allowed", file_name=f.filename)
            if len(f.content) > self.settings.max_upload_file_size:
                raise ValidationError("File too large", file_name=f.filename)
            if not f.content:
                raise ValidationError("Empty file", file_name=f.filename)
            # Drive appProperties는 key+value 124바이트 제한
            if f.upload_key is not None and not UPLOAD_KEY_PATTERN.fullmatch(f.upload_key):
                raise ValidationError("Invalid upload key", file_name=f.filename)

    async def _resolve_owner_session(self, collection: Collection, file_count: int) -> OwnerSession:
        """
        Load the collection owner's credential and make sure it is usable.

        Raises:
            OwnerDisconnected: no credential or refresh token (403), refresh failed (502)
        """
        owner_id = collection.owner_id
        record = await TokenStore(self.db).get(owner_id)
        if record is None or not record.is_connected:
            raise OwnerDisconnected(owner_id=owner_id, collection_id=collection.id)

        # 업로더 요청을 owner 자격으로 대리 수행 (감사 로그)
        log_info(
            "Uploading on behalf of collection owner",
            event="owner_delegation",
            owner_id=owner_id,
            collection_id=collection.id,
            file_count=file_count,
        )

        session = OwnerSession.from_record(record)
        if record.needs_refresh(self.clock(), self.settings.token_refresh_margin_seconds):
            try:
                refreshed = await self.refresher.refresh(
                    owner_id, record.provider, stale_token=record.access_token
                )
            except NoRefreshToken as e:
                # 갱신 수단이 없으면 미연결과 동일 (403)
                raise OwnerDisconnected(owner_id=owner_id, collection_id=collection.id) from e
            except RefreshFailed as e:
                raise OwnerDisconnected(
                    reason="refresh_failed",
                    owner_id=owner_id,
                    collection_id=collection.id,
                ) from e
            session.access_token = refreshed.access_token
            session.expires_at = refreshed.expires_at
        return session

    async def _upload_one(
        self,
        drive: DriveService,
        collection_id: str,
        folder_id: str,
        attempt: UploadAttempt,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            attempt.status = UploadStatus.UPLOADING
            try:
                uploaded = await drive.upload_file(
                    folder_id,
                    attempt.content,
                    attempt.filename,
                    attempt.content_type,
                    attempt.upload_key,
                )
            except PullBoxError as e:
                attempt.status = UploadStatus.ERROR
                attempt.error = e.message
                public_upload_files_total.labels(result="error").inc()
                log_error(
                    "File upload failed",
                    event="upload",
                    collection_id=collection_id,
                    file_name=attempt.filename,
                    upload_key=attempt.upload_key,
                    error_code=e.error_code,
                )
                return
            except Exception as e:
                # 예상치 못한 오류도 해당 파일만 실패 처리
                attempt.status = UploadStatus.ERROR
                attempt.error = UpstreamError.public_message
                public_upload_files_total.labels(result="error").inc()
                log_error(
                    "File upload failed unexpectedly",
                    exc_info=True,
                    event="upload",
                    collection_id=collection_id,
                    file_name=attempt.filename,
                    upload_key=attempt.upload_key,
                    error_type=type(e).__name__,
                )
                return

            attempt.status = UploadStatus.COMPLETED
            attempt.file_id = uploaded.id
            public_upload_files_total.labels(result="completed").inc()
            public_upload_file_size_bytes.observe(len(attempt.content))

    async def _update_counter(self, collection: Collection, amount: int) -> Optional[int]:
        """
        Best-effort atomic increment. Returns the new count, or None if the
        write failed (logged; the uploads themselves stand).
        """
        collection_id = collection.id
        try:
            await self.collections.increment_item_count(collection_id, amount)
            await self.db.commit()
            collection = await self.collections.reload(collection)
        except SQLAlchemyError:
            await self.db.rollback()
            counter_update_failures_total.inc()
            log_error(
                "Item counter update failed",
                exc_info=True,
                event="upload",
                collection_id=collection_id,
                amount=amount,
            )
            return None

        self.collections.publish_updated(collection)
        return collection.item_count
