"""
Shared fixtures: temporary SQLite store and a fake Google (OAuth + Drive)
served through httpx.MockTransport.
"""
import json
import os
import tempfile
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import parse_qs

# Settings are read once at import; configure before importing pullbox.
os.environ["ENVIRONMENT"] = "DEV"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_DIR"] = ""
os.environ["GOOGLE_OAUTH_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_OAUTH_CLIENT_SECRET"] = "test-client-secret"
os.environ["SESSION_JWT_SECRET"] = "test-session-secret"
os.environ["APP_ORIGIN"] = "https://pullbox.test"
os.environ["UPLOAD_GATE_SECRET"] = ""
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.gettempdir(), "pullbox-test-default.db"
)

import httpx
import pytest

from pullbox.database import Base, build_engine, build_session_maker
from pullbox.models.collection import Collection
from pullbox.services.token_store import TokenStore
from pullbox.utils.clock import utcnow

TOKEN_URL = "https://oauth2.googleapis.com/token"
VALID_TOKEN = "valid-token"
FRESH_TOKEN = "fresh-token"


class FakeGoogle:
    """
    In-memory stand-in for the Google token endpoint and Drive v3.

    Tokens in ``valid_tokens`` are accepted; anything else gets a 401.
    Uploads whose file name is in ``failing_names`` get a 500, in
    ``malformed_names`` a 200 with an HTML body, and in ``timeout_names`` a
    read timeout.
    """

    def __init__(self):
        self.valid_tokens = {VALID_TOKEN, FRESH_TOKEN}
        self.refresh_status = 200
        self.refresh_payload = {"access_token": FRESH_TOKEN, "expires_in": 3600}
        self.refresh_exception: Optional[Exception] = None
        self.always_unauthorized = False
        self.failing_names = set()
        self.malformed_names = set()
        self.timeout_names = set()
        self.token_calls = []
        self.drive_calls = []
        self.uploads = []
        self.folders = []
        self.deleted = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url).startswith(TOKEN_URL):
            return self._token(request)

        self.drive_calls.append(request)
        token = request.headers.get("authorization", "").replace("Bearer ", "", 1)
        if self.always_unauthorized or token not in self.valid_tokens:
            return httpx.Response(401, json={"error": {"code": 401, "message": "Invalid Credentials"}})

        path = request.url.path
        if path == "/upload/drive/v3/files" and request.method == "POST":
            return self._upload(request)
        if path == "/drive/v3/files" and request.method == "POST":
            metadata = json.loads(request.content)
            folder_id = f"folder-{len(self.folders) + 1}"
            self.folders.append({"id": folder_id, "name": metadata["name"], "mimeType": metadata["mimeType"]})
            return httpx.Response(200, json={"id": folder_id})
        if path == "/drive/v3/files" and request.method == "GET":
            files = [
                {"id": u["id"], "name": u["name"], "mimeType": u["mimeType"], "size": str(u["size"]),
                 "createdTime": "2026-01-01T00:00:00Z",
                 "appProperties": {"pullboxUploadKey": u["upload_key"]}}
                for u in reversed(self.uploads)
            ]
            return httpx.Response(200, json={"files": files})
        if path.startswith("/drive/v3/files/") and request.method == "GET":
            file_id = path.rsplit("/", 1)[-1]
            for u in self.uploads:
                if u["id"] == file_id:
                    return httpx.Response(200, content=u["content"], headers={"content-type": u["mimeType"]})
            return httpx.Response(404, json={"error": {"code": 404}})
        if path.startswith("/drive/v3/files/") and request.method == "DELETE":
            self.deleted.append(path.rsplit("/", 1)[-1])
            return httpx.Response(204)
        if path == "/oauth2/v3/userinfo":
            return httpx.Response(
                200,
                json={"name": "Drive Owner", "email": "owner@example.com", "picture": "https://img.test/p.png"},
            )
        return httpx.Response(404, json={"error": {"code": 404}})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.token_calls.append(form)
        if self.refresh_exception is not None:
            raise self.refresh_exception
        if self.refresh_status != 200:
            return httpx.Response(self.refresh_status, json={"error": "invalid_grant"})
        return httpx.Response(200, json=self.refresh_payload)

    def _upload(self, request: httpx.Request) -> httpx.Response:
        # multipart/related: JSON metadata part, then the media part
        _, _, rest = request.content.partition(b"\r\n\r\n")
        meta_raw, _, media_part = rest.partition(b"\r\n--")
        metadata = json.loads(meta_raw)
        _, _, media = media_part.partition(b"\r\n\r\n")
        content = media.rsplit(b"\r\n--", 1)[0]

        if metadata["name"] in self.timeout_names:
            raise httpx.ReadTimeout("upload timed out", request=request)
        if metadata["name"] in self.malformed_names:
            return httpx.Response(200, text="<html>gateway</html>", headers={"content-type": "text/html"})
        if metadata["name"] in self.failing_names:
            return httpx.Response(500, json={"error": {"code": 500}})

        upload = {
            "id": f"file-{len(self.uploads) + 1}",
            "name": metadata["name"],
            "mimeType": metadata["mimeType"],
            "parents": metadata["parents"],
            "upload_key": metadata["appProperties"]["pullboxUploadKey"],
            "content": content,
            "size": len(content),
        }
        self.uploads.append(upload)
        return httpx.Response(
            200,
            json={
                "id": upload["id"],
                "name": upload["name"],
                "mimeType": upload["mimeType"],
                "appProperties": {"pullboxUploadKey": upload["upload_key"]},
            },
        )


@pytest.fixture
def fake_google():
    return FakeGoogle()


@pytest.fixture
async def http_client(fake_google):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_google.handler)) as client:
        yield client


@pytest.fixture
async def engine(tmp_path):
    import pullbox.models  # noqa: F401

    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pullbox.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_maker(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def seed_credential(
    session_factory,
    owner_id: str = "owner-1",
    access_token: str = VALID_TOKEN,
    refresh_token: Optional[str] = "refresh-1",
    expires_at: Optional[datetime] = None,
):
    async with session_factory() as session:
        record = await TokenStore(session).upsert(
            owner_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        await session.commit()
        return record


async def seed_collection(
    session_factory,
    owner_id: str = "owner-1",
    link_code: str = "ABCD12",
    created_at: Optional[datetime] = None,
    retention_days: int = 90,
    expires_at: Optional[datetime] = None,
    item_count: int = 0,
    folder_id: str = "folder-seed",
) -> Collection:
    created_at = created_at or utcnow()
    async with session_factory() as session:
        collection = Collection(
            owner_id=owner_id,
            name="Wedding",
            drive_folder_id=folder_id,
            link_code=link_code,
            created_at=created_at,
            expires_at=expires_at or created_at + timedelta(days=retention_days),
            item_count=item_count,
        )
        session.add(collection)
        await session.commit()
        await session.refresh(collection)
        return collection


async def load_collection(session_factory, collection_id: str) -> Optional[Collection]:
    async with session_factory() as session:
        return await session.get(Collection, collection_id)
