from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from vidtube.api.deps import get_media_store
from vidtube.core.passwords import PasswordHasher
from vidtube.core.settings import Settings, get_settings
from vidtube.core.tokens import TokenConfig, TokenService
from vidtube.db.base import Base
from vidtube.db.models import user as _user_model  # noqa: F401
from vidtube.db.session import get_db, make_session_maker
from vidtube.main import create_app
from vidtube.repositories.users import UserRepository
from vidtube.services.accounts import AccountService
from vidtube.services.media_store import S3MediaStore


class StubS3:
    """Records put/delete calls; flip ``fail_put`` / ``fail_delete`` to simulate outages."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_put = False
        self.fail_put_keys: set[str] = set()
        self.fail_delete = False

    def put_object(self, *, Bucket, Key, Body, ContentType):
        from botocore.exceptions import ClientError

        if self.fail_put or any(Key.startswith(prefix) for prefix in self.fail_put_keys):
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")
        assert Bucket
        assert ContentType
        self.objects[Key] = Body.read()

    def delete_object(self, *, Bucket, Key):
        from botocore.exceptions import ClientError

        if self.fail_delete:
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "DeleteObject")
        self.objects.pop(Key, None)
        self.deleted.append(Key)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        jwt_access_secret="test-access-secret",
        jwt_refresh_secret="test-refresh-secret",
        jwt_access_ttl_seconds=60,
        jwt_refresh_ttl_seconds=3600,
        bcrypt_rounds=4,
        cookie_secure=False,
        s3_bucket="vidtube-test",
        media_public_base_url="https://cdn.example.com",
        upload_tmp_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture
def s3() -> StubS3:
    return StubS3()


@pytest.fixture
def media_store(settings: Settings, s3: StubS3) -> S3MediaStore:
    return S3MediaStore(settings, client=s3)


@pytest.fixture
def token_service(settings: Settings) -> TokenService:
    return TokenService(TokenConfig.from_settings(settings))


@pytest.fixture
def hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(rounds=settings.bcrypt_rounds)


@pytest_asyncio.fixture
async def session_maker():
    # One shared in-memory database for every session opened by the test.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield make_session_maker(engine)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture
def service(db, hasher, token_service, media_store) -> AccountService:
    return AccountService(
        users=UserRepository(db),
        hasher=hasher,
        tokens=token_service,
        media=media_store,
    )


@pytest.fixture
def local_image(tmp_path):
    """Factory for temp image files as the upload route would leave them."""
    counter = {"n": 0}

    def _make(name: str = "avatar.png") -> Path:
        counter["n"] += 1
        path = tmp_path / f"{counter['n']}_{name}"
        path.write_bytes(b"\x89PNG\r\n\x1a\nfake-image")
        return path

    return _make


@pytest.fixture
def app(settings, session_maker, media_store):
    application = create_app()

    async def _get_db():
        async with session_maker() as session:
            yield session

    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[get_media_store] = lambda: media_store
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
