"""Shared fixtures for changeflow backend tests."""

from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.database import get_db
from app.core.security import create_access_token, hash_password
from app.main import app
from app.models import Base, User
from app.services.notification_service import MailTransport, NotificationDispatcher, get_dispatcher
from app.storage.blob_store import LocalBlobStore, get_blob_store

TEST_DB_URL = "sqlite+aiosqlite:///./test.db"

engine_test = create_async_engine(TEST_DB_URL, echo=False)
TestSession = async_sessionmaker(engine_test, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(engine_test.sync_engine, "connect")
def _enable_foreign_keys(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


@pytest_asyncio.fixture(autouse=True)
async def setup_db() -> AsyncGenerator[None, None]:
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine_test.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = _override_get_db


class RecordingTransport(MailTransport):
    """Captures outgoing mail; set ``fail`` to simulate a transport outage."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send(self, sender: str, to: list[str], subject: str, body: str, html: str | None = None) -> None:
        if self.fail:
            raise ConnectionError("mail relay unavailable")
        self.sent.append({"from": sender, "to": to, "subject": subject, "body": body, "html": html})


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def dispatcher(transport: RecordingTransport) -> NotificationDispatcher:
    return NotificationDispatcher(transport, sender="change-requests@test.local")


@pytest.fixture
def blob_store(tmp_path) -> LocalBlobStore:
    return LocalBlobStore(tmp_path / "blobs")


@pytest_asyncio.fixture
async def client(dispatcher: NotificationDispatcher, blob_store: LocalBlobStore) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_blob_store] = lambda: blob_store
    transport = ASGITransport(app=app)  # type: ignore[arg-type]
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.pop(get_dispatcher, None)
    app.dependency_overrides.pop(get_blob_store, None)


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


async def create_user(email: str, password: str = "Secret123!") -> None:
    async with TestSession() as session:
        session.add(User(email=email, hashed_password=hash_password(password)))
        await session.commit()


def make_headers(email: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(subject=email)}"}


@pytest_asyncio.fixture
async def alice_headers() -> dict[str, str]:
    await create_user("alice@example.com")
    return make_headers("alice@example.com")


@pytest_asyncio.fixture
async def ops_headers() -> dict[str, str]:
    await create_user("ops@example.com")
    return make_headers("ops@example.com")


def request_fields(**overrides: Any) -> dict[str, Any]:
    fields = {
        "title": "Upgrade core switch firmware",
        "description": "Move the core switch stack to the current LTS firmware",
        "change_type": "Network",
        "impact_level": "High",
        "expected_downtime": "15 minutes",
        "rollback_plan": "Boot the previous firmware image",
        "approver": "ops@example.com",
    }
    fields.update(overrides)
    return fields
