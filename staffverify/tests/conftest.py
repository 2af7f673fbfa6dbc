"""Shared test fixtures for the staff verification test suite.

Uses an in-memory SQLite database with StaticPool so all sessions share the
same connection (committed data is visible across sessions). Concurrency
tests use ``file_sessions`` instead. Objects go to a per-test
LocalObjectStore under tmp_path.
"""

import io
import uuid
from datetime import datetime, timezone

import pytest
from PIL import Image
from PIL.TiffImagePlugin import IFDRational
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from staffverify.config import settings
from staffverify.database import Base, get_db
from staffverify.main import app
from staffverify.models import *  # noqa: ensure all models are loaded for create_all


# ---------------------------------------------------------------------------
# In-memory SQLite test engine (shared via StaticPool)
# ---------------------------------------------------------------------------

test_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)
TestSession = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@event.listens_for(test_engine.sync_engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# ---------------------------------------------------------------------------
# Auto-use: create/drop tables for every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after. Also clear global state."""
    from staffverify.core.async_tasks import drain_background_tasks
    from staffverify.services import storage_event_processor, storage_service

    storage_service.get_event_dispatcher().clear()
    storage_service.set_storage(None)
    storage_event_processor.set_processor(None)

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await drain_background_tasks(timeout_seconds=5.0)
    storage_service.get_event_dispatcher().clear()
    storage_service.set_storage(None)
    storage_event_processor.set_processor(None)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
async def db():
    """Yield a fresh AsyncSession for direct service-layer tests."""
    async with TestSession() as session:
        yield session


@pytest.fixture
async def file_sessions(tmp_path):
    """Session factory on a file-backed SQLite DB with one connection per session.

    The shared in-memory engine runs every session over a single connection,
    so it cannot show two transactions contending for the same rows.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=10000")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(tmp_path):
    """LocalObjectStore installed as the global store, with no event subscribers."""
    from staffverify.services.storage_service import set_storage
    from staffverify.storage.local import LocalObjectStore

    object_store = LocalObjectStore(
        root_dir=str(tmp_path / "objects"),
        public_base_url=settings.public_base_url,
    )
    set_storage(object_store)
    return object_store


@pytest.fixture
def processor(store):
    """Storage event processor on the test DB; no retry delay."""
    from staffverify.services.storage_event_processor import StorageEventProcessor, set_processor

    proc = StorageEventProcessor(
        store,
        TestSession,
        retry_attempts=0,
        retry_backoff_seconds=0,
    )
    set_processor(proc)
    return proc


@pytest.fixture
async def client(store, processor):
    """httpx AsyncClient wired to the FastAPI app with test DB override."""
    import httpx

    async def _override_get_db():
        async with TestSession() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db

    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def auth_header():
    """Return a callable that builds an Authorization header from a JWT."""
    def _build(token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}
    return _build


@pytest.fixture
def staff_token():
    """Factory fixture: JWT for a staff member. Returns (user_id, token)."""
    from staffverify.core.auth import create_access_token

    def _make(user_id: str = None, store_name: str = "Main St Vitamins"):
        user_id = user_id or f"staff-{_new_id()[:8]}"
        token = create_access_token(
            user_id, email=f"{user_id}@example.com", name="Test Staff", store_name=store_name,
        )
        return user_id, token

    return _make


@pytest.fixture
def admin_token():
    from staffverify.core.auth import create_access_token

    return create_access_token("admin-1", email="admin@example.com", name="Admin", role="admin")


@pytest.fixture
def make_principal():
    from staffverify.core.auth import Principal

    def _make(user_id: str = None, **kwargs):
        return Principal(
            user_id=user_id or f"staff-{_new_id()[:8]}",
            email=kwargs.get("email", "staff@example.com"),
            name=kwargs.get("name", "Test Staff"),
            store_name=kwargs.get("store_name", "Main St Vitamins"),
            is_admin=kwargs.get("is_admin", False),
        )

    return _make


@pytest.fixture
def make_request(db: AsyncSession):
    """Factory fixture: insert a VerificationRequest directly."""
    from staffverify.models.verification import VerificationRequest

    async def _make(user_id: str, submitted_at: datetime = None, **kwargs):
        req = VerificationRequest(
            id=_new_id(),
            user_id=user_id,
            user_email=kwargs.pop("user_email", f"{user_id}@example.com"),
            user_name=kwargs.pop("user_name", "Test Staff"),
            store_name=kwargs.pop("store_name", "Main St Vitamins"),
            verification_code=kwargs.pop("verification_code", "ENG-0101"),
            status=kwargs.pop("status", "pending"),
            submitted_at=submitted_at or datetime.now(timezone.utc),
            **kwargs,
        )
        db.add(req)
        await db.commit()
        return req

    return _make


@pytest.fixture
def make_user_state(db: AsyncSession):
    """Factory fixture: insert a UserVerificationState row."""
    from staffverify.models.user import UserVerificationState

    async def _make(user_id: str, status: str = "not_submitted", **kwargs):
        user = UserVerificationState(
            id=user_id,
            email=kwargs.pop("email", f"{user_id}@example.com"),
            verification_status=status,
            verified=kwargs.pop("verified", status == "approved"),
            **kwargs,
        )
        db.add(user)
        await db.commit()
        return user

    return _make


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

def _new_id() -> str:
    return str(uuid.uuid4())


def _dms(value: float) -> tuple:
    value = abs(value)
    degrees = int(value)
    minutes_full = (value - degrees) * 60
    minutes = int(minutes_full)
    seconds = round((minutes_full - minutes) * 60 * 10000)
    return (IFDRational(degrees, 1), IFDRational(minutes, 1), IFDRational(seconds, 10000))


def make_jpeg(gps: tuple = None, size: tuple = (32, 24), color: tuple = (200, 120, 40),
              description: str = None) -> bytes:
    """JPEG bytes, optionally carrying EXIF GPS ``(lat, lng)`` and other tags."""
    img = Image.new("RGB", size, color)
    exif = Image.Exif()
    exif[0x010F] = "TestCam"  # Make
    if description:
        exif[0x010E] = description  # ImageDescription
    if gps is not None:
        lat, lng = gps
        exif[0x8825] = {
            1: "N" if lat >= 0 else "S",
            2: _dms(lat),
            3: "E" if lng >= 0 else "W",
            4: _dms(lng),
        }
    buf = io.BytesIO()
    img.save(buf, format="JPEG", exif=exif, quality=90)
    return buf.getvalue()


def make_png(size: tuple = (16, 16)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGBA", size, (10, 20, 30, 255)).save(buf, format="PNG")
    return buf.getvalue()
