import pytest
import os
import warnings
from dataclasses import dataclass
from decimal import Decimal
from unittest.mock import AsyncMock

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

# Set environment variables BEFORE importing app modules
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["POSTGRES_DSN"] = "sqlite+aiosqlite:///file:giftregistry_tests?mode=memory&cache=shared&uri=true"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["EMAIL_NOTIFICATIONS_ENABLED"] = "false"
os.environ["PII_ENCRYPTION_KEY"] = ""
os.environ["PII_KEY_FILE"] = ""

warnings.filterwarnings("ignore", category=DeprecationWarning)

from cryptography.fernet import Fernet
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.api.deps import get_notifier
from app.core import pii
from app.core.config import settings
from app.core.pii import PiiCipher
from app.core.rate_limit import limiter
from app.db.session import Base, enable_sqlite_foreign_keys, get_db
from app.main import app
from app.models.models import GiftItem, User, Wishlist


def pytest_configure(config):
    warnings.filterwarnings("ignore", category=DeprecationWarning)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@dataclass
class Registry:
    """Ids of the rows every test starts from."""

    owner_id: int
    friend_id: int
    other_id: int
    wishlist_id: int
    item_id: int
    second_item_id: int


def seed_registry(session: Session) -> Registry:
    owner = User(email="owner@example.com", name="Olivia Owner")
    friend = User(email="friend@example.com", name="Frank Friend")
    other = User(email="other@example.com", name="Oscar Other")
    session.add_all([owner, friend, other])
    session.flush()

    wishlist = Wishlist(owner_id=owner.id, title="Birthday", slug="birthday")
    session.add(wishlist)
    session.flush()

    item = GiftItem(wishlist_id=wishlist.id, owner_id=owner.id, name="Espresso machine", price=Decimal("199.00"))
    second = GiftItem(wishlist_id=wishlist.id, owner_id=owner.id, name="Board game")
    session.add_all([item, second])
    session.commit()
    return Registry(
        owner_id=owner.id,
        friend_id=friend.id,
        other_id=other.id,
        wishlist_id=wishlist.id,
        item_id=item.id,
        second_item_id=second.id,
    )


@pytest.fixture(scope="session", autouse=True)
def disable_rate_limiting():
    """Disable rate limiting for all tests."""
    original = settings.rate_limit_enabled
    settings.rate_limit_enabled = False
    yield
    settings.rate_limit_enabled = original


@pytest.fixture(autouse=True)
def reset_process_state():
    pii.reset_cipher()
    limiter.reset()
    yield
    pii.reset_cipher()
    limiter.reset()


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def cipher():
    return PiiCipher(Fernet.generate_key())


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "registry.db"


@pytest.fixture
def registry(db_path) -> Registry:
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    with Session(sync_engine) as session:
        seeded = seed_registry(session)
    sync_engine.dispose()
    return seeded


@pytest.fixture
async def session_factory(db_path, registry):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 15})
    enable_sqlite_foreign_keys(engine)
    yield async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


@pytest.fixture(autouse=True)
def sync_db_override(db_path, registry, notifier):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 15})
    enable_sqlite_foreign_keys(engine)
    async_session = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with async_session() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield
    app.dependency_overrides.clear()
    engine.sync_engine.dispose()


@pytest.fixture
async def async_client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def test_client():
    """Synchronous test client; startup hooks are not run."""
    from fastapi.testclient import TestClient

    return TestClient(app)
