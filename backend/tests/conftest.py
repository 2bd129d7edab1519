import os
import shutil
import warnings
from dataclasses import dataclass
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import NullPool

# Set environment variables BEFORE importing app modules
os.environ["TESTING"] = "1"
os.environ["ENVIRONMENT"] = "test"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["INVITE_ONLY_SIGNUP"] = "false"
os.environ["REDIS_DSN"] = ""
os.environ["POSTGRES_DSN"] = "sqlite+aiosqlite:///file:giftify_tests?mode=memory&cache=shared&uri=true"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-32-chars-minimum!!"
os.environ["MEDIA_ROOT"] = "media-test"

warnings.filterwarnings("ignore", category=DeprecationWarning)

from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.rate_limit import limiter
from app.db.session import Base, get_db
from app.main import app


PASSWORD = "giftify-pass"


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(os.path.join(os.path.dirname(__file__), "..", "media-test"), ignore_errors=True)


@pytest.fixture(scope="session", autouse=True)
def disable_rate_limiting():
    original = settings.rate_limit_enabled
    settings.rate_limit_enabled = False
    yield
    settings.rate_limit_enabled = original


@pytest.fixture(autouse=True)
def sync_db_override(tmp_path):
    """Give every test a fresh sqlite file behind ``get_db``."""
    db_path = tmp_path / "giftify-test.db"
    from app.models import models as models_module
    _ = models_module
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    # TestClient runs each request on its own loop; never reuse a connection
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    async_session = async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)

    async def override_get_db():
        async with async_session() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    limiter.reset()
    yield async_session
    app.dependency_overrides.clear()
    engine.sync_engine.dispose()


@pytest.fixture
async def db_session(sync_db_override):
    async with sync_db_override() as session:
        yield session


@pytest.fixture
async def async_client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def anyio_backend():
    return "asyncio"


@dataclass
class Member:
    client: TestClient
    id: str
    email: str
    display_name: str

    def invite(self) -> str:
        res = self.client.post("/invites")
        assert res.status_code == 201, res.text
        return res.json()["code"]


def signup_and_login(display_name: str, invite_code: str | None = None) -> Member:
    client = TestClient(app)
    email = f"{display_name.lower()}-{uuid4().hex[:8]}@giftify.app"
    payload = {"email": email, "password": PASSWORD, "display_name": display_name}
    if invite_code:
        payload["invite_code"] = invite_code
    res = client.post("/auth/signup", json=payload)
    assert res.status_code == 201, res.text

    res = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert res.status_code == 200, res.text
    return Member(client=client, id=res.json()["id"], email=email, display_name=display_name)


@pytest.fixture
def make_member():
    """``make_member("Bob", friend_of=alice)`` signs Bob up with Alice's invite."""

    def _make(display_name: str, friend_of: Member | None = None) -> Member:
        code = friend_of.invite() if friend_of is not None else None
        return signup_and_login(display_name, code)

    return _make


@pytest.fixture
def alice(make_member) -> Member:
    return make_member("Alice")


@pytest.fixture
def bob(make_member, alice) -> Member:
    return make_member("Bob", friend_of=alice)


@pytest.fixture
def carol(make_member, alice) -> Member:
    return make_member("Carol", friend_of=alice)


def create_wishlist(member: Member, name: str = "Birthday", privacy: str = "friends") -> dict:
    res = member.client.post("/wishlists", json={"name": name, "privacy": privacy})
    assert res.status_code == 201, res.text
    return res.json()["wishlist"]


def add_item(member: Member, wishlist_id: str, title: str = "Headphones", price: str | None = "100") -> dict:
    res = member.client.post(
        f"/wishlists/{wishlist_id}/items",
        json={"url": "https://shop.example.com/p/1", "title": title, "price": price, "currency": "USD"},
    )
    assert res.status_code == 201, res.text
    return res.json()["item"]


def notifications_of(member: Member, status: str = "inbox") -> list[dict]:
    res = member.client.get("/notifications", params={"status": status})
    assert res.status_code == 200, res.text
    return res.json()
