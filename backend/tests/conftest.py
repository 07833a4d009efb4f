"""Shared test fixtures for backend tests."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from dmchat.api.deps import platform_provider
from dmchat.core.config import settings
from dmchat.core.session import SessionContext
from dmchat.models.chat import Identity
from dmchat.models.tables import ChannelMember, ChannelRecord, Profile
from dmchat.services.platform.local import LocalPlatform
from dmchat.services.sync.ingest import LiveIngest
from dmchat.services.sync.send import SendPipeline
from dmchat.services.sync.store import ConversationStore
from dmchat.services.sync.summary import ChannelSummaryUpdater
from tests.fakes import FakePlatform

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

ALICE = "acct-alice"
BOB = "acct-bob"
CHANNEL = "chan-1"


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import dmchat.models.tables  # noqa: F401 - register tables
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


# --- Sync core against the in-memory fake ---

@pytest.fixture
def fake():
    platform = FakePlatform()
    platform.add_account(ALICE, "Alice Liddell", token="alice-token")
    platform.add_account(BOB, "Bob Builder", token="bob-token")
    platform.add_channel(CHANNEL, [ALICE, BOB])
    return platform


@pytest.fixture
def session():
    ctx = SessionContext()
    ctx.populate(Identity(account_id=ALICE, email="alice@example.com", display_name="Alice Liddell"))
    yield ctx
    ctx.clear()


@pytest.fixture
def notifications():
    return []


@pytest.fixture
def notify(notifications):
    async def _notify(detail: str) -> None:
        notifications.append(detail)
    return _notify


@pytest.fixture
def store():
    conversation = ConversationStore()
    conversation.select_channel(CHANNEL)
    return conversation


@pytest.fixture
def summaries(fake, store):
    return ChannelSummaryUpdater(fake, store)


@pytest.fixture
def pipeline(fake, store, session, summaries, notify):
    return SendPipeline(fake, store, session, summaries, notify)


@pytest.fixture
def ingest(fake, store, session, summaries):
    return LiveIngest(fake, store, session, summaries)


# --- Local platform and HTTP app ---

@pytest.fixture
def local_platform(tmp_path):
    return LocalPlatform(engine=test_engine, storage_root=tmp_path / "data" / "uploads")


@pytest.fixture
def seed():
    """Insert profiles (and optionally a shared channel) directly into the test DB."""
    def _seed(*people: tuple[str, str], channel_members: list[str] | None = None) -> str | None:
        with Session(test_engine) as db:
            for account_id, name in people:
                db.add(Profile(id=account_id, full_name=name, access_token=f"{account_id}-token"))
            db.commit()
            if channel_members is None:
                return None
            channel = ChannelRecord()
            db.add(channel)
            db.commit()
            db.refresh(channel)
            for account_id in channel_members:
                db.add(ChannelMember(channel_id=channel.id, user_id=account_id))
            db.commit()
            return channel.id
    return _seed


@pytest.fixture
def db_session():
    with Session(test_engine) as db:
        yield db


@pytest.fixture
def client(local_platform, tmp_path):
    """FastAPI TestClient wired to the local platform on the test DB."""
    with (
        patch("dmchat.main.init_db"),
        patch.object(settings, "data_dir", tmp_path / "data"),
    ):
        from dmchat.main import app

        app.dependency_overrides[platform_provider] = lambda: local_platform

        with TestClient(app) as c:
            yield c

        app.dependency_overrides.clear()
