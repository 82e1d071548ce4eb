import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from recipeforge.settings import settings

# Before the app is imported: no purge sweep, no paid calls
settings.purge_enabled = False
settings.ai_mode = "mock"

from recipeforge.main import app
from recipeforge.db import Base, get_db, bind_session_factory
from recipeforge.models import Personalization, UnitSystem, User, UserSettings
from recipeforge.routers import recipes as recipes_router
from recipeforge.infra.rate_limit import reset_platform_key_limits
from recipeforge.services.recipe_store import RecipeStore

# --- Test Database Setup ---

SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool  # One shared connection so every session sees the same in-memory DB
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Stores used by background runs open their own sessions
bind_session_factory(TestingSessionLocal)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test, drop after."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setattr(settings, "ai_mode", "mock")
    recipes_router.limiter.enabled = False
    reset_platform_key_limits()
    yield
    recipes_router.limiter.enabled = True


@pytest.fixture
def client():
    """Test client with DB override."""
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def db_session():
    """Direct database session for setup."""
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def store():
    return RecipeStore(session_factory=TestingSessionLocal)


def make_user(db_session, username="local", unit_system=UnitSystem.METRIC, requirements="") -> User:
    user = User(
        username=username,
        settings=UserSettings(),
        personalization=Personalization(unit_system=unit_system, requirements=requirements),
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def user(db_session):
    return make_user(db_session)


import fakeredis
import fakeredis.aioredis
from recipeforge.infra import redis_client


@pytest.fixture(autouse=True)
def mock_redis():
    server = fakeredis.FakeServer()
    async_redis = fakeredis.aioredis.FakeRedis(server=server, decode_responses=True)

    # Force the client into the infra module
    redis_client._redis_async = async_redis

    yield async_redis

    redis_client._redis_async = None
