"""
Pytest configuration for testing
"""

import os
import uuid
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Set up environment variables for testing before any imports
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["FIREBASE_PROJECT_ID"] = "test-project"
os.environ["FIREBASE_CREDENTIALS_PATH"] = "/tmp/test-creds.json"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["REDIS_PASSWORD"] = ""
os.environ["PAYMENT_CHECKOUT_URL"] = "https://pay.example.test/checkout"
os.environ["PAYMENT_STATUS_URL"] = "https://pay.example.test/status"


# Mock Firebase Admin before it's used
@pytest.fixture(autouse=True)
def mock_firebase_admin(monkeypatch):
    """Mock Firebase Admin SDK to avoid initialization issues in tests"""
    mock_credentials = MagicMock()
    monkeypatch.setattr("firebase_admin.credentials.Certificate", mock_credentials.Certificate)

    mock_init = MagicMock()
    monkeypatch.setattr("firebase_admin.initialize_app", mock_init)

    mock_auth = MagicMock()
    monkeypatch.setattr("firebase_admin.auth", mock_auth)

    # Analytics writes go to a mock Firestore
    mock_firestore = MagicMock()
    monkeypatch.setattr("firebase_admin.firestore.client", mock_firestore)

    yield mock_auth


@pytest.fixture(autouse=True)
def mock_redis_lock(monkeypatch):
    """Download admission locks always succeed without a Redis server"""
    cache = MagicMock()
    cache.acquire_lock.return_value = True
    monkeypatch.setattr("app.services.download_service.get_cache", lambda: cache)
    yield cache


@pytest.fixture(scope="function")
def db_session():
    """Fresh in-memory database per test"""
    # Import after env vars are set
    from app.core.database import Base, SessionLocal, engine
    from app import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.rollback()
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="session")
def pg_engine():
    """PostgreSQL engine for tests that need real row locks and constraints"""
    from app.core.database import Base
    from app import models  # noqa: F401

    database_url = os.environ.get("INTEGRATION_DATABASE_URL")
    if not database_url:
        yield None
        return

    engine = create_engine(database_url, pool_size=10, max_overflow=10)
    try:
        Base.metadata.create_all(bind=engine)
    except Exception:
        engine.dispose()
        yield None
        return

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def pg_sessionmaker(pg_engine):
    """Session factory on PostgreSQL; every table is emptied after the test"""
    if pg_engine is None:
        pytest.skip("Database not available")

    from app.core.database import Base

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=pg_engine)
    yield TestingSessionLocal

    with pg_engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture
def plans(db_session):
    """Seed the plan catalogue"""
    from app.services.subscription_service import SubscriptionService

    SubscriptionService().seed_plans_if_empty(db_session)
    return db_session


@pytest.fixture
def make_user(db_session):
    from app.models.user import User

    def _make_user(user_id=None, email=None):
        user_id = user_id or f"user_{uuid.uuid4().hex[:8]}"
        user = User(id=user_id, email=email or f"{user_id}@example.com")
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_subscription(db_session):
    """Insert a subscription row directly, bypassing the state machine"""
    from app.models.plan import PlanTier
    from app.models.subscription import Subscription, SubscriptionStatus

    def _make_subscription(user_id, plan_tier=PlanTier.PREMIUM, status=SubscriptionStatus.ACTIVE,
                           transaction_id=None, start_date=None, end_date=None):
        start_date = start_date or datetime.utcnow()
        subscription = Subscription(
            id=str(uuid.uuid4()),
            user_id=user_id,
            plan_tier=plan_tier,
            status=status,
            external_transaction_id=transaction_id or f"txn_{uuid.uuid4().hex[:8]}",
            start_date=start_date,
            end_date=end_date or start_date + timedelta(days=30),
        )
        db_session.add(subscription)
        db_session.commit()
        return subscription

    return _make_subscription


@pytest.fixture
def storage(tmp_path):
    from app.core.storage import LocalStorage

    media_root = tmp_path / "videos"
    media_root.mkdir()
    return LocalStorage(media_root, tmp_path / "downloads")


@pytest.fixture
def make_media(db_session, storage):
    """Create a media row backed by a file of `size` deterministic bytes"""
    from app.models.media import Media

    def _make_media(size=1000, title="Test Movie", media_id=None):
        media_id = media_id or f"media_{uuid.uuid4().hex[:8]}"
        filename = f"{media_id}.mp4"
        (storage.media_root / filename).write_bytes(bytes(i % 256 for i in range(size)))
        media = Media(id=media_id, title=title, file_path=filename, content_type="video/mp4")
        db_session.add(media)
        db_session.commit()
        return media

    return _make_media


def auth_context(uid, is_admin=False):
    from app.core.middleware import AuthContext
    return AuthContext(uid=uid, email=f"{uid}@example.com", name="Test User", is_admin=is_admin)


@pytest.fixture
def client(db_session):
    """Test client sharing the test database session"""
    from fastapi.testclient import TestClient
    from app.main import app
    from app.core.database import get_db

    app.dependency_overrides[get_db] = lambda: db_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    """Authenticate subsequent requests as the given user"""
    from app.main import app
    from app.core.middleware import get_current_user

    def _login(uid, is_admin=False):
        context = auth_context(uid, is_admin=is_admin)
        app.dependency_overrides[get_current_user] = lambda: context
        return context

    return _login


@pytest.fixture
def make_auth():
    return auth_context
