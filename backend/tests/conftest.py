"""
Test configuration and fixtures for trustgate backend tests.
"""
import os
from collections import deque

# Set test environment BEFORE any imports
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-key-for-testing-only-0123456789")
# No backend or screening URLs, so no real connections are made
for var in ("POSTGRES_URI", "MONGODB_URI", "REDIS_URI", "WATCHLIST_SCREENING_URL"):
    os.environ.pop(var, None)

import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from trustgate.config import JWT_ALGORITHM, JWT_SECRET
from trustgate.models.base import Base
from trustgate.models import audit_log  # noqa: F401  registers the table
from trustgate.schemas.common import ValidationStatus, VerificationStatus
from trustgate.schemas.verification import (
    AccountRecord,
    BusinessRecord,
    DocumentRecord,
    ExtractedFields,
    VerificationRecord,
)
from trustgate.store.memory import InMemoryRecordStore

NOW = datetime(2025, 6, 2, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock():
    """Fixed clock injected into every engine under test."""
    return lambda: NOW


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture(scope="session")
def test_engine():
    """In-memory SQLite engine shared across threads (TestClient runs the app in a worker thread)."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def test_db_session(test_engine):
    SessionLocal = sessionmaker(bind=test_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        for table in reversed(Base.metadata.sorted_tables):
            session.execute(table.delete())
        session.commit()
        session.close()


class AsyncSessionWrapper:
    """Lets routes ``await db.execute(...)`` on a sync session; commit stays sync."""

    def __init__(self, sync_session):
        self.sync_session = sync_session

    async def execute(self, *args, **kwargs):
        return self.sync_session.execute(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self.sync_session, name)


@pytest.fixture
def mock_redis():
    """Mock Redis client."""
    mock_client = AsyncMock()
    mock_client.get.return_value = None
    mock_client.setex.return_value = True
    mock_client.ping.return_value = True
    return mock_client


@pytest.fixture
def mock_mongo():
    """Mock MongoDB database with one AsyncMock collection per record collection."""
    mock_db = MagicMock()
    collections = [
        "verifications", "businesses", "users", "sessions", "device_trust",
        "trusted_devices", "mfa_attempts", "mfa_overrides", "emergency_access",
        "recovery_tokens", "security_events", "compliance_violations", "audit_events",
    ]
    for name in collections:
        collection = MagicMock()
        collection.find_one = AsyncMock(return_value=None)
        collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id="test_id"))
        collection.insert_many = AsyncMock(return_value=MagicMock(inserted_ids=[]))
        collection.update_one = AsyncMock(return_value=MagicMock(modified_count=1, matched_count=1))
        collection.replace_one = AsyncMock(return_value=MagicMock(modified_count=1))
        collection.count_documents = AsyncMock(return_value=0)
        collection.create_index = AsyncMock(return_value="index")
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[])
        collection.find.return_value = cursor
        setattr(mock_db, name, collection)
    return mock_db


@pytest.fixture(autouse=True)
def mock_alert_dispatch(monkeypatch):
    """Keep Celery from reaching for a broker whenever an alert is raised."""
    from trustgate.services import alert_service, tasks

    delay = MagicMock()
    monkeypatch.setattr(tasks.dispatch_alert, "delay", delay)
    monkeypatch.setattr(alert_service, "alerts", deque(maxlen=alert_service.MAX_ALERTS))
    return delay


# ----------------------
# Record factories
# ----------------------

@pytest.fixture
def make_document():
    def factory(doc_id: str = "doc-1", **overrides) -> DocumentRecord:
        data: Dict[str, Any] = {
            "id": doc_id,
            "file_hash": f"hash-{doc_id}",
            "validation_status": ValidationStatus.valid,
            "quality_score": 90,
            "ocr_confidence": 95,
            "original_file_name": f"{doc_id}.jpg",
            "uploaded_at": NOW - timedelta(days=1),
            "extracted_data": ExtractedFields(first_name="Ada", last_name="Lovelace", date_of_birth="1990-01-01"),
        }
        data.update(overrides)
        return DocumentRecord(**data)
    return factory


@pytest.fixture
def make_verification(make_document):
    def factory(
        verification_id: str = "ver-1",
        user_id: str = "user-1",
        documents: Optional[List[DocumentRecord]] = None,
        account_age_days: Optional[float] = 400,
        email_confirmed: bool = True,
        business: Optional[BusinessRecord] = None,
        **overrides,
    ) -> VerificationRecord:
        account = None
        if account_age_days is not None:
            created = NOW - timedelta(days=account_age_days)
            account = AccountRecord(
                user_id=user_id,
                email=f"{user_id}@example.org",
                created_at=created,
                email_confirmed_at=created if email_confirmed else None,
            )
        data: Dict[str, Any] = {
            "id": verification_id,
            "user_id": user_id,
            "submitted_at": NOW - timedelta(hours=1),
            "initiated_at": NOW - timedelta(hours=2),
            "status": VerificationStatus.pending,
            "geo_country": "US",
            "documents": documents if documents is not None else [make_document()],
            "business": business,
            "account": account,
        }
        data.update(overrides)
        return VerificationRecord(**data)
    return factory


@pytest.fixture
def established_business():
    return BusinessRecord(
        id="biz-1",
        name="Harbor Freight Logistics",
        created_at=NOW - timedelta(days=800),
        verification_status="verified",
        description="Regional freight forwarding",
        phone="+1-555-0100",
        email="ops@harbor.example",
        address_line_1="1 Pier Road",
        city="Portland",
        state="OR",
        country="US",
    )


# ----------------------
# API
# ----------------------

@pytest.fixture
def make_token():
    def factory(sub: str = "user-1", role: Optional[str] = "user", roles: Optional[List[str]] = None) -> str:
        claims: Dict[str, Any] = {"sub": sub, "exp": datetime.now(timezone.utc) + timedelta(hours=1)}
        if roles is not None:
            claims["roles"] = roles
        elif role is not None:
            claims["role"] = role
        return jwt.encode(claims, JWT_SECRET, algorithm=JWT_ALGORITHM)
    return factory


@pytest.fixture
def auth_headers(make_token):
    def factory(**kwargs) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(**kwargs)}"}
    return factory


@pytest.fixture
def app_client(store, test_db_session, monkeypatch):
    """TestClient over the real app, wired to an in-memory store and the SQLite audit log."""
    from trustgate.database import get_db
    from trustgate.dependencies import install_services
    from trustgate.main import app
    from trustgate.services.rate_limit import limiter

    install_services(app, store)

    async def override_get_db():
        yield AsyncSessionWrapper(test_db_session)

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(limiter, "enabled", False)
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
    app.state.store = None
