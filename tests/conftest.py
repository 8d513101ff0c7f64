"""Pytest configuration and shared fixtures."""

import os

# Set required environment variables for testing BEFORE importing the app
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key")
os.environ.setdefault("TEMPORAL_ENABLED", "false")
os.environ.setdefault("DATABASE_AUTO_CREATE_TABLES", "false")

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from factcheck.core.database import Base
from factcheck.database import models  # noqa: F401
from factcheck.main import app
from factcheck.services.verification.audit_logger import AuditLogger


@pytest.fixture
def test_client() -> TestClient:
    """Create FastAPI test client.

    Returns:
        TestClient: FastAPI test client instance
    """
    return TestClient(app)


@pytest.fixture(autouse=True)
def clear_dependency_overrides():
    """Ensure FastAPI dependency overrides are reset between tests."""
    app.dependency_overrides = {}
    yield
    app.dependency_overrides = {}


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite engine shared across connections, with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit_logger(session_factory) -> AuditLogger:
    return AuditLogger(session_factory)


@pytest.fixture
def mock_llm() -> AsyncMock:
    """Generation capability fake; set ``generate.return_value`` or ``side_effect`` per test."""
    llm = AsyncMock()
    llm.generate = AsyncMock(return_value="")
    return llm


@pytest.fixture
def make_session(session_factory):
    """Insert a validation session (and optional claims) directly."""
    from factcheck.repositories.claim_repository import ClaimRepository
    from factcheck.repositories.session_repository import SessionRepository

    async def _make(original_text: str = "원문", status: str = "pending", claims=None, **fields):
        async with session_factory() as session:
            created = await SessionRepository(session).create(
                tenant_id=fields.pop("tenant_id", "tenant-1"),
                chatbot_id=fields.pop("chatbot_id", "bot-1"),
                original_text=original_text,
                status=status,
                pipeline_notes=[],
                **fields,
            )
            rows = []
            for index, claim in enumerate(claims or []):
                rows.append({
                    "session_id": created.id,
                    "claim_text": claim["text"],
                    "claim_type": claim.get("type", "text"),
                    "reconstructed_location": claim.get(
                        "location", {"startLine": 1, "endLine": 1, "startChar": 0, "endChar": 0}
                    ),
                    "risk_level": claim.get("risk_level", "low"),
                    "verdict": claim.get("verdict", "pending"),
                    "verification_level": claim.get("verification_level"),
                    "sort_order": index,
                })
            if rows:
                await ClaimRepository(session).create_many(rows)
            return created.id

    return _make
