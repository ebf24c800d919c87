"""
Pytest fixtures for EvalShield backend tests.
"""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

TEST_MASTER_KEY = "0f1e2d3c4b5a69788796a5b4c3d2e1f00112233445566778899aabbccddeeff0"
TEST_ADMIN_KEY = "test-admin-key"

# Set test environment variables before importing app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("ENCRYPTION_MASTER_KEY", TEST_MASTER_KEY)
os.environ.setdefault("ADMIN_API_KEY", TEST_ADMIN_KEY)
os.environ.setdefault("RECEIPT_SECRET", "test-receipt-secret")


class FakeClock:
    """Settable clock for time-window tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def master_key() -> str:
    return TEST_MASTER_KEY


@pytest.fixture
def cipher(master_key: str) -> Any:
    """Envelope cipher with the test master key."""
    from core.encryption import EnvelopeCipher

    return EnvelopeCipher(master_key)


@pytest.fixture
def unconfigured_cipher() -> Any:
    from core.encryption import EnvelopeCipher

    return EnvelopeCipher(None)


@pytest.fixture
def store() -> Any:
    """Fresh in-memory document store."""
    from db.document_store import InMemoryDocumentStore

    return InMemoryDocumentStore()


@pytest.fixture
def evaluation_repo(store: Any) -> Any:
    from repositories.evaluation_repository import EvaluationRepository

    return EvaluationRepository(store)


@pytest.fixture
def enrollment_repo(store: Any) -> Any:
    from repositories.enrollment_repository import EnrollmentRepository

    return EnrollmentRepository(store)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 17, 10, 5, tzinfo=timezone.utc))


@pytest.fixture
def tracker(clock: FakeClock) -> Any:
    """DP budget tracker with default config and a fake clock."""
    from services.dp_budget import DPBudgetConfig, DPBudgetTracker

    return DPBudgetTracker(DPBudgetConfig(), clock=clock)


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep so submissions do not wait."""
    return AsyncMock(return_value=None)


@pytest.fixture
def valid_ratings() -> dict[str, dict[str, int]]:
    """A complete set of ratings (all 4)."""
    from models.documents import RATING_CATEGORIES

    return {category: {criterion: 4 for criterion in criteria} for category, criteria in RATING_CATEGORIES.items()}


@pytest.fixture
async def enrollment(enrollment_repo: Any) -> Any:
    """An enrollment that has not been evaluated yet."""
    from models.documents import EnrollmentDocument

    return await enrollment_repo.create(
        EnrollmentDocument(
            id="enr-1",
            student_id="2021-00123",
            course_id="course-1",
            teacher_id="teacher-1",
            program_id="program-1",
            school_year="2024-2025",
        )
    )


@pytest.fixture
def submission_service(evaluation_repo: Any, enrollment_repo: Any, cipher: Any, no_sleep: AsyncMock) -> Any:
    from services.evaluation_submission import EvaluationSubmissionService

    return EvaluationSubmissionService(evaluation_repo, enrollment_repo, cipher, sleep=no_sleep)


@pytest.fixture
async def app(store: Any, cipher: Any, tracker: Any, submission_service: Any) -> AsyncGenerator[Any, None]:
    """FastAPI application wired to the test store, cipher and tracker."""
    from api.deps import get_cipher, get_store, get_submission_service, get_tracker
    from main import app as fastapi_app

    fastapi_app.dependency_overrides[get_store] = lambda: store
    fastapi_app.dependency_overrides[get_cipher] = lambda: cipher
    fastapi_app.dependency_overrides[get_tracker] = lambda: tracker
    fastapi_app.dependency_overrides[get_submission_service] = lambda: submission_service
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client(app: Any) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app, raise_app_exceptions=False), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": TEST_ADMIN_KEY}
