"""
Tests for the admin privacy diagnostics endpoints.
"""

import pytest
from httpx import AsyncClient

from api.deps import get_app_settings
from core.config import get_settings
from services.dp_budget import DPQueryRequest

ADMIN_URL = "/api/v1/admin/privacy"


@pytest.mark.integration
class TestAdminAuthentication:
    async def test_missing_key_rejected(self, client: AsyncClient) -> None:
        response = await client.get(f"{ADMIN_URL}/budget")
        assert response.status_code == 401

    async def test_wrong_key_rejected(self, client: AsyncClient) -> None:
        response = await client.get(f"{ADMIN_URL}/budget", headers={"X-Admin-Key": "nope"})
        assert response.status_code == 401

    async def test_unconfigured_key_disables_routes(self, app, client: AsyncClient, admin_headers) -> None:
        app.dependency_overrides[get_app_settings] = lambda: get_settings().model_copy(
            update={"ADMIN_API_KEY": None}
        )

        response = await client.get(f"{ADMIN_URL}/budget", headers=admin_headers)
        assert response.status_code == 503


@pytest.mark.integration
class TestBudgetEndpoints:
    async def test_budget_status(self, client: AsyncClient, admin_headers) -> None:
        response = await client.get(f"{ADMIN_URL}/budget", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["remaining_budget"] == 1.0
        assert data["queries_used"] == 0
        assert data["budget_exhausted"] is False

    async def test_budget_reset(self, client: AsyncClient, tracker, admin_headers) -> None:
        await tracker.execute_query(DPQueryRequest(query_type="all", epsilon=1.0), lambda eps: 1)

        response = await client.post(f"{ADMIN_URL}/budget/reset", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["budget"]["remaining_budget"] == 1.0
        assert tracker.get_budget_status().queries_used == 0


@pytest.mark.integration
class TestAuditEndpoint:
    async def test_audit_report(self, client: AsyncClient, admin_headers) -> None:
        response = await client.post(f"{ADMIN_URL}/audit", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["conclusion"]["status"] == "pass"
        assert len(data["results"]["checks_run"]) == 14

    async def test_audit_sees_submitted_evaluations(
        self, client: AsyncClient, enrollment, valid_ratings, admin_headers
    ) -> None:
        await client.post(
            "/api/v1/evaluations",
            json={"enrollment_id": "enr-1", "ratings": valid_ratings, "comments": "Helpful feedback"},
        )

        response = await client.post(f"{ADMIN_URL}/audit", headers=admin_headers)

        data = response.json()
        assert data["results"]["summary"]["total_evaluations"] == 1
        assert data["results"]["issues"] == []


@pytest.mark.integration
class TestStatsEndpoints:
    async def test_teacher_stats_suppressed_below_k(self, client: AsyncClient, admin_headers) -> None:
        response = await client.get(f"{ADMIN_URL}/stats/teachers/teacher-1", headers=admin_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["suppressed"] is True
        assert data["overall_mean"] is None

    async def test_dashboard_suppressed_below_minimum(self, client: AsyncClient, admin_headers) -> None:
        response = await client.get(f"{ADMIN_URL}/stats/dashboard", headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["suppressed"] is True

    async def test_exhausted_budget_returns_429(
        self, client: AsyncClient, store, tracker, valid_ratings, admin_headers
    ) -> None:
        from datetime import datetime, timezone

        from models.documents import AnonymousEvaluationDocument, EvaluationRatings
        from services.anonymization import generate_anonymous_token

        for _ in range(5):
            doc = AnonymousEvaluationDocument(
                anonymous_token=generate_anonymous_token("seed"),
                course_id="course-1",
                teacher_id="teacher-1",
                ratings=EvaluationRatings.model_validate(valid_ratings),
                submitted_at=datetime(2024, 5, 17, 10, tzinfo=timezone.utc),
                mixing_pool="pool",
            )
            await store.insert_one("evaluations", doc.model_dump(mode="json"))
        await tracker.execute_query(DPQueryRequest(query_type="all", epsilon=1.0), lambda eps: 1)

        response = await client.get(f"{ADMIN_URL}/stats/teachers/teacher-1", headers=admin_headers)

        assert response.status_code == 429
        assert response.json()["code"] == "BUDGET_EXHAUSTED"

    async def test_store_failure_returns_500_not_429(
        self, client: AsyncClient, store, tracker, valid_ratings, admin_headers
    ) -> None:
        from datetime import datetime, timezone
        from unittest.mock import AsyncMock

        from models.documents import AnonymousEvaluationDocument, EvaluationRatings
        from services.anonymization import generate_anonymous_token

        for _ in range(5):
            doc = AnonymousEvaluationDocument(
                anonymous_token=generate_anonymous_token("seed"),
                course_id="course-1",
                teacher_id="teacher-1",
                ratings=EvaluationRatings.model_validate(valid_ratings),
                submitted_at=datetime(2024, 5, 17, 10, tzinfo=timezone.utc),
                mixing_pool="pool",
            )
            await store.insert_one("evaluations", doc.model_dump(mode="json"))
        store.find = AsyncMock(side_effect=RuntimeError("store offline"))

        response = await client.get(f"{ADMIN_URL}/stats/teachers/teacher-1", headers=admin_headers)

        assert response.status_code == 500
        assert "code" not in response.json()
        assert tracker.get_budget_status().remaining_budget == 1.0
