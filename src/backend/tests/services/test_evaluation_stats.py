"""
Tests for noised evaluation statistics.
"""

import math
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from core.exceptions import BudgetExhaustedError, StoreError
from models.documents import RATING_CATEGORIES, AnonymousEvaluationDocument, EvaluationRatings
from services.anonymization import generate_anonymous_token, noised_count, noised_mean
from services.dp_budget import DPQueryRequest
from services.evaluation_stats import EvaluationStatsService


async def _seed(evaluation_repo, ratings, teacher_id: str, count: int) -> None:
    for _ in range(count):
        await evaluation_repo.create(
            AnonymousEvaluationDocument(
                anonymous_token=generate_anonymous_token("seed"),
                course_id="course-1",
                teacher_id=teacher_id,
                ratings=EvaluationRatings.model_validate(ratings),
                submitted_at=datetime(2024, 5, 17, 10, tzinfo=timezone.utc),
                mixing_pool="pool",
            )
        )


@pytest.fixture
def stats_service(evaluation_repo, tracker):
    return EvaluationStatsService(evaluation_repo, tracker)


@pytest.mark.unit
class TestTeacherSummary:
    async def test_small_group_suppressed_without_spending_budget(
        self, stats_service, evaluation_repo, tracker, valid_ratings
    ):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 4)

        summary = await stats_service.teacher_summary("teacher-1")

        assert summary["suppressed"] is True
        assert "categories" not in summary
        assert tracker.get_budget_status().queries_used == 0

    async def test_summary_released_at_threshold(self, stats_service, evaluation_repo, tracker, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 5)

        summary = await stats_service.teacher_summary("teacher-1")

        assert summary["suppressed"] is False
        assert summary["cached"] is False
        assert set(summary["categories"]) == set(RATING_CATEGORIES)
        assert all(1.0 <= mean <= 5.0 for mean in summary["categories"].values())
        assert 1.0 <= summary["overall_mean"] <= 5.0
        assert summary["evaluation_count"] >= 1
        assert summary["epsilon"] == 0.1
        assert tracker.get_budget_status().queries_used == 1

    async def test_repeat_query_is_cached(self, stats_service, evaluation_repo, tracker, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 5)

        first = await stats_service.teacher_summary("teacher-1")
        second = await stats_service.teacher_summary("teacher-1")

        assert second["cached"] is True
        assert second["overall_mean"] == first["overall_mean"]
        assert tracker.get_budget_status().queries_used == 1

    async def test_custom_epsilon_is_charged(self, stats_service, evaluation_repo, tracker, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 5)

        summary = await stats_service.teacher_summary("teacher-1", epsilon=0.3)

        assert summary["epsilon"] == 0.3
        assert summary["budget"]["remaining_budget"] == pytest.approx(0.7)

    async def test_exhausted_budget_raises(self, stats_service, evaluation_repo, tracker, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 5)
        await tracker.execute_query(DPQueryRequest(query_type="all", epsilon=1.0), lambda eps: None)

        with pytest.raises(BudgetExhaustedError):
            await stats_service.teacher_summary("teacher-1")

    async def test_per_statistic_epsilons_sum_to_charge(self, stats_service, evaluation_repo, tracker, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 5)

        with patch("services.evaluation_stats.noised_mean", wraps=noised_mean) as mean_spy, patch(
            "services.evaluation_stats.noised_count", wraps=noised_count
        ) as count_spy:
            summary = await stats_service.teacher_summary("teacher-1", epsilon=0.5)

        spent = [call.args[1] for call in mean_spy.call_args_list + count_spy.call_args_list]
        assert len(spent) == len(RATING_CATEGORIES) + 2
        assert math.fsum(spent) == pytest.approx(0.5)
        assert summary["epsilon_per_statistic"] == pytest.approx(0.1)
        assert summary["budget"]["remaining_budget"] == pytest.approx(0.5)

    async def test_store_failure_is_not_reported_as_budget_exhaustion(
        self, stats_service, evaluation_repo, tracker, valid_ratings
    ):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 5)
        evaluation_repo.list_by_teacher = AsyncMock(side_effect=RuntimeError("store offline"))

        with pytest.raises(StoreError):
            await stats_service.teacher_summary("teacher-1")

        assert tracker.get_budget_status().remaining_budget == 1.0


@pytest.mark.unit
class TestDashboardSummary:
    async def test_suppressed_below_safety_minimum(self, stats_service, evaluation_repo, tracker, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 9)

        summary = await stats_service.dashboard_summary()

        assert summary["suppressed"] is True
        assert "9/10" in summary["message"]
        assert tracker.get_budget_status().queries_used == 0

    async def test_released_with_enough_evaluations(self, stats_service, evaluation_repo, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 6)
        await _seed(evaluation_repo, valid_ratings, "teacher-2", 4)

        summary = await stats_service.dashboard_summary()

        assert summary["suppressed"] is False
        assert summary["total_evaluations"] >= 1
        assert 1.0 <= summary["overall_mean"] <= 5.0
        assert summary["teachers_reported"] >= 0
        assert summary["budget"]["queries_used"] == 1

    async def test_per_statistic_epsilons_sum_to_charge(self, stats_service, evaluation_repo, valid_ratings):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 10)

        with patch("services.evaluation_stats.noised_mean", wraps=noised_mean) as mean_spy, patch(
            "services.evaluation_stats.noised_count", wraps=noised_count
        ) as count_spy:
            summary = await stats_service.dashboard_summary()

        spent = [call.args[1] for call in mean_spy.call_args_list + count_spy.call_args_list]
        assert len(spent) == 3
        assert math.fsum(spent) == pytest.approx(summary["epsilon"])

    async def test_store_failure_is_not_reported_as_budget_exhaustion(
        self, stats_service, evaluation_repo, tracker, valid_ratings
    ):
        await _seed(evaluation_repo, valid_ratings, "teacher-1", 10)
        evaluation_repo.list_all = AsyncMock(side_effect=RuntimeError("store offline"))

        with pytest.raises(StoreError):
            await stats_service.dashboard_summary()

        assert tracker.get_budget_status().remaining_budget == 1.0
