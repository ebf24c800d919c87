"""
Evaluation statistics for the admin dashboard.

Every aggregate is released through the DP budget tracker, gated by
k-anonymity (per teacher) or statistical safety (platform-wide), and
noised with the Laplace mechanism. Nothing here reads the store without
going through DPBudgetTracker.execute_query, except the group-size count
used for the release gate itself.
"""

import math
from typing import Any, Optional

import structlog

from core.config import Settings
from core.config import settings as default_settings
from models.documents import RATING_CATEGORIES, AnonymousEvaluationDocument
from repositories.evaluation_repository import EvaluationRepository
from services.anonymization import (
    check_k_anonymity,
    check_statistical_safety,
    noised_count,
    noised_mean,
)
from services.dp_budget import DPBudgetTracker, DPQueryRequest

logger = structlog.get_logger(__name__)

# Values released per query; the query epsilon is split evenly across them
TEACHER_SUMMARY_RELEASES = len(RATING_CATEGORIES) + 2  # category means, overall mean, count
DASHBOARD_RELEASES = 3  # count, overall mean, visible teachers


def _category_mean(evaluation: AnonymousEvaluationDocument, category: str) -> float:
    ratings = getattr(evaluation.ratings, category).model_dump()
    return math.fsum(ratings.values()) / len(ratings)


def _overall_mean(evaluation: AnonymousEvaluationDocument) -> float:
    return math.fsum(_category_mean(evaluation, category) for category in RATING_CATEGORIES) / len(
        RATING_CATEGORIES
    )


class EvaluationStatsService:
    """Noised, gated statistics over anonymous evaluations."""

    def __init__(
        self,
        evaluations: EvaluationRepository,
        tracker: DPBudgetTracker,
        settings: Optional[Settings] = None,
    ):
        self.evaluations = evaluations
        self.tracker = tracker
        self.settings = settings or default_settings

    async def teacher_summary(self, teacher_id: str, epsilon: Optional[float] = None) -> dict[str, Any]:
        """
        Noised evaluation count and per-category means for one teacher.

        Teachers with fewer than K_ANONYMITY_THRESHOLD evaluations are
        suppressed without spending budget.

        Raises:
            BudgetExhaustedError: the tracker refused the query
            StoreError: the evaluations could not be read
        """
        group_size = await self.evaluations.count_by_teacher(teacher_id)
        k = self.settings.K_ANONYMITY_THRESHOLD
        if not check_k_anonymity(group_size, k):
            return {
                "teacher_id": teacher_id,
                "suppressed": True,
                "message": f"Fewer than {k} evaluations. Results hidden to protect anonymity.",
            }

        async def compute(query_epsilon: float) -> dict[str, Any]:
            evaluations = await self.evaluations.list_by_teacher(teacher_id)
            share = query_epsilon / TEACHER_SUMMARY_RELEASES
            categories = {
                category: noised_mean([_category_mean(evaluation, category) for evaluation in evaluations], share)
                for category in RATING_CATEGORIES
            }
            return {
                "evaluation_count": noised_count(len(evaluations), share, minimum=1),
                "categories": categories,
                "overall_mean": noised_mean([_overall_mean(evaluation) for evaluation in evaluations], share),
                "epsilon": query_epsilon,
                "epsilon_per_statistic": share,
            }

        outcome = await self.tracker.execute_query(
            DPQueryRequest(query_type="teacher_summary", parameters={"teacher_id": teacher_id}, epsilon=epsilon),
            compute,
        )
        outcome.raise_for_refusal()

        return {
            "teacher_id": teacher_id,
            "suppressed": False,
            "cached": outcome.cached,
            **outcome.result,
            "budget": outcome.budget_status.model_dump(mode="json"),
        }

    async def dashboard_summary(self) -> dict[str, Any]:
        """
        Noised platform-wide evaluation count and overall mean.

        Raises:
            BudgetExhaustedError: the tracker refused the query
            StoreError: the evaluations could not be read
        """
        total = await self.evaluations.count()
        safety = check_statistical_safety(total, self.settings.STATISTICAL_SAFETY_MIN)
        if not safety.is_safe:
            return {"suppressed": True, "message": safety.message}

        async def compute(query_epsilon: float) -> dict[str, Any]:
            evaluations = await self.evaluations.list_all()
            share = query_epsilon / DASHBOARD_RELEASES
            teacher_groups = await self.evaluations.group_sizes_by_teacher()
            teachers_visible = sum(
                1 for size in teacher_groups.values() if check_k_anonymity(size, self.settings.K_ANONYMITY_THRESHOLD)
            )
            return {
                "total_evaluations": noised_count(len(evaluations), share, minimum=1),
                "overall_mean": noised_mean([_overall_mean(evaluation) for evaluation in evaluations], share),
                "teachers_reported": noised_count(teachers_visible, share),
                "epsilon": query_epsilon,
                "epsilon_per_statistic": share,
            }

        outcome = await self.tracker.execute_query(
            DPQueryRequest(query_type="dashboard_summary", parameters={}),
            compute,
        )
        outcome.raise_for_refusal()

        return {
            "suppressed": False,
            "cached": outcome.cached,
            **outcome.result,
            "budget": outcome.budget_status.model_dump(mode="json"),
        }
