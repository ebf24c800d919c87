"""Schemas module initialization."""

from schemas.evaluation import EvaluationSubmitRequest, EvaluationSubmitResponse
from schemas.privacy import (
    BudgetResetResponse,
    BudgetStatusResponse,
    DashboardStatsResponse,
    TeacherStatsResponse,
)

__all__ = [
    "EvaluationSubmitRequest",
    "EvaluationSubmitResponse",
    "BudgetStatusResponse",
    "BudgetResetResponse",
    "TeacherStatsResponse",
    "DashboardStatsResponse",
]
