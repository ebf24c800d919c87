"""
Admin privacy diagnostics schemas.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class BudgetStatusResponse(BaseModel):
    remaining_budget: float
    queries_used: int
    window_start: datetime
    window_end: datetime
    budget_exhausted: bool
    max_queries: int
    total_budget: float


class BudgetResetResponse(BaseModel):
    message: str
    budget: BudgetStatusResponse


class TeacherStatsResponse(BaseModel):
    teacher_id: str
    suppressed: bool
    message: Optional[str] = None
    cached: bool = False
    evaluation_count: Optional[int] = None
    categories: Optional[dict[str, float]] = None
    overall_mean: Optional[float] = None
    epsilon: Optional[float] = None
    epsilon_per_statistic: Optional[float] = None
    budget: Optional[dict[str, Any]] = None


class DashboardStatsResponse(BaseModel):
    suppressed: bool
    message: Optional[str] = None
    cached: bool = False
    total_evaluations: Optional[int] = None
    overall_mean: Optional[float] = None
    teachers_reported: Optional[int] = None
    epsilon: Optional[float] = None
    epsilon_per_statistic: Optional[float] = None
    budget: Optional[dict[str, Any]] = None
