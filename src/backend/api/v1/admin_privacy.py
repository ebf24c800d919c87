"""
Admin privacy diagnostics endpoints.

All routes require the X-Admin-Key header. Statistics are always noised
and budgeted through the DP tracker.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends

from api.deps import (
    get_app_settings,
    get_cipher,
    get_enrollment_repository,
    get_evaluation_repository,
    get_stats_service,
    get_tracker,
    require_admin_key,
)
from core.config import Settings
from core.encryption import EnvelopeCipher
from repositories.enrollment_repository import EnrollmentRepository
from repositories.evaluation_repository import EvaluationRepository
from schemas.privacy import (
    BudgetResetResponse,
    BudgetStatusResponse,
    DashboardStatsResponse,
    TeacherStatsResponse,
)
from services.dp_budget import DPBudgetTracker
from services.evaluation_stats import EvaluationStatsService
from services.privacy_audit import AuditReport, run_privacy_audit

logger = structlog.get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_key)])


@router.post("/audit", response_model=AuditReport)
async def run_audit(
    evaluations: Annotated[EvaluationRepository, Depends(get_evaluation_repository)],
    enrollments: Annotated[EnrollmentRepository, Depends(get_enrollment_repository)],
    cipher: Annotated[EnvelopeCipher, Depends(get_cipher)],
    tracker: Annotated[DPBudgetTracker, Depends(get_tracker)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> AuditReport:
    """Run the full privacy audit and return the report."""
    return await run_privacy_audit(evaluations, enrollments, cipher, tracker, settings)


@router.get("/budget", response_model=BudgetStatusResponse)
async def get_budget(
    tracker: Annotated[DPBudgetTracker, Depends(get_tracker)],
) -> BudgetStatusResponse:
    """Current differential privacy budget window."""
    return BudgetStatusResponse(**tracker.get_budget_status().model_dump())


@router.post("/budget/reset", response_model=BudgetResetResponse)
async def reset_budget(
    tracker: Annotated[DPBudgetTracker, Depends(get_tracker)],
) -> BudgetResetResponse:
    """
    Emergency budget reset.

    Discards cached answers, so repeated queries draw fresh noise again.
    """
    logger.warning("admin_budget_reset_requested")
    status = await tracker.reset_budget()
    return BudgetResetResponse(
        message="Privacy budget reset. Cached query results were discarded.",
        budget=BudgetStatusResponse(**status.model_dump()),
    )


@router.get("/stats/teachers/{teacher_id}", response_model=TeacherStatsResponse)
async def get_teacher_stats(
    teacher_id: str,
    stats: Annotated[EvaluationStatsService, Depends(get_stats_service)],
) -> TeacherStatsResponse:
    """Noised evaluation summary for one teacher (suppressed below k)."""
    return TeacherStatsResponse(**await stats.teacher_summary(teacher_id))


@router.get("/stats/dashboard", response_model=DashboardStatsResponse)
async def get_dashboard_stats(
    stats: Annotated[EvaluationStatsService, Depends(get_stats_service)],
) -> DashboardStatsResponse:
    """Noised platform-wide evaluation summary."""
    return DashboardStatsResponse(**await stats.dashboard_summary())
