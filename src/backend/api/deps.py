"""
Shared dependencies for API endpoints.

Includes:
- Document store, repositories and services (overridable in tests)
- Admin API key check for privacy diagnostics
- Client IP extraction
"""

import hmac
from typing import Annotated, Optional

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from core.config import Settings, get_settings
from core.encryption import EnvelopeCipher, get_envelope_cipher
from db.document_store import DocumentStore, get_document_store
from repositories.enrollment_repository import EnrollmentRepository
from repositories.evaluation_repository import EvaluationRepository
from services.dp_budget import DPBudgetTracker, get_dp_budget_tracker
from services.evaluation_stats import EvaluationStatsService
from services.evaluation_submission import EvaluationSubmissionService

logger = structlog.get_logger(__name__)


# =============================================================================
# Core Components
# =============================================================================


def get_app_settings() -> Settings:
    return get_settings()


def get_store() -> DocumentStore:
    return get_document_store()


def get_cipher() -> EnvelopeCipher:
    return get_envelope_cipher()


def get_tracker() -> DPBudgetTracker:
    return get_dp_budget_tracker()


def get_evaluation_repository(store: Annotated[DocumentStore, Depends(get_store)]) -> EvaluationRepository:
    return EvaluationRepository(store)


def get_enrollment_repository(store: Annotated[DocumentStore, Depends(get_store)]) -> EnrollmentRepository:
    return EnrollmentRepository(store)


# =============================================================================
# Services
# =============================================================================


def get_submission_service(
    evaluations: Annotated[EvaluationRepository, Depends(get_evaluation_repository)],
    enrollments: Annotated[EnrollmentRepository, Depends(get_enrollment_repository)],
    cipher: Annotated[EnvelopeCipher, Depends(get_cipher)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> EvaluationSubmissionService:
    return EvaluationSubmissionService(evaluations, enrollments, cipher, settings)


def get_stats_service(
    evaluations: Annotated[EvaluationRepository, Depends(get_evaluation_repository)],
    tracker: Annotated[DPBudgetTracker, Depends(get_tracker)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> EvaluationStatsService:
    return EvaluationStatsService(evaluations, tracker, settings)


# =============================================================================
# Request Helpers
# =============================================================================


def get_client_ip(request: Request) -> Optional[str]:
    """Extract the client IP from the request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return None


def require_admin_key(
    settings: Annotated[Settings, Depends(get_app_settings)],
    x_admin_key: Annotated[Optional[str], Header()] = None,
) -> None:
    """Dependency to require the admin API key."""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin diagnostics are not configured",
        )
    if not x_admin_key or not hmac.compare_digest(x_admin_key, settings.ADMIN_API_KEY):
        logger.warning("admin_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )
