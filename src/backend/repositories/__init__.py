"""Repository modules for document store access."""

from repositories.enrollment_repository import EnrollmentRepository
from repositories.evaluation_repository import EvaluationRepository

__all__ = [
    "EnrollmentRepository",
    "EvaluationRepository",
]
