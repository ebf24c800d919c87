"""Document models module."""

from models.documents import (
    RATING_CATEGORIES,
    AnonymousEvaluationDocument,
    EncryptedValue,
    EnrollmentDocument,
    EvaluationRatings,
)

__all__ = [
    "RATING_CATEGORIES",
    "AnonymousEvaluationDocument",
    "EncryptedValue",
    "EnrollmentDocument",
    "EvaluationRatings",
]
