"""
Evaluation submission service.

Turns a student's ratings and comments into an anonymous evaluation record:

1. validate ratings and reject identity-bearing payloads
2. wait a random delay (response time must not reveal what happened)
3. check the enrollment exists, belongs to the student and is unused
4. sanitize and encrypt comments (strict: never stores plaintext)
5. build the record with anonymous token, truncated IP, rounded timestamp
6. claim the enrollment, then insert the record
7. hand the student a receipt

The enrollment is claimed before the record is inserted, so at most one
record exists per enrollment even with concurrent submissions. If the
insert fails the claim is released.
"""

import asyncio
import secrets
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from core.config import Settings
from core.config import settings as default_settings
from core.encryption import EnvelopeCipher
from core.exceptions import EvalShieldError
from models.documents import (
    RATING_CATEGORIES,
    RATING_MAX,
    RATING_MIN,
    AnonymousEvaluationDocument,
    EvaluationRatings,
)
from repositories.enrollment_repository import EnrollmentRepository
from repositories.evaluation_repository import EvaluationRepository
from services.anonymization import (
    anonymize_ip_address,
    calculate_submission_delay,
    generate_anonymous_token,
    generate_receipt_hash,
    get_mixing_pool_id,
    get_safe_submission_timestamp,
    sanitize_comment_for_anonymity,
    validate_anonymous_submission,
)

logger = structlog.get_logger(__name__)

SUCCESS_MESSAGE = "Evaluation submitted successfully!"
ALREADY_EVALUATED_MESSAGE = "You have already evaluated this subject"
CONFIGURATION_ERROR_MESSAGE = "Server configuration error"


@lru_cache()
def _process_receipt_secret() -> str:
    logger.warning("receipt_secret_not_configured")
    return secrets.token_hex(32)


class SubmissionOutcome(BaseModel):
    success: bool
    message: str
    receipt: Optional[str] = None
    status_code: int = 200
    errors: list[str] = Field(default_factory=list)


def validate_ratings(ratings: Any) -> list[str]:
    """
    Names of criteria that are missing or not integers in 1-5.

    Booleans are rejected even though bool is an int subclass.
    """
    if not isinstance(ratings, Mapping):
        return [f"{category}.*" for category in RATING_CATEGORIES]

    invalid: list[str] = []
    for category, criteria in RATING_CATEGORIES.items():
        values = ratings.get(category)
        if not isinstance(values, Mapping):
            invalid.extend(f"{category}.{criterion}" for criterion in criteria)
            continue
        for criterion in criteria:
            value = values.get(criterion)
            if isinstance(value, bool) or not isinstance(value, int) or not RATING_MIN <= value <= RATING_MAX:
                invalid.append(f"{category}.{criterion}")
    return invalid


def _failure(message: str, status_code: int, errors: Optional[list[str]] = None) -> SubmissionOutcome:
    return SubmissionOutcome(success=False, message=message, status_code=status_code, errors=errors or [])


class EvaluationSubmissionService:
    """Orchestrates anonymous evaluation submission."""

    def __init__(
        self,
        evaluations: EvaluationRepository,
        enrollments: EnrollmentRepository,
        cipher: EnvelopeCipher,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.evaluations = evaluations
        self.enrollments = enrollments
        self.cipher = cipher
        self.settings = settings or default_settings
        self._sleep = sleep
        self._clock = clock
        self._receipt_secret = self.settings.RECEIPT_SECRET or _process_receipt_secret()

    async def submit_evaluation(
        self,
        enrollment_id: str,
        ratings: Mapping[str, Any],
        comments: Optional[str] = None,
        raw_ip: Any = None,
        student_id: Optional[str] = None,
        payload_extras: Optional[Mapping[str, Any]] = None,
    ) -> SubmissionOutcome:
        """
        Submit one evaluation.

        Args:
            enrollment_id: Enrollment being evaluated
            ratings: {category: {criterion: 1-5}} for all three categories
            comments: Optional free text; stored only encrypted
            raw_ip: Client address as received; only a truncated form is kept
            student_id: Authenticated student, checked against the enrollment
            payload_extras: Any other fields the client sent

        Returns:
            SubmissionOutcome with the receipt on success
        """
        invalid = validate_ratings(ratings)
        if invalid:
            return _failure("All ratings must be whole numbers from 1 to 5", 400, invalid)

        payload = dict(payload_extras or {})
        if comments is not None:
            payload["comments"] = comments
        validation = validate_anonymous_submission(payload)
        if not validation.is_valid:
            return _failure("; ".join(validation.errors), 400, validation.errors)

        delay_ms = calculate_submission_delay(
            self.settings.SUBMISSION_DELAY_MIN_SECONDS,
            self.settings.SUBMISSION_DELAY_MAX_SECONDS,
        )
        await self._sleep(delay_ms / 1000)

        enrollment = await self.enrollments.get_by_id(enrollment_id)
        if enrollment is None:
            return _failure("Enrollment not found", 404)
        if student_id is not None and enrollment.student_id != student_id:
            return _failure("You are not enrolled in this subject", 403)
        if enrollment.has_evaluated:
            return _failure(ALREADY_EVALUATED_MESSAGE, 400)

        encrypted_comments = None
        if comments and comments.strip():
            if not self.cipher.is_configured():
                logger.error("comment_encryption_unavailable", reason="master_key_not_configured")
                return _failure(CONFIGURATION_ERROR_MESSAGE, 500)

            sanitized = sanitize_comment_for_anonymity(comments, max_length=self.settings.COMMENT_MAX_LENGTH)
            if not sanitized.valid:
                return _failure(sanitized.error or "Invalid comments", 400)

            if sanitized.sanitized:
                try:
                    encrypted_comments = self.cipher.encrypt_value(sanitized.sanitized)
                except EvalShieldError as e:
                    logger.error("comment_encryption_failed", error_code=e.code)
                    return _failure(CONFIGURATION_ERROR_MESSAGE, 500)

        now = self._clock()
        submitted_at = get_safe_submission_timestamp(now)
        anonymous_token = generate_anonymous_token(enrollment.id)

        record = AnonymousEvaluationDocument(
            anonymous_token=anonymous_token,
            course_id=enrollment.course_id,
            teacher_id=enrollment.teacher_id,
            program_id=enrollment.program_id,
            school_year=enrollment.school_year,
            ratings=EvaluationRatings.model_validate(ratings),
            comments=encrypted_comments,
            ip_address=anonymize_ip_address(raw_ip),
            submitted_at=submitted_at,
            mixing_pool=get_mixing_pool_id(now, self.settings.MIXING_POOL_MINUTES),
        )
        receipt = generate_receipt_hash(anonymous_token, submitted_at, self._receipt_secret)

        claimed = await self.enrollments.mark_submitted(enrollment.id, receipt)
        if claimed is None:
            return _failure(ALREADY_EVALUATED_MESSAGE, 400)

        try:
            await self.evaluations.create(record)
        except asyncio.CancelledError:
            logger.warning("evaluation_insert_cancelled", teacher_id=enrollment.teacher_id)
            await self.enrollments.release_submission(enrollment.id, receipt)
            raise
        except Exception:
            logger.exception("evaluation_insert_failed", teacher_id=enrollment.teacher_id)
            await self.enrollments.release_submission(enrollment.id, receipt)
            return _failure("Failed to submit evaluation", 500)

        logger.info(
            "evaluation_submitted",
            teacher_id=record.teacher_id,
            has_comments=encrypted_comments is not None,
        )
        return SubmissionOutcome(success=True, message=SUCCESS_MESSAGE, receipt=receipt)
