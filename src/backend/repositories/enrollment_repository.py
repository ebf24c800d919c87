"""
Enrollment repository.

Enrollment markers record whether a student already evaluated a subject.
The submitted flag is claimed with a guarded update so concurrent
submissions for one enrollment cannot both succeed.
"""

from typing import Any, Optional

import structlog

from db.document_store import ENROLLMENTS_CONTAINER, DocumentStore
from models.documents import EnrollmentDocument

logger = structlog.get_logger(__name__)


class EnrollmentRepository:
    """Repository for enrollment markers."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # ========================================================================
    # Read Operations
    # ========================================================================

    async def get_by_id(self, enrollment_id: str) -> Optional[EnrollmentDocument]:
        doc = await self.store.find_one(ENROLLMENTS_CONTAINER, {"id": enrollment_id})
        if doc is None:
            return None
        return EnrollmentDocument.model_validate(doc)

    async def list_raw(self) -> list[dict[str, Any]]:
        """Stored documents exactly as persisted (used by the privacy audit)."""
        return await self.store.find(ENROLLMENTS_CONTAINER)

    # ========================================================================
    # Write Operations
    # ========================================================================

    async def create(self, enrollment: EnrollmentDocument) -> EnrollmentDocument:
        await self.store.insert_one(ENROLLMENTS_CONTAINER, enrollment.model_dump(mode="json"))
        return enrollment

    async def mark_submitted(self, enrollment_id: str, receipt_hash: str) -> Optional[EnrollmentDocument]:
        """
        Claim the enrollment for a submission.

        Returns:
            The updated enrollment, or None if it was already evaluated
            (another submission won the claim).
        """
        doc = await self.store.find_one_and_update(
            ENROLLMENTS_CONTAINER,
            {"id": enrollment_id, "has_evaluated": False},
            {"has_evaluated": True, "receipt_hash": receipt_hash, "submission_token_used": True},
        )
        if doc is None:
            return None
        return EnrollmentDocument.model_validate(doc)

    async def release_submission(self, enrollment_id: str, receipt_hash: str) -> bool:
        """
        Undo a claim whose evaluation record could not be stored.

        Only the claim holding this receipt is released.
        """
        doc = await self.store.find_one_and_update(
            ENROLLMENTS_CONTAINER,
            {"id": enrollment_id, "has_evaluated": True, "receipt_hash": receipt_hash},
            {"has_evaluated": False, "receipt_hash": None, "submission_token_used": False},
        )
        if doc is None:
            logger.error("enrollment_release_failed")
            return False
        logger.warning("enrollment_claim_released")
        return True
