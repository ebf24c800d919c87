"""
Evaluation repository.

Stores anonymous evaluation records. Records are insert-only: there is no
update path, and lookups by student or enrollment do not exist because the
records hold neither.
"""

from collections import Counter
from typing import Any

import structlog

from db.document_store import EVALUATIONS_CONTAINER, DocumentStore
from models.documents import AnonymousEvaluationDocument

logger = structlog.get_logger(__name__)


class EvaluationRepository:
    """Repository for anonymous evaluation records."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # ========================================================================
    # Read Operations
    # ========================================================================

    async def list_by_teacher(self, teacher_id: str) -> list[AnonymousEvaluationDocument]:
        docs = await self.store.find(EVALUATIONS_CONTAINER, {"teacher_id": teacher_id})
        return [AnonymousEvaluationDocument.model_validate(doc) for doc in docs]

    async def list_all(self) -> list[AnonymousEvaluationDocument]:
        docs = await self.store.find(EVALUATIONS_CONTAINER)
        return [AnonymousEvaluationDocument.model_validate(doc) for doc in docs]

    async def list_raw(self) -> list[dict[str, Any]]:
        """Stored documents exactly as persisted (used by the privacy audit)."""
        return await self.store.find(EVALUATIONS_CONTAINER)

    async def count(self) -> int:
        return await self.store.count(EVALUATIONS_CONTAINER)

    async def count_by_teacher(self, teacher_id: str) -> int:
        return await self.store.count(EVALUATIONS_CONTAINER, {"teacher_id": teacher_id})

    async def group_sizes_by_teacher(self) -> dict[str, int]:
        """Number of evaluations per teacher."""
        docs = await self.store.find(EVALUATIONS_CONTAINER)
        return dict(Counter(doc.get("teacher_id") for doc in docs if doc.get("teacher_id")))

    # ========================================================================
    # Write Operations
    # ========================================================================

    async def create(self, evaluation: AnonymousEvaluationDocument) -> AnonymousEvaluationDocument:
        """Insert a new anonymous record."""
        await self.store.insert_one(EVALUATIONS_CONTAINER, evaluation.model_dump(mode="json"))
        logger.debug("evaluation_created", teacher_id=evaluation.teacher_id)
        return evaluation
