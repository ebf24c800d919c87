"""Database module."""

from db.document_store import (
    ENROLLMENTS_CONTAINER,
    EVALUATIONS_CONTAINER,
    CosmosDocumentStore,
    DocumentStore,
    InMemoryDocumentStore,
    get_document_store,
)

__all__ = [
    "ENROLLMENTS_CONTAINER",
    "EVALUATIONS_CONTAINER",
    "CosmosDocumentStore",
    "DocumentStore",
    "InMemoryDocumentStore",
    "get_document_store",
]
