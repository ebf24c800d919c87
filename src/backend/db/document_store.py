"""
Document store abstraction for EvalShield.

Two backends share one async interface:
- InMemoryDocumentStore: process-local dictionaries (default, tests)
- CosmosDocumentStore: Azure Cosmos DB via the async SDK, with the same
  connection-string (emulator) / DefaultAzureCredential (RBAC) split

Filters are equality maps. A None value matches a missing field or an
explicit null. Every write touches a single document atomically;
find_one_and_update applies its filter as a guard.
"""

import asyncio
import copy
import re
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Optional

import structlog
from azure.core import MatchConditions
from azure.cosmos import exceptions as cosmos_exceptions
from azure.cosmos.aio import ContainerProxy, CosmosClient, DatabaseProxy
from azure.identity.aio import DefaultAzureCredential

from core.config import settings
from core.exceptions import StoreError

logger = structlog.get_logger(__name__)

# Container names
EVALUATIONS_CONTAINER = "evaluations"
ENROLLMENTS_CONTAINER = "enrollments"

Filter = Optional[dict[str, Any]]


def matches_filter(doc: dict[str, Any], filter: Filter) -> bool:
    """Check a document against an equality filter."""
    if not filter:
        return True
    for key, expected in filter.items():
        actual = doc.get(key)
        if expected is None:
            if actual is not None:
                return False
        elif actual != expected:
            return False
    return True


class DocumentStore(ABC):
    """Async document store interface used by the repositories."""

    @abstractmethod
    async def insert_one(self, container: str, doc: dict[str, Any]) -> dict[str, Any]:
        """Insert a new document. Raises StoreError if the id already exists."""

    @abstractmethod
    async def find(self, container: str, filter: Filter = None) -> list[dict[str, Any]]:
        """Return every document matching the filter."""

    async def find_one(self, container: str, filter: Filter) -> Optional[dict[str, Any]]:
        """Return the first document matching the filter, or None."""
        docs = await self.find(container, filter)
        return docs[0] if docs else None

    @abstractmethod
    async def find_one_and_update(
        self,
        container: str,
        filter: dict[str, Any],
        update: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        """
        Set the fields in `update` on the first document matching `filter`.

        The filter is re-checked atomically with the write, so a guard such
        as {"has_evaluated": False} succeeds for exactly one caller.

        Returns:
            The updated document, or None when nothing matched.
        """

    async def count(self, container: str, filter: Filter = None) -> int:
        """Count documents matching the filter."""
        return len(await self.find(container, filter))

    async def close(self) -> None:
        """Release backend resources."""


# ============================================================================
# In-Memory Backend
# ============================================================================


class InMemoryDocumentStore(DocumentStore):
    """
    Dictionary-backed store.

    Documents are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._containers: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _container(self, name: str) -> dict[str, dict[str, Any]]:
        return self._containers.setdefault(name, {})

    async def insert_one(self, container: str, doc: dict[str, Any]) -> dict[str, Any]:
        if "id" not in doc:
            raise StoreError("Document must have an id")
        async with self._lock:
            items = self._container(container)
            if doc["id"] in items:
                raise StoreError(f"Document {doc['id']} already exists in {container}")
            items[doc["id"]] = copy.deepcopy(doc)
        return copy.deepcopy(doc)

    async def find(self, container: str, filter: Filter = None) -> list[dict[str, Any]]:
        items = self._container(container)
        return [copy.deepcopy(doc) for doc in items.values() if matches_filter(doc, filter)]

    async def find_one_and_update(
        self,
        container: str,
        filter: dict[str, Any],
        update: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        async with self._lock:
            for doc in self._container(container).values():
                if matches_filter(doc, filter):
                    doc.update(copy.deepcopy(update))
                    return copy.deepcopy(doc)
        return None


# ============================================================================
# Cosmos DB Backend
# ============================================================================

_FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_MAX_GUARDED_UPDATE_ATTEMPTS = 3


def build_filter_query(filter: Filter, select: str = "*") -> tuple[str, list[dict[str, Any]]]:
    """
    Translate an equality filter into a parameterized Cosmos DB SQL query.

    Example:
        build_filter_query({"teacher_id": "t1", "comments": None})
        -> ('SELECT * FROM c WHERE c["teacher_id"] = @p0 AND
             (NOT IS_DEFINED(c["comments"]) OR IS_NULL(c["comments"]))',
            [{"name": "@p0", "value": "t1"}])
    """
    clauses: list[str] = []
    parameters: list[dict[str, Any]] = []
    for key, value in (filter or {}).items():
        if not _FIELD_NAME_PATTERN.match(key):
            raise StoreError(f"Invalid filter field: {key!r}")
        field = f'c["{key}"]'
        if value is None:
            clauses.append(f"(NOT IS_DEFINED({field}) OR IS_NULL({field}))")
        else:
            param = f"@p{len(parameters)}"
            clauses.append(f"{field} = {param}")
            parameters.append({"name": param, "value": value})

    query = f"SELECT {select} FROM c"
    if clauses:
        query += " WHERE " + " AND ".join(clauses)
    return query, parameters


class CosmosDocumentStore(DocumentStore):
    """
    Azure Cosmos DB store.

    Supports two authentication modes:
    1. Connection string (for local development with Cosmos DB Emulator)
    2. DefaultAzureCredential/RBAC (for Azure deployment)

    The client is created lazily and reused across requests.
    """

    def __init__(self) -> None:
        self._client: CosmosClient | None = None
        self._database: DatabaseProxy | None = None
        self._credential: DefaultAzureCredential | None = None

    def _get_client(self) -> CosmosClient:
        if self._client is None:
            if settings.AZURE_COSMOS_CONNECTION_STRING:
                # Format: AccountEndpoint=https://...;AccountKey=...;
                conn_parts = dict(
                    part.split("=", 1)
                    for part in settings.AZURE_COSMOS_CONNECTION_STRING.split(";")
                    if "=" in part
                )
                endpoint = conn_parts.get("AccountEndpoint", "")
                key = conn_parts.get("AccountKey", "")

                if not endpoint or not key:
                    raise StoreError("AZURE_COSMOS_CONNECTION_STRING must contain AccountEndpoint and AccountKey")

                # Emulator uses a self-signed cert
                self._client = CosmosClient(
                    url=endpoint,
                    credential=key,
                    connection_verify=not settings.AZURE_COSMOS_DISABLE_SSL,
                )
                logger.info(
                    "cosmos_client_initialized",
                    endpoint=endpoint,
                    mode="connection_string",
                    ssl_verification=not settings.AZURE_COSMOS_DISABLE_SSL,
                )
            else:
                if not settings.AZURE_COSMOS_ENDPOINT:
                    raise StoreError("Either AZURE_COSMOS_ENDPOINT or AZURE_COSMOS_CONNECTION_STRING must be set")

                self._credential = DefaultAzureCredential()
                self._client = CosmosClient(
                    url=settings.AZURE_COSMOS_ENDPOINT,
                    credential=self._credential,
                )
                logger.info("cosmos_client_initialized", endpoint=settings.AZURE_COSMOS_ENDPOINT, mode="rbac")

        return self._client

    def _get_container(self, container_name: str) -> ContainerProxy:
        if self._database is None:
            self._database = self._get_client().get_database_client(settings.AZURE_COSMOS_DATABASE)
        return self._database.get_container_client(container_name)

    async def _query(self, container_name: str, query: str, parameters: list[dict[str, Any]]) -> list[Any]:
        container = self._get_container(container_name)
        query_kwargs: dict[str, Any] = {"query": query}
        if parameters:
            query_kwargs["parameters"] = parameters

        items: list[Any] = []
        async for item in container.query_items(**query_kwargs):
            items.append(item)
        return items

    async def insert_one(self, container: str, doc: dict[str, Any]) -> dict[str, Any]:
        try:
            return await self._get_container(container).create_item(body=doc)
        except cosmos_exceptions.CosmosResourceExistsError:
            raise StoreError(f"Document {doc.get('id')} already exists in {container}") from None

    async def find(self, container: str, filter: Filter = None) -> list[dict[str, Any]]:
        query, parameters = build_filter_query(filter)
        return await self._query(container, query, parameters)

    async def count(self, container: str, filter: Filter = None) -> int:
        query, parameters = build_filter_query(filter, select="VALUE COUNT(1)")
        results = await self._query(container, query, parameters)
        if results and isinstance(results[0], (int, float)):
            return int(results[0])
        return 0

    async def find_one_and_update(
        self,
        container: str,
        filter: dict[str, Any],
        update: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        proxy = self._get_container(container)
        for _ in range(_MAX_GUARDED_UPDATE_ATTEMPTS):
            doc = await self.find_one(container, filter)
            if doc is None:
                return None
            body = {**doc, **update}
            try:
                return await proxy.replace_item(
                    item=doc["id"],
                    body=body,
                    etag=doc.get("_etag"),
                    match_condition=MatchConditions.IfNotModified,
                )
            except cosmos_exceptions.CosmosAccessConditionFailedError:
                # Modified concurrently; re-read and re-check the guard
                logger.info("cosmos_guarded_update_conflict", container=container)
        raise StoreError(f"Guarded update on {container} kept conflicting")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._database = None
            logger.info("cosmos_client_closed")

        if self._credential is not None:
            await self._credential.close()
            self._credential = None


@lru_cache()
def get_document_store() -> DocumentStore:
    """Get the process-wide document store selected by STORE_BACKEND."""
    if settings.STORE_BACKEND == "cosmos":
        return CosmosDocumentStore()
    return InMemoryDocumentStore()
