"""
Base protocol and types for the document store abstraction.

The engine never talks to a storage vendor directly. It consumes the
DocumentStore protocol below, which models a partitioned document database:
every document lives in (tenant_id, collection, doc_id), and root
collections shared by all tenants use tenant_id None.

Invariants:
    - set(merge=True) only touches the given top-level fields
    - Documents missing a queried field never match that query
    - A WriteBatch never holds more than max_mutations operations

How to change safely:
    - Protocol changes require updating every implementation
    - Keep query operators in QUERY_OPERATORS in sync with both backends
"""

from __future__ import annotations

import copy
import logging
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)

QUERY_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in")

_MISSING = object()


class StoreError(Exception):
    """Base exception for store errors."""

    pass


class BatchLimitExceededError(StoreError):
    """Write batch would exceed its mutation ceiling."""

    pass


@dataclass
class Document:
    """A stored document.

    Attributes:
        tenant_id: Owning tenant, None for root collections
        collection: Collection name
        doc_id: Document id, unique within (tenant_id, collection)
        fields: Field values
        updated_at: Last write time (Unix ms)
    """

    tenant_id: str | None
    collection: str
    doc_id: str
    fields: dict[str, Any]
    updated_at: int = 0

    def to_record(self) -> dict[str, Any]:
        """Fields plus the document id under ``id``."""
        record = copy.deepcopy(self.fields)
        record["id"] = self.doc_id
        return record


@dataclass
class BatchOp:
    """One buffered batch mutation."""

    kind: str  # "set" or "delete"
    tenant_id: str | None
    collection: str
    doc_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    merge: bool = False


def get_path(fields: dict[str, Any], path: str) -> Any:
    """Resolve a dotted field path, returning a sentinel when absent."""
    value: Any = fields
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def matches(fields: dict[str, Any], path: str, op: str, expected: Any) -> bool:
    """Evaluate a single query predicate against a document."""
    actual = get_path(fields, path)
    if actual is _MISSING:
        return False
    if op == "==":
        return actual == expected
    if op == "!=":
        return actual != expected
    if op == "in":
        return actual in expected
    if actual is None or expected is None:
        return False
    try:
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        if op == ">=":
            return actual >= expected
    except TypeError:
        return False
    raise ValueError(f"Unsupported query operator: {op}")


def merge_fields(existing: dict[str, Any] | None, fields: dict[str, Any], merge: bool) -> dict[str, Any]:
    """Compute the stored value of a set() call."""
    if not merge or existing is None:
        return copy.deepcopy(fields)
    merged = copy.deepcopy(existing)
    merged.update(copy.deepcopy(fields))
    return merged


class WriteBatch:
    """Buffered group of mutations committed together.

    Subclasses implement commit(). The buffer enforces the mutation ceiling
    when operations are added, so an oversized batch is never sent.
    """

    def __init__(self, max_mutations: int = 500) -> None:
        self.max_mutations = max_mutations
        self._ops: list[BatchOp] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._ops)

    def _add(self, op: BatchOp) -> None:
        if self._committed:
            raise StoreError("Batch already committed")
        if len(self._ops) >= self.max_mutations:
            raise BatchLimitExceededError(
                f"Batch already holds {len(self._ops)} mutations (limit {self.max_mutations})"
            )
        self._ops.append(op)

    def set(
        self,
        tenant_id: str | None,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        merge: bool = False,
    ) -> None:
        self._add(BatchOp("set", tenant_id, collection, doc_id, dict(fields), merge))

    def delete(self, tenant_id: str | None, collection: str, doc_id: str) -> None:
        self._add(BatchOp("delete", tenant_id, collection, doc_id))

    @property
    def operations(self) -> list[BatchOp]:
        return list(self._ops)

    @abstractmethod
    async def commit(self) -> int:
        """Apply all buffered mutations.

        Returns:
            Number of mutations applied
        """
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for partitioned document stores."""

    @abstractmethod
    async def get(self, tenant_id: str | None, collection: str, doc_id: str) -> Document | None:
        """Fetch one document or None."""
        ...

    @abstractmethod
    async def query(
        self,
        tenant_id: str | None,
        collection: str,
        field_path: str,
        op: str,
        value: Any,
    ) -> list[Document]:
        """Return documents where ``field_path op value`` holds."""
        ...

    @abstractmethod
    async def list(self, tenant_id: str | None, collection: str) -> list[Document]:
        """Return every document of a collection."""
        ...

    @abstractmethod
    async def set(
        self,
        tenant_id: str | None,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        merge: bool = False,
    ) -> Document:
        """Create or replace a document; with merge, update only given fields."""
        ...

    @abstractmethod
    async def delete(self, tenant_id: str | None, collection: str, doc_id: str) -> bool:
        """Delete a document. Returns False if it did not exist."""
        ...

    @abstractmethod
    def batch(self) -> WriteBatch:
        """Start a new write batch."""
        ...


def create_document_store(config: ServerConfig) -> DocumentStore:
    """Create a document store for the configured backend.

    Args:
        config: Server configuration

    Returns:
        DocumentStore implementation
    """
    from ..config import StoreBackend

    if config.store_backend == StoreBackend.MEMORY:
        from .memory import InMemoryDocumentStore

        return InMemoryDocumentStore(max_batch_mutations=config.storage.max_batch_mutations)
    if config.store_backend == StoreBackend.SQLITE:
        from .sqlite import SqliteDocumentStore

        return SqliteDocumentStore(
            data_dir=config.storage.data_dir,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
            max_batch_mutations=config.storage.max_batch_mutations,
        )
    raise ValueError(f"Unknown store backend: {config.store_backend}")
