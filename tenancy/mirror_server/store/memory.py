"""
In-memory document store for tests and local development.

This module provides a DocumentStore that keeps every document in process
memory. It is used by:
- Unit and integration tests
- Local development without a data directory
- The memory backend of the HTTP server

Invariants:
    - All data is lost on process exit
    - Batches are atomic: either every mutation applies or none
    - Stored values are deep copies; callers can't mutate them in place

How to change safely:
    - Keep behaviour identical to the SQLite backend for the same calls
    - Add failure-injection helpers here rather than monkeypatching in tests
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import defaultdict
from typing import Any

from .base import (
    QUERY_OPERATORS,
    BatchOp,
    Document,
    StoreError,
    WriteBatch,
    matches,
    merge_fields,
)

logger = logging.getLogger(__name__)

_Key = tuple[str | None, str]


class InMemoryWriteBatch(WriteBatch):
    """Write batch applied under the store lock."""

    def __init__(self, store: InMemoryDocumentStore, max_mutations: int) -> None:
        super().__init__(max_mutations=max_mutations)
        self._store = store

    async def commit(self) -> int:
        applied = await self._store._apply_batch(self._ops)
        self._committed = True
        return applied


class InMemoryDocumentStore:
    """In-memory implementation of DocumentStore.

    Thread safety:
        Uses an asyncio lock. Safe to use from multiple coroutines.

    Example:
        >>> store = InMemoryDocumentStore()
        >>> await store.set("t1", "members", "m1", {"first_name": "Ama"})
        >>> doc = await store.get("t1", "members", "m1")
    """

    def __init__(self, max_batch_mutations: int = 500) -> None:
        self.max_batch_mutations = max_batch_mutations
        self._collections: dict[_Key, dict[str, Document]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self._failing: set[tuple[str | None, str | None]] = set()
        self._write_count = 0

    def _check_writable(self, tenant_id: str | None, collection: str) -> None:
        if (tenant_id, None) in self._failing or (tenant_id, collection) in self._failing:
            raise StoreError(f"Injected write failure for {tenant_id}/{collection}")

    def _write(self, op: BatchOp, now: int) -> None:
        docs = self._collections[(op.tenant_id, op.collection)]
        if op.kind == "delete":
            docs.pop(op.doc_id, None)
            return
        existing = docs.get(op.doc_id)
        docs[op.doc_id] = Document(
            tenant_id=op.tenant_id,
            collection=op.collection,
            doc_id=op.doc_id,
            fields=merge_fields(existing.fields if existing else None, op.fields, op.merge),
            updated_at=now,
        )

    async def get(self, tenant_id: str | None, collection: str, doc_id: str) -> Document | None:
        async with self._lock:
            doc = self._collections.get((tenant_id, collection), {}).get(doc_id)
            return copy.deepcopy(doc) if doc else None

    async def query(
        self,
        tenant_id: str | None,
        collection: str,
        field_path: str,
        op: str,
        value: Any,
    ) -> list[Document]:
        if op not in QUERY_OPERATORS:
            raise ValueError(f"Unsupported query operator: {op}")
        async with self._lock:
            docs = self._collections.get((tenant_id, collection), {})
            return [
                copy.deepcopy(doc)
                for doc in docs.values()
                if matches(doc.fields, field_path, op, value)
            ]

    async def list(self, tenant_id: str | None, collection: str) -> list[Document]:
        async with self._lock:
            docs = self._collections.get((tenant_id, collection), {})
            return [copy.deepcopy(doc) for doc in docs.values()]

    async def set(
        self,
        tenant_id: str | None,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        merge: bool = False,
    ) -> Document:
        op = BatchOp("set", tenant_id, collection, doc_id, fields, merge)
        async with self._lock:
            self._check_writable(tenant_id, collection)
            self._write(op, int(time.time() * 1000))
            self._write_count += 1
            return copy.deepcopy(self._collections[(tenant_id, collection)][doc_id])

    async def delete(self, tenant_id: str | None, collection: str, doc_id: str) -> bool:
        async with self._lock:
            self._check_writable(tenant_id, collection)
            docs = self._collections.get((tenant_id, collection), {})
            existed = doc_id in docs
            docs.pop(doc_id, None)
            self._write_count += 1
            return existed

    def batch(self) -> InMemoryWriteBatch:
        return InMemoryWriteBatch(self, self.max_batch_mutations)

    async def _apply_batch(self, ops: list[BatchOp]) -> int:
        async with self._lock:
            # Validate everything first so a failing batch leaves no trace
            for op in ops:
                self._check_writable(op.tenant_id, op.collection)
            now = int(time.time() * 1000)
            for op in ops:
                self._write(op, now)
            self._write_count += len(ops)
            return len(ops)

    # Testing helpers

    def fail_writes_to(self, tenant_id: str | None, collection: str | None = None) -> None:
        """Make writes to a tenant (optionally one collection) raise StoreError."""
        self._failing.add((tenant_id, collection))

    def clear_failures(self) -> None:
        """Remove all injected failures."""
        self._failing.clear()

    def document_count(self, tenant_id: str | None, collection: str) -> int:
        """Number of documents in a collection."""
        return len(self._collections.get((tenant_id, collection), {}))

    def snapshot(self, tenant_id: str | None, collection: str) -> dict[str, dict[str, Any]]:
        """Copy of a collection as {doc_id: fields}."""
        docs = self._collections.get((tenant_id, collection), {})
        return {doc_id: copy.deepcopy(doc.fields) for doc_id, doc in docs.items()}

    @property
    def write_count(self) -> int:
        """Total mutations applied since creation."""
        return self._write_count

    def clear(self) -> None:
        """Drop all data."""
        self._collections.clear()
        self._failing.clear()
        self._write_count = 0
