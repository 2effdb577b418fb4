"""
SQLite document store.

This module stores documents in one SQLite file per tenant, plus a
``root.db`` file for root collections shared by all tenants:
- Document fields are kept as JSON text
- Queries narrow with json_extract and then apply the shared predicate
- Batches run as one transaction per tenant file

Invariants:
    - One SQLite file per tenant
    - Every write runs inside BEGIN IMMEDIATE / COMMIT
    - Reading a tenant that was never written returns nothing, not an error

How to change safely:
    - Schema changes must be backward compatible with existing files
    - Keep query results identical to the in-memory store

Table schema:
    documents:
        - collection TEXT
        - doc_id TEXT
        - fields_json TEXT
        - updated_at INTEGER (Unix ms)
        - PRIMARY KEY (collection, doc_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
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

ROOT_PARTITION = "root"


class SqliteWriteBatch(WriteBatch):
    """Write batch committed as one transaction per tenant file."""

    def __init__(self, store: SqliteDocumentStore, max_mutations: int) -> None:
        super().__init__(max_mutations=max_mutations)
        self._store = store

    async def commit(self) -> int:
        applied = await self._store._apply_batch(self._ops)
        self._committed = True
        return applied


class SqliteDocumentStore:
    """Per-tenant SQLite implementation of DocumentStore.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = SqliteDocumentStore("/var/lib/mirror-server")
        >>> await store.set("t1", "members", "m1", {"first_name": "Ama"})
    """

    def __init__(
        self,
        data_dir: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        max_batch_mutations: int = 500,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.max_batch_mutations = max_batch_mutations
        self._initialized: set[str] = set()
        self._lock = asyncio.Lock()

    def _partition(self, tenant_id: str | None) -> str:
        if tenant_id is None:
            return ROOT_PARTITION
        # Sanitize tenant_id to prevent path traversal
        safe_id = "".join(c for c in tenant_id if c.isalnum() or c in "-_")
        return f"tenant_{safe_id}"

    def get_db_path(self, tenant_id: str | None) -> Path:
        """Database file path for a tenant (None for root collections)."""
        return self.data_dir / f"{self._partition(tenant_id)}.db"

    @contextmanager
    def _get_connection(self, tenant_id: str | None) -> Iterator[sqlite3.Connection]:
        db_path = self.get_db_path(tenant_id)
        db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            partition = self._partition(tenant_id)
            if partition not in self._initialized:
                self._create_schema(conn)
                self._initialized.add(partition)

            yield conn
        finally:
            conn.close()

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS documents (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                fields_json TEXT NOT NULL DEFAULT '{}',
                updated_at INTEGER NOT NULL,
                PRIMARY KEY (collection, doc_id)
            );

            CREATE INDEX IF NOT EXISTS idx_documents_updated
                ON documents(collection, updated_at DESC);
        """)

    def _row_to_document(self, tenant_id: str | None, row: sqlite3.Row) -> Document:
        return Document(
            tenant_id=tenant_id,
            collection=row["collection"],
            doc_id=row["doc_id"],
            fields=json.loads(row["fields_json"]),
            updated_at=row["updated_at"],
        )

    def _exists(self, tenant_id: str | None) -> bool:
        return self.get_db_path(tenant_id).exists()

    def _write(self, conn: sqlite3.Connection, op: BatchOp, now: int) -> None:
        if op.kind == "delete":
            conn.execute(
                "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                (op.collection, op.doc_id),
            )
            return

        existing = None
        if op.merge:
            row = conn.execute(
                "SELECT fields_json FROM documents WHERE collection = ? AND doc_id = ?",
                (op.collection, op.doc_id),
            ).fetchone()
            if row:
                existing = json.loads(row["fields_json"])

        fields = merge_fields(existing, op.fields, op.merge)
        conn.execute(
            """
            INSERT INTO documents (collection, doc_id, fields_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (collection, doc_id)
            DO UPDATE SET fields_json = excluded.fields_json, updated_at = excluded.updated_at
            """,
            (op.collection, op.doc_id, json.dumps(fields), now),
        )

    async def get(self, tenant_id: str | None, collection: str, doc_id: str) -> Document | None:
        if not self._exists(tenant_id):
            return None
        with self._get_connection(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            ).fetchone()
            return self._row_to_document(tenant_id, row) if row else None

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
        if not self._exists(tenant_id):
            return []

        json_path = f"$.{field_path}"
        sql = "SELECT * FROM documents WHERE collection = ? AND json_type(fields_json, ?) IS NOT NULL"
        params: list[Any] = [collection, json_path]
        if op == "==" and isinstance(value, (str, int, float)):
            sql += " AND json_extract(fields_json, ?) = ?"
            params.extend([json_path, value])

        with self._get_connection(tenant_id) as conn:
            rows = conn.execute(sql, params).fetchall()

        docs = [self._row_to_document(tenant_id, row) for row in rows]
        return [doc for doc in docs if matches(doc.fields, field_path, op, value)]

    async def list(self, tenant_id: str | None, collection: str) -> list[Document]:
        if not self._exists(tenant_id):
            return []
        with self._get_connection(tenant_id) as conn:
            rows = conn.execute(
                "SELECT * FROM documents WHERE collection = ? ORDER BY doc_id",
                (collection,),
            ).fetchall()
            return [self._row_to_document(tenant_id, row) for row in rows]

    async def set(
        self,
        tenant_id: str | None,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        merge: bool = False,
    ) -> Document:
        op = BatchOp("set", tenant_id, collection, doc_id, fields, merge)
        await self._apply_batch([op])
        doc = await self.get(tenant_id, collection, doc_id)
        if doc is None:
            raise StoreError(f"Write to {collection}/{doc_id} was not persisted")
        return doc

    async def delete(self, tenant_id: str | None, collection: str, doc_id: str) -> bool:
        if not self._exists(tenant_id):
            return False
        with self._get_connection(tenant_id) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
                conn.execute("COMMIT")
                return cursor.rowcount > 0
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def batch(self) -> SqliteWriteBatch:
        return SqliteWriteBatch(self, self.max_batch_mutations)

    async def _apply_batch(self, ops: list[BatchOp]) -> int:
        by_tenant: dict[str | None, list[BatchOp]] = {}
        for op in ops:
            by_tenant.setdefault(op.tenant_id, []).append(op)

        applied = 0
        now = int(time.time() * 1000)
        async with self._lock:
            for tenant_id, tenant_ops in by_tenant.items():
                with self._get_connection(tenant_id) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        for op in tenant_ops:
                            self._write(conn, op, now)
                        conn.execute("COMMIT")
                    except sqlite3.Error as e:
                        conn.execute("ROLLBACK")
                        raise StoreError(f"Batch write to {tenant_id} failed: {e}") from e
                applied += len(tenant_ops)
        return applied
