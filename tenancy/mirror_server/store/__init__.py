"""
Document store abstraction for the mirror server.

This module provides a pluggable document store interface:
- InMemoryDocumentStore: tests and local development
- SqliteDocumentStore: one SQLite file per tenant

Usage:
    from tenancy.mirror_server.store import create_document_store

    store = create_document_store(config)
    await store.set("tenant_1", "members", "m1", {"first_name": "Ama"}, merge=True)
"""

from .base import (
    BatchLimitExceededError,
    Document,
    DocumentStore,
    StoreError,
    WriteBatch,
    create_document_store,
)
from .memory import InMemoryDocumentStore
from .sqlite import SqliteDocumentStore

__all__ = [
    "BatchLimitExceededError",
    "Document",
    "DocumentStore",
    "InMemoryDocumentStore",
    "SqliteDocumentStore",
    "StoreError",
    "WriteBatch",
    "create_document_store",
]
