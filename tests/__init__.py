"""
Mirror server test suite.

This package contains:
- unit/: Unit tests (in-memory store, SQLite in a temp directory)
- integration/: Integration tests (sync engine, repair jobs, HTTP API, CLI)
"""
