"""
Unit tests for server configuration and error types.

Tests cover:
- Loading from environment variables
- Validation of cross-section constraints
- Error codes and dict conversion
"""

import pytest

from tenancy.mirror_server.config import (
    ServerConfig,
    StorageConfig,
    StoreBackend,
    SyncConfig,
)
from tenancy.mirror_server.errors import (
    BatchPartialFailure,
    InvalidStateError,
    MirrorError,
    NotFoundError,
    PrimaryWriteError,
    PropagationFailure,
)


class TestServerConfig:
    """Tests for ServerConfig."""

    def test_defaults_are_valid(self):
        config = ServerConfig(store_backend=StoreBackend.MEMORY)
        config.validate()
        assert config.sync.batch_size == 450
        assert config.storage.max_batch_mutations == 500
        assert config.sync.structural_fields == ("bacenta_id",)

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STORE_BACKEND", "memory")
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("SYNC_BATCH_SIZE", "100")
        monkeypatch.setenv("SYNC_STRUCTURAL_FIELDS", "bacenta_id, cell_id")
        monkeypatch.setenv("OUTBOX_ENABLED", "false")
        monkeypatch.setenv("HTTP_PORT", "9090")
        monkeypatch.setenv("LOG_FORMAT", "text")

        config = ServerConfig.from_env()

        assert config.store_backend == StoreBackend.MEMORY
        assert config.storage.data_dir == str(tmp_path)
        assert config.sync.batch_size == 100
        assert config.sync.structural_fields == ("bacenta_id", "cell_id")
        assert config.outbox.enabled is False
        assert config.http.port == 9090
        assert config.observability.log_format == "text"

    def test_invalid_backend(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "postgres")

        with pytest.raises(ValueError, match="STORE_BACKEND"):
            ServerConfig.from_env()

    def test_batch_size_above_store_ceiling(self):
        config = ServerConfig(
            store_backend=StoreBackend.MEMORY,
            storage=StorageConfig(max_batch_mutations=100),
            sync=SyncConfig(batch_size=200),
        )

        with pytest.raises(ValueError, match="SYNC_BATCH_SIZE"):
            config.validate()

    def test_batch_size_must_be_positive(self):
        config = ServerConfig(store_backend=StoreBackend.MEMORY, sync=SyncConfig(batch_size=0))

        with pytest.raises(ValueError):
            config.validate()

    def test_unknown_log_format(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "memory")
        monkeypatch.setenv("LOG_FORMAT", "xml")

        with pytest.raises(ValueError, match="LOG_FORMAT"):
            ServerConfig.from_env()


class TestErrors:
    """Tests for error types."""

    def test_all_errors_are_mirror_errors(self):
        for error in (
            NotFoundError("x"),
            InvalidStateError("x"),
            PrimaryWriteError("x"),
            PropagationFailure("x"),
            BatchPartialFailure("x"),
        ):
            assert isinstance(error, MirrorError)

    def test_not_found_details(self):
        error = NotFoundError("Member m1 not found", resource_type="member", resource_id="m1")

        assert error.to_dict() == {
            "code": "NOT_FOUND",
            "message": "Member m1 not found",
            "details": {"resource_type": "member", "resource_id": "m1"},
        }

    def test_propagation_failure_details(self):
        error = PropagationFailure(
            "Canonical write failed", record_id="m1", target_tenant_id="t1", operation="forward"
        )

        assert error.code == "PROPAGATION_FAILED"
        assert error.target_tenant_id == "t1"
        assert error.details["operation"] == "forward"

    def test_batch_partial_failure_counts(self):
        error = BatchPartialFailure("all failed", attempted=4, failed_batches=2)

        assert error.details == {"attempted": 4, "succeeded": 0, "failed_batches": 2}

    def test_default_code(self):
        assert MirrorError("boom").code == "MIRROR_ERROR"
