"""
Tests for environment configuration and SQL helpers.
"""

from datetime import datetime, timedelta, timezone

import pytest

from txoutbox.config import OutboxConfig, is_auth_required
from txoutbox.database import DatabaseBackend, DatabaseConfig, format_timestamp
from txoutbox.database.adapter import _convert_to_sqlite
from txoutbox.database.schema import entity_table_ddl, outbox_ddl, validate_identifier


class TestOutboxConfig:

    def test_defaults(self, monkeypatch):
        for name in ("OUTBOX_BATCH_SIZE", "OUTBOX_LEASE_TIMEOUT", "OUTBOX_RETRY_INTERVALS",
                     "OUTBOX_PUBLISHED_RETENTION_DAYS", "OUTBOX_DEAD_LETTER_RETENTION_DAYS"):
            monkeypatch.delenv(name, raising=False)
        config = OutboxConfig()

        assert config.batch_size == 100
        assert config.lease_timeout == timedelta(seconds=300)
        assert config.retry_intervals == [5, 15, 60, 300, 900]
        assert config.published_retention == timedelta(days=7)
        assert config.dead_letter_retention == timedelta(days=28)

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("OUTBOX_BATCH_SIZE", "10")
        monkeypatch.setenv("OUTBOX_RETRY_INTERVALS", "1, 2,3")
        monkeypatch.setenv("OUTBOX_SINK_URL", "http://consumer.test/events")
        config = OutboxConfig()

        assert config.batch_size == 10
        assert config.retry_intervals == [1.0, 2.0, 3.0]
        assert config.sink_url == "http://consumer.test/events"

    def test_max_attempts_from_environment(self, monkeypatch):
        monkeypatch.setenv("OUTBOX_MAX_ATTEMPTS", "2")
        assert OutboxConfig().max_attempts == 2

    def test_auth_required_flag(self, monkeypatch):
        monkeypatch.setenv("AUTH_REQUIRED", "false")
        assert is_auth_required() is False
        monkeypatch.setenv("AUTH_REQUIRED", "true")
        assert is_auth_required() is True


class TestDatabaseConfig:

    def test_backend_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_BACKEND", "postgresql")
        assert DatabaseConfig().backend == DatabaseBackend.POSTGRESQL

        monkeypatch.setenv("DATABASE_BACKEND", "sqlite")
        assert DatabaseConfig().backend == DatabaseBackend.SQLITE

    def test_repr_hides_credentials(self):
        config = DatabaseConfig(
            backend=DatabaseBackend.POSTGRESQL,
            postgres_url="postgresql://user:secret@db:5432/app"
        )
        assert "secret" not in repr(config)


class TestSqlHelpers:

    def test_placeholder_conversion(self):
        assert _convert_to_sqlite("WHERE id = $1 AND v = $12") == "WHERE id = ?1 AND v = ?12"

    def test_timestamps_sort_lexically(self):
        earlier = datetime(2026, 1, 1, 9, 5, tzinfo=timezone.utc)
        later = earlier + timedelta(microseconds=1)

        assert format_timestamp(earlier) < format_timestamp(later)
        assert len(format_timestamp(earlier)) == len(format_timestamp(later))

    def test_naive_timestamps_treated_as_utc(self):
        naive = datetime(2026, 1, 1, 9, 0)
        assert format_timestamp(naive) == format_timestamp(naive.replace(tzinfo=timezone.utc))

    @pytest.mark.parametrize("name", ["boards", "meeting_notes", "_t1"])
    def test_valid_identifiers(self, name):
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["Boards", "1boards", "boards;", "a b", ""])
    def test_invalid_identifiers(self, name):
        with pytest.raises(ValueError):
            validate_identifier(name)

    def test_postgres_ddl_uses_jsonb(self):
        statements = outbox_ddl(DatabaseBackend.POSTGRESQL)
        assert "JSONB" in statements[0]
        assert "TIMESTAMPTZ" in statements[0]

    @pytest.mark.parametrize("backend", list(DatabaseBackend))
    def test_claim_index_follows_claim_filter(self, backend):
        statements = outbox_ddl(backend)
        claim_index = next(s for s in statements if "_claim ON" in s)
        assert claim_index.endswith("(status, next_attempt_at, created_at)")

    def test_entity_ddl(self):
        ddl = entity_table_ddl("boards", DatabaseBackend.SQLITE)[0]
        assert "CREATE TABLE IF NOT EXISTS boards" in ddl
        assert "version INTEGER" in ddl
