"""
Unit tests for storage layer.

Tests schema creation, envelope encoding and the repository operations the
vault relies on.
"""

import base64
import os
import shutil
import tempfile
from datetime import datetime, timezone

import pytest

from journal_guard.core.errors import IntegrityError
from journal_guard.storage.db import get_connection
from journal_guard.storage.models import (
    EncryptedRecord,
    FormatTag,
    LegacyRecord,
    decode_record,
    encode_record,
)
from journal_guard.storage.repository import (
    VAULT_METADATA_KEY,
    LedgerRepository,
    RecordRepository,
    initialize_schema,
)


class StorageTestCase:
    """Temporary database per test."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestStorageSchema(StorageTestCase):
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
            assert {"meta", "records", "privacy_budget_ledger", "audit_event"} <= tables

            cursor = conn.execute("PRAGMA table_info(records)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == ["store_id", "record_key", "payload"]
        finally:
            conn.close()

    def test_schema_creation_is_repeatable(self):
        """Test initializing twice keeps existing rows."""
        RecordRepository(self.db_path).set_meta("k", "v")
        initialize_schema(self.db_path)
        assert RecordRepository(self.db_path).get_meta("k") == "v"

    def test_no_version_marker_written(self):
        """Test schema creation leaves the version to the migration engine."""
        assert RecordRepository(self.db_path).get_schema_version() is None


class TestEnvelopeEncoding:
    """Test wire format parsing."""

    def test_current_envelope(self):
        """Test a current record encodes to the documented fields."""
        record = EncryptedRecord(nonce=b"\x01" * 12, ciphertext=b"\x02" * 20)
        wire = encode_record(record)

        assert set(wire) == {"formatTag", "nonce", "ciphertext", "recordVersion"}
        assert decode_record(wire) == record

    def test_tagged_legacy_envelope(self):
        """Test an envelope tagged "legacy" maps its nonce and ciphertext to the legacy record."""
        wire = {
            "formatTag": "legacy",
            "nonce": base64.b64encode(b"\x03" * 12).decode("ascii"),
            "ciphertext": base64.b64encode(b"sealed").decode("ascii"),
            "recordVersion": 1,
        }
        record = decode_record(wire)
        assert record == LegacyRecord(iv=b"\x03" * 12, data=b"sealed")

    def test_legacy_envelope_detected_by_shape(self):
        """Test iv/data without a format tag is the legacy envelope."""
        wire = {
            "iv": base64.b64encode(b"\x00" * 12).decode("ascii"),
            "data": base64.b64encode(b"abc").decode("ascii"),
        }
        record = decode_record(wire)
        assert isinstance(record, LegacyRecord)
        assert record.format_tag is FormatTag.LEGACY

    @pytest.mark.parametrize("wire", [
        {},
        {"formatTag": "current", "nonce": "AAAA"},
        {"formatTag": "current", "nonce": "!!", "ciphertext": "AAAA", "recordVersion": 1},
        {"formatTag": "current", "nonce": "AAAA", "ciphertext": "AAAA", "recordVersion": "1"},
        {"formatTag": "future", "nonce": "AAAA", "ciphertext": "AAAA"},
        {"iv": "AAAA"},
        {"formatTag": "legacy", "nonce": "AAAA"},
    ])
    def test_malformed_envelopes(self, wire):
        """Test anything outside the two shapes is an integrity failure."""
        with pytest.raises(IntegrityError):
            decode_record(wire)


class TestRecordRepository(StorageTestCase):
    """Test record rows and metadata."""

    def test_write_replaces(self):
        """Test a second write to the same key replaces the first."""
        repository = RecordRepository(self.db_path)
        repository.write_record("entries", "k", {"v": 1})
        repository.write_record("entries", "k", {"v": 2})

        assert repository.read_record("entries", "k") == {"v": 2}
        assert repository.store_counts() == {"entries": 1}

    def test_commit_migration_touches_only_changes(self):
        """Test the diff commit writes changed rows, removes missing ones and sets the version."""
        repository = RecordRepository(self.db_path)
        before = {"a": {"1": {"v": 1}, "2": {"v": 2}}}
        repository.commit_migration({}, before, 1)

        after = {"a": {"1": {"v": 1}}, "b": {"2": {"v": 2}}}
        written, removed = repository.commit_migration(before, after, 2)

        assert (written, removed) == (1, 1)
        assert repository.load_stores() == after
        assert repository.get_schema_version() == 2

    def test_wipe(self):
        """Test wipe clears records and metadata."""
        repository = RecordRepository(self.db_path)
        repository.write_record("entries", "k", {"v": 1})
        repository.set_meta(VAULT_METADATA_KEY, "{}")

        repository.wipe()

        assert repository.store_counts() == {}
        assert repository.get_meta(VAULT_METADATA_KEY) is None


class TestLedgerRepository(StorageTestCase):
    """Test ledger rows."""

    def test_compare_and_set(self):
        """Test writes succeed only from the expected consumption."""
        ledger = LedgerRepository(self.db_path)
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        end = datetime(2026, 1, 2, tzinfo=timezone.utc)

        assert ledger.compare_and_set("u1", start, end, 0.0, 0.3, 1.0)
        assert not ledger.compare_and_set("u1", start, end, 0.0, 0.5, 1.0)
        assert ledger.fetch("u1", start)[2] == pytest.approx(0.3)

    def test_purge_before(self):
        """Test only finished windows are purged."""
        ledger = LedgerRepository(self.db_path)
        day1 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        day2 = datetime(2026, 1, 2, tzinfo=timezone.utc)
        day3 = datetime(2026, 1, 3, tzinfo=timezone.utc)
        ledger.compare_and_set("u1", day1, day2, 0.0, 0.1, 1.0)
        ledger.compare_and_set("u1", day2, day3, 0.0, 0.1, 1.0)

        assert ledger.purge_before(day2) == 1
        assert ledger.fetch("u1", day1) is None
        assert ledger.fetch("u1", day2) is not None


class TestConnection(StorageTestCase):
    """Test connection settings for worker-thread access."""

    def test_wal_and_busy_timeout(self):
        """Test connections use WAL journaling and wait on a locked database."""
        conn = get_connection(self.db_path)
        try:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 10000
        finally:
            conn.close()

    def test_missing_directory_created(self):
        """Test a database path in a new directory can be opened."""
        nested = os.path.join(self.temp_dir, "nested", "vault.db")
        initialize_schema(nested)
        assert os.path.exists(nested)


class TestCommitRekey(StorageTestCase):
    """Test the combined record and metadata rewrite."""

    def test_rewrites_records_and_metadata_together(self):
        """Test every existing record and the metadata are replaced."""
        repository = RecordRepository(self.db_path)
        repository.write_record("entries", "a", {"v": 1})
        repository.set_meta(VAULT_METADATA_KEY, "old")

        rewritten = repository.commit_rekey({"entries": {"a": {"v": 2}}}, "new")

        assert rewritten == 1
        assert repository.read_record("entries", "a") == {"v": 2}
        assert repository.get_meta(VAULT_METADATA_KEY) == "new"

    def test_deleted_record_not_recreated(self):
        """Test a record removed in the meantime stays removed."""
        repository = RecordRepository(self.db_path)
        repository.write_record("entries", "a", {"v": 1})
        repository.delete_record("entries", "a")

        assert repository.commit_rekey({"entries": {"a": {"v": 2}}}, "new") == 0
        assert repository.read_record("entries", "a") is None
