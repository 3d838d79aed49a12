from datetime import datetime, timezone
from pathlib import Path

import psycopg
import pytest

from trustcore.storage.errors import StoreUnavailable
from trustcore.storage.models import (
    AuditCategory,
    AuditLogFilter,
    AuditSeverity,
    AuditTier,
)
from trustcore.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class UnreachablePool:
    def connection(self):
        raise psycopg.OperationalError("connection refused")


def _bare_store(tmp_path: Path, pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.fs_root = tmp_path
    return store


def test_unreachable_database_is_store_unavailable(tmp_path: Path):
    store = _bare_store(tmp_path, UnreachablePool())
    with pytest.raises(StoreUnavailable):
        store.get_identity("anyone")


def test_filter_clauses_cover_every_field():
    audit_filter = AuditLogFilter(
        subject_id="sub-1",
        severity=AuditSeverity.HIGH,
        category=AuditCategory.SECURITY,
        tier=AuditTier.ACTIVE,
        subject_identifier="ali",
        from_date=datetime(2026, 1, 1, tzinfo=timezone.utc),
        include_system_actions=False,
        search_text="export",
    )

    clauses, params = PostgresStore._filter_clauses(audit_filter)

    assert "subject_id = %s" in clauses
    assert "severity = %s" in clauses
    assert "subject_identifier ILIKE %s" in clauses
    assert "is_system_action = %s" in clauses
    assert params[:4] == ["sub-1", "high", "security", "active"]
    assert "%ali%" in params
    assert False in params
    assert params[-5:] == ["%export%"] * 5
    assert len(clauses) == 8


def test_empty_filter_has_no_clauses():
    assert PostgresStore._filter_clauses(AuditLogFilter()) == ([], [])


def test_row_to_entry_defaults():
    stamp = datetime(2026, 3, 1, tzinfo=timezone.utc)
    entry = PostgresStore._row_to_entry(
        {
            "sequence_id": "7",
            "timestamp": stamp,
            "action": "LOGIN",
            "entity_type": "Authentication",
            "severity": "medium",
            "category": "authentication",
            "entry_hash": "a" * 64,
            "previous_entry_hash": "0" * 64,
            "tier": None,
        }
    )

    assert entry.sequence_id == 7
    assert entry.tier == AuditTier.ACTIVE
    assert entry.severity == AuditSeverity.MEDIUM
    assert entry.integrity_flagged is False
    assert entry.details is None


def test_row_to_identity_needs_no_connection(tmp_path: Path):
    store = _bare_store(tmp_path, DummyPool())
    assert store._row_to_identity(
        {
            "subject_id": "s1",
            "identifier": "alice",
            "email": "alice@example.com",
            "secret_digest": None,
            "secret_algo": "argon2id",
            "active": True,
            "email_verified": True,
            "roles": ["user"],
            "display_name": None,
            "federated_provider": None,
            "federated_subject": None,
            "created_at": datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
    ).identifier == "alice"
