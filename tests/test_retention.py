"""Retention cycles: archival, purge, cold bundles and statistics."""

import asyncio
import gzip
import json
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from trustcore.service.email import EmailService
from trustcore.service.errors import ValidationError
from trustcore.service.integrity import LogIntegrityEngine
from trustcore.service.retention import (
    ALREADY_RUNNING,
    FLAG_REASON,
    LEASE_TTL_SECONDS,
    MANIFEST_NAME,
    RetentionScheduler,
    build_archive_cipher,
)
from trustcore.storage.models import AuditLogFilter, AuditTier, RetentionPolicy

NOTIFY = "ops@example.com"


def _policy(**overrides):
    values = {
        "active_retention_days": 30,
        "archive_retention_days": 365,
        "notify_address": NOTIFY,
    }
    values.update(overrides)
    return RetentionPolicy(**values)


@pytest.fixture
def email():
    return EmailService()


@pytest.fixture
def scheduler(memory_store, recorder, email, tmp_path):
    return RetentionScheduler(
        memory_store,
        LogIntegrityEngine(memory_store, Ed25519PrivateKey.generate()),
        archive_dir=str(tmp_path / "archive"),
        default_policy=_policy(),
        cipher=build_archive_cipher("archive-key-for-tests"),
        email=email,
        recorder=recorder,
    )


async def _aged(recorder, action, days):
    stamp = datetime.now(timezone.utc) - timedelta(days=days)
    return await recorder.append(action, entity_type="Report", timestamp=stamp)


async def test_archives_valid_and_flags_broken(scheduler, recorder, memory_store, email):
    await _aged(recorder, "VIEW_REPORT", 31)
    await _aged(recorder, "EXPORT_REPORT", 31)
    memory_store.audit_entries[2].details = {"edited": True}

    result = await scheduler.run_now()

    assert result.success
    assert result.archived == 1
    assert result.flagged_ids == [2]
    assert memory_store.audit_entries[1].tier == AuditTier.ARCHIVED
    assert memory_store.audit_entries[1].archived_at == result.executed_at
    broken = memory_store.audit_entries[2]
    assert broken.tier == AuditTier.ACTIVE
    assert broken.integrity_flagged
    assert broken.flag_reason == FLAG_REASON

    subjects = [m["subject"] for m in email.sent]
    assert subjects == [
        "Audit log integrity violation detected",
        "Audit retention run succeeded",
    ]
    assert email.sent[0]["to"] == NOTIFY


async def test_flag_alert_sent_once(scheduler, recorder, memory_store, email):
    await _aged(recorder, "VIEW_REPORT", 31)
    memory_store.audit_entries[1].action = "FORGED"

    await scheduler.run_now()
    second = await scheduler.run_now()

    assert second.flagged_ids == [1]
    alerts = [m for m in email.sent if "integrity" in m["subject"]]
    assert len(alerts) == 1


async def test_recent_entries_stay_active(scheduler, recorder, memory_store):
    await _aged(recorder, "VIEW_REPORT", 2)

    result = await scheduler.run_now()

    assert result.archived == 0
    assert result.bundles_written == []
    assert memory_store.audit_entries[1].tier == AuditTier.ACTIVE


async def test_cycle_is_audited(scheduler, recorder):
    await _aged(recorder, "VIEW_REPORT", 31)
    await scheduler.run_now()

    page = await recorder.query(AuditLogFilter(action="RETENTION_RUN"))
    assert len(page.items) == 1
    entry = page.items[0]
    assert entry.is_system_action
    assert entry.details["archived"] == 1


async def test_purges_after_archive_window(memory_store, recorder, tmp_path):
    scheduler = RetentionScheduler(
        memory_store,
        LogIntegrityEngine(memory_store, Ed25519PrivateKey.generate()),
        archive_dir=str(tmp_path / "archive"),
        default_policy=_policy(archive_retention_days=1, notify_address=None),
        cipher=build_archive_cipher("archive-key-for-tests"),
        recorder=recorder,
    )
    await _aged(recorder, "VIEW_REPORT", 31)
    first = await scheduler.run_now()
    assert first.archived == 1

    later = datetime.now(timezone.utc) + timedelta(days=2)
    second = await scheduler.run_now(now=later)

    assert second.success
    assert second.purged == 1
    assert second.bundles_purged == 1
    assert second.space_freed_bytes > 0
    assert 1 not in memory_store.audit_entries
    assert not list((tmp_path / "archive").glob("audit-archive-*"))


async def test_active_entries_are_never_purged(scheduler, recorder, memory_store):
    await _aged(recorder, "VIEW_REPORT", 5)
    far_future = datetime.now(timezone.utc) + timedelta(days=400)
    policy = _policy(auto_archive=False, notify_address=None)
    await scheduler.update_policy(policy)

    result = await scheduler.run_now(now=far_future)

    assert result.purged == 0
    assert 1 in memory_store.audit_entries


async def test_plain_bundle_round_trips(memory_store, recorder, tmp_path):
    archive_dir = tmp_path / "archive"
    scheduler = RetentionScheduler(
        memory_store,
        LogIntegrityEngine(memory_store, Ed25519PrivateKey.generate()),
        archive_dir=str(archive_dir),
        default_policy=_policy(encrypt_archive=False, notify_address=None),
    )
    await _aged(recorder, "VIEW_REPORT", 40)
    await _aged(recorder, "VIEW_REPORT", 35)

    result = await scheduler.run_now()

    [name] = result.bundles_written
    assert name.endswith("-1-2.json.gz")
    document = json.loads(gzip.decompress((archive_dir / name).read_bytes()))
    assert [e["sequence_id"] for e in document["entries"]] == [1, 2]
    assert document["key_id"] == scheduler.integrity.key_id
    manifest = json.loads((archive_dir / MANIFEST_NAME).read_text())
    assert manifest[name]["count"] == 2


async def test_encryption_without_key_fails_cycle(memory_store, recorder, tmp_path):
    scheduler = RetentionScheduler(
        memory_store,
        LogIntegrityEngine(memory_store, Ed25519PrivateKey.generate()),
        archive_dir=str(tmp_path / "archive"),
        default_policy=_policy(notify_address=None),
    )
    await _aged(recorder, "VIEW_REPORT", 31)

    result = await scheduler.run_now()

    assert not result.success
    assert "encryption" in result.error
    assert memory_store.audit_entries[1].tier == AuditTier.ACTIVE
    last = memory_store.get_last_retention_result()
    assert last is not None and not last.success


async def test_verify_archives(scheduler, recorder, tmp_path):
    await _aged(recorder, "VIEW_REPORT", 31)
    result = await scheduler.run_now()
    [name] = result.bundles_written

    report = await scheduler.verify_archives()
    assert report.ok
    assert report.valid == [name]

    bundle = tmp_path / "archive" / name
    bundle.write_bytes(bundle.read_bytes()[:-4] + b"oops")
    report = await scheduler.verify_archives()
    assert not report.ok
    assert report.corrupted[name] == "checksum mismatch"

    bundle.unlink()
    report = await scheduler.verify_archives()
    assert report.missing == [name]
    assert report.checked == 0


async def test_overlapping_cycles_are_refused(scheduler, recorder):
    await _aged(recorder, "VIEW_REPORT", 31)

    results = await asyncio.gather(scheduler.run_now(), scheduler.run_now())

    refused = [r for r in results if r.error == ALREADY_RUNNING]
    completed = [r for r in results if r.success]
    assert len(refused) == 1
    assert len(completed) == 1
    assert completed[0].archived == 1


async def test_statistics(scheduler, recorder, memory_store):
    await _aged(recorder, "VIEW_REPORT", 31)
    await _aged(recorder, "VIEW_REPORT", 31)
    memory_store.audit_entries[2].action = "FORGED"
    result = await scheduler.run_now()

    stats = await scheduler.get_statistics()

    # Entry 2 stays active alongside the RETENTION_RUN record
    assert stats.active_count == 2
    assert stats.archived_count == 1
    assert stats.flagged_count == 1
    assert stats.archived_size_bytes > 0
    assert stats.last_run_at == result.executed_at
    assert stats.last_result.archived == 1
    assert stats.next_run_at is None


async def test_policy_update_is_validated_and_audited(scheduler, recorder, memory_store):
    with pytest.raises(ValidationError):
        await scheduler.update_policy(RetentionPolicy(active_retention_days=0))
    assert memory_store.get_retention_policy() is None

    saved = await scheduler.update_policy(_policy(task_interval_hours=6))

    assert saved.updated_at is not None
    assert (await scheduler.get_policy()).task_interval == timedelta(hours=6)
    page = await recorder.query(AuditLogFilter(action="UPDATE_RETENTION_POLICY"))
    entry = page.items[0]
    assert entry.before_state["task_interval_hours"] == 24
    assert entry.after_state["task_interval_hours"] == 6


async def test_start_and_stop(scheduler):
    await scheduler.start()
    assert scheduler.running
    await scheduler.stop()
    assert not scheduler.running


def test_archive_cipher_needs_key_material():
    assert build_archive_cipher(None) is None
    assert build_archive_cipher("") is None
    cipher = build_archive_cipher("k")
    assert cipher.decrypt(cipher.encrypt(b"payload")) == b"payload"


class RecordingLeaseCache:
    def __init__(self):
        self.acquired = []
        self.extended = 0
        self.released = []

    async def acquire_lock(self, name, owner, ttl_seconds):
        self.acquired.append(ttl_seconds)
        return True

    async def extend_lock(self, name, owner, ttl_seconds):
        self.extended += 1
        return True

    async def release_lock(self, name, owner):
        self.released.append(owner)
        return True


async def test_lease_is_short_and_renewed_during_a_cycle(memory_store, tmp_path, monkeypatch):
    cache = RecordingLeaseCache()
    scheduler = RetentionScheduler(
        memory_store,
        LogIntegrityEngine(memory_store, Ed25519PrivateKey.generate()),
        archive_dir=str(tmp_path / "archive"),
        default_policy=_policy(notify_address=None),
        cache=cache,
        lease_ttl=0.09,
    )
    original = scheduler._run_cycle

    async def slow_cycle(now):
        await asyncio.sleep(0.2)
        return await original(now)

    monkeypatch.setattr(scheduler, "_run_cycle", slow_cycle)
    result = await scheduler.run_now()

    assert result.success
    assert cache.acquired == [1]
    assert cache.extended >= 1
    assert len(cache.released) == 1


def test_default_lease_does_not_span_the_task_interval(scheduler):
    assert scheduler._lease_seconds() == LEASE_TTL_SECONDS
    assert LEASE_TTL_SECONDS < scheduler.default_policy.task_interval.total_seconds()
