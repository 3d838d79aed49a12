"""Hash-chain verification, signatures and integrity reports."""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ec import SECP256R1, generate_private_key
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from trustcore.service.audit import AuditRecorder, compute_entry_hash
from trustcore.service.errors import ConfigurationError, IntegrityViolation
from trustcore.service.integrity import (
    SIGNING_KEY_FILENAME,
    LogIntegrityEngine,
    load_signing_key,
    verify_chain,
)
from trustcore.storage.memory import MemoryStore


@pytest.fixture
def engine(memory_store):
    return LogIntegrityEngine(memory_store, Ed25519PrivateKey.generate())


async def _write(recorder, count, **kwargs):
    for i in range(count):
        await recorder.record_system_action("HEARTBEAT", {"n": i}, **kwargs)


async def test_intact_chain_verifies(recorder, engine):
    await _write(recorder, 5)
    results = await engine.verify_range(1, 5)
    assert results == {1: True, 2: True, 3: True, 4: True, 5: True}


async def test_tampering_invalidates_suffix(recorder, memory_store, engine):
    await _write(recorder, 5)
    memory_store.audit_entries[2].action = "NOTHING_TO_SEE"

    results = await engine.verify_range(1, 5)

    assert results[1] is True
    assert [results[i] for i in range(2, 6)] == [False] * 4


async def test_verify_entry_sees_earlier_tampering(recorder, memory_store, engine):
    await _write(recorder, 4)
    memory_store.audit_entries[1].details = {"n": 999}

    assert await engine.verify_entry(4) is False


async def test_relinked_entry_fails_with_its_successor(recorder, memory_store, engine):
    await _write(recorder, 3)
    # Rewrite entry 2 and recompute its own hash, leaving entry 3 pointing at the old one
    entry = memory_store.audit_entries[2]
    entry.action = "FORGED"
    entry.entry_hash = compute_entry_hash(entry, entry.previous_entry_hash)

    results = await engine.verify_range(1, 3)
    assert results == {1: True, 2: False, 3: False}
    assert await engine.verify_entry(2) is False


async def test_deleted_entry_breaks_the_chain(recorder, memory_store, engine):
    await _write(recorder, 5)
    del memory_store.audit_entries[3]

    results = await engine.verify_range(1, 5)
    report = await engine.generate_report(1, 5)

    assert results == {1: True, 2: True, 3: False, 4: False, 5: False}
    assert report.failed_ids == [3, 4, 5]
    assert not report.all_verified


async def test_truncated_tail_is_reported(recorder, memory_store, engine):
    await _write(recorder, 5)
    del memory_store.audit_entries[5]
    del memory_store.audit_entries[4]

    results = await engine.verify_range()

    assert results == {1: True, 2: True, 3: True, 4: False, 5: False}
    assert await engine.verify_entry(5) is False


async def test_rewritten_last_entry_disagrees_with_head(recorder, memory_store, engine):
    await _write(recorder, 3)
    last = memory_store.audit_entries[3]
    last.details = {"n": "rewritten"}
    last.entry_hash = compute_entry_hash(last, last.previous_entry_hash)

    results = await engine.verify_range()
    assert results == {1: True, 2: True, 3: False}


async def test_missing_head_fails_every_entry(recorder, memory_store, engine):
    await _write(recorder, 2)
    memory_store._chain_head = None

    assert await engine.verify_range() == {1: False, 2: False}


async def test_recorded_purge_is_not_a_gap(recorder, memory_store, engine):
    await _write(recorder, 5)
    memory_store.mark_audit_entries_archived([1, 2, 4], datetime.now(timezone.utc))
    purged, _ = memory_store.purge_audit_entries([1, 2, 4])

    assert purged == 3
    assert memory_store.list_purged_audit_ranges() == [(1, 2), (4, 4)]
    assert await engine.verify_range() == {3: True, 5: True}


async def test_purged_ranges_survive_reload(recorder, memory_store, engine):
    await _write(recorder, 3)
    memory_store.mark_audit_entries_archived([1], datetime.now(timezone.utc))
    memory_store.purge_audit_entries([1])

    reloaded = MemoryStore(fs_root=str(memory_store.fs_root))
    other = LogIntegrityEngine(reloaded, Ed25519PrivateKey.generate())
    assert await other.verify_range() == {2: True, 3: True}


async def test_verify_unknown_entry(engine):
    assert await engine.verify_entry(42) is False


def test_chain_restarts_after_purged_prefix(memory_store):
    asyncio.run(_write(AuditRecorder(memory_store), 4))
    entries = memory_store.list_audit_entries(3, 4)
    assert verify_chain(entries, purged_ranges=[(1, 2)]) == {3: True, 4: True}


def test_unrecorded_prefix_gap_fails(memory_store):
    asyncio.run(_write(AuditRecorder(memory_store), 4))
    entries = memory_store.list_audit_entries(3, 4)
    assert verify_chain(entries) == {1: False, 2: False, 3: False, 4: False}


async def test_sign_and_verify(recorder, memory_store, engine):
    await _write(recorder, 2)

    signature = await engine.sign(2)

    assert memory_store.get_audit_entry(2).signature == signature
    assert await engine.verify_signature(2, signature)
    assert not await engine.verify_signature(1, signature)
    assert not await engine.verify_signature(2, "not base64!")
    assert not await engine.verify_signature(2, "")


async def test_signature_fails_after_tampering(recorder, memory_store, engine):
    await _write(recorder, 1)
    signature = await engine.sign(1)
    memory_store.audit_entries[1].details = {"n": "changed"}

    assert not await engine.verify_signature(1, signature)


async def test_signature_from_other_key_rejected(recorder, memory_store, engine):
    await _write(recorder, 1)
    other = LogIntegrityEngine(memory_store, Ed25519PrivateKey.generate())
    signature = await other.sign(1)

    assert not await engine.verify_signature(1, signature)
    assert engine.key_id != other.key_id


async def test_refuses_to_sign_tampered_entry(recorder, memory_store, engine):
    await _write(recorder, 1)
    memory_store.audit_entries[1].action = "FORGED"
    with pytest.raises(IntegrityViolation):
        await engine.sign(1)


async def test_report(recorder, memory_store, engine):
    await _write(recorder, 4)
    memory_store.audit_entries[3].action = "FORGED"

    report = await engine.generate_report(1, 4)

    assert report.total == 4
    assert report.verified_count == 2
    assert report.failed_ids == [3, 4]
    assert report.score == 50.0
    assert not report.all_verified


async def test_report_for_empty_period(recorder, engine):
    await _write(recorder, 2)
    future = datetime.now(timezone.utc) + timedelta(days=30)

    report = await engine.generate_report_for_period(future, future + timedelta(days=1))

    assert report.total == 0
    assert report.score == 0.0
    assert report.all_verified


async def test_report_for_period(recorder, engine):
    await _write(recorder, 3)
    report = await engine.generate_report_for_period(
        datetime.now(timezone.utc) - timedelta(hours=1), None
    )
    assert report.total == 3
    assert report.score == 100.0


def test_signing_key_persisted(tmp_path):
    first = load_signing_key(None, str(tmp_path))
    second = load_signing_key(None, str(tmp_path))

    key_path = tmp_path / SIGNING_KEY_FILENAME
    assert key_path.exists()
    assert oct(os.stat(key_path).st_mode & 0o777) == "0o600"
    raw = serialization.Encoding.Raw
    fmt = serialization.PublicFormat.Raw
    assert first.public_key().public_bytes(raw, fmt) == second.public_key().public_bytes(raw, fmt)


def test_explicit_key_must_be_ed25519(tmp_path):
    ec_key = generate_private_key(SECP256R1())
    pem_path = tmp_path / "ec.pem"
    pem_path.write_bytes(
        ec_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    with pytest.raises(ConfigurationError):
        load_signing_key(str(pem_path), str(tmp_path))
    with pytest.raises(ConfigurationError):
        load_signing_key(str(tmp_path / "missing.pem"), str(tmp_path))
