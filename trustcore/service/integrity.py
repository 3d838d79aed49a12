from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from trustcore.logging import get_logger
from trustcore.service.audit import (
    GENESIS_HASH,
    AuditStore,
    collapse_sequence_ranges,
    compute_entry_hash,
)
from trustcore.service.errors import ConfigurationError, IntegrityViolation
from trustcore.service.fs import atomic_write
from trustcore.service.store_calls import call_store
from trustcore.storage.models import AuditLogEntry, IntegrityReport

logger = get_logger(__name__)

SIGNING_KEY_FILENAME = ".audit_signing_key"


def load_signing_key(path: Optional[str], fs_root: str) -> Ed25519PrivateKey:
    """Load the Ed25519 audit signing key, generating and persisting one if needed.

    An explicit ``path`` must already hold a PEM Ed25519 private key. Without
    one, a key is kept under ``fs_root`` so signatures stay verifiable across
    restarts.
    """
    if path:
        try:
            key = serialization.load_pem_private_key(Path(path).read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as exc:
            raise ConfigurationError(
                "unable to load audit signing key", detail={"path": path}
            ) from exc
        if not isinstance(key, Ed25519PrivateKey):
            raise ConfigurationError("audit signing key must be Ed25519")
        return key

    root = Path(fs_root)
    key_path = root / SIGNING_KEY_FILENAME
    if key_path.exists() and not key_path.is_symlink():
        try:
            key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as exc:
            raise ConfigurationError(
                "persisted audit signing key is unreadable", detail={"path": str(key_path)}
            ) from exc
        if isinstance(key, Ed25519PrivateKey):
            return key
        raise ConfigurationError("persisted audit signing key is not Ed25519")

    key = Ed25519PrivateKey.generate()
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    try:
        atomic_write(key_path, pem, mode=0o600)
    except OSError as exc:
        raise ConfigurationError(
            "unable to persist audit signing key", detail={"path": str(key_path)}
        ) from exc
    logger.info("audit_signing_key_generated", path=str(key_path))
    return key


def _is_purged(first: int, last: int, purged: List[Tuple[int, int]]) -> bool:
    return any(lo <= first and last <= hi for lo, hi in purged)


def verify_chain(
    entries: Iterable[AuditLogEntry],
    *,
    purged_ranges: Iterable[Tuple[int, int]] = (),
    head: Optional[Tuple[int, str]] = None,
) -> Dict[int, bool]:
    """Walk entries in sequence order and report each one's validity.

    An entry is valid when its stored hash matches its content plus stored
    previous hash, its previous hash matches the predecessor's stored hash (or
    genesis for the first entry), and no earlier entry in the walk was invalid.
    A predecessor whose successor no longer links to it fails as well, since
    either one may have been rewritten.

    Missing sequence ids are accepted only when ``purged_ranges`` records them;
    the walk then restarts at the gap and trusts the next entry's stored
    previous hash. Any other missing id is reported invalid, and so is every
    entry after it. With ``head`` given, entries missing from the tail are
    reported invalid and the last entry must carry the head's hash.
    """
    purged = collapse_sequence_ranges(purged_ranges)
    results: Dict[int, bool] = {}

    def mark_missing(first: int, last: int) -> None:
        for seq in range(first, last + 1):
            if not _is_purged(seq, seq, purged):
                results[seq] = False

    previous: Optional[AuditLogEntry] = None
    broken = False
    for entry in sorted(entries, key=lambda e: e.sequence_id):
        expected = previous.sequence_id + 1 if previous is not None else 1
        recomputed = compute_entry_hash(entry, entry.previous_entry_hash)
        self_ok = hmac.compare_digest(recomputed, entry.entry_hash or "")
        if entry.sequence_id == expected and previous is None:
            link_ok = entry.previous_entry_hash == GENESIS_HASH
        elif entry.sequence_id == expected:
            link_ok = hmac.compare_digest(
                entry.previous_entry_hash or "", previous.entry_hash or ""
            )
            if not link_ok:
                results[previous.sequence_id] = False
        elif _is_purged(expected, entry.sequence_id - 1, purged):
            link_ok = True
        else:
            mark_missing(expected, entry.sequence_id - 1)
            link_ok = False
        valid = self_ok and link_ok and not broken
        if not valid:
            broken = True
        results[entry.sequence_id] = valid
        previous = entry

    if head is not None:
        head_sequence, head_hash = head
        last_seen = previous.sequence_id if previous is not None else 0
        if last_seen < head_sequence:
            mark_missing(last_seen + 1, head_sequence)
        elif previous is not None and not hmac.compare_digest(
            previous.entry_hash or "", head_hash or ""
        ):
            results[previous.sequence_id] = False
    return results


class LogIntegrityEngine:
    """Verifies the audit hash chain and signs entries for external evidence."""

    def __init__(
        self,
        store: AuditStore,
        signing_key: Ed25519PrivateKey,
        *,
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self._signing_key = signing_key
        self._public_key: Ed25519PublicKey = signing_key.public_key()
        self.store_timeout = store_timeout
        self.key_id = hashlib.sha256(self.public_key_pem()).hexdigest()[:16]

    def public_key_pem(self) -> bytes:
        return self._public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    async def _chain_results(self) -> Dict[int, bool]:
        # Head first, then entries up to it, then purges: a concurrent append or
        # purge between the reads cannot show up as a missing entry
        head = await call_store(self.store.get_audit_chain_head, timeout=self.store_timeout)
        if head is None:
            # Entries without a head mean the head row was removed
            orphans = await call_store(
                self.store.list_audit_entries, timeout=self.store_timeout
            )
            return {entry.sequence_id: False for entry in orphans}
        entries = await call_store(
            self.store.list_audit_entries, None, head[0], timeout=self.store_timeout
        )
        purged = await call_store(
            self.store.list_purged_audit_ranges, timeout=self.store_timeout
        )
        return verify_chain(entries, purged_ranges=purged, head=head)

    async def verify_entry(self, sequence_id: int) -> bool:
        results = await self._chain_results()
        return results.get(sequence_id, False)

    async def verify_range(
        self, from_sequence: Optional[int] = None, to_sequence: Optional[int] = None
    ) -> Dict[int, bool]:
        results = await self._chain_results()
        in_range = {
            seq: results[seq]
            for seq in sorted(results)
            if (from_sequence is None or seq >= from_sequence)
            and (to_sequence is None or seq <= to_sequence)
        }
        failed = [seq for seq, ok in in_range.items() if not ok]
        if failed:
            logger.warning(
                "audit_integrity_violation",
                first_failed=failed[0],
                failed_count=len(failed),
            )
        return in_range

    async def sign(self, sequence_id: int) -> str:
        """Sign a verified entry's hash; the signature is stored on the entry."""
        if not await self.verify_entry(sequence_id):
            raise IntegrityViolation(
                "refusing to sign an entry that fails verification",
                detail={"sequence_id": sequence_id},
            )
        entry = await call_store(
            self.store.get_audit_entry, sequence_id, timeout=self.store_timeout
        )
        signature = base64.b64encode(
            self._signing_key.sign(entry.entry_hash.encode("utf-8"))
        ).decode("ascii")
        await call_store(
            self.store.set_audit_signature,
            sequence_id,
            signature,
            timeout=self.store_timeout,
        )
        return signature

    async def verify_signature(self, sequence_id: int, signature: str) -> bool:
        entry = await call_store(
            self.store.get_audit_entry, sequence_id, timeout=self.store_timeout
        )
        if entry is None or not signature:
            return False
        try:
            raw = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            return False
        # Sign-time hash must still match the entry's current content
        recomputed = compute_entry_hash(entry, entry.previous_entry_hash)
        try:
            self._public_key.verify(raw, recomputed.encode("utf-8"))
        except InvalidSignature:
            return False
        return True

    async def generate_report(
        self, from_sequence: Optional[int] = None, to_sequence: Optional[int] = None
    ) -> IntegrityReport:
        results = await self.verify_range(from_sequence, to_sequence)
        total = len(results)
        failed = sorted(seq for seq, ok in results.items() if not ok)
        verified = total - len(failed)
        score = round(verified * 100.0 / total, 2) if total else 0.0
        return IntegrityReport(
            total=total,
            verified_count=verified,
            failed_ids=failed,
            score=score,
            generated_at=datetime.now(timezone.utc),
            from_sequence=from_sequence,
            to_sequence=to_sequence,
        )

    async def generate_report_for_period(
        self, from_date: Optional[datetime], to_date: Optional[datetime]
    ) -> IntegrityReport:
        bounds = await call_store(
            self.store.sequence_bounds, from_date, to_date, timeout=self.store_timeout
        )
        if bounds is None:
            return IntegrityReport(
                total=0,
                verified_count=0,
                failed_ids=[],
                score=0.0,
                generated_at=datetime.now(timezone.utc),
            )
        return await self.generate_report(bounds[0], bounds[1])
