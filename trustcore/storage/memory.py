from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from trustcore.logging import get_logger
from trustcore.service.audit import (
    GENESIS_HASH,
    collapse_sequence_ranges,
    entry_from_dict,
    entry_size,
    entry_to_dict,
)
from trustcore.service.fs import atomic_write
from trustcore.storage.errors import ConstraintViolation, StoreUnavailable
from trustcore.storage.models import (
    AuditLogEntry,
    AuditLogFilter,
    AuditTier,
    FederatedProfile,
    Identity,
    RefreshTokenRecord,
    RetentionPolicy,
    RetentionTaskResult,
    utcnow,
)


class MemoryStore:
    """In-process durable store for identities, refresh tokens and the audit log.

    State is mirrored to ``fs_root/state/trust_store.json`` after every write.
    A write that cannot be made durable is rolled back to the last persisted
    state and surfaces as ``StoreUnavailable``.
    """

    def __init__(self, fs_root: str = "/tmp/trustcore") -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.audit_entries: Dict[int, AuditLogEntry] = {}
        # Head survives purges so new appends keep chaining from the real tail
        self._chain_head: Optional[Tuple[int, str]] = None
        # Ids removed by retention; verification accepts gaps only inside these
        self.purged_ranges: List[Tuple[int, int]] = []
        self.retention_policy: Optional[RetentionPolicy] = None
        self.last_retention_result: Optional[RetentionTaskResult] = None
        # RLock so _persist_state can re-enter from inside a write
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "trust_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- identities -------------------------------------------------------

    def find_by_identifier(self, identifier: str) -> Optional[Identity]:
        needle = (identifier or "").strip().lower()
        with self._data_lock:
            for identity in self.identities.values():
                if identity.identifier.lower() == needle:
                    return copy.deepcopy(identity)
            return None

    def find_by_email(self, email: str) -> Optional[Identity]:
        needle = (email or "").strip().lower()
        if not needle:
            return None
        with self._data_lock:
            for identity in self.identities.values():
                if (identity.email or "").lower() == needle:
                    return copy.deepcopy(identity)
            return None

    def get_identity(self, subject_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(subject_id)
            return copy.deepcopy(identity) if identity else None

    def _check_unique(self, identifier: str, email: Optional[str]) -> None:
        lowered = identifier.lower()
        lowered_email = (email or "").lower()
        for existing in self.identities.values():
            if existing.identifier.lower() == lowered:
                raise ConstraintViolation(
                    "identifier already exists", {"field": "identifier"}
                )
            if lowered_email and (existing.email or "").lower() == lowered_email:
                raise ConstraintViolation("email already exists", {"field": "email"})

    def create_identity(
        self,
        identifier: str,
        *,
        email: Optional[str] = None,
        secret_digest: Optional[str] = None,
        secret_algo: str = "argon2id",
        roles: Optional[List[str]] = None,
        active: bool = True,
        email_verified: bool = False,
        display_name: Optional[str] = None,
    ) -> Identity:
        with self._data_lock:
            self._check_unique(identifier, email)
            identity = Identity(
                subject_id=str(uuid.uuid4()),
                identifier=identifier,
                email=email,
                secret_digest=secret_digest,
                secret_algo=secret_algo,
                active=active,
                email_verified=email_verified,
                roles=list(roles) if roles else ["user"],
                display_name=display_name,
            )
            self.identities[identity.subject_id] = identity
            self._persist_state()
            return copy.deepcopy(identity)

    def create_from_federated_profile(self, profile: FederatedProfile) -> Identity:
        with self._data_lock:
            self._check_unique(profile.email, profile.email)
            identity = Identity(
                subject_id=str(uuid.uuid4()),
                identifier=profile.email,
                email=profile.email,
                email_verified=profile.email_verified,
                display_name=profile.display_name,
                federated_provider=profile.provider,
                federated_subject=profile.subject_external_id,
            )
            self.identities[identity.subject_id] = identity
            self._persist_state()
            return copy.deepcopy(identity)

    def update_secret_digest(self, subject_id: str, digest: str, algo: str) -> bool:
        with self._data_lock:
            identity = self.identities.get(subject_id)
            if not identity:
                return False
            identity.secret_digest = digest
            identity.secret_algo = algo
            self._persist_state()
            return True

    def set_identity_active(self, subject_id: str, active: bool) -> bool:
        with self._data_lock:
            identity = self.identities.get(subject_id)
            if not identity:
                return False
            identity.active = active
            self._persist_state()
            return True

    # -- refresh tokens ---------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token hash already exists", {"field": "token_hash"}
                )
            self.refresh_tokens[record.token_hash] = replace(record)
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def list_refresh_tokens(self, subject_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return [
                replace(r)
                for r in sorted(self.refresh_tokens.values(), key=lambda r: r.issued_at)
                if r.subject_id == subject_id
            ]

    def revoke_refresh_token(self, token_hash: str, reason: str) -> bool:
        """Revoke by hash; a record that is already revoked keeps its first reason."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None:
                return False
            if not record.revoked:
                record.revoked = True
                record.revoked_reason = reason
                record.revoked_at = utcnow()
                self._persist_state()
            return True

    def revoke_refresh_token_if_active(
        self, token_hash: str, reason: str, replaced_by_hash: Optional[str] = None
    ) -> Optional[RefreshTokenRecord]:
        """Compare-and-swap revoke; returns the updated record only for the winner."""
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if record is None or record.revoked:
                return None
            record.revoked = True
            record.revoked_reason = reason
            record.revoked_at = utcnow()
            record.replaced_by_hash = replaced_by_hash
            self._persist_state()
            return replace(record)

    def revoke_subject_refresh_tokens(self, subject_id: str, reason: str) -> bool:
        with self._data_lock:
            found = False
            changed = False
            now = utcnow()
            for record in self.refresh_tokens.values():
                if record.subject_id != subject_id:
                    continue
                found = True
                if not record.revoked:
                    record.revoked = True
                    record.revoked_reason = reason
                    record.revoked_at = now
                    changed = True
            if changed:
                self._persist_state()
            return found

    # -- audit log --------------------------------------------------------

    def get_audit_chain_head(self) -> Optional[Tuple[int, str]]:
        with self._data_lock:
            return self._chain_head

    def append_audit_entry(
        self, entry: AuditLogEntry, expected_previous_hash: str
    ) -> AuditLogEntry:
        with self._data_lock:
            last_sequence, current_hash = self._chain_head or (0, GENESIS_HASH)
            if (
                current_hash != expected_previous_hash
                or entry.sequence_id != last_sequence + 1
                or entry.previous_entry_hash != current_hash
            ):
                raise ConstraintViolation(
                    "audit chain head moved",
                    {"expected_sequence": last_sequence + 1},
                )
            stored = copy.deepcopy(entry)
            stored.tier = AuditTier.ACTIVE
            self.audit_entries[stored.sequence_id] = stored
            self._chain_head = (stored.sequence_id, stored.entry_hash)
            self._persist_state()
            return copy.deepcopy(stored)

    def get_audit_entry(self, sequence_id: int) -> Optional[AuditLogEntry]:
        with self._data_lock:
            entry = self.audit_entries.get(sequence_id)
            return copy.deepcopy(entry) if entry else None

    def list_audit_entries(
        self,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            return [
                copy.deepcopy(self.audit_entries[seq])
                for seq in sorted(self.audit_entries)
                if (from_sequence is None or seq >= from_sequence)
                and (to_sequence is None or seq <= to_sequence)
            ]

    def query_audit_entries(
        self,
        audit_filter: AuditLogFilter,
        *,
        limit: int,
        before: Optional[Tuple[datetime, int]] = None,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            ordered = sorted(
                self.audit_entries.values(),
                key=lambda e: (e.timestamp, e.sequence_id),
                reverse=True,
            )
            results: List[AuditLogEntry] = []
            for entry in ordered:
                if before and (entry.timestamp, entry.sequence_id) >= before:
                    continue
                if not audit_filter.matches(entry):
                    continue
                results.append(copy.deepcopy(entry))
                if len(results) >= limit:
                    break
            return results

    def sequence_bounds(
        self, from_date: Optional[datetime], to_date: Optional[datetime]
    ) -> Optional[Tuple[int, int]]:
        with self._data_lock:
            ids = [
                e.sequence_id
                for e in self.audit_entries.values()
                if (from_date is None or e.timestamp >= from_date)
                and (to_date is None or e.timestamp <= to_date)
            ]
            if not ids:
                return None
            return min(ids), max(ids)

    def list_aged_audit_entries(
        self, tier: AuditTier, older_than: datetime
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            aged = []
            for seq in sorted(self.audit_entries):
                entry = self.audit_entries[seq]
                if entry.tier != tier:
                    continue
                reference = entry.timestamp
                if tier == AuditTier.ARCHIVED:
                    reference = entry.archived_at or entry.timestamp
                if reference < older_than:
                    aged.append(copy.deepcopy(entry))
            return aged

    def mark_audit_entries_archived(
        self, sequence_ids: List[int], archived_at: datetime
    ) -> int:
        with self._data_lock:
            moved = 0
            for seq in sequence_ids:
                entry = self.audit_entries.get(seq)
                if entry is None or entry.tier != AuditTier.ACTIVE:
                    continue
                entry.tier = AuditTier.ARCHIVED
                entry.archived_at = archived_at
                moved += 1
            if moved:
                self._persist_state()
            return moved

    def flag_audit_entries(self, sequence_ids: List[int], reason: str) -> List[int]:
        with self._data_lock:
            flagged = []
            for seq in sequence_ids:
                entry = self.audit_entries.get(seq)
                if entry is None:
                    continue
                entry.integrity_flagged = True
                entry.flag_reason = reason
                flagged.append(seq)
            if flagged:
                self._persist_state()
            return flagged

    def set_audit_signature(self, sequence_id: int, signature: str) -> bool:
        with self._data_lock:
            entry = self.audit_entries.get(sequence_id)
            if entry is None:
                return False
            entry.signature = signature
            self._persist_state()
            return True

    def purge_audit_entries(self, sequence_ids: List[int]) -> Tuple[int, int]:
        """Remove archived entries; active entries are never purged."""
        with self._data_lock:
            freed = 0
            removed: List[int] = []
            for seq in sequence_ids:
                entry = self.audit_entries.get(seq)
                if entry is None or entry.tier != AuditTier.ARCHIVED:
                    continue
                freed += entry_size(entry)
                del self.audit_entries[seq]
                removed.append(seq)
            if removed:
                self.purged_ranges = collapse_sequence_ranges(
                    self.purged_ranges + [(seq, seq) for seq in removed]
                )
                self._persist_state()
            return len(removed), freed

    def list_purged_audit_ranges(self) -> List[Tuple[int, int]]:
        with self._data_lock:
            return list(self.purged_ranges)

    def audit_tier_summary(self) -> Dict[str, Any]:
        with self._data_lock:
            summary: Dict[str, Any] = {}
            for tier in AuditTier:
                entries = [e for e in self.audit_entries.values() if e.tier == tier]
                stamps = [e.timestamp for e in entries]
                summary[f"{tier.value}_count"] = len(entries)
                summary[f"{tier.value}_size_bytes"] = sum(entry_size(e) for e in entries)
                summary[f"oldest_{tier.value}"] = min(stamps) if stamps else None
                summary[f"newest_{tier.value}"] = max(stamps) if stamps else None
            summary["flagged_count"] = sum(
                1 for e in self.audit_entries.values() if e.integrity_flagged
            )
            return summary

    # -- retention bookkeeping --------------------------------------------

    def get_retention_policy(self) -> Optional[RetentionPolicy]:
        with self._data_lock:
            return replace(self.retention_policy) if self.retention_policy else None

    def save_retention_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        with self._data_lock:
            self.retention_policy = replace(policy)
            self._persist_state()
            return replace(policy)

    def record_retention_result(self, result: RetentionTaskResult) -> None:
        with self._data_lock:
            self.last_retention_result = copy.deepcopy(result)
            self._persist_state()

    def get_last_retention_result(self) -> Optional[RetentionTaskResult]:
        with self._data_lock:
            return copy.deepcopy(self.last_retention_result)

    # -- persistence ------------------------------------------------------

    def _serialize_identity(self, identity: Identity) -> dict:
        data = asdict(identity)
        data["created_at"] = self._serialize_datetime(identity.created_at)
        return data

    def _deserialize_identity(self, data: dict) -> Identity:
        data = dict(data)
        data["created_at"] = self._deserialize_datetime(data.get("created_at")) or utcnow()
        return Identity(**data)

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        data = asdict(record)
        for key in ("issued_at", "expires_at", "revoked_at"):
            data[key] = self._serialize_datetime(getattr(record, key))
        return data

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        data = dict(data)
        for key in ("issued_at", "expires_at", "revoked_at"):
            data[key] = self._deserialize_datetime(data.get(key))
        return RefreshTokenRecord(**data)

    def _serialize_policy(self, policy: RetentionPolicy) -> dict:
        data = asdict(policy)
        data["updated_at"] = self._serialize_datetime(policy.updated_at)
        return data

    def _deserialize_policy(self, data: dict) -> RetentionPolicy:
        data = dict(data)
        data["updated_at"] = self._deserialize_datetime(data.get("updated_at"))
        return RetentionPolicy(**data)

    def _serialize_result(self, result: RetentionTaskResult) -> dict:
        data = asdict(result)
        data["executed_at"] = self._serialize_datetime(result.executed_at)
        return data

    def _deserialize_result(self, data: dict) -> RetentionTaskResult:
        data = dict(data)
        data["executed_at"] = self._deserialize_datetime(data.get("executed_at"))
        return RetentionTaskResult(**data)

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "identities": [
                    self._serialize_identity(i) for i in self.identities.values()
                ],
                "refresh_tokens": [
                    self._serialize_refresh_token(r)
                    for r in self.refresh_tokens.values()
                ],
                "audit_entries": [
                    entry_to_dict(self.audit_entries[seq])
                    for seq in sorted(self.audit_entries)
                ],
                "chain_head": list(self._chain_head) if self._chain_head else None,
                "purged_ranges": [list(r) for r in self.purged_ranges],
                "retention_policy": (
                    self._serialize_policy(self.retention_policy)
                    if self.retention_policy
                    else None
                ),
                "last_retention_result": (
                    self._serialize_result(self.last_retention_result)
                    if self.last_retention_result
                    else None
                ),
            }
            try:
                payload = json.dumps(state, indent=2).encode("utf-8")
                atomic_write(self._state_path(), payload)
            except OSError as exc:
                self.logger.error("memory_store_persist_failed", error=str(exc))
                self._restore_durable_state()
                raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _restore_durable_state(self) -> None:
        # Drop the unpersisted mutation; what is on disk is the committed state
        self.identities = {}
        self.refresh_tokens = {}
        self.audit_entries = {}
        self._chain_head = None
        self.purged_ranges = []
        self.retention_policy = None
        self.last_retention_result = None
        self._load_state()

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["subject_id"]: self._deserialize_identity(i)
            for i in data.get("identities", [])
        }
        self.refresh_tokens = {
            r["token_hash"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.audit_entries = {}
        for raw in data.get("audit_entries", []):
            entry = entry_from_dict(raw)
            self.audit_entries[entry.sequence_id] = entry
        head = data.get("chain_head")
        self._chain_head = (int(head[0]), head[1]) if head else None
        self.purged_ranges = [
            (int(first), int(last)) for first, last in data.get("purged_ranges", [])
        ]
        policy = data.get("retention_policy")
        self.retention_policy = self._deserialize_policy(policy) if policy else None
        result = data.get("last_retention_result")
        self.last_retention_result = self._deserialize_result(result) if result else None
        self.logger.info(
            "memory_store_loaded",
            identities=len(self.identities),
            audit_entries=len(self.audit_entries),
        )
        return True
