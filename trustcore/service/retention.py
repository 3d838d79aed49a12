"""Scheduled archival and purge of audit entries.

Each cycle moves aged active entries to the archived tier, but only entries
whose hash chain still verifies; the rest are flagged and stay active. Archived
entries past the archive window are then purged. Cycles never overlap: a
process-local lock serializes them and, when Redis is configured, a short
lease keeps other processes out too.
"""

from __future__ import annotations

import asyncio
import base64
import gzip
import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken
from redis.exceptions import RedisError

from trustcore.logging import get_logger, sanitize_error_message
from trustcore.service.audit import (
    AuditRecorder,
    AuditStore,
    compute_entry_hash,
    entry_from_dict,
    entry_to_dict,
)
from trustcore.service.email import EmailService
from trustcore.service.errors import ConfigurationError
from trustcore.service.fs import atomic_write
from trustcore.service.integrity import LogIntegrityEngine
from trustcore.service.store_calls import call_store
from trustcore.storage.models import (
    AuditCategory,
    AuditLogEntry,
    AuditTier,
    RetentionPolicy,
    RetentionStatistics,
    RetentionTaskResult,
)
from trustcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)

ALREADY_RUNNING = "retention cycle already running"
FLAG_REASON = "hash chain verification failed"
LOCK_NAME = "audit-retention"
BUNDLE_PREFIX = "audit-archive-"
MANIFEST_NAME = "manifest.json"
# Cross-process lease; renewed every third of its life while a cycle runs
LEASE_TTL_SECONDS = 300
_BUNDLE_TS_FORMAT = "%Y%m%dT%H%M%S%f"


def build_archive_cipher(key_material: Optional[str]) -> Optional[Fernet]:
    if not key_material:
        return None
    key = base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())
    return Fernet(key)


@dataclass
class ArchiveVerification:
    checked: int = 0
    valid: List[str] = field(default_factory=list)
    corrupted: Dict[str, str] = field(default_factory=dict)
    missing: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.corrupted and not self.missing


class RetentionScheduler:
    """Background archive/purge worker for the audit log."""

    def __init__(
        self,
        store: AuditStore,
        integrity: LogIntegrityEngine,
        *,
        archive_dir: str,
        default_policy: Optional[RetentionPolicy] = None,
        cipher: Optional[Fernet] = None,
        cache: Optional[RedisCache] = None,
        email: Optional[EmailService] = None,
        recorder: Optional[AuditRecorder] = None,
        store_timeout: float = 5.0,
        lease_ttl: float = LEASE_TTL_SECONDS,
    ) -> None:
        self.store = store
        self.integrity = integrity
        self.archive_dir = Path(archive_dir)
        self.default_policy = default_policy or RetentionPolicy()
        self.cipher = cipher
        self.cache = cache
        self.email = email
        self.recorder = recorder
        self.store_timeout = store_timeout
        self.lease_ttl = lease_ttl
        self._cycle_lock = asyncio.Lock()
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._next_run_at: Optional[datetime] = None

    async def _call(self, fn, *args: Any, **kwargs: Any):
        return await call_store(fn, *args, timeout=self.store_timeout, **kwargs)

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("retention_scheduler_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("retention_scheduler_started")

    async def stop(self) -> None:
        """Stop the background loop; an in-flight cycle is cancelled."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._next_run_at = None
        logger.info("retention_scheduler_stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _run_loop(self) -> None:
        while self._running:
            await self.run_now()
            interval = self.default_policy.task_interval
            try:
                interval = (await self.get_policy()).task_interval
            except Exception as exc:
                logger.error(
                    "retention_policy_load_failed",
                    error_type=type(exc).__name__,
                    error=sanitize_error_message(str(exc)),
                )
            self._next_run_at = datetime.now(timezone.utc) + interval
            await asyncio.sleep(interval.total_seconds())

    # -- policy -----------------------------------------------------------

    async def get_policy(self) -> RetentionPolicy:
        stored = await self._call(self.store.get_retention_policy)
        return stored or replace(self.default_policy)

    async def update_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        policy.validate()
        before = await self.get_policy()
        updated = replace(policy, updated_at=datetime.now(timezone.utc))
        saved = await self._call(self.store.save_retention_policy, updated)
        logger.info(
            "retention_policy_updated",
            active_days=saved.active_retention_days,
            archive_days=saved.archive_retention_days,
            interval_hours=saved.task_interval_hours,
        )
        await self._record(
            "UPDATE_RETENTION_POLICY",
            entity_type="RetentionPolicy",
            before_state=_policy_state(before),
            after_state=_policy_state(saved),
        )
        return saved

    async def _record(self, action: str, **kwargs: Any) -> None:
        if self.recorder is None:
            return
        try:
            await self.recorder.append(action, category=AuditCategory.SYSTEM, **kwargs)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

    # -- cycles -----------------------------------------------------------

    async def run_now(self, now: Optional[datetime] = None) -> RetentionTaskResult:
        """Run one cycle immediately unless one is already in flight."""
        now = now or datetime.now(timezone.utc)
        if self._cycle_lock.locked():
            return RetentionTaskResult(executed_at=now, success=False, error=ALREADY_RUNNING)
        async with self._cycle_lock:
            if self.cache is None:
                return await self._run_cycle(now)
            owner = uuid.uuid4().hex
            try:
                acquired = await self.cache.acquire_lock(
                    LOCK_NAME, owner, self._lease_seconds()
                )
            except (RedisError, OSError) as exc:
                logger.error("retention_lock_failed", error=str(exc))
                return RetentionTaskResult(
                    executed_at=now,
                    success=False,
                    error="retention lock unavailable",
                )
            if not acquired:
                return RetentionTaskResult(
                    executed_at=now, success=False, error=ALREADY_RUNNING
                )
            renewer = asyncio.create_task(self._renew_lease(owner))
            try:
                return await self._run_cycle(now)
            finally:
                renewer.cancel()
                try:
                    await renewer
                except asyncio.CancelledError:
                    pass
                try:
                    await self.cache.release_lock(LOCK_NAME, owner)
                except (RedisError, OSError) as exc:
                    logger.warning("retention_lock_release_failed", error=str(exc))

    def _lease_seconds(self) -> int:
        return max(1, int(self.lease_ttl))

    async def _renew_lease(self, owner: str) -> None:
        while True:
            await asyncio.sleep(self.lease_ttl / 3)
            try:
                held = await self.cache.extend_lock(LOCK_NAME, owner, self._lease_seconds())
            except (RedisError, OSError) as exc:
                logger.warning("retention_lock_renew_failed", error=str(exc))
                continue
            if not held:
                logger.warning("retention_lock_lost", owner=owner)
                return

    async def _run_cycle(self, now: datetime) -> RetentionTaskResult:
        started = time.monotonic()
        result = RetentionTaskResult(executed_at=now)
        policy = self.default_policy
        try:
            policy = await self.get_policy()
            if policy.auto_archive:
                await self._archive(policy, now, result)
            if policy.auto_purge:
                await self._purge(policy, now, result)
        except Exception as exc:
            # Recorded, never raised: the next tick retries on its own
            result.success = False
            result.error = sanitize_error_message(str(exc))
            logger.error(
                "retention_cycle_failed",
                error_type=type(exc).__name__,
                error=result.error,
            )
        result.duration_seconds = time.monotonic() - started

        try:
            await self._call(self.store.record_retention_result, result)
        except Exception as exc:
            logger.error(
                "retention_result_record_failed",
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )

        over_capacity = await self._check_capacity(policy)
        logger.info(
            "retention_cycle_completed",
            success=result.success,
            archived=result.archived,
            purged=result.purged,
            flagged=len(result.flagged_ids),
            duration_seconds=round(result.duration_seconds, 3),
        )
        await self._record(
            "RETENTION_RUN",
            entity_type="System",
            details={
                "success": result.success,
                "archived": result.archived,
                "purged": result.purged,
                "flagged": result.flagged_ids,
                "error": result.error,
            },
            is_system_action=True,
        )
        if policy.notify_address and self.email is not None:
            await asyncio.to_thread(
                self.email.send_retention_report,
                policy.notify_address,
                result,
                over_capacity=over_capacity,
            )
        return result

    async def _archive(
        self, policy: RetentionPolicy, now: datetime, result: RetentionTaskResult
    ) -> None:
        cutoff = now - policy.active_retention
        candidates: List[AuditLogEntry] = await self._call(
            self.store.list_aged_audit_entries, AuditTier.ACTIVE, cutoff
        )
        if not candidates:
            return
        verdicts = await self.integrity.verify_range(
            candidates[0].sequence_id, candidates[-1].sequence_id
        )
        valid = [e for e in candidates if verdicts.get(e.sequence_id)]
        failed = [e for e in candidates if not verdicts.get(e.sequence_id)]

        if valid:
            bundle = await asyncio.to_thread(self._write_bundle, valid, now, policy)
            result.bundles_written.append(bundle)
            result.archived = await self._call(
                self.store.mark_audit_entries_archived,
                [e.sequence_id for e in valid],
                now,
            )

        if failed:
            newly_flagged = [e.sequence_id for e in failed if not e.integrity_flagged]
            result.flagged_ids = await self._call(
                self.store.flag_audit_entries,
                [e.sequence_id for e in failed],
                FLAG_REASON,
            )
            logger.error(
                "audit_integrity_violation",
                failed_ids=result.flagged_ids,
                newly_flagged=len(newly_flagged),
            )
            if newly_flagged and policy.notify_address and self.email is not None:
                await asyncio.to_thread(
                    self.email.send_integrity_alert, policy.notify_address, newly_flagged
                )

    async def _purge(
        self, policy: RetentionPolicy, now: datetime, result: RetentionTaskResult
    ) -> None:
        cutoff = now - policy.archive_retention
        aged = await self._call(
            self.store.list_aged_audit_entries, AuditTier.ARCHIVED, cutoff
        )
        if aged:
            purged, freed = await self._call(
                self.store.purge_audit_entries, [e.sequence_id for e in aged]
            )
            result.purged = purged
            result.space_freed_bytes += freed
        removed, freed_bundles = await asyncio.to_thread(self._purge_bundles, cutoff)
        result.bundles_purged = removed
        result.space_freed_bytes += freed_bundles

    async def _check_capacity(self, policy: RetentionPolicy) -> bool:
        try:
            summary = await self._call(self.store.audit_tier_summary)
        except Exception as exc:
            logger.warning("retention_capacity_check_failed", error=str(exc))
            return False
        total = summary.get("active_size_bytes", 0) + summary.get("archived_size_bytes", 0)
        if total > policy.max_store_size_bytes:
            logger.warning(
                "retention_store_over_capacity",
                size_bytes=total,
                limit_bytes=policy.max_store_size_bytes,
            )
            return True
        return False

    # -- statistics -------------------------------------------------------

    async def get_statistics(self) -> RetentionStatistics:
        summary = await self._call(self.store.audit_tier_summary)
        last = await self._call(self.store.get_last_retention_result)
        next_run = self._next_run_at
        if next_run is None and last is not None and self._running:
            next_run = last.executed_at + (await self.get_policy()).task_interval
        return RetentionStatistics(
            active_count=summary.get("active_count", 0),
            archived_count=summary.get("archived_count", 0),
            flagged_count=summary.get("flagged_count", 0),
            active_size_bytes=summary.get("active_size_bytes", 0),
            archived_size_bytes=summary.get("archived_size_bytes", 0),
            oldest_active=summary.get("oldest_active"),
            newest_active=summary.get("newest_active"),
            oldest_archived=summary.get("oldest_archived"),
            newest_archived=summary.get("newest_archived"),
            last_run_at=last.executed_at if last else None,
            next_run_at=next_run,
            last_result=last,
        )

    # -- cold bundles -----------------------------------------------------

    def _manifest_path(self) -> Path:
        return self.archive_dir / MANIFEST_NAME

    def _load_manifest(self) -> Dict[str, Dict[str, Any]]:
        try:
            return json.loads(self._manifest_path().read_text())
        except FileNotFoundError:
            return {}

    def _save_manifest(self, manifest: Dict[str, Dict[str, Any]]) -> None:
        payload = json.dumps(manifest, indent=2, sort_keys=True).encode("utf-8")
        atomic_write(self._manifest_path(), payload)

    def _write_bundle(
        self, entries: List[AuditLogEntry], now: datetime, policy: RetentionPolicy
    ) -> str:
        if policy.encrypt_archive and self.cipher is None:
            raise ConfigurationError("archive encryption requested but no key is configured")
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        document = {
            "version": 1,
            "created_at": now.isoformat(),
            "key_id": self.integrity.key_id,
            "entries": [entry_to_dict(e) for e in entries],
        }
        payload = json.dumps(document, sort_keys=True).encode("utf-8")
        name = (
            f"{BUNDLE_PREFIX}{now.astimezone(timezone.utc).strftime(_BUNDLE_TS_FORMAT)}"
            f"-{entries[0].sequence_id}-{entries[-1].sequence_id}.json"
        )
        if policy.compress_archive:
            payload = gzip.compress(payload)
            name += ".gz"
        if policy.encrypt_archive:
            payload = self.cipher.encrypt(payload)
            name += ".enc"
        path = self.archive_dir / name
        atomic_write(path, payload)

        manifest = self._load_manifest()
        manifest[name] = {
            "sha256": hashlib.sha256(payload).hexdigest(),
            "first_sequence": entries[0].sequence_id,
            "last_sequence": entries[-1].sequence_id,
            "count": len(entries),
            "created_at": now.isoformat(),
        }
        self._save_manifest(manifest)
        logger.info("archive_bundle_written", bundle=name, entries=len(entries))
        return name

    @staticmethod
    def _bundle_created_at(name: str) -> Optional[datetime]:
        if not name.startswith(BUNDLE_PREFIX):
            return None
        stamp = name[len(BUNDLE_PREFIX):].split("-", 1)[0]
        try:
            return datetime.strptime(stamp, _BUNDLE_TS_FORMAT).replace(tzinfo=timezone.utc)
        except ValueError:
            return None

    def _purge_bundles(self, cutoff: datetime) -> tuple[int, int]:
        if not self.archive_dir.exists():
            return 0, 0
        manifest = self._load_manifest()
        removed = 0
        freed = 0
        for path in sorted(self.archive_dir.glob(f"{BUNDLE_PREFIX}*")):
            created = self._bundle_created_at(path.name)
            if created is None or created >= cutoff:
                continue
            freed += path.stat().st_size
            path.unlink()
            manifest.pop(path.name, None)
            removed += 1
        if removed:
            self._save_manifest(manifest)
            logger.info("archive_bundles_purged", removed=removed)
        return removed, freed

    def _read_bundle(self, path: Path) -> List[AuditLogEntry]:
        payload = path.read_bytes()
        if path.name.endswith(".enc"):
            if self.cipher is None:
                raise ConfigurationError("bundle is encrypted but no key is configured")
            payload = self.cipher.decrypt(payload)
        if ".gz" in path.suffixes:
            payload = gzip.decompress(payload)
        document = json.loads(payload)
        return [entry_from_dict(raw) for raw in document.get("entries", [])]

    def _verify_bundles(self) -> ArchiveVerification:
        report = ArchiveVerification()
        manifest = self._load_manifest() if self.archive_dir.exists() else {}
        on_disk = (
            {p.name: p for p in self.archive_dir.glob(f"{BUNDLE_PREFIX}*") if not p.name.endswith(".tmp")}
            if self.archive_dir.exists()
            else {}
        )
        report.missing = sorted(name for name in manifest if name not in on_disk)
        for name in sorted(on_disk):
            report.checked += 1
            path = on_disk[name]
            expected = manifest.get(name, {}).get("sha256")
            if expected and hashlib.sha256(path.read_bytes()).hexdigest() != expected:
                report.corrupted[name] = "checksum mismatch"
                continue
            try:
                entries = self._read_bundle(path)
            except InvalidToken:
                report.corrupted[name] = "decryption failed"
                continue
            except (OSError, EOFError, ValueError) as exc:
                report.corrupted[name] = f"unreadable: {type(exc).__name__}"
                continue
            bad = _first_broken_entry(entries)
            if bad is not None:
                report.corrupted[name] = f"entry {bad} failed hash verification"
                continue
            report.valid.append(name)
        return report

    async def verify_archives(self) -> ArchiveVerification:
        """Re-check every cold bundle; problems are reported, never repaired."""
        report = await asyncio.to_thread(self._verify_bundles)
        if not report.ok:
            logger.error(
                "archive_verification_failed",
                corrupted=sorted(report.corrupted),
                missing=report.missing,
            )
        return report


def _first_broken_entry(entries: List[AuditLogEntry]) -> Optional[int]:
    previous: Optional[AuditLogEntry] = None
    for entry in entries:
        if compute_entry_hash(entry, entry.previous_entry_hash) != entry.entry_hash:
            return entry.sequence_id
        if (
            previous is not None
            and previous.sequence_id == entry.sequence_id - 1
            and entry.previous_entry_hash != previous.entry_hash
        ):
            return entry.sequence_id
        previous = entry
    return None


def _policy_state(policy: RetentionPolicy) -> Dict[str, Any]:
    return {
        "active_retention_days": policy.active_retention_days,
        "archive_retention_days": policy.archive_retention_days,
        "task_interval_hours": policy.task_interval_hours,
        "auto_archive": policy.auto_archive,
        "auto_purge": policy.auto_purge,
        "max_store_size_bytes": policy.max_store_size_bytes,
        "compress_archive": policy.compress_archive,
        "encrypt_archive": policy.encrypt_archive,
        "notify_address": policy.notify_address,
    }
