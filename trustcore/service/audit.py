"""Append-only, hash-chained audit log.

Every entry hash covers the canonical JSON of its content fields followed by
the previous entry's hash, so editing or reordering any stored entry breaks
the chain from that point on. Appends are funnelled through a single writer
task per event loop; the store additionally rejects an append whose expected
previous hash is no longer the chain head.
"""

from __future__ import annotations

import asyncio
import csv
import hashlib
import io
import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from trustcore.logging import get_correlation_id, get_logger, redact_sensitive
from trustcore.service.errors import TransientStoreError, ValidationError
from trustcore.service.store_calls import call_store
from trustcore.storage.cursors import decode_audit_cursor, encode_audit_cursor
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import (
    AuditCategory,
    AuditLogEntry,
    AuditLogFilter,
    AuditLogPage,
    AuditSeverity,
    AuditTier,
    ClientMeta,
    RetentionPolicy,
    RetentionTaskResult,
)

logger = get_logger(__name__)

GENESIS_HASH = "0" * 64
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 200
EXPORT_MAX_ROWS = 10_000
MAX_APPEND_ATTEMPTS = 5


class ExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    JSONL = "jsonl"


class AuditStore(Protocol):
    def get_audit_chain_head(self) -> Optional[Tuple[int, str]]: ...

    def append_audit_entry(
        self, entry: AuditLogEntry, expected_previous_hash: str
    ) -> AuditLogEntry: ...

    def get_audit_entry(self, sequence_id: int) -> Optional[AuditLogEntry]: ...

    def list_audit_entries(
        self,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None,
    ) -> List[AuditLogEntry]: ...

    def query_audit_entries(
        self,
        audit_filter: AuditLogFilter,
        *,
        limit: int,
        before: Optional[Tuple[datetime, int]] = None,
    ) -> List[AuditLogEntry]: ...

    def sequence_bounds(
        self, from_date: Optional[datetime], to_date: Optional[datetime]
    ) -> Optional[Tuple[int, int]]: ...

    def list_aged_audit_entries(
        self, tier: AuditTier, older_than: datetime
    ) -> List[AuditLogEntry]: ...

    def mark_audit_entries_archived(
        self, sequence_ids: List[int], archived_at: datetime
    ) -> int: ...

    def flag_audit_entries(self, sequence_ids: List[int], reason: str) -> List[int]: ...

    def set_audit_signature(self, sequence_id: int, signature: str) -> bool: ...

    def purge_audit_entries(self, sequence_ids: List[int]) -> Tuple[int, int]: ...

    def list_purged_audit_ranges(self) -> List[Tuple[int, int]]: ...

    def audit_tier_summary(self) -> Dict[str, Any]: ...

    def get_retention_policy(self) -> Optional[RetentionPolicy]: ...

    def save_retention_policy(self, policy: RetentionPolicy) -> RetentionPolicy: ...

    def record_retention_result(self, result: RetentionTaskResult) -> None: ...

    def get_last_retention_result(self) -> Optional[RetentionTaskResult]: ...


def _iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    ts = datetime.fromisoformat(raw)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def collapse_sequence_ranges(ranges: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Merge inclusive sequence ranges so adjacent or overlapping runs become one."""
    merged: List[Tuple[int, int]] = []
    for first, last in sorted(ranges):
        if merged and first <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], last))
        else:
            merged.append((first, last))
    return merged


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def entry_payload(entry: AuditLogEntry) -> Dict[str, Any]:
    """Content fields covered by the entry hash."""
    return {
        "sequence_id": entry.sequence_id,
        "timestamp": _iso(entry.timestamp),
        "subject_identifier": entry.subject_identifier,
        "subject_id": entry.subject_id,
        "action": entry.action,
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "severity": AuditSeverity(entry.severity).value,
        "category": AuditCategory(entry.category).value,
        "before_state": entry.before_state,
        "after_state": entry.after_state,
        "details": entry.details,
        "client_address": entry.client_address,
        "client_agent": entry.client_agent,
        "is_system_action": bool(entry.is_system_action),
    }


def compute_entry_hash(entry: AuditLogEntry, previous_hash: str) -> str:
    material = canonical_json(entry_payload(entry)) + previous_hash
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def entry_size(entry: AuditLogEntry) -> int:
    """Approximate stored size, used for statistics and space-freed figures."""
    return len(canonical_json(entry_to_dict(entry)).encode("utf-8"))


def entry_to_dict(entry: AuditLogEntry) -> Dict[str, Any]:
    data = entry_payload(entry)
    data.update(
        {
            "entry_hash": entry.entry_hash,
            "previous_entry_hash": entry.previous_entry_hash,
            "signature": entry.signature,
            "tier": AuditTier(entry.tier).value,
            "archived_at": _iso(entry.archived_at),
            "integrity_flagged": entry.integrity_flagged,
            "flag_reason": entry.flag_reason,
        }
    )
    return data


def entry_from_dict(data: Dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        sequence_id=int(data["sequence_id"]),
        timestamp=_parse_ts(data["timestamp"]),
        action=data["action"],
        entity_type=data["entity_type"],
        severity=AuditSeverity(data.get("severity", AuditSeverity.MEDIUM.value)),
        category=AuditCategory(data.get("category", AuditCategory.SYSTEM.value)),
        subject_identifier=data.get("subject_identifier"),
        subject_id=data.get("subject_id"),
        entity_id=data.get("entity_id"),
        before_state=data.get("before_state"),
        after_state=data.get("after_state"),
        details=data.get("details"),
        client_address=data.get("client_address"),
        client_agent=data.get("client_agent"),
        is_system_action=bool(data.get("is_system_action", False)),
        entry_hash=data.get("entry_hash", ""),
        previous_entry_hash=data.get("previous_entry_hash", ""),
        signature=data.get("signature"),
        tier=AuditTier(data.get("tier", AuditTier.ACTIVE.value)),
        archived_at=_parse_ts(data.get("archived_at")),
        integrity_flagged=bool(data.get("integrity_flagged", False)),
        flag_reason=data.get("flag_reason"),
    )


# Keyword rules, checked in order; first match wins
_SEVERITY_RULES: List[Tuple[AuditSeverity, Tuple[str, ...], Tuple[str, ...]]] = [
    (
        AuditSeverity.CRITICAL,
        ("DELETE_",),
        ("ADMIN", "PERMISSION", "ROLE", "PASSWORD", "CREDENTIAL", "CONFIG", "SECURITY"),
    ),
    (AuditSeverity.HIGH, ("CREATE_", "UPDATE_", "MODIFY_", "IMPORT_", "EXPORT_"), ()),
    (AuditSeverity.MEDIUM, (), ("STATUS", "STATE", "LOGIN", "LOGOUT", "TOKEN")),
]

_CATEGORY_RULES: List[Tuple[AuditCategory, Tuple[str, ...], Tuple[str, ...], Tuple[str, ...]]] = [
    (
        AuditCategory.AUTHENTICATION,
        (),
        ("LOGIN", "LOGOUT", "PASSWORD", "CREDENTIAL", "MFA", "TOKEN"),
        ("Authentication",),
    ),
    (
        AuditCategory.AUTHORIZATION,
        (),
        ("PERMISSION", "ROLE", "ACCESS"),
        ("Authorization", "Permission", "Role"),
    ),
    (AuditCategory.USER_MANAGEMENT, (), ("USER",), ("User", "Profile")),
    (AuditCategory.DATA_ACCESS, ("CREATE_", "UPDATE_", "DELETE_", "READ_"), (), ()),
    (AuditCategory.SYSTEM, (), ("CONFIG", "SETTING", "SYSTEM"), ("System",)),
    (AuditCategory.SECURITY, (), ("SECURITY", "BREACH", "VIOLATION"), ("Security",)),
]


def _matches(
    upper: str, prefixes: Tuple[str, ...], keywords: Tuple[str, ...]
) -> bool:
    return any(upper.startswith(p) for p in prefixes) or any(k in upper for k in keywords)


def determine_severity(action: str) -> AuditSeverity:
    upper = (action or "").upper()
    for severity, prefixes, keywords in _SEVERITY_RULES:
        if _matches(upper, prefixes, keywords):
            return severity
    return AuditSeverity.LOW


def determine_category(action: str, entity_type: Optional[str] = None) -> AuditCategory:
    upper = (action or "").upper()
    for category, prefixes, keywords, entity_types in _CATEGORY_RULES:
        if _matches(upper, prefixes, keywords) or entity_type in entity_types:
            return category
    return AuditCategory.SYSTEM


@dataclass
class _PendingAppend:
    entry: AuditLogEntry
    future: "asyncio.Future[AuditLogEntry]"


class AuditRecorder:
    """Single-writer front end to an ``AuditStore``."""

    def __init__(self, store: AuditStore, *, store_timeout: float = 5.0) -> None:
        self.store = store
        self.store_timeout = store_timeout
        self._queue: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _ensure_writer(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if (
            self._queue is None
            or self._writer is None
            or self._writer.done()
            or self._loop is not loop
        ):
            self._loop = loop
            self._queue = asyncio.Queue()
            self._writer = loop.create_task(self._writer_loop(self._queue))
        return self._queue

    async def _writer_loop(self, queue: asyncio.Queue) -> None:
        while True:
            pending: _PendingAppend = await queue.get()
            try:
                if pending.future.cancelled():
                    continue
                stored = await self._write(pending.entry)
            except Exception as exc:
                # Delivered to the awaiting caller; the writer keeps serving
                if not pending.future.done():
                    pending.future.set_exception(exc)
            else:
                if not pending.future.done():
                    pending.future.set_result(stored)
            finally:
                queue.task_done()

    async def _write(self, template: AuditLogEntry) -> AuditLogEntry:
        for attempt in range(1, MAX_APPEND_ATTEMPTS + 1):
            head = await call_store(
                self.store.get_audit_chain_head, timeout=self.store_timeout
            )
            last_sequence, previous_hash = head if head else (0, GENESIS_HASH)
            entry = replace(
                template,
                sequence_id=last_sequence + 1,
                timestamp=template.timestamp or datetime.now(timezone.utc),
                previous_entry_hash=previous_hash,
            )
            entry.entry_hash = compute_entry_hash(entry, previous_hash)
            try:
                return await call_store(
                    self.store.append_audit_entry,
                    entry,
                    previous_hash,
                    timeout=self.store_timeout,
                )
            except ConstraintViolation:
                # Another process advanced the head; reload and rehash
                logger.info("audit_chain_head_moved", attempt=attempt)
        raise TransientStoreError(
            "audit chain head kept moving", detail={"attempts": MAX_APPEND_ATTEMPTS}
        )

    async def close(self) -> None:
        if self._writer is not None and not self._writer.done():
            if self._queue is not None:
                await self._queue.join()
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        self._writer = None
        self._queue = None
        self._loop = None

    async def append(
        self,
        action: str,
        *,
        entity_type: str,
        subject_identifier: Optional[str] = None,
        subject_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        severity: Optional[AuditSeverity] = None,
        category: Optional[AuditCategory] = None,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
        client: Optional[ClientMeta] = None,
        is_system_action: bool = False,
        timestamp: Optional[datetime] = None,
    ) -> int:
        """Durably append one entry and return its sequence id.

        Raises ``TransientStoreError`` when the entry could not be persisted.
        """
        if not action or not entity_type:
            raise ValidationError("audit entries need an action and an entity type")
        merged_details = dict(details or {})
        correlation_id = get_correlation_id()
        if correlation_id:
            merged_details.setdefault("correlation_id", correlation_id)
        template = AuditLogEntry(
            sequence_id=0,
            timestamp=timestamp,  # stamped by the writer when None
            action=action,
            entity_type=entity_type,
            severity=severity or determine_severity(action),
            category=category or determine_category(action, entity_type),
            subject_identifier=subject_identifier,
            subject_id=subject_id,
            entity_id=entity_id,
            before_state=redact_sensitive(before_state) if before_state else None,
            after_state=redact_sensitive(after_state) if after_state else None,
            details=redact_sensitive(merged_details) if merged_details else None,
            client_address=client.address if client else None,
            client_agent=client.agent if client else None,
            is_system_action=is_system_action,
        )
        queue = self._ensure_writer()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await queue.put(_PendingAppend(template, future))
        stored: AuditLogEntry = await future
        logger.debug(
            "audit_entry_appended", sequence_id=stored.sequence_id, action=action
        )
        return stored.sequence_id

    async def record_user_action(
        self,
        subject_id: str,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        *,
        subject_identifier: Optional[str] = None,
        client: Optional[ClientMeta] = None,
    ) -> int:
        return await self.append(
            action,
            entity_type=entity_type,
            subject_id=subject_id,
            subject_identifier=subject_identifier,
            entity_id=entity_id,
            before_state=before_state,
            after_state=after_state,
            client=client,
        )

    async def record_security_event(
        self,
        subject_identifier: Optional[str],
        action: str,
        details: Optional[Dict[str, Any]] = None,
        severity: AuditSeverity = AuditSeverity.HIGH,
        *,
        subject_id: Optional[str] = None,
        category: AuditCategory = AuditCategory.SECURITY,
        client: Optional[ClientMeta] = None,
    ) -> int:
        logger.info("security_event", action=action, severity=severity.value)
        return await self.append(
            action,
            entity_type="Security",
            subject_identifier=subject_identifier,
            subject_id=subject_id,
            severity=severity,
            category=category,
            details=details,
            client=client,
        )

    async def record_system_action(
        self,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        entity_type: str = "System",
        entity_id: Optional[str] = None,
    ) -> int:
        return await self.append(
            action,
            entity_type=entity_type,
            entity_id=entity_id,
            category=AuditCategory.SYSTEM,
            details=details,
            is_system_action=True,
        )

    async def query(
        self,
        audit_filter: Optional[AuditLogFilter] = None,
        *,
        limit: int = DEFAULT_PAGE_SIZE,
        cursor: Optional[str] = None,
    ) -> AuditLogPage:
        """Newest-first page of entries matching ``audit_filter``."""
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        try:
            before = decode_audit_cursor(cursor) if cursor else None
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"cursor": cursor}) from exc
        items = await call_store(
            self.store.query_audit_entries,
            audit_filter or AuditLogFilter(),
            limit=limit + 1,
            before=before,
            timeout=self.store_timeout,
        )
        next_cursor = None
        if len(items) > limit:
            items = items[:limit]
            last = items[-1]
            next_cursor = encode_audit_cursor(last.timestamp, last.sequence_id)
        return AuditLogPage(items=items, next_cursor=next_cursor)

    async def export(
        self,
        audit_filter: Optional[AuditLogFilter] = None,
        fmt: ExportFormat = ExportFormat.CSV,
    ) -> bytes:
        items = await call_store(
            self.store.query_audit_entries,
            audit_filter or AuditLogFilter(),
            limit=EXPORT_MAX_ROWS,
            before=None,
            timeout=self.store_timeout,
        )
        fmt = ExportFormat(fmt)
        if fmt is ExportFormat.JSON:
            return json.dumps([entry_to_dict(e) for e in items], indent=2).encode("utf-8")
        if fmt is ExportFormat.JSONL:
            return "".join(canonical_json(entry_to_dict(e)) + "\n" for e in items).encode(
                "utf-8"
            )
        return _to_csv(items)


_CSV_COLUMNS = [
    "sequence_id",
    "timestamp",
    "subject_identifier",
    "subject_id",
    "action",
    "entity_type",
    "entity_id",
    "severity",
    "category",
    "client_address",
    "client_agent",
    "is_system_action",
    "tier",
    "entry_hash",
    "previous_entry_hash",
    "signature",
    "details",
]


def _to_csv(items: List[AuditLogEntry]) -> bytes:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=_CSV_COLUMNS, extrasaction="ignore")
    writer.writeheader()
    for entry in items:
        row = entry_to_dict(entry)
        row["details"] = canonical_json(entry.details) if entry.details else ""
        writer.writerow(row)
    return buffer.getvalue().encode("utf-8")
