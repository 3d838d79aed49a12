from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from trustcore.service.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Identity:
    subject_id: str
    identifier: str
    email: Optional[str] = None
    secret_digest: Optional[str] = None
    secret_algo: str = "argon2id"
    active: bool = True
    email_verified: bool = False
    roles: List[str] = field(default_factory=lambda: ["user"])
    display_name: Optional[str] = None
    federated_provider: Optional[str] = None
    federated_subject: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class FederatedProfile:
    provider: str
    subject_external_id: str
    email: str
    email_verified: bool = False
    given_name: Optional[str] = None
    family_name: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        parts = [p for p in (self.given_name, self.family_name) if p]
        return " ".join(parts) or None


@dataclass
class ProviderTokens:
    access_token: str
    id_token: Optional[str] = None


@dataclass
class ClientMeta:
    address: Optional[str] = None
    agent: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    token_hash: str
    subject_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    replaced_by_hash: Optional[str] = None
    client_address: Optional[str] = None
    client_agent: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and not self.is_expired(now)


@dataclass
class SessionCredentials:
    """Access/refresh pair handed back to the caller; never persisted as-is."""

    subject_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    roles: List[str] = field(default_factory=list)
    token_type: str = "Bearer"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    USER_MANAGEMENT = "user_management"
    DATA_ACCESS = "data_access"
    SYSTEM = "system"
    SECURITY = "security"


class AuditTier(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


@dataclass
class AuditLogEntry:
    sequence_id: int
    timestamp: datetime
    action: str
    entity_type: str
    severity: AuditSeverity = AuditSeverity.MEDIUM
    category: AuditCategory = AuditCategory.SYSTEM
    subject_identifier: Optional[str] = None
    subject_id: Optional[str] = None
    entity_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    details: Optional[Dict[str, Any]] = None
    client_address: Optional[str] = None
    client_agent: Optional[str] = None
    is_system_action: bool = False
    entry_hash: str = ""
    previous_entry_hash: str = ""
    # Classification metadata below is not covered by the entry hash
    signature: Optional[str] = None
    tier: AuditTier = AuditTier.ACTIVE
    archived_at: Optional[datetime] = None
    integrity_flagged: bool = False
    flag_reason: Optional[str] = None


@dataclass
class AuditLogFilter:
    subject_id: Optional[str] = None
    subject_identifier: Optional[str] = None
    action: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    category: Optional[AuditCategory] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    client_address: Optional[str] = None
    include_system_actions: Optional[bool] = None
    search_text: Optional[str] = None
    tier: Optional[AuditTier] = None

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.subject_id and entry.subject_id != self.subject_id:
            return False
        if self.subject_identifier and self.subject_identifier.lower() not in (
            entry.subject_identifier or ""
        ).lower():
            return False
        if self.action and entry.action != self.action:
            return False
        if self.entity_type and entry.entity_type != self.entity_type:
            return False
        if self.entity_id and entry.entity_id != self.entity_id:
            return False
        if self.severity and entry.severity != self.severity:
            return False
        if self.category and entry.category != self.category:
            return False
        if self.from_date and entry.timestamp < self.from_date:
            return False
        if self.to_date and entry.timestamp > self.to_date:
            return False
        if self.client_address and entry.client_address != self.client_address:
            return False
        if (
            self.include_system_actions is not None
            and entry.is_system_action != self.include_system_actions
        ):
            return False
        if self.tier and entry.tier != self.tier:
            return False
        if self.search_text:
            needle = self.search_text.lower()
            haystack = [
                entry.action,
                entry.subject_identifier or "",
                entry.entity_type,
                entry.entity_id or "",
                str(entry.details or ""),
            ]
            if not any(needle in value.lower() for value in haystack):
                return False
        return True


@dataclass
class AuditLogPage:
    items: List[AuditLogEntry]
    next_cursor: Optional[str] = None


@dataclass
class RetentionPolicy:
    active_retention_days: int = 365
    archive_retention_days: int = 2555
    task_interval_hours: int = 24
    auto_archive: bool = True
    auto_purge: bool = True
    max_store_size_bytes: int = 100 * 1024**3
    compress_archive: bool = True
    encrypt_archive: bool = True
    notify_address: Optional[str] = None
    updated_at: Optional[datetime] = None

    @property
    def active_retention(self) -> timedelta:
        return timedelta(days=self.active_retention_days)

    @property
    def archive_retention(self) -> timedelta:
        return timedelta(days=self.archive_retention_days)

    @property
    def task_interval(self) -> timedelta:
        return timedelta(hours=self.task_interval_hours)

    def validate(self) -> "RetentionPolicy":
        for name in (
            "active_retention_days",
            "archive_retention_days",
            "task_interval_hours",
            "max_store_size_bytes",
        ):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValidationError(
                    f"{name} must be a positive integer", detail={"field": name}
                )
        return self


@dataclass
class RetentionTaskResult:
    executed_at: datetime
    archived: int = 0
    purged: int = 0
    success: bool = True
    error: Optional[str] = None
    duration_seconds: float = 0.0
    space_freed_bytes: int = 0
    flagged_ids: List[int] = field(default_factory=list)
    bundles_written: List[str] = field(default_factory=list)
    bundles_purged: int = 0

    @property
    def duration(self) -> timedelta:
        return timedelta(seconds=self.duration_seconds)


@dataclass
class RetentionStatistics:
    active_count: int = 0
    archived_count: int = 0
    flagged_count: int = 0
    active_size_bytes: int = 0
    archived_size_bytes: int = 0
    oldest_active: Optional[datetime] = None
    newest_active: Optional[datetime] = None
    oldest_archived: Optional[datetime] = None
    newest_archived: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_result: Optional[RetentionTaskResult] = None


@dataclass
class IntegrityReport:
    total: int
    verified_count: int
    failed_ids: List[int]
    score: float
    generated_at: datetime
    from_sequence: Optional[int] = None
    to_sequence: Optional[int] = None

    @property
    def all_verified(self) -> bool:
        return not self.failed_ids
