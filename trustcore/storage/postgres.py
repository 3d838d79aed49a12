from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from trustcore.logging import get_logger
from trustcore.service.audit import GENESIS_HASH, collapse_sequence_ranges, entry_size
from trustcore.storage.errors import ConstraintViolation, StoreUnavailable
from trustcore.storage.models import (
    AuditCategory,
    AuditLogEntry,
    AuditLogFilter,
    AuditSeverity,
    AuditTier,
    FederatedProfile,
    Identity,
    RefreshTokenRecord,
    RetentionPolicy,
    RetentionTaskResult,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS trust_identity (
        subject_id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL,
        email TEXT,
        secret_digest TEXT,
        secret_algo TEXT NOT NULL DEFAULT 'argon2id',
        active BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        roles JSONB NOT NULL DEFAULT '["user"]',
        display_name TEXT,
        federated_provider TEXT,
        federated_subject TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS trust_identity_identifier_idx ON trust_identity (lower(identifier))",
    "CREATE UNIQUE INDEX IF NOT EXISTS trust_identity_email_idx ON trust_identity (lower(email)) WHERE email IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS trust_refresh_token (
        token_hash TEXT PRIMARY KEY,
        subject_id TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_reason TEXT,
        revoked_at TIMESTAMPTZ,
        replaced_by_hash TEXT,
        client_address TEXT,
        client_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS trust_refresh_token_subject_idx ON trust_refresh_token (subject_id)",
    """
    CREATE TABLE IF NOT EXISTS audit_log_entry (
        sequence_id BIGINT PRIMARY KEY,
        timestamp TIMESTAMPTZ NOT NULL,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        category TEXT NOT NULL,
        subject_identifier TEXT,
        subject_id TEXT,
        entity_id TEXT,
        before_state JSONB,
        after_state JSONB,
        details JSONB,
        client_address TEXT,
        client_agent TEXT,
        is_system_action BOOLEAN NOT NULL DEFAULT FALSE,
        entry_hash TEXT NOT NULL,
        previous_entry_hash TEXT NOT NULL,
        signature TEXT,
        tier TEXT NOT NULL DEFAULT 'active',
        archived_at TIMESTAMPTZ,
        integrity_flagged BOOLEAN NOT NULL DEFAULT FALSE,
        flag_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_entry_time_idx ON audit_log_entry (timestamp DESC, sequence_id DESC)",
    "CREATE INDEX IF NOT EXISTS audit_log_entry_tier_idx ON audit_log_entry (tier, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS audit_chain_head (
        id SMALLINT PRIMARY KEY CHECK (id = 1),
        sequence_id BIGINT NOT NULL,
        entry_hash TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_purged_range (
        first_sequence BIGINT NOT NULL,
        last_sequence BIGINT NOT NULL,
        purged_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (first_sequence, last_sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_retention_state (
        name TEXT PRIMARY KEY,
        payload JSONB NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

_ENTRY_COLUMNS = (
    "sequence_id, timestamp, action, entity_type, severity, category, "
    "subject_identifier, subject_id, entity_id, before_state, after_state, details, "
    "client_address, client_agent, is_system_action, entry_hash, previous_entry_hash, "
    "signature, tier, archived_at, integrity_flagged, flag_reason"
)


def _jsonb(value: Optional[Dict[str, Any]]) -> Optional[Jsonb]:
    return Jsonb(value) if value is not None else None


class PostgresStore:
    """Postgres-backed identity, refresh-token and audit store."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise StoreUnavailable(str(exc)) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # -- identities -------------------------------------------------------

    @staticmethod
    def _row_to_identity(row: Dict[str, Any]) -> Identity:
        return Identity(
            subject_id=row["subject_id"],
            identifier=row["identifier"],
            email=row.get("email"),
            secret_digest=row.get("secret_digest"),
            secret_algo=row.get("secret_algo") or "argon2id",
            active=bool(row.get("active")),
            email_verified=bool(row.get("email_verified")),
            roles=list(row.get("roles") or ["user"]),
            display_name=row.get("display_name"),
            federated_provider=row.get("federated_provider"),
            federated_subject=row.get("federated_subject"),
            created_at=row["created_at"],
        )

    def find_by_identifier(self, identifier: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trust_identity WHERE lower(identifier) = lower(%s)",
                ((identifier or "").strip(),),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def find_by_email(self, email: str) -> Optional[Identity]:
        if not email:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trust_identity WHERE lower(email) = lower(%s)",
                (email.strip(),),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_identity(self, subject_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trust_identity WHERE subject_id = %s", (subject_id,)
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def _insert_identity(self, identity: Identity) -> Identity:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO trust_identity (
                        subject_id, identifier, email, secret_digest, secret_algo, active,
                        email_verified, roles, display_name, federated_provider,
                        federated_subject, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        identity.subject_id,
                        identity.identifier,
                        identity.email,
                        identity.secret_digest,
                        identity.secret_algo,
                        identity.active,
                        identity.email_verified,
                        Jsonb(list(identity.roles)),
                        identity.display_name,
                        identity.federated_provider,
                        identity.federated_subject,
                        identity.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "identity already exists", {"identifier": identity.identifier}
            ) from exc
        return self._row_to_identity(row)

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
        return self._insert_identity(
            Identity(
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
        )

    def create_from_federated_profile(self, profile: FederatedProfile) -> Identity:
        return self._insert_identity(
            Identity(
                subject_id=str(uuid.uuid4()),
                identifier=profile.email,
                email=profile.email,
                email_verified=profile.email_verified,
                display_name=profile.display_name,
                federated_provider=profile.provider,
                federated_subject=profile.subject_external_id,
            )
        )

    def update_secret_digest(self, subject_id: str, digest: str, algo: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE trust_identity SET secret_digest = %s, secret_algo = %s WHERE subject_id = %s",
                (digest, algo, subject_id),
            )
            return cur.rowcount > 0

    def set_identity_active(self, subject_id: str, active: bool) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE trust_identity SET active = %s WHERE subject_id = %s",
                (active, subject_id),
            )
            return cur.rowcount > 0

    # -- refresh tokens ---------------------------------------------------

    @staticmethod
    def _row_to_refresh(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=row["token_hash"],
            subject_id=row["subject_id"],
            issued_at=row["issued_at"],
            expires_at=row["expires_at"],
            revoked=bool(row["revoked"]),
            revoked_reason=row.get("revoked_reason"),
            revoked_at=row.get("revoked_at"),
            replaced_by_hash=row.get("replaced_by_hash"),
            client_address=row.get("client_address"),
            client_agent=row.get("client_agent"),
        )

    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO trust_refresh_token (
                        token_hash, subject_id, issued_at, expires_at, revoked,
                        client_address, client_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        record.token_hash,
                        record.subject_id,
                        record.issued_at,
                        record.expires_at,
                        record.revoked,
                        record.client_address,
                        record.client_agent,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "refresh token hash already exists", {"field": "token_hash"}
            ) from exc
        return self._row_to_refresh(row)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trust_refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def list_refresh_tokens(self, subject_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trust_refresh_token WHERE subject_id = %s ORDER BY issued_at",
                (subject_id,),
            ).fetchall()
        return [self._row_to_refresh(r) for r in rows]

    def revoke_refresh_token(self, token_hash: str, reason: str) -> bool:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE trust_refresh_token
                SET revoked = TRUE, revoked_reason = %s, revoked_at = now()
                WHERE token_hash = %s AND NOT revoked
                """,
                (reason, token_hash),
            )
            row = conn.execute(
                "SELECT 1 FROM trust_refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return row is not None

    def revoke_refresh_token_if_active(
        self, token_hash: str, reason: str, replaced_by_hash: Optional[str] = None
    ) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE trust_refresh_token
                SET revoked = TRUE, revoked_reason = %s, revoked_at = now(),
                    replaced_by_hash = %s
                WHERE token_hash = %s AND NOT revoked
                RETURNING *
                """,
                (reason, replaced_by_hash, token_hash),
            ).fetchone()
        return self._row_to_refresh(row) if row else None

    def revoke_subject_refresh_tokens(self, subject_id: str, reason: str) -> bool:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE trust_refresh_token
                SET revoked = TRUE, revoked_reason = %s, revoked_at = now()
                WHERE subject_id = %s AND NOT revoked
                """,
                (reason, subject_id),
            )
            row = conn.execute(
                "SELECT 1 FROM trust_refresh_token WHERE subject_id = %s LIMIT 1",
                (subject_id,),
            ).fetchone()
        return row is not None

    # -- audit log --------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            sequence_id=int(row["sequence_id"]),
            timestamp=row["timestamp"],
            action=row["action"],
            entity_type=row["entity_type"],
            severity=AuditSeverity(row["severity"]),
            category=AuditCategory(row["category"]),
            subject_identifier=row.get("subject_identifier"),
            subject_id=row.get("subject_id"),
            entity_id=row.get("entity_id"),
            before_state=row.get("before_state"),
            after_state=row.get("after_state"),
            details=row.get("details"),
            client_address=row.get("client_address"),
            client_agent=row.get("client_agent"),
            is_system_action=bool(row.get("is_system_action")),
            entry_hash=row["entry_hash"],
            previous_entry_hash=row["previous_entry_hash"],
            signature=row.get("signature"),
            tier=AuditTier(row.get("tier") or AuditTier.ACTIVE.value),
            archived_at=row.get("archived_at"),
            integrity_flagged=bool(row.get("integrity_flagged")),
            flag_reason=row.get("flag_reason"),
        )

    def get_audit_chain_head(self) -> Optional[Tuple[int, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT sequence_id, entry_hash FROM audit_chain_head WHERE id = 1"
            ).fetchone()
        return (int(row["sequence_id"]), row["entry_hash"]) if row else None

    def append_audit_entry(
        self, entry: AuditLogEntry, expected_previous_hash: str
    ) -> AuditLogEntry:
        try:
            with self._connect() as conn:
                head = conn.execute(
                    "SELECT sequence_id, entry_hash FROM audit_chain_head WHERE id = 1 FOR UPDATE"
                ).fetchone()
                last_sequence = int(head["sequence_id"]) if head else 0
                current_hash = head["entry_hash"] if head else GENESIS_HASH
                if (
                    current_hash != expected_previous_hash
                    or entry.sequence_id != last_sequence + 1
                    or entry.previous_entry_hash != current_hash
                ):
                    raise ConstraintViolation(
                        "audit chain head moved",
                        {"expected_sequence": last_sequence + 1},
                    )
                row = conn.execute(
                    f"""
                    INSERT INTO audit_log_entry ({_ENTRY_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                            %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        entry.sequence_id,
                        entry.timestamp,
                        entry.action,
                        entry.entity_type,
                        AuditSeverity(entry.severity).value,
                        AuditCategory(entry.category).value,
                        entry.subject_identifier,
                        entry.subject_id,
                        entry.entity_id,
                        _jsonb(entry.before_state),
                        _jsonb(entry.after_state),
                        _jsonb(entry.details),
                        entry.client_address,
                        entry.client_agent,
                        entry.is_system_action,
                        entry.entry_hash,
                        entry.previous_entry_hash,
                        entry.signature,
                        AuditTier.ACTIVE.value,
                        None,
                        False,
                        None,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO audit_chain_head (id, sequence_id, entry_hash)
                    VALUES (1, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET sequence_id = EXCLUDED.sequence_id, entry_hash = EXCLUDED.entry_hash
                    """,
                    (entry.sequence_id, entry.entry_hash),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "audit sequence already taken", {"sequence_id": entry.sequence_id}
            ) from exc
        return self._row_to_entry(row)

    def get_audit_entry(self, sequence_id: int) -> Optional[AuditLogEntry]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM audit_log_entry WHERE sequence_id = %s", (sequence_id,)
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def list_audit_entries(
        self,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if from_sequence is not None:
            clauses.append("sequence_id >= %s")
            params.append(from_sequence)
        if to_sequence is not None:
            clauses.append("sequence_id <= %s")
            params.append(to_sequence)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log_entry {where} ORDER BY sequence_id", params
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    @staticmethod
    def _filter_clauses(audit_filter: AuditLogFilter) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        exact = {
            "subject_id": audit_filter.subject_id,
            "action": audit_filter.action,
            "entity_type": audit_filter.entity_type,
            "entity_id": audit_filter.entity_id,
            "client_address": audit_filter.client_address,
            "severity": audit_filter.severity.value if audit_filter.severity else None,
            "category": audit_filter.category.value if audit_filter.category else None,
            "tier": audit_filter.tier.value if audit_filter.tier else None,
        }
        for column, value in exact.items():
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if audit_filter.subject_identifier:
            clauses.append("subject_identifier ILIKE %s")
            params.append(f"%{audit_filter.subject_identifier}%")
        if audit_filter.from_date:
            clauses.append("timestamp >= %s")
            params.append(audit_filter.from_date)
        if audit_filter.to_date:
            clauses.append("timestamp <= %s")
            params.append(audit_filter.to_date)
        if audit_filter.include_system_actions is not None:
            clauses.append("is_system_action = %s")
            params.append(audit_filter.include_system_actions)
        if audit_filter.search_text:
            clauses.append(
                "(action ILIKE %s OR subject_identifier ILIKE %s OR entity_type ILIKE %s"
                " OR entity_id ILIKE %s OR details::text ILIKE %s)"
            )
            params.extend([f"%{audit_filter.search_text}%"] * 5)
        return clauses, params

    def query_audit_entries(
        self,
        audit_filter: AuditLogFilter,
        *,
        limit: int,
        before: Optional[Tuple[datetime, int]] = None,
    ) -> List[AuditLogEntry]:
        clauses, params = self._filter_clauses(audit_filter)
        if before:
            clauses.append("(timestamp, sequence_id) < (%s, %s)")
            params.extend(before)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM audit_log_entry {where}
                ORDER BY timestamp DESC, sequence_id DESC
                LIMIT %s
                """,
                [*params, limit],
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def sequence_bounds(
        self, from_date: Optional[datetime], to_date: Optional[datetime]
    ) -> Optional[Tuple[int, int]]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT min(sequence_id) AS lo, max(sequence_id) AS hi FROM audit_log_entry
                WHERE (%(from)s::timestamptz IS NULL OR timestamp >= %(from)s)
                  AND (%(to)s::timestamptz IS NULL OR timestamp <= %(to)s)
                """,
                {"from": from_date, "to": to_date},
            ).fetchone()
        if not row or row["lo"] is None:
            return None
        return int(row["lo"]), int(row["hi"])

    def list_aged_audit_entries(
        self, tier: AuditTier, older_than: datetime
    ) -> List[AuditLogEntry]:
        reference = "coalesce(archived_at, timestamp)" if tier == AuditTier.ARCHIVED else "timestamp"
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM audit_log_entry
                WHERE tier = %s AND {reference} < %s
                ORDER BY sequence_id
                """,
                (AuditTier(tier).value, older_than),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def mark_audit_entries_archived(
        self, sequence_ids: List[int], archived_at: datetime
    ) -> int:
        if not sequence_ids:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE audit_log_entry SET tier = %s, archived_at = %s
                WHERE sequence_id = ANY(%s) AND tier = %s
                """,
                (AuditTier.ARCHIVED.value, archived_at, list(sequence_ids), AuditTier.ACTIVE.value),
            )
            return cur.rowcount

    def flag_audit_entries(self, sequence_ids: List[int], reason: str) -> List[int]:
        if not sequence_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE audit_log_entry SET integrity_flagged = TRUE, flag_reason = %s
                WHERE sequence_id = ANY(%s)
                RETURNING sequence_id
                """,
                (reason, list(sequence_ids)),
            ).fetchall()
        return sorted(int(r["sequence_id"]) for r in rows)

    def set_audit_signature(self, sequence_id: int, signature: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE audit_log_entry SET signature = %s WHERE sequence_id = %s",
                (signature, sequence_id),
            )
            return cur.rowcount > 0

    def purge_audit_entries(self, sequence_ids: List[int]) -> Tuple[int, int]:
        if not sequence_ids:
            return 0, 0
        with self._connect() as conn:
            rows = conn.execute(
                """
                DELETE FROM audit_log_entry
                WHERE sequence_id = ANY(%s) AND tier = %s
                RETURNING *
                """,
                (list(sequence_ids), AuditTier.ARCHIVED.value),
            ).fetchall()
            removed = collapse_sequence_ranges(
                (int(r["sequence_id"]), int(r["sequence_id"])) for r in rows
            )
            for first, last in removed:
                conn.execute(
                    """
                    INSERT INTO audit_purged_range (first_sequence, last_sequence)
                    VALUES (%s, %s) ON CONFLICT DO NOTHING
                    """,
                    (first, last),
                )
        freed = sum(entry_size(self._row_to_entry(r)) for r in rows)
        return len(rows), freed

    def list_purged_audit_ranges(self) -> List[Tuple[int, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT first_sequence, last_sequence FROM audit_purged_range"
            ).fetchall()
        return collapse_sequence_ranges(
            (int(r["first_sequence"]), int(r["last_sequence"])) for r in rows
        )

    def audit_tier_summary(self) -> Dict[str, Any]:
        summary: Dict[str, Any] = {}
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tier, count(*) AS n,
                       coalesce(sum(pg_column_size(audit_log_entry.*)), 0) AS size_bytes,
                       min(timestamp) AS oldest, max(timestamp) AS newest
                FROM audit_log_entry GROUP BY tier
                """
            ).fetchall()
            flagged = conn.execute(
                "SELECT count(*) AS n FROM audit_log_entry WHERE integrity_flagged"
            ).fetchone()
        by_tier = {r["tier"]: r for r in rows}
        for tier in AuditTier:
            row = by_tier.get(tier.value)
            summary[f"{tier.value}_count"] = int(row["n"]) if row else 0
            summary[f"{tier.value}_size_bytes"] = int(row["size_bytes"]) if row else 0
            summary[f"oldest_{tier.value}"] = row["oldest"] if row else None
            summary[f"newest_{tier.value}"] = row["newest"] if row else None
        summary["flagged_count"] = int(flagged["n"]) if flagged else 0
        return summary

    # -- retention bookkeeping --------------------------------------------

    def _get_state(self, name: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload FROM audit_retention_state WHERE name = %s", (name,)
            ).fetchone()
        return row["payload"] if row else None

    def _put_state(self, name: str, payload: Dict[str, Any]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_retention_state (name, payload, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (name) DO UPDATE
                SET payload = EXCLUDED.payload, updated_at = now()
                """,
                (name, Jsonb(payload)),
            )

    def get_retention_policy(self) -> Optional[RetentionPolicy]:
        data = self._get_state("policy")
        if not data:
            return None
        data = dict(data)
        if data.get("updated_at"):
            data["updated_at"] = datetime.fromisoformat(data["updated_at"])
        return RetentionPolicy(**data)

    def save_retention_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        data = asdict(policy)
        data["updated_at"] = policy.updated_at.isoformat() if policy.updated_at else None
        self._put_state("policy", data)
        return policy

    def record_retention_result(self, result: RetentionTaskResult) -> None:
        data = asdict(result)
        data["executed_at"] = result.executed_at.isoformat()
        self._put_state("last_result", data)

    def get_last_retention_result(self) -> Optional[RetentionTaskResult]:
        data = self._get_state("last_result")
        if not data:
            return None
        data = dict(data)
        data["executed_at"] = datetime.fromisoformat(data["executed_at"])
        return RetentionTaskResult(**data)
