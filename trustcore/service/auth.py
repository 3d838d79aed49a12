from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol

from trustcore.config import Settings
from trustcore.logging import get_logger, sanitize_error_message, set_correlation_id
from trustcore.service.audit import AuditRecorder
from trustcore.service.errors import (
    ErrorKind,
    FederationError,
    Result,
    ServiceError,
)
from trustcore.service.federation import FederationBridge
from trustcore.service.hashing import CredentialHasher
from trustcore.service.store_calls import call_store
from trustcore.service.tokens import TokenIssuer
from trustcore.storage.errors import ConstraintViolation
from trustcore.storage.models import (
    AuditCategory,
    AuditSeverity,
    ClientMeta,
    FederatedProfile,
    Identity,
    RefreshTokenRecord,
    SessionCredentials,
    utcnow,
)

logger = get_logger(__name__)

# Same message for unknown identifier and wrong secret
INVALID_CREDENTIALS_MESSAGE = "invalid credentials"

REASON_ROTATED = "rotated"
REASON_REVOKED_BY_SUBJECT = "revoked by subject"
REASON_LOGOUT = "logout"


def _may_link(identity: Identity, profile: FederatedProfile) -> bool:
    """A federated profile may sign in as an existing identity found by email."""
    if profile.email_verified:
        return True
    return (
        identity.federated_provider == profile.provider
        and identity.federated_subject == profile.subject_external_id
    )


class IdentityLookup(Protocol):
    def find_by_identifier(self, identifier: str) -> Optional[Identity]: ...

    def find_by_email(self, email: str) -> Optional[Identity]: ...

    def get_identity(self, subject_id: str) -> Optional[Identity]: ...

    def create_from_federated_profile(self, profile: FederatedProfile) -> Identity: ...

    def update_secret_digest(self, subject_id: str, digest: str, algo: str) -> bool: ...


class RefreshTokenStore(Protocol):
    def add_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    def revoke_refresh_token(self, token_hash: str, reason: str) -> bool: ...

    def revoke_refresh_token_if_active(
        self, token_hash: str, reason: str, replaced_by_hash: Optional[str] = None
    ) -> Optional[RefreshTokenRecord]: ...

    def revoke_subject_refresh_tokens(self, subject_id: str, reason: str) -> bool: ...

    def list_refresh_tokens(self, subject_id: str) -> List[RefreshTokenRecord]: ...


class AuthenticationCoordinator:
    """Credential lifecycle: login, refresh rotation, federated sign-on and logout.

    Every public operation returns a ``Result``. Expected outcomes such as a
    wrong secret or a revoked token are failures carried in the result, never
    raised. Each lifecycle transition is audited on a best-effort basis: an
    audit write that fails is logged and does not change the outcome.
    """

    def __init__(
        self,
        settings: Settings,
        identities: IdentityLookup,
        refresh_tokens: RefreshTokenStore,
        *,
        hasher: CredentialHasher,
        issuer: TokenIssuer,
        audit: AuditRecorder,
        federation: Optional[FederationBridge] = None,
    ) -> None:
        self.settings = settings
        self.identities = identities
        self.refresh_tokens = refresh_tokens
        self.hasher = hasher
        self.issuer = issuer
        self.audit = audit
        self.federation = federation
        self.store_timeout = settings.store_timeout_seconds
        self.require_verified_identity = settings.require_verified_identity

    async def _call(self, fn, *args: Any, **kwargs: Any):
        return await call_store(fn, *args, timeout=self.store_timeout, **kwargs)

    async def _audit(self, action: str, **kwargs: Any) -> Optional[int]:
        try:
            return await self.audit.append(action, **kwargs)
        except Exception as exc:
            # Audit health never decides an authentication outcome
            logger.error(
                "audit_write_failed",
                action=action,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            return None

    async def _issue_pair(
        self,
        identity: Identity,
        client: ClientMeta,
        *,
        raw_refresh: Optional[str] = None,
    ) -> SessionCredentials:
        now = utcnow()
        access_token, access_expires_at = self.issuer.issue_access_token(identity, now=now)
        raw_refresh = raw_refresh or self.issuer.issue_refresh_token()
        record = RefreshTokenRecord(
            token_hash=self.hasher.hash_token(raw_refresh),
            subject_id=identity.subject_id,
            issued_at=now,
            expires_at=self.issuer.refresh_expiry(now),
            client_address=client.address,
            client_agent=client.agent,
        )
        await self._call(self.refresh_tokens.add_refresh_token, record)
        return SessionCredentials(
            subject_id=identity.subject_id,
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=raw_refresh,
            refresh_expires_at=record.expires_at,
            roles=list(identity.roles),
        )

    async def _login_failed(
        self,
        identifier: str,
        reason: str,
        client: ClientMeta,
        subject_id: Optional[str] = None,
    ) -> None:
        await self._audit(
            "LOGIN_FAILED",
            entity_type="Authentication",
            subject_identifier=identifier,
            subject_id=subject_id,
            category=AuditCategory.AUTHENTICATION,
            details={"reason": reason},
            client=client,
        )

    async def _federated_rejected(
        self,
        provider: str,
        reason: str,
        client: ClientMeta,
        identity: Optional[Identity] = None,
    ) -> None:
        logger.info("federated_login_failed", provider=provider, reason=reason)
        await self._audit(
            "FEDERATED_LOGIN_FAILED",
            entity_type="Security",
            subject_identifier=identity.identifier if identity else None,
            subject_id=identity.subject_id if identity else None,
            severity=AuditSeverity.HIGH,
            category=AuditCategory.SECURITY,
            details={"provider": provider, "reason": reason},
            client=client,
        )

    async def _maybe_rehash(self, identity: Identity, secret: str) -> None:
        if not self.hasher.needs_rehash(identity.secret_digest):
            return
        digest, algo = await asyncio.to_thread(self.hasher.hash_password, secret)
        try:
            await self._call(
                self.identities.update_secret_digest, identity.subject_id, digest, algo
            )
        except ServiceError as exc:
            logger.warning(
                "password_rehash_failed",
                subject_id=identity.subject_id,
                error=sanitize_error_message(exc.message),
            )

    async def authenticate(
        self,
        identifier: str,
        secret: str,
        client: Optional[ClientMeta] = None,
    ) -> Result[SessionCredentials]:
        set_correlation_id()
        client = client or ClientMeta()
        try:
            identity = await self._call(self.identities.find_by_identifier, identifier)
            if identity is None or not identity.secret_digest:
                # Pay for one verification so both failure paths take comparable time
                await asyncio.to_thread(self.hasher.dummy_verify, secret)
                verified = False
            else:
                verified = await asyncio.to_thread(
                    self.hasher.verify_password,
                    identity.secret_digest,
                    secret,
                    identity.secret_algo,
                )
            if not verified:
                logger.info("login_failed", reason="invalid_credentials")
                await self._login_failed(identifier, "invalid_credentials", client)
                return Result.fail(
                    ErrorKind.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE
                )
            if not identity.active:
                await self._login_failed(
                    identifier, "account_inactive", client, identity.subject_id
                )
                return Result.fail(ErrorKind.ACCOUNT_INACTIVE, "account is disabled")
            if self.require_verified_identity and not identity.email_verified:
                await self._login_failed(
                    identifier, "unverified_identity", client, identity.subject_id
                )
                return Result.fail(
                    ErrorKind.UNVERIFIED_IDENTITY, "identity verification required"
                )
            await self._maybe_rehash(identity, secret)
            credentials = await self._issue_pair(identity, client)
        except ServiceError as exc:
            return Result.from_error(exc)
        await self._audit(
            "LOGIN",
            entity_type="Authentication",
            subject_identifier=identity.identifier,
            subject_id=identity.subject_id,
            entity_id=identity.subject_id,
            category=AuditCategory.AUTHENTICATION,
            client=client,
        )
        return Result.success(credentials)

    async def _refresh_failed(
        self,
        reason: str,
        record: Optional[RefreshTokenRecord],
        severity: AuditSeverity = AuditSeverity.MEDIUM,
    ) -> None:
        await self._audit(
            "TOKEN_REFRESH_FAILED",
            entity_type="RefreshToken",
            subject_id=record.subject_id if record else None,
            severity=severity,
            category=AuditCategory.AUTHENTICATION,
            details={"reason": reason},
            client=(
                ClientMeta(record.client_address, record.client_agent)
                if record
                else None
            ),
        )

    async def refresh(self, raw_refresh_token: str) -> Result[SessionCredentials]:
        """Redeem a refresh token exactly once for a new credential pair."""
        set_correlation_id()
        if not raw_refresh_token:
            return Result.fail(ErrorKind.INVALID_TOKEN, "refresh token is invalid")
        token_hash = self.hasher.hash_token(raw_refresh_token)
        try:
            record = await self._call(self.refresh_tokens.get_refresh_token, token_hash)
            if record is None:
                await self._refresh_failed("invalid_token", None)
                return Result.fail(ErrorKind.INVALID_TOKEN, "refresh token is invalid")
            if record.revoked:
                # Reuse of a rotated token may mean it leaked
                await self._refresh_failed("token_revoked", record, AuditSeverity.HIGH)
                return Result.fail(ErrorKind.TOKEN_REVOKED, "refresh token was revoked")
            if record.is_expired():
                await self._refresh_failed("token_expired", record)
                return Result.fail(ErrorKind.TOKEN_EXPIRED, "refresh token has expired")
            identity = await self._call(self.identities.get_identity, record.subject_id)
            if identity is None:
                await self._refresh_failed("unknown_subject", record)
                return Result.fail(ErrorKind.INVALID_TOKEN, "refresh token is invalid")
            if not identity.active:
                await self._refresh_failed("account_inactive", record)
                return Result.fail(ErrorKind.ACCOUNT_INACTIVE, "account is disabled")

            new_raw = self.issuer.issue_refresh_token()
            rotated = await self._call(
                self.refresh_tokens.revoke_refresh_token_if_active,
                token_hash,
                REASON_ROTATED,
                self.hasher.hash_token(new_raw),
            )
            if rotated is None:
                # A concurrent redemption won the compare-and-swap
                await self._refresh_failed("token_revoked", record, AuditSeverity.HIGH)
                return Result.fail(ErrorKind.TOKEN_REVOKED, "refresh token was revoked")
            client = ClientMeta(record.client_address, record.client_agent)
            credentials = await self._issue_pair(identity, client, raw_refresh=new_raw)
        except ServiceError as exc:
            return Result.from_error(exc)
        await self._audit(
            "TOKEN_REFRESH",
            entity_type="RefreshToken",
            subject_identifier=identity.identifier,
            subject_id=identity.subject_id,
            category=AuditCategory.AUTHENTICATION,
            client=client,
        )
        return Result.success(credentials)

    async def begin_federated_login(
        self, redirect_uri: Optional[str] = None
    ) -> Result[Dict[str, str]]:
        set_correlation_id()
        if self.federation is None:
            return Result.fail(
                ErrorKind.CONFIGURATION_ERROR, "federated sign-in is not configured"
            )
        callback = redirect_uri or self.settings.oauth_redirect_uri
        if not callback:
            return Result.fail(
                ErrorKind.CONFIGURATION_ERROR, "no federation redirect URI configured"
            )
        try:
            return Result.success(await self.federation.begin(callback))
        except ServiceError as exc:
            return Result.from_error(exc)

    async def process_federated_callback(
        self,
        code: str,
        redirect_uri: str,
        *,
        state: Optional[str] = None,
        client: Optional[ClientMeta] = None,
    ) -> Result[SessionCredentials]:
        """Finish federated sign-on; no local state changes unless the exchange succeeds."""
        set_correlation_id()
        client = client or ClientMeta()
        if self.federation is None:
            return Result.fail(
                ErrorKind.CONFIGURATION_ERROR, "federated sign-in is not configured"
            )
        provider = self.federation.provider.name
        try:
            profile = await self.federation.exchange(code, redirect_uri, state=state)
        except FederationError as exc:
            await self._federated_rejected(provider, exc.message, client)
            return Result.from_error(exc)

        try:
            identity = await self._call(self.identities.find_by_email, profile.email)
            provisioned = False
            if identity is None:
                if self.require_verified_identity and not profile.email_verified:
                    await self._federated_rejected(provider, "unverified_identity", client)
                    return Result.fail(
                        ErrorKind.UNVERIFIED_IDENTITY, "identity verification required"
                    )
                try:
                    identity = await self._call(
                        self.identities.create_from_federated_profile, profile
                    )
                    provisioned = True
                except ConstraintViolation:
                    # Provisioned concurrently by another callback
                    identity = await self._call(
                        self.identities.find_by_email, profile.email
                    )
                    if identity is None:
                        raise
            if not provisioned and not _may_link(identity, profile):
                # An unverified provider email never grants an existing account
                await self._federated_rejected(
                    provider, "unverified_email_link", client, identity
                )
                return Result.from_error(
                    FederationError(
                        "provider did not verify the email address",
                        detail={"provider": provider},
                    )
                )
            if not identity.active:
                await self._federated_rejected(provider, "account_inactive", client, identity)
                return Result.fail(ErrorKind.ACCOUNT_INACTIVE, "account is disabled")
            if self.require_verified_identity and not (
                identity.email_verified or profile.email_verified
            ):
                await self._federated_rejected(
                    provider, "unverified_identity", client, identity
                )
                return Result.fail(
                    ErrorKind.UNVERIFIED_IDENTITY, "identity verification required"
                )
            credentials = await self._issue_pair(identity, client)
        except ServiceError as exc:
            return Result.from_error(exc)

        if provisioned:
            await self._audit(
                "CREATE_FEDERATED_USER",
                entity_type="User",
                subject_identifier=identity.identifier,
                subject_id=identity.subject_id,
                entity_id=identity.subject_id,
                after_state={
                    "identifier": identity.identifier,
                    "federated_provider": provider,
                    "email_verified": identity.email_verified,
                },
                client=client,
            )
        await self._audit(
            "FEDERATED_LOGIN",
            entity_type="Authentication",
            subject_identifier=identity.identifier,
            subject_id=identity.subject_id,
            entity_id=identity.subject_id,
            category=AuditCategory.AUTHENTICATION,
            details={"provider": provider, "provisioned": provisioned},
            client=client,
        )
        return Result.success(credentials)

    async def revoke(self, raw_refresh_token: str) -> Result[bool]:
        """Revoke one refresh token; repeating the call is a no-op success."""
        set_correlation_id()
        if not raw_refresh_token:
            return Result.success(False)
        token_hash = self.hasher.hash_token(raw_refresh_token)
        try:
            record = await self._call(self.refresh_tokens.get_refresh_token, token_hash)
            if record is None:
                return Result.success(False)
            revoked = await self._call(
                self.refresh_tokens.revoke_refresh_token,
                token_hash,
                REASON_REVOKED_BY_SUBJECT,
            )
        except ServiceError as exc:
            return Result.from_error(exc)
        if revoked and not record.revoked:
            await self._audit(
                "TOKEN_REVOKED",
                entity_type="RefreshToken",
                subject_id=record.subject_id,
                category=AuditCategory.AUTHENTICATION,
                details={"reason": REASON_REVOKED_BY_SUBJECT},
            )
        return Result.success(revoked)

    async def logout(self, subject_id: str) -> Result[bool]:
        """Revoke every refresh token of ``subject_id`` ("sign out everywhere")."""
        set_correlation_id()
        try:
            found = await self._call(
                self.refresh_tokens.revoke_subject_refresh_tokens,
                subject_id,
                REASON_LOGOUT,
            )
        except ServiceError as exc:
            return Result.from_error(exc)
        await self._audit(
            "LOGOUT",
            entity_type="Authentication",
            subject_id=subject_id,
            entity_id=subject_id,
            category=AuditCategory.AUTHENTICATION,
            details={"had_sessions": found},
        )
        return Result.success(found)

    def validate_access_token(self, token: str) -> bool:
        return self.issuer.validate_access_token(token) is not None

    def decode_access_token(self, token: str) -> Optional[Dict[str, Any]]:
        return self.issuer.validate_access_token(token)
