from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Tuple

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.service.errors import ConfigurationError
from trustcore.storage.models import Identity

logger = get_logger(__name__)

# Raw refresh tokens carry 32 random bytes
REFRESH_TOKEN_BYTES = 32


class TokenIssuer:
    """Signs short-lived HS256 access tokens and mints opaque refresh tokens.

    The signing key is captured once at construction and never mutated; a key
    rotation means building a new issuer.
    """

    def __init__(self, settings: Settings) -> None:
        secret = settings.jwt_secret
        if not secret:
            raise ConfigurationError("JWT secret is not configured")
        if len(secret) < 32:
            logger.warning("jwt_secret_short", length=len(secret))
        self._key = secret.encode("utf-8")
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue_access_token(
        self, identity: Identity, *, now: Optional[datetime] = None
    ) -> Tuple[str, datetime]:
        issued_at = now or self._now()
        expires_at = issued_at + self.access_ttl
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": identity.subject_id,
            "roles": list(identity.roles),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "jti": uuid.uuid4().hex,
            "token_type": "access",
        }
        return self._encode_jwt(payload), expires_at

    def issue_refresh_token(self) -> str:
        return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)

    def refresh_expiry(self, now: Optional[datetime] = None) -> datetime:
        return (now or self._now()) + self.refresh_ttl

    def validate_access_token(self, token: str) -> Optional[dict[str, Any]]:
        """Return the claims of a valid access token, or None.

        Checks signature, issuer, audience and expiry only; no store round-trip.
        """
        if not token or not isinstance(token, str):
            return None
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        if not payload.get("sub"):
            return None
        return payload

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.info("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.info("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.info("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
