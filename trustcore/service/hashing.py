"""One-way hashing for stored secrets.

Two primitives with different jobs:

- refresh tokens are looked up by a fast deterministic SHA-256 digest; the raw
  token has 256 bits of entropy so a slow hash adds nothing.
- passwords are stored as salted argon2id digests.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Tuple, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from trustcore.logging import get_logger
from trustcore.service.errors import ValidationError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


def _as_bytes(secret: Union[str, bytes]) -> bytes:
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if not isinstance(secret, (bytes, bytearray)) or not secret:
        raise ValidationError("secret must be a non-empty string or bytes")
    return bytes(secret)


class CredentialHasher:
    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the identifier is unknown so both failure
        # paths pay for one argon2 verification.
        self._dummy_digest = self._pwd_hasher.hash(secrets.token_urlsafe(32))

    def hash_token(self, secret: Union[str, bytes]) -> str:
        """Deterministic lookup key for a refresh token."""
        return hashlib.sha256(_as_bytes(secret)).hexdigest()

    def token_matches(self, secret: Union[str, bytes], token_hash: str) -> bool:
        return hmac.compare_digest(self.hash_token(secret), token_hash)

    def hash_password(self, password: str) -> Tuple[str, str]:
        _as_bytes(password)
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(
        self, digest: str, password: str, algo: str = PASSWORD_ALGO
    ) -> bool:
        if not digest or not password:
            return False
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_invalid")
            return False

    def dummy_verify(self, password: str) -> bool:
        """Burn one verification so unknown identifiers cost the same as wrong secrets."""
        try:
            self._pwd_hasher.verify(self._dummy_digest, password or "-")
        except VerificationError:
            pass
        return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True
