"""
Identity Tokens and Per-Identity Credential Storage.

Tokens are compact HMAC-SHA256 signed payloads:

    base64url(json payload) + "." + base64url(signature)

Payload: {"sub": identity, "iat": issued_at, "exp": expires_at}

The broker only ever sees the identity after the signature and expiry have
been checked and the subject has been normalized.

Author: Backend Lead Developer
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .identity import (
    InvalidIdentityError,
    normalize_identity,
    validate_path_component,
)

logger = logging.getLogger(__name__)

__all__ = ["TokenValidator", "TokenResult", "CredentialStore"]


def _b64u(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64u_decode(value: str) -> bytes:
    pad = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode((value + pad).encode("ascii"))


@dataclass(frozen=True)
class TokenResult:
    """Outcome of token validation."""
    valid: bool
    identity: Optional[str] = None
    error: Optional[str] = None


class TokenValidator:
    """
    Issues and verifies signed identity tokens.

    No state beyond the secret and the token lifetime.
    """

    __slots__ = ("_secret", "ttl_seconds")

    def __init__(self, secret: str, ttl_seconds: int = 86400):
        if not secret:
            raise ValueError("Token secret is required")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _sign(self, raw: bytes) -> bytes:
        return hmac.new(self._secret, raw, hashlib.sha256).digest()

    def issue(self, identity: str, now: Optional[float] = None) -> str:
        """
        Issue a token for an identity.

        Raises:
            InvalidIdentityError: If the identity cannot be normalized
        """
        issued_at = int(now if now is not None else time.time())
        payload = {
            "sub": normalize_identity(identity),
            "iat": issued_at,
            "exp": issued_at + self.ttl_seconds,
        }
        raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        return f"{_b64u(raw)}.{_b64u(self._sign(raw))}"

    def validate(self, token: Optional[str], now: Optional[float] = None) -> TokenResult:
        """Verify a token and return the normalized identity it carries."""
        if not token:
            return TokenResult(valid=False, error="No authentication token")

        try:
            encoded_payload, encoded_sig = token.split(".", 1)
            raw = _b64u_decode(encoded_payload)
            signature = _b64u_decode(encoded_sig)
        except (ValueError, UnicodeEncodeError):
            return TokenResult(valid=False, error="Malformed token")

        if not hmac.compare_digest(signature, self._sign(raw)):
            return TokenResult(valid=False, error="Invalid token signature")

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return TokenResult(valid=False, error="Malformed token")

        if not isinstance(payload, dict):
            return TokenResult(valid=False, error="Malformed token")

        current = now if now is not None else time.time()
        try:
            expires_at = int(payload.get("exp", 0))
        except (TypeError, ValueError):
            return TokenResult(valid=False, error="Malformed token")
        if expires_at <= current:
            return TokenResult(valid=False, error="Token expired")

        try:
            identity = normalize_identity(payload.get("sub"))
        except InvalidIdentityError as e:
            return TokenResult(valid=False, error=str(e))

        return TokenResult(valid=True, identity=identity)


class CredentialStore:
    """
    Per-identity credential directories.

    Layout: <data_dir>/sessions/<identity>/

    Paths are built from the normalized identity only.
    """

    __slots__ = ("sessions_dir",)

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)

    def path_for(self, identity: str) -> Path:
        """Return the credential directory for an identity (not created)."""
        normalized = normalize_identity(identity)
        validate_path_component(normalized)
        return self.sessions_dir / normalized

    def ensure(self, identity: str) -> Path:
        """Create the credential directory if needed and return it."""
        path = self.path_for(identity)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def revoke(self, identity: str) -> bool:
        """
        Remove an identity's credential directory.

        Returns:
            True if a directory was removed, False otherwise
        """
        path = self.path_for(identity)
        if not path.exists():
            return False

        try:
            shutil.rmtree(path)
        except OSError as e:
            logger.error(f"Failed to revoke credentials for {path.name}: {e}")
            return False

        logger.info(f"Revoked credentials for identity {path.name}")
        return True
