"""
casauth Cryptographic Operations

Sealing of the handshake state round-tripped through the browser.
Uses the cryptography library's Fernet construction (AES-CBC + HMAC-SHA256
with an embedded timestamp) - no custom cryptography.

Security:
- Tampered, truncated or foreign-key tokens fail to unseal
- Tokens older than the configured lifetime fail to unseal
- Correlation ids are compared in constant time
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
from datetime import timedelta
from typing import List, Optional, Protocol, Sequence, runtime_checkable

import attrs
import structlog
from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from casauth.core.exceptions import ConfigurationError, StateCodecError
from casauth.core.types import HandshakeState

logger = structlog.get_logger()


# =============================================================================
# KEY DERIVATION
# =============================================================================


def derive_state_key(
    secret: str,
    salt: bytes = b"casauth.handshake-state",
    iterations: int = 390000,
) -> bytes:
    """
    Derive a Fernet key from an application secret using PBKDF2.

    Args:
        secret: Application secret (e.g. from settings)
        salt: Salt for key derivation
        iterations: PBKDF2 iteration count

    Returns:
        URL-safe base64 encoded 32-byte key
    """
    if not secret:
        raise ConfigurationError("State secret must not be empty")

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode("utf-8")))


def generate_state_key() -> bytes:
    """Generate a random Fernet key."""
    return Fernet.generate_key()


def correlation_matches(expected: str, actual: str) -> bool:
    """Constant-time comparison of two correlation ids."""
    return hmac.compare_digest(expected.encode("utf-8"), actual.encode("utf-8"))


# =============================================================================
# STATE DATA FORMAT
# =============================================================================


@runtime_checkable
class StateDataFormat(Protocol):
    """Seal/unseal service for ``HandshakeState``."""

    def seal(self, state: HandshakeState) -> str:
        ...

    def unseal(self, token: str) -> HandshakeState:
        """Raises StateCodecError if the token cannot be trusted."""
        ...


def _build_fernet(keys: Sequence[bytes]) -> MultiFernet:
    if not keys:
        raise ConfigurationError("At least one state key is required")
    try:
        return MultiFernet([Fernet(key) for key in keys])
    except (ValueError, TypeError, binascii.Error) as e:
        logger.error("state_key_invalid", key_count=len(keys))
        raise ConfigurationError(f"Invalid state key: {e}") from e


@attrs.define
class FernetStateDataFormat:
    """
    Fernet-backed ``StateDataFormat``.

    The first key seals; every key is tried when unsealing, so keys can be
    rotated by prepending a new one.

    Example:
        codec = FernetStateDataFormat(keys=[derive_state_key(settings.SECRET)])
        token = codec.seal(HandshakeState(redirect_uri="/reports"))
        state = codec.unseal(token)
    """

    keys: List[bytes] = attrs.field(repr=False)
    lifetime: timedelta = timedelta(minutes=15)
    _fernet: MultiFernet = attrs.field(init=False, repr=False)
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    def __attrs_post_init__(self) -> None:
        if self.lifetime <= timedelta(0):
            raise ConfigurationError("State lifetime must be positive")
        self._fernet = _build_fernet(self.keys)

    @classmethod
    def from_secret(cls, secret: str, lifetime: Optional[timedelta] = None) -> FernetStateDataFormat:
        """Build a codec from a single application secret."""
        if lifetime is None:
            return cls(keys=[derive_state_key(secret)])
        return cls(keys=[derive_state_key(secret)], lifetime=lifetime)

    def seal(self, state: HandshakeState) -> str:
        payload = json.dumps(state.to_dict(), separators=(",", ":"), sort_keys=True)
        return self._fernet.encrypt(payload.encode("utf-8")).decode("ascii")

    def unseal(self, token: str) -> HandshakeState:
        if not token:
            raise StateCodecError("Handshake state is missing")

        try:
            payload = self._fernet.decrypt(
                token.encode("ascii"), ttl=int(self.lifetime.total_seconds())
            )
        except (InvalidToken, UnicodeEncodeError) as e:
            self._logger.info("state_unseal_failed", error=type(e).__name__)
            raise StateCodecError("Handshake state is invalid or expired") from e

        try:
            data = json.loads(payload.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("state payload is not an object")
            return HandshakeState.from_dict(data)
        except ValueError as e:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
            self._logger.warning("state_payload_invalid", error=str(e))
            raise StateCodecError("Handshake state payload is malformed") from e
