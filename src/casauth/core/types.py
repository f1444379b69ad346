"""
casauth Core Types

Value types shared by the validators, the handshake and the single
sign-out store.

Design Principles:
- Immutable: all types use frozen attrs
- Validated: identifiers and tickets are non-empty at construction
- Expected failures are values (``ValidationFailure``), not exceptions
"""

from __future__ import annotations

import secrets
from enum import Enum, auto
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import attrs
from attrs import field, validators
from returns.result import Result


# =============================================================================
# ENUMS
# =============================================================================


class CasProtocol(Enum):
    """CAS protocol version spoken on the back-channel."""

    CAS10 = auto()
    CAS20 = auto()
    CAS30 = auto()

    @property
    def validation_path(self) -> str:
        """Path, relative to the CAS server base, of the validation endpoint."""
        paths = {
            CasProtocol.CAS10: "/validate",
            CasProtocol.CAS20: "/serviceValidate",
            CasProtocol.CAS30: "/p3/serviceValidate",
        }
        return paths[self]

    @classmethod
    def from_string(cls, value: str) -> CasProtocol:
        """
        Parse a protocol version as written in settings.

        Examples:
            "1", "1.0", "cas10" -> CasProtocol.CAS10
            "3.0" -> CasProtocol.CAS30
        """
        normalized = value.strip().lower().replace("cas", "").replace(".", "")
        mapping = {"1": cls.CAS10, "10": cls.CAS10, "2": cls.CAS20, "20": cls.CAS20,
                   "3": cls.CAS30, "30": cls.CAS30}
        if normalized not in mapping:
            raise ValueError(f"Unsupported CAS protocol version: {value}")
        return mapping[normalized]


class FailureReason(Enum):
    """Why a handshake did not produce an identity."""

    NETWORK_ERROR = auto()  # back-channel unreachable, timed out or non-2xx
    PROTOCOL_ERROR = auto()  # response body could not be understood
    REJECTED = auto()  # CAS server refused the ticket
    INVALID_CALLBACK = auto()  # missing ticket, unsealable state, bad correlation
    DENIED = auto()  # host provider refused the validated identity


# =============================================================================
# TICKETS AND PRINCIPALS
# =============================================================================


@attrs.define(frozen=True, slots=True)
class ServiceTicket:
    """
    Single-use credential issued by the CAS server.

    INVARIANT: value and service_url are non-empty
    """

    value: str = field(validator=[validators.instance_of(str), validators.min_len(1)])
    service_url: str = field(validator=[validators.instance_of(str), validators.min_len(1)])

    @property
    def short(self) -> str:
        """Truncated ticket, safe to put in logs."""
        return self.value[:12] + "..." if len(self.value) > 12 else self.value

    def __str__(self) -> str:
        return self.short


def _freeze_attributes(value: Optional[Mapping[str, Iterable[str]]]) -> Dict[str, Tuple[str, ...]]:
    if not value:
        return {}
    frozen: Dict[str, Tuple[str, ...]] = {}
    for name, values in value.items():
        if isinstance(values, str):
            frozen[name] = (values,)
        else:
            frozen[name] = tuple(values)
    return frozen


@attrs.define(frozen=True, slots=True)
class CasPrincipal:
    """
    User asserted by the CAS server.

    Attributes are multi-valued: each name maps to a tuple of values in
    the order the server sent them.

    INVARIANT: identifier is non-empty
    """

    identifier: str = field(validator=[validators.instance_of(str), validators.min_len(1)])
    attributes: Dict[str, Tuple[str, ...]] = field(factory=dict, converter=_freeze_attributes)
    proxy_granting_ticket: Optional[str] = None

    def get(self, name: str) -> Optional[str]:
        """First value of an attribute, or None."""
        values = self.attributes.get(name)
        return values[0] if values else None

    def get_all(self, name: str) -> Tuple[str, ...]:
        """All values of an attribute (empty tuple if absent)."""
        return self.attributes.get(name, ())

    def __str__(self) -> str:
        return self.identifier


# =============================================================================
# RESULT TYPES
# =============================================================================


@attrs.define(frozen=True, slots=True)
class ValidationFailure:
    """
    Structured reason a ticket did not yield an identity.

    Attributes:
        reason: Failure category
        message: Human-readable description
        code: CAS failure code (e.g. INVALID_TICKET) or a local code
    """

    reason: FailureReason
    message: str
    code: Optional[str] = None

    @classmethod
    def network_error(cls, message: str, code: Optional[str] = None) -> ValidationFailure:
        return cls(FailureReason.NETWORK_ERROR, message, code)

    @classmethod
    def protocol_error(cls, message: str, code: Optional[str] = None) -> ValidationFailure:
        return cls(FailureReason.PROTOCOL_ERROR, message, code)

    @classmethod
    def rejected(cls, message: str, code: Optional[str] = None) -> ValidationFailure:
        return cls(FailureReason.REJECTED, message, code)

    @classmethod
    def invalid_callback(cls, message: str, code: Optional[str] = None) -> ValidationFailure:
        return cls(FailureReason.INVALID_CALLBACK, message, code)

    @classmethod
    def denied(cls, message: str, code: Optional[str] = None) -> ValidationFailure:
        return cls(FailureReason.DENIED, message, code)

    def __str__(self) -> str:
        if self.code:
            return f"{self.reason.name} ({self.code}): {self.message}"
        return f"{self.reason.name}: {self.message}"


# Success(principal) or Failure(ValidationFailure)
ValidationResult = Result[CasPrincipal, ValidationFailure]


# =============================================================================
# HANDSHAKE STATE
# =============================================================================


def _new_correlation_id() -> str:
    return secrets.token_urlsafe(32)


@attrs.define(frozen=True, slots=True)
class HandshakeState:
    """
    Data round-tripped, sealed, through the browser between the challenge
    and the callback.

    Never stored server-side.
    """

    redirect_uri: str = "/"
    correlation_id: str = field(factory=_new_correlation_id)
    authentication_type: Optional[str] = None
    items: Dict[str, str] = field(factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return attrs.asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> HandshakeState:
        """
        Rebuild from a decoded payload.

        Raises:
            ValueError: If required fields are missing or mistyped
        """
        try:
            redirect_uri = data["redirect_uri"]
            correlation_id = data["correlation_id"]
        except KeyError as e:
            raise ValueError(f"Missing handshake field: {e}") from e
        authentication_type = data.get("authentication_type")
        items = data.get("items") or {}
        if not isinstance(redirect_uri, str) or not isinstance(correlation_id, str):
            raise ValueError("redirect_uri and correlation_id must be strings")
        if not correlation_id:
            raise ValueError("correlation_id must not be empty")
        if authentication_type is not None and not isinstance(authentication_type, str):
            raise ValueError("authentication_type must be a string")
        if not isinstance(items, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in items.items()
        ):
            raise ValueError("items must map strings to strings")
        return cls(
            redirect_uri=redirect_uri,
            correlation_id=correlation_id,
            authentication_type=authentication_type,
            items=dict(items),
        )


# =============================================================================
# IDENTITY TO ISSUE
# =============================================================================


class ClaimTypes:
    """Claim type names used when mapping a principal to an identity."""

    NAME_IDENTIFIER = "nameidentifier"
    NAME = "name"
    AUTHENTICATION_METHOD = "authenticationmethod"


@attrs.define(frozen=True, slots=True)
class AuthenticationIdentity:
    """
    Identity the host is asked to issue a session for.

    Claims are ordered ``(type, value)`` pairs; a type may repeat.
    """

    name: str = field(validator=[validators.instance_of(str), validators.min_len(1)])
    authentication_type: str = "CAS"
    claims: Tuple[Tuple[str, str], ...] = ()
    service_ticket: Optional[ServiceTicket] = None

    @classmethod
    def from_principal(
        cls,
        principal: CasPrincipal,
        authentication_type: str,
        service_ticket: Optional[ServiceTicket] = None,
    ) -> AuthenticationIdentity:
        """Map the CAS user and every attribute value to claims."""
        claims = [
            (ClaimTypes.NAME_IDENTIFIER, principal.identifier),
            (ClaimTypes.NAME, principal.identifier),
            (ClaimTypes.AUTHENTICATION_METHOD, authentication_type),
        ]
        for name, values in principal.attributes.items():
            claims.extend((name, value) for value in values)
        return cls(
            name=principal.identifier,
            authentication_type=authentication_type,
            claims=tuple(claims),
            service_ticket=service_ticket,
        )

    def with_claim(self, claim_type: str, value: str) -> AuthenticationIdentity:
        """Return a copy with one more claim."""
        return attrs.evolve(self, claims=self.claims + ((claim_type, value),))

    def find_first(self, claim_type: str) -> Optional[str]:
        for kind, value in self.claims:
            if kind == claim_type:
                return value
        return None

    def find_all(self, claim_type: str) -> Tuple[str, ...]:
        return tuple(value for kind, value in self.claims if kind == claim_type)


@attrs.define(frozen=True, slots=True)
class SignInResult:
    """
    Outcome of a completed handshake.

    Attributes:
        identity: Identity handed to the host sign-in manager
        session_key: Key of the session the host issued, if it reported one
        redirect_uri: Where the browser should go next
    """

    identity: AuthenticationIdentity
    redirect_uri: str
    session_key: Optional[str] = None
