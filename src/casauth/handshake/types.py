"""
casauth Handshake Types

Request abstraction, states, events and context of the authentication
handshake.

States:
- UNAUTHENTICATED: Fresh request, nothing known
- CHALLENGE_ISSUED: Login redirect emitted, or handshake state unsealed on callback
- CALLBACK_RECEIVED: Ticket extracted from the callback
- VALIDATED: CAS server vouched for the ticket
- BOUND: Identity handed to the host sign-in manager
- FAILED: Terminal; carries a ValidationFailure
"""

from __future__ import annotations

from enum import Enum, auto
from typing import Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

import attrs
from attrs import field, validators
from returns.result import Failure, Result

from casauth.core.state_machine import Transition
from casauth.core.types import (
    AuthenticationIdentity,
    CasPrincipal,
    HandshakeState,
    ServiceTicket,
    SignInResult,
    ValidationFailure,
)


# =============================================================================
# REQUEST
# =============================================================================


@attrs.define(frozen=True, slots=True)
class HttpRequest:
    """
    The parts of an incoming request the handshake looks at.

    ``path`` is relative to ``path_base`` (the application's mount point).
    When a query parameter repeats, the first value is kept.
    """

    scheme: str = field(validator=validators.in_(("http", "https")))
    host: str = field(validator=[validators.instance_of(str), validators.min_len(1)])
    path: str = "/"
    path_base: str = ""
    query: Dict[str, str] = field(factory=dict)
    method: str = "GET"

    @classmethod
    def from_url(cls, url: str, path_base: str = "", method: str = "GET") -> HttpRequest:
        """
        Build a request from an absolute URL.

        Example:
            HttpRequest.from_url("https://app/signin-cas?ticket=ST-1")
        """
        parts = urlsplit(url)
        path = parts.path or "/"
        if path_base and path.startswith(path_base):
            path = path[len(path_base):] or "/"
        query: Dict[str, str] = {}
        for key, value in parse_qsl(parts.query, keep_blank_values=True):
            query.setdefault(key, value)
        return cls(
            scheme=parts.scheme,
            host=parts.netloc,
            path=path,
            path_base=path_base,
            query=query,
            method=method,
        )

    @property
    def path_and_query(self) -> str:
        full_path = self.path_base + self.path
        if self.query:
            return f"{full_path}?{urlencode(self.query)}"
        return full_path

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}{self.path_and_query}"


# =============================================================================
# STATES
# =============================================================================


class HandshakeStage(Enum):
    """Handshake protocol states."""

    UNAUTHENTICATED = auto()
    CHALLENGE_ISSUED = auto()
    CALLBACK_RECEIVED = auto()
    VALIDATED = auto()
    BOUND = auto()
    FAILED = auto()


# =============================================================================
# EVENTS
# =============================================================================


@attrs.define(frozen=True, slots=True)
class ChallengeRequested:
    """Host asked for authentication; a login redirect is emitted."""

    state: HandshakeState
    service_url: str


@attrs.define(frozen=True, slots=True)
class StateRestored:
    """Sealed handshake state on a callback was unsealed."""

    state: HandshakeState
    service_url: str


@attrs.define(frozen=True, slots=True)
class TicketReceived:
    ticket: ServiceTicket


@attrs.define(frozen=True, slots=True)
class CallbackRejected:
    """Callback unusable: no ticket, unsealable state or correlation mismatch."""

    failure: ValidationFailure


@attrs.define(frozen=True, slots=True)
class TicketValidated:
    principal: CasPrincipal


@attrs.define(frozen=True, slots=True)
class ValidationFailed:
    failure: ValidationFailure


@attrs.define(frozen=True, slots=True)
class IdentityDenied:
    """Host provider refused the validated identity."""

    failure: ValidationFailure


@attrs.define(frozen=True, slots=True)
class IdentityBound:
    identity: AuthenticationIdentity
    session_key: Optional[str] = None


# =============================================================================
# CONTEXT
# =============================================================================


@attrs.define(frozen=True, slots=True)
class HandshakeContext:
    """Everything the handshake learned during one request."""

    service_url: Optional[str] = None
    state: Optional[HandshakeState] = None
    ticket: Optional[ServiceTicket] = None
    principal: Optional[CasPrincipal] = None
    identity: Optional[AuthenticationIdentity] = None
    session_key: Optional[str] = None
    failure: Optional[ValidationFailure] = None


# =============================================================================
# RESULTS
# =============================================================================


@attrs.define(frozen=True, slots=True)
class ChallengeResult:
    """
    Login redirect produced by a challenge.

    The host sends a 302 to ``redirect_url`` and may store
    ``correlation_id`` in a short-lived cookie to check on the callback.
    """

    redirect_url: str
    service_url: str
    state: HandshakeState

    @property
    def correlation_id(self) -> str:
        return self.state.correlation_id


@attrs.define(frozen=True, slots=True)
class HandshakeOutcome:
    """Final stage, result and transition trace of a callback."""

    stage: HandshakeStage
    result: Result[SignInResult, ValidationFailure]
    trace: Tuple[Transition[HandshakeStage], ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.stage == HandshakeStage.BOUND

    @property
    def failure(self) -> Optional[ValidationFailure]:
        if isinstance(self.result, Failure):
            return self.result.failure()
        return None
