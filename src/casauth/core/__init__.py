"""
casauth Core Module

Foundational types and abstractions used by every other module.

Components:
- types: Tickets, principals, failures, handshake state, identities
- state_machine: Transition-table state machine with invariant checking
- crypto: Sealing of handshake state
- exceptions: Custom exception types
"""

from casauth.core.types import (
    AuthenticationIdentity,
    CasPrincipal,
    CasProtocol,
    ClaimTypes,
    FailureReason,
    HandshakeState,
    ServiceTicket,
    SignInResult,
    ValidationFailure,
    ValidationResult,
)
from casauth.core.state_machine import StateMachineBase, Transition
from casauth.core.crypto import (
    FernetStateDataFormat,
    StateDataFormat,
    derive_state_key,
    generate_state_key,
)
from casauth.core.exceptions import (
    CasAuthError,
    ConfigurationError,
    InvariantViolation,
    ProtocolError,
    StateCodecError,
    StateError,
)

__all__ = [
    # Types
    "AuthenticationIdentity",
    "CasPrincipal",
    "CasProtocol",
    "ClaimTypes",
    "FailureReason",
    "HandshakeState",
    "ServiceTicket",
    "SignInResult",
    "ValidationFailure",
    "ValidationResult",
    # State Machine
    "StateMachineBase",
    "Transition",
    # State sealing
    "FernetStateDataFormat",
    "StateDataFormat",
    "derive_state_key",
    "generate_state_key",
    # Exceptions
    "CasAuthError",
    "ConfigurationError",
    "InvariantViolation",
    "ProtocolError",
    "StateCodecError",
    "StateError",
]
