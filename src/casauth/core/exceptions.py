"""
casauth Exception Types

Exceptions are reserved for misuse and configuration errors. Expected
protocol outcomes (rejected tickets, unreachable servers, forged callbacks)
travel as ``ValidationFailure`` values inside a ``returns`` Result.
"""

from typing import Optional


class CasAuthError(Exception):
    """Base exception for all casauth errors."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(CasAuthError):
    """
    Options are incomplete or inconsistent.

    Raised when the handler is built, never while a request is in flight.
    """

    pass


class ProtocolError(CasAuthError):
    """
    CAS server response could not be understood.

    Raised by the response parsers and converted into a
    ``PROTOCOL_ERROR`` failure at the validator boundary.
    """

    pass


class StateCodecError(CasAuthError):
    """
    Sealed handshake state could not be unsealed.

    Covers tampering, expiry, a foreign key and payloads that decrypt
    but do not describe a handshake state.
    """

    def __init__(self, message: str = "Handshake state could not be unsealed") -> None:
        super().__init__(message, code="invalid_state")


class StateError(CasAuthError):
    """An operation is not valid in the current handshake state."""

    pass


class InvariantViolation(CasAuthError):
    """
    Handshake invariant was violated.

    Indicates a bug: a transition tried to commit a context that
    contradicts its target state.
    """

    pass
