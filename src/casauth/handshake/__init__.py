"""
casauth Handshake Module

The redirect / callback / validate / bind sequence.

Components:
- types: Request abstraction, states, events, context and results
- service_url: Deterministic service URL resolution
- handler: CasAuthenticationHandler and its state machine
  (import from ``casauth.handshake.handler`` or the top-level package;
  it depends on ``casauth.options``, which depends on this package)
"""

from casauth.handshake.types import (
    ChallengeResult,
    HandshakeContext,
    HandshakeOutcome,
    HandshakeStage,
    HttpRequest,
)
from casauth.handshake.service_url import (
    DEFAULT_CALLBACK_PATH,
    STATE_PARAMETER,
    ServiceUrlResolver,
    build_return_to,
    resolve_service_url,
)

__all__ = [
    "ChallengeResult",
    "HandshakeContext",
    "HandshakeOutcome",
    "HandshakeStage",
    "HttpRequest",
    "DEFAULT_CALLBACK_PATH",
    "STATE_PARAMETER",
    "ServiceUrlResolver",
    "build_return_to",
    "resolve_service_url",
]
