"""
casauth - CAS single sign-on for Python web applications

Server side of the Central Authentication Service handshake: login
redirect, service ticket callback, back-channel validation and binding of
the validated user to a local session, plus single sign-out.

Supported Protocols:
- CAS 1.0 (/validate)
- CAS 2.0 (/serviceValidate)
- CAS 3.0 (/p3/serviceValidate, default)

Example Usage:
    from casauth import CasAuthenticationHandler, CasAuthenticationOptions, HttpRequest

    options = CasAuthenticationOptions.from_mapping({
        "cas_server_url_base": "https://cas.example.com/cas",
        "state_secret": settings.SECRET_KEY,
        "single_sign_out": True,
    })
    handler = CasAuthenticationHandler(options, sign_in_manager=sessions)

    challenge = await handler.challenge(HttpRequest.from_url(url))
    # 302 -> challenge.redirect_url

    outcome = await handler.handle_callback(HttpRequest.from_url(callback_url))
    if outcome.succeeded:
        print(f"Signed in {outcome.result.unwrap().identity.name}")
"""

from casauth.core.types import (
    AuthenticationIdentity,
    CasPrincipal,
    CasProtocol,
    FailureReason,
    HandshakeState,
    ValidationFailure,
)
from casauth.core.crypto import FernetStateDataFormat
from casauth.handshake.types import HandshakeOutcome, HandshakeStage, HttpRequest
from casauth.options import CasAuthenticationOptions, CasAuthenticationProvider
from casauth.handshake.handler import CasAuthenticationHandler, SignInManager
from casauth.sso.store import InMemorySingleSignOutStore
from casauth.validation.validators import ValidatorConfig, create_ticket_validator

__version__ = "0.1.0"

__all__ = [
    # Main API
    "CasAuthenticationHandler",
    "CasAuthenticationOptions",
    "CasAuthenticationProvider",
    "SignInManager",
    "HttpRequest",
    # Types
    "AuthenticationIdentity",
    "CasPrincipal",
    "CasProtocol",
    "FailureReason",
    "HandshakeOutcome",
    "HandshakeStage",
    "HandshakeState",
    "ValidationFailure",
    # Building blocks
    "FernetStateDataFormat",
    "InMemorySingleSignOutStore",
    "ValidatorConfig",
    "create_ticket_validator",
    # Metadata
    "__version__",
]
