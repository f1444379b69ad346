"""
Pytest configuration and shared fixtures for casauth tests.
"""

import secrets
from typing import Dict, List, Optional, Tuple

import httpx
import pytest
from returns.result import Success

from casauth.core.crypto import FernetStateDataFormat, generate_state_key
from casauth.core.types import (
    AuthenticationIdentity,
    CasPrincipal,
    HandshakeState,
    ValidationResult,
)
from casauth.options import CasAuthenticationOptions


CAS_BASE = "https://cas.example.com/cas"
APP_URL = "https://app"


# =============================================================================
# FAKE CAS SERVER
# =============================================================================


class FakeCasServer:
    """
    In-process CAS server for httpx.MockTransport.

    Tickets are single use: validation consumes the ticket whether or not
    it succeeds, as real CAS servers do.
    """

    def __init__(self, attributes: Optional[Dict[str, List[str]]] = None) -> None:
        self.tickets: Dict[str, Tuple[str, str]] = {}
        self.attributes = attributes or {}
        self.requests: List[httpx.Request] = []

    def issue(self, user: str, service_url: str, ticket: Optional[str] = None) -> str:
        ticket = ticket or f"ST-{len(self.tickets) + 1}-{secrets.token_hex(8)}"
        self.tickets[ticket] = (user, service_url)
        return ticket

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        ticket = request.url.params.get("ticket", "")
        service = request.url.params.get("service", "")
        entry = self.tickets.pop(ticket, None)
        valid = entry is not None and entry[1] == service

        if request.url.path.endswith("/validate"):
            if valid:
                return httpx.Response(200, text=f"yes\n{entry[0]}\n")
            return httpx.Response(200, text="no\n\n")

        if entry is None:
            return httpx.Response(200, text=failure_xml("INVALID_TICKET", f"Ticket {ticket} not recognized"))
        if not valid:
            return httpx.Response(200, text=failure_xml("INVALID_SERVICE", "Service does not match"))
        return httpx.Response(200, text=success_xml(entry[0], self.attributes))

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def success_xml(user: str, attributes: Optional[Dict[str, List[str]]] = None) -> str:
    attribute_xml = ""
    if attributes:
        inner = "".join(
            f"<cas:{name}>{value}</cas:{name}>"
            for name, values in attributes.items()
            for value in values
        )
        attribute_xml = f"<cas:attributes>{inner}</cas:attributes>"
    return (
        "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>"
        "<cas:authenticationSuccess>"
        f"<cas:user>{user}</cas:user>{attribute_xml}"
        "</cas:authenticationSuccess>"
        "</cas:serviceResponse>"
    )


def failure_xml(code: str, message: str) -> str:
    return (
        "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>"
        f"<cas:authenticationFailure code='{code}'>\n    {message}\n  </cas:authenticationFailure>"
        "</cas:serviceResponse>"
    )


def logout_request_xml(ticket: str) -> str:
    return (
        '<samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" '
        'xmlns:saml="urn:oasis:names:tc:SAML:2.0:assertion" ID="LR-1" Version="2.0" '
        'IssueInstant="2024-01-01T00:00:00Z">'
        "<saml:NameID>@NOT_USED@</saml:NameID>"
        f"<samlp:SessionIndex>{ticket}</samlp:SessionIndex>"
        "</samlp:LogoutRequest>"
    )


# =============================================================================
# HOST COLLABORATORS
# =============================================================================


class StubValidator:
    """TicketValidator returning a fixed result and recording its calls."""

    def __init__(self, result: ValidationResult) -> None:
        self.result = result
        self.calls: List[Tuple[str, str]] = []

    async def validate(self, ticket: str, service_url: str) -> ValidationResult:
        self.calls.append((ticket, service_url))
        return self.result


class RecordingSignInManager:
    """SignInManager that records issued identities and returns a fixed session key."""

    def __init__(self, session_key: Optional[str] = "sess-A") -> None:
        self.session_key = session_key
        self.calls: List[Tuple[Optional[str], AuthenticationIdentity, HandshakeState]] = []

    async def sign_in(
        self,
        authentication_type: Optional[str],
        identity: AuthenticationIdentity,
        state: HandshakeState,
    ) -> Optional[str]:
        self.calls.append((authentication_type, identity, state))
        return self.session_key


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def state_format() -> FernetStateDataFormat:
    """State codec with a random key."""
    return FernetStateDataFormat(keys=[generate_state_key()])


@pytest.fixture
def fake_cas() -> FakeCasServer:
    return FakeCasServer(attributes={"email": ["alice@example.com"], "memberOf": ["staff", "admins"]})


@pytest.fixture
def sign_in_manager() -> RecordingSignInManager:
    return RecordingSignInManager()


@pytest.fixture
def alice_validator() -> StubValidator:
    """Validator that vouches for alice on every call."""
    return StubValidator(Success(CasPrincipal(identifier="alice", attributes={"email": ["alice@example.com"]})))


@pytest.fixture
def make_options(state_format):
    """Factory for options with the test state codec."""

    def _make(**overrides) -> CasAuthenticationOptions:
        values = {
            "cas_server_url_base": CAS_BASE,
            "state_data_format": state_format,
            "sign_in_as_authentication_type": "Cookies",
        }
        values.update(overrides)
        return CasAuthenticationOptions(**values)

    return _make


# =============================================================================
# PYTEST MARKERS
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
