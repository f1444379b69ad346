"""
Unit tests for casauth.handshake.handler.

Tests the handshake state machine and the challenge/callback flow.
"""

import json
from urllib.parse import parse_qs, urlsplit

import pytest
from returns.result import Failure, Success

from casauth.core.exceptions import ConfigurationError, InvariantViolation
from casauth.core.types import (
    CasPrincipal,
    CasProtocol,
    FailureReason,
    HandshakeState,
    ServiceTicket,
    ValidationFailure,
)
from casauth.handshake.handler import CasAuthenticationHandler, create_handshake_machine
from casauth.handshake.types import (
    CallbackRejected,
    ChallengeRequested,
    HandshakeStage,
    HttpRequest,
    TicketReceived,
)
from casauth.options import CasAuthenticationProvider
from casauth.sso.store import InMemorySingleSignOutStore, NullSingleSignOutStore
from tests.conftest import (
    CAS_BASE,
    RecordingSignInManager,
    StubValidator,
    logout_request_xml,
)


SERVICE = "https://app/signin-cas?state=abc"


def _rejecting_validator() -> StubValidator:
    return StubValidator(
        Failure(ValidationFailure.rejected("Ticket ST-123 not recognized", "INVALID_TICKET"))
    )


async def _challenge_and_callback(handler, ticket="ST-123", url="https://app/reports?year=2024"):
    challenge = await handler.challenge(HttpRequest.from_url(url))
    callback = HttpRequest.from_url(f"{challenge.service_url}&ticket={ticket}")
    return challenge, await handler.handle_callback(callback)


# =============================================================================
# STATE MACHINE
# =============================================================================


class TestHandshakeStateMachine:
    """Tests for the handshake transition table and invariants."""

    def test_initial_state(self):
        machine = create_handshake_machine()
        assert machine.state == HandshakeStage.UNAUTHENTICATED
        assert machine.get_trace() == []

    def test_challenge_then_ticket(self):
        machine = create_handshake_machine()
        machine.process_event(ChallengeRequested(state=HandshakeState(), service_url=SERVICE))
        result = machine.process_event(
            TicketReceived(ticket=ServiceTicket(value="ST-1", service_url=SERVICE))
        )
        assert result == Success(HandshakeStage.CALLBACK_RECEIVED)
        assert machine.context.ticket.value == "ST-1"

    def test_undefined_transition(self):
        machine = create_handshake_machine()
        result = machine.process_event(
            TicketReceived(ticket=ServiceTicket(value="ST-1", service_url=SERVICE))
        )
        assert isinstance(result, Failure)
        assert machine.state == HandshakeStage.UNAUTHENTICATED

    def test_ticket_for_other_service_violates_invariant(self):
        machine = create_handshake_machine()
        machine.process_event(ChallengeRequested(state=HandshakeState(), service_url=SERVICE))
        with pytest.raises(InvariantViolation):
            machine.process_event(
                TicketReceived(ticket=ServiceTicket(value="ST-1", service_url="https://evil/signin-cas"))
            )
        assert machine.state == HandshakeStage.CHALLENGE_ISSUED

    def test_failed_is_terminal(self):
        machine = create_handshake_machine()
        machine.process_event(
            CallbackRejected(ValidationFailure.invalid_callback("no ticket", "missing_ticket"))
        )
        assert machine.state == HandshakeStage.FAILED
        result = machine.process_event(ChallengeRequested(state=HandshakeState(), service_url=SERVICE))
        assert isinstance(result, Failure)

    def test_export_trace_json(self):
        machine = create_handshake_machine()
        machine.process_event(ChallengeRequested(state=HandshakeState(), service_url=SERVICE))

        trace = json.loads(machine.export_trace_json())
        assert trace["initial_state"] == "UNAUTHENTICATED"
        assert trace["final_state"] == "CHALLENGE_ISSUED"
        assert trace["transitions"][0]["event_type"] == "ChallengeRequested"
        assert trace["transitions"][0]["event_data"]["service_url"] == SERVICE


# =============================================================================
# CHALLENGE
# =============================================================================


class TestChallenge:
    """Tests for CasAuthenticationHandler.challenge."""

    @pytest.mark.asyncio
    async def test_redirects_to_login(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        challenge = await handler.challenge(HttpRequest.from_url("https://app/reports?year=2024"))

        parts = urlsplit(challenge.redirect_url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == f"{CAS_BASE}/login"
        assert parse_qs(parts.query)["service"] == [challenge.service_url]
        assert challenge.service_url.startswith("https://app/signin-cas?state=")
        assert challenge.state.redirect_uri == "/reports?year=2024"
        assert challenge.state.authentication_type == "Cookies"

    @pytest.mark.asyncio
    async def test_explicit_redirect_and_items(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        challenge = await handler.challenge(
            HttpRequest.from_url("https://app/reports"),
            redirect_uri="/dashboard",
            items={"tenant": "acme"},
        )
        callback = HttpRequest.from_url(f"{challenge.service_url}&ticket=ST-123")
        outcome = await handler.handle_callback(callback)

        assert outcome.result.unwrap().redirect_uri == "/dashboard"
        assert sign_in_manager.calls[0][2].items == {"tenant": "acme"}

    @pytest.mark.asyncio
    async def test_configured_service_url_base(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(
                service_ticket_validator=alice_validator,
                service_url_base="https://sso.example.com/portal",
            ),
            sign_in_manager,
        )
        challenge = await handler.challenge(HttpRequest.from_url("http://10.0.0.5:8080/reports"))
        assert challenge.service_url.startswith("https://sso.example.com/portal/signin-cas?state=")

    @pytest.mark.asyncio
    async def test_redirect_hook_rewrites_url(self, make_options, alice_validator, sign_in_manager):
        async def force_renew(context):
            context.redirect_url += "&renew=true"

        provider = CasAuthenticationProvider(on_redirect_to_authorization_endpoint=force_renew)
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator, provider=provider),
            sign_in_manager,
        )
        challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
        assert challenge.redirect_url.endswith("&renew=true")

    def test_incomplete_options_rejected(self, make_options, sign_in_manager):
        with pytest.raises(ConfigurationError):
            CasAuthenticationHandler(make_options(state_data_format=None), sign_in_manager)


# =============================================================================
# CALLBACK
# =============================================================================


class TestCallback:
    """Tests for CasAuthenticationHandler.handle_callback."""

    @pytest.mark.asyncio
    async def test_successful_sign_in(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        challenge, outcome = await _challenge_and_callback(handler)

        assert outcome.succeeded
        assert outcome.stage == HandshakeStage.BOUND
        assert alice_validator.calls == [("ST-123", challenge.service_url)]

        result = outcome.result.unwrap()
        assert result.identity.name == "alice"
        assert result.redirect_uri == "/reports?year=2024"
        assert result.session_key == "sess-A"

        authentication_type, identity, _ = sign_in_manager.calls[0]
        assert authentication_type == "Cookies"
        assert identity.service_ticket.value == "ST-123"
        assert [t.to_state for t in outcome.trace] == [
            HandshakeStage.CHALLENGE_ISSUED,
            HandshakeStage.CALLBACK_RECEIVED,
            HandshakeStage.VALIDATED,
            HandshakeStage.BOUND,
        ]

    @pytest.mark.asyncio
    async def test_rejected_ticket(self, make_options, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=_rejecting_validator()), sign_in_manager
        )
        _, outcome = await _challenge_and_callback(handler)

        assert outcome.stage == HandshakeStage.FAILED
        assert outcome.failure.reason == FailureReason.REJECTED
        assert outcome.failure.code == "INVALID_TICKET"
        assert sign_in_manager.calls == []

    @pytest.mark.asyncio
    async def test_missing_ticket(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
        outcome = await handler.handle_callback(HttpRequest.from_url(challenge.service_url))

        assert outcome.stage == HandshakeStage.FAILED
        assert outcome.failure.reason == FailureReason.INVALID_CALLBACK
        assert outcome.failure.code == "missing_ticket"
        assert len(outcome.trace) == 1
        assert alice_validator.calls == []

    @pytest.mark.asyncio
    async def test_missing_state(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        outcome = await handler.handle_callback(
            HttpRequest.from_url("https://app/signin-cas?ticket=ST-123")
        )

        assert outcome.failure.reason == FailureReason.INVALID_CALLBACK
        assert outcome.failure.code == "invalid_state"
        assert alice_validator.calls == []

    @pytest.mark.asyncio
    async def test_forged_state(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        outcome = await handler.handle_callback(
            HttpRequest.from_url("https://app/signin-cas?state=gAAAAABforged&ticket=ST-123")
        )

        assert outcome.failure.code == "invalid_state"
        assert alice_validator.calls == []

    @pytest.mark.asyncio
    async def test_correlation_checked_when_given(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
        callback = HttpRequest.from_url(f"{challenge.service_url}&ticket=ST-123")

        mismatch = await handler.handle_callback(callback, correlation_id="someone-else")
        assert mismatch.failure.code == "correlation_failed"
        assert alice_validator.calls == []

        match = await handler.handle_callback(callback, correlation_id=challenge.correlation_id)
        assert match.succeeded

    @pytest.mark.asyncio
    async def test_required_correlation_missing(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator, require_correlation=True),
            sign_in_manager,
        )
        challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
        callback = HttpRequest.from_url(f"{challenge.service_url}&ticket=ST-123")

        outcome = await handler.handle_callback(callback)
        assert outcome.stage == HandshakeStage.FAILED
        assert outcome.failure.reason == FailureReason.INVALID_CALLBACK
        assert outcome.failure.code == "correlation_missing"
        assert alice_validator.calls == []
        assert sign_in_manager.calls == []

        match = await handler.handle_callback(callback, correlation_id=challenge.correlation_id)
        assert match.succeeded

    @pytest.mark.asyncio
    async def test_callback_on_other_instance(self, make_options, alice_validator, sign_in_manager):
        """Nothing is kept between requests; a shared key is enough."""
        first = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        second = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        challenge = await first.challenge(HttpRequest.from_url("https://app/reports"))
        outcome = await second.handle_callback(
            HttpRequest.from_url(f"{challenge.service_url}&ticket=ST-123")
        )
        assert outcome.succeeded

    @pytest.mark.asyncio
    async def test_sign_in_as_falls_back_to_options(self, make_options, alice_validator, sign_in_manager):
        options = make_options(service_ticket_validator=alice_validator)
        handler = CasAuthenticationHandler(options, sign_in_manager)
        sealed = options.state_data_format.seal(HandshakeState(redirect_uri="/"))
        resolver = options.service_url_resolver()
        service = resolver.service_url_for(HttpRequest.from_url("https://app/"), sealed)

        outcome = await handler.handle_callback(HttpRequest.from_url(f"{service}&ticket=ST-123"))
        assert outcome.succeeded
        assert sign_in_manager.calls[0][0] == "Cookies"


# =============================================================================
# PROVIDER HOOKS
# =============================================================================


class TestProviderHooks:
    """Tests for CasAuthenticationProvider callbacks."""

    @pytest.mark.asyncio
    async def test_creating_ticket_can_reject(self, make_options, alice_validator, sign_in_manager):
        failures = []

        async def staff_only(context):
            if "staff" not in context.principal.get_all("memberOf"):
                context.reject("staff only")

        async def record_failure(context):
            failures.append(context.failure)

        provider = CasAuthenticationProvider(
            on_creating_ticket=staff_only,
            on_remote_failure=record_failure,
        )
        handler = CasAuthenticationHandler(
            make_options(
                service_ticket_validator=alice_validator,
                provider=provider,
                use_authentication_session_store=True,
            ),
            sign_in_manager,
        )
        _, outcome = await _challenge_and_callback(handler)

        assert outcome.stage == HandshakeStage.FAILED
        assert outcome.failure.reason == FailureReason.DENIED
        assert outcome.failure.code == "rejected_by_provider"
        assert outcome.failure.message == "staff only"
        assert failures == [outcome.failure]
        assert sign_in_manager.calls == []
        assert handler.single_sign_out_store.lookup("ST-123") is None

    @pytest.mark.asyncio
    async def test_creating_ticket_can_add_claims(self, make_options, alice_validator, sign_in_manager):
        async def add_role(context):
            context.add_claim("role", "auditor")

        handler = CasAuthenticationHandler(
            make_options(
                service_ticket_validator=alice_validator,
                provider=CasAuthenticationProvider(on_creating_ticket=add_role),
            ),
            sign_in_manager,
        )
        _, outcome = await _challenge_and_callback(handler)

        assert outcome.result.unwrap().identity.find_first("role") == "auditor"
        assert sign_in_manager.calls[0][1].find_first("role") == "auditor"

    @pytest.mark.asyncio
    async def test_remote_failure_sees_validation_failure(self, make_options, sign_in_manager):
        contexts = []

        async def record(context):
            contexts.append(context)

        handler = CasAuthenticationHandler(
            make_options(
                service_ticket_validator=_rejecting_validator(),
                provider=CasAuthenticationProvider(on_remote_failure=record),
            ),
            sign_in_manager,
        )
        challenge, _ = await _challenge_and_callback(handler)

        assert len(contexts) == 1
        assert contexts[0].failure.code == "INVALID_TICKET"
        assert contexts[0].state.correlation_id == challenge.correlation_id


# =============================================================================
# SINGLE SIGN-OUT
# =============================================================================


class TestSingleSignOutBinding:
    """Tests for ticket-to-session bindings made on sign-in."""

    def test_default_store_owned_by_handler(self, make_options, alice_validator, sign_in_manager):
        options = make_options(
            service_ticket_validator=alice_validator, use_authentication_session_store=True
        )
        first = CasAuthenticationHandler(options, sign_in_manager)
        second = CasAuthenticationHandler(options, sign_in_manager)

        assert isinstance(first.single_sign_out_store, InMemorySingleSignOutStore)
        assert first.single_sign_out_store is not second.single_sign_out_store
        assert options.single_sign_out_store is None

    def test_configured_store_is_shared(self, make_options, alice_validator, sign_in_manager):
        store = InMemorySingleSignOutStore()
        options = make_options(
            service_ticket_validator=alice_validator,
            use_authentication_session_store=True,
            single_sign_out_store=store,
        )
        assert CasAuthenticationHandler(options, sign_in_manager).single_sign_out_store is store
        assert CasAuthenticationHandler(options, sign_in_manager).single_sign_out_store is store

    def test_disabled_store_is_null(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator), sign_in_manager
        )
        assert isinstance(handler.single_sign_out_store, NullSingleSignOutStore)

    @pytest.mark.asyncio
    async def test_ticket_bound_and_logged_out(self, make_options, alice_validator, sign_in_manager):
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator, use_authentication_session_store=True),
            sign_in_manager,
        )
        await _challenge_and_callback(handler)
        assert handler.single_sign_out_store.lookup("ST-123") == "sess-A"

        removed = []

        async def remove_session(session_key):
            removed.append(session_key)

        logout = handler.create_single_sign_out_handler(remove_session)
        assert await logout.handle({"logoutRequest": logout_request_xml("ST-123")}) == "sess-A"
        assert removed == ["sess-A"]
        assert handler.single_sign_out_store.lookup("ST-123") is None

    @pytest.mark.asyncio
    async def test_disabled_store_binds_nothing(self, make_options, alice_validator, sign_in_manager):
        store = InMemorySingleSignOutStore()
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=alice_validator, single_sign_out_store=store),
            sign_in_manager,
        )
        await _challenge_and_callback(handler)
        assert store.size == 0
        assert handler.single_sign_out_store.lookup("ST-123") is None

    @pytest.mark.asyncio
    async def test_no_session_key_skips_binding(self, make_options, alice_validator):
        store = InMemorySingleSignOutStore()
        handler = CasAuthenticationHandler(
            make_options(
                service_ticket_validator=alice_validator,
                use_authentication_session_store=True,
                single_sign_out_store=store,
            ),
            RecordingSignInManager(session_key=None),
        )
        _, outcome = await _challenge_and_callback(handler)
        assert outcome.succeeded
        assert store.size == 0


# =============================================================================
# END TO END
# =============================================================================


class TestAgainstFakeCasServer:
    """Full handshake with the default validator over a mocked back channel."""

    @pytest.mark.asyncio
    async def test_cas30_sign_in(self, make_options, fake_cas, sign_in_manager):
        async with fake_cas.client() as client:
            handler = CasAuthenticationHandler(
                make_options(backchannel_http_client=client), sign_in_manager
            )
            challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
            ticket = fake_cas.issue("alice", challenge.service_url)

            outcome = await handler.handle_callback(
                HttpRequest.from_url(f"{challenge.service_url}&ticket={ticket}")
            )

        assert outcome.succeeded
        identity = outcome.result.unwrap().identity
        assert identity.name == "alice"
        assert identity.find_all("memberOf") == ("staff", "admins")
        assert fake_cas.requests[0].url.path == "/cas/p3/serviceValidate"
        assert fake_cas.requests[0].url.params["service"] == challenge.service_url

    @pytest.mark.asyncio
    async def test_replayed_ticket_rejected(self, make_options, fake_cas, sign_in_manager):
        async with fake_cas.client() as client:
            handler = CasAuthenticationHandler(
                make_options(backchannel_http_client=client), sign_in_manager
            )
            challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
            ticket = fake_cas.issue("alice", challenge.service_url)
            callback = HttpRequest.from_url(f"{challenge.service_url}&ticket={ticket}")

            first = await handler.handle_callback(callback)
            second = await handler.handle_callback(callback)

        assert first.succeeded
        assert second.failure.reason == FailureReason.REJECTED
        assert second.failure.code == "INVALID_TICKET"
        assert len(sign_in_manager.calls) == 1

    @pytest.mark.asyncio
    async def test_callback_on_other_host_is_invalid_service(self, make_options, fake_cas, sign_in_manager):
        async with fake_cas.client() as client:
            handler = CasAuthenticationHandler(
                make_options(backchannel_http_client=client), sign_in_manager
            )
            challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
            ticket = fake_cas.issue("alice", challenge.service_url)
            moved = challenge.service_url.replace("https://app/", "https://other-app/")

            outcome = await handler.handle_callback(HttpRequest.from_url(f"{moved}&ticket={ticket}"))

        assert outcome.failure.reason == FailureReason.REJECTED
        assert outcome.failure.code == "INVALID_SERVICE"

    @pytest.mark.asyncio
    async def test_cas10_sign_in(self, make_options, fake_cas, sign_in_manager):
        async with fake_cas.client() as client:
            handler = CasAuthenticationHandler(
                make_options(backchannel_http_client=client, protocol=CasProtocol.CAS10),
                sign_in_manager,
            )
            challenge = await handler.challenge(HttpRequest.from_url("https://app/reports"))
            ticket = fake_cas.issue("alice", challenge.service_url)
            outcome = await handler.handle_callback(
                HttpRequest.from_url(f"{challenge.service_url}&ticket={ticket}")
            )

        assert outcome.succeeded
        assert fake_cas.requests[0].url.path == "/cas/validate"
        assert outcome.result.unwrap().identity.find_all("memberOf") == ()


class TestCasPrincipalMapping:
    @pytest.mark.asyncio
    async def test_principal_attributes_become_claims(self, make_options, sign_in_manager):
        validator = StubValidator(
            Success(CasPrincipal(identifier="bob", attributes={"department": "finance"}))
        )
        handler = CasAuthenticationHandler(
            make_options(service_ticket_validator=validator), sign_in_manager
        )
        _, outcome = await _challenge_and_callback(handler)
        assert outcome.result.unwrap().identity.find_first("department") == "finance"
