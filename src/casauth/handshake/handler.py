"""
casauth Authentication Handler

Server side of the CAS handshake:
1. Challenge: redirect to ``{cas}/login?service=...`` with sealed state
2. Callback: extract the ticket and unseal the state
3. Validate: back-channel ticket validation
4. Bind: build the identity, hand it to the host sign-in manager and
   record the ticket for single sign-out

The handler keeps nothing between requests; a callback can only reach
CHALLENGE_ISSUED by unsealing the state that travelled with the browser.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, Union
from urllib.parse import urlencode

import attrs
import structlog
from returns.result import Failure, Success

from casauth.core.crypto import StateDataFormat, correlation_matches
from casauth.core.exceptions import StateCodecError, StateError
from casauth.core.state_machine import StateMachineBase, TransitionEntry
from casauth.core.types import (
    AuthenticationIdentity,
    HandshakeState,
    ServiceTicket,
    SignInResult,
    ValidationFailure,
)
from casauth.handshake.service_url import STATE_PARAMETER, ServiceUrlResolver
from casauth.handshake.types import (
    CallbackRejected,
    ChallengeRequested,
    ChallengeResult,
    HandshakeContext,
    HandshakeOutcome,
    HandshakeStage,
    HttpRequest,
    IdentityBound,
    IdentityDenied,
    StateRestored,
    TicketReceived,
    TicketValidated,
    ValidationFailed,
)
from casauth.options import (
    CasAuthenticationOptions,
    CreatingTicketContext,
    RedirectContext,
    RemoteFailureContext,
)
from casauth.sso.logout import RemoveSession, SingleSignOutHandler
from casauth.sso.store import (
    InMemorySingleSignOutStore,
    NullSingleSignOutStore,
    SingleSignOutStore,
)
from casauth.validation.validators import TicketValidator

logger = structlog.get_logger()

TICKET_PARAMETER = "ticket"

FailureEvent = Union[CallbackRejected, ValidationFailed, IdentityDenied]


class SignInManager(Protocol):
    """
    Host capability that issues the local session.

    Returns the key of the session it created, which the handler binds to
    the service ticket when single sign-out is enabled.
    """

    async def sign_in(
        self,
        authentication_type: Optional[str],
        identity: AuthenticationIdentity,
        state: HandshakeState,
    ) -> Optional[str]:
        ...


# =============================================================================
# HANDSHAKE STATE MACHINE
# =============================================================================


@attrs.define
class HandshakeStateMachine(StateMachineBase[HandshakeStage, Any, HandshakeContext]):
    """
    Per-request handshake state machine.

    UNAUTHENTICATED --ChallengeRequested--> CHALLENGE_ISSUED
    UNAUTHENTICATED --StateRestored--> CHALLENGE_ISSUED
    CHALLENGE_ISSUED --TicketReceived--> CALLBACK_RECEIVED
    CALLBACK_RECEIVED --TicketValidated--> VALIDATED
    VALIDATED --IdentityBound--> BOUND
    failures from any non-terminal callback state --> FAILED
    """

    def initial_state(self) -> HandshakeStage:
        return HandshakeStage.UNAUTHENTICATED

    def transition_table(self) -> Dict[Tuple[HandshakeStage, type], TransitionEntry]:
        return {
            (HandshakeStage.UNAUTHENTICATED, ChallengeRequested): (
                HandshakeStage.CHALLENGE_ISSUED,
                self._handle_state_issued,
            ),
            (HandshakeStage.UNAUTHENTICATED, StateRestored): (
                HandshakeStage.CHALLENGE_ISSUED,
                self._handle_state_issued,
            ),
            (HandshakeStage.UNAUTHENTICATED, CallbackRejected): (
                HandshakeStage.FAILED,
                self._handle_failure,
            ),
            (HandshakeStage.CHALLENGE_ISSUED, TicketReceived): (
                HandshakeStage.CALLBACK_RECEIVED,
                self._handle_ticket_received,
            ),
            (HandshakeStage.CHALLENGE_ISSUED, CallbackRejected): (
                HandshakeStage.FAILED,
                self._handle_failure,
            ),
            (HandshakeStage.CALLBACK_RECEIVED, TicketValidated): (
                HandshakeStage.VALIDATED,
                self._handle_ticket_validated,
            ),
            (HandshakeStage.CALLBACK_RECEIVED, ValidationFailed): (
                HandshakeStage.FAILED,
                self._handle_failure,
            ),
            (HandshakeStage.VALIDATED, IdentityBound): (
                HandshakeStage.BOUND,
                self._handle_identity_bound,
            ),
            (HandshakeStage.VALIDATED, IdentityDenied): (
                HandshakeStage.FAILED,
                self._handle_failure,
            ),
        }

    @staticmethod
    def _handle_state_issued(
        event: Union[ChallengeRequested, StateRestored], ctx: HandshakeContext
    ) -> HandshakeContext:
        return attrs.evolve(ctx, state=event.state, service_url=event.service_url)

    @staticmethod
    def _handle_ticket_received(event: TicketReceived, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(ctx, ticket=event.ticket)

    @staticmethod
    def _handle_ticket_validated(event: TicketValidated, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(ctx, principal=event.principal)

    @staticmethod
    def _handle_identity_bound(event: IdentityBound, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(ctx, identity=event.identity, session_key=event.session_key)

    @staticmethod
    def _handle_failure(event: FailureEvent, ctx: HandshakeContext) -> HandshakeContext:
        return attrs.evolve(ctx, failure=event.failure)


# =============================================================================
# INVARIANTS
# =============================================================================


def failed_carries_failure(state: HandshakeStage, ctx: HandshakeContext) -> bool:
    """FAILED always reports why."""
    if state == HandshakeStage.FAILED:
        return ctx.failure is not None
    return ctx.failure is None


def callback_carries_ticket(state: HandshakeStage, ctx: HandshakeContext) -> bool:
    """From CALLBACK_RECEIVED on, the ticket is bound to the service URL in use."""
    if state in (HandshakeStage.CALLBACK_RECEIVED, HandshakeStage.VALIDATED, HandshakeStage.BOUND):
        return ctx.ticket is not None and ctx.ticket.service_url == ctx.service_url
    return True


def validated_carries_principal(state: HandshakeStage, ctx: HandshakeContext) -> bool:
    if state in (HandshakeStage.VALIDATED, HandshakeStage.BOUND):
        return ctx.principal is not None
    return True


def bound_carries_identity(state: HandshakeStage, ctx: HandshakeContext) -> bool:
    if state == HandshakeStage.BOUND:
        return ctx.identity is not None and ctx.identity.name == ctx.principal.identifier
    return True


def create_handshake_machine() -> HandshakeStateMachine:
    """Fresh machine with every handshake invariant registered."""
    machine = HandshakeStateMachine(
        _state=HandshakeStage.UNAUTHENTICATED,
        _context=HandshakeContext(),
    )
    machine.add_invariant("failed_carries_failure", failed_carries_failure)
    machine.add_invariant("callback_carries_ticket", callback_carries_ticket)
    machine.add_invariant("validated_carries_principal", validated_carries_principal)
    machine.add_invariant("bound_carries_identity", bound_carries_identity)
    return machine


# =============================================================================
# HANDLER
# =============================================================================


@attrs.define
class CasAuthenticationHandler:
    """
    CAS authentication handler for one configured scheme.

    Safe to share between concurrent requests: every call builds its own
    state machine, and the only shared mutable object is the single
    sign-out store.

    Example:
        handler = CasAuthenticationHandler(options, sign_in_manager=sessions)

        # protected resource, anonymous user
        challenge = await handler.challenge(HttpRequest.from_url(url))
        return redirect(challenge.redirect_url)

        # GET /signin-cas?ticket=ST-...&state=...
        outcome = await handler.handle_callback(HttpRequest.from_url(url))
        if outcome.succeeded:
            return redirect(outcome.result.unwrap().redirect_uri)
    """

    options: CasAuthenticationOptions
    sign_in_manager: SignInManager

    _validator: TicketValidator = attrs.field(init=False)
    _store: SingleSignOutStore = attrs.field(init=False)
    _resolver: ServiceUrlResolver = attrs.field(init=False)
    _state_format: StateDataFormat = attrs.field(init=False)
    _login_url: str = attrs.field(init=False)
    _logger: Any = attrs.Factory(lambda: structlog.get_logger())

    def __attrs_post_init__(self) -> None:
        self.options.validate()
        self._validator = self.options.resolve_validator()
        self._store = self._create_single_sign_out_store()
        self._resolver = self.options.service_url_resolver()
        self._state_format = self.options.state_data_format
        self._login_url = self.options.cas_server_url_base.rstrip("/") + "/login"
        self._logger = self._logger.bind(scheme=self.options.authentication_type)

    def _create_single_sign_out_store(self) -> SingleSignOutStore:
        """Configured store, an in-memory one owned by this handler, or a no-op."""
        if not self.options.use_authentication_session_store:
            return NullSingleSignOutStore()
        if self.options.single_sign_out_store is not None:
            return self.options.single_sign_out_store
        return InMemorySingleSignOutStore()

    @property
    def single_sign_out_store(self) -> SingleSignOutStore:
        return self._store

    def is_callback(self, request: HttpRequest) -> bool:
        return self._resolver.is_callback(request)

    def create_single_sign_out_handler(
        self, remove_session: Optional[RemoveSession] = None
    ) -> SingleSignOutHandler:
        """Logout notification handler sharing this handler's store."""
        return SingleSignOutHandler(store=self._store, remove_session=remove_session)

    # -------------------------------------------------------------------------
    # Challenge
    # -------------------------------------------------------------------------

    async def challenge(
        self,
        request: HttpRequest,
        redirect_uri: Optional[str] = None,
        items: Optional[Mapping[str, str]] = None,
    ) -> ChallengeResult:
        """
        Produce the login redirect for an unauthenticated request.

        Args:
            request: The request that needs authentication
            redirect_uri: Where to send the browser after sign-in;
                the request's own path and query by default
            items: Extra string properties to round-trip in the sealed state

        Returns:
            ChallengeResult with the CAS login URL
        """
        machine = create_handshake_machine()
        state = HandshakeState(
            redirect_uri=redirect_uri or request.path_and_query,
            authentication_type=self.options.sign_in_as_authentication_type,
            items=dict(items or {}),
        )
        sealed = self._state_format.seal(state)
        service_url = self._resolver.service_url_for(request, sealed)
        self._advance(machine, ChallengeRequested(state=state, service_url=service_url))

        context = RedirectContext(
            request=request,
            redirect_url=f"{self._login_url}?{urlencode({'service': service_url})}",
            state=state,
        )
        await self.options.provider.redirect_to_authorization_endpoint(context)

        self._logger.info("challenge_issued", redirect_uri=state.redirect_uri)
        return ChallengeResult(
            redirect_url=context.redirect_url,
            service_url=service_url,
            state=state,
        )

    # -------------------------------------------------------------------------
    # Callback
    # -------------------------------------------------------------------------

    async def handle_callback(
        self,
        request: HttpRequest,
        correlation_id: Optional[str] = None,
    ) -> HandshakeOutcome:
        """
        Complete the handshake for a request to the callback path.

        Args:
            request: The callback request (``ticket`` and ``state`` query parameters)
            correlation_id: Value the host stored at challenge time; checked
                against the sealed state when given, and mandatory when
                ``options.require_correlation`` is set

        Returns:
            HandshakeOutcome in BOUND or FAILED. Tickets are never
            validated twice: a failure is final for this callback.
        """
        machine = create_handshake_machine()

        ticket_value = request.query.get(TICKET_PARAMETER, "").strip()
        if not ticket_value:
            return await self._fail(
                machine,
                request,
                CallbackRejected(
                    ValidationFailure.invalid_callback("Callback carries no ticket", "missing_ticket")
                ),
            )

        sealed = request.query.get(STATE_PARAMETER, "")
        try:
            state = self._state_format.unseal(sealed)
        except StateCodecError as e:
            return await self._fail(
                machine,
                request,
                CallbackRejected(ValidationFailure.invalid_callback(e.message, e.code)),
            )

        if correlation_id is None and self.options.require_correlation:
            return await self._fail(
                machine,
                request,
                CallbackRejected(
                    ValidationFailure.invalid_callback(
                        "Correlation id required but not supplied", "correlation_missing"
                    )
                ),
                state,
            )

        if correlation_id is not None and not correlation_matches(state.correlation_id, correlation_id):
            return await self._fail(
                machine,
                request,
                CallbackRejected(
                    ValidationFailure.invalid_callback("Correlation id mismatch", "correlation_failed")
                ),
                state,
            )

        service_url = self._resolver.service_url_for(request, sealed)
        ticket = ServiceTicket(value=ticket_value, service_url=service_url)
        self._advance(machine, StateRestored(state=state, service_url=service_url))
        self._advance(machine, TicketReceived(ticket=ticket))

        result = await self._validator.validate(ticket.value, service_url)
        if isinstance(result, Failure):
            return await self._fail(machine, request, ValidationFailed(result.failure()), state)

        principal = result.unwrap()
        self._advance(machine, TicketValidated(principal=principal))

        context = CreatingTicketContext(
            request=request,
            principal=principal,
            identity=AuthenticationIdentity.from_principal(
                principal, self.options.authentication_type, ticket
            ),
            state=state,
        )
        await self.options.provider.creating_ticket(context)
        if context.rejected:
            return await self._fail(
                machine,
                request,
                IdentityDenied(ValidationFailure.denied(context.rejection, "rejected_by_provider")),
                state,
            )

        sign_in_as = state.authentication_type or self.options.sign_in_as_authentication_type
        session_key = await self.sign_in_manager.sign_in(sign_in_as, context.identity, state)
        self._bind_for_single_sign_out(ticket, session_key)
        self._advance(machine, IdentityBound(identity=context.identity, session_key=session_key))

        self._logger.info(
            "handshake_completed",
            user=principal.identifier,
            ticket=ticket.short,
            sign_in_as=sign_in_as,
        )
        return HandshakeOutcome(
            stage=machine.state,
            result=Success(
                SignInResult(
                    identity=context.identity,
                    redirect_uri=state.redirect_uri,
                    session_key=session_key,
                )
            ),
            trace=tuple(machine.get_trace()),
        )

    def _bind_for_single_sign_out(self, ticket: ServiceTicket, session_key: Optional[str]) -> None:
        if not self.options.use_authentication_session_store:
            return
        if not session_key:
            self._logger.warning("sso_binding_skipped", ticket=ticket.short, reason="no_session_key")
            return
        self._store.bind(ticket.value, session_key)

    async def _fail(
        self,
        machine: HandshakeStateMachine,
        request: HttpRequest,
        event: FailureEvent,
        state: Optional[HandshakeState] = None,
    ) -> HandshakeOutcome:
        self._advance(machine, event)
        failure = event.failure
        self._logger.info(
            "handshake_failed",
            reason=failure.reason.name,
            code=failure.code,
            message=failure.message,
        )
        await self.options.provider.remote_failure(
            RemoteFailureContext(request=request, failure=failure, state=state)
        )
        return HandshakeOutcome(
            stage=machine.state,
            result=Failure(failure),
            trace=tuple(machine.get_trace()),
        )

    @staticmethod
    def _advance(machine: HandshakeStateMachine, event: Any) -> None:
        result = machine.process_event(event)
        if isinstance(result, Failure):
            raise StateError(result.failure())
