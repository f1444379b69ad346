#!/usr/bin/env python3
"""
CAS Login Example

Walks one browser through a CAS sign-in and a central logout, with an
in-process CAS server standing in for the real one.

Features:
1. Login redirect with sealed handshake state
2. Callback handling and back-channel ticket validation (CAS 3.0)
3. Provider hook enforcing a group membership
4. Single sign-out through a CAS logout notification
5. Handshake trace inspection
"""

import asyncio
import secrets
from typing import Dict, Optional

import httpx

from casauth import (
    CasAuthenticationHandler,
    CasAuthenticationOptions,
    CasAuthenticationProvider,
    HttpRequest,
)

CAS_BASE = "https://cas.example.com/cas"


class InProcessCasServer:
    """Just enough of a CAS server to answer /p3/serviceValidate."""

    def __init__(self) -> None:
        self.tickets: Dict[str, tuple] = {}

    def login(self, user: str, service_url: str) -> str:
        ticket = f"ST-{secrets.token_hex(8)}"
        self.tickets[ticket] = (user, service_url)
        return ticket

    def handle(self, request: httpx.Request) -> httpx.Response:
        entry = self.tickets.pop(request.url.params.get("ticket", ""), None)
        if entry is None or entry[1] != request.url.params.get("service"):
            body = (
                "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>"
                "<cas:authenticationFailure code='INVALID_TICKET'>Unknown ticket"
                "</cas:authenticationFailure></cas:serviceResponse>"
            )
            return httpx.Response(200, text=body)
        body = (
            "<cas:serviceResponse xmlns:cas='http://www.yale.edu/tp/cas'>"
            "<cas:authenticationSuccess>"
            f"<cas:user>{entry[0]}</cas:user>"
            "<cas:attributes><cas:memberOf>staff</cas:memberOf></cas:attributes>"
            "</cas:authenticationSuccess></cas:serviceResponse>"
        )
        return httpx.Response(200, text=body)


class Sessions:
    """Host session storage."""

    def __init__(self) -> None:
        self.active: Dict[str, str] = {}

    async def sign_in(self, authentication_type, identity, state) -> Optional[str]:
        session_key = secrets.token_urlsafe(16)
        self.active[session_key] = identity.name
        return session_key

    async def remove(self, session_key: str) -> None:
        self.active.pop(session_key, None)


async def require_staff(context) -> None:
    if "staff" not in context.principal.get_all("memberOf"):
        context.reject("staff only")


async def main() -> None:
    """Demonstrate a CAS sign-in and central logout."""

    print("=" * 70)
    print("casauth - CAS Login and Single Sign-Out")
    print("=" * 70)
    print()

    cas = InProcessCasServer()
    sessions = Sessions()

    async with httpx.AsyncClient(transport=httpx.MockTransport(cas.handle)) as client:
        options = CasAuthenticationOptions.from_mapping(
            {
                "cas_server_url_base": CAS_BASE,
                "state_secret": "example-secret-change-me",
                "protocol": "3.0",
                "single_sign_out": True,
                "sign_in_as_authentication_type": "Cookies",
            }
        )
        options.backchannel_http_client = client
        options.provider = CasAuthenticationProvider(on_creating_ticket=require_staff)
        handler = CasAuthenticationHandler(options, sign_in_manager=sessions)

        # ======================================================================
        # STEP 1: Anonymous request to a protected page
        # ======================================================================
        print("1. Challenge")
        print("-" * 40)
        challenge = await handler.challenge(HttpRequest.from_url("https://app.example.com/reports"))
        print(f"   Redirect to: {challenge.redirect_url[:70]}...")
        print()

        # ======================================================================
        # STEP 2: User logs in at CAS, browser returns with a ticket
        # ======================================================================
        print("2. Callback")
        print("-" * 40)
        ticket = cas.login("jdoe", challenge.service_url)
        callback = HttpRequest.from_url(f"{challenge.service_url}&ticket={ticket}")
        outcome = await handler.handle_callback(callback, correlation_id=challenge.correlation_id)

        if not outcome.succeeded:
            print(f"   Sign-in failed: {outcome.failure}")
            return

        result = outcome.result.unwrap()
        print(f"   Signed in: {result.identity.name}")
        print(f"   Back to:   {result.redirect_uri}")
        print(f"   Trace:     {' -> '.join(t.to_state.name for t in outcome.trace)}")
        print()

        # ======================================================================
        # STEP 3: Central logout
        # ======================================================================
        print("3. Single sign-out")
        print("-" * 40)
        logout_body = (
            '<samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol">'
            f"<samlp:SessionIndex>{ticket}</samlp:SessionIndex>"
            "</samlp:LogoutRequest>"
        )
        logout = handler.create_single_sign_out_handler(remove_session=sessions.remove)
        ended = await logout.handle({"logoutRequest": logout_body})
        print(f"   Ended session: {ended}")
        print(f"   Active sessions: {len(sessions.active)}")


if __name__ == "__main__":
    asyncio.run(main())
