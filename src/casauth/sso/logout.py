"""
casauth Single Sign-Out Notifications

When a user logs out centrally, the CAS server POSTs a SAML
``LogoutRequest`` to every service that redeemed a ticket for that SSO
session, in the ``logoutRequest`` form field:

    <samlp:LogoutRequest xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" ...>
      <saml:NameID>@NOT_USED@</saml:NameID>
      <samlp:SessionIndex>ST-1-abc</samlp:SessionIndex>
    </samlp:LogoutRequest>

The session index is the service ticket the session was created from.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Awaitable, Callable, Mapping, Optional

import attrs
import structlog

from casauth.sso.store import SingleSignOutStore

logger = structlog.get_logger()

LOGOUT_REQUEST_FIELD = "logoutRequest"

# Host callback that tears down a local session by key
RemoveSession = Callable[[str], Awaitable[None]]


def parse_logout_request(body: str) -> Optional[str]:
    """
    Extract the service ticket from a SAML LogoutRequest.

    Returns:
        The SessionIndex text, or None if the body is not a usable
        LogoutRequest
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        logger.info("sso_logout_request_malformed", error=str(e))
        return None

    if not root.tag.endswith("LogoutRequest"):
        logger.info("sso_logout_request_unexpected_root", tag=root.tag)
        return None

    for element in root.iter():
        if element.tag.endswith("SessionIndex"):
            ticket = (element.text or "").strip()
            return ticket or None
    return None


@attrs.define
class SingleSignOutHandler:
    """
    Applies CAS logout notifications to the local single sign-out store.

    Example:
        handler = SingleSignOutHandler(store=store, remove_session=sessions.delete)
        session_key = await handler.handle(request.form)
    """

    store: SingleSignOutStore
    remove_session: Optional[RemoveSession] = None
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    @staticmethod
    def is_logout_request(method: str, form: Mapping[str, str]) -> bool:
        return method.upper() == "POST" and LOGOUT_REQUEST_FIELD in form

    async def handle(self, form: Mapping[str, str]) -> Optional[str]:
        """
        Process one logout notification.

        Unknown tickets are expected in multi-instance deployments and are
        ignored.

        Returns:
            The session key that was ended, or None
        """
        body = form.get(LOGOUT_REQUEST_FIELD)
        if not body:
            return None

        ticket = parse_logout_request(body)
        if ticket is None:
            return None

        session_key = self.store.pop(ticket)
        if session_key is None:
            self._logger.debug("sso_logout_unknown_ticket", ticket=ticket[:12])
            return None

        if self.remove_session is not None:
            await self.remove_session(session_key)
        self._logger.info("sso_logout_applied", ticket=ticket[:12])
        return session_key
