"""
casauth Single Sign-Out Module

Components:
- store: ticket -> session key mapping (in-memory and no-op)
- logout: parsing and application of CAS logout notifications
"""

from casauth.sso.store import (
    InMemorySingleSignOutStore,
    NullSingleSignOutStore,
    SingleSignOutStore,
)
from casauth.sso.logout import (
    LOGOUT_REQUEST_FIELD,
    SingleSignOutHandler,
    parse_logout_request,
)

__all__ = [
    "InMemorySingleSignOutStore",
    "NullSingleSignOutStore",
    "SingleSignOutStore",
    "LOGOUT_REQUEST_FIELD",
    "SingleSignOutHandler",
    "parse_logout_request",
]
