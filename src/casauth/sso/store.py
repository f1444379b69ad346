"""
casauth Single Sign-Out Store

Maps service tickets to the local session issued for them, so that a
logout pushed by the CAS server can find and end that session.

Each ticket maps to at most one session key; binding a ticket again
overwrites the previous session key.
"""

from __future__ import annotations

import threading
from typing import Dict, Optional, Protocol, Set, runtime_checkable

import attrs
import structlog

logger = structlog.get_logger()


def _short(ticket: str) -> str:
    return ticket[:12] + "..." if len(ticket) > 12 else ticket


@runtime_checkable
class SingleSignOutStore(Protocol):
    """ticket -> session key mapping."""

    def bind(self, ticket: str, session_key: str) -> None:
        ...

    def lookup(self, ticket: str) -> Optional[str]:
        """Session key bound to the ticket, or None for unknown tickets."""
        ...

    def unbind(self, ticket: str) -> None:
        ...

    def pop(self, ticket: str) -> Optional[str]:
        """Remove the binding and return its session key in one step."""
        ...


@attrs.define
class NullSingleSignOutStore:
    """Store used when single sign-out is disabled. Remembers nothing."""

    def bind(self, ticket: str, session_key: str) -> None:
        pass

    def lookup(self, ticket: str) -> Optional[str]:
        return None

    def unbind(self, ticket: str) -> None:
        pass

    def pop(self, ticket: str) -> Optional[str]:
        return None


@attrs.define
class InMemorySingleSignOutStore:
    """
    Process-local single sign-out store.

    Thread-safe: every operation holds the same lock, so concurrent
    bind/lookup/unbind calls are linearizable. A reverse index lets a
    local session expiry drop all of its tickets.

    Example:
        store = InMemorySingleSignOutStore()
        store.bind("ST-123", "sess-A")
        store.lookup("ST-123")  # "sess-A"
        store.unbind("ST-123")
        store.lookup("ST-123")  # None
    """

    _tickets: Dict[str, str] = attrs.Factory(dict)
    _sessions: Dict[str, Set[str]] = attrs.Factory(dict)
    _lock: threading.RLock = attrs.Factory(threading.RLock)
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    def bind(self, ticket: str, session_key: str) -> None:
        if not ticket or not session_key:
            raise ValueError("ticket and session_key must be non-empty")

        with self._lock:
            previous = self._tickets.get(ticket)
            if previous is not None and previous != session_key:
                self._discard_reverse_locked(previous, ticket)
                self._logger.info("sso_binding_replaced", ticket=_short(ticket))
            self._tickets[ticket] = session_key
            self._sessions.setdefault(session_key, set()).add(ticket)
            self._logger.debug("sso_binding_added", ticket=_short(ticket), size=len(self._tickets))

    def lookup(self, ticket: str) -> Optional[str]:
        with self._lock:
            return self._tickets.get(ticket)

    def unbind(self, ticket: str) -> None:
        self.pop(ticket)

    def pop(self, ticket: str) -> Optional[str]:
        """
        Remove a binding atomically.

        Returns:
            The session key the ticket was bound to, or None if unbound
        """
        with self._lock:
            session_key = self._tickets.pop(ticket, None)
            if session_key is not None:
                self._discard_reverse_locked(session_key, ticket)
                self._logger.debug("sso_binding_removed", ticket=_short(ticket))
            return session_key

    def unbind_session(self, session_key: str) -> int:
        """
        Drop every ticket bound to a session (local session expiry).

        Returns:
            Number of bindings removed
        """
        with self._lock:
            tickets = self._sessions.pop(session_key, set())
            for ticket in tickets:
                self._tickets.pop(ticket, None)
            return len(tickets)

    def _discard_reverse_locked(self, session_key: str, ticket: str) -> None:
        """Internal reverse-index cleanup (must hold lock)."""
        tickets = self._sessions.get(session_key)
        if tickets is None:
            return
        tickets.discard(ticket)
        if not tickets:
            del self._sessions[session_key]

    def clear(self) -> int:
        """
        Remove all bindings.

        Returns:
            Number of bindings cleared
        """
        with self._lock:
            count = len(self._tickets)
            self._tickets.clear()
            self._sessions.clear()
            return count

    @property
    def size(self) -> int:
        """Current number of bindings."""
        with self._lock:
            return len(self._tickets)

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "tickets": len(self._tickets),
                "sessions": len(self._sessions),
            }
