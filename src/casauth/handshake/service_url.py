"""
casauth Service URL Resolution

CAS binds every service ticket to the exact ``service`` URL presented at
login, and refuses validation unless the same string is presented again.
Resolution is therefore pure: the same request and configuration always
produce the same URL.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlsplit

import attrs
from attrs import field, validators

from casauth.handshake.types import HttpRequest

DEFAULT_CALLBACK_PATH = "/signin-cas"
STATE_PARAMETER = "state"


def _check_callback_path(instance: object, attribute: attrs.Attribute, value: str) -> None:
    if not value.startswith("/"):
        raise ValueError(f"{attribute.name} must start with '/', got {value!r}")


def resolve_service_url(
    request: HttpRequest,
    service_url_base: Optional[str] = None,
    callback_path: str = DEFAULT_CALLBACK_PATH,
) -> str:
    """
    Compute the callback URL the CAS server must send the browser back to.

    Without a base the scheme, host and path base come from the request;
    with a base they come from the base (its path, if any, is kept as a
    prefix). The callback path is always the suffix.

    Examples:
        request https://app.example.com/reports -> "https://app.example.com/signin-cas"
        base "https://sso.example.com/portal/" -> "https://sso.example.com/portal/signin-cas"
    """
    if service_url_base:
        parts = urlsplit(service_url_base)
        scheme = parts.scheme
        host = parts.netloc
        prefix = parts.path
    else:
        scheme = request.scheme
        host = request.host
        prefix = request.path_base
    return f"{scheme.lower()}://{host.lower()}{prefix.rstrip('/')}{callback_path}"


def build_return_to(callback_url: str, sealed_state: str) -> str:
    """Service URL: the callback URL tagged with the sealed handshake state."""
    return f"{callback_url}?{STATE_PARAMETER}={quote(sealed_state, safe='')}"


@attrs.define(frozen=True, slots=True)
class ServiceUrlResolver:
    """
    Resolver bound to one configuration.

    Example:
        resolver = ServiceUrlResolver(callback_path="/signin-cas")
        callback = resolver.resolve(request)
        service = resolver.build_return_to(callback, sealed_state)
    """

    callback_path: str = field(
        default=DEFAULT_CALLBACK_PATH,
        validator=[validators.instance_of(str), _check_callback_path],
    )
    service_url_base: Optional[str] = None

    def resolve(self, request: HttpRequest) -> str:
        return resolve_service_url(request, self.service_url_base, self.callback_path)

    def build_return_to(self, callback_url: str, sealed_state: str) -> str:
        return build_return_to(callback_url, sealed_state)

    def service_url_for(self, request: HttpRequest, sealed_state: str) -> str:
        """Full service URL for a request and sealed state."""
        return build_return_to(self.resolve(request), sealed_state)

    def is_callback(self, request: HttpRequest) -> bool:
        """True if the request targets the callback path."""
        return request.path.rstrip("/") == self.callback_path.rstrip("/")
