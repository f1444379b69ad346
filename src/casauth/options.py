"""
casauth Options and Provider Hooks

``CasAuthenticationOptions`` is the policy object a host hands to
``CasAuthenticationHandler``; ``CasAuthenticationProvider`` carries the
host's event callbacks.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import attrs
import httpx
import structlog

from casauth.core.crypto import FernetStateDataFormat, StateDataFormat
from casauth.core.exceptions import ConfigurationError
from casauth.core.types import (
    AuthenticationIdentity,
    CasPrincipal,
    CasProtocol,
    HandshakeState,
    ValidationFailure,
)
from casauth.handshake.service_url import DEFAULT_CALLBACK_PATH, ServiceUrlResolver
from casauth.handshake.types import HttpRequest
from casauth.sso.store import SingleSignOutStore
from casauth.validation.validators import (
    TicketValidator,
    ValidatorConfig,
    create_ticket_validator,
)

logger = structlog.get_logger()

DEFAULT_AUTHENTICATION_TYPE = "CAS"


# =============================================================================
# PROVIDER CONTEXTS
# =============================================================================


@attrs.define
class CreatingTicketContext:
    """
    Passed to the provider once the ticket has validated, before the
    identity is handed to the sign-in manager.

    The hook may replace or enrich ``identity`` or call ``reject``.
    """

    request: HttpRequest
    principal: CasPrincipal
    identity: AuthenticationIdentity
    state: HandshakeState
    rejection: Optional[str] = None

    def reject(self, reason: str = "Identity rejected by application") -> None:
        self.rejection = reason

    def add_claim(self, claim_type: str, value: str) -> None:
        self.identity = self.identity.with_claim(claim_type, value)

    @property
    def rejected(self) -> bool:
        return self.rejection is not None


@attrs.define
class RedirectContext:
    """Passed to the provider before a login redirect; ``redirect_url`` may be rewritten."""

    request: HttpRequest
    redirect_url: str
    state: HandshakeState


@attrs.define
class RemoteFailureContext:
    """Passed to the provider when a callback ends in FAILED."""

    request: HttpRequest
    failure: ValidationFailure
    state: Optional[HandshakeState] = None


CreatingTicketHook = Callable[[CreatingTicketContext], Awaitable[None]]
RedirectHook = Callable[[RedirectContext], Awaitable[None]]
RemoteFailureHook = Callable[[RemoteFailureContext], Awaitable[None]]


@attrs.define
class CasAuthenticationProvider:
    """
    Host event callbacks. Every hook is optional.

    Example:
        async def require_staff(context):
            if "staff" not in context.principal.get_all("memberOf"):
                context.reject("staff only")

        provider = CasAuthenticationProvider(on_creating_ticket=require_staff)
    """

    on_creating_ticket: Optional[CreatingTicketHook] = None
    on_redirect_to_authorization_endpoint: Optional[RedirectHook] = None
    on_remote_failure: Optional[RemoteFailureHook] = None

    async def creating_ticket(self, context: CreatingTicketContext) -> None:
        if self.on_creating_ticket is not None:
            await self.on_creating_ticket(context)

    async def redirect_to_authorization_endpoint(self, context: RedirectContext) -> None:
        if self.on_redirect_to_authorization_endpoint is not None:
            await self.on_redirect_to_authorization_endpoint(context)

    async def remote_failure(self, context: RemoteFailureContext) -> None:
        if self.on_remote_failure is not None:
            await self.on_remote_failure(context)


# =============================================================================
# OPTIONS
# =============================================================================


def _to_timedelta(value: Any) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


_TRUE_SETTINGS = ("true", "1", "yes", "on")
_FALSE_SETTINGS = ("false", "0", "no", "off")


def _setting_bool(key: str, value: Any) -> bool:
    """Read a flag written as a bool or as text (env vars, INI files)."""
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_SETTINGS:
        return True
    if text in _FALSE_SETTINGS:
        return False
    raise ConfigurationError(f"{key} must be a boolean, got {value!r}")


def _setting_seconds(key: str, value: Any) -> timedelta:
    try:
        return _to_timedelta(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise ConfigurationError(f"{key} must be a number of seconds, got {value!r}") from e


@attrs.define
class CasAuthenticationOptions:
    """
    CAS authentication configuration.

    Attributes:
        cas_server_url_base: CAS server root, e.g. "https://cas.example.com/cas"
        service_url_base: Public base URL of this application; request-derived when None
        callback_path: Path the CAS server redirects back to (default "/signin-cas")
        backchannel_timeout: Bound on the ticket validation call (default 60s)
        backchannel_http_client: Shared httpx client for validation calls
        protocol: CAS protocol version of the default validator
        service_ticket_validator: Validator overriding ``protocol``
        state_data_format: Seals the handshake state (required)
        use_authentication_session_store: Enable single sign-out bindings
        single_sign_out_store: Store for bindings; the handler creates an in-memory
            store when None
        require_correlation: Fail callbacks that arrive without a correlation id
        sign_in_as_authentication_type: Host scheme that issues the session
        authentication_type: Name of this scheme
        caption: Display name for sign-in pages
        provider: Event callbacks
        validation_parameters: Extra query parameters for validation calls
    """

    cas_server_url_base: str
    service_url_base: Optional[str] = None
    callback_path: str = DEFAULT_CALLBACK_PATH
    backchannel_timeout: timedelta = attrs.field(
        default=timedelta(seconds=60), converter=_to_timedelta
    )
    backchannel_http_client: Optional[httpx.AsyncClient] = attrs.field(default=None, repr=False)
    protocol: CasProtocol = CasProtocol.CAS30
    service_ticket_validator: Optional[TicketValidator] = None
    state_data_format: Optional[StateDataFormat] = attrs.field(default=None, repr=False)
    use_authentication_session_store: bool = False
    require_correlation: bool = False
    single_sign_out_store: Optional[SingleSignOutStore] = None
    sign_in_as_authentication_type: Optional[str] = None
    authentication_type: str = DEFAULT_AUTHENTICATION_TYPE
    caption: str = DEFAULT_AUTHENTICATION_TYPE
    provider: CasAuthenticationProvider = attrs.Factory(CasAuthenticationProvider)
    validation_parameters: Dict[str, str] = attrs.Factory(dict)

    def validate(self) -> None:
        """
        Check the options are complete and consistent.

        Raises:
            ConfigurationError: On the first problem found
        """
        if not self.cas_server_url_base:
            raise ConfigurationError("cas_server_url_base is required")
        if not self.cas_server_url_base.startswith(("http://", "https://")):
            raise ConfigurationError(
                f"cas_server_url_base must be an absolute http(s) URL: {self.cas_server_url_base}"
            )
        if self.service_url_base is not None and not self.service_url_base.startswith(
            ("http://", "https://")
        ):
            raise ConfigurationError(
                f"service_url_base must be an absolute http(s) URL: {self.service_url_base}"
            )
        if not self.callback_path.startswith("/"):
            raise ConfigurationError(f"callback_path must start with '/': {self.callback_path}")
        if self.backchannel_timeout <= timedelta(0):
            raise ConfigurationError("backchannel_timeout must be positive")
        if self.state_data_format is None:
            raise ConfigurationError("state_data_format is required to seal handshake state")

    def validator_config(self) -> ValidatorConfig:
        """Frozen back-channel configuration derived from these options."""
        return ValidatorConfig(
            cas_server_url_base=self.cas_server_url_base,
            backchannel_timeout=self.backchannel_timeout.total_seconds(),
            http_client=self.backchannel_http_client,
            extra_parameters=dict(self.validation_parameters),
        )

    def resolve_validator(self) -> TicketValidator:
        if self.service_ticket_validator is not None:
            return self.service_ticket_validator
        return create_ticket_validator(self.protocol, self.validator_config())

    def service_url_resolver(self) -> ServiceUrlResolver:
        return ServiceUrlResolver(
            callback_path=self.callback_path,
            service_url_base=self.service_url_base,
        )

    @classmethod
    def from_mapping(cls, settings: Mapping[str, Any]) -> CasAuthenticationOptions:
        """
        Create options from a flat settings mapping.

        Recognized keys: cas_server_url_base, service_url_base, callback_path,
        backchannel_timeout (seconds), protocol ("1.0", "2.0", "3.0"),
        state_secret, state_lifetime (seconds), single_sign_out (bool or
        "true"/"false"/"1"/"0"/"yes"/"no"/"on"/"off"), require_correlation,
        sign_in_as_authentication_type, authentication_type, caption,
        validation_parameters.

        Example:
            options = CasAuthenticationOptions.from_mapping({
                "cas_server_url_base": "https://cas.example.com/cas",
                "state_secret": os.environ["CAS_STATE_SECRET"],
                "protocol": "3.0",
            })
        """
        if "cas_server_url_base" not in settings:
            raise ConfigurationError("cas_server_url_base is required")

        kwargs: Dict[str, Any] = {"cas_server_url_base": settings["cas_server_url_base"]}
        for key in (
            "service_url_base",
            "callback_path",
            "sign_in_as_authentication_type",
            "authentication_type",
            "caption",
        ):
            if settings.get(key) is not None:
                kwargs[key] = settings[key]

        if settings.get("backchannel_timeout") is not None:
            kwargs["backchannel_timeout"] = _setting_seconds(
                "backchannel_timeout", settings["backchannel_timeout"]
            )

        if settings.get("protocol") is not None:
            protocol = settings["protocol"]
            try:
                kwargs["protocol"] = (
                    protocol if isinstance(protocol, CasProtocol)
                    else CasProtocol.from_string(str(protocol))
                )
            except ValueError as e:
                raise ConfigurationError(str(e)) from e

        if settings.get("state_secret"):
            lifetime = settings.get("state_lifetime")
            if lifetime is not None:
                lifetime = _setting_seconds("state_lifetime", lifetime)
            kwargs["state_data_format"] = FernetStateDataFormat.from_secret(
                settings["state_secret"], lifetime=lifetime
            )

        if settings.get("single_sign_out") is not None:
            kwargs["use_authentication_session_store"] = _setting_bool(
                "single_sign_out", settings["single_sign_out"]
            )

        if settings.get("require_correlation") is not None:
            kwargs["require_correlation"] = _setting_bool(
                "require_correlation", settings["require_correlation"]
            )

        if settings.get("validation_parameters"):
            kwargs["validation_parameters"] = dict(settings["validation_parameters"])

        logger.debug(
            "cas_options_loaded",
            cas_server_url_base=kwargs["cas_server_url_base"],
            protocol=kwargs.get("protocol", CasProtocol.CAS30).name,
            single_sign_out=kwargs.get("use_authentication_session_store", False),
        )
        return cls(**kwargs)
