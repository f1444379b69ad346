"""
casauth Service Ticket Validators

Back-channel validation of service tickets against the CAS server.

Strategies (selected by configuration, no shared base class):
- Cas10ServiceTicketValidator: /validate, text response
- Cas20ServiceTicketValidator: /serviceValidate, XML response
- Cas30ServiceTicketValidator: /p3/serviceValidate, XML response with attributes

Every strategy satisfies the ``TicketValidator`` protocol:
``await validator.validate(ticket, service_url) -> ValidationResult``.
Transport errors, timeouts and unreadable responses are returned as
``Failure`` values; only task cancellation propagates.
"""

from __future__ import annotations

import asyncio
from typing import Callable, ClassVar, Dict, Optional, Protocol, Union, runtime_checkable

import attrs
import httpx
import structlog
from attrs import field, validators
from returns.result import Failure, Result, Success

from casauth.core.exceptions import ProtocolError
from casauth.core.types import (
    CasProtocol,
    ServiceTicket,
    ValidationFailure,
    ValidationResult,
)
from casauth.validation.parsers import parse_cas1_response, parse_service_response

logger = structlog.get_logger()

DEFAULT_BACKCHANNEL_TIMEOUT = 60.0

ResponseParser = Callable[[str], ValidationResult]


# =============================================================================
# CONFIGURATION
# =============================================================================


def _check_server_url(instance: "ValidatorConfig", attribute: attrs.Attribute, value: str) -> None:
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"{attribute.name} must be an absolute http(s) URL, got {value!r}")


@attrs.define(frozen=True, slots=True)
class ValidatorConfig:
    """
    Immutable back-channel configuration.

    Attributes:
        cas_server_url_base: CAS server root (e.g. "https://cas.example.com/cas")
        backchannel_timeout: Upper bound, in seconds, for the whole validation call
        http_client: Shared client; a short-lived client is used when None
        extra_parameters: Additional query parameters sent with every validation
    """

    cas_server_url_base: str = field(
        validator=[validators.instance_of(str), _check_server_url],
        converter=lambda value: value.rstrip("/") if isinstance(value, str) else value,
    )
    backchannel_timeout: float = field(
        default=DEFAULT_BACKCHANNEL_TIMEOUT,
        converter=float,
        validator=validators.gt(0),
    )
    http_client: Optional[httpx.AsyncClient] = field(default=None, repr=False, eq=False)
    extra_parameters: Dict[str, str] = field(factory=dict)

    def endpoint(self, path: str) -> str:
        """Absolute URL of a CAS server endpoint."""
        return self.cas_server_url_base + path


# =============================================================================
# VALIDATOR PROTOCOL
# =============================================================================


@runtime_checkable
class TicketValidator(Protocol):
    """Back-channel service ticket validation."""

    async def validate(self, ticket: str, service_url: str) -> ValidationResult:
        ...


# =============================================================================
# BACK-CHANNEL
# =============================================================================


def _read_response(response: httpx.Response) -> Result[str, ValidationFailure]:
    if not response.is_success:
        return Failure(
            ValidationFailure.network_error(
                f"CAS server responded with HTTP {response.status_code}",
                code=f"http_{response.status_code}",
            )
        )
    return Success(response.text)


async def _get(
    config: ValidatorConfig, url: str, params: Dict[str, str]
) -> Result[str, ValidationFailure]:
    if config.http_client is not None:
        response = await config.http_client.get(
            url, params=params, timeout=config.backchannel_timeout
        )
        return _read_response(response)

    async with httpx.AsyncClient(timeout=config.backchannel_timeout) as client:
        response = await client.get(url, params=params)
        return _read_response(response)


async def fetch_validation_response(
    config: ValidatorConfig,
    protocol: CasProtocol,
    ticket: ServiceTicket,
) -> Result[str, ValidationFailure]:
    """
    Call the protocol's validation endpoint.

    Returns:
        Success(body) for a 2xx response
        Failure(NETWORK_ERROR) on timeout, transport error or non-2xx status
    """
    url = config.endpoint(protocol.validation_path)
    params = dict(config.extra_parameters)
    params.update({"ticket": ticket.value, "service": ticket.service_url})

    try:
        return await asyncio.wait_for(
            _get(config, url, params), timeout=config.backchannel_timeout
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        logger.warning(
            "backchannel_timeout",
            url=url,
            ticket=ticket.short,
            timeout=config.backchannel_timeout,
        )
        return Failure(
            ValidationFailure.network_error(
                f"CAS server did not answer within {config.backchannel_timeout:g}s",
                code="timeout",
            )
        )
    except httpx.HTTPError as e:
        logger.warning(
            "backchannel_transport_error",
            url=url,
            ticket=ticket.short,
            error=str(e),
            error_type=type(e).__name__,
        )
        return Failure(
            ValidationFailure.network_error(
                f"CAS server unreachable: {type(e).__name__}", code="transport_error"
            )
        )


async def validate_ticket(
    config: ValidatorConfig,
    protocol: CasProtocol,
    parser: ResponseParser,
    ticket: str,
    service_url: str,
) -> ValidationResult:
    """Fetch and parse one validation response. Never raises on protocol failure."""
    if not ticket or not service_url:
        return Failure(
            ValidationFailure.invalid_callback("Ticket and service URL are required", code="missing_ticket")
        )

    service_ticket = ServiceTicket(value=ticket, service_url=service_url)
    log = logger.bind(protocol=protocol.name, ticket=service_ticket.short)
    log.debug("ticket_validation_started", service=service_url)

    fetched = await fetch_validation_response(config, protocol, service_ticket)
    if isinstance(fetched, Failure):
        return fetched

    try:
        result = parser(fetched.unwrap())
    except ProtocolError as e:
        log.warning("ticket_validation_protocol_error", error=e.message, code=e.code)
        return Failure(ValidationFailure.protocol_error(e.message, e.code))

    if isinstance(result, Success):
        log.info("ticket_validated", user=result.unwrap().identifier)
    else:
        failure = result.failure()
        log.info("ticket_rejected", code=failure.code, reason=failure.message)
    return result


# =============================================================================
# STRATEGIES
# =============================================================================


@attrs.define(frozen=True, slots=True)
class Cas10ServiceTicketValidator:
    """
    CAS 1.0 validator.

    Text protocol; carries no attributes.
    """

    config: ValidatorConfig
    protocol: ClassVar[CasProtocol] = CasProtocol.CAS10

    async def validate(self, ticket: str, service_url: str) -> ValidationResult:
        return await validate_ticket(
            self.config, self.protocol, parse_cas1_response, ticket, service_url
        )


@attrs.define(frozen=True, slots=True)
class Cas20ServiceTicketValidator:
    """CAS 2.0 validator (``/serviceValidate``)."""

    config: ValidatorConfig
    protocol: ClassVar[CasProtocol] = CasProtocol.CAS20

    async def validate(self, ticket: str, service_url: str) -> ValidationResult:
        return await validate_ticket(
            self.config, self.protocol, parse_service_response, ticket, service_url
        )


@attrs.define(frozen=True, slots=True)
class Cas30ServiceTicketValidator:
    """
    CAS 3.0 validator (``/p3/serviceValidate``).

    Default strategy; CAS 3.0 servers release attributes on this endpoint.
    """

    config: ValidatorConfig
    protocol: ClassVar[CasProtocol] = CasProtocol.CAS30

    async def validate(self, ticket: str, service_url: str) -> ValidationResult:
        return await validate_ticket(
            self.config, self.protocol, parse_service_response, ticket, service_url
        )


AnyServiceTicketValidator = Union[
    Cas10ServiceTicketValidator,
    Cas20ServiceTicketValidator,
    Cas30ServiceTicketValidator,
]


def create_ticket_validator(
    protocol: CasProtocol,
    config: ValidatorConfig,
) -> AnyServiceTicketValidator:
    """
    Create the validator for a protocol version.

    Example:
        config = ValidatorConfig("https://cas.example.com/cas", backchannel_timeout=10)
        validator = create_ticket_validator(CasProtocol.CAS30, config)
        result = await validator.validate("ST-1-abc", "https://app.example.com/signin-cas")
    """
    strategies = {
        CasProtocol.CAS10: Cas10ServiceTicketValidator,
        CasProtocol.CAS20: Cas20ServiceTicketValidator,
        CasProtocol.CAS30: Cas30ServiceTicketValidator,
    }
    return strategies[protocol](config)
