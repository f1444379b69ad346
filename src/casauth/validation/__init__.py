"""
casauth Validation Module

Back-channel service ticket validation for CAS 1.0, 2.0 and 3.0.

Components:
- parsers: Response body parsers per protocol version
- validators: ValidatorConfig, the TicketValidator protocol and its strategies
"""

from casauth.validation.parsers import (
    CAS_NAMESPACE,
    parse_cas1_response,
    parse_service_response,
)
from casauth.validation.validators import (
    Cas10ServiceTicketValidator,
    Cas20ServiceTicketValidator,
    Cas30ServiceTicketValidator,
    TicketValidator,
    ValidatorConfig,
    create_ticket_validator,
)

__all__ = [
    "CAS_NAMESPACE",
    "parse_cas1_response",
    "parse_service_response",
    "Cas10ServiceTicketValidator",
    "Cas20ServiceTicketValidator",
    "Cas30ServiceTicketValidator",
    "TicketValidator",
    "ValidatorConfig",
    "create_ticket_validator",
]
