"""
casauth Validation Response Parsers

Pure parsers for the bodies returned by the CAS validation endpoints.

- CAS 1.0 (``/validate``): two text lines, ``yes``/``no`` then the user
- CAS 2.0/3.0 (``/serviceValidate``, ``/p3/serviceValidate``): XML
  ``<cas:serviceResponse>`` envelope

Parsers return ``Success(CasPrincipal)`` or ``Failure(ValidationFailure)``
for a response the server meant, and raise ``ProtocolError`` for a response
that cannot be understood.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Union

import structlog
from returns.result import Failure, Success

from casauth.core.exceptions import ProtocolError
from casauth.core.types import CasPrincipal, ValidationFailure, ValidationResult

logger = structlog.get_logger()

CAS_NAMESPACE = "http://www.yale.edu/tp/cas"


# =============================================================================
# CAS 1.0
# =============================================================================


def parse_cas1_response(body: str) -> ValidationResult:
    """
    Parse a CAS 1.0 ``/validate`` body.

    Examples:
        "yes\\njdoe\\n" -> Success(CasPrincipal("jdoe"))
        "no\\n\\n" -> Failure(REJECTED)

    Raises:
        ProtocolError: Empty body, unknown verdict or missing user
    """
    lines = body.splitlines()
    if not lines:
        raise ProtocolError("Empty CAS 1.0 response", code="empty_response")

    verdict = lines[0].strip()
    if verdict == "no":
        return Failure(ValidationFailure.rejected("CAS server rejected the ticket"))
    if verdict != "yes":
        raise ProtocolError(
            f"Unexpected CAS 1.0 verdict: {verdict[:20]!r}", code="unexpected_verdict"
        )

    user = lines[1].strip() if len(lines) > 1 else ""
    if not user:
        raise ProtocolError("CAS 1.0 success response carries no user", code="no_user")
    return Success(CasPrincipal(identifier=user))


# =============================================================================
# CAS 2.0 / 3.0
# =============================================================================


def _local_name(tag: str) -> str:
    # ElementTree expands "cas:user" to "{http://www.yale.edu/tp/cas}user"
    return tag.split("}", 1)[1] if "}" in tag else tag


def _text(element: ET.Element) -> str:
    return (element.text or "").strip()


def parse_service_response(body: Union[str, bytes]) -> ValidationResult:
    """
    Parse a CAS 2.0/3.0 ``serviceResponse`` document.

    Raises:
        ProtocolError: Body is not XML, the root is not serviceResponse,
            neither success nor failure is present, or success has no user
    """
    try:
        root = ET.fromstring(body)
    except ET.ParseError as e:
        raise ProtocolError(f"CAS response is not well-formed XML: {e}", code="malformed_xml") from e

    if _local_name(root.tag) != "serviceResponse":
        raise ProtocolError(
            "Root of CAS response is not serviceResponse", code="missing_service_response"
        )

    for child in root:
        name = _local_name(child.tag)
        if name == "authenticationFailure":
            code = (child.get("code") or "").strip() or None
            message = " ".join(_text(child).split()) or "CAS server rejected the ticket"
            return Failure(ValidationFailure.rejected(message, code))
        if name == "authenticationSuccess":
            return Success(_parse_success(child))

    raise ProtocolError(
        "CAS response has neither authenticationSuccess nor authenticationFailure",
        code="unexpected_response",
    )


def _parse_success(element: ET.Element) -> CasPrincipal:
    user: Optional[str] = None
    proxy_granting_ticket: Optional[str] = None
    attributes: Dict[str, List[str]] = {}

    for child in element:
        name = _local_name(child.tag)
        if name == "user":
            user = _text(child)
        elif name == "proxyGrantingTicket":
            proxy_granting_ticket = _text(child) or None
        elif name == "attributes":
            _collect_attributes(child, attributes)
        elif name == "attribute":
            _collect_attribute(child, attributes)

    if not user:
        raise ProtocolError("CAS success response carries no user", code="no_user")

    return CasPrincipal(
        identifier=user,
        attributes=attributes,
        proxy_granting_ticket=proxy_granting_ticket,
    )


def _collect_attributes(container: ET.Element, out: Dict[str, List[str]]) -> None:
    """
    Collect ``<cas:attributes>`` children.

    Servers write attributes either as ``<cas:email>a@b</cas:email>``
    or as nested ``<cas:attribute>`` elements.
    """
    for child in container:
        name = _local_name(child.tag)
        if name == "attribute":
            _collect_attribute(child, out)
        else:
            out.setdefault(name, []).append(_text(child))


def _collect_attribute(element: ET.Element, out: Dict[str, List[str]]) -> None:
    """
    Collect one ``<cas:attribute>``.

    Either ``<cas:attribute name="email" value="a@b"/>`` or
    ``<cas:attribute><cas:name>email</cas:name><cas:value>a@b</cas:value></cas:attribute>``.
    """
    name = element.get("name")
    value = element.get("value")
    if name is None:
        for child in element:
            local = _local_name(child.tag)
            if local == "name":
                name = _text(child)
            elif local == "value":
                value = _text(child)
    if name:
        out.setdefault(name, []).append(value or "")
    else:
        logger.debug("cas_attribute_without_name")
