"""
Caller identity extraction: network address and presented credentials.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from typing import Iterable, Optional

from service_runtime.app.domain.inbound import InboundRequest
from service_runtime.app.domain.models import AuthMethod

API_KEY_HEADER = "X-API-Key"
QUERY_PARAMETERS = ("api_key", "apikey")


@dataclass(frozen=True)
class PresentedCredential:
    """A token together with the convention it was presented through."""

    token: str
    method: AuthMethod
    header: Optional[str] = None


class IdentifierExtractor:
    """Reads caller identifiers off an inbound request.

    Forwarding headers are only honoured when the socket peer is listed in
    ``trusted_proxies``.
    """

    def __init__(self, trusted_proxies: Optional[Iterable[str]] = None):
        self.trusted_proxies = frozenset(trusted_proxies or ())

    def client_ip(self, request: InboundRequest) -> str:
        """Extract the caller IP, trusting forwarding headers from known proxies only."""
        peer = request.client_host
        if peer and peer in self.trusted_proxies:
            forwarded_for = request.header("X-Forwarded-For")
            if forwarded_for:
                return forwarded_for.split(",")[0].strip()
            real_ip = request.header("X-Real-IP")
            if real_ip:
                return real_ip.strip()
        return peer or "unknown"

    def from_header(self, request: InboundRequest) -> Optional[PresentedCredential]:
        token = request.header(API_KEY_HEADER)
        if not token:
            return None
        return PresentedCredential(token=token, method=AuthMethod.HEADER, header=API_KEY_HEADER)

    def from_bearer(self, request: InboundRequest) -> Optional[PresentedCredential]:
        authorization = request.header("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            return None
        token = authorization[7:].strip()
        if not token:
            return None
        return PresentedCredential(token=token, method=AuthMethod.BEARER)

    def from_query(self, request: InboundRequest) -> Optional[PresentedCredential]:
        for name in QUERY_PARAMETERS:
            token = request.query.get(name)
            if isinstance(token, list):
                token = token[0] if token else None
            if token:
                return PresentedCredential(token=str(token), method=AuthMethod.QUERY)
        return None

    def from_basic(self, request: InboundRequest) -> Optional[PresentedCredential]:
        """The password field of Basic auth carries the token; the user name is ignored."""
        authorization = request.header("Authorization")
        if not authorization or not authorization.startswith("Basic "):
            return None
        try:
            decoded = base64.b64decode(authorization[6:].strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        _, separator, password = decoded.partition(":")
        if not separator or not password:
            return None
        return PresentedCredential(token=password, method=AuthMethod.BASIC)

    def from_custom_header(self, request: InboundRequest, header_name: str) -> Optional[PresentedCredential]:
        token = request.header(header_name)
        if not token:
            return None
        return PresentedCredential(token=token, method=AuthMethod.CUSTOM, header=header_name)
