"""
Authentication dispatch for dynamic routes.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from shared.errors import (
    CredentialExpired,
    CredentialInvalid,
    CredentialMissing,
    PermissionDenied,
    QuotaExceeded,
)
from shared.logging import get_logger, mask_secret

from service_runtime.app.adapters.registry import InMemoryRegistry
from service_runtime.app.auth.identifier import IdentifierExtractor, PresentedCredential
from service_runtime.app.domain.inbound import InboundRequest
from service_runtime.app.domain.models import AuthType, Credential, Route
from service_runtime.app.quota.tracker import QuotaDecision, QuotaTracker


@dataclass(frozen=True)
class AuthOutcome:
    """Result of a successful admission through authentication."""

    credential: Optional[Credential] = None
    quota: Optional[QuotaDecision] = None


class AuthDispatcher:
    """Validates the caller against the route's authentication mode.

    A credential is only accepted through the presentation method it is
    bound to: a header-bound key sent as a query parameter is rejected.
    """

    def __init__(
        self,
        registry: InMemoryRegistry,
        quota_tracker: QuotaTracker,
        extractor: Optional[IdentifierExtractor] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self.quota_tracker = quota_tracker
        self.extractor = extractor or IdentifierExtractor()
        self.logger = get_logger("runtime.auth")
        self._clock = clock

    async def authenticate(self, route: Route, request: InboundRequest) -> AuthOutcome:
        """Return the admitted credential or raise a 401/403/429 error."""
        if route.auth_type == AuthType.NONE:
            return AuthOutcome()

        credential = await self._resolve_credential(route.auth_type, request)

        if not credential.enabled:
            raise CredentialInvalid("API key disabled")
        if credential.is_expired(self._clock()):
            raise CredentialExpired()

        if not credential.allows(route.id):
            self.logger.warning("Credential not permitted for route", credential_id=credential.id, route_id=route.id)
            raise PermissionDenied()

        quota = await self.quota_tracker.check_and_consume(credential)
        if not quota.allowed:
            raise QuotaExceeded(
                limit=quota.limit or 0,
                used=quota.used or 0,
                reset_at=quota.reset_at.isoformat() if quota.reset_at else None,
                headers=quota.headers(),
            )

        self.logger.info(
            "Request authenticated with API key",
            credential_id=credential.id,
            auth_method=credential.auth_method.value,
            key=mask_secret(credential.key),
        )
        return AuthOutcome(credential=credential, quota=quota)

    async def _resolve_credential(self, auth_type: AuthType, request: InboundRequest) -> Credential:
        if auth_type == AuthType.BEARER:
            return await self._pinned(self.extractor.from_bearer(request))
        if auth_type == AuthType.BASIC:
            return await self._pinned(self.extractor.from_basic(request))
        return await self._probe(request)

    async def _pinned(self, presented: Optional[PresentedCredential]) -> Credential:
        if presented is None:
            raise CredentialMissing()
        credential = await self._lookup(presented)
        if credential is None:
            raise CredentialInvalid()
        return credential

    async def _probe(self, request: InboundRequest) -> Credential:
        """Try X-API-Key, Bearer, query parameter, then registered custom headers."""
        presented_any = False
        candidates: List[Optional[PresentedCredential]] = [
            self.extractor.from_header(request),
            self.extractor.from_bearer(request),
            self.extractor.from_query(request),
        ]
        for presented in candidates:
            if presented is None:
                continue
            presented_any = True
            credential = await self._lookup(presented)
            if credential is not None:
                return credential

        for credential in await self.registry.list_custom_header_credentials():
            presented = self.extractor.from_custom_header(request, credential.custom_header or "")
            if presented is None:
                continue
            presented_any = True
            if hmac.compare_digest(presented.token.encode("utf-8"), credential.key.encode("utf-8")):
                return credential

        if not presented_any:
            raise CredentialMissing()
        raise CredentialInvalid()

    async def _lookup(self, presented: PresentedCredential) -> Optional[Credential]:
        """Fetch the credential and keep it only if bound to the method it arrived by."""
        credential = await self.registry.get_credential(presented.token)
        if credential is None:
            return None
        if credential.auth_method != presented.method:
            self.logger.warning(
                "Credential presented through the wrong method",
                credential_id=credential.id,
                expected=credential.auth_method.value,
                presented=presented.method.value,
            )
            return None
        return credential
