"""
In-memory registry of routes and credentials.

Stands in for the persistence layer: the request path only ever asks it for
routes by method, credentials by key, and writes quota counters back.
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from shared.errors import ValidationError
from shared.logging import get_logger, mask_secret

from service_runtime.app.domain.models import PARAM_MARKER, AuthMethod, Credential, Route


def patterns_overlap(first: Route, second: Route) -> bool:
    """Return True when some concrete path could match both patterns."""
    if first.method != second.method:
        return False
    left, right = first.segments, second.segments
    if len(left) != len(right):
        return False
    for a, b in zip(left, right):
        if a.startswith(PARAM_MARKER) or b.startswith(PARAM_MARKER):
            continue
        if a != b:
            return False
    return True


class InMemoryRegistry:
    """Route and credential lookups backed by plain dictionaries."""

    def __init__(self) -> None:
        self.logger = get_logger("runtime.registry")
        self._routes: Dict[str, Route] = {}
        self._credentials: Dict[str, Credential] = {}
        self._credential_ids_by_key: Dict[str, str] = {}
        self._listeners: List[Callable[[], None]] = []

    def on_change(self, listener: Callable[[], None]) -> None:
        """Register a callback fired whenever routes change."""
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            listener()

    # Routes

    def add_route(self, route: Route) -> Route:
        """Register or replace a route; insertion order is preserved."""
        for existing in self._routes.values():
            if existing.id == route.id or not patterns_overlap(existing, route):
                continue
            if existing.path == route.path:
                raise ValidationError(
                    f"Route {route.method} {route.path} already registered",
                    {"existing_route_id": existing.id},
                )
            if existing.literal_segment_count == route.literal_segment_count:
                self.logger.warning(
                    "Ambiguous route pattern, registration order decides",
                    route_id=route.id,
                    pattern=route.path,
                    conflicts_with=existing.id,
                    conflicting_pattern=existing.path,
                )
        self._routes[route.id] = route
        self._notify()
        return route

    def remove_route(self, route_id: str) -> bool:
        removed = self._routes.pop(route_id, None) is not None
        if removed:
            self._notify()
        return removed

    async def get_route(self, method: str, path: str) -> Optional[Route]:
        """Exact (method, literal path) lookup."""
        for route in self._routes.values():
            if route.method == method and route.path == path:
                return route
        return None

    async def get_routes(self, method: str) -> List[Route]:
        """All routes for a method, in registration order."""
        return [route for route in self._routes.values() if route.method == method]

    def count_routes(self) -> int:
        return len(self._routes)

    # Credentials

    def add_credential(self, credential: Credential) -> Credential:
        owner = self._credential_ids_by_key.get(credential.key)
        if owner is not None and owner != credential.id:
            raise ValidationError("Credential key already in use", {"credential_id": owner})
        previous = self._credentials.get(credential.id)
        if previous is not None:
            self._credential_ids_by_key.pop(previous.key, None)
        self._credentials[credential.id] = credential
        self._credential_ids_by_key[credential.key] = credential.id
        return credential

    def remove_credential(self, credential_id: str) -> bool:
        credential = self._credentials.pop(credential_id, None)
        if credential is None:
            return False
        self._credential_ids_by_key.pop(credential.key, None)
        return True

    async def get_credential(self, key: str) -> Optional[Credential]:
        """Fetch a credential by its token."""
        credential_id = self._credential_ids_by_key.get(key)
        if credential_id is None:
            return None
        return self._credentials.get(credential_id)

    async def get_credential_by_id(self, credential_id: str) -> Optional[Credential]:
        return self._credentials.get(credential_id)

    async def list_custom_header_credentials(self) -> List[Credential]:
        """Enabled credentials presented through an operator-defined header."""
        return [
            credential
            for credential in self._credentials.values()
            if credential.enabled
            and credential.auth_method == AuthMethod.CUSTOM
            and credential.custom_header
        ]

    async def update_quota(self, credential_id: str, used: int, reset_at: Optional[datetime]) -> None:
        """Persist quota counters for a credential."""
        credential = self._credentials.get(credential_id)
        if credential is None:
            self.logger.warning("Quota update for unknown credential", credential_id=credential_id)
            return
        credential.quota.used = used
        credential.quota.reset_at = reset_at

    def count_credentials(self) -> int:
        return len(self._credentials)


def _load_code(entry: Dict[str, Any], base_dir: str) -> Dict[str, Any]:
    code_file = entry.pop("code_file", None)
    if code_file is not None:
        with open(os.path.join(base_dir, code_file), "r", encoding="utf-8") as handle:
            entry["code"] = handle.read()
    return entry


def load_registry_file(path: str, registry: Optional[InMemoryRegistry] = None) -> InMemoryRegistry:
    """Populate a registry from a YAML document with ``routes`` and ``credentials`` lists."""
    registry = registry or InMemoryRegistry()
    base_dir = os.path.dirname(os.path.abspath(path))

    with open(path, "r", encoding="utf-8") as handle:
        document = yaml.safe_load(handle) or {}

    if not isinstance(document, dict):
        raise ValidationError("Registry file must contain a mapping", {"path": path})

    try:
        for entry in document.get("routes") or []:
            registry.add_route(Route(**_load_code(dict(entry), base_dir)))
        for entry in document.get("credentials") or []:
            credential = registry.add_credential(Credential(**entry))
            registry.logger.debug("Credential loaded", key=mask_secret(credential.key))
    except PydanticValidationError as exc:
        raise ValidationError("Invalid registry file", {"path": path, "errors": exc.errors(include_url=False, include_context=False, include_input=False)}) from exc

    registry.logger.info(
        "Registry loaded",
        path=path,
        routes=registry.count_routes(),
        credentials=registry.count_credentials(),
    )
    return registry
