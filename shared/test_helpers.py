"""
Test helper functions and factory methods for the scriptable endpoint runtime.
"""

import time
from typing import Dict, Any, Optional, List
from datetime import datetime, timedelta, timezone
import jwt

from service_runtime.app.adapters.registry import InMemoryRegistry
from service_runtime.app.domain.models import (
    AuthMethod,
    AuthType,
    Credential,
    QuotaSettings,
    RateLimitSettings,
    Route,
)


class RuntimeDataFactory:
    """Factory for creating test data."""

    @staticmethod
    def create_route(
        route_id: str = "hello",
        path: str = "/hello",
        method: str = "GET",
        language: str = "python",
        code: str = "respond('hello')",
        **overrides: Any,
    ) -> Route:
        """Create a route with sensible defaults."""
        return Route(
            id=route_id,
            name=overrides.pop("name", route_id),
            path=path,
            method=method,
            language=language,
            code=code,
            **overrides,
        )

    @staticmethod
    def create_credential(
        credential_id: str = "key-1",
        key: str = "sk_test_0123456789abcdef",
        auth_method: AuthMethod = AuthMethod.HEADER,
        **overrides: Any,
    ) -> Credential:
        """Create a credential with sensible defaults."""
        return Credential(
            id=credential_id,
            name=overrides.pop("name", credential_id),
            key=key,
            auth_method=auth_method,
            **overrides,
        )

    @staticmethod
    def create_quota(limit: int = 3, used: int = 0, reset_in: Optional[timedelta] = timedelta(days=1)) -> QuotaSettings:
        """Create an enabled quota resetting ``reset_in`` from now."""
        reset_at = datetime.now(timezone.utc) + reset_in if reset_in is not None else None
        return QuotaSettings(enabled=True, limit=limit, used=used, reset_at=reset_at)

    @staticmethod
    def create_rate_limit(requests: int = 2, window: int = 60, by: str = "ip") -> RateLimitSettings:
        return RateLimitSettings(enabled=True, requests=requests, window=window, by=by)

    @classmethod
    def create_sample_routes(cls) -> List[Route]:
        """A small set of routes across languages and auth modes."""
        return [
            cls.create_route("hello", "/hello", code="respond('hello')"),
            cls.create_route(
                "user-by-id",
                "/users/:id",
                code="json({'id': params['id']})",
            ),
            cls.create_route(
                "user-current",
                "/users/me",
                code="json({'id': 'me'})",
            ),
            cls.create_route(
                "echo",
                "/echo",
                method="POST",
                code="json({'received': body}, 201)",
            ),
            cls.create_route(
                "secure",
                "/secure",
                code="json({'secure': True})",
                auth_type=AuthType.APIKEY,
            ),
            cls.create_route(
                "limited",
                "/limited",
                code="respond('ok')",
                rate_limit=cls.create_rate_limit(requests=2),
            ),
            cls.create_route(
                "disabled",
                "/disabled",
                code="respond('never')",
                enabled=False,
            ),
        ]

    @classmethod
    def create_registry(
        cls,
        routes: Optional[List[Route]] = None,
        credentials: Optional[List[Credential]] = None,
    ) -> InMemoryRegistry:
        """Build a registry pre-populated with routes and credentials."""
        registry = InMemoryRegistry()
        for route in cls.create_sample_routes() if routes is None else routes:
            registry.add_route(route)
        for credential in credentials or []:
            registry.add_credential(credential)
        return registry


class AdminTokenGenerator:
    """Generate admin JWT tokens for testing."""

    def __init__(self, secret: str = "test-secret-0123456789abcdef0123456789"):
        self.secret = secret

    def generate_admin_token(self, expires_in: int = 3600, admin: bool = True) -> str:
        """Generate an admin token the login guard will accept."""
        now = int(time.time())
        payload = {
            "admin": admin,
            "iat": now,
            "exp": now + expires_in,
        }
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def generate_expired_token(self) -> str:
        return self.generate_admin_token(expires_in=-60)


class RuntimeTestEnvironment:
    """Test environment configuration."""

    @staticmethod
    def get_config_overrides() -> Dict[str, Any]:
        """Keyword overrides for ``get_config`` in tests."""
        return {
            "env": "test",
            "log_level": "warning",
            "admin_password": "admin-password",
            "jwt_secret": "test-secret-0123456789abcdef0123456789",
        }
