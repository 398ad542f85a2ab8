"""
Admin login with brute-force protection.
"""

from __future__ import annotations

import hmac
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

import jwt

from shared.errors import AuthenticationError, RateLimited, ServiceError
from shared.logging import get_logger

from service_runtime.app.ratelimit.fixed_window import FixedWindowRateLimiter, RedisFixedWindowRateLimiter

LOGIN_ROUTE_ID = "auth-login"
JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class LoginResult:
    token: str
    expires_at: int


class LoginGuard:
    """Password check for the admin login, throttled per client IP.

    Uses the same fixed-window limiter as dynamic routes under a reserved
    route id; a successful login clears the window.
    """

    def __init__(
        self,
        rate_limiter: Union[FixedWindowRateLimiter, RedisFixedWindowRateLimiter],
        admin_password: Optional[str],
        jwt_secret: str,
        jwt_ttl_seconds: int = 24 * 60 * 60,
        max_attempts: int = 5,
        window_seconds: int = 900,
        clock: Callable[[], float] = time.time,
    ):
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.jwt_ttl_seconds = jwt_ttl_seconds
        self.logger = get_logger("runtime.login")
        self._admin_password = admin_password
        self._jwt_secret = jwt_secret
        self._clock = clock

    async def login(self, client_ip: str, password: str) -> LoginResult:
        decision = await self.rate_limiter.check(client_ip, LOGIN_ROUTE_ID, self.max_attempts, self.window_seconds)
        if not decision.allowed:
            self.logger.warning("Login attempts exhausted", client_ip=client_ip)
            raise RateLimited(
                limit=self.max_attempts,
                window=self.window_seconds,
                retry_after=decision.retry_after or 0,
                headers={"Retry-After": str(decision.retry_after or 0)},
            )

        if not self._admin_password:
            raise ServiceError("Admin password is not configured")

        if not hmac.compare_digest(password.encode("utf-8"), self._admin_password.encode("utf-8")):
            self.logger.warning("Login failed", client_ip=client_ip, remaining=decision.remaining)
            raise AuthenticationError(
                f"Incorrect password. {decision.remaining} attempt(s) left.",
                {"remaining": decision.remaining},
                code="INVALID_PASSWORD",
            )

        await self.rate_limiter.reset(client_ip, LOGIN_ROUTE_ID)

        now = int(self._clock())
        expires_at = now + self.jwt_ttl_seconds
        token = jwt.encode({"admin": True, "iat": now, "exp": expires_at}, self._jwt_secret, algorithm=JWT_ALGORITHM)
        self.logger.info("Admin logged in", client_ip=client_ip)
        return LoginResult(token=token, expires_at=expires_at)

    def verify(self, token: Optional[str]) -> Dict[str, Any]:
        """Decode an admin token or raise AuthenticationError."""
        if not token:
            raise AuthenticationError("Admin token required")
        try:
            claims = jwt.decode(token, self._jwt_secret, algorithms=[JWT_ALGORITHM])
        except jwt.PyJWTError as exc:
            raise AuthenticationError("Invalid or expired token") from exc
        if not claims.get("admin"):
            raise AuthenticationError("Invalid or expired token")
        return claims
