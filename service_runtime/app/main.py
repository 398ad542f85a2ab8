"""
Scriptable endpoint runtime service.

Serves user-defined endpoints under a configurable prefix; each request is
admitted (route, credential, rate limit) and then answered by running the
route's code in a fresh interpreter process.
"""

import shutil
from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError
from shared.logging import clear_context, request_id_var, set_request_id

from service_runtime.app.adapters.registry import InMemoryRegistry, load_registry_file
from service_runtime.app.adapters.request_log import RequestLogSink
from service_runtime.app.auth.dispatcher import AuthDispatcher
from service_runtime.app.auth.identifier import IdentifierExtractor
from service_runtime.app.auth.login import LoginGuard
from service_runtime.app.domain.inbound import InboundRequest
from service_runtime.app.domain.pipeline import RequestPipeline
from service_runtime.app.execution.engine import ExecutionEngine
from service_runtime.app.quota.tracker import QuotaTracker
from service_runtime.app.ratelimit.fixed_window import FixedWindowRateLimiter, RedisFixedWindowRateLimiter
from service_runtime.app.routing.resolver import RouteResolver

DYNAMIC_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
TOKEN_COOKIE = "token"


class LoginRequest(BaseModel):
    password: str


class RuntimeService(BaseService):
    """Scriptable endpoint runtime implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, registry: Optional[InMemoryRegistry] = None):
        super().__init__("runtime", 8000, config=config or get_config("runtime", 8000))

        if registry is None:
            registry = InMemoryRegistry()
            if self.config.registry_file:
                load_registry_file(self.config.registry_file, registry)
        self.registry = registry

        self.resolver = RouteResolver(
            self.registry,
            cache_ttl_seconds=self.config.route_cache_ttl_seconds,
            max_entries=self.config.route_cache_max_entries,
        )
        if self.config.rate_limit_backend == "redis":
            self.rate_limiter = RedisFixedWindowRateLimiter(self.config.redis_url)
        else:
            self.rate_limiter = FixedWindowRateLimiter(
                sweep_interval=self.config.rate_limit_sweep_interval,
                metrics=self.metrics,
            )
        self.quota_tracker = QuotaTracker(self.registry)
        self.extractor = IdentifierExtractor(self.config.trusted_proxy_list())
        self.auth_dispatcher = AuthDispatcher(self.registry, self.quota_tracker, self.extractor)
        self.engine = ExecutionEngine.from_config(self.config, metrics=self.metrics)
        self.request_log = RequestLogSink(capacity=self.config.request_log_capacity)

        admin_password = self.config.admin_password
        self.login_guard = LoginGuard(
            self.rate_limiter,
            admin_password.get_secret_value() if admin_password else None,
            self.config.jwt_secret.get_secret_value(),
            jwt_ttl_seconds=self.config.jwt_ttl_seconds,
            max_attempts=self.config.login_max_attempts,
            window_seconds=self.config.login_window_seconds,
        )

        self.pipeline = RequestPipeline(
            resolver=self.resolver,
            auth=self.auth_dispatcher,
            rate_limiter=self.rate_limiter,
            engine=self.engine,
            request_log=self.request_log,
            extractor=self.extractor,
            metrics=self.metrics,
        )

        self._setup_observability_middleware()
        self._setup_auth_routes()
        self._setup_admin_routes()
        self._setup_dynamic_routes()

    async def _startup(self) -> None:
        await self.rate_limiter.start()
        await self.resolver.start()
        self.logger.info(
            "Runtime started",
            routes=self.registry.count_routes(),
            credentials=self.registry.count_credentials(),
            api_prefix=self.config.api_prefix,
        )

    async def _shutdown(self) -> None:
        await self.resolver.stop()
        await self.rate_limiter.stop()
        self.logger.info("Runtime stopped")

    def _setup_observability_middleware(self):
        """Attach a request id to every request and its log lines."""

        class ObservabilityMiddleware(BaseHTTPMiddleware):
            async def dispatch(self, request: Request, call_next):
                request_id = set_request_id(request.headers.get("X-Request-ID"))
                try:
                    response = await call_next(request)
                    response.headers["X-Request-ID"] = request_id
                    return response
                finally:
                    clear_context()

        self.app.add_middleware(ObservabilityMiddleware)

    def _setup_dynamic_routes(self):
        """Set up the catch-all for user-defined endpoints."""
        prefix = "/" + self.config.api_prefix.strip("/")

        @self.app.get(prefix)
        @self.app.get(prefix + "/")
        async def api_root():
            return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

        @self.app.api_route(prefix + "/{path:path}", methods=DYNAMIC_METHODS)
        async def dynamic_endpoint(path: str, request: Request):
            inbound = await InboundRequest.from_request(request, path)
            return await self.pipeline.handle(inbound, request.state)

    def _setup_auth_routes(self):
        """Set up admin login routes."""

        @self.app.post("/auth/login")
        async def login(payload: LoginRequest, request: Request):
            inbound = await InboundRequest.from_request(request, request.url.path)
            result = await self.login_guard.login(self.extractor.client_ip(inbound), payload.password)
            response = JSONResponse({"success": True, "token": result.token, "expires_at": result.expires_at})
            response.set_cookie(
                TOKEN_COOKIE,
                result.token,
                max_age=self.login_guard.jwt_ttl_seconds,
                httponly=True,
                secure=self.config.env == "production",
                samesite="strict",
            )
            return response

        @self.app.post("/auth/logout")
        async def logout():
            response = JSONResponse({"success": True})
            response.delete_cookie(TOKEN_COOKIE)
            return response

        @self.app.get("/auth/verify")
        async def verify(request: Request):
            try:
                self._require_admin(request)
            except AuthenticationError:
                return JSONResponse(status_code=401, content={"valid": False})
            return {"valid": True, "admin": True}

    def _setup_admin_routes(self):
        """Set up runtime statistics for administrators."""

        @self.app.get("/runtime/stats")
        async def runtime_stats(request: Request):
            self._require_admin(request)
            return {
                "routes": self.registry.count_routes(),
                "credentials": self.registry.count_credentials(),
                "route_cache": self.resolver.stats(),
                "rate_limiter": self.rate_limiter.get_global_stats(),
                "requests": self.request_log.stats(),
                "recent_requests": [record.to_dict() for record in self.request_log.recent(20)],
                "request_id": request_id_var.get(),
            }

    def _require_admin(self, request: Request) -> Dict:
        token = None
        authorization = request.headers.get("Authorization", "")
        if authorization.startswith("Bearer "):
            token = authorization[7:].strip()
        if not token:
            token = request.cookies.get(TOKEN_COOKIE)
        return self.login_guard.verify(token)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check registry, limiter backend and interpreters."""
        dependencies = {
            "registry": "ok",
            "rate_limiter": self.config.rate_limit_backend,
        }
        for name, adapter in self.engine.adapters.items():
            if not self.engine.enabled.get(name, True):
                dependencies[name] = "disabled"
            elif shutil.which(adapter.executable):
                dependencies[name] = "ok"
            else:
                dependencies[name] = "missing"
        return dependencies


def create_app(config: Optional[ServiceConfig] = None, registry: Optional[InMemoryRegistry] = None):
    """Create the FastAPI application."""
    service = RuntimeService(config=config, registry=registry)
    return service.app


if __name__ == "__main__":
    service = RuntimeService()
    service.run()
