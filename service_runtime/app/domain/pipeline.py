"""
Request pipeline for dynamic endpoints.

resolve -> authenticate -> rate limit -> execute -> render, with every
outcome written to the request log.
"""

from __future__ import annotations

import json
import time
from typing import Any, Dict, Optional, Union

from fastapi import Response
from fastapi.responses import JSONResponse

from shared.errors import RateLimited, RuntimeLayerException
from shared.logging import get_logger, request_id_var, set_route_context
from shared.metrics import MetricsCollector

from service_runtime.app.adapters.request_log import RequestLogSink, RequestRecord
from service_runtime.app.auth.dispatcher import AuthDispatcher
from service_runtime.app.auth.identifier import IdentifierExtractor
from service_runtime.app.domain.inbound import InboundRequest
from service_runtime.app.domain.models import Credential, ExecutionContext, ExecutionResult, RateLimitBy
from service_runtime.app.execution.engine import ExecutionEngine
from service_runtime.app.ratelimit.fixed_window import FixedWindowRateLimiter, RedisFixedWindowRateLimiter
from service_runtime.app.routing.resolver import ResolvedRoute, RouteResolver

STRIPPED_RESULT_HEADERS = {"content-length", "transfer-encoding"}
NO_BODY_STATUSES = {204, 205, 304}


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def build_context(resolved: ResolvedRoute, request: InboundRequest) -> ExecutionContext:
    """Snapshot of the request handed to user code."""
    return ExecutionContext(
        request={
            "method": request.method,
            "path": resolved.path,
            "url": request.url,
            "ip": request.client_host,
        },
        params=dict(resolved.params),
        query=dict(request.query),
        body=request.body,
        headers=dict(request.headers),
        env=dict(resolved.route.env),
    )


def render_result(result: ExecutionResult, extra_headers: Dict[str, str], response_time_ms: int) -> Response:
    """Turn an execution result into an HTTP response."""
    headers: Dict[str, str] = dict(extra_headers)
    content_type: Optional[str] = None
    for name, value in result.headers.items():
        lowered = name.lower()
        if lowered in STRIPPED_RESULT_HEADERS:
            continue
        if lowered == "content-type":
            content_type = value
            continue
        headers[name] = value
    headers["X-Execution-Time"] = f"{result.execution_time_ms}ms"
    headers["X-Response-Time"] = f"{response_time_ms}ms"

    # Informational and no-content statuses are sent without a body
    if result.status < 200 or result.status in NO_BODY_STATUSES:
        return Response(status_code=result.status, headers=headers)

    body = result.body
    if isinstance(body, (bytes, str)):
        return Response(
            content=body,
            status_code=result.status,
            headers=headers,
            media_type=content_type or "text/plain; charset=utf-8",
        )
    content = json.dumps(body, default=str, ensure_ascii=False)
    return Response(
        content=content,
        status_code=result.status,
        headers=headers,
        media_type=content_type or "application/json",
    )


def render_error(exc: RuntimeLayerException, extra_headers: Dict[str, str]) -> JSONResponse:
    headers = dict(extra_headers)
    headers.update(exc.headers)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(request_id_var.get()).model_dump(),
        headers=headers,
    )


class RequestPipeline:
    """Admits a request and runs the matched route's code.

    Admission failures short-circuit before any process is spawned.
    """

    def __init__(
        self,
        resolver: RouteResolver,
        auth: AuthDispatcher,
        rate_limiter: Union[FixedWindowRateLimiter, RedisFixedWindowRateLimiter],
        engine: ExecutionEngine,
        request_log: RequestLogSink,
        extractor: Optional[IdentifierExtractor] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.resolver = resolver
        self.auth = auth
        self.rate_limiter = rate_limiter
        self.engine = engine
        self.request_log = request_log
        self.extractor = extractor or IdentifierExtractor()
        self.metrics = metrics
        self.logger = get_logger("runtime.pipeline")

    async def handle(self, request: InboundRequest, state: Any = None) -> Response:
        started = time.perf_counter()
        client_ip = self.extractor.client_ip(request)
        route_id: Optional[str] = None
        credential: Optional[Credential] = None
        headers: Dict[str, str] = {}

        try:
            resolved = await self.resolver.resolve(request.method, request.path)
            route = resolved.route
            route_id = route.id
            set_route_context(route_id=route.id)

            outcome = await self.auth.authenticate(route, request)
            credential = outcome.credential
            if credential is not None:
                set_route_context(route_id=route.id, credential_id=credential.id)
                if state is not None:
                    state.credential = credential

            if route.rate_limit.enabled:
                if route.rate_limit.by == RateLimitBy.APIKEY and credential is not None:
                    identifier = credential.id
                else:
                    identifier = client_ip
                decision = await self.rate_limiter.check(
                    identifier, route.id, route.rate_limit.requests, route.rate_limit.window
                )
                headers.update(decision.headers())
                if not decision.allowed:
                    raise RateLimited(
                        limit=decision.limit,
                        window=decision.window,
                        retry_after=decision.retry_after or 0,
                    )
        except RuntimeLayerException as exc:
            response_time = _elapsed_ms(started)
            self.logger.info(
                "Request rejected",
                method=request.method,
                path=request.path,
                code=exc.code,
                status_code=exc.status_code,
            )
            if self.metrics:
                self.metrics.record_rejection(exc.code.lower())
            await self._record(request, client_ip, exc.status_code, response_time, exc.message, route_id, credential)
            return render_error(exc, headers)

        context = build_context(resolved, request)
        result = await self.engine.execute(route.language, route.code, context, route.timeout_ms)

        response_time = _elapsed_ms(started)
        await self._record(
            request,
            client_ip,
            result.status,
            response_time,
            result.error_message if not result.success else None,
            route_id,
            credential,
        )
        return render_result(result, headers, response_time)

    async def _record(
        self,
        request: InboundRequest,
        client_ip: str,
        status_code: int,
        response_time_ms: int,
        error_message: Optional[str],
        route_id: Optional[str],
        credential: Optional[Credential],
    ) -> None:
        try:
            await self.request_log.record(
                RequestRecord.build(
                    url=request.url,
                    method=request.method,
                    ip=client_ip,
                    headers=request.headers,
                    body=request.body,
                    status_code=status_code,
                    response_time_ms=response_time_ms,
                    error_message=error_message,
                    route_id=route_id,
                    credential_id=credential.id if credential else None,
                )
            )
        except Exception as e:
            self.logger.error("Failed to record request", error=str(e))
