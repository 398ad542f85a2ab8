"""
Transport-neutral view of an inbound HTTP request.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import Request


def _collect_query(items) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for key, value in items:
        if key in query:
            existing = query[key]
            query[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            query[key] = value
    return query


def _decode_body(raw: bytes, content_type: str) -> Any:
    if not raw:
        return {}
    text = raw.decode("utf-8", errors="replace")
    if "json" in content_type:
        try:
            return json.loads(text)
        except ValueError:
            return text
    if "application/x-www-form-urlencoded" in content_type:
        return _collect_query(parse_qsl(text, keep_blank_values=True))
    return text


@dataclass(frozen=True)
class InboundRequest:
    """Everything the admission pipeline and the harness need from a request."""

    method: str
    path: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    client_host: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        return self.headers.get(name.lower())

    @classmethod
    async def from_request(cls, request: Request, path: str) -> "InboundRequest":
        raw = await request.body()
        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"
        return cls(
            method=request.method.upper(),
            path="/" + path.lstrip("/"),
            url=url,
            headers={name.lower(): value for name, value in request.headers.items()},
            query=_collect_query(request.query_params.multi_items()),
            body=_decode_body(raw, request.headers.get("content-type", "")),
            client_host=request.client.host if request.client else None,
        )
