"""
Request log collaborator.

Every dynamic request, successful or not, ends up here as a RequestRecord.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Mapping, Optional

from shared.logging import get_logger

SENSITIVE_HEADERS = {"authorization", "x-api-key", "cookie"}
MAX_FIELD_LENGTH = 2000
MAX_ERROR_LENGTH = 500


def truncate(value: Any, limit: int = MAX_FIELD_LENGTH) -> Optional[str]:
    """Render a value as text and cut it at ``limit`` characters."""
    if value is None or value == "" or value == {}:
        return None
    text = value if isinstance(value, str) else json.dumps(value, default=str, ensure_ascii=False)
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def sanitize_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Drop headers that carry credentials."""
    return {name: value for name, value in headers.items() if name.lower() not in SENSITIVE_HEADERS}


@dataclass
class RequestRecord:
    """What gets persisted for one request."""

    url: str
    method: str
    ip: str
    status_code: int
    response_time_ms: int
    user_agent: Optional[str] = None
    request_headers: Optional[str] = None
    request_body: Optional[str] = None
    error_message: Optional[str] = None
    route_id: Optional[str] = None
    credential_id: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def build(
        cls,
        *,
        url: str,
        method: str,
        ip: str,
        headers: Mapping[str, str],
        body: Any,
        status_code: int,
        response_time_ms: int,
        error_message: Optional[str] = None,
        route_id: Optional[str] = None,
        credential_id: Optional[str] = None,
    ) -> "RequestRecord":
        return cls(
            url=url,
            method=method,
            ip=ip,
            status_code=status_code,
            response_time_ms=response_time_ms,
            user_agent=headers.get("user-agent"),
            request_headers=truncate(sanitize_headers(headers)),
            request_body=truncate(body),
            error_message=truncate(error_message, MAX_ERROR_LENGTH),
            route_id=route_id,
            credential_id=credential_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["created_at"] = self.created_at.isoformat()
        return payload


class RequestLogSink:
    """Keeps the most recent records in memory and emits a structured log line per record."""

    def __init__(self, capacity: int = 1000):
        self.logger = get_logger("runtime.request_log")
        self._records: Deque[RequestRecord] = deque(maxlen=capacity)

    async def record(self, record: RequestRecord) -> None:
        self._records.append(record)
        self.logger.info(
            "Request recorded",
            method=record.method,
            url=record.url,
            status_code=record.status_code,
            response_time_ms=record.response_time_ms,
            route_id=record.route_id,
            credential_id=record.credential_id,
            error=record.error_message,
        )

    def recent(self, limit: int = 100) -> List[RequestRecord]:
        """Newest first."""
        return list(reversed(self._records))[:limit]

    def stats(self) -> Dict[str, Any]:
        total = len(self._records)
        if not total:
            return {"total": 0, "errors": 0, "avg_response_time_ms": 0}
        errors = sum(1 for record in self._records if record.status_code >= 400)
        average = sum(record.response_time_ms for record in self._records) / total
        return {"total": total, "errors": errors, "avg_response_time_ms": round(average)}
