"""
Data models for routes, credentials and executions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field, field_validator

from shared.errors import ExecutionError

PARAM_MARKER = ":"

_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}
_HEADER_NAME = re.compile(r"^[A-Za-z0-9-]+$")


def split_path(path: str) -> List[str]:
    """Split a path or pattern into its non-empty segments."""
    return [segment for segment in path.split("/") if segment]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class AuthType(str, Enum):
    """Authentication mode declared by a route."""
    NONE = "none"
    APIKEY = "apikey"
    BEARER = "bearer"
    BASIC = "basic"


class AuthMethod(str, Enum):
    """Presentation method a credential is bound to."""
    HEADER = "header"
    BEARER = "bearer"
    QUERY = "query"
    CUSTOM = "custom"
    BASIC = "basic"


class RateLimitBy(str, Enum):
    """Identifier used for the rate-limit key."""
    IP = "ip"
    APIKEY = "apikey"


class QuotaPeriod(str, Enum):
    """Quota accounting period."""
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class RateLimitSettings(BaseModel):
    """Per-route fixed-window configuration."""
    enabled: bool = False
    requests: int = Field(100, ge=1, description="Requests allowed per window")
    window: int = Field(60, ge=1, description="Window length in seconds")
    by: RateLimitBy = RateLimitBy.IP


class Route(BaseModel):
    """A registered endpoint backed by user code."""
    id: str
    name: str = ""
    path: str
    method: str = "GET"
    language: str
    code: str
    auth_type: AuthType = AuthType.NONE
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    enabled: bool = True
    env: Dict[str, str] = Field(default_factory=dict)
    timeout_ms: Optional[int] = Field(None, ge=1)

    @field_validator("method")
    @classmethod
    def _normalize_method(cls, value: str) -> str:
        method = value.upper()
        if method not in _METHODS:
            raise ValueError(f"unsupported HTTP method: {value}")
        return method

    @field_validator("path")
    @classmethod
    def _normalize_path(cls, value: str) -> str:
        return "/" + "/".join(split_path(value))

    @property
    def segments(self) -> List[str]:
        return split_path(self.path)

    @property
    def is_parameterized(self) -> bool:
        return any(segment.startswith(PARAM_MARKER) for segment in self.segments)

    @property
    def literal_segment_count(self) -> int:
        return sum(1 for segment in self.segments if not segment.startswith(PARAM_MARKER))


class QuotaSettings(BaseModel):
    """Per-credential usage quota and its current counters."""
    enabled: bool = False
    limit: int = Field(1000, ge=0)
    period: QuotaPeriod = QuotaPeriod.MONTH
    used: int = Field(0, ge=0)
    reset_at: Optional[datetime] = None

    @field_validator("reset_at")
    @classmethod
    def _reset_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class Credential(BaseModel):
    """An API key record."""
    id: str
    name: str = ""
    key: str
    auth_method: AuthMethod = AuthMethod.HEADER
    custom_header: Optional[str] = None
    permissions: Union[str, List[str]] = "*"
    quota: QuotaSettings = Field(default_factory=QuotaSettings)
    enabled: bool = True
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _expires_at_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)

    @field_validator("custom_header")
    @classmethod
    def _valid_header(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not _HEADER_NAME.match(value):
            raise ValueError(f"invalid custom header name: {value}")
        return value

    def permitted_routes(self) -> Set[str]:
        """Return the explicit permission set ("*" included when present)."""
        if isinstance(self.permissions, str):
            items = self.permissions.split(",")
        else:
            items = self.permissions
        return {item.strip() for item in items if item and item.strip()}

    def allows(self, route_id: str) -> bool:
        """Whether this credential may call the given route."""
        permitted = self.permitted_routes()
        return "*" in permitted or route_id in permitted

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable per-request snapshot handed to the harness."""

    request: Dict[str, Any]
    params: Dict[str, str] = field(default_factory=dict)
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request": dict(self.request),
            "params": dict(self.params),
            "query": dict(self.query),
            "body": self.body,
            "headers": dict(self.headers),
            "env": dict(self.env),
        }


@dataclass
class ExecutionResult:
    """Structured outcome of one execution."""

    status: int
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    execution_time_ms: int = 0
    success: bool = True
    logs: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def failure(cls, exc: ExecutionError, execution_time_ms: int = 0) -> "ExecutionResult":
        """Convert an execution error into a 4xx/5xx result."""
        return cls(
            status=exc.status_code,
            body={"error": exc.message},
            headers={"Content-Type": "application/json"},
            execution_time_ms=execution_time_ms,
            success=False,
            error_kind=exc.kind,
        )

    @property
    def error_message(self) -> Optional[str]:
        """Error text carried by a failing result, if any."""
        if self.status < 400 or self.body is None:
            return None
        if isinstance(self.body, dict) and self.body.get("error"):
            return str(self.body["error"])
        if isinstance(self.body, str):
            return self.body
        return None
