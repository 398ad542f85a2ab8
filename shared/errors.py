"""
Shared error handling for the scriptable endpoint runtime.
"""

from typing import Dict, Any, Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RuntimeLayerException(Exception):
    """Base exception for runtime services."""

    status_code: int = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.headers = headers or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details,
        )


class AuthenticationError(RuntimeLayerException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "AUTHENTICATION_ERROR"):
        super().__init__(code, message, details)


class CredentialMissing(AuthenticationError):
    """No credential was presented for a protected route."""

    def __init__(self, message: str = "API key required", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="CREDENTIAL_MISSING")


class CredentialInvalid(AuthenticationError):
    """The presented credential is unknown, disabled or bound to another method."""

    def __init__(self, message: str = "Invalid API key", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="CREDENTIAL_INVALID")


class CredentialExpired(AuthenticationError):
    """The presented credential is past its expiry timestamp."""

    def __init__(self, message: str = "API key expired", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="CREDENTIAL_EXPIRED")


class AuthorizationError(RuntimeLayerException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "AUTHORIZATION_ERROR"):
        super().__init__(code, message, details)


class PermissionDenied(AuthorizationError):
    """The credential is not allowed to call the resolved route."""

    def __init__(self, message: str = "API key not authorized for this route",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="PERMISSION_DENIED")


class ValidationError(RuntimeLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ServiceError(RuntimeLayerException):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class RouteNotFound(RuntimeLayerException):
    """No registered route matches the request."""

    status_code = 404

    def __init__(self, method: str, path: str):
        super().__init__(
            "ROUTE_NOT_FOUND",
            f"Route {method} {path} not found",
            {"method": method, "path": path},
        )


class RouteDisabled(RuntimeLayerException):
    """The matching route exists but is switched off."""

    status_code = 503

    def __init__(self, route_id: str):
        super().__init__("ROUTE_DISABLED", "This route is disabled", {"route_id": route_id})


class RateLimitError(RuntimeLayerException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None,
                 code: str = "RATE_LIMIT_ERROR", headers: Optional[Dict[str, str]] = None):
        super().__init__(code, message, details, headers)


class RateLimited(RateLimitError):
    """Fixed-window counter for (route, identifier) is exhausted."""

    def __init__(self, limit: int, window: int, retry_after: int, headers: Optional[Dict[str, str]] = None):
        super().__init__(
            f"Limit of {limit} requests per {window} seconds exceeded",
            {"limit": limit, "window": window, "retry_after": retry_after},
            code="RATE_LIMITED",
            headers=headers,
        )
        self.retry_after = retry_after


class QuotaExceeded(RateLimitError):
    """Credential quota for the current period is used up."""

    def __init__(self, limit: int, used: int, reset_at: Optional[str], headers: Optional[Dict[str, str]] = None):
        super().__init__(
            f"Quota of {limit} requests exceeded",
            {"limit": limit, "used": used, "reset_at": reset_at},
            code="QUOTA_EXCEEDED",
            headers=headers,
        )


class ExecutionError(RuntimeLayerException):
    """Failures raised while preparing or running user code."""

    status_code = 500
    kind = "execution"

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(code, message, details)


class UnsupportedLanguage(ExecutionError):
    """Language name has no adapter."""

    status_code = 400
    kind = "unsupported"

    def __init__(self, language: str):
        super().__init__("UNSUPPORTED_LANGUAGE", f"Unsupported language: {language}", {"language": language})


class LanguageDisabled(ExecutionError):
    """Language adapter exists but is toggled off in configuration."""

    status_code = 503
    kind = "disabled"

    def __init__(self, language: str):
        super().__init__("LANGUAGE_DISABLED", f"Language {language} is disabled", {"language": language})


class ProcessSpawnFailure(ExecutionError):
    """The interpreter for a language could not be started."""

    kind = "spawn"

    def __init__(self, runtime: str, reason: str):
        super().__init__(
            "PROCESS_SPAWN_FAILURE",
            f"{runtime} runtime not available: {reason}",
            {"runtime": runtime},
        )


class ExecutionTimeout(ExecutionError):
    """The process did not finish before its deadline."""

    kind = "timeout"

    def __init__(self, timeout_ms: int):
        super().__init__(
            "EXECUTION_TIMEOUT",
            f"Execution timed out after {timeout_ms} ms",
            {"timeout_ms": timeout_ms},
        )


class UserCodeException(ExecutionError):
    """User code raised and the harness could not report it."""

    kind = "stderr"

    def __init__(self, message: str):
        super().__init__("USER_CODE_EXCEPTION", message)


class ResultParseFailure(ExecutionError):
    """The sentinel line was present but did not hold a valid envelope."""

    kind = "parse"

    def __init__(self, reason: str):
        super().__init__("RESULT_PARSE_FAILURE", "Failed to parse execution result", {"reason": reason})
