"""
Shared utilities for the scriptable endpoint runtime.

This package aggregates common building blocks consumed by the services:

- config: Service configuration via pydantic-settings
- logging: Structured logging with request correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- base_service: FastAPI service skeleton with health and metrics routes
- test_helpers: Factories for routes, credentials and admin tokens (tests only)

Runtime modules in shared/ must not import from service packages;
test_helpers is the one exception.
"""
