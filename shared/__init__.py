"""
Shared utilities for the Crewbook entitlements service.

This package aggregates common building blocks consumed by the service:

- config: Service configuration via pydantic-settings
- logging: Structured logging with trace and account correlation
- metrics: Prometheus metrics helpers
- tracing: OpenTelemetry tracing config
- errors: Canonical error types and responses
- retry: Retry helpers for transient failures
- circuit_breaker: Resilient external call protection
- base_service: FastAPI service chassis

Do not import from service packages into shared/.
"""
