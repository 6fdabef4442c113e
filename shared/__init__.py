"""
Shared utilities for the identity access core.

This package aggregates common building blocks consumed by the identity
service:

- config: Core configuration via pydantic-settings
- logging: Structured logging with trace and correlation context
- metrics: Prometheus counters for flows, rejections and health checks
- errors: Canonical error types and responses
- retry: Retry helpers for idempotent provider reads
- circuit_breaker: Per-provider protection for outbound calls
- secrets_manager: Secret resolvers (environment, encrypted file, static)

Do not import from service packages into shared/.
"""
