"""
Identity Service package for the identity access core.

Turns heterogeneous OAuth 2.0 / OpenID Connect providers (Google,
Facebook, Apple, Azure AD B2C) into one normalized identity and session
abstraction:

- app.providers: Per-provider authorization URLs, code exchange and
  identity resolution.
- app.validation: Signed token validation and claims normalization.
- app.factory: Provider lookup, capability queries and health checks.
- app.flow: Authorization-code flow state machine and state storage.
- app.security: CSRF guard, sliding-window rate limiting and the FastAPI
  middleware adapter.
- app.service: The facade exposed to host applications.

Design notes:
- Module import performs no network calls; all IO happens in explicit
  awaitable operations.
- Use the shared/ utilities for logging, metrics, resilience and errors.
- Sessions and users are persisted by the host through the narrow store
  interfaces in app.sessions.
"""
