"""
Unit tests for the CSRF guard.
"""

import pytest

from shared.errors import CsrfValidationError, InvalidArgumentError
from service_identity.app.security.csrf import CsrfGuard


class TestCsrfGuard:
    """Test cases for CsrfGuard."""

    @pytest.fixture
    def guard(self, clock, metrics):
        return CsrfGuard(ttl_seconds=3600, clock=clock, metrics=metrics)

    def test_issue_and_validate(self, guard):
        token = guard.issue_token("session-1")

        assert len(token) >= 32
        assert guard.validate("session-1", token) is True
        assert guard.validate("session-1", token) is True

    def test_token_is_bound_to_session(self, guard):
        token = guard.issue_token("session-1")
        guard.issue_token("session-2")

        assert guard.validate("session-2", token) is False

    @pytest.mark.parametrize("session_key, token", [
        ("session-1", None),
        ("session-1", ""),
        ("session-1", "guessed"),
        (None, "anything"),
        ("unknown", "anything"),
    ])
    def test_invalid_tokens(self, guard, session_key, token):
        guard.issue_token("session-1")

        assert guard.validate(session_key, token) is False

    def test_rotation_invalidates_old_token(self, guard):
        old = guard.issue_token("session-1")
        new = guard.issue_token("session-1")

        assert old != new
        assert guard.validate("session-1", old) is False
        assert guard.validate("session-1", new) is True

    def test_expiry(self, guard, clock):
        token = guard.issue_token("session-1")
        clock.advance(3600)

        assert guard.validate("session-1", token) is False

    def test_revoke(self, guard):
        token = guard.issue_token("session-1")

        guard.revoke("session-1")
        guard.revoke("never-issued")

        assert guard.validate("session-1", token) is False

    def test_expired_tokens_are_dropped_on_issue(self, guard, clock):
        for i in range(100):
            guard.issue_token(f"session-{i}")
        clock.advance(3600)

        guard.issue_token("session-fresh")

        assert len(guard) == 1

    @pytest.mark.parametrize("session_key", ["", "   ", None])
    def test_issue_requires_session(self, guard, session_key):
        with pytest.raises(InvalidArgumentError):
            guard.issue_token(session_key)

    def test_enforce(self, guard, metrics):
        token = guard.issue_token("session-1")
        guard.enforce("session-1", token)

        with pytest.raises(CsrfValidationError) as exc_info:
            guard.enforce("session-1", "wrong")

        assert exc_info.value.http_status == 403
        assert exc_info.value.code == "CSRF_TOKEN_INVALID"
        assert metrics.registry.get_sample_value("identity_csrf_rejections_total") == 1.0

    @pytest.mark.parametrize("method, path, protected", [
        ("POST", "/api/profile", True),
        ("put", "/api/profile", True),
        ("DELETE", "/sessions/current", True),
        ("PATCH", "/api/profile", True),
        ("GET", "/api/profile", False),
        ("HEAD", "/api/profile", False),
        ("OPTIONS", "/api/profile", False),
        ("POST", "/health", False),
        ("POST", "/api/public/signup", False),
        ("POST", "/api/publicity", True),
        ("POST", "/metrics", False),
    ])
    def test_requires_protection(self, guard, method, path, protected):
        assert guard.requires_protection(method, path) is protected

    def test_custom_exempt_paths(self, clock):
        guard = CsrfGuard(clock=clock, exempt_paths=["/webhooks"])

        assert guard.requires_protection("POST", "/webhooks/stripe") is False
        assert guard.requires_protection("POST", "/health") is True
