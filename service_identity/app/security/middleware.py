"""
FastAPI adapter for the rate limiter and CSRF guard.

No routes are defined here; the host application mounts its own and adds
this middleware in front of them.
"""

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.errors import IdentityException, RateLimitError
from shared.logging import clear_context, get_logger, set_request_id
from service_identity.app.security.csrf import CSRF_HEADER_NAMES, CsrfGuard
from service_identity.app.security.ratelimit import RateLimiter

SESSION_COOKIE_NAME = "session_id"


def get_client_id(request: Request) -> str:
    """Caller identity: authenticated user, then forwarded address, then peer."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id"):
        return f"user:{user_info['user_id']}"

    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return request.client.host if request.client else "unknown"


def get_csrf_token(request: Request) -> Optional[str]:
    for header in CSRF_HEADER_NAMES:
        value = request.headers.get(header)
        if value:
            return value
    return None


def error_response(error: IdentityException) -> JSONResponse:
    headers = {}
    if isinstance(error, RateLimitError) and error.retry_after is not None:
        headers["Retry-After"] = str(int(error.retry_after))
    return JSONResponse(
        status_code=error.http_status,
        content=error.to_response().model_dump(),
        headers=headers,
    )


class SecurityMiddleware(BaseHTTPMiddleware):
    def __init__(self, app,
                 rate_limiter: Optional[RateLimiter] = None,
                 csrf_guard: Optional[CsrfGuard] = None,
                 session_cookie: str = SESSION_COOKIE_NAME):
        super().__init__(app)
        self.rate_limiter = rate_limiter
        self.csrf_guard = csrf_guard
        self.session_cookie = session_cookie
        self.logger = get_logger("identity.security.middleware")

    async def dispatch(self, request: Request, call_next):
        request_id = set_request_id(request.headers.get("X-Request-ID"))
        try:
            if self.rate_limiter is not None:
                await self.rate_limiter.enforce(get_client_id(request))

            if self.csrf_guard is not None and self.csrf_guard.requires_protection(request.method, request.url.path):
                session_key = request.cookies.get(self.session_cookie)
                self.csrf_guard.enforce(session_key, get_csrf_token(request))

            response = await call_next(request)
        except IdentityException as e:
            self.logger.warning("Request rejected", path=request.url.path, method=request.method,
                                error_code=e.code)
            response = error_response(e)
        finally:
            clear_context()

        response.headers["X-Request-ID"] = request_id
        return response


def install_security_middleware(app: FastAPI,
                                rate_limiter: Optional[RateLimiter] = None,
                                csrf_guard: Optional[CsrfGuard] = None,
                                session_cookie: str = SESSION_COOKIE_NAME) -> None:
    """Add the middleware and an ``IdentityException`` handler to ``app``."""
    app.add_middleware(
        SecurityMiddleware,
        rate_limiter=rate_limiter,
        csrf_guard=csrf_guard,
        session_cookie=session_cookie,
    )

    @app.exception_handler(IdentityException)
    async def identity_exception_handler(request: Request, exc: IdentityException):
        return error_response(exc)
