"""
Domain models for the identity core.
"""

import time
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProviderCapability(str, Enum):
    """Optional features a provider may support."""
    PASSWORD_RESET = "password_reset"
    PROFILE_EDIT = "profile_edit"
    BUSINESS_ASSETS = "business_assets"
    ACCOUNT_LINKING = "account_linking"
    REFRESH_TOKENS = "refresh_tokens"
    LOGOUT = "logout"


class ProviderDescriptor(BaseModel):
    """Public description of a configured provider."""
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    enabled: bool = True
    capabilities: FrozenSet[ProviderCapability] = frozenset()


class AuthorizationRequest(BaseModel):
    """A login in progress, stored server-side until its callback arrives.

    ``state`` is single-use: the flow store hands it out once on consume.
    ``released`` marks a request that was put back after a transient
    failure; such a request is not put back a second time.
    """

    provider: str
    return_url: str = "/"
    state: str
    nonce: Optional[str] = None
    code_verifier: Optional[str] = None
    policy: Optional[str] = None
    authorization_url: str
    created_at: float
    expires_at: float
    released: bool = False

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at

    def remaining_seconds(self, now: Optional[float] = None) -> float:
        return max(0.0, self.expires_at - (time.time() if now is None else now))


class TokenResponse(BaseModel):
    """Tokens returned by a provider's token endpoint."""

    access_token: str = ""
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int = Field(default=3600, gt=0)
    scope: Optional[str] = None

    def __repr__(self) -> str:
        return f"TokenResponse(token_type={self.token_type!r}, expires_in={self.expires_in})"

    __str__ = __repr__


class UserInfo(BaseModel):
    """Canonical identity produced by every provider."""
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    email: str = ""
    display_name: str = ""
    first_name: str = ""
    last_name: str = ""
    profile_picture_url: Optional[str] = None
    auth_provider: str
    is_authenticated: bool = True
    claims: Dict[str, str] = Field(default_factory=dict)

    @field_validator("user_id")
    @classmethod
    def _user_id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("user_id must not be blank")
        return value


class SessionInfo(BaseModel):
    """Session record as returned by the session store."""

    session_id: str
    user_id: str
    provider: str
    created_at: float
    expires_at: float
    is_valid: bool = True

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.time() if now is None else now) >= self.expires_at


class ProviderHealth(BaseModel):
    """Result of a provider health check."""

    provider: str
    healthy: bool
    checked_at: float
    consecutive_failures: int = 0
    disabled: bool = False
    cached: bool = False
    error: Optional[str] = None


class ProviderValidationResult(BaseModel):
    """Aggregated configuration check across providers."""

    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    provider_errors: Dict[str, List[str]] = Field(default_factory=dict)
