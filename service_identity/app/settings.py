"""
Provider configuration for the identity core.

``IdentitySettings`` is the explicit configuration struct handed to the
provider factory. Values load from ``ACCESS_IDENTITY_*`` environment
variables (nested with ``__``) or are constructed directly.

Numeric bounds (clock skew, page limits, assertion lifetimes, state TTL)
are checked by each provider's ``configuration_errors()``, not by the
models, so the factory can report all of them together.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderSettings(BaseModel):
    """Settings shared by every provider.

    Assignments are validated, so a PEM string set on a running config
    becomes a ``SecretStr`` like one loaded from the environment.
    """

    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = False
    display_name: Optional[str] = None
    client_id: str = ""
    client_secret: Optional[SecretStr] = None
    redirect_uri: Optional[str] = None
    callback_path: str = "/signin-oidc"
    scopes: List[str] = Field(default_factory=list)
    use_pkce: bool = False
    clock_skew_seconds: int = 300
    state_ttl_seconds: int = 600
    jwks_cache_seconds: int = 3600


class GoogleSettings(ProviderSettings):
    display_name: Optional[str] = "Google"
    callback_path: str = "/signin-google"
    scopes: List[str] = Field(default_factory=lambda: ["openid", "email", "profile"])
    use_pkce: bool = True
    access_type: str = "offline"
    prompt: Optional[str] = "consent"
    hosted_domain: Optional[str] = None
    include_granted_scopes: bool = True

    authorization_endpoint: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint: str = "https://oauth2.googleapis.com/token"
    userinfo_endpoint: str = "https://openidconnect.googleapis.com/v1/userinfo"
    jwks_uri: str = "https://www.googleapis.com/oauth2/v3/certs"
    issuer: str = "https://accounts.google.com"
    password_reset_url: str = "https://accounts.google.com/signin/recovery"


class FacebookBusinessSettings(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = False
    business_id: Optional[str] = None
    scopes: List[str] = Field(default_factory=lambda: ["business_management", "pages_show_list"])
    include_business_assets: bool = False
    max_pages_limit: int = 25
    include_business_roles: bool = False
    validate_business_permissions: bool = False
    required_business_role: Optional[str] = None


class FacebookInstagramSettings(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    enabled: bool = False
    scopes: List[str] = Field(default_factory=lambda: ["instagram_basic"])


class FacebookSettings(ProviderSettings):
    display_name: Optional[str] = "Facebook"
    callback_path: str = "/signin-facebook"
    scopes: List[str] = Field(default_factory=lambda: ["email", "public_profile"])
    api_version: str = "v19.0"
    profile_fields: List[str] = Field(default_factory=lambda: [
        "id", "email", "first_name", "last_name", "name", "picture.type(large)", "locale", "timezone",
    ])
    use_long_lived_tokens: bool = False
    display_mode: str = "page"
    locale: str = "en_US"
    business: FacebookBusinessSettings = Field(default_factory=FacebookBusinessSettings)
    instagram: FacebookInstagramSettings = Field(default_factory=FacebookInstagramSettings)

    dialog_base_url: str = "https://www.facebook.com"
    graph_base_url: str = "https://graph.facebook.com"


class ApplePrivateEmailSettings(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    handle_private_relay: bool = True
    store_relay_emails: bool = True
    log_relay_detection: bool = False


class AppleSettings(ProviderSettings):
    display_name: Optional[str] = "Apple"
    callback_path: str = "/signin-apple"
    scopes: List[str] = Field(default_factory=lambda: ["name", "email"])
    team_id: str = ""
    key_id: str = ""
    private_key: Optional[SecretStr] = None
    response_mode: str = "form_post"
    assertion_lifetime_seconds: int = 300
    private_email: ApplePrivateEmailSettings = Field(default_factory=ApplePrivateEmailSettings)

    authorization_endpoint: str = "https://appleid.apple.com/auth/authorize"
    token_endpoint: str = "https://appleid.apple.com/auth/token"
    jwks_uri: str = "https://appleid.apple.com/auth/keys"
    issuer: str = "https://appleid.apple.com"


class AzureB2CSettings(ProviderSettings):
    display_name: Optional[str] = "Microsoft"
    callback_path: str = "/signin-oidc"
    scopes: List[str] = Field(default_factory=lambda: ["openid", "profile", "offline_access"])
    use_pkce: bool = True
    tenant_name: str = ""
    tenant_id: str = ""
    custom_domain: Optional[str] = None
    sign_up_sign_in_policy: str = "B2C_1_signupsignin"
    reset_password_policy: Optional[str] = None
    edit_profile_policy: Optional[str] = None
    issuer: Optional[str] = None

    use_client_assertion: bool = False
    assertion_key_id: Optional[str] = None
    assertion_private_key: Optional[SecretStr] = None
    assertion_lifetime_seconds: int = 300


class IdentitySettings(BaseSettings):
    """Top-level provider configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="ACCESS_IDENTITY_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore"
    )

    redirect_base_url: Optional[str] = None
    default_provider: Optional[str] = None

    google: GoogleSettings = Field(default_factory=GoogleSettings)
    facebook: FacebookSettings = Field(default_factory=FacebookSettings)
    apple: AppleSettings = Field(default_factory=AppleSettings)
    azure_b2c: AzureB2CSettings = Field(default_factory=AzureB2CSettings)
