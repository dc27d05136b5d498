"""Application settings read from the environment.

Values are loaded from a `.env` file when present and validated with pydantic.
"""

import os

from pydantic import BaseModel, Field

from typing import Annotated, List, Optional

from dotenv import load_dotenv

load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_list(name: str, default: List[str]) -> List[str]:
    value = os.getenv(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


class JwtSettings(BaseModel):
    """Settings for signing and validating access tokens."""

    secret_key: Annotated[str, Field(min_length=16)]
    issuer: Annotated[str, Field(default="Ikhtibar")]
    audience: Annotated[str, Field(default="Ikhtibar.Client")]
    algorithm: Annotated[str, Field(default="HS256")]
    access_token_expiration_minutes: Annotated[int, Field(default=15, gt=0)]
    clock_skew_seconds: Annotated[int, Field(default=0, ge=0)]


class AuthSettings(BaseModel):
    """Settings for refresh tokens and brute-force protection."""

    refresh_token_expiration_days: Annotated[int, Field(default=7, gt=0)]
    max_active_refresh_tokens: Annotated[int, Field(default=5, gt=0)]
    use_http_only_cookies: Annotated[bool, Field(default=False)]
    refresh_token_cookie_name: Annotated[str, Field(default="refreshToken")]

    max_login_attempts: Annotated[int, Field(default=5, gt=0)]
    rate_limit_window_minutes: Annotated[int, Field(default=15, gt=0)]
    lockout_duration_minutes: Annotated[int, Field(default=30, gt=0)]
    rate_limited_paths: Annotated[List[str], Field(default=["/api/auth/login"])]

    trust_proxy_headers: Annotated[bool, Field(default=True)]
    trusted_proxies: Annotated[List[str], Field(default=[])]


class Settings(BaseModel):
    """Top level settings object handed to the application factory."""

    environment: Annotated[str, Field(default="production")]
    jwt: JwtSettings
    auth: Annotated[AuthSettings, Field(default_factory=AuthSettings)]
    cors_origins: Annotated[List[str], Field(default=["*"])]
    database_connection_string: Optional[str] = None
    database_name: Annotated[str, Field(default="ikhtibar")]
    redis_url: Optional[str] = None
    logfire_token: Optional[str] = None

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in ("dev", "development")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        jwt = JwtSettings(
            secret_key=os.getenv("SECRET_KEY", "dev-secret-key-change-me-in-production"),
            issuer=os.getenv("JWT_ISSUER", "Ikhtibar"),
            audience=os.getenv("JWT_AUDIENCE", "Ikhtibar.Client"),
            access_token_expiration_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "15")),
            clock_skew_seconds=int(os.getenv("JWT_CLOCK_SKEW_SECONDS", "0")),
        )

        auth = AuthSettings(
            refresh_token_expiration_days=int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7")),
            max_active_refresh_tokens=int(os.getenv("MAX_ACTIVE_REFRESH_TOKENS", "5")),
            use_http_only_cookies=_get_bool("USE_HTTP_ONLY_COOKIES", False),
            refresh_token_cookie_name=os.getenv("REFRESH_TOKEN_COOKIE_NAME", "refreshToken"),
            max_login_attempts=int(os.getenv("MAX_LOGIN_ATTEMPTS", "5")),
            rate_limit_window_minutes=int(os.getenv("RATE_LIMIT_WINDOW_MINUTES", "15")),
            lockout_duration_minutes=int(os.getenv("LOCKOUT_DURATION_MINUTES", "30")),
            rate_limited_paths=_get_list("RATE_LIMITED_PATHS", ["/api/auth/login"]),
            trust_proxy_headers=_get_bool("TRUST_PROXY_HEADERS", True),
            trusted_proxies=_get_list("TRUSTED_PROXIES", []),
        )

        return cls(
            environment=os.getenv("APP_ENV", "production"),
            jwt=jwt,
            auth=auth,
            cors_origins=_get_list("CORS_ORIGINS", ["*"]),
            database_connection_string=os.getenv("DATABASE_CONNECTION_STRING"),
            database_name=os.getenv("DATABASE_NAME", "ikhtibar"),
            redis_url=os.getenv("REDIS_URL"),
            logfire_token=os.getenv("LOGFIRE_WRITE_TOKEN"),
        )
