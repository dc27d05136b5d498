"""
Middleware that transparently refreshes expired access tokens.

A request signals an expired access token either with `Token-Expired: true` or by
carrying a Bearer token whose only defect is its expiry. The middleware then
exchanges the refresh secret from the refresh cookie or the `X-Refresh-Token`
header for a new pair, hands the new access token to the downstream handler and
returns both tokens in response headers.
"""

import logging
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from security.refresh_token import RefreshTokenService, RotationResult
from security.tokens import TokenService
from schema.security import IssuedTokens
from utils.settings import AuthSettings
from middleware.rate_limiting import get_client_ip

logger = logging.getLogger(__name__)

TOKEN_EXPIRED_HEADER = "Token-Expired"
REFRESH_TOKEN_HEADER = "X-Refresh-Token"
BEARER_PREFIX = "bearer "

# Endpoints that handle refresh secrets or expired tokens themselves
DEFAULT_EXCLUDED_PATHS = ("/api/auth/login", "/api/auth/refresh", "/api/auth/logout", "/api/auth/validate")


def set_refresh_cookie(response: Response, request: Request, settings: AuthSettings, secret: str) -> None:
    """Attach the refresh secret as an HttpOnly cookie."""
    response.set_cookie(
        key=settings.refresh_token_cookie_name,
        value=secret,
        max_age=settings.refresh_token_expiration_days * 24 * 3600,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="strict",
        path="/",
    )


def extract_refresh_secret(request: Request, settings: AuthSettings) -> Optional[str]:
    """Find the refresh secret of a request.

    The cookie is read first when cookie mode is enabled, then the
    `X-Refresh-Token` header, which may carry a `Bearer ` prefix.
    """
    if settings.use_http_only_cookies:
        cookie_value = request.cookies.get(settings.refresh_token_cookie_name)
        if cookie_value:
            return cookie_value

    header_value = (request.headers.get(REFRESH_TOKEN_HEADER) or "").strip()
    if header_value.lower().startswith(BEARER_PREFIX):
        header_value = header_value[len(BEARER_PREFIX):].strip()

    return header_value or None


def _get_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("Authorization") or ""
    if authorization.lower().startswith(BEARER_PREFIX):
        return authorization[len(BEARER_PREFIX):].strip() or None
    return None


class RefreshTokenMiddleware(BaseHTTPMiddleware):
    """Rotates refresh tokens for requests carrying an expired access token."""

    def __init__(
        self,
        app: FastAPI,
        token_service: TokenService,
        refresh_token_service: RefreshTokenService,
        settings: AuthSettings,
        exclude_paths: Optional[list] = None,
    ):
        super().__init__(app)
        self.token_service = token_service
        self.refresh_token_service = refresh_token_service
        self.settings = settings
        self.exclude_paths = {
            path.lower() for path in (exclude_paths or DEFAULT_EXCLUDED_PATHS)
        }

    def _has_expired_signal(self, request: Request) -> bool:
        if (request.headers.get(TOKEN_EXPIRED_HEADER) or "").strip().lower() == "true":
            return True

        bearer = _get_bearer_token(request)
        return bool(bearer) and self.token_service.validate_token(bearer).is_expired

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.lower() in self.exclude_paths or not self._has_expired_signal(request):
            return await call_next(request)

        logger.info(f"Expired access token on {request.url.path}, attempting refresh")

        secret = extract_refresh_secret(request, self.settings)
        result = await self.refresh_token_service.rotate(
            secret,
            client_ip=get_client_ip(request, self.settings.trust_proxy_headers, self.settings.trusted_proxies),
            user_agent=request.headers.get("User-Agent"),
        )

        if not result.succeeded:
            return self._refresh_required_response(result)

        tokens = result.tokens
        self._replace_authorization(request, tokens.access_token)

        response = await call_next(request)
        self._attach_tokens(request, response, tokens)

        logger.info(f"Successfully refreshed token for user {tokens.user.user_id}")
        return response

    def _refresh_required_response(self, result: RotationResult) -> JSONResponse:
        message = result.message
        logger.info(f"Token refresh failed: {message}")

        return JSONResponse(
            status_code=401,
            content={
                "error": "Token refresh required",
                "message": message,
                "requiresRefresh": True,
            },
            headers={
                "Token-Refresh-Required": "true",
                "Token-Refresh-Error": message,
            },
        )

    def _replace_authorization(self, request: Request, access_token: str) -> None:
        # Downstream handlers build their own Request from the shared scope
        headers = [
            (name, value) for name, value in request.scope["headers"]
            if name.lower() not in (b"authorization", TOKEN_EXPIRED_HEADER.lower().encode("latin-1"))
        ]
        headers.append((b"authorization", f"Bearer {access_token}".encode("latin-1")))
        request.scope["headers"] = headers

    def _attach_tokens(self, request: Request, response: Response, tokens: IssuedTokens) -> None:
        response.headers["New-Access-Token"] = tokens.access_token
        response.headers["New-Refresh-Token"] = tokens.refresh_token
        response.headers["Token-Expires-At"] = tokens.access_token_expires_at.isoformat()

        if self.settings.use_http_only_cookies:
            set_refresh_cookie(response, request, self.settings, tokens.refresh_token)
