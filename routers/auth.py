"""
Auth router for handling user authentication related endpoints.
"""

import logfire

from fastapi import HTTPException, Request, Response, status, APIRouter, Depends
from fastapi.responses import JSONResponse

from typing import Annotated, Optional

from middleware.rate_limiting import get_client_ip
from middleware.refresh_token import extract_refresh_secret, set_refresh_cookie
from schema.security import (
    AuthResult,
    IssuedTokens,
    RefreshTokenRequest,
    TokenValidationResponse,
)
from schema.users import LoginRequest
from security.helpers import (
    authenticate_user,
    get_token_service,
    get_user_repository,
    oauth2_scheme,
)
from security.refresh_token import RefreshTokenService
from security.tokens import TokenService
from services.user_repository import UserRepository
from utils.settings import Settings

router = APIRouter(
    prefix="/api/auth",
    tags=["Auth"],
)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_refresh_token_service(request: Request) -> RefreshTokenService:
    return request.app.state.refresh_token_service


def _to_auth_result(tokens: IssuedTokens, token_service: TokenService) -> AuthResult:
    return AuthResult(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type="Bearer",
        expires_in=int(token_service.access_token_lifetime.total_seconds()),
        expires_at=tokens.access_token_expires_at,
        user=tokens.user,
    )


def _unauthorized(title: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"title": title, "status": status.HTTP_401_UNAUTHORIZED, "detail": detail},
        media_type="application/problem+json",
        headers={"WWW-Authenticate": "Bearer"},
    )


@router.post("/login", response_model=AuthResult)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    users: Annotated[UserRepository, Depends(get_user_repository)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
    refresh_service: Annotated[RefreshTokenService, Depends(get_refresh_token_service)],
    settings: Annotated[Settings, Depends(get_settings)],
):
    """Login endpoint that returns both access and refresh tokens.

    ## Responses
    ### Invalid credentials or inactive account
    - status code: 401

    ### Too many attempts from the same address
    - status code: 429
    - body: ```{"error": "Too many requests", "message": "...", "retryAfter": 1800}```
    """
    logfire.info(f"Login attempt for email: {payload.email}")

    user = await authenticate_user(users, payload.email, payload.password)

    if not user:
        logfire.warning(f"Authentication failed for email: {payload.email}")
        return _unauthorized("Authentication Failed", "Invalid email or password")

    tokens = await refresh_service.issue(
        user,
        client_ip=get_client_ip(request, settings.auth.trust_proxy_headers, settings.auth.trusted_proxies),
        user_agent=request.headers.get("User-Agent"),
    )

    if settings.auth.use_http_only_cookies:
        set_refresh_cookie(response, request, settings.auth, tokens.refresh_token)

    logfire.info(f"User {user.user_id} logged in successfully")
    return _to_auth_result(tokens, token_service)


@router.post("/refresh", response_model=AuthResult)
async def refresh_access_token(
    request: Request,
    response: Response,
    token_service: Annotated[TokenService, Depends(get_token_service)],
    refresh_service: Annotated[RefreshTokenService, Depends(get_refresh_token_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    payload: Optional[RefreshTokenRequest] = None,
):
    """Exchange a refresh token for a new token pair. The presented token becomes unusable."""
    secret = (payload.refresh_token if payload else None) or extract_refresh_secret(request, settings.auth)

    result = await refresh_service.rotate(
        secret,
        client_ip=get_client_ip(request, settings.auth.trust_proxy_headers, settings.auth.trusted_proxies),
        user_agent=request.headers.get("User-Agent"),
    )

    if not result.succeeded:
        return _unauthorized("Invalid Token", result.message)

    if settings.auth.use_http_only_cookies:
        set_refresh_cookie(response, request, settings.auth, result.tokens.refresh_token)

    return _to_auth_result(result.tokens, token_service)


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
    refresh_service: Annotated[RefreshTokenService, Depends(get_refresh_token_service)],
    settings: Annotated[Settings, Depends(get_settings)],
    payload: Optional[RefreshTokenRequest] = None,
):
    """Logout endpoint that revokes refresh tokens.

    With a valid access token every refresh token of the user is revoked,
    otherwise only the presented refresh token is.
    """
    validation = token_service.validate_token(token) if token else None

    if validation and validation.is_valid and validation.claims.user_id is not None:
        await refresh_service.revoke_all(validation.claims.user_id, "User logout")
        logfire.info(f"User {validation.claims.user_id} logged out from all sessions")
    else:
        secret = (payload.refresh_token if payload else None) or extract_refresh_secret(request, settings.auth)
        if not secret:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Refresh token or access token is required",
            )
        await refresh_service.revoke(secret, "Token revoked by user")

    if settings.auth.use_http_only_cookies:
        response.delete_cookie(settings.auth.refresh_token_cookie_name, path="/")

    return {"message": "Successfully logged out"}


@router.get("/validate", response_model=TokenValidationResponse)
async def validate_token(
    token: Annotated[Optional[str], Depends(oauth2_scheme)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
):
    """Report whether the Bearer access token is currently valid."""
    return TokenValidationResponse(valid=bool(token) and token_service.is_token_valid(token))
