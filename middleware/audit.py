"""
Middleware for automatically auditing API requests and responses.
"""

import time
import logging
from typing import AsyncIterator, Callable, Dict, Optional

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from schema.audit import ApiRequestDetails, ApiResponseDetails, AuditSeverity
from services.audit import AuditService

logger = logging.getLogger(__name__)

SENSITIVE_DATA_MARKER = "*** Sensitive Data Redacted ***"
REDACTED_HEADER_MARKER = "*** Redacted ***"

# These path prefixes are not audited to prevent excessive logging
DEFAULT_EXCLUDED_PATHS = (
    "/api/health",
    "/metrics",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/swagger",
)

# Request and response bodies on these path prefixes never reach the audit log
DEFAULT_SENSITIVE_PATHS = (
    "/api/auth/login",
    "/api/auth/register",
    "/api/auth/refresh",
    "/api/auth/reset-password",
    "/api/users/password",
)

TEXTUAL_CONTENT_TYPES = (
    "application/json",
    "application/problem+json",
    "application/xml",
    "application/x-www-form-urlencoded",
    "text/",
)

AUDITED_RESPONSE_CONTENT_TYPES = ("application/json", "application/problem+json", "text/plain")

MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def is_security_relevant(path: str, method: str) -> bool:
    """Whether a request touches authentication, user, role, permission or settings management."""
    path = path.lower()
    method = method.upper()

    if "/api/auth/" in path:
        return True
    if "/api/users/" in path and method in MUTATING_METHODS:
        return True
    if "/api/roles/" in path or "/api/permissions/" in path:
        return True
    if "/api/settings/" in path and method in ("POST", "PUT"):
        return True
    return False


def get_safe_headers(request: Request) -> Dict[str, str]:
    """Copy request headers with credentials replaced by a marker."""
    result = {}
    for name, value in request.headers.items():
        lowered = name.lower()
        if lowered in ("authorization", "cookie") or "api-key" in lowered:
            result[name] = REDACTED_HEADER_MARKER
        else:
            result[name] = value
    return result


def _matches_prefix(path: str, prefixes) -> bool:
    path = path.lower()
    return any(path.startswith(prefix) for prefix in prefixes)


async def _replay(body: bytes) -> AsyncIterator[bytes]:
    yield body


class AuditMiddleware(BaseHTTPMiddleware):
    """Emits one audit entry per non excluded API call."""

    def __init__(
        self,
        app: FastAPI,
        audit_service: AuditService,
        excluded_paths: Optional[list] = None,
        sensitive_paths: Optional[list] = None,
    ):
        super().__init__(app)
        self.audit_service = audit_service
        self.excluded_paths = tuple(p.lower() for p in (excluded_paths or DEFAULT_EXCLUDED_PATHS))
        self.sensitive_paths = tuple(p.lower() for p in (sensitive_paths or DEFAULT_SENSITIVE_PATHS))

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path

        if _matches_prefix(path, self.excluded_paths):
            return await call_next(request)

        method = request.method
        started = time.perf_counter()
        is_sensitive = _matches_prefix(path, self.sensitive_paths)

        request_body = await self._read_request_body(request, is_sensitive)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Error in audit middleware: {e}")

            try:
                await self.audit_service.log_system_action(
                    "MIDDLEWARE_ERROR",
                    f"Error in audit middleware: {e}",
                    "Middleware",
                )
            except Exception as audit_error:
                # The regular logger already has the original error
                logger.error(f"Failed to write audit entry: {audit_error}")

            raise

        response_body = await self._capture_response_body(response, is_sensitive)
        duration_ms = (time.perf_counter() - started) * 1000

        request_details = ApiRequestDetails(
            method=method,
            path=path,
            query_string=request.url.query,
            request_body=request_body,
            headers=get_safe_headers(request),
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("User-Agent", ""),
        )
        response_details = ApiResponseDetails(
            status_code=response.status_code,
            content_type=response.headers.get("content-type"),
            response_body=response_body,
            duration_ms=duration_ms,
        )

        details = f"{method} {path} - Status {response.status_code}"

        try:
            if is_security_relevant(path, method):
                await self.audit_service.log_security_event(
                    self._get_user_identifier(request),
                    f"API_{method}",
                    details,
                    AuditSeverity.MEDIUM,
                    request=request_details,
                    response=response_details,
                )
            else:
                await self.audit_service.log_system_action(
                    f"API_{method}",
                    details,
                    "API",
                    user_identifier=self._get_user_identifier(request),
                    request=request_details,
                    response=response_details,
                )
        except Exception as e:
            logger.error(f"Failed to write audit entry for {details}: {e}")

        return response

    async def _read_request_body(self, request: Request, is_sensitive: bool) -> Optional[str]:
        content_length = request.headers.get("content-length")
        if not content_length or content_length == "0":
            return None

        content_type = request.headers.get("content-type", "").lower()
        if not content_type.startswith(TEXTUAL_CONTENT_TYPES):
            return None

        # Starlette caches the body so the route can still read it
        body = await request.body()
        if not body:
            return None
        if is_sensitive:
            return SENSITIVE_DATA_MARKER
        return body.decode("utf-8", errors="replace")

    async def _capture_response_body(self, response: Response, is_sensitive: bool) -> Optional[str]:
        content_type = (response.headers.get("content-type") or "").lower()
        if not content_type.startswith(AUDITED_RESPONSE_CONTENT_TYPES):
            return None

        chunks = [chunk async for chunk in response.body_iterator]
        body = b"".join(
            chunk if isinstance(chunk, bytes) else chunk.encode("utf-8") for chunk in chunks
        )
        response.body_iterator = _replay(body)

        if not body:
            return None
        if is_sensitive:
            return SENSITIVE_DATA_MARKER
        return body.decode("utf-8", errors="replace")

    def _get_user_identifier(self, request: Request) -> str:
        user = getattr(request.state, "user", None)
        if user is not None:
            return user.username
        return "Unknown"
