"""
FastAPI Rate Limiting Middleware for authentication endpoints

This module provides brute-force protection for login endpoints using a sliding
window with lockout, tracked per client IP and endpoint in an injected
`RateLimitStore`.
"""

import time
import logging
import ipaddress
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from security.tokens import utc_now
from services.rate_limit_store import (
    InMemoryRateLimitStore,
    RateLimitPolicy,
    RateLimitStore,
    register_attempt,
)


logger = logging.getLogger(__name__)


def get_client_ip(
    request: Request,
    trust_proxy_headers: bool = True,
    trusted_proxies: Optional[Iterable[str]] = None,
) -> str:
    """
    Resolve the client address of a request.

    Forwarding headers are consulted in the order `X-Forwarded-For` (first entry)
    then `X-Real-IP`, followed by the socket peer and finally "unknown". Headers are
    only honoured when `trust_proxy_headers` is set and, if `trusted_proxies` is not
    empty, the socket peer is one of them.

    Args:
        request: FastAPI Request object
        trust_proxy_headers: Whether forwarding headers may be used at all
        trusted_proxies: Peer addresses or networks allowed to set forwarding headers

    Returns:
        Client identifier string (typically IP address)
    """
    peer = request.client.host if request.client else None

    if trust_proxy_headers and _is_trusted_peer(peer, trusted_proxies):
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            # X-Forwarded-For can contain multiple IPs, take the first one
            first = forwarded_for.split(",")[0].strip()
            if first:
                return first

        real_ip = request.headers.get("X-Real-IP")
        if real_ip and real_ip.strip():
            return real_ip.strip()

    return peer or "unknown"


def _is_trusted_peer(peer: Optional[str], trusted_proxies: Optional[Iterable[str]]) -> bool:
    proxies = list(trusted_proxies or [])
    if not proxies:
        return True
    if not peer:
        return False

    try:
        peer_address = ipaddress.ip_address(peer)
    except ValueError:
        return peer in proxies

    for proxy in proxies:
        try:
            if peer_address in ipaddress.ip_network(proxy, strict=False):
                return True
        except ValueError:
            continue
    return False


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    FastAPI middleware rejecting brute-force attempts on authentication endpoints.

    Each `ip:endpoint` key may make `max_attempts` requests per window. The next
    request locks the key out for `lockout_minutes`, during which every request is
    answered with 429.
    """

    def __init__(
        self,
        app: FastAPI,
        store: Optional[RateLimitStore] = None,
        max_attempts: int = 5,
        window_minutes: int = 15,
        lockout_minutes: int = 30,
        protected_paths: Optional[list] = None,
        trust_proxy_headers: bool = True,
        trusted_proxies: Optional[list] = None,
        cleanup_interval: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the rate limiting middleware.

        Args:
            app: FastAPI application instance
            store: Rate limit state store (default: process local store)
            max_attempts: Requests allowed per key within the window (default: 5)
            window_minutes: Length of the counting window in minutes (default: 15)
            lockout_minutes: Lockout duration in minutes (default: 30)
            protected_paths: Path prefixes to rate limit (default: ["/api/auth/login"])
            trust_proxy_headers: Honour X-Forwarded-For / X-Real-IP (default: True)
            trusted_proxies: Peers allowed to set forwarding headers (default: any)
            cleanup_interval: Interval in seconds to purge stale state (default: 3600)
            clock: Source of the current time
        """
        super().__init__(app)

        # Configuration
        self.store = store or InMemoryRateLimitStore()
        self.policy = RateLimitPolicy(
            max_attempts=max_attempts,
            window=timedelta(minutes=window_minutes),
            lockout=timedelta(minutes=lockout_minutes),
        )
        self.lockout_minutes = lockout_minutes
        self.protected_paths = [
            path.lower().rstrip("/") for path in (protected_paths or ["/api/auth/login"])
        ]
        self.trust_proxy_headers = trust_proxy_headers
        self.trusted_proxies = list(trusted_proxies or [])
        self.cleanup_interval = cleanup_interval
        self.clock = clock
        self.last_cleanup = time.time()

        logger.info(
            f"Rate limiter initialized: {max_attempts} attempts per {window_minutes} min, "
            f"lockout: {lockout_minutes} min, paths: {self.protected_paths}"
        )

    def _is_protected_path(self, path: str) -> bool:
        """
        Check if the request path is an authentication endpoint.

        Matches whole path segments, case-insensitively.
        """
        path = path.lower().rstrip("/")
        return any(
            path == protected or path.startswith(protected + "/")
            for protected in self.protected_paths
        )

    async def _cleanup_stale_entries(self) -> None:
        """
        Remove state that can no longer affect a decision to prevent memory leaks.
        """
        now = time.time()

        # Only cleanup if enough time has passed
        if now - self.last_cleanup < self.cleanup_interval:
            return

        self.last_cleanup = now
        await self.store.purge(self.clock() - self.policy.state_ttl)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process incoming requests and enforce rate limiting.

        Args:
            request: FastAPI Request object
            call_next: Next middleware or route handler

        Returns:
            Response object, 429 when the client is locked out
        """
        if not self._is_protected_path(request.url.path):
            return await call_next(request)

        await self._cleanup_stale_entries()

        client_ip = get_client_ip(request, self.trust_proxy_headers, self.trusted_proxies)
        endpoint = request.url.path
        key = f"{client_ip}:{endpoint.lower()}"
        now = self.clock()

        decision = await self.store.update(
            key,
            lambda info: register_attempt(info, now, self.policy),
            self.policy.state_ttl,
        )

        if decision.is_limited:
            logger.warning(f"Rate limit exceeded for IP: {client_ip} on endpoint: {endpoint}")

            return JSONResponse(
                status_code=429,
                content={
                    "error": "Too many requests",
                    "message": f"Rate limit exceeded. Please try again in {self.lockout_minutes} minutes.",
                    "retryAfter": decision.retry_after,
                },
                headers={"Retry-After": str(decision.retry_after)},
            )

        logger.debug(f"Request allowed for {client_ip} on {endpoint} (attempt {decision.attempts})")
        return await call_next(request)
