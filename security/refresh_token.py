"""
Refresh token lifecycle with rotation on use.
Each refresh secret can be exchanged exactly once: the old token is revoked with a
conditional update before the new pair is minted, so a replayed or concurrently
presented secret is rejected.
"""

import logfire

from enum import Enum
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel

from schema.security import IssuedTokens, RefreshTokenRecord
from schema.users import UserInDB, UserOut
from security.helpers import hash_refresh_secret
from security.tokens import TokenService, utc_now
from services.refresh_token_repository import RefreshTokenRepository
from services.user_repository import UserRepository
from utils.settings import AuthSettings


class RefreshFailure(str, Enum):
    """Reasons a refresh secret is refused."""

    MISSING = "missing"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    EXPIRED = "expired"
    USER_INVALID = "user_invalid"
    ALREADY_USED = "already_used"


FAILURE_MESSAGES = {
    RefreshFailure.MISSING: "Refresh token is required",
    RefreshFailure.NOT_FOUND: "Refresh token is invalid",
    RefreshFailure.REVOKED: "Refresh token has been revoked",
    RefreshFailure.EXPIRED: "Refresh token has expired",
    RefreshFailure.USER_INVALID: "User account is not valid",
    RefreshFailure.ALREADY_USED: "Refresh token has already been used",
}


class RotationResult(BaseModel):
    """Outcome of exchanging a refresh secret."""

    tokens: Optional[IssuedTokens] = None
    failure: Optional[RefreshFailure] = None

    @property
    def succeeded(self) -> bool:
        return self.tokens is not None

    @property
    def message(self) -> str:
        return FAILURE_MESSAGES[self.failure] if self.failure else "Token refreshed"


class RefreshTokenService:
    """Service for issuing, rotating and revoking refresh tokens."""

    def __init__(
        self,
        token_service: TokenService,
        refresh_tokens: RefreshTokenRepository,
        users: UserRepository,
        settings: AuthSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.token_service = token_service
        self.refresh_tokens = refresh_tokens
        self.users = users
        self.settings = settings
        self.clock = clock

    @property
    def refresh_token_lifetime(self) -> timedelta:
        return timedelta(days=self.settings.refresh_token_expiration_days)

    async def issue(
        self,
        user: UserInDB,
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedTokens:
        """Mint an access token and a new refresh secret for `user`.

        Args:
            user (UserInDB): The token owner.
            client_ip (Optional[str]): Caller address recorded with the token.
            user_agent (Optional[str]): Caller user agent recorded with the token.

        Returns:
            IssuedTokens: The new pair. The raw refresh secret is not stored.
        """
        now = self.clock()
        access_token = self.token_service.generate_access_token(user)
        secret = self.token_service.generate_refresh_secret()

        record = await self.refresh_tokens.add(
            RefreshTokenRecord(
                user_id=user.user_id,
                token_hash=hash_refresh_secret(secret),
                issued_at=now,
                expires_at=now + self.refresh_token_lifetime,
                client_ip=client_ip,
                user_agent=user_agent,
            )
        )
        await self._enforce_token_limit(user.user_id, now)

        return IssuedTokens(
            access_token=access_token,
            refresh_token=secret,
            access_token_expires_at=now + self.token_service.access_token_lifetime,
            refresh_token_expires_at=record.expires_at,
            user=UserOut.from_user(user),
        )

    async def rotate(
        self,
        secret: Optional[str],
        client_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RotationResult:
        """Exchange a refresh secret for a new token pair.

        Args:
            secret (Optional[str]): The raw refresh secret presented by the client.
            client_ip (Optional[str]): Caller address, defaults to the one on the old token.
            user_agent (Optional[str]): Caller user agent, defaults to the one on the old token.

        Returns:
            RotationResult: The new pair, or why the secret was refused.
        """
        if not secret:
            return RotationResult(failure=RefreshFailure.MISSING)

        now = self.clock()
        stored = await self.refresh_tokens.get_by_token_hash(hash_refresh_secret(secret))

        if stored is None:
            logfire.warning("Refresh attempted with an unknown token")
            return RotationResult(failure=RefreshFailure.NOT_FOUND)

        if stored.is_revoked:
            logfire.warning(
                f"Revoked refresh token {stored.token_id} presented for user {stored.user_id}, possible replay"
            )
            return RotationResult(failure=RefreshFailure.REVOKED)

        if stored.is_expired(now):
            logfire.info(f"Expired refresh token {stored.token_id} presented for user {stored.user_id}")
            return RotationResult(failure=RefreshFailure.EXPIRED)

        user = await self.users.get_by_id(stored.user_id)
        if user is None or not user.is_active:
            logfire.warning(f"User {stored.user_id} not found or inactive for token refresh")
            return RotationResult(failure=RefreshFailure.USER_INVALID)

        # Only the caller that flips the token to revoked may mint a new pair
        if not await self.refresh_tokens.revoke(stored.token_id, "Token refreshed", now):
            logfire.warning(f"Refresh token {stored.token_id} was already exchanged")
            return RotationResult(failure=RefreshFailure.ALREADY_USED)

        tokens = await self.issue(
            user,
            client_ip=client_ip or stored.client_ip,
            user_agent=user_agent or stored.user_agent,
        )
        logfire.info(f"Tokens refreshed for user {user.user_id}")
        return RotationResult(tokens=tokens)

    async def revoke(self, secret: str, reason: str = "Token revoked by user") -> bool:
        """Revoke the token behind `secret`. Returns False if it is unknown or already revoked."""
        if not secret:
            return False

        stored = await self.refresh_tokens.get_by_token_hash(hash_refresh_secret(secret))
        if stored is None:
            return False

        revoked = await self.refresh_tokens.revoke(stored.token_id, reason, self.clock())
        if revoked:
            logfire.info(f"Refresh token {stored.token_id} revoked for user {stored.user_id}")
        return revoked

    async def revoke_all(self, user_id: int, reason: str = "User logout") -> int:
        """Revoke every refresh token of a user."""
        count = await self.refresh_tokens.revoke_all_by_user_id(user_id, reason, self.clock())
        logfire.info(f"Revoked {count} refresh tokens for user {user_id}")
        return count

    async def cleanup_expired(self) -> int:
        """Delete expired tokens, meant to be called by retention jobs."""
        return await self.refresh_tokens.cleanup_expired(self.clock())

    async def _enforce_token_limit(self, user_id: int, now: datetime) -> None:
        active = await self.refresh_tokens.get_active_by_user_id(user_id, now)
        excess = len(active) - self.settings.max_active_refresh_tokens

        for record in active[:max(0, excess)]:
            await self.refresh_tokens.revoke(record.token_id, "Token limit reached", now)
