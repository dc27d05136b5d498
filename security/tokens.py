"""Issuing and validating signed access tokens.

Validation methods never raise. Malformed or tampered tokens are reported
through `TokenValidationResult`, booleans or `None` so that middleware can branch
on them without exception based control flow.
"""

import secrets
import uuid
import logging

from datetime import datetime, timedelta, timezone
from typing import Callable

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWSError, JWTError

from pydantic import ValidationError

from schema.security import AccessTokenClaims, TokenValidationError, TokenValidationResult
from schema.users import UserInDB
from utils.settings import JwtSettings

logger = logging.getLogger(__name__)

# Number of random bytes behind a refresh secret, 43 characters once encoded
REFRESH_SECRET_BYTES = 32


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Service for generating and validating JWT access tokens."""

    def __init__(self, settings: JwtSettings, clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.clock = clock

    @property
    def access_token_lifetime(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_expiration_minutes)

    def generate_access_token(self, user: UserInDB) -> str:
        """Creates a signed access token for `user`.

        Args:
            user (UserInDB): The user the token is issued to.

        Returns:
            str: The encoded JWT.
        """
        now = self.clock()
        expire = now + self.access_token_lifetime

        claims = AccessTokenClaims(
            sub=str(user.user_id),
            email=str(user.email),
            name=user.username,
            given_name=user.first_name,
            family_name=user.last_name,
            roles=list(user.roles),
            jti=str(uuid.uuid4()),
            iat=int(now.timestamp()),
            exp=int(expire.timestamp()),
            iss=self.settings.issuer,
            aud=self.settings.audience,
        )

        token = jwt.encode(
            claims.model_dump(), self.settings.secret_key, algorithm=self.settings.algorithm
        )
        logger.info("Access token generated for user %s", user.user_id)
        return token

    def generate_refresh_secret(self) -> str:
        """Generate the opaque refresh secret handed to the client.

        Returns:
            str: A URL safe random string. Only its hash is ever persisted.
        """
        return secrets.token_urlsafe(REFRESH_SECRET_BYTES)

    def validate_token(self, token: str) -> TokenValidationResult:
        """Validate signature, issuer, audience and expiry of `token`.

        Args:
            token (str): The encoded JWT.

        Returns:
            TokenValidationResult: The claims on success, otherwise the reason of failure.
        """
        if not token:
            return TokenValidationResult.failure(TokenValidationError.MALFORMED)

        try:
            payload = jwt.decode(
                token,
                self.settings.secret_key,
                algorithms=[self.settings.algorithm],
                audience=self.settings.audience,
                issuer=self.settings.issuer,
                options={"leeway": self.settings.clock_skew_seconds, "require_exp": True},
            )
            claims = AccessTokenClaims(**payload)
        except ExpiredSignatureError:
            return TokenValidationResult.failure(TokenValidationError.EXPIRED)
        except JWTClaimsError as e:
            logger.warning("Access token rejected due to invalid claims: %s", e)
            return TokenValidationResult.failure(TokenValidationError.INVALID_CLAIMS)
        except (JWSError, JWTError) as e:
            # JWTError is also raised for undecodable segments, tell them apart
            if self._is_structurally_valid(token):
                logger.warning("Access token rejected due to invalid signature")
                return TokenValidationResult.failure(TokenValidationError.INVALID_SIGNATURE)
            logger.debug("Malformed access token: %s", e)
            return TokenValidationResult.failure(TokenValidationError.MALFORMED)
        except ValidationError:
            return TokenValidationResult.failure(TokenValidationError.INVALID_CLAIMS)
        except Exception as e:
            logger.error("Unexpected error validating access token: %s", e)
            return TokenValidationResult.failure(TokenValidationError.MALFORMED)

        return TokenValidationResult.success(claims)

    def is_token_valid(self, token: str) -> bool:
        return self.validate_token(token).is_valid

    def is_token_expired(self, token: str) -> bool:
        """Check the expiry of `token` without verifying its signature.

        A token whose expiry cannot be read is treated as expired. The configured
        clock skew applies here as it does in `validate_token`.
        """
        expiration = self.get_token_expiration(token)
        if expiration is None:
            return True
        leeway = timedelta(seconds=self.settings.clock_skew_seconds)
        return expiration + leeway < self.clock()

    def get_token_expiration(self, token: str) -> datetime | None:
        claims = self._get_unverified_claims(token)
        if claims is None:
            return None
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return None
        return datetime.fromtimestamp(exp, tz=timezone.utc)

    def get_user_id_from_token(self, token: str) -> int | None:
        """Extract the subject claim as a user ID, `None` if absent or malformed."""
        claims = self._get_unverified_claims(token)
        if claims is None:
            return None
        try:
            return int(claims.get("sub"))
        except (TypeError, ValueError):
            return None

    def _get_unverified_claims(self, token: str) -> dict | None:
        if not token:
            return None
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError:
            return None
        return claims if isinstance(claims, dict) else None

    def _is_structurally_valid(self, token: str) -> bool:
        return self._get_unverified_claims(token) is not None
