"""Defines schema of requests, responses and records related to security"""

from enum import Enum
from datetime import datetime

from pydantic import BaseModel, Field

from typing import Annotated, List, Optional

from schema.users import UserOut


class AccessTokenClaims(BaseModel):
    """Claims carried by a signed access token."""

    sub: str  # User ID as a string
    email: Annotated[str, Field(default="")]
    name: Annotated[str, Field(default="")]  # Username
    given_name: Annotated[str, Field(default="")]
    family_name: Annotated[str, Field(default="")]
    roles: Annotated[List[str], Field(default=[])]
    jti: Annotated[str, Field(default="")]
    iat: Optional[int] = None
    exp: int
    iss: Optional[str] = None
    aud: Optional[str] = None

    @property
    def user_id(self) -> int | None:
        try:
            return int(self.sub)
        except (TypeError, ValueError):
            return None


class TokenValidationError(str, Enum):
    """Reasons an access token can be rejected."""

    MALFORMED = "malformed"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    INVALID_CLAIMS = "invalid_claims"


class TokenValidationResult(BaseModel):
    """Outcome of validating an access token. Validation never raises."""

    is_valid: bool
    claims: Optional[AccessTokenClaims] = None
    error: Optional[TokenValidationError] = None

    @classmethod
    def success(cls, claims: AccessTokenClaims) -> "TokenValidationResult":
        return cls(is_valid=True, claims=claims)

    @classmethod
    def failure(cls, error: TokenValidationError) -> "TokenValidationResult":
        return cls(is_valid=False, error=error)

    @property
    def is_expired(self) -> bool:
        return self.error == TokenValidationError.EXPIRED


class RefreshTokenRecord(BaseModel):
    """A persisted refresh token. Only the hash of the secret is stored."""

    token_id: Annotated[int, Field(default=0)]  # Assigned by the repository on insert
    user_id: int
    token_hash: str
    issued_at: datetime
    expires_at: datetime
    is_revoked: Annotated[bool, Field(default=False)]
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_expired(now)


class IssuedTokens(BaseModel):
    """A freshly minted access token and refresh secret pair."""

    access_token: str
    refresh_token: str  # Raw secret, handed to the client only
    access_token_expires_at: datetime
    refresh_token_expires_at: datetime
    user: UserOut


class AuthResult(BaseModel):
    """Model representing the response of a successful login or refresh."""

    access_token: Annotated[str, Field(serialization_alias="accessToken")]
    refresh_token: Annotated[str, Field(serialization_alias="refreshToken")]
    token_type: Annotated[str, Field(default="Bearer", serialization_alias="tokenType")]
    expires_in: Annotated[int, Field(serialization_alias="expiresIn")]  # Access token expiry in seconds
    expires_at: Annotated[datetime, Field(serialization_alias="expiresAt")]
    user: UserOut


class RefreshTokenRequest(BaseModel):
    """Model for refresh and logout requests."""

    refresh_token: Annotated[
        Optional[str], Field(default=None, alias="refreshToken")
    ]  # May be omitted when the refresh cookie is used

    model_config = {"populate_by_name": True}


class TokenValidationResponse(BaseModel):
    """Response of the token validation endpoint."""

    valid: bool
