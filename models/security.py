"""
Security models for refresh tokens and audit logs.
"""
from datetime import datetime, timezone
from typing import Annotated, Optional

import pymongo
from pydantic import Field
from beanie import Document, Indexed

from schema.audit import AuditCategory, AuditSeverity, ApiRequestDetails, ApiResponseDetails, AuditEntry
from schema.security import RefreshTokenRecord


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # MongoDB stores UTC without an offset, clients without tz_aware read naive values
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RefreshToken(Document):
    """Persisted refresh token. Only the hash of the secret is stored."""

    token_id: Annotated[int, Indexed(unique=True)]
    user_id: Annotated[int, Indexed()]
    token_hash: Annotated[str, Indexed(unique=True)]
    issued_at: datetime
    expires_at: datetime
    is_revoked: Annotated[bool, Field(default=False)]
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    def to_record(self) -> RefreshTokenRecord:
        record = self.model_dump(exclude={"id", "revision_id"})
        for field in ("issued_at", "expires_at", "revoked_at"):
            record[field] = _as_utc(record[field])
        return RefreshTokenRecord(**record)

    class Settings:
        name = "refresh_tokens"
        indexes = [[("user_id", pymongo.ASCENDING), ("issued_at", pymongo.DESCENDING)]]


class AuditLog(Document):
    """Persisted audit entry."""

    action: str
    details: str
    category: AuditCategory
    severity: AuditSeverity
    entity_type: str
    user_identifier: Optional[str] = None
    timestamp: Annotated[datetime, Indexed()]
    request: Optional[ApiRequestDetails] = None
    response: Optional[ApiResponseDetails] = None

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditLog":
        return cls(**entry.model_dump())

    class Settings:
        name = "audit_logs"


class Counter(Document):
    """Named sequence used to hand out integer identifiers."""

    name: Annotated[str, Indexed(unique=True)]
    value: Annotated[int, Field(default=0)]

    class Settings:
        name = "counters"
