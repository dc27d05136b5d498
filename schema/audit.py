"""Typed audit records produced by the audit middleware"""

from enum import Enum
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from typing import Annotated, Dict, Optional


class AuditSeverity(str, Enum):
    """Severity of an audit entry."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditCategory(str, Enum):
    """Which audit path produced the entry."""

    SECURITY = "security"
    SYSTEM = "system"


class ApiRequestDetails(BaseModel):
    """Request side of an audited API call."""

    method: str
    path: str
    query_string: Annotated[str, Field(default="")]
    request_body: Optional[str] = None
    headers: Annotated[Dict[str, str], Field(default={})]  # Sensitive values already redacted
    ip_address: Optional[str] = None
    user_agent: Annotated[str, Field(default="")]


class ApiResponseDetails(BaseModel):
    """Response side of an audited API call."""

    status_code: int
    content_type: Optional[str] = None
    response_body: Optional[str] = None
    duration_ms: float


class AuditEntry(BaseModel):
    """A single audit log record."""

    action: str  # e.g. API_POST, MIDDLEWARE_ERROR
    details: str
    category: AuditCategory
    severity: Annotated[AuditSeverity, Field(default=AuditSeverity.LOW)]
    entity_type: Annotated[str, Field(default="System")]
    user_identifier: Optional[str] = None
    timestamp: Annotated[datetime, Field(default_factory=lambda: datetime.now(timezone.utc))]
    request: Optional[ApiRequestDetails] = None
    response: Optional[ApiResponseDetails] = None
