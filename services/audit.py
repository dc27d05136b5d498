"""Audit logging sinks used by the audit middleware."""

import logfire

from abc import ABC, abstractmethod
from typing import Optional

from models.security import AuditLog
from schema.audit import (
    AuditCategory,
    AuditEntry,
    AuditSeverity,
    ApiRequestDetails,
    ApiResponseDetails,
)


class AuditService(ABC):
    """Receives audit entries. Implementations only need to persist `AuditEntry` objects."""

    @abstractmethod
    async def log(self, entry: AuditEntry) -> None:
        ...

    async def log_security_event(
        self,
        user_identifier: str,
        action: str,
        details: str,
        severity: AuditSeverity = AuditSeverity.HIGH,
        request: Optional[ApiRequestDetails] = None,
        response: Optional[ApiResponseDetails] = None,
    ) -> AuditEntry:
        """Record a security relevant event."""
        entry = AuditEntry(
            action=action,
            details=details,
            category=AuditCategory.SECURITY,
            severity=severity,
            entity_type="Security",
            user_identifier=user_identifier,
            request=request,
            response=response,
        )
        await self.log(entry)
        return entry

    async def log_system_action(
        self,
        action: str,
        details: str,
        entity_type: str = "System",
        user_identifier: Optional[str] = None,
        request: Optional[ApiRequestDetails] = None,
        response: Optional[ApiResponseDetails] = None,
    ) -> AuditEntry:
        """Record a system generated action."""
        entry = AuditEntry(
            action=action,
            details=details,
            category=AuditCategory.SYSTEM,
            severity=AuditSeverity.LOW,
            entity_type=entity_type,
            user_identifier=user_identifier,
            request=request,
            response=response,
        )
        await self.log(entry)
        return entry


class LogfireAuditService(AuditService):
    """Emits audit entries as structured logfire records."""

    async def log(self, entry: AuditEntry) -> None:
        attributes = entry.model_dump(mode="json", exclude={"details"})

        if entry.category == AuditCategory.SECURITY:
            logfire.warning("audit {details}", details=entry.details, **attributes)
        else:
            logfire.info("audit {details}", details=entry.details, **attributes)


class BeanieAuditService(LogfireAuditService):
    """Persists audit entries to MongoDB in addition to emitting them."""

    async def log(self, entry: AuditEntry) -> None:
        await AuditLog.from_entry(entry).insert()
        await super().log(entry)
