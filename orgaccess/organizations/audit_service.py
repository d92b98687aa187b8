"""
Audit logging service for organization activities.

This module provides:
- Append-only audit logging of every mutating action
- Query capabilities for audit logs
- Sanitization of sensitive metadata

Notes:
- Audit entries are never updated or deleted
- Logging is fail-safe: a failed write is logged and reported as ``None``
  so the caller can surface a warning without rolling back its mutation
- All timestamps are in UTC
"""

import logging
import warnings
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Union

from orgaccess.organizations.exceptions import AuditWriteWarning
from orgaccess.storage.document_store import DocumentStore
from orgaccess.types.organization import (
    AuditAction,
    AuditCategory,
    AuditLogEntry,
    AuditLogQuery,
    AuditSeverity,
    ResourceType,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================


AUDIT_COLLECTION = "audit_logs"

# Fields that should never be logged (even in metadata)
SENSITIVE_FIELDS = frozenset({
    "password",
    "secret",
    "token",
    "token_hash",
    "api_key",
    "private_key",
})

# Maximum size for logged values (truncate if larger)
MAX_VALUE_SIZE = 10000

# Maximum age for audit log queries
MAX_QUERY_DAYS = 365


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Audit Service
# =============================================================================


class AuditService:
    """
    Service for managing audit logs.

    Provides methods for logging actions and querying the audit trail.
    Audit logging failures never break the main application flow.
    """

    def __init__(self, db_client: DocumentStore, clock: Callable[[], datetime] = utc_now):
        """
        Initialize the audit service.

        Args:
            db_client: Document store the entries are appended to.
            clock: Source of the current UTC time.
        """
        self.db = db_client
        self.clock = clock

    async def log(
        self,
        actor_id: str,
        actor_email: Optional[str],
        organization_id: Optional[str],
        category: AuditCategory,
        action: AuditAction,
        resource_type: Union[ResourceType, str],
        description: str,
        resource_id: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.INFO,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Append an audit event.

        Exceptions are caught and logged but not raised.

        Args:
            actor_id: User who performed the action (``system`` for sweeps).
            actor_email: Email of the acting user.
            organization_id: Organization context.
            category: Audit category.
            action: The action performed.
            resource_type: Type of resource affected.
            description: Human-readable summary.
            resource_id: ID of the specific resource.
            severity: Entry severity.
            metadata: Additional contextual data (sanitized before storage).

        Returns:
            The audit log entry ID, or None if logging failed.
        """
        resource_type_str = (
            resource_type.value
            if isinstance(resource_type, ResourceType)
            else str(resource_type)
        )
        try:
            entry = AuditLogEntry(
                id=self.db.new_id(),
                actor_id=actor_id,
                actor_email=actor_email,
                organization_id=organization_id,
                category=category,
                action=action,
                resource_type=resource_type_str,
                resource_id=resource_id,
                description=description,
                severity=severity,
                metadata=self._sanitize_data(metadata) or {},
                timestamp=self.clock(),
            )

            batch = self.db.batch()
            batch.create(AUDIT_COLLECTION, entry.id, entry.model_dump(mode="json"))
            await batch.commit()

            logger.debug(
                f"Audit logged: {action.value} on {resource_type_str}",
                extra={
                    "audit_id": entry.id,
                    "category": category.value,
                    "organization_id": organization_id,
                },
            )
            return entry.id

        except Exception as e:
            logger.error(
                f"Failed to log audit event: {e}",
                extra={
                    "action": str(action),
                    "resource_type": resource_type_str,
                    "error": str(e),
                },
            )
            return None

    async def record(self, **kwargs: Any) -> Optional[str]:
        """
        Log an event on behalf of a service and warn when it was not written.

        Accepts the same keyword arguments as ``log``. A failed write emits an
        ``AuditWriteWarning`` so the primary mutation still succeeds.
        """
        entry_id = await self.log(**kwargs)
        if entry_id is None:
            warnings.warn(
                f"Audit entry not written for {kwargs.get('category')} "
                f"{kwargs.get('action')} on {kwargs.get('resource_id')}",
                AuditWriteWarning,
                stacklevel=2,
            )
        return entry_id

    async def query(
        self,
        query: AuditLogQuery,
    ) -> tuple[List[AuditLogEntry], int]:
        """
        Query audit logs with filtering.

        Args:
            query: Query parameters for filtering.

        Returns:
            Tuple of (log entries newest first, total matching count).
        """
        filters: Dict[str, Any] = {}
        if query.organization_id:
            filters["organization_id"] = query.organization_id
        if query.actor_id:
            filters["actor_id"] = query.actor_id
        if query.category:
            filters["category"] = query.category.value
        if query.action:
            filters["action"] = query.action.value
        if query.resource_type:
            filters["resource_type"] = query.resource_type
        if query.resource_id:
            filters["resource_id"] = query.resource_id
        if query.severity:
            filters["severity"] = query.severity.value

        rows = await self.db.find(AUDIT_COLLECTION, filters)
        entries = [self._map_entry(row) for row in rows]

        start_date = query.start_date or (self.clock() - timedelta(days=MAX_QUERY_DAYS))
        entries = [e for e in entries if e.timestamp >= start_date]
        if query.end_date:
            entries = [e for e in entries if e.timestamp <= query.end_date]

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        total = len(entries)

        return entries[query.offset:query.offset + query.limit], total

    async def get_organization_activity(
        self,
        organization_id: str,
        days: int = 30,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """
        Get recent activity for an organization.

        Args:
            organization_id: The organization ID.
            days: Number of days to look back.
            limit: Maximum entries to return.

        Returns:
            List of recent audit log entries.
        """
        start_date = self.clock() - timedelta(days=min(days, MAX_QUERY_DAYS))

        entries, _ = await self.query(
            AuditLogQuery(
                organization_id=organization_id,
                start_date=start_date,
                limit=min(limit, 500),
            )
        )

        return entries

    async def get_resource_history(
        self,
        resource_type: Union[ResourceType, str],
        resource_id: str,
        limit: int = 50,
    ) -> List[AuditLogEntry]:
        """
        Get the audit history for a specific resource.

        Args:
            resource_type: Type of resource.
            resource_id: ID of the resource.
            limit: Maximum entries to return.

        Returns:
            List of audit log entries for the resource.
        """
        resource_type_str = (
            resource_type.value
            if isinstance(resource_type, ResourceType)
            else str(resource_type)
        )

        entries, _ = await self.query(
            AuditLogQuery(
                resource_type=resource_type_str,
                resource_id=resource_id,
                limit=min(limit, 200),
            )
        )

        return entries

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _sanitize_data(
        self,
        data: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """
        Sanitize data by removing sensitive fields and truncating large values.

        Args:
            data: The data to sanitize.

        Returns:
            Sanitized data dictionary.
        """
        if data is None:
            return None

        sanitized: Dict[str, Any] = {}

        for key, value in data.items():
            key_lower = key.lower()
            if any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS):
                sanitized[key] = "[REDACTED]"
                continue

            if isinstance(value, dict):
                sanitized[key] = self._sanitize_data(value)
            elif isinstance(value, (list, tuple, set)):
                sanitized[key] = [
                    self._sanitize_data(item) if isinstance(item, dict) else item
                    for item in list(value)[:100]  # Limit list size
                ]
            elif isinstance(value, str):
                if len(value) > MAX_VALUE_SIZE:
                    sanitized[key] = value[:MAX_VALUE_SIZE] + "...[truncated]"
                else:
                    sanitized[key] = value
            else:
                sanitized[key] = value

        return sanitized

    def _map_entry(self, data: Dict[str, Any]) -> AuditLogEntry:
        """Map stored document to AuditLogEntry model."""
        return AuditLogEntry.model_validate(data)
