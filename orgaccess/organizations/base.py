"""
Shared plumbing for the organization services.

Holds the store and audit handles, the clock, and the lookups every
service repeats (organizations and memberships).
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from orgaccess.organizations.audit_service import AuditService, utc_now
from orgaccess.organizations.constants import (
    MEMBERSHIPS_COLLECTION,
    ORGANIZATIONS_COLLECTION,
    membership_id,
)
from orgaccess.organizations.exceptions import (
    MembershipNotFoundError,
    OrganizationNotFoundError,
)
from orgaccess.storage.document_store import DocumentStore
from orgaccess.types.organization import Membership, MembershipStatus, Organization

logger = logging.getLogger(__name__)


def to_document(model: BaseModel) -> Dict[str, Any]:
    """Serialize a model to the JSON-compatible form stored in documents."""
    return model.model_dump(mode="json")


def ts(value: datetime) -> str:
    """Serialize a timestamp for a partial update."""
    return value.isoformat()


class ServiceBase:
    """Base class for services operating on the document store."""

    def __init__(
        self,
        db_client: DocumentStore,
        audit_service: Optional[AuditService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db_client
        self.audit = audit_service
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock()

    async def _audit(self, **kwargs: Any) -> Optional[str]:
        """Append an audit entry; failures surface as AuditWriteWarning."""
        if self.audit:
            return await self.audit.record(**kwargs)
        return None

    # =========================================================================
    # Organization lookups
    # =========================================================================

    async def _get_organization(self, organization_id: str) -> Optional[Organization]:
        data = await self.db.get(ORGANIZATIONS_COLLECTION, organization_id)
        return self._map_organization(data) if data else None

    async def _require_organization(self, organization_id: str) -> Organization:
        organization = await self._get_organization(organization_id)
        if organization is None:
            raise OrganizationNotFoundError(organization_id)
        return organization

    # =========================================================================
    # Membership lookups
    # =========================================================================

    async def _get_membership_record(
        self,
        user_id: str,
        organization_id: str,
    ) -> Optional[Membership]:
        """Membership for the pair regardless of status."""
        data = await self.db.get(MEMBERSHIPS_COLLECTION, membership_id(organization_id, user_id))
        return self._map_membership(data) if data else None

    async def _get_active_membership(
        self,
        user_id: str,
        organization_id: str,
    ) -> Optional[Membership]:
        membership = await self._get_membership_record(user_id, organization_id)
        if membership is None or not membership.is_active:
            return None
        return membership

    async def _require_active_membership(
        self,
        user_id: str,
        organization_id: str,
    ) -> Membership:
        membership = await self._get_active_membership(user_id, organization_id)
        if membership is None:
            raise MembershipNotFoundError(user_id=user_id, organization_id=organization_id)
        return membership

    async def _find_memberships(self, **filters: Any) -> List[Membership]:
        rows = await self.db.find(MEMBERSHIPS_COLLECTION, filters)
        memberships = [self._map_membership(row) for row in rows]
        memberships.sort(key=lambda m: (m.joined_at, m.id))
        return memberships

    async def _active_memberships_of_user(self, user_id: str) -> List[Membership]:
        return await self._find_memberships(
            user_id=user_id,
            status=MembershipStatus.ACTIVE.value,
        )

    async def _active_memberships_of_organization(self, organization_id: str) -> List[Membership]:
        return await self._find_memberships(
            organization_id=organization_id,
            status=MembershipStatus.ACTIVE.value,
        )

    # =========================================================================
    # Mapping
    # =========================================================================

    def _map_organization(self, data: Dict[str, Any]) -> Organization:
        return Organization.model_validate(data)

    def _map_membership(self, data: Dict[str, Any]) -> Membership:
        return Membership.model_validate(data)
