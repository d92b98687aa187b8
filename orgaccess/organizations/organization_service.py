"""
Organization service for hierarchy and lifecycle management.

This module provides:
- Organization creation (root or child) with its owner membership
- Partial updates with immutable-field protection
- Deletion with membership cleanup and user pointer repair
- Ownership transfer
- Organization queries
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from orgaccess.organizations.audit_service import AuditService, utc_now
from orgaccess.organizations.base import ServiceBase, to_document, ts
from orgaccess.organizations.constants import (
    IMMUTABLE_ORGANIZATION_FIELDS,
    MEMBERSHIPS_COLLECTION,
    ORGANIZATIONS_COLLECTION,
    settings_for_type,
)
from orgaccess.organizations.exceptions import (
    ImmutableFieldError,
    InvalidPatchError,
    OrganizationHasChildrenError,
    SuborganizationLimitExceededError,
    SuborganizationsNotAllowedError,
    UserNotFoundError,
)
from orgaccess.organizations.membership_service import MembershipService
from orgaccess.organizations.rbac import OWNER_ROLE_ID
from orgaccess.organizations.user_directory import UNCHANGED, UserDirectory
from orgaccess.storage.document_store import DocumentStore, WriteBatch
from orgaccess.types.organization import (
    AuditAction,
    AuditCategory,
    AuditSeverity,
    MembershipType,
    Organization,
    OrganizationType,
    OrganizationUpdate,
    ResourceType,
    User,
)

logger = logging.getLogger(__name__)

SUBORGANIZATION_TYPES = frozenset({OrganizationType.ENTERPRISE, OrganizationType.AGENCY})


class OrganizationService(ServiceBase):
    """
    Service for organization management operations.

    Handles organization creation, updates, deletion, ownership transfer,
    and queries.
    """

    def __init__(
        self,
        db_client: DocumentStore,
        user_directory: UserDirectory,
        membership_service: MembershipService,
        audit_service: Optional[AuditService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the organization service.

        Args:
            db_client: Document store.
            user_directory: Directory holding the users' organization pointers.
            membership_service: Stages owner memberships and ownership swaps.
            audit_service: Optional audit service for logging actions.
            clock: Source of the current UTC time.
        """
        super().__init__(db_client, audit_service, clock)
        self.users = user_directory
        self.memberships = membership_service

    # =========================================================================
    # Organization CRUD
    # =========================================================================

    async def create_organization(
        self,
        name: str,
        owner_id: str,
        owner_email: Optional[str],
        org_type: OrganizationType = OrganizationType.BASIC,
        parent_id: Optional[str] = None,
    ) -> Organization:
        """
        Create a new organization owned by ``owner_id``.

        The organization, the owner membership (default, with the
        Organization Owner role) and the owner's user pointers are written
        in one batch.

        Args:
            name: Organization name.
            owner_id: User who will own the organization.
            owner_email: Email of the owner (for auditing).
            org_type: Organization type; selects the settings row.
            parent_id: Parent organization for a child organization.

        Returns:
            Created Organization.

        Raises:
            OrganizationNotFoundError: If the parent does not exist.
            SuborganizationsNotAllowedError: If the parent forbids children.
            SuborganizationLimitExceededError: If the parent is full.
            UserNotFoundError: If the owner does not exist.
        """
        parent = await self._require_organization(parent_id) if parent_id else None
        owner = await self.users.get_user_by_id(owner_id)
        if owner is None:
            raise UserNotFoundError(owner_id)

        batch = self.db.batch()
        organization = await self.stage_create_organization(
            batch, name, owner, org_type, parent, self._now()
        )
        await batch.commit()

        await self._audit(
            actor_id=owner_id,
            actor_email=owner_email,
            organization_id=organization.id,
            category=AuditCategory.ORGANIZATION,
            action=AuditAction.CREATE,
            resource_type=ResourceType.ORGANIZATION,
            resource_id=organization.id,
            description=f"Created organization: {name}",
            metadata={
                "name": name,
                "type": org_type.value,
                "parent_id": parent_id,
            },
        )

        logger.info(f"Organization created: {organization.id} by user {owner_id}")
        return await self._require_organization(organization.id)

    async def stage_create_organization(
        self,
        batch: WriteBatch,
        name: str,
        owner: User,
        org_type: OrganizationType,
        parent: Optional[Organization],
        now: datetime,
    ) -> Organization:
        """
        Stage an organization and its owner membership into ``batch``.

        Raises:
            SuborganizationsNotAllowedError: If the parent forbids children.
            SuborganizationLimitExceededError: If the parent is full.
        """
        if parent is not None:
            await self._check_can_add_child(parent)

        org_id = self.db.new_id()
        organization = Organization(
            id=org_id,
            name=name,
            type=org_type,
            owner_id=owner.id,
            parent_id=parent.id if parent else None,
            root_id=parent.root_id if parent else org_id,
            path=(parent.path if parent else []) + [org_id],
            settings=settings_for_type(org_type),
            created_at=now,
            updated_at=now,
        )
        batch.create(ORGANIZATIONS_COLLECTION, org_id, to_document(organization))

        await self.memberships.stage_add_membership(
            batch,
            owner,
            organization,
            [OWNER_ROLE_ID],
            MembershipType.OWNER,
            now,
            make_default=True,
        )
        return organization

    async def get_organization_by_id(self, org_id: str) -> Optional[Organization]:
        return await self._get_organization(org_id)

    async def update_organization(
        self,
        org_id: str,
        patch: Dict[str, Any],
        actor_id: str,
        actor_email: Optional[str],
    ) -> Organization:
        """
        Apply a partial update to an organization.

        Args:
            org_id: Organization ID.
            patch: Fields to change (name, status, settings).
            actor_id: User performing the update.
            actor_email: Email of the acting user.

        Returns:
            Updated Organization.

        Raises:
            OrganizationNotFoundError: If the organization does not exist.
            ImmutableFieldError: If the patch touches a fixed field.
            InvalidPatchError: If the patch does not validate.
        """
        immutable = set(patch) & IMMUTABLE_ORGANIZATION_FIELDS
        if immutable:
            raise ImmutableFieldError(immutable)

        try:
            update = OrganizationUpdate.model_validate(patch)
        except ValidationError as e:
            raise InvalidPatchError(str(e)) from e

        organization = await self._require_organization(org_id)

        if (
            update.settings is not None
            and update.settings.allow_suborganizations
            and organization.type not in SUBORGANIZATION_TYPES
        ):
            raise InvalidPatchError(
                f"{organization.type.value} organizations cannot allow suborganizations"
            )

        fields = update.model_dump(mode="json", exclude_unset=True, exclude_none=True)
        if not fields:
            return organization

        before = to_document(organization)
        fields["updated_at"] = ts(self._now())

        batch = self.db.batch()
        batch.update(
            ORGANIZATIONS_COLLECTION,
            org_id,
            fields,
            expected_version=organization.version,
        )
        await batch.commit()

        changed = [k for k in fields if k != "updated_at"]
        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=org_id,
            category=AuditCategory.ORGANIZATION,
            action=AuditAction.UPDATE,
            resource_type=ResourceType.ORGANIZATION,
            resource_id=org_id,
            description=f"Updated organization: {', '.join(changed)}",
            metadata={
                "before": {k: before.get(k) for k in changed},
                "after": {k: fields[k] for k in changed},
            },
        )

        logger.info(f"Organization updated: {org_id}")
        return await self._require_organization(org_id)

    async def delete_organization(
        self,
        org_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> bool:
        """
        Delete an organization and all of its memberships.

        Every former member's user record drops the organization; members
        whose default it was get another active membership as default.

        Raises:
            OrganizationNotFoundError: If the organization does not exist.
            OrganizationHasChildrenError: If child organizations reference it.
        """
        organization = await self._require_organization(org_id)

        children = await self.db.find(ORGANIZATIONS_COLLECTION, {"parent_id": org_id})
        if children:
            raise OrganizationHasChildrenError(org_id, len(children))

        memberships = await self._find_memberships(organization_id=org_id)

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=org_id,
            category=AuditCategory.ORGANIZATION,
            action=AuditAction.DELETE,
            resource_type=ResourceType.ORGANIZATION,
            resource_id=org_id,
            description=f"Deleted organization: {organization.name}",
            severity=AuditSeverity.WARNING,
            metadata={
                "name": organization.name,
                "member_count": sum(1 for m in memberships if m.is_active),
            },
        )

        now = self._now()
        batch = self.db.batch()
        batch.delete(ORGANIZATIONS_COLLECTION, org_id, expected_version=organization.version)

        for membership in memberships:
            batch.delete(MEMBERSHIPS_COLLECTION, membership.id, expected_version=membership.version)
            if not membership.is_active:
                continue

            user = await self.users.get_user_by_id(membership.user_id)
            if user is None:
                logger.warning(f"Member {membership.user_id} of {org_id} has no user record")
                continue

            default_pointer: Any = UNCHANGED
            if membership.is_default:
                others = [
                    m for m in await self._active_memberships_of_user(user.id)
                    if m.organization_id != org_id
                ]
                successor = others[0] if others else None
                if successor:
                    batch.update(
                        MEMBERSHIPS_COLLECTION,
                        successor.id,
                        {"is_default": True, "updated_at": ts(now)},
                        expected_version=successor.version,
                    )
                default_pointer = successor.organization_id if successor else None

            self.users.update_org_pointer(
                batch,
                user.id,
                default_organization_id=default_pointer,
                last_active_organization_id=(
                    None if user.last_active_organization_id == org_id else UNCHANGED
                ),
                remove_organization=org_id,
                expected_version=user.version,
            )

        await batch.commit()

        logger.info(f"Organization deleted: {org_id} ({len(memberships)} memberships removed)")
        return True

    async def change_owner(
        self,
        org_id: str,
        new_owner_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Organization:
        """
        Transfer ownership to another active member.

        Raises:
            OrganizationNotFoundError: If the organization does not exist.
            MembershipNotFoundError: If the new owner is not an active member.
        """
        organization, _ = await self.memberships.transfer_ownership(
            org_id, new_owner_id, actor_id, actor_email
        )
        return organization

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_user_organizations(self, user_id: str) -> List[Organization]:
        """Organizations the user is an active member of, in join order."""
        organizations = []
        for membership in await self._active_memberships_of_user(user_id):
            organization = await self._get_organization(membership.organization_id)
            if organization:
                organizations.append(organization)
        return organizations

    async def get_child_organizations(self, parent_id: str) -> List[Organization]:
        rows = await self.db.find(ORGANIZATIONS_COLLECTION, {"parent_id": parent_id})
        return self._sorted([self._map_organization(r) for r in rows])

    async def get_organizations_by_type(self, org_type: OrganizationType) -> List[Organization]:
        rows = await self.db.find(ORGANIZATIONS_COLLECTION, {"type": org_type.value})
        return self._sorted([self._map_organization(r) for r in rows])

    # =========================================================================
    # Helper Methods
    # =========================================================================

    async def _check_can_add_child(self, parent: Organization) -> None:
        if not parent.settings.allow_suborganizations:
            raise SuborganizationsNotAllowedError(parent.id)

        children = await self.db.find(ORGANIZATIONS_COLLECTION, {"parent_id": parent.id})
        limit = parent.settings.max_suborganizations
        if len(children) >= limit:
            raise SuborganizationLimitExceededError(parent.id, len(children), limit)

    @staticmethod
    def _sorted(organizations: List[Organization]) -> List[Organization]:
        return sorted(organizations, key=lambda o: (o.created_at, o.id))
