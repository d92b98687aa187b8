"""
Role store and permission resolution service.

This module provides:
- CRUD for organization-scoped roles
- Read access to the built-in system roles and their idempotent seeding
- Assignment and removal of roles on memberships
- Permission checks and effective permission sets for a membership

Notes:
- Built-in roles are immutable and cannot be deleted
- A role referenced by an active membership cannot be deleted
- Grants pin the version of each custom role they add, so a grant and a
  concurrent delete of the same role cannot both commit
- Removing the last role of a membership falls back to the Member role
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from pydantic import ValidationError

from orgaccess.organizations.audit_service import AuditService, utc_now
from orgaccess.organizations.base import ServiceBase, to_document, ts
from orgaccess.organizations.constants import (
    MEMBERSHIPS_COLLECTION,
    ROLES_COLLECTION,
)
from orgaccess.organizations.exceptions import (
    BuiltInRoleError,
    InvalidPatchError,
    OwnerMembershipError,
    RoleExistsError,
    RoleInUseError,
    RoleNotFoundError,
    RoleScopeError,
)
from orgaccess.organizations.rbac import (
    MEMBER_ROLE_ID,
    OWNER_ROLE_ID,
    OWNER_ROLE_NAME,
    SYSTEM_ROLE_DEFINITIONS,
    ConditionEvaluator,
    PermissionResolver,
    system_role_id,
)
from orgaccess.storage.document_store import (
    ArrayContains,
    ConcurrentModificationError,
    DocumentStore,
    WriteBatch,
)
from orgaccess.types.organization import (
    AuditAction,
    AuditCategory,
    Membership,
    MembershipStatus,
    Permission,
    ResourceType,
    Role,
    RoleScope,
    RoleUpdate,
)
from orgaccess.utils.logging import timed

logger = logging.getLogger(__name__)


class RoleService(ServiceBase):
    """
    Service for role management and permission resolution.

    Membership documents are read here (and their ``roles`` field written)
    but their lifecycle belongs to MembershipService.
    """

    def __init__(
        self,
        db_client: DocumentStore,
        audit_service: Optional[AuditService] = None,
        condition_evaluator: Optional[ConditionEvaluator] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the role service.

        Args:
            db_client: Document store.
            audit_service: Optional audit service for logging actions.
            condition_evaluator: Evaluator for conditional grants; every
                condition is treated as satisfied when omitted.
            clock: Source of the current UTC time.
        """
        super().__init__(db_client, audit_service, clock)
        self.resolver = PermissionResolver(condition_evaluator)

    # =========================================================================
    # Role CRUD Operations
    # =========================================================================

    async def create_role(
        self,
        name: str,
        description: str,
        organization_id: str,
        permissions: Iterable[Union[Permission, Dict[str, Any]]],
        actor_id: str,
        actor_email: Optional[str],
    ) -> Role:
        """
        Create an organization-scoped role.

        Args:
            name: Role name, unique within the organization.
            description: Free-form description.
            organization_id: Owning organization.
            permissions: Grants, as Permission models or plain dicts.
            actor_id: User creating the role.
            actor_email: Email of the acting user.

        Returns:
            The created role.

        Raises:
            OrganizationNotFoundError: If the organization does not exist.
            RoleExistsError: If the name is taken in the organization.
            InvalidPatchError: If a permission is malformed.
        """
        await self._require_organization(organization_id)

        if await self._find_role_by_name(name, organization_id):
            raise RoleExistsError(name, organization_id)

        now = self._now()
        try:
            role = Role(
                id=self.db.new_id(),
                name=name.strip(),
                description=description,
                scope=RoleScope.ORGANIZATION,
                organization_id=organization_id,
                permissions=[
                    p if isinstance(p, Permission) else Permission.model_validate(p)
                    for p in permissions
                ],
                is_built_in=False,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
        except ValidationError as e:
            raise InvalidPatchError(str(e)) from e

        batch = self.db.batch()
        batch.create(ROLES_COLLECTION, role.id, to_document(role))
        await batch.commit()

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=organization_id,
            category=AuditCategory.ROLE,
            action=AuditAction.CREATE,
            resource_type=ResourceType.ROLE,
            resource_id=role.id,
            description=f"Role '{role.name}' created",
            metadata={"permissions": [p.as_string() for p in role.permissions]},
        )

        logger.info(f"Role created: {role.name} in org {organization_id}")
        return await self.require_role(role.id)

    async def get_role_by_id(self, role_id: str) -> Optional[Role]:
        """Get a role by ID, or None."""
        data = await self.db.get(ROLES_COLLECTION, role_id)
        return self._map_role(data) if data else None

    async def require_role(self, role_id: str) -> Role:
        role = await self.get_role_by_id(role_id)
        if role is None:
            raise RoleNotFoundError(role_id)
        return role

    async def update_role(
        self,
        role_id: str,
        patch: Dict[str, Any],
        actor_id: str,
        actor_email: Optional[str],
    ) -> Role:
        """
        Update a custom role.

        Args:
            role_id: The role ID.
            patch: Fields to change (name, description, permissions, is_default).
            actor_id: User performing the update.
            actor_email: Email of the acting user.

        Returns:
            The updated role.

        Raises:
            RoleNotFoundError: If the role does not exist.
            BuiltInRoleError: If the role is built in.
            RoleExistsError: If renaming onto an existing name.
            InvalidPatchError: If the patch is invalid.
        """
        role = await self.require_role(role_id)
        if role.is_built_in:
            raise BuiltInRoleError(role_id)

        try:
            update = RoleUpdate.model_validate(patch)
        except ValidationError as e:
            raise InvalidPatchError(str(e)) from e

        changes = update.model_dump(mode="json", exclude_unset=True, exclude_none=True)
        if not changes:
            return role

        if "name" in changes:
            changes["name"] = changes["name"].strip()
            existing = await self._find_role_by_name(changes["name"], role.organization_id)
            if existing and existing.id != role.id:
                raise RoleExistsError(changes["name"], role.organization_id)

        changes["updated_at"] = ts(self._now())

        batch = self.db.batch()
        batch.update(ROLES_COLLECTION, role.id, changes, expected_version=role.version)
        await batch.commit()

        before = to_document(role)
        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=role.organization_id,
            category=AuditCategory.ROLE,
            action=AuditAction.UPDATE,
            resource_type=ResourceType.ROLE,
            resource_id=role.id,
            description=f"Role '{role.name}' updated",
            metadata={
                "before": {k: before.get(k) for k in changes if k != "updated_at"},
                "after": {k: v for k, v in changes.items() if k != "updated_at"},
            },
        )

        logger.info(f"Role updated: {role.id}")
        return await self.require_role(role.id)

    async def delete_role(
        self,
        role_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> bool:
        """
        Delete a custom role that no active membership references.

        Raises:
            RoleNotFoundError: If the role does not exist.
            BuiltInRoleError: If the role is built in.
            RoleInUseError: If any active membership holds the role.
        """
        role = await self.require_role(role_id)
        if role.is_built_in:
            raise BuiltInRoleError(role_id)

        holders = await self.db.find(
            MEMBERSHIPS_COLLECTION,
            {"roles": ArrayContains(role_id), "status": MembershipStatus.ACTIVE.value},
        )
        if holders:
            raise RoleInUseError(role_id, len(holders))

        batch = self.db.batch()
        batch.delete(ROLES_COLLECTION, role.id, expected_version=role.version)
        await batch.commit()

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=role.organization_id,
            category=AuditCategory.ROLE,
            action=AuditAction.DELETE,
            resource_type=ResourceType.ROLE,
            resource_id=role.id,
            description=f"Role '{role.name}' deleted",
        )

        logger.info(f"Role deleted: {role.id}")
        return True

    async def get_organization_roles(self, organization_id: str) -> List[Role]:
        """Roles usable in an organization: its own roles plus the system roles."""
        rows = await self.db.find(ROLES_COLLECTION, {"organization_id": organization_id})
        org_roles = sorted((self._map_role(r) for r in rows), key=lambda r: r.name)
        return org_roles + await self.get_system_roles()

    async def get_system_roles(self) -> List[Role]:
        rows = await self.db.find(ROLES_COLLECTION, {"scope": RoleScope.SYSTEM.value})
        return sorted((self._map_role(r) for r in rows), key=lambda r: r.name)

    async def get_system_role_by_name(self, name: str) -> Optional[Role]:
        return await self.get_role_by_id(system_role_id(name))

    async def require_assignable_role(self, role_id: str, organization_id: str) -> Role:
        """
        Load a role and check it can be used inside ``organization_id``.

        Raises:
            RoleNotFoundError: If the role does not exist.
            RoleScopeError: If it is scoped to another organization.
        """
        role = await self.require_role(role_id)
        if role.scope == RoleScope.ORGANIZATION and role.organization_id != organization_id:
            raise RoleScopeError(role_id, organization_id)
        return role

    async def stage_grant_guards(
        self,
        batch: WriteBatch,
        role_ids: Iterable[str],
        organization_id: str,
    ) -> List[Role]:
        """
        Validate roles about to be granted and pin them in ``batch``.

        Each custom role gets a version-checked empty update, so a batch that
        grants the role and a concurrent ``delete_role`` cannot both commit.
        Built-in roles cannot be deleted and are not pinned.

        Raises:
            RoleNotFoundError: If a role does not exist.
            RoleScopeError: If a role is scoped to another organization.
        """
        roles = []
        for role_id in dict.fromkeys(role_ids):
            role = await self.require_assignable_role(role_id, organization_id)
            if not role.is_built_in:
                batch.update(ROLES_COLLECTION, role.id, {}, expected_version=role.version)
            roles.append(role)
        return roles

        return role

    # =========================================================================
    # Role Assignment
    # =========================================================================

    async def assign_role_to_user(
        self,
        role_id: str,
        user_id: str,
        organization_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> bool:
        """
        Add a role to a user's active membership. Idempotent.

        Raises:
            RoleNotFoundError: If the role does not exist.
            RoleScopeError: If the role belongs to another organization.
            MembershipNotFoundError: If the user is not an active member.
        """
        batch = self.db.batch()
        role = (await self.stage_grant_guards(batch, [role_id], organization_id))[0]
        membership = await self._require_active_membership(user_id, organization_id)

        if role_id in membership.roles:
            return True

        roles = membership.roles + [role_id]
        await self._write_roles(membership, roles, batch)

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=organization_id,
            category=AuditCategory.ROLE,
            action=AuditAction.ASSIGN,
            resource_type=ResourceType.MEMBERSHIP,
            resource_id=membership.id,
            description=f"Role '{role.name}' assigned to user {user_id}",
            metadata={"role_id": role_id, "user_id": user_id},
        )

        logger.info(f"Role {role_id} assigned to {user_id} in org {organization_id}")
        return True

    async def remove_role_from_user(
        self,
        role_id: str,
        user_id: str,
        organization_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> bool:
        """
        Remove a role from a user's active membership. Idempotent.

        Removing the last role leaves the membership with the Member role.

        Raises:
            MembershipNotFoundError: If the user is not an active member.
            OwnerMembershipError: If removing Organization Owner from the owner.
        """
        membership = await self._require_active_membership(user_id, organization_id)

        if role_id not in membership.roles:
            return True

        if membership.is_owner and await self._is_owner_role(role_id):
            raise OwnerMembershipError(
                "The Organization Owner role cannot be removed from the owner"
            )

        roles = [r for r in membership.roles if r != role_id] or [MEMBER_ROLE_ID]
        await self._write_roles(membership, roles)

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=organization_id,
            category=AuditCategory.ROLE,
            action=AuditAction.REVOKE,
            resource_type=ResourceType.MEMBERSHIP,
            resource_id=membership.id,
            description=f"Role {role_id} removed from user {user_id}",
            metadata={"role_id": role_id, "user_id": user_id, "roles": roles},
        )

        logger.info(f"Role {role_id} removed from {user_id} in org {organization_id}")
        return True

    async def _write_roles(
        self,
        membership: Membership,
        roles: List[str],
        batch: Optional[WriteBatch] = None,
    ) -> None:
        if batch is None:
            batch = self.db.batch()
        batch.update(
            MEMBERSHIPS_COLLECTION,
            membership.id,
            {"roles": roles, "updated_at": ts(self._now())},
            expected_version=membership.version,
        )
        await batch.commit()

    async def _is_owner_role(self, role_id: str) -> bool:
        if role_id == OWNER_ROLE_ID:
            return True
        role = await self.get_role_by_id(role_id)
        return role is not None and role.name == OWNER_ROLE_NAME

    # =========================================================================
    # Permission Resolution
    # =========================================================================

    async def has_permission(
        self,
        user_id: str,
        organization_id: str,
        resource: str,
        action: str,
        resource_id: Optional[str] = None,
    ) -> bool:
        """
        Check whether a user may perform ``action`` on ``resource``.

        Args:
            user_id: The user.
            organization_id: Organization context.
            resource: Requested resource (e.g. "inventory").
            action: Requested action (e.g. "read").
            resource_id: Optional concrete resource instance.

        Returns:
            True if allowed. Non-members are always denied.
        """
        membership = await self._get_active_membership(user_id, organization_id)
        roles = await self._load_roles(membership.roles) if membership else []

        allowed = self.resolver.has_permission(
            membership, roles, resource, action, resource_id
        )
        if not allowed:
            logger.warning(
                f"Permission denied: {resource}:{action}",
                extra={
                    "user_id": user_id,
                    "organization_id": organization_id,
                    "is_member": membership is not None,
                },
            )
        return allowed

    @timed("effective_permissions")
    async def get_user_effective_permissions(
        self,
        user_id: str,
        organization_id: str,
    ) -> Set[str]:
        """
        Build the full set of ``resource:action`` strings a user holds.

        Returns an empty set for non-members.
        """
        membership = await self._get_active_membership(user_id, organization_id)
        if membership is None:
            return set()
        roles = await self._load_roles(membership.roles)
        return self.resolver.effective_permissions(membership, roles)

    async def _load_roles(self, role_ids: Iterable[str]) -> List[Role]:
        roles = []
        for role_id in role_ids:
            role = await self.get_role_by_id(role_id)
            if role is None:
                logger.warning(f"Membership references missing role {role_id}")
                continue
            roles.append(role)
        return roles

    # =========================================================================
    # System Roles
    # =========================================================================

    async def initialize_system_roles(self) -> List[str]:
        """
        Seed the built-in roles under their stable ids.

        Existing roles are never overwritten, so repeated runs (including
        concurrent runs from several processes) create each role once.

        Returns:
            IDs of the roles created by this call.
        """
        created = []
        now = self._now()

        for definition in SYSTEM_ROLE_DEFINITIONS:
            role_id = system_role_id(str(definition["name"]))
            if await self.get_role_by_id(role_id):
                continue

            role = Role(
                id=role_id,
                name=definition["name"],
                description=definition.get("description", ""),
                scope=RoleScope.SYSTEM,
                permissions=definition["permissions"],
                is_built_in=True,
                is_default=bool(definition.get("is_default", False)),
                created_by="system",
                created_at=now,
                updated_at=now,
            )

            batch = self.db.batch()
            batch.create(ROLES_COLLECTION, role.id, to_document(role))
            try:
                await batch.commit()
            except ConcurrentModificationError:
                logger.info(f"System role {role_id} created concurrently, skipping")
                continue
            created.append(role_id)

        if created:
            logger.info(f"Seeded {len(created)} system roles")
        return created

    # =========================================================================
    # Helper Methods
    # =========================================================================

    async def _find_role_by_name(
        self,
        name: str,
        organization_id: Optional[str],
    ) -> Optional[Role]:
        rows = await self.db.find(ROLES_COLLECTION, {"organization_id": organization_id})
        wanted = name.strip().lower()
        for row in rows:
            if row.get("name", "").strip().lower() == wanted:
                return self._map_role(row)
        return None

    def _map_role(self, data: Dict[str, Any]) -> Role:
        """Map stored document to Role model."""
        return Role.model_validate(data)
