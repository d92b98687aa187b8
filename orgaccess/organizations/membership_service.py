"""
Membership service managing the user <-> organization edges.

This module provides:
- Adding, reactivating, updating and removing memberships
- The single default organization per user
- Ownership transfer (the only path that grants or revokes owner type)
- Custom and restricted permission overrides per membership

Invariants kept here:
- At most one membership document per (user, organization) pair; its id is
  derived from the pair and removed memberships are reactivated in place
- At most one active default membership per user, kept in sync with the
  user's ``default_organization_id`` in the same write batch
- Exactly one active owner membership per organization, matching
  ``Organization.owner_id``

Every multi-document change is staged in one WriteBatch. The user document
is updated with its read version, so two concurrent operations that both
move a user's default cannot both commit.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from orgaccess.organizations.audit_service import AuditService, utc_now
from orgaccess.organizations.base import ServiceBase, to_document, ts
from orgaccess.organizations.constants import (
    IMMUTABLE_MEMBERSHIP_FIELDS,
    MEMBERSHIPS_COLLECTION,
    ORGANIZATIONS_COLLECTION,
    membership_id,
)
from orgaccess.organizations.exceptions import (
    ImmutableFieldError,
    InactiveMembershipError,
    InvalidPatchError,
    MemberLimitExceededError,
    MembershipNotFoundError,
    OwnerMembershipError,
    UserNotFoundError,
)
from orgaccess.organizations.rbac import (
    MEMBER_ROLE_ID,
    OWNER_ROLE_ID,
    normalize_permission_string,
)
from orgaccess.organizations.role_service import RoleService
from orgaccess.organizations.user_directory import UNCHANGED, UserDirectory
from orgaccess.storage.document_store import (
    ArrayContains,
    ArrayRemove,
    ArrayUnion,
    ConcurrentModificationError,
    DocumentStore,
    WriteBatch,
)
from orgaccess.types.organization import (
    AuditAction,
    AuditCategory,
    AuditSeverity,
    Membership,
    MembershipStatus,
    MembershipType,
    MembershipUpdate,
    Organization,
    ResourceType,
    User,
)

logger = logging.getLogger(__name__)

CUSTOM_PERMISSIONS = "custom_permissions"
RESTRICTED_PERMISSIONS = "restricted_permissions"


class MembershipService(ServiceBase):
    """
    Service for membership management operations.
    """

    def __init__(
        self,
        db_client: DocumentStore,
        user_directory: UserDirectory,
        role_service: RoleService,
        audit_service: Optional[AuditService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the membership service.

        Args:
            db_client: Document store.
            user_directory: Directory holding the users' organization pointers.
            role_service: Used to validate role ids.
            audit_service: Optional audit service for logging actions.
            clock: Source of the current UTC time.
        """
        super().__init__(db_client, audit_service, clock)
        self.users = user_directory
        self.roles = role_service

    # =========================================================================
    # Membership Lifecycle
    # =========================================================================

    async def add_user_to_organization(
        self,
        user_id: str,
        organization_id: str,
        actor_id: str,
        actor_email: Optional[str],
        roles: Optional[List[str]] = None,
        membership_type: MembershipType = MembershipType.MEMBER,
    ) -> Membership:
        """
        Add a user to an organization.

        Returns the existing membership unchanged if the user is already an
        active member; reactivates a removed membership in place.

        Args:
            user_id: The user to add.
            organization_id: The organization.
            actor_id: User performing the action.
            actor_email: Email of the acting user.
            roles: Role ids to grant; the Member role when empty.
            membership_type: Membership type (owner is not allowed here).

        Returns:
            The active membership.

        Raises:
            OwnerMembershipError: If membership_type is owner.
            OrganizationNotFoundError: If the organization does not exist.
            UserNotFoundError: If the user does not exist.
            RoleNotFoundError / RoleScopeError: If a role is unusable here.
            MemberLimitExceededError: If the organization is full.
        """
        if membership_type == MembershipType.OWNER:
            raise OwnerMembershipError("Owner memberships are granted through change_owner")

        organization = await self._require_organization(organization_id)
        user = await self._require_user(user_id)

        existing = await self._get_active_membership(user_id, organization_id)
        if existing:
            logger.debug(f"User {user_id} already active in org {organization_id}")
            return existing

        batch = self.db.batch()
        membership = await self.stage_add_membership(
            batch, user, organization, roles or [], membership_type, self._now()
        )
        try:
            await batch.commit()
        except ConcurrentModificationError:
            existing = await self._get_active_membership(user_id, organization_id)
            if existing is None:
                raise
            logger.debug(f"User {user_id} joined org {organization_id} concurrently")
            return existing

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=organization_id,
            category=AuditCategory.USER,
            action=AuditAction.JOIN,
            resource_type=ResourceType.MEMBERSHIP,
            resource_id=membership.id,
            description=f"User {user_id} added to organization",
            metadata={
                "user_id": user_id,
                "roles": membership.roles,
                "type": membership.type.value,
                "is_default": membership.is_default,
            },
        )

        logger.info(f"Member added to organization: {user_id} -> {organization_id}")
        return await self._require_membership_by_id(membership.id)

    async def update_membership(
        self,
        membership_id: str,
        patch: Dict[str, Any],
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        """
        Apply a partial update to a membership.

        ``is_default = True`` moves the user's default here and clears it on
        every other membership in the same batch. ``status = removed`` drops
        the organization from the user's list and hands the default to
        another active membership when needed.

        Raises:
            ImmutableFieldError: If user_id or organization_id are in the patch.
            InvalidPatchError: If the patch does not validate.
            MembershipNotFoundError: If the membership does not exist.
            OwnerMembershipError: If the patch grants, demotes or removes owner.
            RoleNotFoundError / RoleScopeError: If a granted role is unusable here.
        """
        immutable = set(patch) & IMMUTABLE_MEMBERSHIP_FIELDS
        if immutable:
            raise ImmutableFieldError(immutable)

        try:
            update = MembershipUpdate.model_validate(patch)
        except ValidationError as e:
            raise InvalidPatchError(str(e)) from e

        membership = await self._require_membership_by_id(membership_id)
        return await self._apply_update(membership, update, actor_id, actor_email)

    async def remove_user_from_organization(
        self,
        user_id: str,
        organization_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> bool:
        """
        Soft-remove a member.

        Raises:
            MembershipNotFoundError: If the user is not an active member.
            OwnerMembershipError: If the member is the owner.
        """
        membership = await self._require_active_membership(user_id, organization_id)
        if membership.is_owner:
            raise OwnerMembershipError()

        await self._apply_update(
            membership,
            MembershipUpdate(status=MembershipStatus.REMOVED),
            actor_id,
            actor_email,
        )
        logger.info(f"Member removed from organization: {user_id} -> {organization_id}")
        return True

    async def change_membership_type(
        self,
        user_id: str,
        organization_id: str,
        new_type: MembershipType,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        """
        Change a membership's type.

        Promoting to owner performs the ownership transfer; demoting the
        current owner is only possible by transferring ownership away.

        Raises:
            MembershipNotFoundError: If the user is not an active member.
            OwnerMembershipError: If demoting the owner.
        """
        membership = await self._require_active_membership(user_id, organization_id)
        if new_type == membership.type:
            return membership

        if new_type == MembershipType.OWNER:
            _, promoted = await self.transfer_ownership(
                organization_id, user_id, actor_id, actor_email
            )
            return promoted

        if membership.is_owner:
            raise OwnerMembershipError()

        return await self._apply_update(
            membership, MembershipUpdate(type=new_type), actor_id, actor_email
        )

    async def set_default_organization(
        self,
        user_id: str,
        organization_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        """
        Make an organization the user's default (and last active) one.

        No-op when it already is the default.

        Raises:
            MembershipNotFoundError: If the user is not an active member.
        """
        membership = await self._require_active_membership(user_id, organization_id)
        if membership.is_default:
            return membership

        return await self._apply_update(
            membership,
            MembershipUpdate(is_default=True),
            actor_id,
            actor_email,
            mark_last_active=True,
        )

    async def transfer_ownership(
        self,
        organization_id: str,
        new_owner_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Tuple[Organization, Membership]:
        """
        Move ownership of an organization to another active member.

        The current owner membership is demoted to member, the target is
        promoted to owner with the Organization Owner role, and
        ``owner_id`` is updated, all in one batch.

        Returns:
            Tuple of (updated organization, new owner membership).

        Raises:
            OrganizationNotFoundError: If the organization does not exist.
            MembershipNotFoundError: If the target is not an active member.
        """
        organization = await self._require_organization(organization_id)
        target = await self._require_active_membership(new_owner_id, organization_id)

        if target.is_owner and organization.owner_id == new_owner_id:
            return organization, target

        previous_owner_id = organization.owner_id
        batch = self.db.batch()
        await self.stage_owner_swap(batch, organization, target, self._now())
        await batch.commit()

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=organization_id,
            category=AuditCategory.ORGANIZATION,
            action=AuditAction.TRANSFER,
            resource_type=ResourceType.ORGANIZATION,
            resource_id=organization_id,
            description=f"Ownership transferred from {previous_owner_id} to {new_owner_id}",
            severity=AuditSeverity.ALERT,
            metadata={
                "previous_owner_id": previous_owner_id,
                "new_owner_id": new_owner_id,
            },
        )

        logger.warning(
            f"Ownership of {organization_id} transferred to {new_owner_id}",
            extra={"organization_id": organization_id},
        )
        return (
            await self._require_organization(organization_id),
            await self._require_membership_by_id(target.id),
        )

    # =========================================================================
    # Permission Overrides
    # =========================================================================

    async def add_custom_permission(
        self,
        user_id: str,
        organization_id: str,
        permission: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        """Grant a ``resource:action`` outside of roles. Idempotent."""
        return await self._modify_permission_list(
            user_id, organization_id, permission, CUSTOM_PERMISSIONS, True, actor_id, actor_email
        )

    async def remove_custom_permission(
        self,
        user_id: str,
        organization_id: str,
        permission: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        """Drop a custom permission. Idempotent."""
        return await self._modify_permission_list(
            user_id, organization_id, permission, CUSTOM_PERMISSIONS, False, actor_id, actor_email
        )

    async def add_restricted_permission(
        self,
        user_id: str,
        organization_id: str,
        permission: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        """Deny a ``resource:action`` regardless of role grants. Idempotent."""
        return await self._modify_permission_list(
            user_id, organization_id, permission, RESTRICTED_PERMISSIONS, True, actor_id, actor_email
        )

    async def remove_restricted_permission(
        self,
        user_id: str,
        organization_id: str,
        permission: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        """Lift a restriction. Idempotent."""
        return await self._modify_permission_list(
            user_id, organization_id, permission, RESTRICTED_PERMISSIONS, False, actor_id, actor_email
        )

    async def _modify_permission_list(
        self,
        user_id: str,
        organization_id: str,
        permission: str,
        list_name: str,
        add: bool,
        actor_id: str,
        actor_email: Optional[str],
    ) -> Membership:
        normalized = normalize_permission_string(permission)
        membership = await self._require_active_membership(user_id, organization_id)

        current = getattr(membership.permissions, list_name)
        if (normalized in current) == add:
            return membership

        batch = self.db.batch()
        batch.update(
            MEMBERSHIPS_COLLECTION,
            membership.id,
            {
                f"permissions.{list_name}": (
                    ArrayUnion(normalized) if add else ArrayRemove(normalized)
                ),
                "updated_at": ts(self._now()),
            },
        )
        await batch.commit()

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=organization_id,
            category=AuditCategory.AUTHORIZATION,
            action=AuditAction.ASSIGN if add else AuditAction.REVOKE,
            resource_type=ResourceType.MEMBERSHIP,
            resource_id=membership.id,
            description=(
                f"{'Added' if add else 'Removed'} {list_name.replace('_', ' ')[:-1]} "
                f"{normalized} for user {user_id}"
            ),
            metadata={"list": list_name, "permission": normalized, "user_id": user_id},
        )

        return await self._require_membership_by_id(membership.id)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_membership_by_id(self, membership_id: str) -> Optional[Membership]:
        data = await self.db.get(MEMBERSHIPS_COLLECTION, membership_id)
        return self._map_membership(data) if data else None

    async def get_membership(
        self,
        user_id: str,
        organization_id: str,
    ) -> Optional[Membership]:
        """Active membership for the pair, or None."""
        return await self._get_active_membership(user_id, organization_id)

    async def get_user_memberships(
        self,
        user_id: str,
        include_removed: bool = False,
    ) -> List[Membership]:
        if include_removed:
            return await self._find_memberships(user_id=user_id)
        return await self._active_memberships_of_user(user_id)

    async def get_organization_members(
        self,
        organization_id: str,
        include_removed: bool = False,
    ) -> List[Membership]:
        if include_removed:
            return await self._find_memberships(organization_id=organization_id)
        return await self._active_memberships_of_organization(organization_id)

    async def get_organization_members_by_role(
        self,
        organization_id: str,
        role_id: str,
    ) -> List[Membership]:
        rows = await self.db.find(
            MEMBERSHIPS_COLLECTION,
            {
                "organization_id": organization_id,
                "status": MembershipStatus.ACTIVE.value,
                "roles": ArrayContains(role_id),
            },
        )
        return sorted((self._map_membership(r) for r in rows), key=lambda m: m.joined_at)

    async def get_user_active_organization(self, user_id: str) -> Optional[str]:
        """
        Organization the user is working in.

        The last active organization wins while the user is still a member of
        it; otherwise the default organization is returned.
        """
        user = await self._require_user(user_id)
        for candidate in (user.last_active_organization_id, user.default_organization_id):
            if candidate and await self._get_active_membership(user_id, candidate):
                return candidate
        return None

    # =========================================================================
    # Batch Staging (shared with organization and invitation flows)
    # =========================================================================

    async def stage_add_membership(
        self,
        batch: WriteBatch,
        user: User,
        organization: Organization,
        roles: List[str],
        membership_type: MembershipType,
        now: datetime,
        make_default: Optional[bool] = None,
    ) -> Membership:
        """
        Stage a new (or reactivated) active membership and the user pointers.

        Args:
            batch: Batch receiving the writes.
            user: The joining user, as read (its version guards the pointer update).
            organization: Target organization, possibly not yet committed.
            roles: Role ids; the Member role when empty.
            membership_type: Membership type.
            now: Timestamp for the writes.
            make_default: Force (True/False) the default flag; when None the
                membership becomes default only if the user has no other
                active membership.

        Returns:
            The membership as it will be after commit. If the user is already
            an active member nothing is staged and the existing one is returned.

        Raises:
            RoleNotFoundError / RoleScopeError: If a role is unusable here.
            MemberLimitExceededError: If the organization is full.
        """
        existing = await self._get_membership_record(user.id, organization.id)
        if existing and existing.is_active:
            return existing

        await self._check_member_limit(organization)
        await self.roles.stage_grant_guards(batch, roles, organization.id)

        others = [
            m for m in await self._active_memberships_of_user(user.id)
            if m.organization_id != organization.id
        ]
        if make_default is None:
            make_default = not others

        role_ids = list(dict.fromkeys(roles)) or [MEMBER_ROLE_ID]
        if membership_type == MembershipType.OWNER and OWNER_ROLE_ID not in role_ids:
            role_ids.append(OWNER_ROLE_ID)

        if existing:
            membership = existing.model_copy(update={
                "status": MembershipStatus.ACTIVE,
                "type": membership_type,
                "roles": role_ids,
                "is_default": make_default,
                "joined_at": now,
                "updated_at": now,
            })
            batch.update(
                MEMBERSHIPS_COLLECTION,
                existing.id,
                {
                    "status": MembershipStatus.ACTIVE.value,
                    "type": membership_type.value,
                    "roles": role_ids,
                    "is_default": make_default,
                    "joined_at": ts(now),
                    "updated_at": ts(now),
                },
                expected_version=existing.version,
            )
        else:
            membership = Membership(
                id=membership_id(organization.id, user.id),
                user_id=user.id,
                organization_id=organization.id,
                status=MembershipStatus.ACTIVE,
                type=membership_type,
                roles=role_ids,
                is_default=make_default,
                joined_at=now,
                created_at=now,
                updated_at=now,
            )
            batch.create(MEMBERSHIPS_COLLECTION, membership.id, to_document(membership))

        if make_default:
            self._stage_clear_defaults(batch, others, now)

        self.users.update_org_pointer(
            batch,
            user.id,
            default_organization_id=organization.id if make_default else UNCHANGED,
            add_organization=organization.id,
            expected_version=user.version,
        )
        return membership

    async def stage_owner_swap(
        self,
        batch: WriteBatch,
        organization: Organization,
        target: Membership,
        now: datetime,
    ) -> None:
        """Stage demotion of the current owner(s) and promotion of ``target``."""
        for current in await self._active_memberships_of_organization(organization.id):
            if not current.is_owner or current.id == target.id:
                continue
            roles = [r for r in current.roles if r != OWNER_ROLE_ID] or [MEMBER_ROLE_ID]
            batch.update(
                MEMBERSHIPS_COLLECTION,
                current.id,
                {
                    "type": MembershipType.MEMBER.value,
                    "roles": roles,
                    "updated_at": ts(now),
                },
                expected_version=current.version,
            )

        target_roles = list(target.roles)
        if OWNER_ROLE_ID not in target_roles:
            target_roles.append(OWNER_ROLE_ID)
        batch.update(
            MEMBERSHIPS_COLLECTION,
            target.id,
            {
                "type": MembershipType.OWNER.value,
                "roles": target_roles,
                "updated_at": ts(now),
            },
            expected_version=target.version,
        )
        batch.update(
            ORGANIZATIONS_COLLECTION,
            organization.id,
            {"owner_id": target.user_id, "updated_at": ts(now)},
            expected_version=organization.version,
        )

    def _stage_clear_defaults(
        self,
        batch: WriteBatch,
        memberships: List[Membership],
        now: datetime,
    ) -> None:
        for other in memberships:
            if other.is_default:
                batch.update(
                    MEMBERSHIPS_COLLECTION,
                    other.id,
                    {"is_default": False, "updated_at": ts(now)},
                    expected_version=other.version,
                )

    # =========================================================================
    # Helper Methods
    # =========================================================================

    async def _apply_update(
        self,
        membership: Membership,
        update: MembershipUpdate,
        actor_id: str,
        actor_email: Optional[str],
        mark_last_active: bool = False,
    ) -> Membership:
        provided = update.model_fields_set
        organization_id = membership.organization_id
        now = self._now()

        if "type" in provided and update.type is not None and update.type != membership.type:
            if update.type == MembershipType.OWNER:
                raise OwnerMembershipError("Ownership is granted through change_owner")
            if membership.is_owner:
                raise OwnerMembershipError()

        removing = (
            "status" in provided
            and update.status == MembershipStatus.REMOVED
            and membership.is_active
        )
        reactivating = (
            "status" in provided
            and update.status == MembershipStatus.ACTIVE
            and not membership.is_active
        )
        if removing and membership.is_owner:
            raise OwnerMembershipError()

        fields: Dict[str, Any] = {}
        pointer: Dict[str, Any] = {}
        batch = self.db.batch()

        if "type" in provided and update.type is not None and update.type != membership.type:
            fields["type"] = update.type.value

        if "roles" in provided and update.roles is not None:
            role_ids = list(dict.fromkeys(update.roles)) or [MEMBER_ROLE_ID]
            await self.roles.stage_grant_guards(batch, role_ids, organization_id)
            if membership.is_owner and OWNER_ROLE_ID not in role_ids:
                raise OwnerMembershipError(
                    "The Organization Owner role cannot be removed from the owner"
                )
            fields["roles"] = role_ids

        if "permissions" in provided and update.permissions is not None:
            fields["permissions"] = {
                CUSTOM_PERMISSIONS: list(dict.fromkeys(
                    normalize_permission_string(p)
                    for p in update.permissions.custom_permissions
                )),
                RESTRICTED_PERMISSIONS: list(dict.fromkeys(
                    normalize_permission_string(p)
                    for p in update.permissions.restricted_permissions
                )),
            }

        user = await self._require_user(membership.user_id)
        others = [
            m for m in await self._active_memberships_of_user(membership.user_id)
            if m.id != membership.id
        ]

        if removing:
            fields["status"] = MembershipStatus.REMOVED.value
            fields["is_default"] = False
            pointer["remove_organization"] = organization_id
            successor = others[0] if others else None
            if membership.is_default:
                if successor:
                    batch.update(
                        MEMBERSHIPS_COLLECTION,
                        successor.id,
                        {"is_default": True, "updated_at": ts(now)},
                        expected_version=successor.version,
                    )
                pointer["default_organization_id"] = (
                    successor.organization_id if successor else None
                )
            if user.last_active_organization_id == organization_id:
                pointer["last_active_organization_id"] = None

        elif reactivating:
            organization = await self._require_organization(organization_id)
            await self._check_member_limit(organization)
            if "roles" not in fields:
                await self.roles.stage_grant_guards(batch, membership.roles, organization_id)
            fields["status"] = MembershipStatus.ACTIVE.value
            fields["joined_at"] = ts(now)
            pointer["add_organization"] = organization_id
            if not any(m.is_default for m in others):
                fields["is_default"] = True
                pointer["default_organization_id"] = organization_id

        if "is_default" in provided and update.is_default is not None and not removing:
            active_after = membership.is_active or reactivating
            if update.is_default and not active_after:
                raise InactiveMembershipError(membership.id)
            if update.is_default and not membership.is_default:
                fields["is_default"] = True
                self._stage_clear_defaults(batch, others, now)
                pointer["default_organization_id"] = organization_id
            elif not update.is_default and membership.is_default:
                fields["is_default"] = False
                pointer["default_organization_id"] = None

        if mark_last_active:
            pointer["last_active_organization_id"] = organization_id

        if not fields and not pointer:
            return membership

        fields["updated_at"] = ts(now)
        batch.update(
            MEMBERSHIPS_COLLECTION,
            membership.id,
            fields,
            expected_version=membership.version,
        )
        if pointer:
            self.users.update_org_pointer(
                batch, user.id, expected_version=user.version, **pointer
            )
        await batch.commit()

        before = to_document(membership)
        changed = {k: v for k, v in fields.items() if k != "updated_at"}
        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=organization_id,
            category=AuditCategory.USER,
            action=AuditAction.DELETE if removing else AuditAction.UPDATE,
            resource_type=ResourceType.MEMBERSHIP,
            resource_id=membership.id,
            description=(
                f"User {membership.user_id} removed from organization"
                if removing
                else f"Membership of user {membership.user_id} updated"
            ),
            metadata={
                "before": {k: before.get(k) for k in changed},
                "after": changed,
            },
        )

        return await self._require_membership_by_id(membership.id)

    async def _check_member_limit(self, organization: Organization) -> None:
        current = len(await self._active_memberships_of_organization(organization.id))
        limit = organization.settings.max_users
        if current >= limit:
            raise MemberLimitExceededError(organization.id, current, limit)

    async def _require_membership_by_id(self, membership_id: str) -> Membership:
        membership = await self.get_membership_by_id(membership_id)
        if membership is None:
            raise MembershipNotFoundError(membership_id=membership_id)
        return membership

    async def _require_user(self, user_id: str) -> User:
        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user
