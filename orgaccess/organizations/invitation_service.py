"""
Invitation service.

Invitations move through ``pending -> accepted | declined | revoked | expired``.
Expiry is lazy: any read or transition that meets a pending invitation past
its ``expires_at`` first persists it as expired.

Agency invitations carry no organization at creation time. Accepting one
provisions a professional child organization under the agency, owned by the
accepting user, and makes that user a plain member of the agency.

Tokens are generated with ``secrets`` and only their SHA-256 digest is
stored; the plaintext token is returned once, on the created invitation.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from orgaccess.organizations.audit_service import AuditService, utc_now
from orgaccess.organizations.base import ServiceBase, to_document, ts
from orgaccess.organizations.constants import (
    DEFAULT_INVITATION_EXPIRY_HOURS,
    INVITATIONS_COLLECTION,
    SYSTEM_ACTOR_EMAIL,
    SYSTEM_ACTOR_ID,
)
from orgaccess.organizations.exceptions import (
    InvalidPatchError,
    InvitationEmailMismatchError,
    InvitationExpiredError,
    InvitationNotFoundError,
    InvitationNotPendingError,
    InviteExistsError,
    MemberExistsError,
    NotAgencyError,
    OwnerMembershipError,
    UserNotFoundError,
)
from orgaccess.organizations.membership_service import MembershipService
from orgaccess.organizations.organization_service import OrganizationService
from orgaccess.organizations.user_directory import UserDirectory
from orgaccess.storage.document_store import ConcurrentModificationError, DocumentStore
from orgaccess.types.organization import (
    AgencyInvitation,
    AuditAction,
    AuditCategory,
    Invitation,
    InvitationStatus,
    MembershipType,
    OrganizationType,
    ResourceType,
    normalize_email,
)

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    """Digest under which an invitation token is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class InvitationService(ServiceBase):
    """
    Service for invitation management.
    """

    def __init__(
        self,
        db_client: DocumentStore,
        user_directory: UserDirectory,
        membership_service: MembershipService,
        organization_service: OrganizationService,
        audit_service: Optional[AuditService] = None,
        clock: Callable[[], datetime] = utc_now,
        default_expiry_hours: int = DEFAULT_INVITATION_EXPIRY_HOURS,
    ):
        super().__init__(db_client, audit_service, clock)
        self.users = user_directory
        self.memberships = membership_service
        self.organizations = organization_service
        self.default_expiry_hours = default_expiry_hours

    # =========================================================================
    # Creation
    # =========================================================================

    async def create_invitation(
        self,
        email: str,
        organization_id: str,
        inviter_id: str,
        inviter_email: Optional[str],
        roles: Optional[List[str]] = None,
        membership_type: MembershipType = MembershipType.MEMBER,
        message: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> Invitation:
        """
        Invite an email address to an organization.

        Args:
            email: Invitee email (normalized to lower case).
            organization_id: Target organization.
            inviter_id: User sending the invitation.
            inviter_email: Email of the inviter.
            roles: Role ids granted on acceptance; the Member role when empty.
            membership_type: Membership type granted on acceptance.
            message: Optional note to the invitee.
            expires_in: Validity in hours (configured default when omitted).

        Returns:
            The invitation, with its plaintext ``token`` populated.

        Raises:
            InvalidPatchError: If the email is malformed.
            OwnerMembershipError: If inviting as owner.
            OrganizationNotFoundError: If the organization does not exist.
            MemberExistsError: If the invitee is already an active member.
            InviteExistsError: If a live pending invitation exists.
        """
        normalized = self._normalize(email)
        if membership_type == MembershipType.OWNER:
            raise OwnerMembershipError("Ownership cannot be granted by invitation")

        await self._require_organization(organization_id)

        role_ids = list(dict.fromkeys(roles or []))
        for role_id in role_ids:
            await self.memberships.roles.require_assignable_role(role_id, organization_id)

        invitee = await self.users.get_user_by_email(normalized)
        if invitee and await self._get_active_membership(invitee.id, organization_id):
            raise MemberExistsError(invitee.id, organization_id)

        pending = await self._sweep(
            await self._find({
                "email": normalized,
                "organization_id": organization_id,
                "status": InvitationStatus.PENDING.value,
            }),
            organization_id,
        )
        if pending:
            raise InviteExistsError(normalized, organization_id)

        invitation, token = self._build(
            email=normalized,
            organization_id=organization_id,
            inviter_id=inviter_id,
            membership_type=membership_type,
            roles=role_ids,
            message=message,
            expires_in=expires_in,
        )
        await self._insert(invitation)

        await self._audit(
            actor_id=inviter_id,
            actor_email=inviter_email,
            organization_id=organization_id,
            category=AuditCategory.INVITATION,
            action=AuditAction.INVITE,
            resource_type=ResourceType.INVITATION,
            resource_id=invitation.id,
            description=f"Invited {normalized} to organization",
            metadata={
                "email": normalized,
                "roles": role_ids,
                "type": membership_type.value,
                "expires_at": ts(invitation.expires_at),
            },
        )

        logger.info(f"Invitation created: {invitation.id} for org {organization_id}")
        return invitation.model_copy(update={"token": token})

    async def create_agency_invitation(
        self,
        email: str,
        parent_organization_id: str,
        organization_name: str,
        inviter_id: str,
        inviter_email: Optional[str],
        message: Optional[str] = None,
        expires_in: Optional[int] = None,
    ) -> Invitation:
        """
        Invite an email address to set up a client organization under an agency.

        Raises:
            InvalidPatchError: If the email is malformed.
            OrganizationNotFoundError: If the parent does not exist.
            NotAgencyError: If the parent is not an agency.
            InviteExistsError: If a live pending agency invitation exists.
        """
        normalized = self._normalize(email)
        parent = await self._require_organization(parent_organization_id)
        if parent.type != OrganizationType.AGENCY:
            raise NotAgencyError(parent_organization_id)

        pending = await self._sweep(
            await self._find({
                "email": normalized,
                "agency_invitation.parent_organization_id": parent_organization_id,
                "status": InvitationStatus.PENDING.value,
            }),
            parent_organization_id,
        )
        if pending:
            raise InviteExistsError(normalized, parent_organization_id)

        invitation, token = self._build(
            email=normalized,
            organization_id=None,
            inviter_id=inviter_id,
            membership_type=MembershipType.OWNER,
            roles=[],
            message=message,
            expires_in=expires_in,
            agency_invitation=AgencyInvitation(
                parent_organization_id=parent_organization_id,
                organization_name=organization_name,
            ),
        )
        await self._insert(invitation)

        await self._audit(
            actor_id=inviter_id,
            actor_email=inviter_email,
            organization_id=parent_organization_id,
            category=AuditCategory.INVITATION,
            action=AuditAction.INVITE,
            resource_type=ResourceType.INVITATION,
            resource_id=invitation.id,
            description=f"Invited {normalized} to create client organization {organization_name}",
            metadata={
                "email": normalized,
                "organization_name": organization_name,
                "expires_at": ts(invitation.expires_at),
            },
        )

        logger.info(f"Agency invitation created: {invitation.id} under {parent_organization_id}")
        return invitation.model_copy(update={"token": token})

    # =========================================================================
    # Transitions
    # =========================================================================

    async def accept_invitation(
        self,
        token: str,
        user_id: str,
        user_email: str,
    ) -> bool:
        """
        Accept an invitation on behalf of ``user_id``.

        Everything the acceptance creates is committed in one batch together
        with the invitation's accepted stamp.

        Raises:
            InvitationNotFoundError: If no invitation matches the token.
            InvitationExpiredError: If the invitation has expired.
            InvitationNotPendingError: If it was already accepted, declined or revoked.
            InvitationEmailMismatchError: If ``user_email`` is not the invitee.
            UserNotFoundError: If the user does not exist.
        """
        invitation = await self._require_pending(token)

        try:
            matches = normalize_email(user_email) == invitation.email
        except ValueError:
            matches = False
        if not matches:
            raise InvitationEmailMismatchError()

        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        now = self._now()
        batch = self.db.batch()
        stamp = {
            "status": InvitationStatus.ACCEPTED.value,
            "accepted_at": ts(now),
            "accepted_by_user_id": user_id,
            "updated_at": ts(now),
        }

        if invitation.is_agency:
            agency = invitation.agency_invitation
            parent = await self._require_organization(agency.parent_organization_id)
            if parent.type != OrganizationType.AGENCY:
                raise NotAgencyError(parent.id)
            child = await self.organizations.stage_create_organization(
                batch,
                agency.organization_name,
                user,
                OrganizationType.PROFESSIONAL,
                parent,
                now,
            )
            await self.memberships.stage_add_membership(
                batch,
                user,
                parent,
                [],
                MembershipType.MEMBER,
                now,
                make_default=False,
            )
            organization_id = child.id
            stamp["organization_id"] = child.id
        else:
            organization = await self._require_organization(invitation.organization_id)
            await self.memberships.stage_add_membership(
                batch,
                user,
                organization,
                invitation.roles,
                invitation.type,
                now,
            )
            organization_id = organization.id

        batch.update(
            INVITATIONS_COLLECTION,
            invitation.id,
            stamp,
            expected_version=invitation.version,
        )
        await batch.commit()

        await self._audit(
            actor_id=user_id,
            actor_email=user_email,
            organization_id=organization_id,
            category=AuditCategory.INVITATION,
            action=AuditAction.ACCEPT,
            resource_type=ResourceType.INVITATION,
            resource_id=invitation.id,
            description=f"Invitation accepted by {user_id}",
            metadata={
                "agency": invitation.is_agency,
                "parent_organization_id": (
                    invitation.agency_invitation.parent_organization_id
                    if invitation.is_agency else None
                ),
            },
        )

        logger.info(f"Invitation accepted: {invitation.id} by user {user_id}")
        return True

    async def decline_invitation(
        self,
        token: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> bool:
        """Decline a pending invitation."""
        invitation = await self._require_pending(token)
        await self._finish(invitation, InvitationStatus.DECLINED, AuditAction.DECLINE, actor_id, actor_email)
        return True

    async def revoke_invitation(
        self,
        invitation_id: str,
        actor_id: str,
        actor_email: Optional[str],
    ) -> bool:
        """Revoke a pending invitation by id."""
        invitation = await self._load_by_id(invitation_id)
        if invitation is None:
            raise InvitationNotFoundError(invitation_id)
        self._check_pending(invitation)
        await self._finish(invitation, InvitationStatus.REVOKED, AuditAction.REVOKE, actor_id, actor_email)
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_invitation_by_id(self, invitation_id: str) -> Optional[Invitation]:
        return await self._load_by_id(invitation_id)

    async def get_invitation_by_token(self, token: str) -> Optional[Invitation]:
        rows = await self._find({"token_hash": hash_token(token)})
        if not rows:
            return None
        return await self._expire_if_due(rows[0])

    async def get_pending_invitations_for_email(self, email: str) -> List[Invitation]:
        try:
            normalized = normalize_email(email)
        except ValueError:
            return []
        rows = await self._find({"email": normalized, "status": InvitationStatus.PENDING.value})
        return await self._sweep(rows, None)

    async def get_pending_organization_invitations(self, organization_id: str) -> List[Invitation]:
        rows = await self._find({
            "organization_id": organization_id,
            "status": InvitationStatus.PENDING.value,
        })
        return await self._sweep(rows, organization_id)

    async def get_pending_agency_invitations(self, parent_organization_id: str) -> List[Invitation]:
        rows = await self._find({
            "agency_invitation.parent_organization_id": parent_organization_id,
            "status": InvitationStatus.PENDING.value,
        })
        return await self._sweep(rows, parent_organization_id)

    async def get_organization_invitations(
        self,
        organization_id: str,
        status: Optional[InvitationStatus] = None,
    ) -> List[Invitation]:
        """All invitations of an organization, optionally filtered by status."""
        filters = {"organization_id": organization_id}
        if status is not None:
            filters["status"] = status.value
        return await self._find(filters)

    async def get_agency_invitations(
        self,
        parent_organization_id: str,
        status: Optional[InvitationStatus] = None,
    ) -> List[Invitation]:
        filters = {"agency_invitation.parent_organization_id": parent_organization_id}
        if status is not None:
            filters["status"] = status.value
        return await self._find(filters)

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _normalize(self, email: str) -> str:
        try:
            return normalize_email(email)
        except ValueError as e:
            raise InvalidPatchError(str(e)) from e

    def _build(
        self,
        email: str,
        organization_id: Optional[str],
        inviter_id: str,
        membership_type: MembershipType,
        roles: List[str],
        message: Optional[str],
        expires_in: Optional[int],
        agency_invitation: Optional[AgencyInvitation] = None,
    ):
        now = self._now()
        hours = self.default_expiry_hours if expires_in is None else expires_in
        token = secrets.token_urlsafe(TOKEN_BYTES)
        invitation = Invitation(
            id=self.db.new_id(),
            email=email,
            organization_id=organization_id,
            token_hash=hash_token(token),
            invited_by=inviter_id,
            message=message,
            type=membership_type,
            roles=roles,
            expires_at=now + timedelta(hours=hours),
            agency_invitation=agency_invitation,
            created_at=now,
            updated_at=now,
        )
        return invitation, token

    async def _insert(self, invitation: Invitation) -> None:
        batch = self.db.batch()
        batch.create(INVITATIONS_COLLECTION, invitation.id, to_document(invitation))
        await batch.commit()

    async def _find(self, filters) -> List[Invitation]:
        rows = await self.db.find(INVITATIONS_COLLECTION, filters)
        invitations = [Invitation.model_validate(r) for r in rows]
        invitations.sort(key=lambda i: (i.created_at, i.id))
        return invitations

    async def _load_by_id(self, invitation_id: str) -> Optional[Invitation]:
        data = await self.db.get(INVITATIONS_COLLECTION, invitation_id)
        if not data:
            return None
        return await self._expire_if_due(Invitation.model_validate(data))

    async def _require_pending(self, token: str) -> Invitation:
        invitation = await self.get_invitation_by_token(token)
        if invitation is None:
            raise InvitationNotFoundError(token)
        self._check_pending(invitation)
        return invitation

    def _check_pending(self, invitation: Invitation) -> None:
        if invitation.status == InvitationStatus.EXPIRED:
            raise InvitationExpiredError(invitation.id)
        if invitation.status != InvitationStatus.PENDING:
            raise InvitationNotPendingError(invitation.id, invitation.status.value)

    async def _expire_if_due(self, invitation: Invitation) -> Invitation:
        """Persist the expired status of a pending invitation past its deadline."""
        now = self._now()
        if not invitation.is_past_expiry(now):
            return invitation

        batch = self.db.batch()
        batch.update(
            INVITATIONS_COLLECTION,
            invitation.id,
            {"status": InvitationStatus.EXPIRED.value, "updated_at": ts(now)},
            expected_version=invitation.version,
        )
        try:
            await batch.commit()
        except ConcurrentModificationError:
            # another writer moved it first; report what it wrote
            data = await self.db.get(INVITATIONS_COLLECTION, invitation.id)
            if not data:
                raise InvitationNotFoundError(invitation.id)
            return Invitation.model_validate(data)

        logger.info(f"Invitation expired: {invitation.id}")
        return invitation.model_copy(update={
            "status": InvitationStatus.EXPIRED,
            "updated_at": now,
            "version": invitation.version + 1,
        })

    async def _sweep(
        self,
        invitations: List[Invitation],
        organization_id: Optional[str],
    ) -> List[Invitation]:
        """
        Expire every overdue pending invitation in one batch.

        Returns:
            The invitations that are still pending.
        """
        now = self._now()
        overdue = [i for i in invitations if i.is_past_expiry(now)]
        live = [i for i in invitations if i.status == InvitationStatus.PENDING and not i.is_past_expiry(now)]
        if not overdue:
            return live

        batch = self.db.batch()
        for invitation in overdue:
            batch.update(
                INVITATIONS_COLLECTION,
                invitation.id,
                {"status": InvitationStatus.EXPIRED.value, "updated_at": ts(now)},
                expected_version=invitation.version,
            )
        try:
            await batch.commit()
        except ConcurrentModificationError as e:
            # left pending in storage; the next read sweeps them again
            logger.warning(f"Invitation sweep skipped: {e}")
            return live

        await self._audit(
            actor_id=SYSTEM_ACTOR_ID,
            actor_email=SYSTEM_ACTOR_EMAIL,
            organization_id=organization_id,
            category=AuditCategory.INVITATION,
            action=AuditAction.EXPIRE,
            resource_type=ResourceType.INVITATION,
            description=f"Expired {len(overdue)} pending invitation(s)",
            metadata={"invitation_ids": [i.id for i in overdue]},
        )
        logger.info(f"Expired {len(overdue)} pending invitations")
        return live

    async def _finish(
        self,
        invitation: Invitation,
        status: InvitationStatus,
        action: AuditAction,
        actor_id: str,
        actor_email: Optional[str],
    ) -> None:
        now = self._now()
        batch = self.db.batch()
        batch.update(
            INVITATIONS_COLLECTION,
            invitation.id,
            {"status": status.value, "updated_at": ts(now)},
            expected_version=invitation.version,
        )
        await batch.commit()

        await self._audit(
            actor_id=actor_id,
            actor_email=actor_email,
            organization_id=(
                invitation.organization_id
                or invitation.agency_invitation.parent_organization_id
            ),
            category=AuditCategory.INVITATION,
            action=action,
            resource_type=ResourceType.INVITATION,
            resource_id=invitation.id,
            description=f"Invitation {status.value}",
            metadata={"email": invitation.email},
        )
        logger.info(f"Invitation {invitation.id} {status.value}")
