"""
Tests for the invitation service.

Covers:
- Invitation creation guards and token handling
- Acceptance, decline and revoke transitions
- Lazy expiry and the pending sweeps
- Agency invitations provisioning a child organization
"""

import hashlib

import pytest

from conftest import USERS, add_member
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
    RoleNotFoundError,
)
from orgaccess.organizations.invitation_service import hash_token
from orgaccess.organizations.rbac import MEMBER_ROLE_ID, OWNER_ROLE_ID
from orgaccess.types.organization import (
    AuditAction,
    AuditLogQuery,
    InvitationStatus,
    MembershipType,
    OrganizationType,
)

INVITER = ("u1", USERS["u1"])


async def invite(engine, organization_id, email="Bob@Example.com", **kwargs):
    return await engine.invitations.create_invitation(email, organization_id, *INVITER, **kwargs)


@pytest.fixture
async def agency(engine, users):
    return await engine.organizations.create_organization(
        "Agency", "u1", USERS["u1"], OrganizationType.AGENCY
    )


class TestCreateInvitation:

    async def test_create_stores_only_token_hash(self, engine, clock, org_a):
        before = clock.current
        invitation = await invite(engine, org_a.id)

        assert invitation.email == "bob@example.com"
        assert invitation.status == InvitationStatus.PENDING
        assert invitation.token
        assert invitation.token_hash == hashlib.sha256(invitation.token.encode()).hexdigest()
        assert 72 * 3600 <= (invitation.expires_at - before).total_seconds() < 72 * 3600 + 1

        stored = await engine.store.get("invitations", invitation.id)
        assert "token" not in stored
        assert stored["token_hash"] == hash_token(invitation.token)

        fetched = await engine.invitations.get_invitation_by_token(invitation.token)
        assert fetched.id == invitation.id
        assert fetched.token is None

    async def test_duplicate_pending_conflicts(self, engine, org_a):
        await invite(engine, org_a.id)
        with pytest.raises(InviteExistsError):
            await invite(engine, org_a.id, email="bob@example.com")

    async def test_existing_member_conflicts(self, engine, org_a):
        await add_member(engine, "u2", org_a.id)
        with pytest.raises(MemberExistsError):
            await invite(engine, org_a.id)

    async def test_guards(self, engine, org_a):
        with pytest.raises(OwnerMembershipError):
            await invite(engine, org_a.id, membership_type=MembershipType.OWNER)
        with pytest.raises(InvalidPatchError):
            await invite(engine, org_a.id, email="not-an-email")
        with pytest.raises(RoleNotFoundError):
            await invite(engine, org_a.id, roles=["no-such-role"])


class TestAcceptInvitation:

    async def test_accept_creates_membership(self, engine, org_a):
        manager = await engine.roles.get_system_role_by_name("Manager")
        invitation = await invite(engine, org_a.id, roles=[manager.id])

        assert await engine.invitations.accept_invitation(invitation.token, "u2", "bob@example.com")

        membership = await engine.memberships.get_membership("u2", org_a.id)
        assert membership.roles == [manager.id]
        assert membership.is_default

        accepted = await engine.invitations.get_invitation_by_id(invitation.id)
        assert accepted.status == InvitationStatus.ACCEPTED
        assert accepted.accepted_by_user_id == "u2"
        assert accepted.accepted_at is not None

        with pytest.raises(InvitationNotPendingError) as exc_info:
            await engine.invitations.accept_invitation(invitation.token, "u2", "bob@example.com")
        assert exc_info.value.status == "accepted"

    async def test_accept_without_roles_grants_member(self, engine, org_a):
        invitation = await invite(engine, org_a.id)
        await engine.invitations.accept_invitation(invitation.token, "u2", "BOB@example.com")

        membership = await engine.memberships.get_membership("u2", org_a.id)
        assert membership.roles == [MEMBER_ROLE_ID]

    async def test_email_mismatch(self, engine, org_a):
        invitation = await invite(engine, org_a.id)
        with pytest.raises(InvitationEmailMismatchError):
            await engine.invitations.accept_invitation(invitation.token, "u3", USERS["u3"])

        assert await engine.memberships.get_membership("u3", org_a.id) is None

    async def test_unknown_token(self, engine, org_a):
        with pytest.raises(InvitationNotFoundError) as exc_info:
            await engine.invitations.accept_invitation("bogus-token", "u2", USERS["u2"])
        assert "bogus-token" not in str(exc_info.value)


class TestExpiry:

    async def test_expiry_scenario(self, engine, clock, org_a):
        invitation = await invite(engine, org_a.id, email="a@x.com", expires_in=1)

        clock.advance(hours=1, seconds=1)

        pending = await engine.invitations.get_pending_organization_invitations(org_a.id)
        assert pending == []

        expired = await engine.invitations.get_invitation_by_id(invitation.id)
        assert expired.status == InvitationStatus.EXPIRED

        with pytest.raises(InvitationExpiredError):
            await engine.invitations.accept_invitation(invitation.token, "u2", "a@x.com")

        entries, _ = await engine.audit.query(
            AuditLogQuery(actor_id="system", action=AuditAction.EXPIRE)
        )
        assert len(entries) == 1
        assert entries[0].metadata["invitation_ids"] == [invitation.id]

    async def test_lazy_expiry_on_accept(self, engine, clock, org_a):
        invitation = await invite(engine, org_a.id, expires_in=1)
        clock.advance(hours=2)

        with pytest.raises(InvitationExpiredError):
            await engine.invitations.accept_invitation(invitation.token, "u2", USERS["u2"])

        stored = await engine.store.get("invitations", invitation.id)
        assert stored["status"] == "expired"

    async def test_reinvite_after_expiry(self, engine, clock, org_a):
        await invite(engine, org_a.id, expires_in=1)
        clock.advance(hours=2)

        fresh = await invite(engine, org_a.id)

        pending = await engine.invitations.get_pending_invitations_for_email("bob@example.com")
        assert [i.id for i in pending] == [fresh.id]


class TestDeclineAndRevoke:

    async def test_decline(self, engine, org_a):
        invitation = await invite(engine, org_a.id)

        assert await engine.invitations.decline_invitation(invitation.token, "u2", USERS["u2"])

        declined = await engine.invitations.get_invitation_by_id(invitation.id)
        assert declined.status == InvitationStatus.DECLINED
        with pytest.raises(InvitationNotPendingError):
            await engine.invitations.revoke_invitation(invitation.id, *INVITER)

    async def test_revoke(self, engine, org_a):
        invitation = await invite(engine, org_a.id)

        assert await engine.invitations.revoke_invitation(invitation.id, *INVITER)

        revoked = await engine.invitations.get_invitation_by_id(invitation.id)
        assert revoked.status == InvitationStatus.REVOKED
        with pytest.raises(InvitationNotPendingError):
            await engine.invitations.accept_invitation(invitation.token, "u2", USERS["u2"])

        listed = await engine.invitations.get_organization_invitations(
            org_a.id, InvitationStatus.REVOKED
        )
        assert [i.id for i in listed] == [invitation.id]

    async def test_revoke_unknown(self, engine, org_a):
        with pytest.raises(InvitationNotFoundError):
            await engine.invitations.revoke_invitation("missing", *INVITER)


class TestAgencyInvitation:

    async def test_requires_agency_parent(self, engine, users):
        professional = await engine.organizations.create_organization(
            "Pro", "u1", USERS["u1"], OrganizationType.PROFESSIONAL
        )
        with pytest.raises(NotAgencyError):
            await engine.invitations.create_agency_invitation(
                "bob@example.com", professional.id, "Client", *INVITER
            )

    async def test_accept_provisions_child_organization(self, engine, agency):
        invitation = await engine.invitations.create_agency_invitation(
            "bob@example.com", agency.id, "Client Co", *INVITER
        )
        assert invitation.organization_id is None
        assert invitation.is_agency

        pending = await engine.invitations.get_pending_agency_invitations(agency.id)
        assert [i.id for i in pending] == [invitation.id]

        assert await engine.invitations.accept_invitation(invitation.token, "u2", "bob@example.com")

        children = await engine.organizations.get_child_organizations(agency.id)
        assert len(children) == 1
        child = children[0]
        assert child.name == "Client Co"
        assert child.type == OrganizationType.PROFESSIONAL
        assert child.owner_id == "u2"
        assert child.path == [agency.id, child.id]
        assert child.root_id == agency.root_id

        owner = await engine.memberships.get_membership("u2", child.id)
        assert owner.type == MembershipType.OWNER
        assert owner.roles == [OWNER_ROLE_ID]
        assert owner.is_default

        parent_membership = await engine.memberships.get_membership("u2", agency.id)
        assert parent_membership.type == MembershipType.MEMBER
        assert parent_membership.roles == [MEMBER_ROLE_ID]
        assert not parent_membership.is_default

        user = await engine.users.get_user_by_id("u2")
        assert set(user.organizations) == {agency.id, child.id}
        assert user.default_organization_id == child.id

        accepted = await engine.invitations.get_invitation_by_id(invitation.id)
        assert accepted.status == InvitationStatus.ACCEPTED
        assert accepted.organization_id == child.id

        history = await engine.invitations.get_agency_invitations(agency.id)
        assert [i.id for i in history] == [invitation.id]

    async def test_duplicate_agency_invitation(self, engine, agency):
        await engine.invitations.create_agency_invitation(
            "bob@example.com", agency.id, "Client Co", *INVITER
        )
        with pytest.raises(InviteExistsError):
            await engine.invitations.create_agency_invitation(
                "bob@example.com", agency.id, "Other", *INVITER
            )
