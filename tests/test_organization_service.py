"""
Tests for the organization service.

Covers:
- Root and child organization creation
- Single-default and single-owner invariants after creation and transfer
- Updates with immutable-field protection
- Deletion with pointer repair
"""

import pytest

from conftest import USERS, add_member, default_memberships
from orgaccess.organizations.exceptions import (
    ImmutableFieldError,
    InvalidPatchError,
    MembershipNotFoundError,
    OrganizationHasChildrenError,
    OrganizationNotFoundError,
    SuborganizationLimitExceededError,
    SuborganizationsNotAllowedError,
    UserNotFoundError,
)
from orgaccess.organizations.rbac import MEMBER_ROLE_ID, OWNER_ROLE_ID
from orgaccess.types.organization import (
    AuditLogQuery,
    AuditSeverity,
    MembershipType,
    OrganizationStatus,
    OrganizationType,
)

ACTOR = ("u1", USERS["u1"])


async def assert_single_owner(engine, organization_id):
    organization = await engine.organizations.get_organization_by_id(organization_id)
    members = await engine.memberships.get_organization_members(organization_id)
    owners = [m for m in members if m.type == MembershipType.OWNER]
    assert len(owners) == 1
    assert owners[0].user_id == organization.owner_id


class TestCreateOrganization:

    async def test_root_organization(self, engine, org_a):
        assert org_a.path == [org_a.id]
        assert org_a.root_id == org_a.id
        assert org_a.parent_id is None
        assert org_a.owner_id == "u1"
        assert org_a.settings.allow_suborganizations
        assert org_a.settings.max_users == 100
        assert org_a.settings.max_suborganizations == 10
        assert org_a.settings.default_user_role == "member"

        owner = await engine.memberships.get_membership("u1", org_a.id)
        assert owner.type == MembershipType.OWNER
        assert owner.roles == [OWNER_ROLE_ID]
        assert owner.is_default

        user = await engine.users.get_user_by_id("u1")
        assert user.default_organization_id == org_a.id
        assert user.organizations == [org_a.id]

        await assert_single_owner(engine, org_a.id)

    async def test_type_settings(self, engine, users):
        basic = await engine.organizations.create_organization("B", "u2", USERS["u2"])
        agency = await engine.organizations.create_organization(
            "Ag", "u2", USERS["u2"], OrganizationType.AGENCY
        )

        assert (basic.settings.max_users, basic.settings.max_suborganizations) == (5, 0)
        assert not basic.settings.allow_suborganizations
        assert (agency.settings.max_users, agency.settings.max_suborganizations) == (50, 50)

    async def test_new_organization_takes_default(self, engine, org_a):
        org_b = await engine.organizations.create_organization("Org-B", "u1", USERS["u1"])

        defaults = await default_memberships(engine, "u1")
        assert [m.organization_id for m in defaults] == [org_b.id]

        user = await engine.users.get_user_by_id("u1")
        assert user.default_organization_id == org_b.id
        assert set(user.organizations) == {org_a.id, org_b.id}

    async def test_child_organization(self, engine, org_a):
        child = await engine.organizations.create_organization(
            "Child", "u2", USERS["u2"], parent_id=org_a.id
        )

        assert child.parent_id == org_a.id
        assert child.path == [org_a.id, child.id]
        assert child.root_id == org_a.root_id

        grandchild_parent = await engine.organizations.create_organization(
            "Sub", "u2", USERS["u2"], OrganizationType.ENTERPRISE, parent_id=org_a.id
        )
        grandchild = await engine.organizations.create_organization(
            "Leaf", "u3", USERS["u3"], parent_id=grandchild_parent.id
        )
        assert grandchild.path == [org_a.id, grandchild_parent.id, grandchild.id]
        assert grandchild.root_id == org_a.id

    async def test_parent_must_allow_children(self, engine, users):
        basic = await engine.organizations.create_organization("B", "u1", USERS["u1"])
        with pytest.raises(SuborganizationsNotAllowedError):
            await engine.organizations.create_organization(
                "Child", "u1", USERS["u1"], parent_id=basic.id
            )

    async def test_missing_parent_or_owner(self, engine, users):
        with pytest.raises(OrganizationNotFoundError):
            await engine.organizations.create_organization(
                "Child", "u1", USERS["u1"], parent_id="nope"
            )
        with pytest.raises(UserNotFoundError):
            await engine.organizations.create_organization("X", "ghost", "ghost@example.com")

    async def test_suborganization_limit(self, engine, org_a):
        await engine.organizations.update_organization(
            org_a.id,
            {"settings": {"allow_suborganizations": True, "max_users": 100, "max_suborganizations": 1}},
            *ACTOR,
        )
        await engine.organizations.create_organization("C1", "u1", USERS["u1"], parent_id=org_a.id)

        with pytest.raises(SuborganizationLimitExceededError):
            await engine.organizations.create_organization(
                "C2", "u1", USERS["u1"], parent_id=org_a.id
            )


class TestUpdateOrganization:

    async def test_update_name_and_status(self, engine, org_a):
        updated = await engine.organizations.update_organization(
            org_a.id, {"name": "Org-A2", "status": "suspended"}, *ACTOR
        )

        assert updated.name == "Org-A2"
        assert updated.status == OrganizationStatus.SUSPENDED
        assert updated.path == org_a.path

        entries, _ = await engine.audit.query(AuditLogQuery(resource_id=org_a.id, action="update"))
        assert entries[0].metadata["before"]["name"] == "Org-A"
        assert entries[0].metadata["after"]["name"] == "Org-A2"

    @pytest.mark.parametrize("field", ["owner_id", "parent_id", "path", "root_id", "created_at"])
    async def test_immutable_fields(self, engine, org_a, field):
        with pytest.raises(ImmutableFieldError):
            await engine.organizations.update_organization(org_a.id, {field: "x"}, *ACTOR)

    async def test_invalid_patch(self, engine, org_a):
        with pytest.raises(InvalidPatchError):
            await engine.organizations.update_organization(org_a.id, {"name": ""}, *ACTOR)
        with pytest.raises(InvalidPatchError):
            await engine.organizations.update_organization(org_a.id, {"colour": "red"}, *ACTOR)

    async def test_basic_cannot_allow_children(self, engine, users):
        basic = await engine.organizations.create_organization("B", "u1", USERS["u1"])
        with pytest.raises(InvalidPatchError):
            await engine.organizations.update_organization(
                basic.id, {"settings": {"allow_suborganizations": True}}, *ACTOR
            )


class TestChangeOwner:

    async def test_org_a_ownership_scenario(self, engine, org_a):
        member = await add_member(engine, "u2", org_a.id, roles=[])
        assert member.roles == [MEMBER_ROLE_ID]
        assert member.is_default

        organization = await engine.organizations.change_owner(org_a.id, "u2", *ACTOR)

        assert organization.owner_id == "u2"
        previous = await engine.memberships.get_membership("u1", org_a.id)
        new = await engine.memberships.get_membership("u2", org_a.id)
        assert previous.type == MembershipType.MEMBER
        assert OWNER_ROLE_ID not in previous.roles
        assert previous.roles == [MEMBER_ROLE_ID]
        assert new.type == MembershipType.OWNER
        assert OWNER_ROLE_ID in new.roles
        await assert_single_owner(engine, org_a.id)

        entries, _ = await engine.audit.query(AuditLogQuery(organization_id=org_a.id, action="transfer"))
        assert entries[0].severity == AuditSeverity.ALERT

    async def test_target_must_be_member(self, engine, org_a):
        with pytest.raises(MembershipNotFoundError):
            await engine.organizations.change_owner(org_a.id, "u3", *ACTOR)


class TestDeleteOrganization:

    async def test_children_block_delete(self, engine, org_a):
        await engine.organizations.create_organization("C", "u2", USERS["u2"], parent_id=org_a.id)
        with pytest.raises(OrganizationHasChildrenError):
            await engine.organizations.delete_organization(org_a.id, *ACTOR)

    async def test_delete_repairs_pointers(self, engine, org_a):
        await add_member(engine, "u2", org_a.id)
        org_c = await engine.organizations.create_organization("Org-C", "u3", USERS["u3"])
        await engine.memberships.add_user_to_organization(
            "u2", org_c.id, "u3", USERS["u3"]
        )

        assert await engine.organizations.delete_organization(org_a.id, *ACTOR)

        assert await engine.organizations.get_organization_by_id(org_a.id) is None
        assert await engine.memberships.get_organization_members(org_a.id, include_removed=True) == []

        u2 = await engine.users.get_user_by_id("u2")
        assert u2.organizations == [org_c.id]
        assert u2.default_organization_id == org_c.id
        assert [m.organization_id for m in await default_memberships(engine, "u2")] == [org_c.id]

        u1 = await engine.users.get_user_by_id("u1")
        assert u1.organizations == []
        assert u1.default_organization_id is None


class TestQueries:

    async def test_lookup_helpers(self, engine, org_a):
        child = await engine.organizations.create_organization(
            "Child", "u2", USERS["u2"], parent_id=org_a.id
        )

        assert [o.id for o in await engine.organizations.get_child_organizations(org_a.id)] == [child.id]
        assert [o.id for o in await engine.organizations.get_user_organizations("u2")] == [child.id]
        enterprise = await engine.organizations.get_organizations_by_type(OrganizationType.ENTERPRISE)
        assert [o.id for o in enterprise] == [org_a.id]
