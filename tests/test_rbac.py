"""
Tests for the pure RBAC helpers and the permission resolver.
"""

from datetime import datetime, timezone

import pytest

from orgaccess.organizations.exceptions import InvalidPermissionError
from orgaccess.organizations.rbac import (
    ALL_ACTIONS,
    ALL_RESOURCES,
    MEMBER_ROLE_ID,
    OWNER_ROLE_ID,
    SYSTEM_ROLE_DEFINITIONS,
    ConditionEvaluator,
    PermissionResolver,
    expand_grant,
    grant_matches,
    normalize_permission_string,
    parse_permission_string,
    system_role_id,
)
from orgaccess.types.organization import (
    Membership,
    MembershipPermissions,
    MembershipStatus,
    MembershipType,
    Permission,
    Role,
    RoleScope,
    Wildcard,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_membership(**overrides):
    data = dict(
        id="o1_u1",
        user_id="u1",
        organization_id="o1",
        roles=["r1"],
        joined_at=NOW,
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    return Membership(**data)


def make_role(*grants, role_id="r1"):
    return Role(
        id=role_id,
        name=role_id,
        organization_id="o1",
        permissions=[Permission(resource=r, action=a) for r, a in grants],
        created_at=NOW,
        updated_at=NOW,
    )


class DenyAll(ConditionEvaluator):
    def evaluate(self, conditions, context):
        return False


class TestPermissionStrings:

    def test_parse_normalizes_case(self):
        assert parse_permission_string(" Inventory:READ ") == ("inventory", "read")

    def test_wildcards_allowed(self):
        assert normalize_permission_string("*:*") == "*:*"
        assert normalize_permission_string("order:*") == "order:*"

    @pytest.mark.parametrize("value", ["inventory", "a:b:c", ":read", "inv entory:read"])
    def test_malformed_rejected(self, value):
        with pytest.raises(InvalidPermissionError):
            parse_permission_string(value)


class TestSystemCatalog:

    def test_stable_ids(self):
        assert system_role_id("Organization Owner") == "system-organization-owner"
        assert OWNER_ROLE_ID == "system-organization-owner"
        assert MEMBER_ROLE_ID == "system-member"

    def test_catalog_validates(self):
        names = [d["name"] for d in SYSTEM_ROLE_DEFINITIONS]
        assert len(names) == len(set(names)) == 7

        for definition in SYSTEM_ROLE_DEFINITIONS:
            Role(
                id=system_role_id(definition["name"]),
                name=definition["name"],
                scope=RoleScope.SYSTEM,
                permissions=definition["permissions"],
                created_at=NOW,
                updated_at=NOW,
            )

    def test_only_member_is_default(self):
        defaults = [d["name"] for d in SYSTEM_ROLE_DEFINITIONS if d.get("is_default")]
        assert defaults == ["Member"]


class TestGrantMatching:

    def test_wildcard_is_tagged(self):
        grant = Permission(resource="*", action="read")
        assert grant.resource == Wildcard.ANY
        assert grant.action == "read"
        assert grant.as_string() == "*:read"

    def test_grant_matches(self):
        assert grant_matches(Permission(resource="order", action="*"), "order", "delete")
        assert grant_matches(Permission(resource="*", action="read"), "task", "read")
        assert not grant_matches(Permission(resource="order", action="read"), "order", "update")

    def test_expand_resource_wildcard(self):
        expanded = expand_grant(Permission(resource="order", action="*"))
        assert "order:*" in expanded
        assert {f"order:{a}" for a in ALL_ACTIONS} <= expanded

    def test_expand_full_wildcard(self):
        expanded = expand_grant(Permission(resource="*", action="*"))
        assert "*:*" in expanded
        assert {f"{r}:{a}" for r in ALL_RESOURCES for a in ALL_ACTIONS} <= expanded


class TestPermissionResolver:

    def test_owner_short_circuit(self):
        resolver = PermissionResolver()
        owner = make_membership(type=MembershipType.OWNER, roles=[])
        assert resolver.has_permission(owner, [], "billing", "delete")

    def test_removed_membership_denied(self):
        resolver = PermissionResolver()
        removed = make_membership(status=MembershipStatus.REMOVED)
        assert not resolver.has_permission(removed, [make_role(("*", "*"))], "order", "read")
        assert resolver.effective_permissions(removed, [make_role(("*", "*"))]) == set()

    def test_custom_then_restricted_then_roles(self):
        resolver = PermissionResolver()
        membership = make_membership(permissions=MembershipPermissions(
            custom_permissions=["billing:read"],
            restricted_permissions=["order:delete"],
        ))
        roles = [make_role(("order", "*"))]

        assert resolver.has_permission(membership, roles, "billing", "read")
        assert not resolver.has_permission(membership, roles, "order", "delete")
        assert resolver.has_permission(membership, roles, "order", "update")
        assert not resolver.has_permission(membership, roles, "task", "read")

    def test_conditions_go_through_evaluator(self):
        role = Role(
            id="r1",
            name="r1",
            organization_id="o1",
            permissions=[Permission(
                resource="task",
                action="read",
                conditions=[{"type": "ownership", "field": "assigneeId"}],
            )],
            created_at=NOW,
            updated_at=NOW,
        )
        membership = make_membership()

        assert PermissionResolver().has_permission(membership, [role], "task", "read")
        assert not PermissionResolver(DenyAll()).has_permission(membership, [role], "task", "read")

    def test_restricted_always_removed_from_effective(self):
        resolver = PermissionResolver()
        membership = make_membership(permissions=MembershipPermissions(
            restricted_permissions=["order:read"],
        ))

        effective = resolver.effective_permissions(membership, [make_role(("*", "*"))])

        assert "order:read" not in effective
        assert "order:update" in effective

    def test_effective_is_monotonic_in_grants(self):
        resolver = PermissionResolver()
        membership = make_membership()
        before = resolver.effective_permissions(membership, [make_role(("order", "read"))])
        after = resolver.effective_permissions(
            membership, [make_role(("order", "read"), ("task", "*"))]
        )
        assert before <= after
        assert "task:update" in after - before
