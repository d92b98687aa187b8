"""Collection names and fixed tables shared by the organization services."""

from typing import Dict

from orgaccess.types.organization import OrganizationSettings, OrganizationType

ORGANIZATIONS_COLLECTION = "organizations"
MEMBERSHIPS_COLLECTION = "memberships"
ROLES_COLLECTION = "roles"
INVITATIONS_COLLECTION = "invitations"

SYSTEM_ACTOR_ID = "system"
SYSTEM_ACTOR_EMAIL = "system@orgaccess.local"

DEFAULT_INVITATION_EXPIRY_HOURS = 72

# Settings applied at creation time, keyed by organization type
ORGANIZATION_TYPE_SETTINGS: Dict[OrganizationType, OrganizationSettings] = {
    OrganizationType.BASIC: OrganizationSettings(
        allow_suborganizations=False,
        max_users=5,
        max_suborganizations=0,
    ),
    OrganizationType.PROFESSIONAL: OrganizationSettings(
        allow_suborganizations=False,
        max_users=20,
        max_suborganizations=0,
    ),
    OrganizationType.ENTERPRISE: OrganizationSettings(
        allow_suborganizations=True,
        max_users=100,
        max_suborganizations=10,
    ),
    OrganizationType.AGENCY: OrganizationSettings(
        allow_suborganizations=True,
        max_users=50,
        max_suborganizations=50,
    ),
}

# Organization fields fixed after creation
IMMUTABLE_ORGANIZATION_FIELDS = frozenset({
    "id",
    "created_at",
    "root_id",
    "path",
    "owner_id",
    "parent_id",
})

# Membership fields fixed after creation
IMMUTABLE_MEMBERSHIP_FIELDS = frozenset({
    "id",
    "user_id",
    "organization_id",
    "created_at",
    "joined_at",
})


def settings_for_type(org_type: OrganizationType) -> OrganizationSettings:
    """Return a fresh copy of the settings row for an organization type."""
    return ORGANIZATION_TYPE_SETTINGS[org_type].model_copy(deep=True)


def membership_id(organization_id: str, user_id: str) -> str:
    """Membership documents are keyed by their (organization, user) pair."""
    return f"{organization_id}_{user_id}"
