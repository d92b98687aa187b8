"""
Organization, membership, role, invitation and audit type definitions.

This module defines Pydantic models for:
- Organizations and their hierarchy (parent/child, path, root)
- Memberships linking users to organizations
- Roles and permission grants (with the ``*`` wildcard)
- Invitations, including agency invitations
- Audit log entries
- The user records kept by the user directory

Every stored document carries a ``version`` counter maintained by the
document store for optimistic concurrency.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =============================================================================
# Enums
# =============================================================================


class OrganizationType(str, Enum):
    """
    Organization types.

    The type selects the fixed settings table (member and suborganization
    limits) applied when the organization is created.
    """
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"
    AGENCY = "agency"


class OrganizationStatus(str, Enum):
    """Lifecycle status of an organization."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    ARCHIVED = "archived"


class MembershipStatus(str, Enum):
    """Status of a membership edge. Removed memberships are kept, never deleted."""
    ACTIVE = "active"
    REMOVED = "removed"


class MembershipType(str, Enum):
    """Membership types. Exactly one active owner exists per organization."""
    OWNER = "owner"
    MEMBER = "member"


class RoleScope(str, Enum):
    """Where a role is defined."""
    SYSTEM = "system"
    ORGANIZATION = "organization"


class Wildcard(str, Enum):
    """Tagged wildcard matching every resource or every action."""
    ANY = "*"


class ConditionType(str, Enum):
    """Kinds of permission conditions."""
    OWNERSHIP = "ownership"
    ATTRIBUTE = "attribute"
    TEAM = "team"
    HIERARCHY = "hierarchy"
    CUSTOM = "custom"


class InvitationStatus(str, Enum):
    """Status of an invitation. Everything except pending is terminal."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    REVOKED = "revoked"


class AuditCategory(str, Enum):
    """Audit log categories."""
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    ORGANIZATION = "organization"
    USER = "user"
    ROLE = "role"
    INVITATION = "invitation"


class AuditAction(str, Enum):
    """Audit log action types."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    JOIN = "join"
    INVITE = "invite"
    ACCEPT = "accept"
    DECLINE = "decline"
    EXPIRE = "expire"
    ASSIGN = "assign"
    REVOKE = "revoke"
    TRANSFER = "transfer"
    ACCESS = "access"


class AuditSeverity(str, Enum):
    """Audit log severities. Ownership transfers are logged as alerts."""
    INFO = "info"
    WARNING = "warning"
    ALERT = "alert"


class ResourceType(str, Enum):
    """Types of resources that can be audited."""
    ORGANIZATION = "organization"
    MEMBERSHIP = "membership"
    ROLE = "role"
    INVITATION = "invitation"


# =============================================================================
# Organization Models
# =============================================================================


class OrganizationSettings(BaseModel):
    """Type-derived organization settings."""
    allow_suborganizations: bool = False
    max_users: int = Field(default=5, ge=0)
    max_suborganizations: int = Field(default=0, ge=0)
    default_user_role: str = "member"


class Organization(BaseModel):
    """
    Tenant organization.

    ``path`` lists ancestor ids from the root down to and including this
    organization; ``root_id`` is the first element of ``path``.
    """
    id: str
    name: str = Field(..., min_length=1, max_length=200)
    type: OrganizationType = OrganizationType.BASIC
    status: OrganizationStatus = OrganizationStatus.ACTIVE
    owner_id: str
    parent_id: Optional[str] = None
    root_id: str
    path: List[str] = Field(default_factory=list)
    settings: OrganizationSettings = Field(default_factory=OrganizationSettings)
    created_at: datetime
    updated_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class OrganizationUpdate(BaseModel):
    """Mutable organization fields accepted by update_organization."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    status: Optional[OrganizationStatus] = None
    settings: Optional[OrganizationSettings] = None

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Membership Models
# =============================================================================


PERMISSION_STRING_PATTERN = re.compile(r"^[A-Za-z0-9_*-]+:[A-Za-z0-9_*-]+$")


class MembershipPermissions(BaseModel):
    """Per-membership permission overrides, each entry ``resource:action``."""
    custom_permissions: List[str] = Field(default_factory=list)
    restricted_permissions: List[str] = Field(default_factory=list)

    @field_validator("custom_permissions", "restricted_permissions")
    @classmethod
    def validate_permission_strings(cls, v: List[str]) -> List[str]:
        """Reject malformed entries and drop duplicates, keeping order."""
        seen: List[str] = []
        for item in v:
            if not PERMISSION_STRING_PATTERN.match(item):
                raise ValueError(f"Invalid permission string: {item!r}")
            if item not in seen:
                seen.append(item)
        return seen


class Membership(BaseModel):
    """Edge linking one user to one organization."""
    id: str
    user_id: str
    organization_id: str
    status: MembershipStatus = MembershipStatus.ACTIVE
    type: MembershipType = MembershipType.MEMBER
    roles: List[str] = Field(default_factory=list)
    is_default: bool = False
    permissions: MembershipPermissions = Field(default_factory=MembershipPermissions)
    joined_at: datetime
    created_at: datetime
    updated_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @field_validator("roles")
    @classmethod
    def dedupe_roles(cls, v: List[str]) -> List[str]:
        """Roles are a set; keep first occurrence order."""
        return list(dict.fromkeys(v))

    @property
    def is_active(self) -> bool:
        return self.status == MembershipStatus.ACTIVE

    @property
    def is_owner(self) -> bool:
        return self.type == MembershipType.OWNER


class MembershipUpdate(BaseModel):
    """Mutable membership fields accepted by update_membership."""
    status: Optional[MembershipStatus] = None
    type: Optional[MembershipType] = None
    roles: Optional[List[str]] = None
    is_default: Optional[bool] = None
    permissions: Optional[MembershipPermissions] = None

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Role Models
# =============================================================================


class PermissionCondition(BaseModel):
    """
    Opaque condition attached to a permission grant.

    Conditions are carried and stored but evaluated only through the
    pluggable ConditionEvaluator in ``orgaccess.organizations.rbac``.
    """
    type: ConditionType
    field: Optional[str] = None
    value: Any = None
    operator: Optional[str] = None
    expression: Optional[str] = None


class Permission(BaseModel):
    """A ``resource:action`` grant; either side may be ``Wildcard.ANY``."""
    resource: Union[Wildcard, str] = Field(..., union_mode="left_to_right")
    action: Union[Wildcard, str] = Field(..., union_mode="left_to_right")
    conditions: List[PermissionCondition] = Field(default_factory=list)

    @field_validator("resource", "action")
    @classmethod
    def validate_part(cls, v: Union[Wildcard, str]) -> Union[Wildcard, str]:
        if isinstance(v, Wildcard):
            return v
        v = v.strip().lower()
        if not v or ":" in v or "*" in v:
            raise ValueError(f"Invalid permission component: {v!r}")
        return v

    def as_string(self) -> str:
        """Render as ``resource:action`` with ``*`` for wildcards."""
        return f"{_part_str(self.resource)}:{_part_str(self.action)}"


def _part_str(part: Union[Wildcard, str]) -> str:
    return part.value if isinstance(part, Wildcard) else part


class Role(BaseModel):
    """
    Named bundle of permissions.

    System roles are shared by every organization; organization roles have
    ``organization_id`` set and are only usable inside that organization.
    """
    id: str
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    scope: RoleScope = RoleScope.ORGANIZATION
    organization_id: Optional[str] = None
    permissions: List[Permission] = Field(default_factory=list)
    is_built_in: bool = False
    is_default: bool = False
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @model_validator(mode="after")
    def check_scope(self) -> "Role":
        if self.scope == RoleScope.ORGANIZATION and not self.organization_id:
            raise ValueError("Organization roles require organization_id")
        if self.scope == RoleScope.SYSTEM and self.organization_id:
            raise ValueError("System roles cannot have organization_id")
        return self


class RoleUpdate(BaseModel):
    """Mutable role fields accepted by update_role."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    permissions: Optional[List[Permission]] = None
    is_default: Optional[bool] = None

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Invitation Models
# =============================================================================


EMAIL_PATTERN = re.compile(r"^[a-z0-9._%+-]+@[a-z0-9.-]+\.[a-z]{2,}$")


def normalize_email(email: str) -> str:
    """Lower-case and strip an email address, validating its shape."""
    v = email.lower().strip()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email address format")
    return v


class AgencyInvitation(BaseModel):
    """Payload of an invitation that provisions a child organization."""
    parent_organization_id: str
    organization_name: str = Field(..., min_length=1, max_length=200)


class Invitation(BaseModel):
    """
    Invitation to join (or, for agencies, to create) an organization.

    Only ``token_hash`` is persisted. ``token`` is populated on the object
    returned by the create call and is never stored.
    """
    id: str
    email: str
    organization_id: Optional[str] = None
    status: InvitationStatus = InvitationStatus.PENDING
    token: Optional[str] = Field(default=None, exclude=True)
    token_hash: str
    invited_by: str
    message: Optional[str] = Field(default=None, max_length=1000)
    type: MembershipType = MembershipType.MEMBER
    roles: List[str] = Field(default_factory=list)
    expires_at: datetime
    agency_invitation: Optional[AgencyInvitation] = None
    accepted_at: Optional[datetime] = None
    accepted_by_user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)

    @property
    def is_agency(self) -> bool:
        return self.agency_invitation is not None

    def is_past_expiry(self, now: datetime) -> bool:
        """True if a pending invitation should be swept to expired."""
        return self.status == InvitationStatus.PENDING and now > self.expires_at


# =============================================================================
# Audit Log Models
# =============================================================================


class AuditLogEntry(BaseModel):
    """Append-only audit record of a mutating action."""
    id: str
    actor_id: str
    actor_email: Optional[str] = None
    organization_id: Optional[str] = None
    category: AuditCategory
    action: AuditAction
    resource_type: str
    resource_id: Optional[str] = None
    description: str
    severity: AuditSeverity = AuditSeverity.INFO
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class AuditLogQuery(BaseModel):
    """Query parameters for filtering audit logs."""
    organization_id: Optional[str] = None
    actor_id: Optional[str] = None
    category: Optional[AuditCategory] = None
    action: Optional[AuditAction] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    severity: Optional[AuditSeverity] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


# =============================================================================
# User Models
# =============================================================================


class User(BaseModel):
    """
    User record as seen by the engine.

    The organization pointers are denormalized copies of membership state.
    """
    id: str
    email: str
    display_name: Optional[str] = None
    default_organization_id: Optional[str] = None
    last_active_organization_id: Optional[str] = None
    organizations: List[str] = Field(default_factory=list)
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return normalize_email(v)
