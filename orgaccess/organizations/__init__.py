"""
Organizations module for membership and permission management.

This module provides:
- Organization hierarchy (root and child organizations) and ownership
- Memberships with a single default organization per user
- Role-based access control with wildcard grants and per-member overrides
- Invitations, including agency invitations that provision client organizations
- Audit logging for compliance

Usage:
    from orgaccess.organizations import (
        OrganizationService,
        RoleService,
        PermissionResource,
        PermissionAction,
    )

    # Create organization
    org = await org_service.create_organization("Acme", user_id, user_email)

    # Check permissions
    if await role_service.has_permission(user_id, org.id, "content", "create"):
        # Allow action
        pass
"""

from orgaccess.organizations.audit_service import AuditService
from orgaccess.organizations.exceptions import (
    AuditWriteWarning,
    BuiltInRoleError,
    ConflictError,
    ErrorKind,
    ForbiddenError,
    ImmutableFieldError,
    InactiveMembershipError,
    InvalidArgumentError,
    InvalidPatchError,
    InvalidPermissionError,
    InvalidStateError,
    InvitationEmailMismatchError,
    InvitationExpiredError,
    InvitationNotFoundError,
    InvitationNotPendingError,
    InviteExistsError,
    MemberExistsError,
    MemberLimitExceededError,
    MembershipNotFoundError,
    NotAgencyError,
    NotFoundError,
    OrganizationHasChildrenError,
    OrganizationNotFoundError,
    OrganizationServiceError,
    OwnerMembershipError,
    RoleExistsError,
    RoleInUseError,
    RoleNotFoundError,
    RoleScopeError,
    SuborganizationLimitExceededError,
    SuborganizationsNotAllowedError,
    UserNotFoundError,
)
from orgaccess.organizations.invitation_service import InvitationService
from orgaccess.organizations.membership_service import MembershipService
from orgaccess.organizations.organization_service import OrganizationService
from orgaccess.organizations.rbac import (
    MEMBER_ROLE_ID,
    OWNER_ROLE_ID,
    AllowAllConditions,
    ConditionEvaluator,
    PermissionAction,
    PermissionContext,
    PermissionResolver,
    PermissionResource,
)
from orgaccess.organizations.role_service import RoleService
from orgaccess.organizations.user_directory import StoreUserDirectory, UserDirectory

__all__ = [
    # Services
    "OrganizationService",
    "MembershipService",
    "RoleService",
    "InvitationService",
    "AuditService",
    # Collaborators
    "UserDirectory",
    "StoreUserDirectory",
    # RBAC
    "PermissionResource",
    "PermissionAction",
    "PermissionResolver",
    "PermissionContext",
    "ConditionEvaluator",
    "AllowAllConditions",
    "OWNER_ROLE_ID",
    "MEMBER_ROLE_ID",
    # Errors
    "ErrorKind",
    "OrganizationServiceError",
    "AuditWriteWarning",
    "NotFoundError",
    "ConflictError",
    "ForbiddenError",
    "InvalidStateError",
    "InvalidArgumentError",
    "OrganizationNotFoundError",
    "MembershipNotFoundError",
    "RoleNotFoundError",
    "InvitationNotFoundError",
    "UserNotFoundError",
    "MemberExistsError",
    "InviteExistsError",
    "RoleExistsError",
    "RoleInUseError",
    "OrganizationHasChildrenError",
    "MemberLimitExceededError",
    "SuborganizationLimitExceededError",
    "OwnerMembershipError",
    "BuiltInRoleError",
    "SuborganizationsNotAllowedError",
    "ImmutableFieldError",
    "InvitationEmailMismatchError",
    "NotAgencyError",
    "RoleScopeError",
    "InvitationExpiredError",
    "InvitationNotPendingError",
    "InactiveMembershipError",
    "InvalidPatchError",
    "InvalidPermissionError",
]
