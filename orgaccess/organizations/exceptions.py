"""
Exceptions raised by the organization services.

Every business error derives from OrganizationServiceError and carries a
stable ``code`` plus an ``ErrorKind`` the calling layer maps to a status
class (not_found -> 404, conflict -> 409, forbidden -> 403, expired and
invalid_state -> 409, invalid_argument -> 422).
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Category of a business error."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    FORBIDDEN = "forbidden"
    EXPIRED = "expired"
    INVALID_STATE = "invalid_state"
    INVALID_ARGUMENT = "invalid_argument"


class OrganizationServiceError(Exception):
    """Base exception for organization service errors."""

    kind: ErrorKind = ErrorKind.INVALID_ARGUMENT

    def __init__(self, message: str, code: str = "ORG_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class AuditWriteWarning(UserWarning):
    """Emitted when a mutation succeeded but its audit entry was not written."""


# =============================================================================
# Not Found
# =============================================================================


class NotFoundError(OrganizationServiceError):
    kind = ErrorKind.NOT_FOUND


class OrganizationNotFoundError(NotFoundError):
    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(
            f"Organization {organization_id} not found",
            code="ORG_NOT_FOUND",
        )


class MembershipNotFoundError(NotFoundError):
    def __init__(self, user_id: Optional[str] = None, organization_id: Optional[str] = None,
                 membership_id: Optional[str] = None):
        self.user_id = user_id
        self.organization_id = organization_id
        self.membership_id = membership_id
        if membership_id:
            message = f"Membership {membership_id} not found"
        else:
            message = "Active membership not found in this organization"
        super().__init__(message, code="MEMBER_NOT_FOUND")


class RoleNotFoundError(NotFoundError):
    def __init__(self, role_id: str):
        self.role_id = role_id
        super().__init__(f"Role {role_id} not found", code="ROLE_NOT_FOUND")


class InvitationNotFoundError(NotFoundError):
    def __init__(self, reference: str = ""):
        # reference may be a token; never echo it
        super().__init__("Invitation not found", code="INVITE_NOT_FOUND")


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found", code="USER_NOT_FOUND")


# =============================================================================
# Conflict
# =============================================================================


class ConflictError(OrganizationServiceError):
    kind = ErrorKind.CONFLICT


class MemberExistsError(ConflictError):
    """Raised when a user is already an active member."""

    def __init__(self, user_id: str, organization_id: str):
        self.user_id = user_id
        self.organization_id = organization_id
        super().__init__(
            "User is already a member of this organization",
            code="MEMBER_EXISTS",
        )


class InviteExistsError(ConflictError):
    """Raised when a pending invite already exists."""

    def __init__(self, email: str, organization_id: str):
        self.email = email
        self.organization_id = organization_id
        super().__init__(
            f"A pending invitation for {email} already exists",
            code="INVITE_EXISTS",
        )


class RoleExistsError(ConflictError):
    def __init__(self, name: str, organization_id: Optional[str]):
        self.name = name
        self.organization_id = organization_id
        super().__init__(
            f"A role named '{name}' already exists in this scope",
            code="ROLE_EXISTS",
        )


class RoleInUseError(ConflictError):
    def __init__(self, role_id: str, membership_count: int):
        self.role_id = role_id
        self.membership_count = membership_count
        super().__init__(
            f"Role is assigned to {membership_count} active membership(s)",
            code="ROLE_IN_USE",
        )


class OrganizationHasChildrenError(ConflictError):
    def __init__(self, organization_id: str, child_count: int):
        self.organization_id = organization_id
        self.child_count = child_count
        super().__init__(
            f"Organization has {child_count} child organization(s)",
            code="ORG_HAS_CHILDREN",
        )


class MemberLimitExceededError(ConflictError):
    """Raised when organization member limit is reached."""

    def __init__(self, organization_id: str, current: int, limit: int):
        self.current = current
        self.limit = limit
        super().__init__(
            f"Organization member limit reached ({current}/{limit})",
            code="MEMBER_LIMIT_EXCEEDED",
        )


class SuborganizationLimitExceededError(ConflictError):
    def __init__(self, organization_id: str, current: int, limit: int):
        self.current = current
        self.limit = limit
        super().__init__(
            f"Suborganization limit reached ({current}/{limit})",
            code="SUBORG_LIMIT_EXCEEDED",
        )


# =============================================================================
# Forbidden
# =============================================================================


class ForbiddenError(OrganizationServiceError):
    kind = ErrorKind.FORBIDDEN


class OwnerMembershipError(ForbiddenError):
    """Raised when an owner membership would be removed or demoted outside change_owner."""

    def __init__(self, message: str = "Ownership must be transferred with change_owner first"):
        super().__init__(message, code="OWNER_MEMBERSHIP")


class BuiltInRoleError(ForbiddenError):
    def __init__(self, role_id: str):
        self.role_id = role_id
        super().__init__("Built-in roles cannot be modified or deleted", code="ROLE_BUILT_IN")


class SuborganizationsNotAllowedError(ForbiddenError):
    def __init__(self, parent_id: str):
        self.parent_id = parent_id
        super().__init__(
            "Parent organization does not allow suborganizations",
            code="SUBORGS_NOT_ALLOWED",
        )


class ImmutableFieldError(ForbiddenError):
    def __init__(self, fields):
        self.fields = sorted(fields)
        super().__init__(
            f"Fields cannot be changed after creation: {', '.join(self.fields)}",
            code="IMMUTABLE_FIELD",
        )


class InvitationEmailMismatchError(ForbiddenError):
    def __init__(self):
        super().__init__(
            "This invitation was sent to a different email address",
            code="INVITE_EMAIL_MISMATCH",
        )


class NotAgencyError(ForbiddenError):
    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(
            "Agency invitations require an agency parent organization",
            code="NOT_AGENCY",
        )


class RoleScopeError(ForbiddenError):
    def __init__(self, role_id: str, organization_id: str):
        self.role_id = role_id
        self.organization_id = organization_id
        super().__init__(
            "Role belongs to a different organization",
            code="ROLE_SCOPE",
        )


# =============================================================================
# Expired / Invalid State / Invalid Argument
# =============================================================================


class InvitationExpiredError(OrganizationServiceError):
    kind = ErrorKind.EXPIRED

    def __init__(self, invitation_id: str):
        self.invitation_id = invitation_id
        super().__init__("Invitation has expired", code="INVITE_EXPIRED")


class InvalidStateError(OrganizationServiceError):
    kind = ErrorKind.INVALID_STATE


class InvitationNotPendingError(InvalidStateError):
    def __init__(self, invitation_id: str, status: str):
        self.invitation_id = invitation_id
        self.status = status
        super().__init__(f"Invitation is already {status}", code="INVITE_NOT_PENDING")


class InactiveMembershipError(InvalidStateError):
    def __init__(self, membership_id: str):
        self.membership_id = membership_id
        super().__init__("Membership is not active", code="MEMBER_INACTIVE")


class InvalidArgumentError(OrganizationServiceError):
    kind = ErrorKind.INVALID_ARGUMENT


class InvalidPatchError(InvalidArgumentError):
    def __init__(self, detail: str):
        super().__init__(f"Invalid update: {detail}", code="INVALID_PATCH")


class InvalidPermissionError(InvalidArgumentError):
    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(
            f"Permission must be formatted as resource:action, got {permission!r}",
            code="INVALID_PERMISSION",
        )
