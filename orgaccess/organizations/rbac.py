"""
Role-Based Access Control (RBAC) system for organizations.

This module provides:
- The resource and action enumerations permissions are expressed over
- The built-in system role catalog, keyed by stable derived ids
- Permission string parsing
- A pluggable condition evaluator for conditional grants
- The pure permission resolver used by RoleService

Resolution order for a single check:
1. Owner memberships are allowed everything
2. A custom permission grants access
3. A restricted permission denies access, overriding any role grant
4. Otherwise any role permission matching the request grants access

Wildcards are matched lazily during checks and expanded eagerly when the
full effective permission set is computed.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from orgaccess.organizations.exceptions import InvalidPermissionError
from orgaccess.types.organization import (
    Membership,
    Permission,
    PermissionCondition,
    Role,
    Wildcard,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Permission Definitions
# =============================================================================


class PermissionResource(str, Enum):
    """Resources permissions can be granted on."""
    USER = "user"
    ORGANIZATION = "organization"
    ROLE = "role"
    INVENTORY = "inventory"
    ORDER = "order"
    CUSTOMER = "customer"
    SUPPLIER = "supplier"
    SHIPMENT = "shipment"
    PROJECT = "project"
    TASK = "task"
    REPORT = "report"
    ANALYTICS = "analytics"
    FEEDBACK = "feedback"
    MARKETPLACE = "marketplace"
    CONNECTION = "connection"
    WAREHOUSE = "warehouse"
    ACCOUNTING = "accounting"
    SETTINGS = "settings"
    BILLING = "billing"
    AUDIT = "audit"
    LOG = "log"
    NOTIFICATION = "notification"
    CREDIT = "credit"


class PermissionAction(str, Enum):
    """Actions permissions can be granted for."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    MANAGE = "manage"
    ASSIGN = "assign"
    SHARE = "share"
    EXPORT = "export"
    IMPORT = "import"


ALL_RESOURCES: Tuple[str, ...] = tuple(r.value for r in PermissionResource)
ALL_ACTIONS: Tuple[str, ...] = tuple(a.value for a in PermissionAction)

_PART_PATTERN = re.compile(r"^[a-z0-9_-]+$")


def parse_permission_string(permission: str) -> Tuple[str, str]:
    """
    Split and validate a ``resource:action`` string.

    Args:
        permission: The permission string; either side may be ``*``.

    Returns:
        Normalized (resource, action) tuple.

    Raises:
        InvalidPermissionError: If the string is malformed.
    """
    parts = permission.strip().lower().split(":")
    if len(parts) != 2:
        raise InvalidPermissionError(permission)
    resource, action = parts
    for part in (resource, action):
        if part != Wildcard.ANY.value and not _PART_PATTERN.match(part):
            raise InvalidPermissionError(permission)
    return resource, action


def normalize_permission_string(permission: str) -> str:
    resource, action = parse_permission_string(permission)
    return f"{resource}:{action}"


# =============================================================================
# System Role Catalog
# =============================================================================


OWNER_ROLE_NAME = "Organization Owner"
MEMBER_ROLE_NAME = "Member"


def system_role_id(name: str) -> str:
    """Stable id for a built-in role, e.g. ``system-organization-owner``."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return f"system-{slug}"


OWNER_ROLE_ID = system_role_id(OWNER_ROLE_NAME)
MEMBER_ROLE_ID = system_role_id(MEMBER_ROLE_NAME)

R = PermissionResource
A = PermissionAction
ANY = Wildcard.ANY


def _grant(
    resource: Union[PermissionResource, Wildcard],
    action: Union[PermissionAction, Wildcard],
    conditions: Optional[List[Dict[str, str]]] = None,
) -> Dict[str, object]:
    return {
        "resource": resource.value,
        "action": action.value,
        "conditions": conditions or [],
    }


def _own(field: str) -> List[Dict[str, str]]:
    return [{"type": "ownership", "field": field, "operator": "=="}]


_BUSINESS_RESOURCES = (
    R.INVENTORY, R.ORDER, R.CUSTOMER, R.SUPPLIER, R.SHIPMENT, R.PROJECT, R.TASK,
    R.REPORT,
)

SYSTEM_ROLE_DEFINITIONS: List[Dict[str, object]] = [
    {
        "name": "System Administrator",
        "description": "Full system access with all permissions",
        "permissions": [_grant(ANY, ANY)],
    },
    {
        "name": OWNER_ROLE_NAME,
        "description": "Full control over an organization",
        "permissions": [_grant(resource, ANY) for resource in PermissionResource],
    },
    {
        "name": "Organization Admin",
        "description": "Administrative access to organization resources",
        "permissions": [
            _grant(R.ORGANIZATION, A.READ),
            _grant(R.ORGANIZATION, A.UPDATE),
            _grant(R.USER, ANY),
            _grant(R.ROLE, ANY, [
                {"type": "hierarchy", "field": "scope", "value": "organization", "operator": "=="},
            ]),
            *[_grant(resource, ANY) for resource in _BUSINESS_RESOURCES],
            _grant(R.ANALYTICS, ANY),
            _grant(R.FEEDBACK, ANY),
            _grant(R.MARKETPLACE, ANY),
            _grant(R.CONNECTION, ANY),
            _grant(R.WAREHOUSE, ANY),
            _grant(R.ACCOUNTING, ANY),
            _grant(R.SETTINGS, A.READ),
            _grant(R.SETTINGS, A.UPDATE),
            _grant(R.BILLING, A.READ),
            _grant(R.AUDIT, A.READ),
            _grant(R.LOG, A.READ),
            _grant(R.NOTIFICATION, ANY),
            _grant(R.CREDIT, A.READ),
        ],
    },
    {
        "name": "Manager",
        "description": "Manages day-to-day operations",
        "permissions": [
            _grant(R.ORGANIZATION, A.READ),
            _grant(R.USER, A.READ),
            _grant(R.ROLE, A.READ),
            *[_grant(resource, ANY) for resource in _BUSINESS_RESOURCES],
            _grant(R.ANALYTICS, A.READ),
            _grant(R.FEEDBACK, ANY),
            _grant(R.MARKETPLACE, A.READ),
            _grant(R.CONNECTION, A.READ),
            _grant(R.WAREHOUSE, ANY),
            _grant(R.NOTIFICATION, ANY),
        ],
    },
    {
        "name": MEMBER_ROLE_NAME,
        "description": "Standard organization member",
        "is_default": True,
        "permissions": [
            _grant(R.ORGANIZATION, A.READ),
            _grant(R.INVENTORY, A.READ),
            _grant(R.ORDER, A.READ),
            _grant(R.CUSTOMER, A.READ),
            _grant(R.SUPPLIER, A.READ),
            _grant(R.SHIPMENT, A.READ),
            _grant(R.PROJECT, A.READ),
            _grant(R.TASK, A.READ, _own("assigneeId")),
            _grant(R.TASK, A.UPDATE, _own("assigneeId")),
            _grant(R.REPORT, A.READ),
            _grant(R.FEEDBACK, A.CREATE),
            _grant(R.FEEDBACK, A.READ, _own("userId")),
            _grant(R.NOTIFICATION, A.READ, _own("userId")),
            _grant(R.NOTIFICATION, A.UPDATE, _own("userId")),
        ],
    },
    {
        "name": "Agency Manager",
        "description": "Manages client organizations of an agency",
        "permissions": [
            _grant(R.ORGANIZATION, A.READ),
            _grant(R.USER, A.READ),
            _grant(R.USER, A.CREATE),
            _grant(R.ROLE, A.READ),
            _grant(R.ROLE, A.ASSIGN),
            _grant(R.ORGANIZATION, A.CREATE),
            _grant(R.ORGANIZATION, A.UPDATE, [
                {"type": "hierarchy", "field": "parentId", "operator": "=="},
            ]),
            *[_grant(resource, ANY) for resource in _BUSINESS_RESOURCES],
            _grant(R.ANALYTICS, A.READ),
            _grant(R.FEEDBACK, ANY),
            _grant(R.MARKETPLACE, ANY),
            _grant(R.CONNECTION, ANY),
            _grant(R.WAREHOUSE, ANY),
            _grant(R.NOTIFICATION, ANY),
        ],
    },
    {
        "name": "Read Only",
        "description": "Read-only access to organization resources",
        "permissions": [
            *[
                _grant(resource, A.READ)
                for resource in (
                    R.ORGANIZATION, R.USER, R.ROLE, *_BUSINESS_RESOURCES,
                    R.ANALYTICS, R.FEEDBACK, R.MARKETPLACE, R.CONNECTION,
                    R.WAREHOUSE,
                )
            ],
            _grant(R.NOTIFICATION, A.READ, _own("userId")),
        ],
    },
]


# =============================================================================
# Condition Evaluation
# =============================================================================


@dataclass(frozen=True)
class PermissionContext:
    """What a permission check is about, handed to the condition evaluator."""
    user_id: str
    organization_id: str
    resource: str
    action: str
    resource_id: Optional[str] = None


class ConditionEvaluator(ABC):
    """Decides whether the conditions attached to a matching grant hold."""

    @abstractmethod
    def evaluate(
        self,
        conditions: Sequence[PermissionCondition],
        context: PermissionContext,
    ) -> bool:
        """Return True if the grant applies in this context."""


class AllowAllConditions(ConditionEvaluator):
    """Treats every condition as satisfied."""

    def evaluate(
        self,
        conditions: Sequence[PermissionCondition],
        context: PermissionContext,
    ) -> bool:
        return True


# =============================================================================
# Permission Resolver
# =============================================================================


def _part(value: Union[Wildcard, str]) -> str:
    return value.value if isinstance(value, Wildcard) else value


def grant_matches(grant: Permission, resource: str, action: str) -> bool:
    """Check whether a single grant covers ``resource:action``."""
    resource_ok = grant.resource == Wildcard.ANY or _part(grant.resource) == resource
    action_ok = grant.action == Wildcard.ANY or _part(grant.action) == action
    return resource_ok and action_ok


def expand_grant(grant: Permission) -> Set[str]:
    """
    Expand a grant into concrete permission strings.

    The literal ``resource:action`` form is always included, so ``*:*``
    yields ``*:*`` itself, ``<resource>:*`` and ``*:<action>`` for every
    known value, and the full resource by action cross product.
    """
    resource = _part(grant.resource)
    action = _part(grant.action)
    expanded = {f"{resource}:{action}"}

    if grant.resource == Wildcard.ANY:
        expanded.update(f"{r}:{action}" for r in ALL_RESOURCES)
    if grant.action == Wildcard.ANY:
        expanded.update(f"{resource}:{a}" for a in ALL_ACTIONS)
    if grant.resource == Wildcard.ANY and grant.action == Wildcard.ANY:
        expanded.update(f"{r}:{a}" for r in ALL_RESOURCES for a in ALL_ACTIONS)

    return expanded


class PermissionResolver:
    """
    Pure permission resolution over a membership and its roles.

    Performs no I/O; RoleService loads the membership and roles and hands
    them in.
    """

    def __init__(self, condition_evaluator: Optional[ConditionEvaluator] = None):
        self.conditions = condition_evaluator or AllowAllConditions()

    def has_permission(
        self,
        membership: Optional[Membership],
        roles: Iterable[Role],
        resource: str,
        action: str,
        resource_id: Optional[str] = None,
    ) -> bool:
        """
        Check a single ``resource:action`` for the membership.

        Args:
            membership: The user's membership, or None if not a member.
            roles: Roles assigned to the membership.
            resource: Requested resource.
            action: Requested action.
            resource_id: Optional concrete resource instance.

        Returns:
            True if access is granted.
        """
        if membership is None or not membership.is_active:
            return False

        if membership.is_owner:
            return True

        requested = f"{resource}:{action}"
        if requested in membership.permissions.custom_permissions:
            return True
        if requested in membership.permissions.restricted_permissions:
            return False

        context = PermissionContext(
            user_id=membership.user_id,
            organization_id=membership.organization_id,
            resource=resource,
            action=action,
            resource_id=resource_id,
        )
        for role in roles:
            for grant in role.permissions:
                if not grant_matches(grant, resource, action):
                    continue
                if not grant.conditions or self.conditions.evaluate(grant.conditions, context):
                    return True

        return False

    def effective_permissions(
        self,
        membership: Optional[Membership],
        roles: Iterable[Role],
    ) -> Set[str]:
        """
        Build the full permission string set for the membership.

        Custom permissions and expanded role grants are unioned, then every
        restricted permission is removed.
        """
        if membership is None or not membership.is_active:
            return set()

        permissions: Set[str] = set(membership.permissions.custom_permissions)
        for role in roles:
            for grant in role.permissions:
                permissions.update(expand_grant(grant))

        permissions.difference_update(membership.permissions.restricted_permissions)
        return permissions
