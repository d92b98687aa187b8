"""
User directory collaborator.

The engine only needs to look users up and maintain three denormalized
pointers on the user record: the default organization, the last active
organization, and the list of organizations the user belongs to.
``StoreUserDirectory`` keeps users in the same document store as the rest
of the engine so pointer updates join the caller's write batch.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from orgaccess.organizations.exceptions import UserNotFoundError
from orgaccess.storage.document_store import (
    ArrayRemove,
    ArrayUnion,
    DocumentStore,
    WriteBatch,
)
from orgaccess.types.organization import User, normalize_email

logger = logging.getLogger(__name__)

USERS_COLLECTION = "users"

# Marker meaning "leave this pointer unchanged"
UNCHANGED: Any = object()


class UserDirectory(ABC):
    """Lookup and pointer maintenance for user records."""

    @abstractmethod
    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Return the user, or None."""

    @abstractmethod
    async def get_user_by_email(self, email: str) -> Optional[User]:
        """Return the user with this (case-insensitive) email, or None."""

    @abstractmethod
    def update_org_pointer(
        self,
        batch: WriteBatch,
        user_id: str,
        default_organization_id: Any = UNCHANGED,
        last_active_organization_id: Any = UNCHANGED,
        add_organization: Optional[str] = None,
        remove_organization: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> None:
        """
        Stage a pointer update for the user in ``batch``.

        Pointer arguments left as ``UNCHANGED`` are not touched; ``None``
        clears the pointer.
        """


class StoreUserDirectory(UserDirectory):
    """User directory backed by the ``users`` collection of the document store."""

    def __init__(self, db_client: DocumentStore):
        self.db = db_client

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        data = await self.db.get(USERS_COLLECTION, user_id)
        return User.model_validate(data) if data else None

    async def get_user_by_email(self, email: str) -> Optional[User]:
        try:
            normalized = normalize_email(email)
        except ValueError:
            return None
        rows = await self.db.find(USERS_COLLECTION, {"email": normalized})
        return User.model_validate(rows[0]) if rows else None

    async def require_user(self, user_id: str) -> User:
        user = await self.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def register_user(
        self,
        user_id: str,
        email: str,
        display_name: Optional[str] = None,
    ) -> User:
        """Create a user record with empty organization pointers."""
        user = User(id=user_id, email=email, display_name=display_name)
        batch = self.db.batch()
        batch.create(USERS_COLLECTION, user.id, user.model_dump(mode="json"))
        await batch.commit()
        logger.info(f"User registered: {user_id}")
        return await self.require_user(user_id)

    def update_org_pointer(
        self,
        batch: WriteBatch,
        user_id: str,
        default_organization_id: Any = UNCHANGED,
        last_active_organization_id: Any = UNCHANGED,
        add_organization: Optional[str] = None,
        remove_organization: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> None:
        fields: Dict[str, Any] = {}
        if default_organization_id is not UNCHANGED:
            fields["default_organization_id"] = default_organization_id
        if last_active_organization_id is not UNCHANGED:
            fields["last_active_organization_id"] = last_active_organization_id
        if add_organization:
            fields["organizations"] = ArrayUnion(add_organization)
        elif remove_organization:
            fields["organizations"] = ArrayRemove(remove_organization)
        if not fields and expected_version is None:
            return
        batch.update(USERS_COLLECTION, user_id, fields, expected_version=expected_version)

