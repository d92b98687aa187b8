"""
Engine bootstrap.

Wires the document store, user directory, audit service and the four
organization services from Settings, and exposes them as a singleton.

Usage:
    from orgaccess.engine import init_engine

    engine = init_engine()
    await engine.start()

    org = await engine.organizations.create_organization("Acme", user_id, email)
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from orgaccess.config import Settings, get_settings
from orgaccess.organizations.audit_service import AuditService, utc_now
from orgaccess.organizations.invitation_service import InvitationService
from orgaccess.organizations.membership_service import MembershipService
from orgaccess.organizations.organization_service import OrganizationService
from orgaccess.organizations.rbac import ConditionEvaluator
from orgaccess.organizations.role_service import RoleService
from orgaccess.organizations.user_directory import StoreUserDirectory
from orgaccess.storage import (
    DocumentStore,
    MemoryDocumentStore,
    RedisClient,
    RedisDocumentStore,
)
from orgaccess.utils.logging import setup_logging

logger = logging.getLogger(__name__)


class Engine:
    """Container holding one wired set of services over a single store."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        condition_evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.store = store
        self.settings = settings
        self.users = StoreUserDirectory(store)
        self.audit = AuditService(store, clock)
        self.roles = RoleService(store, self.audit, condition_evaluator, clock)
        self.memberships = MembershipService(store, self.users, self.roles, self.audit, clock)
        self.organizations = OrganizationService(
            store, self.users, self.memberships, self.audit, clock
        )
        self.invitations = InvitationService(
            store,
            self.users,
            self.memberships,
            self.organizations,
            self.audit,
            clock,
            default_expiry_hours=settings.invitations.invitation_expiry_hours,
        )

    async def start(self) -> None:
        """Seed the built-in system roles."""
        created = await self.roles.initialize_system_roles()
        logger.info(f"Engine started ({len(created)} system roles created)")

    async def close(self) -> None:
        await self.store.close()
        logger.info("Engine closed")


def build_store(settings: Settings) -> DocumentStore:
    """Create the document store selected by the settings."""
    if settings.store.is_redis:
        client = RedisClient(
            settings.store.redis_url,
            socket_timeout=settings.store.redis_socket_timeout,
        )
        return RedisDocumentStore(client, key_prefix=settings.store.redis_key_prefix)
    return MemoryDocumentStore()


# =============================================================================
# Engine Singleton
# =============================================================================


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """
    Get the engine singleton.

    Raises:
        RuntimeError: If the engine is not initialized.
    """
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine() first.")
    return _engine


def init_engine(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
    condition_evaluator: Optional[ConditionEvaluator] = None,
    configure_logging: bool = True,
) -> Engine:
    """
    Initialize the engine singleton.

    Args:
        settings: Settings to use (``get_settings()`` when omitted).
        store: Store to use instead of the one selected by the settings.
        clock: Source of the current UTC time.
        condition_evaluator: Evaluator for conditional role grants.
        configure_logging: Install the structured logging handlers.

    Returns:
        The initialized Engine. Call ``await engine.start()`` before use.
    """
    global _engine
    settings = settings or get_settings()

    if configure_logging:
        setup_logging(
            service_name=settings.logging.service_name,
            log_level=logging.getLevelName(settings.logging.log_level),
            force_json=settings.is_production or settings.logging.log_format_json,
        )

    _engine = Engine(
        store or build_store(settings),
        settings,
        clock or utc_now,
        condition_evaluator,
    )
    logger.info(
        f"Engine initialized (store={settings.store.store_backend}, "
        f"environment={settings.environment})"
    )
    return _engine
