"""
Pytest configuration and shared fixtures for orgaccess tests.

This module provides common fixtures used across all test files:
- A controllable clock
- An in-memory document store
- A store variant whose reads yield, for interleaving concurrent calls
- A wired engine with the system roles seeded
- Registered sample users
"""

import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Environment setup before any imports
os.environ["ORGACCESS_ENVIRONMENT"] = "test"
os.environ["ORGACCESS_STORE_BACKEND"] = "memory"
os.environ["ORGACCESS_LOG_LEVEL"] = "WARNING"

# Ensure project root is in path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from orgaccess.config import Settings  # noqa: E402
from orgaccess.engine import Engine  # noqa: E402
from orgaccess.storage import MemoryDocumentStore  # noqa: E402
from orgaccess.types.organization import OrganizationType  # noqa: E402

USERS = {
    "u1": "alice@example.com",
    "u2": "bob@example.com",
    "u3": "carol@example.com",
}


class FakeClock:
    """
    Clock advancing one millisecond per reading.

    Successive writes get distinct, ordered timestamps; ``advance`` jumps
    ahead for expiry scenarios.
    """

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(milliseconds=1)
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


class InterleavingDocumentStore(MemoryDocumentStore):
    """
    Memory store whose reads yield to the event loop.

    Coroutines gathered over this store interleave at every read, so each
    one observes state from before the others commit.
    """

    async def get(self, collection, doc_id):
        await asyncio.sleep(0)
        return await super().get(collection, doc_id)

    async def find(self, collection, filters=None):
        await asyncio.sleep(0)
        return await super().find(collection, filters)


@pytest.fixture
def store():
    return MemoryDocumentStore()


@pytest.fixture
async def engine(store, clock):
    """Engine over the memory store with system roles seeded."""
    engine = Engine(store, Settings(), clock)
    await engine.start()
    yield engine
    await engine.close()


@pytest.fixture
async def users(engine):
    """Register u1..u3."""
    return {
        user_id: await engine.users.register_user(user_id, email)
        for user_id, email in USERS.items()
    }


@pytest.fixture
async def org_a(engine, users):
    """Enterprise organization owned by u1."""
    return await engine.organizations.create_organization(
        "Org-A", "u1", USERS["u1"], OrganizationType.ENTERPRISE
    )


async def add_member(engine, user_id, organization_id, **kwargs):
    """Add ``user_id`` to an organization with u1 as the actor."""
    return await engine.memberships.add_user_to_organization(
        user_id, organization_id, "u1", USERS["u1"], **kwargs
    )


async def default_memberships(engine, user_id):
    """Active memberships of a user flagged as default."""
    memberships = await engine.memberships.get_user_memberships(user_id)
    return [m for m in memberships if m.is_default]
