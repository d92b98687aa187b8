"""
Tests for the audit service.

Verifies that:
- Entries are appended and queryable newest first
- Sensitive metadata is redacted and long values truncated
- A failed audit write never fails the primary mutation
"""

import pytest

from conftest import USERS
from orgaccess.organizations.audit_service import AuditService
from orgaccess.organizations.exceptions import AuditWriteWarning
from orgaccess.storage import MemoryDocumentStore, StoreUnavailableError
from orgaccess.types.organization import (
    AuditAction,
    AuditCategory,
    AuditLogQuery,
    AuditSeverity,
    ResourceType,
)


class BrokenStore(MemoryDocumentStore):
    async def commit_operations(self, operations):
        raise StoreUnavailableError("store offline")


@pytest.fixture
def audit(store, clock):
    return AuditService(store, clock)


async def log_event(audit, **overrides):
    kwargs = dict(
        actor_id="u1",
        actor_email=USERS["u1"],
        organization_id="o1",
        category=AuditCategory.ORGANIZATION,
        action=AuditAction.UPDATE,
        resource_type=ResourceType.ORGANIZATION,
        resource_id="o1",
        description="Updated organization",
    )
    kwargs.update(overrides)
    return await audit.log(**kwargs)


class TestAuditLog:

    async def test_log_and_query(self, audit):
        first = await log_event(audit)
        second = await log_event(audit, action=AuditAction.DELETE, severity=AuditSeverity.WARNING)
        await log_event(audit, organization_id="o2", resource_id="o2")

        entries, total = await audit.query(AuditLogQuery(organization_id="o1"))
        assert total == 2
        assert [e.id for e in entries] == [second, first]

        deletes, _ = await audit.query(AuditLogQuery(action=AuditAction.DELETE))
        assert [e.id for e in deletes] == [second]
        assert deletes[0].severity == AuditSeverity.WARNING

        page, total = await audit.query(AuditLogQuery(limit=1, offset=1))
        assert total == 3
        assert len(page) == 1

    async def test_activity_and_history(self, audit):
        entry_id = await log_event(audit)
        await log_event(audit, resource_type=ResourceType.ROLE, resource_id="r1")

        activity = await audit.get_organization_activity("o1")
        assert len(activity) == 2

        history = await audit.get_resource_history(ResourceType.ORGANIZATION, "o1")
        assert [e.id for e in history] == [entry_id]

    async def test_metadata_sanitized(self, audit):
        await log_event(audit, metadata={
            "token": "secret-value",
            "nested": {"api_key": "abc", "name": "ok"},
            "blob": "x" * 20000,
        })

        entries, _ = await audit.query(AuditLogQuery())
        metadata = entries[0].metadata
        assert metadata["token"] == "[REDACTED]"
        assert metadata["nested"] == {"api_key": "[REDACTED]", "name": "ok"}
        assert metadata["blob"].endswith("...[truncated]")

    async def test_log_failure_returns_none(self, clock):
        audit = AuditService(BrokenStore(), clock)
        assert await log_event(audit) is None

        with pytest.warns(AuditWriteWarning):
            assert await audit.record(
                actor_id="u1",
                actor_email=None,
                organization_id="o1",
                category=AuditCategory.ORGANIZATION,
                action=AuditAction.CREATE,
                resource_type=ResourceType.ORGANIZATION,
                description="Created",
            ) is None


class TestAuditFailureIsolation:

    async def test_mutation_survives_audit_failure(self, engine, clock, users):
        engine.organizations.audit = AuditService(BrokenStore(), clock)

        with pytest.warns(AuditWriteWarning):
            organization = await engine.organizations.create_organization(
                "Org-A", "u1", USERS["u1"]
            )

        assert await engine.organizations.get_organization_by_id(organization.id) is not None
