"""
Tests for configuration, structured logging and engine bootstrap.
"""

import json
import logging

import pytest
from pydantic import ValidationError

from orgaccess import engine as engine_module
from orgaccess.config import Settings, get_settings, reload_settings
from orgaccess.storage import MemoryDocumentStore, RedisDocumentStore
from orgaccess.utils.logging import (
    JSONFormatter,
    LogContextFilter,
    Timer,
    log_context,
    redact_sensitive_data,
    setup_logging,
    timed,
)


class TestSettings:

    def test_defaults(self):
        settings = Settings()
        assert settings.store.store_backend == "memory"
        assert not settings.store.is_redis
        assert settings.invitations.invitation_expiry_hours == 72
        assert settings.logging.service_name == "orgaccess"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ORGACCESS_STORE_BACKEND", "redis")
        monkeypatch.setenv("ORGACCESS_REDIS_KEY_PREFIX", "acme:")
        monkeypatch.setenv("ORGACCESS_INVITATION_EXPIRY_HOURS", "24")
        monkeypatch.setenv("ORGACCESS_LOG_LEVEL", "debug")

        settings = Settings()

        assert settings.store.is_redis
        assert settings.store.redis_key_prefix == "acme:"
        assert settings.invitations.invitation_expiry_hours == 24
        assert settings.logging.log_level == "DEBUG"

    def test_invalid_log_level(self, monkeypatch):
        monkeypatch.setenv("ORGACCESS_LOG_LEVEL", "chatty")
        with pytest.raises(ValidationError):
            Settings()

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()
        assert reload_settings() is get_settings()


class TestLogging:

    def test_redaction(self):
        message = redact_sensitive_data("accept token=abc123 via redis://user:pw@host")
        assert "abc123" not in message
        assert "pw@" not in message

    def test_json_formatter_includes_context(self):
        record = logging.LogRecord("orgaccess.test", logging.INFO, __file__, 1, "hello", None, None)
        record.duration_ms = 3

        with log_context(actor_id="u1", organization_id="o1"):
            LogContextFilter().filter(record)

        data = json.loads(JSONFormatter("svc").format(record))
        assert data["message"] == "hello"
        assert data["service"] == "svc"
        assert data["actor_id"] == "u1"
        assert data["organization_id"] == "o1"

    def test_explicit_organization_wins(self):
        record = logging.LogRecord("orgaccess.test", logging.INFO, __file__, 1, "x", None, None)
        record.organization_id = "explicit"

        with log_context(organization_id="ctx"):
            LogContextFilter().filter(record)

        assert record.organization_id == "explicit"

    def test_setup_logging_installs_handler(self):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging("svc", logging.WARNING, force_json=True)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.WARNING
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

    async def test_timed_decorator(self):
        @timed("double")
        async def double(x):
            return x * 2

        @timed()
        def triple(x):
            return x * 3

        assert await double(2) == 4
        assert triple(2) == 6

    def test_timer_measures(self):
        with Timer("work") as timer:
            sum(range(100))
        assert timer.elapsed_ms >= 0


class TestEngineBootstrap:

    async def test_init_and_start(self, monkeypatch):
        monkeypatch.setattr(engine_module, "_engine", None)
        with pytest.raises(RuntimeError):
            engine_module.get_engine()

        store = MemoryDocumentStore()
        engine = engine_module.init_engine(Settings(), store=store, configure_logging=False)
        await engine.start()

        assert engine_module.get_engine() is engine
        assert engine.store is store
        assert len(await engine.roles.get_system_roles()) == 7
        assert engine.invitations.default_expiry_hours == 72

    def test_build_store_selects_backend(self, monkeypatch):
        assert isinstance(engine_module.build_store(Settings()), MemoryDocumentStore)

        monkeypatch.setenv("ORGACCESS_STORE_BACKEND", "redis")
        assert isinstance(engine_module.build_store(Settings()), RedisDocumentStore)

    async def test_services_share_one_audit_service(self, engine):
        services = [engine.roles, engine.memberships, engine.organizations, engine.invitations]
        assert all(service.audit is engine.audit for service in services)
