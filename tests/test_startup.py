# Copyright (C) 2024 TripDesk Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Collaborators resolved once at startup from settings."""

from tripdesk_server.config import settings
from tripdesk_server.database import engine, engine_options
from tripdesk_server.main import build_code_store
from tripdesk_server.services.code_store import RedisCodeTier
from tripdesk_server.services.google import GoogleVerifier, build_google_verifier


def test_code_store_without_redis(monkeypatch):
    monkeypatch.setattr(settings, "redis_url", None)
    store = build_code_store()
    assert store.shared is None
    assert store.local_fallback is settings.otp_local_fallback


def test_code_store_with_redis(monkeypatch):
    monkeypatch.setattr(settings, "redis_url", "redis://localhost:6379/0")
    store = build_code_store()
    assert isinstance(store.shared, RedisCodeTier)


def test_google_verifier_needs_client_id(monkeypatch):
    monkeypatch.setattr(settings, "google_client_id", None)
    assert build_google_verifier() is None
    monkeypatch.setattr(settings, "google_client_id", "client-123")
    verifier = build_google_verifier()
    assert isinstance(verifier, GoogleVerifier)
    assert verifier.client_id == "client-123"


def test_engine_options_follow_settings(monkeypatch):
    monkeypatch.setattr(settings, "db_pool_size", 3)
    monkeypatch.setattr(settings, "db_max_overflow", 0)
    monkeypatch.setattr(settings, "db_pool_recycle", -1)
    options = engine_options()
    assert options["pool_size"] == 3
    assert options["max_overflow"] == 0
    assert options["pool_recycle"] == -1
    assert options["pool_pre_ping"] is settings.db_pool_pre_ping


def test_application_engine_uses_configured_pool():
    assert engine.sync_engine.pool.size() == settings.db_pool_size
