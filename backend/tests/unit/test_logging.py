"""Tests for audit logging context helpers."""

from __future__ import annotations

import structlog

from audit_core.core.logging import environment_tagger, store_context


def test_environment_tagger_adds_environment() -> None:
    tag = environment_tagger("production")
    assert tag(None, "info", {"event": "x"}) == {"event": "x", "environment": "production"}


def test_environment_tagger_keeps_explicit_value() -> None:
    tag = environment_tagger("production")
    assert tag(None, "info", {"environment": "staging"})["environment"] == "staging"


def test_store_context_binds_and_unbinds() -> None:
    structlog.contextvars.clear_contextvars()

    with store_context("tenant_acme", tenant_id="acme"):
        assert structlog.contextvars.get_contextvars() == {
            "store": "tenant_acme",
            "tenant_id": "acme",
        }

    assert structlog.contextvars.get_contextvars() == {}


def test_store_context_without_tenant() -> None:
    structlog.contextvars.clear_contextvars()
    with store_context("default"):
        assert structlog.contextvars.get_contextvars() == {"store": "default"}
