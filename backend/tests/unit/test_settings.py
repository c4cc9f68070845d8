"""Tests for typed configuration loading and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from audit_core.core.config import DEFAULT_GLOBAL_EXCLUDES, Settings, get_settings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("ENVIRONMENT", "DEBUG", "AUDIT__SIGNATURE__SECRET_KEY"):
        monkeypatch.delenv(name, raising=False)


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIT__SIGNATURE__SECRET_KEY", "k" * 40)
    settings = Settings()

    assert settings.audit.enabled is True
    assert settings.audit.retention_days is None
    assert settings.audit.global_excludes == DEFAULT_GLOBAL_EXCLUDES
    assert settings.audit.signature.algorithm == "sha512"
    assert settings.history.retention_days == 365
    assert settings.history.rollback_permissions.roles == ["admin", "manager"]
    assert settings.tenancy.enabled is False
    assert settings.tenancy.fallback_behavior == "central"
    assert settings.batch.chunk_size == 1000
    assert settings.verification.sample_rate == 10


def test_nested_environment_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIT__SIGNATURE__SECRET_KEY", "k" * 40)
    monkeypatch.setenv("AUDIT__RETENTION_DAYS", "90")
    monkeypatch.setenv("TENANCY__ENABLED", "true")
    monkeypatch.setenv("TENANCY__FALLBACK_BEHAVIOR", "skip")
    monkeypatch.setenv("BATCH__CHUNK_SIZE", "250")

    settings = Settings()

    assert settings.audit.signature.secret_key == "k" * 40
    assert settings.audit.retention_days == 90
    assert settings.tenancy.enabled is True
    assert settings.tenancy.fallback_behavior == "skip"
    assert settings.batch.chunk_size == 250


def test_invalid_fallback_behavior_rejected() -> None:
    with pytest.raises(ValidationError):
        Settings(tenancy={"fallback_behavior": "ignore"}, audit={"signature": {"secret_key": "k"}})


def test_production_requires_secret_key() -> None:
    with pytest.raises(ValidationError, match="secret_key must be set"):
        Settings(environment="production")


def test_production_rejects_debug() -> None:
    with pytest.raises(ValidationError, match="debug must be False"):
        Settings(environment="staging", debug=True, audit={"signature": {"secret_key": "k" * 40}})


def test_production_allows_disabled_signatures() -> None:
    settings = Settings(environment="production", audit={"signature": {"enabled": False}})
    assert settings.audit.signature.enabled is False


def test_development_warns_on_empty_key() -> None:
    with pytest.warns(UserWarning, match="secret_key is empty"):
        Settings(environment="development")


def test_get_settings_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUDIT__SIGNATURE__SECRET_KEY", "k" * 40)
    assert get_settings() is get_settings()
