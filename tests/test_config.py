from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from tenantcore.config import Settings
from tenantcore.security.rbac import RoleRegistry
from tenantcore.security.secret import SecretsManager


def test_defaults(monkeypatch):
    for name in ("INVITATION_TTL_HOURS", "TRIAL_PERIOD_DAYS", "GRACE_PERIOD_DAYS",
                 "MAX_FAILED_RETRIES", "BILLING_GATED_ACTIONS", "TENANTCORE_EXTRA_ROLES",
                 "SECRETS_BACKEND", "DEBUG", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings.from_env()
    assert settings.invitation_ttl == timedelta(days=7)
    assert settings.trial_period == timedelta(days=14)
    assert settings.grace_period == timedelta(days=7)
    assert settings.max_failed_retries == 3
    assert settings.billing_gated_actions == {"content.write", "member.invite", "team.create"}
    assert settings.log_level == "INFO"


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("SECRETS_BACKEND", "env")
    monkeypatch.setenv("INVITATION_TTL_HOURS", "24")
    monkeypatch.setenv("GRACE_PERIOD_DAYS", "3")
    monkeypatch.setenv("MAX_FAILED_RETRIES", "5")
    monkeypatch.setenv("BILLING_GATED_ACTIONS", "content.write, ")
    monkeypatch.setenv("TENANTCORE_EXTRA_ROLES",
                       '{"billing_admin": {"rank": 25, "permissions": ["content.read", "billing.manage"]}}')
    monkeypatch.setenv("BILLING_WEBHOOK_SECRET", "whsec_env")
    monkeypatch.setenv("DEBUG", "1")

    settings = Settings.from_env()
    assert settings.invitation_ttl == timedelta(hours=24)
    assert settings.grace_period == timedelta(days=3)
    assert settings.max_failed_retries == 5
    assert settings.billing_gated_actions == {"content.write"}
    assert settings.billing_webhook_secret == "whsec_env"
    assert settings.log_level == "DEBUG"

    registry = RoleRegistry.from_settings(settings)
    assert registry.rank("billing_admin") == 25
    assert "billing.manage" in registry.permissions_for("billing_admin")


def test_invalid_values_rejected():
    with pytest.raises(ValidationError):
        Settings(max_failed_retries=0)


def test_settings_are_frozen():
    settings = Settings()
    with pytest.raises(ValidationError):
        settings.max_failed_retries = 10


def test_secrets_from_vault(monkeypatch):
    monkeypatch.setenv("SECRETS_BACKEND", "env")
    manager = SecretsManager()
    manager.use_vault = True
    manager.mount_point = "secret"
    manager.vault_client = MagicMock()
    manager.vault_client.secrets.kv.v2.read_secret_version.return_value = {
        "data": {"data": {"value": "from-vault"}}
    }
    assert manager.get_secret("AUDIT_SECRET", "fallback") == "from-vault"

    manager.vault_client.secrets.kv.v2.read_secret_version.return_value = {"data": {}}
    assert manager.get_secret("AUDIT_SECRET", "fallback") == "fallback"
