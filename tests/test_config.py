"""Tests for schoolgate/config.py — settings parsing and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from schoolgate.config import AuditSettings, AuthzSettings, RetentionSettings, Settings


class TestAuditSettings:
    def test_default_sensitive_fields(self):
        fields = AuditSettings().sensitive_field_set
        assert {"password", "password_hash", "token", "secret", "ssn", "credit_card", "bank_account"} <= fields

    def test_csv_parsing_trims_and_lowercases(self, monkeypatch):
        monkeypatch.setenv("SENSITIVE_FIELDS", " Password , TOKEN,,medical_notes ")
        assert AuditSettings().sensitive_field_set == frozenset({"password", "token", "medical_notes"})

    def test_critical_tables(self):
        tables = AuditSettings().critical_table_set
        assert {"users", "user_roles", "schools", "fee_payments", "grades", "attendance", "expenses"} <= tables


class TestAuthzSettings:
    def test_defaults(self):
        config = AuthzSettings()
        assert config.permission_cache_ttl_seconds == 300
        assert config.permission_cache_backend == "memory"
        assert config.super_admin_role == "Super Admin"

    def test_backend_normalized(self):
        assert AuthzSettings(permission_cache_backend="Redis").permission_cache_backend == "redis"

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            AuthzSettings(permission_cache_backend="memcached")

    def test_super_admin_role_normalized(self):
        assert AuthzSettings(super_admin_role="SUPER_ADMIN").super_admin_role == "Super Admin"

    def test_unknown_super_admin_role_rejected(self):
        with pytest.raises(ValidationError):
            AuthzSettings(super_admin_role="Headmaster")


class TestRetentionSettings:
    def test_defaults(self):
        config = RetentionSettings()
        assert (config.audit_log_days, config.data_access_days, config.system_event_days) == (365, 90, 180)
        assert config.exempt_operation_set == frozenset()

    def test_exempt_operations_uppercased(self):
        config = RetentionSettings(audit_exempt_operations="delete,Login")
        assert config.exempt_operation_set == frozenset({"DELETE", "LOGIN"})


class TestSettings:
    def test_log_level_uppercased(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(log_level="verbose")

    def test_is_production(self):
        assert Settings(environment="production").is_production
        assert not Settings(environment="development").is_production
