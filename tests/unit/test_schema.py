"""
Unit tests for schema models and configuration loading.

Tests cover:
- Rule validation and the parsed principal
- PolicyRecord flat and nested forms
- Default security policies are fresh copies
- ComplianceResult helpers
- EngineConfig loading from YAML
"""

from datetime import UTC, datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from policygate.errors import ConfigurationError
from policygate.principal import PrincipalKind
from policygate.schema import (
    ActorClass,
    ComplianceResult,
    EngineConfig,
    PermissionLevel,
    PolicyRecord,
    Rule,
    RuleType,
    default_security_policies,
    load_config,
    load_config_from_string,
)


# =============================================================================
# Rule Tests
# =============================================================================


class TestRule:
    """Tests for the Rule model."""

    def test_minimal_rule(self) -> None:
        """A rule needs a principal and a type."""
        rule = Rule(principal="role:admin", type="allow")
        assert rule.type is RuleType.ALLOW
        assert rule.conditions == {}
        assert rule.updated_at is None

    def test_subject_is_parsed(self) -> None:
        """The principal is parsed once at construction."""
        rule = Rule(principal="group:ops", type=RuleType.DENY)
        assert rule.subject.kind is PrincipalKind.GROUP
        assert rule.subject.value == "ops"

    def test_empty_principal_rejected(self) -> None:
        """An empty principal is a contract violation."""
        with pytest.raises(ValidationError):
            Rule(principal="", type="allow")

    def test_unknown_type_rejected(self) -> None:
        """Only allow and deny exist."""
        with pytest.raises(ValidationError):
            Rule(principal="u1", type="maybe")

    def test_non_mapping_conditions_rejected(self) -> None:
        """Conditions must be a mapping."""
        with pytest.raises(ValidationError):
            Rule(principal="u1", type="allow", conditions=["region"])

    def test_scalar_and_list_conditions_accepted(self) -> None:
        """JSON scalars and lists of them are valid condition values."""
        conditions = {"region": "cn", "tier": 2, "score": 0.5, "beta": True, "note": None, "os": ["ios", 1]}
        assert Rule(principal="u1", type="allow", conditions=conditions).conditions == conditions

    def test_tuple_condition_becomes_list(self) -> None:
        """Tuples are stored as lists, the form they are persisted in."""
        rule = Rule(principal="u1", type="allow", conditions={"region": ("cn", "us")})
        assert rule.conditions == {"region": ["cn", "us"]}

    @pytest.mark.parametrize(
        "value",
        [
            {"cn", "us"},
            datetime(2024, 1, 10, tzinfo=UTC),
            object(),
            {"nested": "mapping"},
            [["cn"]],
            [datetime(2024, 1, 10, tzinfo=UTC)],
        ],
    )
    def test_non_json_condition_rejected(self, value: object) -> None:
        """Values that would change on a JSON round trip are rejected."""
        with pytest.raises(ValidationError):
            Rule(principal="u1", type="allow", conditions={"region": value})

    def test_extra_fields_rejected(self) -> None:
        """Unknown fields are rejected."""
        with pytest.raises(ValidationError):
            Rule(principal="u1", type="allow", priority=1)

    def test_rule_is_frozen(self) -> None:
        """Rules cannot be mutated in place."""
        rule = Rule(principal="u1", type="allow")
        with pytest.raises(ValidationError):
            rule.principal = "u2"

    def test_copy_keeps_subject(self) -> None:
        """model_copy carries the parsed principal over."""
        rule = Rule(principal="role:admin", type="allow")
        updated = rule.model_copy(update={"conditions": {"region": "cn"}})
        assert updated.subject.kind is PrincipalKind.ROLE

    def test_applies_to(self) -> None:
        """applies_to combines principal and conditions."""
        rule = Rule(principal="role:admin", type="allow", conditions={"region": "cn"})
        assert rule.applies_to("u1", {"roles": ["admin"], "region": "cn"})
        assert not rule.applies_to("u1", {"roles": ["admin"], "region": "us"})
        assert not rule.applies_to("u1", {"region": "cn"})

    def test_json_round_trip(self) -> None:
        """A dumped rule validates back to an equal rule."""
        rule = Rule(principal="u1", type="deny", conditions={"tier": ["a", "b"]})
        restored = Rule.model_validate(rule.model_dump(mode="json"))
        assert restored.model_dump() == rule.model_dump()


# =============================================================================
# Policy Record Tests
# =============================================================================


class TestPolicyRecord:
    """Tests for PolicyRecord."""

    def test_flat_form(self) -> None:
        """Flat keys are collected under params."""
        record = PolicyRecord.model_validate({"enabled": True, "retention_days": 30})
        assert record.enabled is True
        assert record.params == {"retention_days": 30}

    def test_nested_form(self) -> None:
        """The nested form is accepted as is."""
        record = PolicyRecord.model_validate({"enabled": False, "params": {"allowed_ips": []}})
        assert record.params == {"allowed_ips": []}

    def test_disabled_by_default(self) -> None:
        """A record without enabled is disabled."""
        assert PolicyRecord.model_validate({"allowed_ips": []}).enabled is False

    def test_to_flat(self) -> None:
        """to_flat merges enabled with the parameters."""
        record = PolicyRecord(enabled=True, params={"max_file_size_mb": 5})
        assert record.to_flat() == {"enabled": True, "max_file_size_mb": 5}


class TestDefaultSecurityPolicies:
    """Tests for the built-in policy set."""

    def test_six_types(self) -> None:
        """Every policy type has a default record."""
        assert set(default_security_policies()) == {
            "data_access",
            "file_sharing",
            "message_retention",
            "audit_logging",
            "ip_whitelist",
            "time_restriction",
        }

    def test_enabled_flags(self) -> None:
        """Only data access, retention and audit logging start enabled."""
        policies = default_security_policies()
        enabled = {name for name, record in policies.items() if record.enabled}
        assert enabled == {"data_access", "message_retention", "audit_logging"}

    def test_fresh_copies(self) -> None:
        """Mutating one set never affects the next."""
        first = default_security_policies()
        first["ip_whitelist"].params["allowed_ips"].append("10.0.0.1")
        second = default_security_policies()
        assert second["ip_whitelist"].params["allowed_ips"] == []


# =============================================================================
# Compliance Result Tests
# =============================================================================


class TestComplianceResult:
    """Tests for ComplianceResult."""

    def test_violation_breaks_compliance(self) -> None:
        """Adding a violation makes the result non-compliant."""
        result = ComplianceResult(check_type="gdpr")
        result.add_violation("User consent not obtained")
        assert result.compliant is False
        assert result.violations == ["User consent not obtained"]

    def test_warning_keeps_compliance(self) -> None:
        """Warnings do not affect compliance."""
        result = ComplianceResult(check_type="gdpr")
        result.add_warning("Data portability not fully supported")
        assert result.compliant is True


# =============================================================================
# Configuration Tests
# =============================================================================


class TestEngineConfig:
    """Tests for EngineConfig and the YAML loaders."""

    def test_defaults(self) -> None:
        """An empty config uses every default."""
        config = EngineConfig()
        assert config.cache_path is None
        assert config.permission_ttl_seconds == 3600
        assert config.acl_default_policies["chat"] is True
        assert config.acl_default_policies["api"] is False
        assert config.permission_matrix[ActorClass.EXTERNAL]["file"] is PermissionLevel.NONE
        assert config.security_policies is None
        assert config.audit_max_entries == 10000

    def test_load_from_string(self, sample_config_yaml: str) -> None:
        """A full YAML document is parsed and validated."""
        config = load_config_from_string(sample_config_yaml)
        assert config.permission_ttl_seconds == 600
        assert config.acl_default_policies["wiki"] is True
        assert config.permission_matrix[ActorClass.INTERNAL]["report"] is PermissionLevel.ADMIN
        assert config.permission_matrix[ActorClass.EXTERNAL]["report"] is PermissionLevel.READ
        assert config.security_policies["ip_whitelist"].params["allowed_ips"] == ["192.168.1.0/24"]
        assert config.identity.external_user_prefix == "guest_"

    def test_load_from_file(self, temp_dir: Path, sample_config_yaml: str) -> None:
        """load_config reads a YAML file."""
        path = temp_dir / "policygate.yaml"
        path.write_text(sample_config_yaml)
        assert load_config(path).permission_ttl_seconds == 600

    def test_empty_document(self) -> None:
        """An empty document yields the defaults."""
        assert load_config_from_string("") == EngineConfig()

    def test_non_mapping_document(self) -> None:
        """A YAML list is not a configuration."""
        with pytest.raises(ConfigurationError):
            load_config_from_string("- a\n- b\n")

    def test_unknown_key_rejected(self) -> None:
        """Unknown top-level keys are rejected."""
        with pytest.raises(ValidationError):
            load_config_from_string("cache_size: 10\n")

    def test_unknown_level_name_rejected(self) -> None:
        """Level names must be none, read, write or admin."""
        content = """
permission_matrix:
  internal: {file: superuser}
  external: {file: none}
"""
        with pytest.raises(ValidationError):
            load_config_from_string(content)

    def test_missing_actor_class_rejected(self) -> None:
        """Both actor classes need defaults."""
        with pytest.raises(ValidationError):
            load_config_from_string("permission_matrix:\n  internal: {file: write}\n")

    def test_ttl_must_be_positive(self) -> None:
        """A zero TTL is rejected."""
        with pytest.raises(ValidationError):
            EngineConfig(permission_ttl_seconds=0)

    def test_missing_file(self, temp_dir: Path) -> None:
        """A missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(temp_dir / "missing.yaml")
