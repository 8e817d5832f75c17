"""
Schema definitions for policygate.

This module defines the Pydantic models and enums used throughout the engine:
- Rule/RuleType: Explicit allow/deny entries of the access control list
- PermissionLevel/ActorClass: The tiered permission model
- PolicyRecord/PolicyType: Configurable security policies
- ComplianceResult/ComplianceReport: Outcomes of compliance checks
- AuditEntry: A record written to the audit sink
- EngineConfig: YAML-loadable configuration for the whole engine

Design Decisions:
    - Rules are immutable; an upsert replaces the rule with an updated copy
    - Unknown fields are rejected everywhere (extra="forbid")
    - Policy records are mutable because the registry merges updates into them
    - Defaults live here so configuration and services share one source
"""

from datetime import UTC, datetime
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

from policygate.conditions import evaluate
from policygate.errors import ConfigurationError
from policygate.principal import Principal, parse_principal


# =============================================================================
# Enums
# =============================================================================


class RuleType(str, Enum):
    """Effect of an ACL rule."""

    ALLOW = "allow"
    DENY = "deny"


class ResourceType(str, Enum):
    """
    Resource types known to the access control list.

    The list is open: rules may be stored for any resource type string,
    but only these four have a default policy other than deny.
    """

    CHAT = "chat"
    FILE = "file"
    API = "api"
    FEATURE = "feature"


class PermissionLevel(IntEnum):
    """
    Ordered capability levels.

    NONE < READ < WRITE < ADMIN. A user holding level L passes every check
    that requires L or anything below it.
    """

    NONE = 0
    READ = 1
    WRITE = 2
    ADMIN = 3


class ActorClass(str, Enum):
    """Internal vs. external classification of a user."""

    INTERNAL = "internal"
    EXTERNAL = "external"


class PermissionResource(str, Enum):
    """Resource types covered by the default permission matrix."""

    MESSAGE = "message"
    FILE = "file"
    GROUP = "group"
    USER_INFO = "user_info"
    MENU = "menu"
    API = "api"


class PolicyType(str, Enum):
    """Security policy types with a default record."""

    DATA_ACCESS = "data_access"
    FILE_SHARING = "file_sharing"
    MESSAGE_RETENTION = "message_retention"
    AUDIT_LOGGING = "audit_logging"
    IP_WHITELIST = "ip_whitelist"
    TIME_RESTRICTION = "time_restriction"


class AuditLevel(str, Enum):
    """Severity of an audit entry."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# =============================================================================
# Defaults
# =============================================================================

# Decision for a resource that has no rule bucket at all
DEFAULT_RESOURCE_POLICIES: dict[str, bool] = {
    ResourceType.API.value: False,
    ResourceType.FILE.value: False,
    ResourceType.CHAT.value: True,
    ResourceType.FEATURE.value: True,
}

DEFAULT_PERMISSION_MATRIX: dict[ActorClass, dict[str, PermissionLevel]] = {
    ActorClass.INTERNAL: {
        PermissionResource.MESSAGE.value: PermissionLevel.WRITE,
        PermissionResource.FILE.value: PermissionLevel.WRITE,
        PermissionResource.GROUP.value: PermissionLevel.WRITE,
        PermissionResource.USER_INFO.value: PermissionLevel.READ,
        PermissionResource.MENU.value: PermissionLevel.WRITE,
        PermissionResource.API.value: PermissionLevel.WRITE,
    },
    ActorClass.EXTERNAL: {
        PermissionResource.MESSAGE.value: PermissionLevel.READ,
        PermissionResource.FILE.value: PermissionLevel.NONE,
        PermissionResource.GROUP.value: PermissionLevel.READ,
        PermissionResource.USER_INFO.value: PermissionLevel.NONE,
        PermissionResource.MENU.value: PermissionLevel.READ,
        PermissionResource.API.value: PermissionLevel.NONE,
    },
}

DEFAULT_PERMISSION_TTL_SECONDS = 3600
DEFAULT_AUDIT_MAX_ENTRIES = 10000

DEFAULT_ALLOWED_HOURS = ("09:00", "18:00")

DEFAULT_INTERNAL_DOMAINS = ["company.com", "company.cn", "internal.company.com"]


def default_security_policies() -> dict[str, "PolicyRecord"]:
    """Return a fresh copy of the built-in security policy records."""
    return {
        PolicyType.DATA_ACCESS.value: PolicyRecord(
            enabled=True,
            params={
                "external_access_level": "restricted",
                "require_approval": True,
                "data_classification": ["public", "internal"],
            },
        ),
        PolicyType.FILE_SHARING.value: PolicyRecord(
            enabled=False,
            params={
                "max_file_size_mb": 10,
                "allowed_file_types": ["pdf", "txt", "doc", "docx"],
                "scan_for_malware": True,
            },
        ),
        PolicyType.MESSAGE_RETENTION.value: PolicyRecord(
            enabled=True,
            params={
                "retention_days": 90,
                "delete_after_retention": False,
                "archive_location": "compliance_archive",
            },
        ),
        PolicyType.AUDIT_LOGGING.value: PolicyRecord(
            enabled=True,
            params={
                "log_level": "all",
                "include_message_content": True,
                "retention_days": 365,
            },
        ),
        PolicyType.IP_WHITELIST.value: PolicyRecord(
            enabled=False,
            params={
                "allowed_ips": [],
                "allow_vpn": False,
            },
        ),
        PolicyType.TIME_RESTRICTION.value: PolicyRecord(
            enabled=False,
            params={
                "allowed_hours": list(DEFAULT_ALLOWED_HOURS),
                "timezone": "Asia/Shanghai",
                "weekends_allowed": False,
            },
        ),
    }


# =============================================================================
# ACL Models
# =============================================================================


# Condition values that survive a JSON round trip unchanged
CONDITION_SCALARS = (str, int, float, bool, type(None))


class Rule(BaseModel):
    """
    A single entry in a resource bucket.

    Within one bucket there is at most one rule per (principal, type) pair.

    Attributes:
        principal: Subject specifier (user id, role:x, group:x, external:*, internal:*, *)
        type: Whether the rule allows or denies
        conditions: Extra context constraints; list values mean "one of".
            Values are JSON scalars or lists of them.
        created_at: When the rule was first added
        updated_at: When the rule's conditions were last replaced
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    principal: str = Field(
        ...,
        description="Subject specifier",
        min_length=1,
    )
    type: RuleType = Field(
        ...,
        description="allow or deny",
    )
    conditions: dict[str, Any] = Field(
        default_factory=dict,
        description="Context constraints that must all hold",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the rule was created",
    )
    updated_at: datetime | None = Field(
        default=None,
        description="When the rule was last updated",
    )

    _subject: Principal = PrivateAttr()

    @field_validator("conditions")
    @classmethod
    def validate_conditions(cls, v: dict[str, Any]) -> dict[str, Any]:
        """
        Restrict condition values to JSON scalars and lists of them.

        Rules are persisted as JSON, so any other value would compare
        differently once the store is reloaded. Tuples become lists.
        """
        validated: dict[str, Any] = {}
        for key, value in v.items():
            if isinstance(value, (list, tuple)):
                for item in value:
                    if not isinstance(item, CONDITION_SCALARS):
                        raise ValueError(
                            f"condition '{key}' contains unsupported value of type {type(item).__name__}"
                        )
                validated[key] = list(value)
            elif isinstance(value, CONDITION_SCALARS):
                validated[key] = value
            else:
                raise ValueError(f"condition '{key}' has unsupported value of type {type(value).__name__}")
        return validated

    def model_post_init(self, __context: Any) -> None:
        """Parse the principal once so matching never re-parses it."""
        self._subject = parse_principal(self.principal)

    @property
    def subject(self) -> Principal:
        """The parsed principal."""
        return self._subject

    def applies_to(self, user_id: str, context: dict[str, Any]) -> bool:
        """Check the principal and every condition against a request."""
        return self._subject.matches(user_id, context) and evaluate(self.conditions, context)


# =============================================================================
# Security Policy Models
# =============================================================================


class PolicyRecord(BaseModel):
    """
    A declarative security policy.

    Accepts both the nested form ``{enabled, params: {...}}`` and the flat
    form ``{enabled, max_file_size_mb: 10, ...}`` used in YAML files.

    Attributes:
        enabled: Disabled policies always allow
        params: Type-specific parameters read by the evaluator
    """

    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(
        default=False,
        description="Whether the policy is enforced",
    )
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Type-specific policy parameters",
    )

    @model_validator(mode="before")
    @classmethod
    def collect_flat_params(cls, data: Any) -> Any:
        """Move flat parameter keys under params."""
        if isinstance(data, dict) and "params" not in data:
            params = {k: v for k, v in data.items() if k != "enabled"}
            nested: dict[str, Any] = {"params": params}
            if "enabled" in data:
                nested["enabled"] = data["enabled"]
            return nested
        return data

    def to_flat(self) -> dict[str, Any]:
        """Flat dict view: enabled plus every parameter."""
        return {"enabled": self.enabled, **self.params}


# =============================================================================
# Compliance Models
# =============================================================================


class ComplianceResult(BaseModel):
    """
    Outcome of one compliance check.

    Attributes:
        check_type: Which check ran
        compliant: False if any violation was found
        violations: Findings that break compliance
        warnings: Findings worth attention that do not break compliance
        checked_at: When the check ran
    """

    model_config = ConfigDict(extra="forbid")

    check_type: str = Field(..., description="Compliance check type")
    compliant: bool = Field(default=True, description="Whether the data is compliant")
    violations: list[str] = Field(default_factory=list, description="Violations found")
    warnings: list[str] = Field(default_factory=list, description="Warnings raised")
    checked_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the check ran",
    )

    def add_violation(self, message: str) -> None:
        """Record a violation; the result becomes non-compliant."""
        self.compliant = False
        self.violations.append(message)

    def add_warning(self, message: str) -> None:
        """Record a warning."""
        self.warnings.append(message)


class ComplianceReport(BaseModel):
    """Aggregate of several compliance results."""

    model_config = ConfigDict(extra="forbid")

    generated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    overall_compliance: bool = True
    total_checks: int = Field(default=0, ge=0)
    failed_checks: int = Field(default=0, ge=0)
    total_violations: int = Field(default=0, ge=0)
    total_warnings: int = Field(default=0, ge=0)
    details: dict[str, ComplianceResult] = Field(default_factory=dict)


# =============================================================================
# Audit Models
# =============================================================================


class AuditEntry(BaseModel):
    """
    A record held by the audit sink.

    Attributes:
        id: Unique entry identifier
        event_type: What happened (e.g., "compliance_check")
        user_id: Who it happened to
        is_external: Actor class of the user at the time of the event
        timestamp: When it happened
        level: Severity
        data: Event-specific payload
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    event_type: str
    user_id: str
    is_external: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    level: AuditLevel = AuditLevel.INFO
    data: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Configuration
# =============================================================================


class IdentityConfig(BaseModel):
    """
    Settings for actor classification.

    Attributes:
        external_user_prefix: User ids starting with this are external
        external_group_prefix: Chat ids starting with this are external groups
        internal_domains: Email domains that belong to the organization
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    external_user_prefix: str = Field(default="ou_external_", min_length=1)
    external_group_prefix: str = Field(default="oc_external_", min_length=1)
    internal_domains: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INTERNAL_DOMAINS),
    )


class EngineConfig(BaseModel):
    """
    Complete engine configuration.

    Attributes:
        cache_path: SQLite file for persistent state (None keeps state in memory)
        permission_ttl_seconds: Lifetime of per-user permission overrides
        acl_default_policies: Decision per resource type when no rule bucket exists
        permission_matrix: Default level per actor class and resource type
        security_policies: Active security policies (None uses the built-in set)
        identity: Actor classification settings
        audit_max_entries: Audit entries kept in memory before the oldest are dropped
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    cache_path: Path | None = Field(
        default=None,
        description="SQLite cache file; in-memory when omitted",
    )
    permission_ttl_seconds: int = Field(
        default=DEFAULT_PERMISSION_TTL_SECONDS,
        description="TTL of permission overrides in seconds",
        gt=0,
    )
    acl_default_policies: dict[str, bool] = Field(
        default_factory=lambda: dict(DEFAULT_RESOURCE_POLICIES),
        description="Decision per resource type when no rules exist",
    )
    permission_matrix: dict[ActorClass, dict[str, PermissionLevel]] = Field(
        default_factory=lambda: {
            actor: dict(levels) for actor, levels in DEFAULT_PERMISSION_MATRIX.items()
        },
        description="Default permission level per actor class and resource",
    )
    security_policies: dict[str, PolicyRecord] | None = Field(
        default=None,
        description="Active security policies; built-in defaults when omitted",
    )
    identity: IdentityConfig = Field(
        default_factory=IdentityConfig,
        description="Actor classification settings",
    )
    audit_max_entries: int = Field(
        default=DEFAULT_AUDIT_MAX_ENTRIES,
        description="Maximum number of audit entries kept in memory",
        gt=0,
    )

    @field_validator("permission_matrix", mode="before")
    @classmethod
    def parse_level_names(cls, v: Any) -> Any:
        """Allow level names ("read", "write") in place of integers."""
        if not isinstance(v, dict):
            return v
        parsed: dict[Any, Any] = {}
        for actor, levels in v.items():
            if not isinstance(levels, dict):
                parsed[actor] = levels
                continue
            parsed[actor] = {
                resource: _level_from_config(level) for resource, level in levels.items()
            }
        return parsed

    @model_validator(mode="after")
    def require_both_actor_classes(self) -> "EngineConfig":
        """Both internal and external defaults must be present."""
        missing = [a.value for a in ActorClass if a not in self.permission_matrix]
        if missing:
            msg = f"permission_matrix is missing actor classes: {', '.join(missing)}"
            raise ValueError(msg)
        return self


def _level_from_config(level: Any) -> Any:
    if isinstance(level, str):
        try:
            return PermissionLevel[level.strip().upper()]
        except KeyError:
            msg = f"Unknown permission level name: {level}"
            raise ValueError(msg) from None
    return level


# =============================================================================
# YAML Loading Helpers
# =============================================================================


def load_config(path: Path | str) -> EngineConfig:
    """
    Load engine configuration from a YAML file.

    Args:
        path: Path to the YAML file

    Returns:
        Validated EngineConfig object

    Raises:
        FileNotFoundError: If the file doesn't exist
        ConfigurationError: If the YAML is not a mapping
        ValidationError: If the YAML doesn't match the schema
    """
    path = Path(path)
    with path.open() as f:
        data = yaml.safe_load(f)

    return _config_from_data(data, str(path))


def load_config_from_string(content: str) -> EngineConfig:
    """Load engine configuration from a YAML string."""
    data = yaml.safe_load(content)
    return _config_from_data(data, "<string>")


def _config_from_data(data: Any, source: str) -> EngineConfig:
    if data is None:
        return EngineConfig()
    if not isinstance(data, dict):
        raise ConfigurationError(
            source=source,
            underlying_error=f"expected a mapping, got {type(data).__name__}",
        )
    return EngineConfig.model_validate(data)
