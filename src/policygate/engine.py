"""
Engine facade for policygate.

The Engine wires every service from one EngineConfig and is the calling
layer that forwards decisions to the audit sink:

- Cache: SqliteCache when cache_path is set, MemoryCache otherwise
- AccessControlList: Rule-based resource decisions
- PermissionIsolation: Tiered capability levels
- SecurityPolicy: Declarative toggleable policies
- ComplianceChecker: Compliance rule sets over SecurityPolicy
- AuditLogger: Trail of denials and permission changes

Policy records changed through the facade are saved to the cache under
security_policies and take precedence over the configured set on the next
start, so a CLI session sees the updates of the previous one.

The services stay usable on their own; the facade only adds wiring,
context enrichment and auditing.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from policygate.acl import AccessControlList
from policygate.audit import AuditLogger
from policygate.compliance import ComplianceChecker
from policygate.identity import ExternalUserIdentifier
from policygate.permissions import PermissionIsolation, get_level_name
from policygate.policy import SecurityPolicy
from policygate.schema import EngineConfig, PermissionLevel, PolicyType, load_config
from policygate.store import Cache, MemoryCache, SqliteCache

logger = logging.getLogger(__name__)

POLICIES_KEY = "security_policies"


class Engine:
    """
    All policygate services behind one object.

    Usage:
        with Engine(load_config("policygate.yaml")) as engine:
            engine.acl.add_rule("chat", "c1", "role:admin", "allow")
            engine.check_access("chat", "c1", "u9", {"roles": ["admin"]})

    Attributes:
        config: The configuration the engine was built from
        cache: Backend shared by the ACL and permission services
        identifier: Actor classification
        acl: Access control list
        permissions: Permission isolation
        security_policy: Security policy registry
        audit: Audit sink
        compliance: Compliance checker
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        cache: Cache | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            config: Engine configuration (defaults when omitted)
            cache: Backend to use instead of the one config describes
            clock: Current aware datetime for time-based policies and audit
        """
        self.config = config or EngineConfig()
        owns_cache = cache is None
        self.cache = cache if cache is not None else _open_cache(self.config.cache_path)

        try:
            self.identifier = ExternalUserIdentifier(self.config.identity)
            self.acl = AccessControlList(self.cache, self.config.acl_default_policies)
            self.permissions = PermissionIsolation(
                self.identifier,
                self.cache,
                self.config.permission_matrix,
                self.config.permission_ttl_seconds,
            )
            stored, hit = self.cache.get(POLICIES_KEY)
            policies = stored if hit else self.config.security_policies
            self.security_policy = SecurityPolicy(policies, clock=clock)
        except Exception:
            if owns_cache:
                self.cache.close()
            raise

        self.audit = AuditLogger(self.identifier, clock=clock, max_entries=self.config.audit_max_entries)
        self.compliance = ComplianceChecker(self.security_policy, self.audit)

    @classmethod
    def from_config_file(cls, path: str | Path) -> "Engine":
        """Build an engine from a YAML configuration file."""
        return cls(load_config(path))

    def close(self) -> None:
        """Close the cache backend."""
        self.cache.close()

    def __enter__(self) -> "Engine":
        """Enter context manager."""
        return self

    def __exit__(self, *args: Any) -> None:
        """Exit context manager."""
        self.close()

    # =========================================================================
    # Audited Decisions
    # =========================================================================

    def check_access(
        self,
        resource_type: str,
        resource_id: str,
        user_id: str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """
        ACL decision with the caller's actor class filled in.

        ``is_external`` is taken from the identifier unless the context
        already carries it. Denials are audited.
        """
        context = dict(context or {})
        context.setdefault("is_external", self.identifier.is_external_user(user_id))
        allowed = self.acl.check_access(resource_type, resource_id, user_id, context)
        if not allowed:
            self.audit.log_access_denied(user_id, f"{resource_type}:{resource_id}")
        return allowed

    def check_permission(self, user_id: str, resource: str, required_level: PermissionLevel | int) -> bool:
        """Permission decision; denials are audited."""
        allowed = self.permissions.check_permission(user_id, resource, required_level)
        if not allowed:
            self.audit.log_access_denied(user_id, resource)
        return allowed

    def set_permission(
        self,
        user_id: str,
        resource: str,
        level: PermissionLevel | int,
        operator_id: str = "system",
    ) -> None:
        """Store a permission override and audit the change."""
        self.permissions.set_permission(user_id, resource, level)
        self.audit.log_permission_changed(
            user_id,
            operator_id,
            {resource: get_level_name(int(level))},
        )

    def check_policy(self, policy_type: PolicyType | str, context: dict[str, Any] | None = None) -> bool:
        """Policy decision; failures are audited as security violations."""
        allowed = self.security_policy.check_policy(policy_type, context)
        if not allowed:
            user_id = (context or {}).get("user_id")
            self.audit.log_security_violation(
                user_id if isinstance(user_id, str) and user_id else "system",
                f"policy:{policy_type.value if isinstance(policy_type, PolicyType) else policy_type}",
            )
        return allowed

    # =========================================================================
    # Policy Administration
    # =========================================================================

    def update_policy(self, policy_type: PolicyType | str, config: dict[str, Any]) -> None:
        """Merge settings into a policy record and save the active set."""
        self.security_policy.update_policy(policy_type, config)
        self._save_policies()

    def reset_policy(self, policy_type: PolicyType | str | None = None) -> None:
        """Restore one or all policy records from the defaults and save."""
        self.security_policy.reset_to_default(policy_type)
        self._save_policies()

    def _save_policies(self) -> None:
        payload = {
            policy_type: record.model_dump(mode="json")
            for policy_type, record in self.security_policy.get_all_policies().items()
        }
        self.cache.set(POLICIES_KEY, payload, ttl=None)

    def __repr__(self) -> str:
        return f"<Engine: cache={self.cache!r}>"


def _open_cache(cache_path: Path | None) -> Cache:
    if cache_path is None:
        return MemoryCache()
    logger.debug("Opening cache database %s", cache_path)
    return SqliteCache(cache_path)
