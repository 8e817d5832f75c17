"""
Security policy registry for policygate.

Holds the active set of declarative policy records and evaluates requests
against them.

Decision procedure (check_policy):
    1. Unknown policy type: False (fail-closed)
    2. Record disabled: True (fail-open), the evaluator is not run
    3. No evaluator registered for the type: False
    4. Otherwise: the evaluator's verdict

Records change only through update_policy (shallow merge) and
reset_to_default (fresh copy of the built-in record).
"""

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from policygate.errors import ConfigurationError
from policygate.policy.evaluators import create_default_registry
from policygate.policy.registry import EvaluatorRegistry
from policygate.schema import PolicyRecord, PolicyType, default_security_policies

logger = logging.getLogger(__name__)


class SecurityPolicy:
    """
    Named, toggleable security policies with pluggable evaluators.

    Usage:
        policy = SecurityPolicy()
        policy.update_policy("ip_whitelist", {"enabled": True, "allowed_ips": ["10.0.0.0/8"]})
        policy.check_policy("ip_whitelist", {"user_ip": "10.1.2.3"})  # True

    Attributes:
        registry: Policy type -> evaluator table
    """

    def __init__(
        self,
        policies: dict[str, PolicyRecord | dict[str, Any]] | None = None,
        registry: EvaluatorRegistry | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the registry.

        Args:
            policies: Active records (built-in defaults when omitted). The
                built-in defaults remain the source for reset_to_default.
            registry: Evaluators (the five built-ins when omitted)
            clock: Returns the current aware datetime; used by time-based
                evaluators

        Raises:
            ConfigurationError: If a supplied record is malformed
        """
        self.registry = registry if registry is not None else create_default_registry()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.RLock()
        if policies is None:
            self._policies = default_security_policies()
        else:
            self._policies = {
                _type_value(policy_type): _build_record(policy_type, record)
                for policy_type, record in policies.items()
            }

    # =========================================================================
    # Evaluation
    # =========================================================================

    def check_policy(
        self,
        policy_type: PolicyType | str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """
        Evaluate a request against one policy.

        Args:
            policy_type: Which policy to apply
            context: Request attributes read by the evaluator

        Returns:
            True if the request is allowed
        """
        policy_type = _type_value(policy_type)
        context = context or {}

        with self._lock:
            record = self._policies.get(policy_type)
            if record is None:
                logger.warning("Unknown policy type: %s", policy_type)
                return False
            if not record.enabled:
                return True
            params = dict(record.params)

        evaluator = self.registry.get_optional(policy_type)
        if evaluator is None:
            logger.warning("No evaluator registered for enabled policy type: %s", policy_type)
            return False

        result = evaluator(params, context, self._clock())
        logger.debug("Policy check %s -> %s", policy_type, result)
        return result

    # =========================================================================
    # Records
    # =========================================================================

    def get_all_policies(self) -> dict[str, PolicyRecord]:
        """Copies of every active record."""
        with self._lock:
            return {
                policy_type: record.model_copy(deep=True)
                for policy_type, record in self._policies.items()
            }

    def get_policy(self, policy_type: PolicyType | str) -> PolicyRecord | None:
        """Copy of one active record, or None for an unknown type."""
        with self._lock:
            record = self._policies.get(_type_value(policy_type))
            return None if record is None else record.model_copy(deep=True)

    def policy_types(self) -> list[str]:
        """Active policy types in sorted order."""
        with self._lock:
            return sorted(self._policies)

    def update_policy(self, policy_type: PolicyType | str, config: dict[str, Any]) -> None:
        """
        Shallow-merge flat settings into a record.

        ``enabled`` toggles the record; every other key replaces the
        parameter of the same name. Updating an unknown type creates a new
        record (disabled unless ``enabled`` is given).

        Raises:
            ConfigurationError: If the merged record fails validation
        """
        policy_type = _type_value(policy_type)
        updates = dict(config)

        with self._lock:
            current = self._policies.get(policy_type) or PolicyRecord()
            merged = {
                "enabled": updates.pop("enabled", current.enabled),
                "params": {**current.params, **updates},
            }
            self._policies[policy_type] = _build_record(policy_type, merged)

        logger.info("Policy updated: %s %s", policy_type, sorted(config))

    def reset_to_default(self, policy_type: PolicyType | str | None = None) -> None:
        """
        Restore one record, or all of them, from the built-in defaults.

        Each reset installs a fresh copy, so mutating the active record
        never leaks into later resets. Resetting a type without a built-in
        default removes it, which makes it unknown (fail-closed).
        """
        defaults = default_security_policies()
        with self._lock:
            if policy_type is None:
                self._policies = defaults
            else:
                policy_type = _type_value(policy_type)
                if policy_type in defaults:
                    self._policies[policy_type] = defaults[policy_type]
                else:
                    self._policies.pop(policy_type, None)

        logger.info("Policy reset to default: %s", policy_type or "all")

    def __repr__(self) -> str:
        return f"<SecurityPolicy: {len(self._policies)} policies>"


def _build_record(policy_type: Any, record: PolicyRecord | dict[str, Any]) -> PolicyRecord:
    if isinstance(record, PolicyRecord):
        return record.model_copy(deep=True)
    try:
        return PolicyRecord.model_validate(record)
    except ValidationError as e:
        raise ConfigurationError(
            source=f"policy '{_type_value(policy_type)}'",
            underlying_error=str(e),
        ) from e


def _type_value(value: Any) -> str:
    return value.value if isinstance(value, PolicyType) else value
