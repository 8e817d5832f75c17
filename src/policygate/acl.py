"""
Access Control List for policygate.

Decides whether a user may act on a resource from explicit allow/deny rules
stored per resource bucket.

Decision procedure (check_access):
    1. No bucket for the resource: return the resource type's default policy
       (chat/feature allow, api/file deny, anything else deny)
    2. Otherwise evaluate EVERY rule; a rule matches when its principal
       covers the user and all of its conditions hold
    3. Any matching deny rule -> False (deny overrides allow)
    4. Else any matching allow rule -> True
    5. Else False; an existing bucket never falls back to the default policy

Business outcomes are booleans. Only malformed rule data raises.
"""

import logging
from typing import Any

from policygate.schema import DEFAULT_RESOURCE_POLICIES, ResourceType, Rule, RuleType
from policygate.store.cache import Cache
from policygate.store.rules import RuleStore, resource_key

logger = logging.getLogger(__name__)


class AccessControlList:
    """
    Rule-based access decisions over resource buckets.

    Usage:
        acl = AccessControlList(MemoryCache())
        acl.add_rule("chat", "c1", "role:admin", RuleType.ALLOW)
        acl.check_access("chat", "c1", "u9", {"roles": ["admin"]})  # True

    Attributes:
        store: The rule repository
        default_policies: Decision per resource type when no bucket exists
    """

    def __init__(
        self,
        cache: Cache | RuleStore,
        default_policies: dict[str, bool] | None = None,
    ) -> None:
        """
        Initialize the ACL.

        Args:
            cache: A cache backend, or an already constructed RuleStore
            default_policies: Overrides for the per-type default decision
        """
        self.store = cache if isinstance(cache, RuleStore) else RuleStore(cache)
        self.default_policies = dict(
            DEFAULT_RESOURCE_POLICIES if default_policies is None else default_policies
        )

    # =========================================================================
    # Rule Administration
    # =========================================================================

    def add_rule(
        self,
        resource_type: ResourceType | str,
        resource_id: str,
        principal: str,
        rule_type: RuleType | str,
        conditions: dict[str, Any] | None = None,
    ) -> None:
        """
        Add a rule, or update the conditions of an identical (principal, type) rule.

        Args:
            resource_type: chat, file, api, feature or any other type string
            resource_id: Resource identifier
            principal: Subject specifier
            rule_type: allow or deny
            conditions: Context constraints; list values mean "one of"

        Raises:
            InvalidRuleError: If the rule data violates the rule contract
        """
        key = resource_key(_type_value(resource_type), resource_id)
        added = self.store.upsert(key, principal, rule_type, conditions)
        logger.info(
            "ACL rule %s: %s %s on %s",
            "added" if added else "updated",
            _type_value(rule_type),
            principal,
            key,
        )

    def remove_rule(
        self,
        resource_type: ResourceType | str,
        resource_id: str,
        principal: str,
    ) -> None:
        """Remove every rule, allow and deny, for a principal on a resource."""
        key = resource_key(_type_value(resource_type), resource_id)
        removed = self.store.remove_principal(key, principal)
        if removed:
            logger.info("ACL rule removed: %s on %s (%d rules)", principal, key, removed)

    def get_rules(self, resource_type: ResourceType | str, resource_id: str) -> list[Rule]:
        """Return the rules of a resource (empty if none exist)."""
        return self.store.get(resource_key(_type_value(resource_type), resource_id))

    def set_rules(
        self,
        resource_type: ResourceType | str,
        resource_id: str,
        rules: list[Rule | dict[str, Any]],
    ) -> None:
        """
        Replace all rules of a resource.

        An empty list removes the bucket, so the resource falls back to its
        default policy again.

        Raises:
            InvalidRuleError: If any rule is malformed or duplicated
        """
        key = resource_key(_type_value(resource_type), resource_id)
        count = self.store.replace(key, rules)
        logger.info("ACL rules set on %s: %d rules", key, count)

    def clear_rules(self, resource_type: ResourceType | str, resource_id: str) -> None:
        """Delete all rules of a resource."""
        key = resource_key(_type_value(resource_type), resource_id)
        if self.store.clear(key):
            logger.info("ACL rules cleared on %s", key)

    # =========================================================================
    # Decisions
    # =========================================================================

    def check_access(
        self,
        resource_type: ResourceType | str,
        resource_id: str,
        user_id: str,
        context: dict[str, Any] | None = None,
    ) -> bool:
        """
        Decide whether a user may access a resource.

        Args:
            resource_type: Resource type
            resource_id: Resource identifier
            user_id: Acting user
            context: Request context (roles, groups, is_external and any
                keys referenced by rule conditions)

        Returns:
            True if access is granted
        """
        type_value = _type_value(resource_type)
        key = resource_key(type_value, resource_id)
        context = context or {}

        rules = self.store.find(key)
        if rules is None:
            decision = self.get_default_policy(type_value)
            logger.debug("No ACL rules for %s, default policy: %s", key, decision)
            return decision

        allow = False
        deny = False
        # No early exit: a later deny must still override an earlier allow
        for rule in rules:
            if not rule.applies_to(user_id, context):
                continue
            if rule.type is RuleType.ALLOW:
                allow = True
            elif rule.type is RuleType.DENY:
                deny = True

        has_access = allow and not deny
        logger.debug(
            "Access check on %s for %s: allow=%s deny=%s -> %s",
            key,
            user_id,
            allow,
            deny,
            has_access,
        )
        return has_access

    def get_default_policy(self, resource_type: ResourceType | str) -> bool:
        """Decision for a resource type that has no rule bucket; unknown types deny."""
        return self.default_policies.get(_type_value(resource_type), False)

    def __repr__(self) -> str:
        return f"<AccessControlList: {len(self.store)} resources>"


def _type_value(value: Any) -> str:
    """Plain string for a str-valued enum member or a string."""
    return value.value if isinstance(value, (ResourceType, RuleType)) else value
