"""
Rule repository for the access control list.

The RuleStore owns the in-memory map of resource buckets
("type:id" -> ordered list of rules) and mirrors it into a Cache under a
single key. The map is loaded once at construction and written through
after every mutation.

Invariants:
    - At most one rule per (principal, type) in a bucket
    - A bucket that becomes empty is removed, never kept empty
    - Reads return deep copies; neither the live lists nor the live rules
      leave the store, and incoming Rule instances are copied on the way in
    - Every mutation and its save happen under one lock, so a concurrent
      reader never observes a partially updated bucket
    - A mutation builds a new map and swaps it in only after the cache
      accepted it, so a failed write leaves the store unchanged
"""

import logging
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from pydantic import TypeAdapter, ValidationError

from policygate.errors import CorruptRuleStoreError, InvalidRuleError
from policygate.schema import Rule, RuleType
from policygate.store.cache import Cache

logger = logging.getLogger(__name__)

ACL_RULES_KEY = "acl_rules"

_BUCKETS_ADAPTER = TypeAdapter(dict[str, list[Rule]])


def resource_key(resource_type: str, resource_id: str) -> str:
    """Build the bucket key for a resource."""
    return f"{resource_type}:{resource_id}"


class RuleStore:
    """
    Repository of ACL rule buckets backed by a cache.

    Usage:
        store = RuleStore(MemoryCache())
        store.upsert("chat:c1", "role:admin", RuleType.ALLOW, {})
        rules = store.get("chat:c1")

    Attributes:
        cache_key: Key under which the whole bucket map is persisted
    """

    def __init__(self, cache: Cache, cache_key: str = ACL_RULES_KEY) -> None:
        """
        Create the store and load persisted buckets.

        Args:
            cache: Backend holding the bucket map
            cache_key: Key to read and write

        Raises:
            CorruptRuleStoreError: If the persisted map fails validation
        """
        self._cache = cache
        self.cache_key = cache_key
        self._lock = threading.RLock()
        self._buckets: dict[str, list[Rule]] = {}
        self.load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def load(self) -> None:
        """Replace the in-memory map with the persisted one, if any."""
        value, hit = self._cache.get(self.cache_key)
        if not hit:
            return

        try:
            buckets = _BUCKETS_ADAPTER.validate_python(value)
        except ValidationError as e:
            raise CorruptRuleStoreError(
                cache_key=self.cache_key,
                underlying_error=str(e),
            ) from e

        with self._lock:
            self._buckets = {key: rules for key, rules in buckets.items() if rules}
        logger.debug("Loaded %d ACL rule buckets from cache", len(self._buckets))

    def save(self) -> None:
        """Write the whole map to the cache with no expiry."""
        with self._lock:
            self._write(self._buckets)

    def _write(self, buckets: dict[str, list[Rule]]) -> None:
        payload = {
            key: [rule.model_dump(mode="json") for rule in rules]
            for key, rules in buckets.items()
        }
        self._cache.set(self.cache_key, payload, ttl=None)

    def _commit(self, buckets: dict[str, list[Rule]]) -> None:
        """Persist a new map, then make it the live one."""
        self._write(buckets)
        self._buckets = buckets

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, key: str) -> list[Rule]:
        """Return a copy of a bucket's rules (empty if the bucket is absent)."""
        with self._lock:
            return _copy_rules(self._buckets.get(key, ()))

    def find(self, key: str) -> list[Rule] | None:
        """Return a copy of a bucket, or None when no bucket exists."""
        with self._lock:
            rules = self._buckets.get(key)
            return None if rules is None else _copy_rules(rules)

    def has(self, key: str) -> bool:
        """Check whether a bucket exists."""
        with self._lock:
            return key in self._buckets

    def keys(self) -> list[str]:
        """All bucket keys in sorted order."""
        with self._lock:
            return sorted(self._buckets)

    def snapshot(self) -> dict[str, list[Rule]]:
        """Copy of the whole bucket map."""
        with self._lock:
            return {key: _copy_rules(rules) for key, rules in self._buckets.items()}

    # =========================================================================
    # Mutations
    # =========================================================================

    def upsert(
        self,
        key: str,
        principal: str,
        rule_type: RuleType | str,
        conditions: dict[str, Any] | None = None,
    ) -> bool:
        """
        Add a rule, or update the conditions of the matching one.

        Args:
            key: Bucket key
            principal: Subject specifier
            rule_type: allow or deny
            conditions: Context constraints

        Returns:
            True if a new rule was appended, False if an existing one was updated

        Raises:
            InvalidRuleError: If the rule data violates the rule contract
        """
        conditions = {} if conditions is None else conditions
        rule = _build_rule(key, {
            "principal": principal,
            "type": rule_type,
            "conditions": conditions,
        })

        with self._lock:
            bucket = list(self._buckets.get(key, ()))
            added = True
            for index, existing in enumerate(bucket):
                if existing.principal == rule.principal and existing.type == rule.type:
                    bucket[index] = existing.model_copy(update={
                        "conditions": dict(rule.conditions),
                        "updated_at": datetime.now(UTC),
                    })
                    added = False
                    break
            else:
                bucket.append(rule)

            self._commit({**self._buckets, key: bucket})
            return added

    def remove_principal(self, key: str, principal: str) -> int:
        """
        Remove every rule (allow and deny) for a principal in a bucket.

        Returns:
            Number of rules removed
        """
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return 0

            kept = [rule for rule in bucket if rule.principal != principal]
            buckets = dict(self._buckets)
            if kept:
                buckets[key] = kept
            else:
                del buckets[key]
            self._commit(buckets)
            return len(bucket) - len(kept)

    def replace(self, key: str, rules: Iterable[Rule | dict[str, Any]]) -> int:
        """
        Replace a bucket's rules wholesale.

        An empty list removes the bucket.

        Returns:
            Number of rules now in the bucket

        Raises:
            InvalidRuleError: If any rule is malformed or two rules share
                a (principal, type) pair
        """
        validated = [_build_rule(key, rule) for rule in rules]

        seen: set[tuple[str, RuleType]] = set()
        for rule in validated:
            pair = (rule.principal, rule.type)
            if pair in seen:
                raise InvalidRuleError(
                    resource_key=key,
                    reason=f"duplicate rule for principal '{rule.principal}' ({rule.type.value})",
                )
            seen.add(pair)

        with self._lock:
            buckets = dict(self._buckets)
            if validated:
                buckets[key] = validated
            else:
                buckets.pop(key, None)
            self._commit(buckets)
        return len(validated)

    def clear(self, key: str) -> bool:
        """
        Delete a bucket.

        Returns:
            True if the bucket existed
        """
        with self._lock:
            buckets = dict(self._buckets)
            existed = buckets.pop(key, None) is not None
            self._commit(buckets)
            return existed

    def __len__(self) -> int:
        """Number of buckets."""
        with self._lock:
            return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def __repr__(self) -> str:
        return f"<RuleStore: {len(self)} buckets>"


def _copy_rules(rules: Iterable[Rule]) -> list[Rule]:
    return [rule.model_copy(deep=True) for rule in rules]


def _build_rule(key: str, data: Rule | dict[str, Any]) -> Rule:
    if isinstance(data, Rule):
        return data.model_copy(deep=True)
    if not isinstance(data, dict):
        raise InvalidRuleError(
            resource_key=key,
            reason=f"expected a rule mapping, got {type(data).__name__}",
        )
    try:
        return Rule.model_validate(data)
    except ValidationError as e:
        raise InvalidRuleError(resource_key=key, reason=str(e)) from e
