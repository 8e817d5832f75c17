"""
Storage module for policygate.

This module provides the cache backends that hold engine state and the
repository that keeps ACL rule buckets in sync with them.

Components:
    - Cache: Abstract get/set/delete interface with per-entry TTL
    - MemoryCache: Process-local backend
    - SqliteCache: Single-file persistent backend
    - RuleStore: In-memory bucket map, loaded once, written through on change

Keys:
    - acl_rules: The entire ACL bucket map (no expiry)
    - permission_{user_id}_{resource}: Permission overrides (TTL)
"""

from policygate.store.cache import Cache, MemoryCache
from policygate.store.db import SqliteCache
from policygate.store.rules import ACL_RULES_KEY, RuleStore, resource_key

__all__ = [
    "ACL_RULES_KEY",
    "Cache",
    "MemoryCache",
    "RuleStore",
    "SqliteCache",
    "resource_key",
]
