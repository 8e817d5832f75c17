"""
Unit tests for the storage layer.

Tests cover:
- MemoryCache get/set/delete, TTL expiry and copy semantics
- SqliteCache persistence, TTL expiry, JSON validation
- RuleStore load-once, write-through, upsert, replace and clear
- RuleStore condition validation, copy isolation and failed writes
- Concurrent rule updates and decisions on one bucket
"""

import threading
from datetime import UTC, datetime
from pathlib import Path

import pytest

from policygate.acl import AccessControlList
from policygate.errors import CorruptRuleStoreError, InvalidRuleError, StorageWriteError
from policygate.schema import Rule, RuleType
from policygate.store import ACL_RULES_KEY, MemoryCache, RuleStore, SqliteCache, resource_key


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def sqlite_cache(temp_dir: Path, clock) -> SqliteCache:
    """Create a SQLite cache driven by the fake clock."""
    cache = SqliteCache(temp_dir / "cache.db", clock=clock)
    yield cache
    cache.close()


class FailingCache(MemoryCache):
    """MemoryCache whose writes can be made to fail."""

    fail = False

    def set(self, key, value, ttl=None) -> None:
        if self.fail:
            raise StorageWriteError(operation="set", underlying_error="disk full")
        super().set(key, value, ttl)


# =============================================================================
# MemoryCache Tests
# =============================================================================


class TestMemoryCache:
    """Tests for the in-memory cache."""

    def test_miss(self, cache: MemoryCache) -> None:
        """Unknown keys are misses."""
        assert cache.get("nope") == (None, False)

    def test_set_and_get(self, cache: MemoryCache) -> None:
        """Stored values are returned with a hit."""
        cache.set("k", {"a": 1})
        assert cache.get("k") == ({"a": 1}, True)

    def test_stored_none_is_a_hit(self, cache: MemoryCache) -> None:
        """A stored None is distinguishable from a miss."""
        cache.set("k", None)
        assert cache.get("k") == (None, True)

    def test_delete(self, cache: MemoryCache) -> None:
        """delete reports whether an entry existed."""
        cache.set("k", 1)
        assert cache.delete("k") is True
        assert cache.delete("k") is False
        assert cache.get("k") == (None, False)

    def test_ttl_expiry(self, cache: MemoryCache, clock) -> None:
        """Entries expire once their TTL has elapsed."""
        cache.set("k", 1, ttl=10)
        clock.advance(9)
        assert cache.get("k") == (1, True)
        clock.advance(1)
        assert cache.get("k") == (None, False)

    def test_no_ttl_never_expires(self, cache: MemoryCache, clock) -> None:
        """ttl=None means no expiry."""
        cache.set("k", 1, ttl=None)
        clock.advance(10**9)
        assert cache.get("k") == (1, True)

    def test_values_are_copied(self, cache: MemoryCache) -> None:
        """Mutating a stored or returned value does not change the cache."""
        value = {"rules": [1]}
        cache.set("k", value)
        value["rules"].append(2)
        fetched, _ = cache.get("k")
        fetched["rules"].append(3)
        assert cache.get("k") == ({"rules": [1]}, True)

    def test_contains_and_clear(self, cache: MemoryCache) -> None:
        """'in' sees live entries; clear drops them all."""
        cache.set("a", 1)
        assert "a" in cache
        cache.clear()
        assert "a" not in cache
        assert len(cache) == 0

    def test_len_counts_live_entries(self, cache: MemoryCache, clock) -> None:
        """Expired entries are not counted."""
        cache.set("a", 1, ttl=10)
        cache.set("b", 2)
        clock.advance(10)
        assert len(cache) == 1

    def test_purge_expired(self, cache: MemoryCache, clock) -> None:
        """purge_expired drops dead entries and reports how many."""
        cache.set("a", 1, ttl=10)
        cache.set("b", 2, ttl=100)
        cache.set("c", 3)
        clock.advance(50)
        assert cache.purge_expired() == 1
        assert cache.get("b") == (2, True)
        assert cache.get("c") == (3, True)

    def test_set_sweeps_unread_expired_entries(self, cache: MemoryCache, clock) -> None:
        """Entries nobody reads again do not accumulate."""
        for i in range(1000):
            cache.set(f"permission_u{i}_file", 1, ttl=10)
        clock.advance(10_000)
        cache.set("permission_u9999_file", 1, ttl=10)

        assert len(cache._entries) == 1
        assert len(cache) == 1


# =============================================================================
# SqliteCache Tests
# =============================================================================


class TestSqliteCache:
    """Tests for the SQLite cache backend."""

    def test_set_and_get(self, sqlite_cache: SqliteCache) -> None:
        """JSON values round-trip through the database."""
        sqlite_cache.set("k", {"a": [1, 2], "b": None})
        assert sqlite_cache.get("k") == ({"a": [1, 2], "b": None}, True)

    def test_overwrite(self, sqlite_cache: SqliteCache) -> None:
        """A second set replaces the value (last writer wins)."""
        sqlite_cache.set("k", 1)
        sqlite_cache.set("k", 2)
        assert sqlite_cache.get("k") == (2, True)

    def test_ttl_expiry(self, sqlite_cache: SqliteCache, clock) -> None:
        """Expired rows are misses."""
        sqlite_cache.set("k", 1, ttl=5)
        clock.advance(5)
        assert sqlite_cache.get("k") == (None, False)

    def test_delete(self, sqlite_cache: SqliteCache) -> None:
        """delete reports whether a row existed."""
        sqlite_cache.set("k", 1)
        assert sqlite_cache.delete("k") is True
        assert sqlite_cache.delete("k") is False

    def test_persistence(self, temp_dir: Path) -> None:
        """Values survive reopening the file."""
        path = temp_dir / "persist.db"
        with SqliteCache(path) as first:
            first.set("k", "v")
        with SqliteCache(path) as second:
            assert second.get("k") == ("v", True)

    def test_non_json_value_rejected(self, sqlite_cache: SqliteCache) -> None:
        """Values must be JSON-compatible."""
        with pytest.raises(StorageWriteError):
            sqlite_cache.set("k", {1, 2})

    def test_purge_expired(self, sqlite_cache: SqliteCache, clock) -> None:
        """purge_expired removes only expired rows."""
        sqlite_cache.set("short", 1, ttl=1)
        sqlite_cache.set("long", 1, ttl=100)
        sqlite_cache.set("forever", 1)
        clock.advance(2)
        assert sqlite_cache.purge_expired() == 1
        assert sqlite_cache.keys() == ["forever", "long"]

    def test_keys_with_prefix(self, sqlite_cache: SqliteCache) -> None:
        """keys filters by prefix."""
        sqlite_cache.set("permission_u1_file", 1)
        sqlite_cache.set("permission_u1_api", 1)
        sqlite_cache.set("acl_rules", {})
        assert sqlite_cache.keys("permission_") == ["permission_u1_api", "permission_u1_file"]


# =============================================================================
# RuleStore Tests
# =============================================================================


class TestRuleStore:
    """Tests for the ACL rule repository."""

    def test_resource_key(self) -> None:
        """Bucket keys are type:id."""
        assert resource_key("chat", "c1") == "chat:c1"

    def test_empty_store(self, cache: MemoryCache) -> None:
        """A fresh store has no buckets."""
        store = RuleStore(cache)
        assert len(store) == 0
        assert store.find("chat:c1") is None
        assert store.get("chat:c1") == []

    def test_upsert_adds(self, cache: MemoryCache) -> None:
        """A new (principal, type) pair is appended."""
        store = RuleStore(cache)
        assert store.upsert("chat:c1", "u1", RuleType.ALLOW, {}) is True
        assert [r.principal for r in store.get("chat:c1")] == ["u1"]

    def test_upsert_updates_conditions(self, cache: MemoryCache) -> None:
        """An identical pair keeps one rule with the latest conditions."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "u1", "allow", {"region": "cn"})
        assert store.upsert("chat:c1", "u1", "allow", {"region": "us"}) is False

        rules = store.get("chat:c1")
        assert len(rules) == 1
        assert rules[0].conditions == {"region": "us"}
        assert rules[0].updated_at is not None

    def test_allow_and_deny_coexist(self, cache: MemoryCache) -> None:
        """The same principal may have one allow and one deny rule."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "u1", "allow")
        store.upsert("chat:c1", "u1", "deny")
        assert len(store.get("chat:c1")) == 2

    def test_write_through(self, cache: MemoryCache) -> None:
        """Every mutation is saved under acl_rules with no TTL."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "role:admin", "allow", {"tier": ["a"]})
        value, hit = cache.get(ACL_RULES_KEY)
        assert hit
        assert value["chat:c1"][0]["principal"] == "role:admin"
        assert value["chat:c1"][0]["conditions"] == {"tier": ["a"]}

    def test_load_once(self, cache: MemoryCache) -> None:
        """A second store sees what the first saved."""
        RuleStore(cache).upsert("file:f1", "u1", "deny")
        reloaded = RuleStore(cache)
        assert reloaded.has("file:f1")
        assert reloaded.get("file:f1")[0].type is RuleType.DENY

    def test_remove_principal(self, cache: MemoryCache) -> None:
        """Both allow and deny rules of a principal are removed."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "u1", "allow")
        store.upsert("chat:c1", "u1", "deny")
        store.upsert("chat:c1", "u2", "allow")
        assert store.remove_principal("chat:c1", "u1") == 2
        assert [r.principal for r in store.get("chat:c1")] == ["u2"]

    def test_remove_last_rule_drops_bucket(self, cache: MemoryCache) -> None:
        """A bucket that becomes empty disappears."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "u1", "allow")
        store.remove_principal("chat:c1", "u1")
        assert store.find("chat:c1") is None

    def test_remove_from_missing_bucket(self, cache: MemoryCache) -> None:
        """Removing from an absent bucket is a no-op."""
        assert RuleStore(cache).remove_principal("chat:none", "u1") == 0

    def test_replace(self, cache: MemoryCache) -> None:
        """replace swaps the whole bucket."""
        store = RuleStore(cache)
        store.upsert("api:a1", "u1", "allow")
        count = store.replace("api:a1", [
            {"principal": "role:ops", "type": "allow"},
            Rule(principal="u9", type="deny"),
        ])
        assert count == 2
        assert [r.principal for r in store.get("api:a1")] == ["role:ops", "u9"]

    def test_replace_with_empty_list_drops_bucket(self, cache: MemoryCache) -> None:
        """An empty replacement removes the bucket."""
        store = RuleStore(cache)
        store.upsert("api:a1", "u1", "allow")
        store.replace("api:a1", [])
        assert not store.has("api:a1")

    def test_replace_rejects_duplicates(self, cache: MemoryCache) -> None:
        """Two rules with the same (principal, type) are rejected."""
        store = RuleStore(cache)
        with pytest.raises(InvalidRuleError):
            store.replace("api:a1", [
                {"principal": "u1", "type": "allow"},
                {"principal": "u1", "type": "allow", "conditions": {"x": 1}},
            ])
        assert not store.has("api:a1")

    def test_replace_rejects_malformed(self, cache: MemoryCache) -> None:
        """Rules missing fields or with wrong types fail fast."""
        store = RuleStore(cache)
        with pytest.raises(InvalidRuleError):
            store.replace("api:a1", [{"type": "allow"}])
        with pytest.raises(InvalidRuleError):
            store.replace("api:a1", ["u1"])

    def test_upsert_rejects_bad_type(self, cache: MemoryCache) -> None:
        """An unknown rule type is a contract violation."""
        with pytest.raises(InvalidRuleError):
            RuleStore(cache).upsert("chat:c1", "u1", "maybe")

    def test_clear(self, cache: MemoryCache) -> None:
        """clear reports whether the bucket existed."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "u1", "allow")
        assert store.clear("chat:c1") is True
        assert store.clear("chat:c1") is False

    def test_reads_are_copies(self, cache: MemoryCache) -> None:
        """Mutating a returned list does not touch the store."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "u1", "allow")
        store.get("chat:c1").clear()
        assert len(store.get("chat:c1")) == 1

    def test_corrupt_cache(self, cache: MemoryCache) -> None:
        """A stored map that fails validation raises on load."""
        cache.set(ACL_RULES_KEY, {"chat:c1": [{"type": "allow"}]})
        with pytest.raises(CorruptRuleStoreError):
            RuleStore(cache)

    def test_sqlite_backend(self, sqlite_cache: SqliteCache) -> None:
        """The store works on top of the SQLite backend."""
        RuleStore(sqlite_cache).upsert("feature:f1", "group:beta", "allow", {"os": ["ios"]})
        rules = RuleStore(sqlite_cache).get("feature:f1")
        assert rules[0].principal == "group:beta"
        assert rules[0].conditions == {"os": ["ios"]}

    @pytest.mark.parametrize(
        "value",
        [{"cn", "us"}, datetime(2024, 1, 10, tzinfo=UTC), object()],
        ids=["set", "datetime", "object"],
    )
    def test_upsert_rejects_non_json_conditions(self, cache: MemoryCache, value: object) -> None:
        """Unpersistable condition values fail before anything changes."""
        store = RuleStore(cache)
        with pytest.raises(InvalidRuleError):
            store.upsert("chat:c1", "*", "allow", {"region": value})
        assert not store.has("chat:c1")
        assert cache.get(ACL_RULES_KEY) == (None, False)

    def test_replace_rejects_non_json_conditions(self, cache: MemoryCache) -> None:
        """replace validates conditions of every rule."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "u1", "allow")
        with pytest.raises(InvalidRuleError):
            store.replace("chat:c1", [{"principal": "u2", "type": "allow", "conditions": {"region": {"cn"}}}])
        assert [r.principal for r in store.get("chat:c1")] == ["u1"]

    def test_reloaded_rules_equal_live_rules(self, sqlite_cache: SqliteCache) -> None:
        """A store loaded from the JSON cache holds exactly what the live one holds."""
        store = RuleStore(sqlite_cache)
        store.upsert("chat:c1", "*", "allow", {"region": ("cn", "us"), "tier": 1, "score": 2.0})
        store.upsert("chat:c1", "u9", "deny", {"beta": True})

        reloaded = RuleStore(sqlite_cache)
        assert [r.model_dump() for r in reloaded.get("chat:c1")] == [r.model_dump() for r in store.get("chat:c1")]
        for context in ({"region": "cn", "tier": 1, "score": 2.0}, {"region": "cn", "tier": 1, "score": 2}):
            live = [r.applies_to("u1", context) for r in store.get("chat:c1")]
            assert [r.applies_to("u1", context) for r in reloaded.get("chat:c1")] == live

    def test_read_rules_are_deep_copies(self, cache: MemoryCache) -> None:
        """Mutating the conditions of a returned rule does not touch the store."""
        store = RuleStore(cache)
        store.upsert("chat:c1", "*", "allow", {"region": "cn"})

        store.get("chat:c1")[0].conditions["region"] = "us"
        store.find("chat:c1")[0].conditions["region"] = "us"
        store.snapshot()["chat:c1"][0].conditions["region"] = "us"

        assert store.get("chat:c1")[0].conditions == {"region": "cn"}
        assert cache.get(ACL_RULES_KEY)[0]["chat:c1"][0]["conditions"] == {"region": "cn"}

    def test_replace_copies_rule_instances(self, cache: MemoryCache) -> None:
        """The caller keeps no reference into the store."""
        store = RuleStore(cache)
        rule = Rule(principal="*", type="allow", conditions={"region": "cn"})
        store.replace("chat:c1", [rule])

        rule.conditions["region"] = "us"
        assert store.get("chat:c1")[0].conditions == {"region": "cn"}

    def test_failed_save_leaves_store_unchanged(self) -> None:
        """A mutation the cache rejects is not applied in memory."""
        failing = FailingCache()
        store = RuleStore(failing)
        store.upsert("chat:c1", "u1", "allow", {"region": "cn"})
        before = [r.model_dump() for r in store.get("chat:c1")]

        failing.fail = True
        with pytest.raises(StorageWriteError):
            store.upsert("chat:c1", "u2", "deny")
        with pytest.raises(StorageWriteError):
            store.upsert("chat:c1", "u1", "allow", {"region": "us"})
        with pytest.raises(StorageWriteError):
            store.remove_principal("chat:c1", "u1")
        with pytest.raises(StorageWriteError):
            store.replace("chat:c1", [])
        with pytest.raises(StorageWriteError):
            store.clear("chat:c1")

        assert [r.model_dump() for r in store.get("chat:c1")] == before
        failing.fail = False
        assert [r.model_dump() for r in RuleStore(failing).get("chat:c1")] == before


# =============================================================================
# Concurrency Tests
# =============================================================================


class TestRuleStoreConcurrency:
    """Tests for concurrent mutation and decisions on one bucket."""

    def test_concurrent_upserts_and_checks(self, cache: MemoryCache) -> None:
        """Writers never lose rules and readers never see a broken bucket."""
        acl = AccessControlList(cache)
        acl.add_rule("chat", "c1", "admin", "allow")
        writers, rules_per_writer = 8, 25
        errors: list[BaseException] = []
        start = threading.Barrier(writers + 4)

        def write(n: int) -> None:
            try:
                start.wait()
                for i in range(rules_per_writer):
                    acl.add_rule("chat", "c1", f"u{n}_{i}", "allow")
            except BaseException as e:
                errors.append(e)

        def read() -> None:
            try:
                start.wait()
                for _ in range(200):
                    rules = acl.get_rules("chat", "c1")
                    pairs = {(rule.principal, rule.type) for rule in rules}
                    assert len(pairs) == len(rules)
                    assert rules[0].principal == "admin"
                    assert acl.check_access("chat", "c1", "admin") is True
            except BaseException as e:
                errors.append(e)

        threads = [threading.Thread(target=write, args=(n,)) for n in range(writers)]
        threads += [threading.Thread(target=read) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        rules = acl.get_rules("chat", "c1")
        assert len(rules) == writers * rules_per_writer + 1

        persisted, hit = cache.get(ACL_RULES_KEY)
        assert hit
        assert persisted == {
            key: [rule.model_dump(mode="json") for rule in bucket]
            for key, bucket in acl.store.snapshot().items()
        }
