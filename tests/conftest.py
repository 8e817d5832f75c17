"""
Pytest configuration and fixtures for policygate tests.

This module provides shared fixtures used across unit and integration tests.
"""

import tempfile
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest

from policygate.identity import ExternalUserIdentifier
from policygate.store import MemoryCache


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock() -> FakeClock:
    """A controllable clock for TTL tests."""
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> MemoryCache:
    """An in-memory cache driven by the fake clock."""
    return MemoryCache(clock=clock)


@pytest.fixture
def identifier() -> ExternalUserIdentifier:
    """Actor classification with the default prefixes."""
    return ExternalUserIdentifier()


@pytest.fixture
def weekday_noon_utc() -> datetime:
    """Wednesday 2024-01-10 04:00 UTC, which is 12:00 in Asia/Shanghai."""
    return datetime(2024, 1, 10, 4, 0, tzinfo=UTC)


@pytest.fixture
def sample_config_yaml() -> str:
    """Return an engine configuration YAML for testing."""
    return """
permission_ttl_seconds: 600
acl_default_policies:
  chat: true
  feature: true
  api: false
  file: false
  wiki: true
permission_matrix:
  internal:
    message: write
    file: write
    report: admin
  external:
    message: read
    file: none
    report: read
security_policies:
  ip_whitelist:
    enabled: true
    allowed_ips:
      - "192.168.1.0/24"
  message_retention:
    enabled: true
    retention_days: 30
identity:
  external_user_prefix: "guest_"
  internal_domains:
    - example.com
"""
