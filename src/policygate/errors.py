"""
Exception hierarchy for policygate.

All policygate exceptions inherit from PolicyGateError, allowing callers to
catch every engine-specific exception with a single except clause.

Only contract violations raise. A denied request, an unknown resource type,
an unknown policy type or an unknown level name are ordinary return values
(False, PermissionLevel.NONE, "unknown"), never exceptions.

Exception Categories:
    - InvalidRuleError: Rule data missing fields or carrying wrong types
    - CorruptRuleStoreError: Persisted rule buckets fail validation
    - InvalidPermissionLevelError: A level outside NONE..ADMIN was stored
    - ConfigurationError: Engine configuration could not be loaded
    - UnknownPolicyTypeError: No evaluator is registered for a policy type
    - StorageError: Cache backend operation failed
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Rule errors: 1xxx
ERROR_RULE_INVALID = 1001
ERROR_RULE_STORE_CORRUPT = 1002

# Permission errors: 2xxx
ERROR_PERMISSION_LEVEL_INVALID = 2001

# Configuration errors: 3xxx
ERROR_CONFIG_INVALID = 3001
ERROR_POLICY_TYPE_UNKNOWN = 3002

# Storage errors: 5xxx
ERROR_STORAGE_CONNECTION = 5001
ERROR_STORAGE_WRITE = 5002
ERROR_STORAGE_READ = 5003


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class PolicyGateError(Exception):
    """
    Base exception for all policygate errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        """Format error for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Rule Errors
# =============================================================================


@dataclass
class InvalidRuleError(PolicyGateError):
    """
    Raised when rule data violates the rule contract.

    A rule without a principal, with an unknown type, or with conditions
    that are not a mapping indicates a programming error or corrupted state.

    Attributes:
        resource_key: The "type:id" bucket the rule was destined for
        reason: What was wrong with the rule
    """

    resource_key: str = ""
    reason: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid rule for {self.resource_key}: {self.reason}"
        if self.code == 0:
            self.code = ERROR_RULE_INVALID
        self.context.update({
            "resource_key": self.resource_key,
            "reason": self.reason,
        })


@dataclass
class CorruptRuleStoreError(PolicyGateError):
    """Raised when the persisted rule map cannot be validated."""

    cache_key: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Stored rules under '{self.cache_key}' are corrupt: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_RULE_STORE_CORRUPT
        if not self.suggestion:
            self.suggestion = "Clear the cache entry and re-create the rules"
        self.context.update({
            "cache_key": self.cache_key,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Permission Errors
# =============================================================================


@dataclass
class InvalidPermissionLevelError(PolicyGateError):
    """Raised when a permission level outside NONE..ADMIN is written."""

    level: Any = None

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid permission level: {self.level!r}"
        if self.code == 0:
            self.code = ERROR_PERMISSION_LEVEL_INVALID
        if not self.suggestion:
            self.suggestion = "Use one of none, read, write, admin (0-3)"
        self.context["level"] = self.level


# =============================================================================
# Configuration Errors
# =============================================================================


@dataclass
class ConfigurationError(PolicyGateError):
    """Raised when engine configuration cannot be loaded or validated."""

    source: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration {self.source}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        self.context.update({
            "source": self.source,
            "underlying_error": self.underlying_error,
        })


@dataclass
class UnknownPolicyTypeError(PolicyGateError):
    """Raised when an evaluator is looked up for an unregistered policy type."""

    policy_type: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No evaluator registered for policy type: {self.policy_type}"
        if self.code == 0:
            self.code = ERROR_POLICY_TYPE_UNKNOWN
        self.context["policy_type"] = self.policy_type


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(PolicyGateError):
    """
    Base class for cache backend errors.

    Attributes:
        operation: The operation that failed (e.g., "get", "set")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageConnectionError(StorageError):
    """Raised when the cache database cannot be opened."""

    db_path: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to connect to cache database: {self.db_path}"
        if self.code == 0:
            self.code = ERROR_STORAGE_CONNECTION
        if not self.suggestion:
            self.suggestion = "Check that the cache path is valid and writable"
        super().__post_init__()
        self.context["db_path"] = self.db_path


@dataclass
class StorageWriteError(StorageError):
    """Raised when a cache write fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cache write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageReadError(StorageError):
    """Raised when a cache read fails."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cache read failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_READ
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error
