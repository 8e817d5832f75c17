"""
Condition evaluation for ACL rules.

Conditions are extra key/value constraints a rule places on the request
context. All conditions must hold. A list (or tuple) value means "one of";
any other value means strict equality, where strict compares type as well
as value so that 1, 1.0 and True are three different things.
"""

from collections.abc import Mapping
from typing import Any


def evaluate(conditions: Mapping[str, Any] | None, context: Mapping[str, Any] | None) -> bool:
    """
    Check every condition against the request context.

    Args:
        conditions: Mapping of context key to expected value or value list
        context: The request context

    Returns:
        True if conditions are empty or all of them hold
    """
    if not conditions:
        return True

    context = context or {}
    for key, expected in conditions.items():
        if not _holds(context.get(key), expected):
            return False
    return True


def _holds(actual: Any, expected: Any) -> bool:
    # A missing key and an explicit None are both "not set"
    if actual is None:
        return False
    if isinstance(expected, (list, tuple)):
        return any(strict_equals(actual, candidate) for candidate in expected)
    return strict_equals(actual, expected)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality that also requires identical types."""
    return type(left) is type(right) and left == right
