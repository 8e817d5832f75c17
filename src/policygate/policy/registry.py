"""
Evaluator registry for security policies.

Maps a policy type name to the function that evaluates an enabled record of
that type. New policy types are added by registering an evaluator; the
SecurityPolicy dispatch never changes.

An evaluator has the signature:

    evaluator(params, context, now) -> bool

where ``params`` is a copy of the record's parameters, ``context`` the
request context and ``now`` an aware datetime supplied by the engine clock.

Usage:
    registry = EvaluatorRegistry()
    registry.register("message_retention", check_message_retention)
    evaluator = registry.get("message_retention")
"""

from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any

from policygate.errors import UnknownPolicyTypeError

Evaluator = Callable[[dict[str, Any], dict[str, Any], datetime], bool]


class EvaluatorRegistry:
    """
    Registry for looking up policy evaluators by policy type.

    Attributes:
        _evaluators: Internal mapping of policy types to evaluators
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._evaluators: dict[str, Evaluator] = {}

    def register(self, policy_type: str, evaluator: Evaluator) -> None:
        """
        Register an evaluator, replacing any previous one for the type.

        Raises:
            ValueError: If the type is empty or the evaluator is not callable
        """
        if not policy_type:
            msg = "Policy type must be a non-empty string"
            raise ValueError(msg)
        if not callable(evaluator):
            msg = f"Evaluator for '{policy_type}' must be callable"
            raise ValueError(msg)

        self._evaluators[policy_type] = evaluator

    def get(self, policy_type: str) -> Evaluator:
        """
        Look up an evaluator.

        Raises:
            UnknownPolicyTypeError: If nothing is registered for the type
        """
        evaluator = self._evaluators.get(policy_type)
        if evaluator is None:
            raise UnknownPolicyTypeError(policy_type=policy_type)
        return evaluator

    def get_optional(self, policy_type: str) -> Evaluator | None:
        """Look up an evaluator, returning None if not found."""
        return self._evaluators.get(policy_type)

    def has(self, policy_type: str) -> bool:
        """Check if an evaluator is registered."""
        return policy_type in self._evaluators

    def unregister(self, policy_type: str) -> bool:
        """
        Remove an evaluator.

        Returns:
            True if the evaluator was removed, False if it wasn't registered
        """
        return self._evaluators.pop(policy_type, None) is not None

    def list_types(self) -> list[str]:
        """Registered policy types in sorted order."""
        return sorted(self._evaluators)

    def __len__(self) -> int:
        """Return the number of registered evaluators."""
        return len(self._evaluators)

    def __iter__(self) -> Iterator[str]:
        """Iterate over registered policy types."""
        return iter(self._evaluators)

    def __contains__(self, policy_type: object) -> bool:
        """Support 'in' operator."""
        return policy_type in self._evaluators

    def __repr__(self) -> str:
        return f"<EvaluatorRegistry: {len(self)} evaluators>"
