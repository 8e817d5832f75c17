"""
Security policy module for policygate.

Declarative, toggleable policies evaluated against a request context.

Key concepts:
    - PolicyRecord: enabled flag plus type-specific parameters
    - SecurityPolicy: Active records and the check_policy dispatch
    - EvaluatorRegistry: Policy type -> evaluator table

Outcomes:
    - Unknown policy type: deny (fail-closed)
    - Disabled policy: allow (fail-open)
"""

from policygate.policy.engine import SecurityPolicy
from policygate.policy.evaluators import create_default_registry, ip_in_range
from policygate.policy.registry import Evaluator, EvaluatorRegistry

__all__ = [
    "Evaluator",
    "EvaluatorRegistry",
    "SecurityPolicy",
    "create_default_registry",
    "ip_in_range",
]
