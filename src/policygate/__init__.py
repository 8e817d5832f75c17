"""
policygate - Policy evaluation engine for internal and external collaborators.

policygate answers "may this user do this?" from three independent sources:
- Access control lists with deny-overrides-allow rule buckets
- Tiered permission levels per actor class with TTL overrides
- Declarative, toggleable security policies with pluggable evaluators

A compliance checker and an audit sink sit on top of them.

Example usage:
    $ policygate rule add chat c1 role:admin --type allow
    $ policygate check-access chat c1 u9 --role admin
    $ policygate check-policy ip_whitelist --context '{"user_ip": "10.0.0.1"}'
"""

__version__ = "0.1.0"
__author__ = "policygate Contributors"

from policygate.acl import AccessControlList
from policygate.audit import AuditLogger
from policygate.compliance import ComplianceChecker
from policygate.engine import Engine
from policygate.identity import ExternalUserIdentifier
from policygate.permissions import PermissionIsolation
from policygate.policy import SecurityPolicy
from policygate.schema import EngineConfig, PermissionLevel, PolicyType, RuleType, load_config

__all__ = [
    "__version__",
    "__author__",
    "AccessControlList",
    "AuditLogger",
    "ComplianceChecker",
    "Engine",
    "EngineConfig",
    "ExternalUserIdentifier",
    "PermissionIsolation",
    "PermissionLevel",
    "PolicyType",
    "RuleType",
    "SecurityPolicy",
    "load_config",
]
