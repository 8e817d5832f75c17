"""
Principal specifiers for ACL rules.

A rule's subject is written as a plain string and parsed once, when the rule
is created, into a Principal value:

    u123          -> EXACT("u123")
    role:admin    -> ROLE("admin")
    group:ops     -> GROUP("ops")
    external:*    -> EXTERNAL_ANY
    internal:*    -> INTERNAL_ANY
    *             -> ANY

Matching reads the acting user's id and the caller-supplied request context
(``roles``, ``groups``, ``is_external``). There is no glob matching beyond
the fixed forms above.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

ROLE_PREFIX = "role:"
GROUP_PREFIX = "group:"
EXTERNAL_ANY = "external:*"
INTERNAL_ANY = "internal:*"
ANY = "*"

# Containers accepted for context["roles"] / context["groups"]
_MEMBERSHIP_TYPES = (list, tuple, set, frozenset)


class PrincipalKind(str, Enum):
    """The closed set of principal forms."""

    EXACT = "exact"
    ROLE = "role"
    GROUP = "group"
    EXTERNAL_ANY = "external_any"
    INTERNAL_ANY = "internal_any"
    ANY = "any"


@dataclass(frozen=True)
class Principal:
    """
    A parsed principal specifier.

    Attributes:
        kind: Which form the specifier took
        value: The user id, role or group name (empty for wildcards)
        spec: The original string, kept for storage and display
    """

    kind: PrincipalKind
    value: str
    spec: str

    def matches(self, user_id: str, context: Mapping[str, Any] | None = None) -> bool:
        """
        Check whether this principal covers the acting user.

        An exact specifier is compared to the user id first, so a user whose
        id happens to be "role:x" is still matched by that exact string.

        Args:
            user_id: The acting user's id
            context: Request context with roles, groups and is_external

        Returns:
            True if the principal applies to the user
        """
        context = context or {}

        if self.spec == user_id:
            return True

        if self.kind is PrincipalKind.ROLE:
            return _contains(context.get("roles"), self.value)
        if self.kind is PrincipalKind.GROUP:
            return _contains(context.get("groups"), self.value)
        if self.kind is PrincipalKind.EXTERNAL_ANY:
            return bool(context.get("is_external", False))
        if self.kind is PrincipalKind.INTERNAL_ANY:
            return not bool(context.get("is_external", False))
        if self.kind is PrincipalKind.ANY:
            return True

        return False

    def __str__(self) -> str:
        return self.spec


def parse_principal(spec: str) -> Principal:
    """
    Parse a principal specifier string.

    Never fails: anything that is not one of the prefixed or wildcard forms
    is an exact subject id.
    """
    if spec == ANY:
        return Principal(PrincipalKind.ANY, "", spec)
    if spec == EXTERNAL_ANY:
        return Principal(PrincipalKind.EXTERNAL_ANY, "", spec)
    if spec == INTERNAL_ANY:
        return Principal(PrincipalKind.INTERNAL_ANY, "", spec)
    if spec.startswith(ROLE_PREFIX):
        return Principal(PrincipalKind.ROLE, spec[len(ROLE_PREFIX):], spec)
    if spec.startswith(GROUP_PREFIX):
        return Principal(PrincipalKind.GROUP, spec[len(GROUP_PREFIX):], spec)
    return Principal(PrincipalKind.EXACT, spec, spec)


def matches(principal_spec: str, user_id: str, context: Mapping[str, Any] | None = None) -> bool:
    """Match an unparsed principal specifier against a user."""
    return parse_principal(principal_spec).matches(user_id, context)


def _contains(members: Any, name: str) -> bool:
    """Strict membership test; anything but a list-like container is empty."""
    if not isinstance(members, _MEMBERSHIP_TYPES):
        return False
    return any(type(member) is str and member == name for member in members)
