"""
Tiered permission isolation between internal and external users.

Every user gets a capability level per resource type:

    NONE(0) < READ(1) < WRITE(2) < ADMIN(3)

The level comes from, in order:
    1. A per-user override in the cache (permission_{user}_{resource}, TTL)
    2. The default matrix for the user's actor class

A cache miss writes the default back into the cache with the same TTL, so
the first lookup pins the level for the TTL window. Overrides expire
silently and fall back to the default.

The only admission test is ``user_level >= required_level``.
"""

import logging
from collections.abc import Iterable
from typing import Any

from policygate.errors import InvalidPermissionLevelError
from policygate.identity import ExternalUserIdentifier
from policygate.schema import (
    DEFAULT_PERMISSION_MATRIX,
    DEFAULT_PERMISSION_TTL_SECONDS,
    ActorClass,
    PermissionLevel,
    PermissionResource,
)
from policygate.store.cache import Cache

logger = logging.getLogger(__name__)

UNKNOWN_LEVEL_NAME = "unknown"


def permission_cache_key(user_id: str, resource: str) -> str:
    """Cache key of a user's level on a resource type."""
    return f"permission_{user_id}_{resource}"


def get_level_name(level: Any) -> str:
    """
    Name of a permission level.

    Total: anything that is not one of the four levels is "unknown".

    Examples:
        get_level_name(2) -> "write"
        get_level_name(999) -> "unknown"
    """
    if isinstance(level, bool) or not isinstance(level, int):
        return UNKNOWN_LEVEL_NAME
    try:
        return PermissionLevel(level).name.lower()
    except ValueError:
        return UNKNOWN_LEVEL_NAME


def get_level_from_name(name: Any) -> PermissionLevel:
    """
    Level for a case-insensitive name.

    Total: unknown names (and non-strings) map to NONE.
    """
    if not isinstance(name, str):
        return PermissionLevel.NONE
    try:
        return PermissionLevel[name.strip().upper()]
    except KeyError:
        return PermissionLevel.NONE


def coerce_level(level: Any) -> PermissionLevel:
    """
    Validate a level value before it is stored or used.

    Raises:
        InvalidPermissionLevelError: If level is not an integer in 0..3
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise InvalidPermissionLevelError(level=level)
    try:
        return PermissionLevel(level)
    except ValueError:
        raise InvalidPermissionLevelError(level=level) from None


class PermissionIsolation:
    """
    Answers "does user X hold at least level L on resource type R".

    Usage:
        isolation = PermissionIsolation(ExternalUserIdentifier(), MemoryCache())
        isolation.check_permission("u1", "file", PermissionLevel.READ)  # True
        isolation.check_permission("ou_external_9", "file", PermissionLevel.READ)  # False

    Attributes:
        identifier: Actor classification collaborator
        matrix: Default level per actor class and resource type
        ttl_seconds: Lifetime of cached levels
    """

    def __init__(
        self,
        identifier: ExternalUserIdentifier,
        cache: Cache,
        matrix: dict[ActorClass, dict[str, PermissionLevel]] | None = None,
        ttl_seconds: int = DEFAULT_PERMISSION_TTL_SECONDS,
    ) -> None:
        """
        Initialize the permission model.

        Args:
            identifier: Classifies users as internal or external
            cache: Backend for per-user levels
            matrix: Default levels (built-in matrix when omitted)
            ttl_seconds: TTL applied to every cached level
        """
        self.identifier = identifier
        self._cache = cache
        source = DEFAULT_PERMISSION_MATRIX if matrix is None else matrix
        self.matrix = {ActorClass(actor): dict(levels) for actor, levels in source.items()}
        self.ttl_seconds = ttl_seconds

    @property
    def known_resources(self) -> list[str]:
        """Every resource type named in the matrix, in declaration order."""
        resources: dict[str, None] = {}
        for levels in self.matrix.values():
            resources.update(dict.fromkeys(levels))
        return list(resources)

    def actor_class(self, user_id: str) -> ActorClass:
        """Classify a user."""
        if self.identifier.is_external_user(user_id):
            return ActorClass.EXTERNAL
        return ActorClass.INTERNAL

    def default_level(self, actor: ActorClass, resource: str) -> PermissionLevel:
        """Matrix level for an actor class; resources outside the matrix get NONE."""
        return self.matrix.get(actor, {}).get(resource, PermissionLevel.NONE)

    # =========================================================================
    # Checks
    # =========================================================================

    def check_permission(
        self,
        user_id: str,
        resource: PermissionResource | str,
        required_level: PermissionLevel | int,
    ) -> bool:
        """
        Check that a user holds at least the required level.

        Args:
            user_id: Acting user
            resource: Resource type (message, file, group, ...)
            required_level: Minimum level needed

        Returns:
            True if the user's effective level is high enough
        """
        resource = _resource_value(resource)
        actor = self.actor_class(user_id)
        level = self._resolve_level(user_id, resource, actor)
        has_permission = level >= required_level

        logger.debug(
            "Permission check: user=%s (%s) resource=%s required=%s level=%s -> %s",
            user_id,
            actor.value,
            resource,
            get_level_name(int(required_level)),
            get_level_name(int(level)),
            has_permission,
        )
        return has_permission

    def get_permission_level(self, user_id: str, resource: PermissionResource | str) -> PermissionLevel:
        """Effective level of a user on a resource (same caching as check_permission)."""
        resource = _resource_value(resource)
        return self._resolve_level(user_id, resource, self.actor_class(user_id))

    def filter_accessible_resources(
        self,
        user_id: str,
        resources: Iterable[str],
        required_level: PermissionLevel | int,
    ) -> list[str]:
        """Keep the resources the user may access, preserving input order."""
        return [
            resource
            for resource in resources
            if self.check_permission(user_id, resource, required_level)
        ]

    # =========================================================================
    # Overrides
    # =========================================================================

    def set_permission(
        self,
        user_id: str,
        resource: PermissionResource | str,
        level: PermissionLevel | int,
    ) -> None:
        """
        Store a per-user level, bypassing the default matrix.

        Raises:
            InvalidPermissionLevelError: If level is not 0..3
        """
        resource = _resource_value(resource)
        level = coerce_level(level)
        self._cache.set(permission_cache_key(user_id, resource), int(level), ttl=self.ttl_seconds)
        logger.info("Permission set: user=%s resource=%s level=%s", user_id, resource, get_level_name(int(level)))

    def set_permissions(self, user_id: str, permissions: dict[str, PermissionLevel | int]) -> None:
        """Store several per-user levels."""
        for resource, level in permissions.items():
            self.set_permission(user_id, resource, level)

    def get_user_permissions(self, user_id: str) -> dict[str, PermissionLevel]:
        """
        Effective level on every resource of the user's actor-class matrix.

        Misses are written back exactly as check_permission does.
        """
        actor = self.actor_class(user_id)
        return {
            resource: self._resolve_level(user_id, resource, actor)
            for resource in self.matrix.get(actor, {})
        }

    def clear_user_permissions(self, user_id: str) -> None:
        """Drop cached levels for every known resource type."""
        for resource in self.known_resources:
            self._cache.delete(permission_cache_key(user_id, resource))
        logger.info("Permissions cleared for user %s", user_id)

    get_level_name = staticmethod(get_level_name)
    get_level_from_name = staticmethod(get_level_from_name)

    # =========================================================================
    # Internals
    # =========================================================================

    def _resolve_level(self, user_id: str, resource: str, actor: ActorClass) -> PermissionLevel:
        key = permission_cache_key(user_id, resource)
        value, hit = self._cache.get(key)
        if hit:
            return coerce_level(value)

        level = self.default_level(actor, resource)
        self._cache.set(key, int(level), ttl=self.ttl_seconds)
        return level


def _resource_value(resource: PermissionResource | str) -> str:
    return resource.value if isinstance(resource, PermissionResource) else resource
