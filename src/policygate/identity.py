"""
Actor classification for policygate.

ExternalUserIdentifier decides whether a user (or group) belongs to the
organization. PermissionIsolation consumes it to pick the default permission
tier. ACL rules using internal:* / external:* read ``is_external`` from the
request context instead, so callers should build that flag with this class
to keep both views consistent.
"""

import logging
from typing import Any

from policygate.schema import IdentityConfig

logger = logging.getLogger(__name__)


class ExternalUserIdentifier:
    """
    Classifies users and groups as internal or external.

    Usage:
        identifier = ExternalUserIdentifier()
        identifier.is_external_user("ou_external_42")  # True
    """

    def __init__(self, config: IdentityConfig | None = None) -> None:
        """
        Initialize the identifier.

        Args:
            config: Prefixes and internal email domains (defaults when omitted)
        """
        self.config = config or IdentityConfig()

    def is_external_user(self, user_id: str) -> bool:
        """Check whether a user id carries the external prefix."""
        is_external = user_id.startswith(self.config.external_user_prefix)
        logger.debug("External user check: %s -> %s", user_id, is_external)
        return is_external

    def is_external_group(self, chat_id: str) -> bool:
        """Check whether a chat id carries the external group prefix."""
        is_external = chat_id.startswith(self.config.external_group_prefix)
        logger.debug("External group check: %s -> %s", chat_id, is_external)
        return is_external

    def identify_from_user_info(self, user_info: dict[str, Any]) -> bool:
        """
        Classify a user from a profile record.

        Signals are consulted in order:
            1. An explicit user_type of "external" or "internal"
            2. An open_id with the external prefix
            3. An email whose domain is not an internal domain
            4. No identifiers at all and no department: external

        Args:
            user_info: Profile fields (user_type, open_id, email, department_ids)

        Returns:
            True if the user is external
        """
        user_type = user_info.get("user_type")
        if user_type == "external":
            return True
        if user_type == "internal":
            return False

        open_id = user_info.get("open_id")
        if isinstance(open_id, str) and self.is_external_user(open_id):
            return True

        email = user_info.get("email")
        if isinstance(email, str) and not self.is_internal_email(email):
            return True

        return self._is_external_by_department(user_info)

    def get_external_user_tags(self, user_id: str) -> dict[str, Any]:
        """Tags attached to external users; empty for internal users."""
        if not self.is_external_user(user_id):
            return {}

        return {
            "is_external": True,
            "user_type": "external",
            "access_level": "restricted",
            "requires_approval": True,
        }

    def validate_external_access(self, user_id: str, resource: str) -> bool:
        """
        Coarse gate for external users.

        Internal users pass. External users are refused here and must be
        granted access through PermissionIsolation overrides or ACL rules.
        """
        if not self.is_external_user(user_id):
            return True

        logger.info("External user %s refused coarse access to %s", user_id, resource)
        return False

    def is_internal_email(self, email: str) -> bool:
        """Check whether an email address belongs to an internal domain."""
        if "@" not in email:
            return False
        domain = email.rsplit("@", 1)[1].lower()
        return domain in {d.lower() for d in self.config.internal_domains}

    def build_context(self, user_id: str, **extra: Any) -> dict[str, Any]:
        """
        Request context carrying this identifier's view of the user.

        Useful for ACL checks so that internal:* / external:* rules agree
        with PermissionIsolation.
        """
        return {"is_external": self.is_external_user(user_id), **extra}

    def _is_external_by_department(self, user_info: dict[str, Any]) -> bool:
        has_identifiers = any(
            user_info.get(field) is not None for field in ("user_type", "open_id", "email")
        )
        if has_identifiers:
            return False

        if user_info.get("department_ids"):
            return False

        logger.info("User classified as external due to missing department info")
        return True
