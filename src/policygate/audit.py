"""
Audit sink for policygate.

AuditLogger keeps an in-memory trail of security-relevant events and mirrors
every entry to the standard logger at the matching severity. The decision
services never write to it themselves; callers (and the ComplianceChecker)
forward outcomes here.

Critical event types (security violations, permission changes, data
exports) are additionally handed to subscribed listeners.
"""

import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from policygate.identity import ExternalUserIdentifier
from policygate.schema import DEFAULT_AUDIT_MAX_ENTRIES, AuditEntry, AuditLevel

logger = logging.getLogger(__name__)

EVENT_EXTERNAL_USER_LOGIN = "external_user_login"
EVENT_EXTERNAL_USER_ACCESS = "external_user_access"
EVENT_EXTERNAL_USER_DENIED = "external_user_denied"
EVENT_PERMISSION_CHANGED = "permission_changed"
EVENT_SECURITY_VIOLATION = "security_violation"
EVENT_DATA_EXPORTED = "data_exported"
EVENT_COMPLIANCE_CHECK = "compliance_check"

CRITICAL_EVENTS = frozenset({
    EVENT_SECURITY_VIOLATION,
    EVENT_PERMISSION_CHANGED,
    EVENT_DATA_EXPORTED,
})

_LOG_LEVELS = {
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARNING: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
    AuditLevel.CRITICAL: logging.CRITICAL,
}

AuditListener = Callable[[AuditEntry], None]


class AuditLogger:
    """
    In-memory audit trail.

    At most max_entries entries are kept; once full, each new entry drops
    the oldest one.

    Usage:
        audit = AuditLogger(ExternalUserIdentifier())
        audit.log_access("ou_external_1", "file:f1", allowed=False)
        audit.query({"event_type": "external_user_denied"})
    """

    def __init__(
        self,
        identifier: ExternalUserIdentifier | None = None,
        clock: Callable[[], datetime] | None = None,
        max_entries: int = DEFAULT_AUDIT_MAX_ENTRIES,
    ) -> None:
        self.identifier = identifier or ExternalUserIdentifier()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._listeners: list[AuditListener] = []
        self._lock = threading.Lock()

    # =========================================================================
    # Writing
    # =========================================================================

    def log(
        self,
        event_type: str,
        user_id: str,
        data: dict[str, Any] | None = None,
        level: AuditLevel | str = AuditLevel.INFO,
    ) -> AuditEntry:
        """
        Record an event.

        Args:
            event_type: What happened
            user_id: Who it concerns
            data: Event payload
            level: Severity

        Returns:
            The stored entry
        """
        entry = AuditEntry(
            id=f"audit_{uuid.uuid4().hex}",
            event_type=event_type,
            user_id=user_id,
            is_external=self.identifier.is_external_user(user_id),
            timestamp=self._clock(),
            level=AuditLevel(level),
            data=dict(data or {}),
        )

        with self._lock:
            self._entries.append(entry)
            listeners = list(self._listeners)

        logger.log(
            _LOG_LEVELS[entry.level],
            "Audit: %s - User: %s - Event: %s",
            entry.timestamp.isoformat(),
            entry.user_id,
            entry.event_type,
        )

        if event_type in CRITICAL_EVENTS:
            for listener in listeners:
                listener(entry)

        return entry

    def log_login(self, user_id: str, success: bool, details: dict[str, Any] | None = None) -> AuditEntry:
        """Record a login attempt; failures are warnings."""
        return self.log(
            EVENT_EXTERNAL_USER_LOGIN,
            user_id,
            {**(details or {}), "success": success},
            AuditLevel.INFO if success else AuditLevel.WARNING,
        )

    def log_access(self, user_id: str, resource: str, allowed: bool) -> AuditEntry:
        """Record an access decision; denials are warnings."""
        return self.log(
            EVENT_EXTERNAL_USER_ACCESS if allowed else EVENT_EXTERNAL_USER_DENIED,
            user_id,
            {"resource": resource, "allowed": allowed},
            AuditLevel.INFO if allowed else AuditLevel.WARNING,
        )

    def log_access_denied(self, user_id: str, resource: str) -> AuditEntry:
        """Shorthand for a denied access decision."""
        return self.log_access(user_id, resource, allowed=False)

    def log_permission_changed(
        self,
        target_user_id: str,
        operator_id: str,
        changes: dict[str, Any],
    ) -> AuditEntry:
        """Record a permission change, attributed to the operator."""
        return self.log(
            EVENT_PERMISSION_CHANGED,
            operator_id,
            {"target_user_id": target_user_id, "changes": changes},
            AuditLevel.WARNING,
        )

    def log_security_violation(
        self,
        user_id: str,
        violation_type: str,
        details: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Record a security violation at critical severity."""
        return self.log(
            EVENT_SECURITY_VIOLATION,
            user_id,
            {**(details or {}), "violation_type": violation_type},
            AuditLevel.CRITICAL,
        )

    def subscribe(self, listener: AuditListener) -> None:
        """Call ``listener`` with every critical entry from now on."""
        with self._lock:
            self._listeners.append(listener)

    # =========================================================================
    # Reading
    # =========================================================================

    def query(
        self,
        criteria: dict[str, Any] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """
        Entries whose fields equal every criterion, newest first.

        Args:
            criteria: Field name -> required value (e.g. {"user_id": "u1"})
            limit: Maximum number of entries
            offset: Entries to skip
        """
        criteria = criteria or {}
        with self._lock:
            entries = list(self._entries)

        matched = [entry for entry in entries if _matches(entry, criteria)]
        matched.sort(key=lambda entry: entry.timestamp, reverse=True)
        return matched[offset:offset + limit]

    def get_logs(self, filters: dict[str, Any] | None = None) -> list[AuditEntry]:
        """Every entry matching the filters, oldest first."""
        filters = filters or {}
        with self._lock:
            return [entry for entry in self._entries if _matches(entry, filters)]

    def get_user_logs(self, user_id: str, days: int = 7) -> list[AuditEntry]:
        """Entries for one user within the last ``days`` days."""
        since = self._clock() - timedelta(days=days)
        with self._lock:
            return [
                entry for entry in self._entries
                if entry.user_id == user_id and entry.timestamp >= since
            ]

    def get_statistics(self, days: int = 7) -> dict[str, Any]:
        """Event counts over the last ``days`` days."""
        since = self._clock() - timedelta(days=days)
        with self._lock:
            recent = [entry for entry in self._entries if entry.timestamp >= since]

        by_type: dict[str, int] = {}
        by_level: dict[str, int] = {}
        for entry in recent:
            by_type[entry.event_type] = by_type.get(entry.event_type, 0) + 1
            by_level[entry.level.value] = by_level.get(entry.level.value, 0) + 1

        return {
            "total_events": len(recent),
            "external_user_events": sum(1 for entry in recent if entry.is_external),
            "security_violations": by_type.get(EVENT_SECURITY_VIOLATION, 0),
            "permission_changes": by_type.get(EVENT_PERMISSION_CHANGED, 0),
            "events_by_type": by_type,
            "events_by_level": by_level,
        }

    def clear(self) -> None:
        """Drop every entry."""
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _matches(entry: AuditEntry, criteria: dict[str, Any]) -> bool:
    for key, expected in criteria.items():
        actual = getattr(entry, key, None)
        if isinstance(actual, AuditLevel):
            actual = actual.value
        if isinstance(expected, AuditLevel):
            expected = expected.value
        if actual is None or actual != expected:
            return False
    return True
