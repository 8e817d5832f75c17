"""
Built-in security policy evaluators.

Each evaluator decides an ENABLED policy record against a request context.
Disabled records never reach an evaluator. Evaluators are total: malformed
parameters log a warning and fall back to a safe value instead of raising.

Evaluators:
    - data_access: Classification whitelist plus optional approval
    - file_sharing: Size limit, type whitelist, optional malware scan
    - message_retention: Message age within the retention window
    - ip_whitelist: Exact or IPv4 CIDR match against an allow-list
    - time_restriction: Office hours window and weekday check

audit_logging has a default record but no evaluator on purpose; an enabled
audit_logging policy therefore evaluates to False.
"""

import ipaddress
import logging
import re
from datetime import UTC, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from policygate.conditions import strict_equals
from policygate.policy.registry import EvaluatorRegistry
from policygate.schema import DEFAULT_ALLOWED_HOURS, PolicyType

logger = logging.getLogger(__name__)

DEFAULT_DATA_CLASSIFICATION = "internal"
DEFAULT_MAX_FILE_SIZE_MB = 10
DEFAULT_RETENTION_DAYS = 90
DEFAULT_TIMEZONE = "Asia/Shanghai"

_HHMM_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


# =============================================================================
# Evaluators
# =============================================================================


def check_data_access(params: dict[str, Any], context: dict[str, Any], now: datetime) -> bool:
    """Allow whitelisted classifications; require approval when configured."""
    classification = context.get("data_classification")
    if classification is None:
        classification = DEFAULT_DATA_CLASSIFICATION

    allowed = _as_list(params.get("data_classification"))
    if not _contains(allowed, classification):
        return False

    if params.get("require_approval", False):
        return bool(context.get("has_approval", False))

    return True


def check_file_sharing(params: dict[str, Any], context: dict[str, Any], now: datetime) -> bool:
    """Enforce the size limit, the type whitelist and the malware scan."""
    max_size = _number(params.get("max_file_size_mb"), DEFAULT_MAX_FILE_SIZE_MB, "max_file_size_mb")
    file_size = context.get("file_size_mb")
    if file_size is None:
        file_size = 0
    if not _is_number(file_size):
        return False
    if file_size > max_size:
        return False

    file_type = context.get("file_type")
    if file_type is None:
        file_type = ""
    if not _contains(_as_list(params.get("allowed_file_types")), file_type):
        return False

    if params.get("scan_for_malware", True):
        return bool(context.get("malware_scan_passed", False))

    return True


def check_message_retention(params: dict[str, Any], context: dict[str, Any], now: datetime) -> bool:
    """Allow messages no older than the retention window."""
    retention_days = _number(params.get("retention_days"), DEFAULT_RETENTION_DAYS, "retention_days")
    message_age = context.get("message_age_days")
    if message_age is None:
        message_age = 0
    if not _is_number(message_age):
        return False
    return message_age <= retention_days


def check_ip_whitelist(params: dict[str, Any], context: dict[str, Any], now: datetime) -> bool:
    """
    Allow addresses on the allow-list.

    An empty (or non-list) allow-list allows everyone. Non-scalar entries
    are skipped.
    """
    allowed_ips = _as_list(params.get("allowed_ips"))
    if not allowed_ips:
        return True

    user_ip = context.get("user_ip")
    user_ip = "" if user_ip is None else str(user_ip)

    for entry in allowed_ips:
        if not isinstance(entry, (str, int, float)) or isinstance(entry, bool):
            continue
        if ip_in_range(user_ip, str(entry)):
            return True

    return False


def check_time_restriction(params: dict[str, Any], context: dict[str, Any], now: datetime) -> bool:
    """
    Allow requests inside the configured office hours.

    The window is [start, end) on the zero-padded 24h clock of the policy
    timezone. A window whose start is after its end wraps midnight.
    Saturdays and Sundays are refused unless weekends_allowed is set.
    """
    local_now = now.astimezone(_timezone(params.get("timezone", DEFAULT_TIMEZONE)))
    start, end = _allowed_window(params.get("allowed_hours", list(DEFAULT_ALLOWED_HOURS)))
    current = local_now.strftime("%H:%M")

    if start <= end:
        inside = start <= current < end
    else:
        inside = current >= start or current < end
    if not inside:
        return False

    if not params.get("weekends_allowed", False) and local_now.weekday() >= 5:
        return False

    return True


BUILTIN_EVALUATORS = {
    PolicyType.DATA_ACCESS.value: check_data_access,
    PolicyType.FILE_SHARING.value: check_file_sharing,
    PolicyType.MESSAGE_RETENTION.value: check_message_retention,
    PolicyType.IP_WHITELIST.value: check_ip_whitelist,
    PolicyType.TIME_RESTRICTION.value: check_time_restriction,
}


def create_default_registry() -> EvaluatorRegistry:
    """Registry holding the five built-in evaluators."""
    registry = EvaluatorRegistry()
    for policy_type, evaluator in BUILTIN_EVALUATORS.items():
        registry.register(policy_type, evaluator)
    return registry


# =============================================================================
# IP Matching
# =============================================================================


def ip_in_range(ip: str, allowed: str) -> bool:
    """
    Check an address against an allow-list entry.

    Entries are an exact address or an IPv4 CIDR block. The CIDR test
    compares the first ``bits`` characters of the zero-padded 32-bit binary
    form of both addresses. Bit counts outside 0..32, non-numeric bit
    counts and unparseable addresses fail the test.

    Examples:
        ip_in_range("192.168.1.100", "192.168.1.0/24") -> True
        ip_in_range("192.168.2.100", "192.168.1.0/24") -> False
        ip_in_range("10.0.0.1", "10.0.0.1") -> True
    """
    if ip == allowed:
        return True

    if "/" not in allowed:
        return False

    subnet, bits_text = allowed.split("/", 1)
    if not (bits_text.isascii() and bits_text.isdigit()):
        return False
    bits = int(bits_text)
    if bits > 32:
        return False

    ip_bits = _ipv4_bits(ip)
    subnet_bits = _ipv4_bits(subnet)
    if ip_bits is None or subnet_bits is None:
        return False

    return ip_bits[:bits] == subnet_bits[:bits]


def _ipv4_bits(address: str) -> str | None:
    try:
        return format(int(ipaddress.IPv4Address(address)), "032b")
    except ValueError:
        return None


# =============================================================================
# Helpers
# =============================================================================


def _allowed_window(allowed_hours: Any) -> tuple[str, str]:
    """Normalized (start, end) or the default window for malformed config."""
    if isinstance(allowed_hours, (list, tuple)) and len(allowed_hours) == 2:
        start = _normalize_hhmm(allowed_hours[0])
        end = _normalize_hhmm(allowed_hours[1])
        if start is not None and end is not None:
            return start, end

    logger.warning("Invalid allowed_hours configuration %r, using default", allowed_hours)
    return DEFAULT_ALLOWED_HOURS


def _normalize_hhmm(value: Any) -> str | None:
    # "9:00" -> "09:00" so that string comparison follows the clock
    if not isinstance(value, str):
        return None
    match = _HHMM_PATTERN.match(value.strip())
    if match is None:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def _timezone(name: Any) -> tzinfo:
    if isinstance(name, str) and name:
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            pass
    logger.warning("Unknown timezone %r in time restriction policy, using UTC", name)
    return UTC


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _contains(values: list[Any], item: Any) -> bool:
    return any(strict_equals(item, value) for value in values)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _number(value: Any, default: int, name: str) -> int | float:
    if value is None:
        return default
    if not _is_number(value):
        logger.warning("Invalid %s %r in policy, using %s", name, value, default)
        return default
    return value
