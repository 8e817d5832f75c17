"""
Compliance checks for policygate.

ComplianceChecker runs named rule sets against a data description and
reports violations (which break compliance) and warnings (which do not).
The access_control check composes SecurityPolicy.check_policy("data_access").

Check types:
    - data_privacy: Personal data protection, minimization, purpose
    - export_control: Restricted countries, sensitive technologies
    - retention_policy: Retention period within [min, max] days
    - access_control: Access controls present, data access policy passes
    - gdpr: Consent, right to erasure, data portability

audit_trail, encryption and hipaa are recognised names without rule sets;
checking them reports "Unknown compliance check type".

Every completed check is forwarded to the AuditLogger as compliance_check.
"""

import copy
import logging
from collections.abc import Callable, Iterable
from typing import Any

from policygate.audit import EVENT_COMPLIANCE_CHECK, AuditLogger
from policygate.policy.engine import SecurityPolicy
from policygate.schema import AuditLevel, ComplianceReport, ComplianceResult, PolicyType

logger = logging.getLogger(__name__)

CHECK_DATA_PRIVACY = "data_privacy"
CHECK_EXPORT_CONTROL = "export_control"
CHECK_RETENTION_POLICY = "retention_policy"
CHECK_ACCESS_CONTROL = "access_control"
CHECK_AUDIT_TRAIL = "audit_trail"
CHECK_ENCRYPTION = "encryption"
CHECK_GDPR = "gdpr"
CHECK_HIPAA = "hipaa"

PERSONAL_DATA_KEYS = ("email", "phone", "ssn", "name", "address", "id_card")
MAX_COLLECTED_FIELDS = 20

DEFAULT_COMPLIANCE_RULES: dict[str, dict[str, Any]] = {
    CHECK_DATA_PRIVACY: {
        "enabled": True,
        "rules": {
            "personal_data_protection": True,
            "data_minimization": True,
            "purpose_limitation": True,
        },
    },
    CHECK_EXPORT_CONTROL: {
        "enabled": True,
        "rules": {
            "restricted_countries": ["XX", "YY"],
            "sensitive_technologies": ["encryption", "ai"],
        },
    },
    CHECK_RETENTION_POLICY: {
        "enabled": True,
        "rules": {
            "min_retention_days": 30,
            "max_retention_days": 365,
            "deletion_required": True,
        },
    },
    CHECK_ACCESS_CONTROL: {
        "enabled": True,
        "rules": {},
    },
    CHECK_GDPR: {
        "enabled": True,
        "rules": {
            "consent_required": True,
            "right_to_erasure": True,
            "data_portability": True,
        },
    },
}

RuleCheck = Callable[[dict[str, Any], dict[str, Any], ComplianceResult], None]


class ComplianceChecker:
    """
    Runs compliance rule sets and aggregates their results.

    Usage:
        checker = ComplianceChecker(SecurityPolicy(), AuditLogger())
        result = checker.check("retention_policy", {"retention_days": 29})
        result.compliant  # False
    """

    def __init__(
        self,
        security_policy: SecurityPolicy,
        audit_logger: AuditLogger | None = None,
        rules: dict[str, dict[str, Any]] | None = None,
    ) -> None:
        """
        Initialize the checker.

        Args:
            security_policy: Consulted by the access_control check
            audit_logger: Receives one compliance_check entry per check
            rules: Rule sets per check type (built-in set when omitted)
        """
        self.security_policy = security_policy
        self.audit_logger = audit_logger
        self.rules = copy.deepcopy(DEFAULT_COMPLIANCE_RULES if rules is None else rules)
        self._checks: dict[str, RuleCheck] = {
            CHECK_DATA_PRIVACY: self._check_data_privacy,
            CHECK_EXPORT_CONTROL: self._check_export_control,
            CHECK_RETENTION_POLICY: self._check_retention_policy,
            CHECK_ACCESS_CONTROL: self._check_access_control,
            CHECK_GDPR: self._check_gdpr,
        }

    # =========================================================================
    # Public API
    # =========================================================================

    def check(self, check_type: str, data: dict[str, Any]) -> ComplianceResult:
        """
        Run one compliance check.

        Args:
            check_type: Which rule set to apply
            data: Description of the data or operation under review

        Returns:
            The check's result; unknown types are non-compliant
        """
        result = ComplianceResult(check_type=check_type)

        rule_set = self.rules.get(check_type)
        if rule_set is None:
            result.add_violation("Unknown compliance check type")
            return result

        if not rule_set.get("enabled", False):
            result.add_warning("Compliance check is disabled")
            return result

        run = self._checks.get(check_type)
        if run is None:
            result.add_violation("Check not implemented")
        else:
            run(data, rule_set.get("rules") or {}, result)

        self._record(check_type, data, result)
        return result

    def check_all(self, check_types: Iterable[str], data: dict[str, Any]) -> dict[str, ComplianceResult]:
        """Run several checks against the same data."""
        return {check_type: self.check(check_type, data) for check_type in check_types}

    def generate_report(self, results: dict[str, ComplianceResult]) -> ComplianceReport:
        """Aggregate results into a report."""
        report = ComplianceReport(total_checks=len(results))
        for check_type, result in results.items():
            if not result.compliant:
                report.overall_compliance = False
                report.failed_checks += 1
            report.total_violations += len(result.violations)
            report.total_warnings += len(result.warnings)
            report.details[check_type] = result
        return report

    def set_enabled(self, check_type: str, enabled: bool) -> None:
        """Toggle an existing rule set."""
        if check_type in self.rules:
            self.rules[check_type]["enabled"] = enabled

    # =========================================================================
    # Rule Sets
    # =========================================================================

    def _check_data_privacy(self, data: dict[str, Any], rules: dict[str, Any], result: ComplianceResult) -> None:
        if rules.get("personal_data_protection"):
            has_personal_data = any(data.get(key) is not None for key in PERSONAL_DATA_KEYS)
            protected = bool(data.get("encrypted", False)) and bool(data.get("access_controlled", False))
            if has_personal_data and not protected:
                result.add_violation("Personal data found without proper protection")

        if rules.get("data_minimization") and len(data) > MAX_COLLECTED_FIELDS:
            result.add_warning("Data collection may violate minimization principle")

        if rules.get("purpose_limitation"):
            purpose = data.get("collection_purpose")
            if purpose is None or purpose == "":
                result.add_violation("Data collection purpose not clearly defined")

    def _check_export_control(self, data: dict[str, Any], rules: dict[str, Any], result: ComplianceResult) -> None:
        country = data.get("user_country")
        restricted = _as_list(rules.get("restricted_countries"))
        if country is not None and country in restricted:
            result.add_violation(f"Access from restricted country: {country}")

        sensitive = _as_list(rules.get("sensitive_technologies"))
        for tech in _as_list(data.get("technologies")):
            if isinstance(tech, (str, int, float)) and str(tech) in sensitive:
                result.add_warning(f"Sensitive technology involved: {tech}")

    def _check_retention_policy(self, data: dict[str, Any], rules: dict[str, Any], result: ComplianceResult) -> None:
        retention_days = data.get("retention_days")
        if retention_days is None:
            retention_days = 0
        if isinstance(retention_days, bool) or not isinstance(retention_days, int):
            result.add_violation(f"Invalid retention period: {retention_days!r}")
            return

        min_days = rules.get("min_retention_days", 30)
        max_days = rules.get("max_retention_days", 365)

        if retention_days < min_days:
            result.add_violation(f"Retention period too short: {retention_days} days (minimum: {min_days})")
        if retention_days > max_days:
            result.add_violation(f"Retention period too long: {retention_days} days (maximum: {max_days})")

    def _check_access_control(self, data: dict[str, Any], rules: dict[str, Any], result: ComplianceResult) -> None:
        if not data.get("access_controls"):
            result.add_violation("No access controls defined")

        if not self.security_policy.check_policy(PolicyType.DATA_ACCESS, data):
            result.add_violation("Data access violates security policy")

        if not data.get("audit_enabled", False):
            result.add_warning("Audit trail not enabled")

    def _check_gdpr(self, data: dict[str, Any], rules: dict[str, Any], result: ComplianceResult) -> None:
        if rules.get("consent_required") and not data.get("user_consent", False):
            result.add_violation("User consent not obtained")

        if rules.get("right_to_erasure") and not data.get("erasure_supported", False):
            result.add_violation("Right to erasure not implemented")

        if rules.get("data_portability") and not data.get("export_supported", False):
            result.add_warning("Data portability not fully supported")

    # =========================================================================
    # Internals
    # =========================================================================

    def _record(self, check_type: str, data: dict[str, Any], result: ComplianceResult) -> None:
        logger.info("Compliance check %s completed: compliant=%s", check_type, result.compliant)
        if self.audit_logger is None:
            return

        user_id = data.get("user_id")
        self.audit_logger.log(
            EVENT_COMPLIANCE_CHECK,
            user_id if isinstance(user_id, str) and user_id else "system",
            {
                "check_type": check_type,
                "compliant": result.compliant,
                "violations": list(result.violations),
                "warnings": list(result.warnings),
            },
            AuditLevel.INFO if result.compliant else AuditLevel.WARNING,
        )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return []
