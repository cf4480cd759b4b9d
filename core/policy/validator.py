"""
core/policy/validator.py

Semantic validation of a loaded PolicyConfig.

validate() never stops at the first problem: a policy author fixing a CI
failure wants the whole list in one go. Error codes are stable strings
so callers and tests can match on them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List

from core.models.finding import Domain, Severity
from core.policy.config import SUPPORTED_POLICY_VERSION, PolicyConfig

UNSUPPORTED_POLICY_VERSION = "UnsupportedPolicyVersion"
UNKNOWN_RULE_ID            = "UnknownRuleID"
INVALID_SEVERITY           = "InvalidSeverity"
UNKNOWN_DOMAIN             = "UnknownDomain"


@dataclass(frozen=True)
class ValidationError:
    field:   str     # dotted path into the document, e.g. "rules.FOO.severity"
    code:    str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def to_dict(self):
        return {"field": self.field, "code": self.code, "message": self.message}


def validate(config: PolicyConfig, known_rule_ids: Iterable[str]) -> List[ValidationError]:
    """Return every problem found in config. Empty list = valid."""
    known = set(known_rule_ids)
    errors: List[ValidationError] = []

    # bool is an int subclass; "version: true" is not version 1
    version = config.version
    if isinstance(version, bool) or version != SUPPORTED_POLICY_VERSION:
        errors.append(ValidationError(
            "version", UNSUPPORTED_POLICY_VERSION,
            f"unsupported policy version {version!r} (supported: {SUPPORTED_POLICY_VERSION})",
        ))

    for domain, value in config.fail_on_severity.items():
        errors.extend(_check_domain(f"fail_on_severity.{domain}", domain))
        errors.extend(_check_severity(f"fail_on_severity.{domain}", value))

    for i, rule_id in enumerate(config.exceptions):
        if rule_id not in known:
            errors.append(ValidationError(
                f"exceptions[{i}]", UNKNOWN_RULE_ID,
                f"unknown rule id {rule_id!r} in exceptions",
            ))

    for domain, dp in config.domains.items():
        errors.extend(_check_domain(f"domains.{domain}", domain))
        if dp.min_severity is not None:
            errors.extend(_check_severity(f"domains.{domain}.min_severity", dp.min_severity))

    for rule_id, rp in config.rules.items():
        if rule_id not in known:
            errors.append(ValidationError(
                f"rules.{rule_id}", UNKNOWN_RULE_ID,
                f"unknown rule id {rule_id!r} in rules",
            ))
        if rp.severity is not None:
            errors.extend(_check_severity(f"rules.{rule_id}.severity", rp.severity))

    return errors


def _check_severity(field_name: str, value) -> List[ValidationError]:
    if Severity.parse(value) is not None:
        return []
    allowed = ", ".join(s.value for s in Severity)
    return [ValidationError(
        field_name, INVALID_SEVERITY,
        f"invalid severity {value!r} (allowed: {allowed})",
    )]


def _check_domain(field_name: str, domain: str) -> List[ValidationError]:
    if domain in Domain.ALL:
        return []
    return [ValidationError(
        field_name, UNKNOWN_DOMAIN,
        f"unknown domain {domain!r} (allowed: {', '.join(Domain.ALL)})",
    )]
