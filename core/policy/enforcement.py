"""
core/policy/enforcement.py

Applying a PolicyConfig to findings.

Two separate jobs:
  - apply_policy(): shapes what a domain reports (disabled domains and
    rules, severity overrides, minimum severity). Runs inside the engine
    before correlation.
  - should_fail(): the CI gate. Runs after a report exists and never
    changes it.

A None config means "policy disabled" everywhere in this module.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional, Sequence

from core.models.finding import Finding, Severity
from core.policy.config import PolicyConfig

logger = logging.getLogger(__name__)


def should_fail(domain: str, findings: Sequence[Finding], config: Optional[PolicyConfig]) -> bool:
    """
    True when any finding whose rule is not excepted has severity at or
    above the domain's fail_on_severity threshold. Each rule of a merged
    finding is judged on its own: an exception for one rule does not
    cover the others on the same resource.
    """
    if config is None or not findings:
        return False
    threshold = config.severity_threshold(domain)
    if threshold is None:
        return False
    for f in findings:
        for rule_id in f.rule_ids:
            if config.is_excepted(rule_id):
                continue
            severity = f.severity_for(rule_id)
            if severity.at_least(threshold):
                logger.debug(
                    f"Policy threshold {threshold.value} for {domain} breached by "
                    f"{rule_id} ({severity.value}) on {f.resource_id}"
                )
                return True
    return False


def apply_policy(
    findings: Sequence[Finding],
    domain: str,
    config: Optional[PolicyConfig],
) -> List[Finding]:
    """
    Return the findings the policy lets the domain report, in input order.
    Overridden severities produce replaced copies; inputs are untouched.
    """
    if config is None:
        return list(findings)

    dp = config.domains.get(domain)
    if dp is not None and not dp.enabled:
        logger.info(f"Domain {domain} disabled by policy; dropping {len(findings)} finding(s)")
        return []
    min_severity = config.min_severity_for(domain)

    result: List[Finding] = []
    for f in findings:
        rp = config.rules.get(f.rule_id)
        if rp is not None:
            if not rp.enabled:
                continue
            override = Severity.parse(rp.severity) if rp.severity else None
            if override is not None and override != f.severity:
                f = dataclasses.replace(f, severity=override)
        if min_severity is not None and not f.severity.at_least(min_severity):
            continue
        result.append(f)
    return result


def get_threshold(
    rule_id: str,
    key: str,
    default: float,
    config: Optional[PolicyConfig],
) -> float:
    """Numeric rule parameter from rules.<id>.params, falling back to default."""
    if config is None:
        return default
    rp = config.rules.get(rule_id)
    if rp is None or key not in rp.params:
        return default
    try:
        return float(rp.params[key])
    except (TypeError, ValueError):
        logger.warning(
            f"Ignoring non-numeric policy param {rule_id}.{key}={rp.params[key]!r}; "
            f"using default {default}"
        )
        return default
