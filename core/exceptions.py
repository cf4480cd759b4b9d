"""
core/exceptions.py

Error taxonomy for the auditor.

Fatal errors abort the invocation and never leave a half-built report
behind. The two exceptions to that rule are deliberate:
  - RuleEvaluationDegraded is never raised to the caller. The engine
    builds one, logs it and records it as a RuleDiagnostic.
  - PolicyEnforced is raised only after a report was produced. It is a
    designed outcome that callers map to its own exit code.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from core.policy.validator import ValidationError


class GovAuditError(Exception):
    """Base exception for all auditor errors."""
    pass


# ---------------------------------------------------------------------------
# Execution errors
# ---------------------------------------------------------------------------

class CollectionFailed(GovAuditError):
    """
    Inventory gathering failed. Wraps the collector's error with the
    domain and scope (profile/region or kube context) it happened in.
    """
    def __init__(self, domain: str, scope: str, cause: BaseException):
        self.domain = domain
        self.scope  = scope
        self.cause  = cause
        super().__init__(f"{domain} collection failed for {scope}: {cause}")


class RuleEvaluationDegraded(GovAuditError):
    """One rule raised during evaluation. Non-fatal; see module docstring."""
    def __init__(self, rule_id: str, cause: BaseException):
        self.rule_id = rule_id
        self.cause   = cause
        super().__init__(f"rule {rule_id} failed: {type(cause).__name__}: {cause}")


class AuditCancelled(GovAuditError):
    """The invocation's AuditContext was cancelled."""
    pass


class InvalidFlagCombination(GovAuditError):
    """Options that cannot be honoured together. Raised before any collection."""
    pass


class ConfigError(GovAuditError):
    """The process-wide config file is unreadable or malformed."""
    pass


# ---------------------------------------------------------------------------
# Registry errors
# ---------------------------------------------------------------------------

class DuplicateRuleID(GovAuditError):
    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"rule {rule_id!r} is already registered")


class UnknownRuleID(GovAuditError, KeyError):
    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(f"unknown rule id {rule_id!r}")

    def __str__(self) -> str:
        return f"unknown rule id {self.rule_id!r}"


# ---------------------------------------------------------------------------
# Policy errors and outcomes
# ---------------------------------------------------------------------------

class PolicyLoadFailed(GovAuditError):
    """Explicitly requested policy file missing, unreadable or malformed."""
    def __init__(self, path: str, reason: str):
        self.path   = path
        self.reason = reason
        super().__init__(f"failed to load policy {path}: {reason}")


class PolicyValidationFailed(GovAuditError):
    """Carries every validation error found, not just the first."""
    def __init__(self, errors: Iterable["ValidationError"]):
        self.errors: List["ValidationError"] = list(errors)
        lines = "; ".join(str(e) for e in self.errors)
        super().__init__(f"policy validation failed ({len(self.errors)} error(s)): {lines}")


class PolicyEnforced(GovAuditError):
    """The audit succeeded but findings breached the policy threshold."""
    def __init__(self, domains: Iterable[str], report: Optional[object] = None):
        self.domains = list(domains)
        self.report  = report
        super().__init__(f"policy enforcement triggered for: {', '.join(self.domains)}")
