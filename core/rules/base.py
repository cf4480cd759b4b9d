"""
core/rules/base.py

Rule is the contract every check satisfies: one concrete class per check
("unattached volume", "public bucket", "privileged container", ...).

Why one class per check rather than one big evaluate() per domain?
  1. Isolation: a rule that trips over a missing field takes out only
     its own findings, the engine carries on with the rest
  2. Policy: rules are the unit of exception, disable and override
  3. Order: the registry's registration order is the report's order

Design decisions:
  - Rules are pure. evaluate() reads the RuleContext snapshot and returns
    findings; no API calls, no shared mutable state, no clock reads (time
    based rules use the inventory's collected_at stamp).
  - _finding() is the factory that fills in the boilerplate (deterministic
    id, domain, account, profile, default severity and recommendation) so
    each rule body is just detection logic.
  - Tunable thresholds come from the policy document via ctx.param().
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from core.models.finding import Finding, Severity

if TYPE_CHECKING:
    from core.policy.config import PolicyConfig

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Evaluation context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RuleContext:
    """
    Everything a rule may look at: the inventory snapshot plus the
    coordinates stamped onto findings. Read-only for the whole evaluation.
    """
    inventory:  Any                 # AWSInventory or ClusterInventory
    account_id: str                 = ""
    profile:    str                 = ""
    policy:     Optional["PolicyConfig"] = None

    def param(self, rule_id: str, key: str, default: float) -> float:
        from core.policy.enforcement import get_threshold
        return get_threshold(rule_id, key, default, self.policy)


# ---------------------------------------------------------------------------
# Rule
# ---------------------------------------------------------------------------

class Rule(ABC):
    """
    Abstract base class for all rules.

    Writing a new rule:
        1. Subclass Rule, set domain/default_severity/resource_type
        2. Implement rule_id and evaluate()
        3. Add an instance to the pack function of its domain

    Usage:
        findings = rule.evaluate(RuleContext(inventory, account_id="123", profile="prod"))
    """

    domain:           str      = ""
    default_severity: Severity = Severity.MEDIUM
    resource_type:    str      = ""
    recommendation:   str      = ""

    @property
    @abstractmethod
    def rule_id(self) -> str:
        """Stable identifier, e.g. "EBS_UNATTACHED". Referenced by policy documents."""
        ...

    @property
    def name(self) -> str:
        """One-line human title. Defaults to the first docstring line."""
        doc = (self.__class__.__doc__ or "").strip()
        return doc.splitlines()[0] if doc else self.rule_id

    def identify(self) -> str:
        return self.rule_id

    @abstractmethod
    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        """
        Return findings in a deterministic order (inventory order).
        Raising is allowed; the engine records it as a degraded rule.
        """
        ...

    # ------------------------------------------------------------------
    # Helpers for subclasses
    # ------------------------------------------------------------------

    def _finding(
        self,
        ctx:         RuleContext,
        resource_id: str,
        region:      str,
        explanation: str,
        severity:    Optional[Severity] = None,
        savings:     float = 0.0,
        metadata:    Optional[Dict[str, Any]] = None,
        resource_type: Optional[str] = None,
        resource_key:  Optional[str] = None,
    ) -> Finding:
        # resource_key disambiguates ids when resource_id alone is not unique
        # (e.g. same pod name in two namespaces)
        key = resource_key or resource_id
        return Finding(
            id=f"{self.rule_id}:{ctx.account_id}:{region}:{key}",
            rule_id=self.rule_id,
            resource_id=resource_id,
            resource_type=resource_type or self.resource_type,
            region=region,
            account_id=ctx.account_id,
            profile=ctx.profile,
            domain=self.domain,
            severity=severity or self.default_severity,
            estimated_monthly_savings=max(0.0, round(savings, 2)),
            explanation=explanation,
            recommendation=self.recommendation,
            metadata=dict(metadata or {}),
        )

    def _param(self, ctx: RuleContext, key: str, default: float) -> float:
        return ctx.param(self.rule_id, key, default)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(rule_id={self.rule_id!r})"
