"""
core/models/finding.py

The Finding is the atomic unit of output for the whole auditor.
Every rule produces a list of Findings. The correlation engine reads them,
the policy engine gates on them, and the report assembler counts them.

Design decisions:
  - frozen dataclass: a Finding never changes after a rule emits it.
    Policy overrides (e.g. a severity remap) produce a replaced copy.
  - Severity is a str Enum so Severity.HIGH == "HIGH" and JSON output
    needs no custom encoder
  - id is deterministic (rule, account, region, resource) rather than a
    uuid, so two runs over the same inventory produce identical reports
  - estimated_monthly_savings of 0.0 means "not cost relevant or
    unknown", never "verified to cost nothing"
  - findings on one resource are merged by the engine; the merged
    Finding keeps every contributing rule in metadata["rule_ids"]
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Severity(str, Enum):
    """
    Totally ordered severity scale.
    Inheriting from str means Severity.CRITICAL == "CRITICAL" is True.
    """
    CRITICAL = "CRITICAL"
    HIGH     = "HIGH"
    MEDIUM   = "MEDIUM"
    LOW      = "LOW"

    @property
    def rank(self) -> int:
        """Higher = more severe. Used for threshold comparisons."""
        return {
            Severity.CRITICAL: 4,
            Severity.HIGH:     3,
            Severity.MEDIUM:   2,
            Severity.LOW:      1,
        }[self]

    @property
    def sort_order(self) -> int:
        """Lower = more severe. Used by renderers to sort findings."""
        return 4 - self.rank

    @property
    def correlation_weight(self) -> int:
        """Weight a matching finding contributes to a narrative score."""
        return self.rank

    def at_least(self, threshold: "Severity") -> bool:
        return self.rank >= threshold.rank

    @classmethod
    def parse(cls, value: Any) -> Optional["Severity"]:
        """
        Case-insensitive lookup. Returns None for anything that is not a
        member of the scale (callers decide whether that is an error).
        """
        if isinstance(value, Severity):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


class Domain:
    """Audit domain labels. Plain strings so they double as report keys."""
    COST           = "cost"
    SECURITY       = "security"
    DATAPROTECTION = "dataprotection"
    KUBERNETES     = "kubernetes"

    AWS_ORDER = (COST, SECURITY, DATAPROTECTION)
    ALL       = (COST, SECURITY, DATAPROTECTION, KUBERNETES)


# ---------------------------------------------------------------------------
# Core Finding model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Finding:
    """
    One detected issue tied to one resource.

    Usage:
        finding = Finding(
            id="EBS_UNATTACHED:123456789012:us-east-1:vol-0abc",
            rule_id="EBS_UNATTACHED",
            resource_id="vol-0abc",
            resource_type="EBSVolume",
            region="us-east-1",
            account_id="123456789012",
            profile="prod",
            domain=Domain.COST,
            severity=Severity.MEDIUM,
            estimated_monthly_savings=8.0,
            explanation="EBS volume is unattached (100 GiB gp3).",
        )
    """

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------
    id:       str
    rule_id:  str

    # ------------------------------------------------------------------
    # Origin coordinates
    # ------------------------------------------------------------------
    resource_id:   str
    resource_type: str
    region:        str            # AWS region, "global", or a kube context name
    account_id:    str = ""
    profile:       str = ""
    domain:        str = ""

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------
    severity:                  Severity = Severity.LOW
    estimated_monthly_savings: float    = 0.0
    explanation:               str      = ""
    recommendation:            str      = ""

    # Rule-defined annotations (namespace, volume_type, eks_region, ...)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Convenience properties
    # ------------------------------------------------------------------

    @property
    def namespace(self) -> str:
        return str(self.metadata.get("namespace", ""))

    @property
    def is_high_or_critical(self) -> bool:
        return self.severity in (Severity.CRITICAL, Severity.HIGH)

    @property
    def rule_ids(self) -> List[str]:
        """Every rule that flagged this resource. More than one after a merge."""
        return list(self.metadata.get("rule_ids") or [self.rule_id])

    def severity_for(self, rule_id: str) -> Severity:
        """Severity a contributing rule assigned; the merged severity is the worst of these."""
        assigned = (self.metadata.get("rule_severities") or {}).get(rule_id)
        return Severity.parse(assigned) or self.severity

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id":                        self.id,
            "rule_id":                   self.rule_id,
            "resource_id":               self.resource_id,
            "resource_type":             self.resource_type,
            "region":                    self.region,
            "account_id":                self.account_id,
            "profile":                   self.profile,
            "domain":                    self.domain,
            "severity":                  self.severity.value,
            "estimated_monthly_savings": round(self.estimated_monthly_savings, 2),
            "explanation":               self.explanation,
            "recommendation":            self.recommendation,
            "metadata":                  dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Finding":
        """Deserialise a Finding from a dict (e.g. a stored JSON report)."""
        return cls(
            id=data["id"],
            rule_id=data.get("rule_id", ""),
            resource_id=data.get("resource_id", ""),
            resource_type=data.get("resource_type", ""),
            region=data.get("region", ""),
            account_id=data.get("account_id", ""),
            profile=data.get("profile", ""),
            domain=data.get("domain", ""),
            severity=Severity(data.get("severity", "LOW")),
            estimated_monthly_savings=float(data.get("estimated_monthly_savings", 0.0)),
            explanation=data.get("explanation", ""),
            recommendation=data.get("recommendation", ""),
            metadata=dict(data.get("metadata") or {}),
        )

    def __repr__(self) -> str:
        return (
            f"Finding(rule={self.rule_id!r}, severity={self.severity.value}, "
            f"resource={self.resource_id!r}, region={self.region!r})"
        )
