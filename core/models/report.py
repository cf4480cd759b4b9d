"""
core/models/report.py

AuditReport is the top-level output of one audit invocation (one domain,
all AWS domains, or one Kubernetes cluster). It carries the ordered finding
sequence, the summary counters and the correlation narratives.

This is what a renderer prints, what the JSON writer serialises and what
a CI gate inspects.

Design decisions:
  - RiskChain and AttackPath reference findings by id only, so a report
    serialises without cycles and referential integrity is checkable
  - diagnostics carries non-fatal rule failures as data. A report with
    diagnostics is still a successful report.
  - Nothing here computes anything expensive: the ReportAssembler in
    core/report.py does the single counting pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.models.finding import Finding, Severity


# ---------------------------------------------------------------------------
# Correlation narratives
# ---------------------------------------------------------------------------

@dataclass
class RiskChain:
    """
    Mid-tier narrative: two or more co-located findings that compound.

    pattern_id names the detector that produced the chain; it is not part
    of the serialised form but lets explain() select by detector name.
    """
    score:       int
    reason:      str
    finding_ids: List[str]
    pattern_id:  str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score":       self.score,
            "reason":      self.reason,
            "finding_ids": list(self.finding_ids),
        }


@dataclass
class AttackPath:
    """
    Highest correlation tier: a staged compromise story.
    layers is ordered, e.g. Network Exposure → Workload Privilege → Identity Weakness.
    """
    score:       int
    description: str
    layers:      List[str]
    finding_ids: List[str]
    pattern_id:  str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score":       self.score,
            "description": self.description,
            "layers":      list(self.layers),
            "finding_ids": list(self.finding_ids),
        }


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

@dataclass
class RuleDiagnostic:
    """
    A rule that failed internally during evaluation.
    The rule contributed zero findings; the audit carried on.
    """
    rule_id: str
    domain:  str
    scope:   str
    error:   str

    def to_dict(self) -> Dict[str, str]:
        return {
            "rule_id": self.rule_id,
            "domain":  self.domain,
            "scope":   self.scope,
            "error":   self.error,
        }


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

@dataclass
class AuditSummary:
    total_findings:                  int   = 0
    total_estimated_monthly_savings: float = 0.0
    critical_findings:               int   = 0
    high_findings:                   int   = 0
    medium_findings:                 int   = 0
    low_findings:                    int   = 0

    # Correlation output, attack paths are always listed first
    attack_paths: List[AttackPath] = field(default_factory=list)
    risk_chains:  List[RiskChain]  = field(default_factory=list)

    # Highest narrative score before any view filter ran (0 = nothing correlated)
    risk_score: int = 0

    def count_for(self, severity: Severity) -> int:
        return {
            Severity.CRITICAL: self.critical_findings,
            Severity.HIGH:     self.high_findings,
            Severity.MEDIUM:   self.medium_findings,
            Severity.LOW:      self.low_findings,
        }[severity]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_findings":                  self.total_findings,
            "total_estimated_monthly_savings": round(self.total_estimated_monthly_savings, 2),
            "critical_findings":               self.critical_findings,
            "high_findings":                   self.high_findings,
            "medium_findings":                 self.medium_findings,
            "low_findings":                    self.low_findings,
            "risk_score":                      self.risk_score,
            "attack_paths":                    [p.to_dict() for p in self.attack_paths],
            "risk_chains":                     [c.to_dict() for c in self.risk_chains],
        }


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class AuditReport:
    """
    One complete audit result.

    findings keeps rule registration order, then each rule's own emission
    order. Presentation sorting is left to renderers.
    """
    report_id:    str
    audit_type:   str
    profile:      str
    account_id:   str                   # AWS account id, or the kube context
    regions:      List[str]             = field(default_factory=list)
    summary:      AuditSummary          = field(default_factory=AuditSummary)
    findings:     List[Finding]         = field(default_factory=list)
    diagnostics:  List[RuleDiagnostic]  = field(default_factory=list)
    generated_at: datetime              = field(default_factory=lambda: datetime.now(timezone.utc))

    # Kubernetes only: detected cluster provider ("eks", "gke", "aks", "unknown")
    cluster_provider: Optional[str] = None

    @property
    def finding_ids(self) -> List[str]:
        return [f.id for f in self.findings]

    def finding_by_id(self, finding_id: str) -> Optional[Finding]:
        for f in self.findings:
            if f.id == finding_id:
                return f
        return None

    def findings_by_id(self) -> Dict[str, Finding]:
        return {f.id: f for f in self.findings}

    def dangling_references(self) -> List[str]:
        """
        Narrative finding ids that do not resolve to a finding in this
        report. Empty for every report the engines produce.
        """
        known = set(self.finding_ids)
        refs: List[str] = []
        for path in self.summary.attack_paths:
            refs.extend(fid for fid in path.finding_ids if fid not in known)
        for chain in self.summary.risk_chains:
            refs.extend(fid for fid in chain.finding_ids if fid not in known)
        return refs

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "report_id":    self.report_id,
            "generated_at": self.generated_at.isoformat(),
            "audit_type":   self.audit_type,
            "profile":      self.profile,
            "account_id":   self.account_id,
            "regions":      list(self.regions),
            "summary":      self.summary.to_dict(),
            "findings":     [f.to_dict() for f in self.findings],
        }
        if self.diagnostics:
            data["diagnostics"] = [d.to_dict() for d in self.diagnostics]
        if self.cluster_provider is not None:
            data["cluster_provider"] = self.cluster_provider
        return data

    def __repr__(self) -> str:
        return (
            f"AuditReport(type={self.audit_type!r}, profile={self.profile!r}, "
            f"findings={len(self.findings)}, "
            f"paths={len(self.summary.attack_paths)}, "
            f"chains={len(self.summary.risk_chains)})"
        )
