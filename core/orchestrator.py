"""
core/orchestrator.py

MultiDomainOrchestrator runs the AWS domain engines (cost → security →
dataprotection) for one scope and merges them into one report.

Merging rules:
  - each engine's findings (policy-shaped, merged per resource, not yet
    view-filtered) concatenate in engine order
  - correlation is re-run over that merged set, because several
    narratives span domains (a public bucket is a security finding, its
    missing default encryption a data-protection one)
  - view filters run once, on the merged set, after that correlation;
    summary counters are the sum over the findings that remain
  - policy enforcement is evaluated per domain, against that domain's
    own unfiltered findings, and reported as the list of domains that fired

Fail-fast: the first domain that raises aborts the whole run. A report
missing a domain would read as "clean" to a CI gate.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from core.collector import AuditContext
from core.correlation.engine import CorrelationResult, RiskCorrelationEngine
from core.engine import AWSDomainEngine, AuditOptions, DomainAuditResult, apply_view_filters
from core.models.finding import Finding
from core.models.report import AuditReport, RuleDiagnostic
from core.policy.config import PolicyConfig
from core.policy.enforcement import should_fail
from core.report import compute_summary

logger = logging.getLogger(__name__)

ALL_AWS_AUDIT_TYPE = "all"


@dataclass
class MultiDomainResult:
    report:           AuditReport
    domain_results:   Dict[str, DomainAuditResult] = field(default_factory=dict)
    enforced_domains: List[str]                    = field(default_factory=list)
    correlation:      CorrelationResult            = field(default_factory=CorrelationResult)

    @property
    def policy_enforced(self) -> bool:
        return bool(self.enforced_domains)

    @property
    def gated_findings(self) -> List[Finding]:
        """Every domain's findings before view filters, in engine order."""
        return [f for r in self.domain_results.values() for f in r.findings]


class MultiDomainOrchestrator:
    """
    Usage:
        orchestrator = MultiDomainOrchestrator([cost_engine, security_engine, dp_engine], policy)
        result = orchestrator.run(AuditContext(), AuditOptions(profile="prod"))
        result.report, result.enforced_domains
    """

    def __init__(
        self,
        engines:    Sequence[AWSDomainEngine],
        policy:     Optional[PolicyConfig]          = None,
        correlator: Optional[RiskCorrelationEngine] = None,
    ):
        self.engines    = list(engines)
        self.policy     = policy
        self.correlator = correlator or RiskCorrelationEngine()
        self.logger     = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def run(self, ctx: AuditContext, options: AuditOptions) -> MultiDomainResult:
        options.validate()
        domain_results: Dict[str, DomainAuditResult] = {}

        for engine in self.engines:
            ctx.raise_if_cancelled()
            self.logger.info(f"--- Domain {engine.domain} ---")
            domain_results[engine.domain] = engine.audit(ctx, options)

        reports = [r.report for r in domain_results.values()]
        merged: List[Finding] = [f for r in domain_results.values() for f in r.findings]
        diagnostics: List[RuleDiagnostic] = [d for r in reports for d in r.diagnostics]

        correlation = self.correlator.correlate(merged)
        risk_score = correlation.risk_score
        findings, correlation = apply_view_filters(merged, correlation, options)
        if len(findings) != len(merged):
            self.logger.info(f"View filters kept {len(findings)} of {len(merged)} finding(s)")
        if not options.show_risk_chains:
            correlation = CorrelationResult()
        summary = compute_summary(findings, correlation, risk_score=risk_score)

        regions: List[str] = []
        for r in reports:
            regions.extend(region for region in r.regions if region not in regions)

        first = reports[0] if reports else None
        report = AuditReport(
            report_id=str(uuid.uuid4()),
            audit_type=ALL_AWS_AUDIT_TYPE,
            profile=first.profile if first else (options.profile or "default"),
            account_id=first.account_id if first else "",
            regions=regions,
            summary=summary,
            findings=findings,
            diagnostics=diagnostics,
        )

        enforced = [
            domain for domain, result in domain_results.items()
            if should_fail(domain, result.findings, self.policy)
        ]
        if enforced:
            self.logger.warning(f"Policy enforcement triggered for: {', '.join(enforced)}")

        self.logger.info(
            f"All-domain audit complete: {len(findings)} finding(s) across "
            f"{len(domain_results)} domain(s), {len(correlation.attack_paths)} path(s), "
            f"{len(correlation.risk_chains)} chain(s)"
        )
        return MultiDomainResult(
            report=report,
            domain_results=domain_results,
            enforced_domains=enforced,
            correlation=correlation,
        )
