"""
core/report.py

ReportAssembler turns (findings, correlation output, scope) into an
AuditReport. Counting is one linear pass over the findings; nothing is
re-sorted, so the report keeps registration/collection order.
"""

from __future__ import annotations

import uuid
from typing import List, Optional, Sequence

from core.correlation.engine import CorrelationResult
from core.models.finding import Finding, Severity
from core.models.report import AuditReport, AuditSummary, RuleDiagnostic


def compute_summary(
    findings: Sequence[Finding],
    correlation: Optional[CorrelationResult] = None,
    risk_score: Optional[int] = None,
) -> AuditSummary:
    summary = AuditSummary()
    for f in findings:
        summary.total_findings += 1
        summary.total_estimated_monthly_savings += f.estimated_monthly_savings
        if f.severity is Severity.CRITICAL:
            summary.critical_findings += 1
        elif f.severity is Severity.HIGH:
            summary.high_findings += 1
        elif f.severity is Severity.MEDIUM:
            summary.medium_findings += 1
        else:
            summary.low_findings += 1
    summary.total_estimated_monthly_savings = round(summary.total_estimated_monthly_savings, 2)

    if correlation is not None:
        summary.attack_paths = list(correlation.attack_paths)
        summary.risk_chains  = list(correlation.risk_chains)
        summary.risk_score   = correlation.risk_score if risk_score is None else risk_score
    elif risk_score is not None:
        summary.risk_score = risk_score
    return summary


class ReportAssembler:
    """
    Usage:
        report = ReportAssembler().assemble(
            audit_type="cost", profile="prod", account_id="123456789012",
            regions=["us-east-1"], findings=findings, correlation=result,
        )
    """

    def assemble(
        self,
        audit_type:  str,
        profile:     str,
        account_id:  str,
        regions:     Sequence[str],
        findings:    Sequence[Finding],
        correlation: Optional[CorrelationResult] = None,
        diagnostics: Optional[Sequence[RuleDiagnostic]] = None,
        risk_score:  Optional[int] = None,
        cluster_provider: Optional[str] = None,
    ) -> AuditReport:
        findings_list: List[Finding] = list(findings)
        return AuditReport(
            report_id=str(uuid.uuid4()),
            audit_type=audit_type,
            profile=profile,
            account_id=account_id,
            regions=list(regions),
            summary=compute_summary(findings_list, correlation, risk_score),
            findings=findings_list,
            diagnostics=list(diagnostics or []),
            cluster_provider=cluster_provider,
        )
