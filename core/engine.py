"""
core/engine.py

Domain audit engines. One engine drives one domain's audit lifecycle:
    1. Validate options (bad flag combinations fail before any collection)
    2. Resolve scope (one profile or every profile; given or active regions)
    3. Collect the inventory through the domain's Collector (all-or-nothing)
    4. Evaluate every rule in registry order, each rule isolated
    5. Apply the policy document (disabled rules, overrides, min severity),
       then merge findings that share a resource
    6. Correlate findings into attack paths and risk chains
    7. Apply view filters, then drop narratives that lost a member
    8. Assemble the AuditReport

Design principles:
  - The engine knows nothing about boto3 or kubectl. It talks to
    ProfileResolver, Collector and RuleRegistry only.
  - Profiles are audited sequentially; a profile whose credentials do
    not resolve is skipped in all-profiles mode.
  - A collection failure aborts the audit (CollectionFailed). A rule
    failure does not: the rule contributes nothing and a RuleDiagnostic
    is recorded.
  - Every step is logged at INFO so operators can follow progress.

Usage:
    engine = AWSDomainEngine(
        domain="cost",
        registry=RuleRegistry("cost", cost_rules()),
        collector=CostCollector(),
        resolver=AWSProfileResolver(),
    )
    report = engine.run_audit(AuditContext(), AuditOptions(profile="prod"))
"""

from __future__ import annotations

import dataclasses
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from core.collector import (
    AuditContext, Collector, CredentialsUnavailable, ProfileResolver, ResolvedProfile,
)
from core.correlation.engine import CorrelationResult, RiskCorrelationEngine
from core.correlation.explain import FORMATS, FORMAT_TEXT
from core.exceptions import (
    AuditCancelled, CollectionFailed, InvalidFlagCombination, RuleEvaluationDegraded,
)
from core.models.finding import Finding, Severity
from core.models.inventory import AWSInventory
from core.models.report import AuditReport, RuleDiagnostic
from core.policy.config import PolicyConfig
from core.policy.enforcement import apply_policy
from core.report import ReportAssembler
from core.rules.base import RuleContext
from core.rules.registry import RuleRegistry

logger = logging.getLogger(__name__)

MULTI_PROFILE_LABEL = "multi"


class AuditOptions:
    """
    Options for one audit invocation.

    Separating options from the engines lets every entry point (CLI, CI
    wrapper, tests) build the same object and hand it to any engine.
    """

    def __init__(
        self,
        # Scope
        profile:          Optional[str]       = None,    # None = default credential chain
        all_profiles:     bool                = False,   # every discoverable profile
        regions:          Optional[List[str]] = None,    # None = every active region
        context_name:     Optional[str]       = None,    # kube context (None = current)

        # Correlation output
        show_risk_chains: bool                   = True,
        explain:          Optional[Union[int, str]] = None,  # score or pattern id
        explain_format:   str                    = FORMAT_TEXT,

        # View filters
        exclude_system:   bool = False,
        min_risk_score:   int  = 0,

        # Gates
        fail_on_high:     bool = False,    # unconditional CRITICAL/HIGH gate
    ):
        self.profile          = profile
        self.all_profiles     = all_profiles
        self.regions          = list(regions) if regions else None
        self.context_name     = context_name
        self.show_risk_chains = show_risk_chains
        self.explain          = explain
        self.explain_format   = explain_format
        self.exclude_system   = exclude_system
        self.min_risk_score   = min_risk_score
        self.fail_on_high     = fail_on_high

    def validate(self) -> None:
        """Raise InvalidFlagCombination. Called before any collection."""
        if isinstance(self.explain, str) and self.explain.strip().isdigit():
            # "94" from a command line selects by score, like 94
            self.explain = int(self.explain)
        if self.explain is not None and not self.show_risk_chains:
            raise InvalidFlagCombination(
                "explaining a correlation narrative requires risk chain output "
                "(show_risk_chains must be enabled)"
            )
        if self.explain_format not in FORMATS:
            raise InvalidFlagCombination(
                f"unknown explain format {self.explain_format!r} "
                f"(expected one of: {', '.join(FORMATS)})"
            )
        if isinstance(self.min_risk_score, bool) or not isinstance(self.min_risk_score, int) \
                or not 0 <= self.min_risk_score <= 100:
            raise InvalidFlagCombination(
                f"min_risk_score must be an integer in [0, 100], got {self.min_risk_score!r}"
            )
        if self.all_profiles and self.profile:
            raise InvalidFlagCombination("all_profiles cannot be combined with an explicit profile")

    def __repr__(self) -> str:
        return (
            f"AuditOptions(profile={self.profile!r}, all_profiles={self.all_profiles}, "
            f"regions={self.regions!r}, context={self.context_name!r})"
        )


@dataclass
class DomainAuditResult:
    """
    A report plus the correlation trace that explain() needs.

    findings is the policy-shaped, merged set before view filters. Gates
    and the multi-domain orchestrator work from it, never from the
    filtered report.
    """
    report:      AuditReport
    correlation: CorrelationResult = field(default_factory=CorrelationResult)
    findings:    List[Finding]     = field(default_factory=list)

    @property
    def findings_by_id(self) -> Dict[str, Finding]:
        return {f.id: f for f in self.report.findings}


# ---------------------------------------------------------------------------
# Shared pipeline pieces
# ---------------------------------------------------------------------------

def evaluate_registry(
    registry: RuleRegistry,
    rule_ctx: RuleContext,
    ctx: AuditContext,
    scope: str,
) -> Tuple[List[Finding], List[RuleDiagnostic]]:
    """
    Run every rule in registration order. Findings keep rule order, then
    each rule's emission order. A raising rule contributes nothing and
    leaves a RuleDiagnostic behind.
    """
    findings: List[Finding] = []
    diagnostics: List[RuleDiagnostic] = []
    for rule in registry.all():
        ctx.raise_if_cancelled()
        try:
            produced = list(rule.evaluate(rule_ctx))
        except Exception as e:
            degraded = RuleEvaluationDegraded(rule.rule_id, e)
            logger.error(f"{degraded} [domain={registry.domain}, scope={scope}]", exc_info=True)
            diagnostics.append(RuleDiagnostic(
                rule_id=rule.rule_id,
                domain=registry.domain,
                scope=scope,
                error=f"{type(e).__name__}: {e}",
            ))
            continue
        findings.extend(produced)
    return findings, diagnostics


def merge_key(finding: Finding) -> Tuple[str, ...]:
    return (
        finding.account_id,
        finding.region,
        finding.resource_type,
        finding.namespace,
        finding.resource_id,
    )


def merge_findings(findings: Sequence[Finding]) -> List[Finding]:
    """
    Collapse findings on the same resource into one, in first-seen order.

    The first finding of a group keeps its id, rule, text and position.
    Severity becomes the worst in the group and savings are summed.
    Metadata keys from later findings never overwrite earlier ones.
    metadata["rule_ids"] lists every contributing rule (singletons too)
    and metadata["rule_severities"] the severity each of them assigned,
    so correlation and enforcement can still judge rules one by one.
    """
    groups: Dict[Tuple[str, ...], List[Finding]] = {}
    for f in findings:
        groups.setdefault(merge_key(f), []).append(f)

    merged: List[Finding] = []
    for group in groups.values():
        base = group[0]
        metadata = dict(base.metadata)
        severities: Dict[str, str] = {}
        for f in group:
            for key, value in f.metadata.items():
                metadata.setdefault(key, value)
            for rule_id in f.rule_ids:
                severity = f.severity_for(rule_id)
                known = Severity.parse(severities.get(rule_id))
                if known is None or severity.rank > known.rank:
                    severities[rule_id] = severity.value
        metadata["rule_ids"] = list(severities)
        metadata["rule_severities"] = severities

        worst = min((f.severity for f in group), key=lambda s: s.sort_order)
        savings = round(sum(f.estimated_monthly_savings for f in group), 2)
        merged.append(dataclasses.replace(
            base, severity=worst, estimated_monthly_savings=savings, metadata=metadata,
        ))
    return merged


def ensure_unique_ids(findings: Sequence[Finding]) -> List[Finding]:
    """Suffix repeated ids (#2, #3, ...) so narratives can reference findings unambiguously."""
    seen: Dict[str, int] = {}
    out: List[Finding] = []
    for f in findings:
        count = seen.get(f.id, 0) + 1
        seen[f.id] = count
        if count > 1:
            f = dataclasses.replace(f, id=f"{f.id}#{count}")
        out.append(f)
    return out


def apply_view_filters(
    findings: Sequence[Finding],
    correlation: CorrelationResult,
    options: AuditOptions,
    hidden: Optional[Callable[[Finding], bool]] = None,
) -> Tuple[List[Finding], CorrelationResult]:
    """
    View filters run after correlation so membership-based filtering has
    narratives to look at. Narratives with a filtered-out member are
    dropped so every reported finding id still resolves.
    """
    kept = list(findings)
    if hidden is not None:
        kept = [f for f in kept if not hidden(f)]
    if options.min_risk_score > 0:
        scores = correlation.score_by_finding()
        kept = [f for f in kept if scores.get(f.id, 0) >= options.min_risk_score]
    if len(kept) == len(findings):
        return kept, correlation
    return kept, correlation.restricted_to(f.id for f in kept)


# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------

class DomainAuditEngine(ABC):
    """
    Base class for the per-domain engines. Subclasses implement _run(),
    which collects and evaluates; _finish() does everything after that.
    """

    domain: str = ""

    def __init__(
        self,
        registry:   RuleRegistry,
        policy:     Optional[PolicyConfig]          = None,
        correlator: Optional[RiskCorrelationEngine] = None,
        assembler:  Optional[ReportAssembler]       = None,
    ):
        self.registry   = registry
        self.policy     = policy
        self.correlator = correlator or RiskCorrelationEngine()
        self.assembler  = assembler or ReportAssembler()
        self.logger     = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # ------------------------------------------------------------------
    # Primary entry points
    # ------------------------------------------------------------------

    def run_audit(self, ctx: AuditContext, options: AuditOptions) -> AuditReport:
        return self.audit(ctx, options).report

    def audit(self, ctx: AuditContext, options: AuditOptions) -> DomainAuditResult:
        options.validate()
        ctx.raise_if_cancelled()
        self.logger.info(f"=== {self.domain} audit starting === {options!r}")
        start = time.perf_counter()

        result = self._run(ctx, options)

        ctx.raise_if_cancelled()
        self.logger.info(
            f"=== {self.domain} audit complete === "
            f"[findings={len(result.report.findings)}, "
            f"paths={len(result.report.summary.attack_paths)}, "
            f"chains={len(result.report.summary.risk_chains)}, "
            f"degraded_rules={len(result.report.diagnostics)}] "
            f"in {time.perf_counter() - start:.1f}s"
        )
        return result

    @abstractmethod
    def _run(self, ctx: AuditContext, options: AuditOptions) -> DomainAuditResult:
        ...

    # ------------------------------------------------------------------
    # Post-evaluation pipeline
    # ------------------------------------------------------------------

    def _hidden(self, options: AuditOptions) -> Optional[Callable[[Finding], bool]]:
        """Domain-specific view filter. None = show everything."""
        return None

    def _finish(
        self,
        options:     AuditOptions,
        findings:    Sequence[Finding],
        diagnostics: Sequence[RuleDiagnostic],
        profile:     str,
        account_id:  str,
        regions:     Sequence[str],
        cluster_provider: Optional[str] = None,
    ) -> DomainAuditResult:
        kept = apply_policy(findings, self.domain, self.policy)
        shaped = ensure_unique_ids(merge_findings(kept))
        if len(shaped) != len(kept):
            self.logger.info(f"Merged {len(kept)} finding(s) into {len(shaped)} resource finding(s)")
        correlation = self.correlator.correlate(shaped)
        risk_score = correlation.risk_score

        visible, correlation = apply_view_filters(shaped, correlation, options, self._hidden(options))
        if len(visible) != len(shaped):
            self.logger.info(f"View filters kept {len(visible)} of {len(shaped)} finding(s)")

        shown = correlation if options.show_risk_chains else CorrelationResult()
        report = self.assembler.assemble(
            audit_type=self.domain,
            profile=profile,
            account_id=account_id,
            regions=regions,
            findings=visible,
            correlation=shown,
            diagnostics=diagnostics,
            risk_score=risk_score,
            cluster_provider=cluster_provider,
        )
        return DomainAuditResult(report=report, correlation=shown, findings=shaped)


class AWSDomainEngine(DomainAuditEngine):
    """Engine for the AWS domains (cost, security, dataprotection)."""

    def __init__(
        self,
        domain:     str,
        registry:   RuleRegistry,
        collector:  Collector,
        resolver:   ProfileResolver,
        policy:     Optional[PolicyConfig] = None,
        correlator: Optional[RiskCorrelationEngine] = None,
        assembler:  Optional[ReportAssembler] = None,
    ):
        super().__init__(registry, policy=policy, correlator=correlator, assembler=assembler)
        self.domain    = domain
        self.collector = collector
        self.resolver  = resolver

    def _run(self, ctx: AuditContext, options: AuditOptions) -> DomainAuditResult:
        profiles = self._resolve_profiles(options)

        findings:    List[Finding]        = []
        diagnostics: List[RuleDiagnostic] = []
        regions:     List[str]            = []
        accounts:    List[str]            = []

        for profile in profiles:
            ctx.raise_if_cancelled()
            inventory = self._collect(ctx, profile, options)
            for region in inventory.region_names:
                if region not in regions:
                    regions.append(region)
            account_id = inventory.account_id or profile.account_id
            if account_id not in accounts:
                accounts.append(account_id)

            rule_ctx = RuleContext(
                inventory=inventory,
                account_id=account_id,
                profile=profile.name,
                policy=self.policy,
            )
            produced, degraded = evaluate_registry(
                self.registry, rule_ctx, ctx, scope=f"profile={profile.name}",
            )
            self.logger.info(
                f"Profile {profile.name} ({account_id}): {len(produced)} finding(s) "
                f"from {len(self.registry)} rule(s) across {len(inventory.regions)} region(s)"
            )
            findings.extend(produced)
            diagnostics.extend(degraded)

        if options.all_profiles:
            profile_label = MULTI_PROFILE_LABEL
            account_label = accounts[0] if len(accounts) == 1 else MULTI_PROFILE_LABEL
        else:
            profile_label = profiles[0].name if profiles else (options.profile or "default")
            account_label = accounts[0] if accounts else ""

        return self._finish(options, findings, diagnostics, profile_label, account_label, regions)

    # ------------------------------------------------------------------
    # Scope resolution and collection
    # ------------------------------------------------------------------

    def _resolve_profiles(self, options: AuditOptions) -> List[ResolvedProfile]:
        if not options.all_profiles:
            try:
                return [self.resolver.resolve(options.profile)]
            except AuditCancelled:
                raise
            except Exception as e:
                raise CollectionFailed(self.domain, f"profile={options.profile or 'default'}", e) from e

        try:
            names = self.resolver.list_profiles()
        except Exception as e:
            raise CollectionFailed(self.domain, "profile discovery", e) from e

        resolved: List[ResolvedProfile] = []
        for name in names:
            try:
                resolved.append(self.resolver.resolve(name))
            except CredentialsUnavailable as e:
                # Not enrolled is a normal outcome in all-profiles mode
                self.logger.info(f"Skipping profile {name}: {e}")
            except AuditCancelled:
                raise
            except Exception as e:
                raise CollectionFailed(self.domain, f"profile={name}", e) from e
        self.logger.info(f"All-profiles mode: auditing {len(resolved)} of {len(names)} profile(s)")
        return resolved

    def _collect(self, ctx: AuditContext, profile: ResolvedProfile, options: AuditOptions) -> AWSInventory:
        scope = f"profile={profile.name}"
        try:
            regions = options.regions or self.resolver.active_regions(profile)
            self.logger.info(f"Collecting {self.domain} inventory for {scope} in {len(regions)} region(s)")
            return self.collector.collect_all(ctx, profile, regions)
        except AuditCancelled:
            raise
        except CollectionFailed:
            raise
        except Exception as e:
            self.logger.error(f"{self.domain} collection failed for {scope}: {e}")
            raise CollectionFailed(self.domain, scope, e) from e
