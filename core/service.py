"""
core/service.py

AuditService is the entry point every outer surface (CLI, CI wrapper,
tests) uses. It wires registries, collectors, policy and engines
together, renders explanations, and maps outcomes to exit codes.

Exit codes:
    0  audit succeeded, no gate fired
    1  execution error (collection, configuration, invalid flags, ...)
    2  policy enforced: a domain breached its fail_on_severity threshold
    3  high-severity gate: CRITICAL/HIGH findings present and the caller
       asked to fail on them (fail_on_high)

Usage:
    service = AuditService.from_environment(policy_path="govaudit.yaml")
    outcome = service.run_domain_audit("security", AuditOptions(profile="prod"))
    print(outcome.explanation or outcome.report.to_dict())
    sys.exit(outcome.exit_code)
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Sequence

from core.collector import AuditContext, ClusterCollector, EKSDataCollector, ProfileResolver
from core.config import AppConfig, get_config
from core.correlation.engine import CorrelationResult, RiskCorrelationEngine
from core.correlation.explain import render
from core.engine import AWSDomainEngine, AuditOptions
from core.exceptions import (
    ConfigError, PolicyEnforced, PolicyValidationFailed,
)
from core.kubernetes import KubernetesAuditEngine
from core.models.finding import Domain, Finding
from core.models.report import AuditReport
from core.orchestrator import MultiDomainOrchestrator
from core.policy.config import DEFAULT_POLICY_FILENAME, PolicyConfig, load_policy
from core.policy.enforcement import should_fail
from core.policy.validator import validate
from core.rules.registry import RuleRegistry, known_rule_ids
from providers.aws.collectors import RegionalCollector, default_collectors
from providers.aws.eks import BotoEKSCollector
from providers.aws.fanout import RegionFanOut
from providers.aws.rules.cost import cost_rules
from providers.aws.rules.dataprotection import dataprotection_rules
from providers.aws.rules.security import security_rules
from providers.aws.session import AWSProfileResolver
from providers.kubernetes.rules.core import core_rules
from providers.kubernetes.rules.eks import eks_rules

logger = logging.getLogger(__name__)

EKS_PACK = "eks"


class ExitCode(IntEnum):
    OK              = 0
    EXECUTION_ERROR = 1
    POLICY_ENFORCED = 2
    HIGH_SEVERITY   = 3

    @classmethod
    def for_exception(cls, error: BaseException) -> "ExitCode":
        if isinstance(error, PolicyEnforced):
            return cls.POLICY_ENFORCED
        return cls.EXECUTION_ERROR


# ---------------------------------------------------------------------------
# Registries and policy
# ---------------------------------------------------------------------------

def build_registries() -> Dict[str, RuleRegistry]:
    """Every rule pack, keyed by pack name. The EKS pack shares the kubernetes domain."""
    return {
        Domain.COST:           RuleRegistry(Domain.COST, cost_rules()),
        Domain.SECURITY:       RuleRegistry(Domain.SECURITY, security_rules()),
        Domain.DATAPROTECTION: RuleRegistry(Domain.DATAPROTECTION, dataprotection_rules()),
        Domain.KUBERNETES:     RuleRegistry(Domain.KUBERNETES, core_rules()),
        EKS_PACK:              RuleRegistry(Domain.KUBERNETES, eks_rules()),
    }


def all_rule_ids(registries: Optional[Dict[str, RuleRegistry]] = None) -> List[str]:
    return known_rule_ids((registries or build_registries()).values())


def validate_policy_document(
    path: Optional[str] = None,
    search_dir: str = ".",
    filename: str = DEFAULT_POLICY_FILENAME,
    registries: Optional[Dict[str, RuleRegistry]] = None,
) -> Optional[PolicyConfig]:
    """
    Load and validate the policy. Returns None when policy is disabled
    (no explicit path, no default file). Raises PolicyLoadFailed or
    PolicyValidationFailed (carrying every error found).
    """
    config = load_policy(path, search_dir=search_dir, filename=filename)
    if config is None:
        return None
    errors = validate(config, all_rule_ids(registries))
    if errors:
        for error in errors:
            logger.error(f"Policy {config.source_path}: {error}")
        raise PolicyValidationFailed(errors)
    logger.info(f"Policy {config.source_path} is valid")
    return config


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------

@dataclass
class AuditOutcome:
    report:           AuditReport
    correlation:      CorrelationResult = field(default_factory=CorrelationResult)
    enforced_domains: List[str]         = field(default_factory=list)
    explanation:      Optional[str]     = None
    exit_code:        ExitCode          = ExitCode.OK

    def raise_for_policy(self) -> None:
        """Raise PolicyEnforced (carrying the report) when a policy gate fired."""
        if self.enforced_domains:
            raise PolicyEnforced(self.enforced_domains, report=self.report)


def evaluate_gates(findings: Sequence[Finding], enforced_domains: List[str], options: AuditOptions) -> ExitCode:
    """
    Gates judge every finding the audit produced. View filters shape the
    report only, so hiding a finding never disarms a gate.
    """
    if enforced_domains:
        return ExitCode.POLICY_ENFORCED
    if options.fail_on_high and any(f.is_high_or_critical for f in findings):
        return ExitCode.HIGH_SEVERITY
    return ExitCode.OK


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AuditService:

    def __init__(
        self,
        app_config:        Optional[AppConfig]                   = None,
        policy:            Optional[PolicyConfig]                = None,
        resolver:          Optional[ProfileResolver]             = None,
        collectors:        Optional[Dict[str, RegionalCollector]] = None,
        cluster_collector: Optional[ClusterCollector]            = None,
        eks_collector:     Optional[EKSDataCollector]            = None,
        registries:        Optional[Dict[str, RuleRegistry]]     = None,
        correlator:        Optional[RiskCorrelationEngine]       = None,
    ):
        self.config            = app_config or AppConfig()
        self.policy            = policy
        self.resolver          = resolver or AWSProfileResolver(self.config.default_region)
        self.collectors        = collectors or default_collectors(RegionFanOut(self.config.max_region_workers))
        self.cluster_collector = cluster_collector
        self.eks_collector     = eks_collector
        self.registries        = registries or build_registries()
        self.correlator        = correlator or RiskCorrelationEngine()
        self.logger            = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_environment(
        cls,
        policy_path:       Optional[str]              = None,
        cluster_collector: Optional[ClusterCollector] = None,
    ) -> "AuditService":
        app_config = get_config()
        registries = build_registries()
        policy = validate_policy_document(
            policy_path, filename=app_config.policy_filename, registries=registries,
        )
        return cls(
            app_config=app_config,
            policy=policy,
            cluster_collector=cluster_collector,
            registries=registries,
        )

    # ------------------------------------------------------------------
    # Audits
    # ------------------------------------------------------------------

    def run_domain_audit(
        self,
        domain: str,
        options: AuditOptions,
        ctx: Optional[AuditContext] = None,
    ) -> AuditOutcome:
        if domain == Domain.KUBERNETES:
            return self.run_kubernetes_audit(options, ctx)
        if domain not in Domain.AWS_ORDER:
            raise ConfigError(f"unknown audit domain {domain!r} (expected one of: {', '.join(Domain.ALL)})")

        options = self._with_defaults(options)
        result = self._aws_engine(domain).audit(ctx or AuditContext(), options)
        enforced = [domain] if self._should_fail(domain, result.findings) else []
        return self._outcome(result.report, result.correlation, result.findings, enforced, options)

    def run_all_aws(self, options: AuditOptions, ctx: Optional[AuditContext] = None) -> AuditOutcome:
        options = self._with_defaults(options)
        orchestrator = MultiDomainOrchestrator(
            [self._aws_engine(domain) for domain in Domain.AWS_ORDER],
            policy=self.policy,
            correlator=self.correlator,
        )
        result = orchestrator.run(ctx or AuditContext(), options)
        return self._outcome(
            result.report, result.correlation, result.gated_findings, result.enforced_domains, options,
        )

    def run_kubernetes_audit(self, options: AuditOptions, ctx: Optional[AuditContext] = None) -> AuditOutcome:
        if self.cluster_collector is None:
            raise ConfigError("no cluster source configured for the kubernetes audit")
        engine = KubernetesAuditEngine(
            registry=self.registries[Domain.KUBERNETES],
            cluster_collector=self.cluster_collector,
            eks_registry=self.registries.get(EKS_PACK),
            eks_collector=self.eks_collector or BotoEKSCollector(self.resolver, options.profile),
            policy=self.policy,
            correlator=self.correlator,
        )
        result = engine.audit(ctx or AuditContext(), options)
        enforced = [Domain.KUBERNETES] if self._should_fail(Domain.KUBERNETES, result.findings) else []
        return self._outcome(result.report, result.correlation, result.findings, enforced, options)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _aws_engine(self, domain: str) -> AWSDomainEngine:
        return AWSDomainEngine(
            domain=domain,
            registry=self.registries[domain],
            collector=self.collectors[domain],
            resolver=self.resolver,
            policy=self.policy,
            correlator=self.correlator,
        )

    def _with_defaults(self, options: AuditOptions) -> AuditOptions:
        if options.profile or options.all_profiles or not self.config.default_profile:
            return options
        effective = copy.copy(options)
        effective.profile = self.config.default_profile
        return effective

    def _should_fail(self, domain: str, findings: Sequence[Finding]) -> bool:
        return should_fail(domain, findings, self.policy)

    def _outcome(
        self,
        report: AuditReport,
        correlation: CorrelationResult,
        findings: Sequence[Finding],
        enforced: List[str],
        options: AuditOptions,
    ) -> AuditOutcome:
        explanation = None
        if options.explain is not None:
            match = correlation.find(options.explain)
            explanation = render(match, report.findings_by_id(), options.explain, options.explain_format)

        exit_code = evaluate_gates(findings, enforced, options)
        if exit_code is ExitCode.POLICY_ENFORCED:
            self.logger.warning(f"Policy enforced for {', '.join(enforced)}")
        elif exit_code is ExitCode.HIGH_SEVERITY:
            flagged = sum(1 for f in findings if f.is_high_or_critical)
            self.logger.warning(f"High-severity gate: {flagged} critical or high finding(s)")
        return AuditOutcome(
            report=report,
            correlation=correlation,
            enforced_domains=enforced,
            explanation=explanation,
            exit_code=exit_code,
        )
