"""
tests/unit/test_engine.py

Unit tests for the domain audit engines (AWS and Kubernetes).

Testing strategy:
  - Collectors and the profile resolver are in-memory fakes, so the
    engine pipeline (scope → collect → evaluate → policy → correlate →
    view filters → report) runs with no cloud or cluster access
  - A deliberately broken rule checks per-rule isolation

Run with:
    pytest tests/unit/test_engine.py -v
"""

from __future__ import annotations

import os
import sys
from typing import Dict, List, Optional
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from core.collector import (
    AuditContext, ClusterCollector, Collector, CredentialsUnavailable, EKSDataCollector,
    ProfileResolver, ResolvedProfile,
)
from core.engine import (
    MULTI_PROFILE_LABEL, AuditOptions, AWSDomainEngine, ensure_unique_ids, merge_findings,
)
from core.exceptions import AuditCancelled, CollectionFailed, InvalidFlagCombination
from providers.aws.session import AWSSessionError
from core.kubernetes import (
    PROVIDER_EKS, PROVIDER_GKE, PROVIDER_UNKNOWN, KubernetesAuditEngine,
    detect_cluster_provider, extract_eks_info,
)
from core.models.finding import Domain, Finding, Severity
from core.models.inventory import (
    AWSAccountInventory, AWSInventory, AWSRegionInventory, ClusterInventory, ContainerInfo,
    EBSVolume, EKSClusterData, NamespaceInfo, NodeInfo, PodInfo, RootAccountInfo, S3Bucket,
    ServiceInfo,
)
from core.policy.config import DomainPolicy, PolicyConfig, RulePolicy
from core.rules.base import Rule, RuleContext
from core.rules.registry import RuleRegistry
from providers.aws.rules.cost import cost_rules
from providers.aws.rules.security import security_rules
from providers.kubernetes.rules.core import core_rules
from providers.kubernetes.rules.eks import eks_rules


# ===========================================================================
# Fakes
# ===========================================================================

class FakeResolver(ProfileResolver):

    def __init__(self, accounts: Dict[str, str], regions: List[str] = None,
                 broken: Optional[List[str]] = None):
        self.accounts = accounts
        self.regions  = regions if regions is not None else ["us-east-1"]
        self.broken   = broken or []

    def list_profiles(self) -> List[str]:
        return sorted(self.accounts)

    def resolve(self, profile: Optional[str]) -> ResolvedProfile:
        name = profile or "default"
        if name in self.broken or name not in self.accounts:
            raise CredentialsUnavailable(f"no credentials for {name}")
        return ResolvedProfile(name=name, account_id=self.accounts[name], session=None)

    def active_regions(self, profile: ResolvedProfile) -> List[str]:
        return list(self.regions)


class FakeCollector(Collector):
    """Builds an inventory per region from a template function."""

    domain = Domain.COST

    def __init__(self, build_region=None, account: AWSAccountInventory = None):
        super().__init__()
        self.build_region = build_region or (lambda region: AWSRegionInventory(region))
        self.account = account or AWSAccountInventory()
        self.calls: List[str] = []

    def collect_all(self, ctx, profile, regions):
        self.calls.append(profile.name)
        return AWSInventory(
            account_id=profile.account_id,
            profile=profile.name,
            regions=[self.collect_region(ctx, profile, r) for r in regions],
            account=self.account,
        )

    def collect_region(self, ctx, profile, region):
        return self.build_region(region)


class BrokenRule(Rule):
    """Always fails."""

    rule_id = "BROKEN_RULE"
    domain = Domain.COST

    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        raise KeyError("missing field")


class FakeClusterCollector(ClusterCollector):

    def __init__(self, cluster: ClusterInventory):
        self.cluster = cluster

    def collect(self, ctx, context_name):
        return self.cluster


def idle_volumes(region: str) -> AWSRegionInventory:
    return AWSRegionInventory(region, volumes=[
        EBSVolume("vol-a", size_gb=50, state="available", attached=False),
        EBSVolume("vol-b", volume_type="gp2", size_gb=20),
    ])


def cost_engine(collector=None, resolver=None, policy=None, rules=None) -> AWSDomainEngine:
    return AWSDomainEngine(
        domain=Domain.COST,
        registry=RuleRegistry(Domain.COST, rules if rules is not None else cost_rules()),
        collector=collector or FakeCollector(idle_volumes),
        resolver=resolver or FakeResolver({"prod": "111111111111"}),
        policy=policy,
    )


# ===========================================================================
# AuditOptions
# ===========================================================================

class TestAuditOptions:

    def test_explain_requires_risk_chains(self):
        with pytest.raises(InvalidFlagCombination):
            AuditOptions(explain=94, show_risk_chains=False).validate()

    def test_invalid_explain_format(self):
        with pytest.raises(InvalidFlagCombination):
            AuditOptions(explain=94, explain_format="xml").validate()

    @pytest.mark.parametrize("score", [-1, 101, "90", True])
    def test_min_risk_score_range(self, score):
        with pytest.raises(InvalidFlagCombination):
            AuditOptions(min_risk_score=score).validate()

    def test_all_profiles_excludes_explicit_profile(self):
        with pytest.raises(InvalidFlagCombination):
            AuditOptions(profile="prod", all_profiles=True).validate()

    def test_numeric_explain_selects_by_score(self):
        options = AuditOptions(explain="94")
        options.validate()
        assert options.explain == 94

        options = AuditOptions(explain="public-bucket-unencrypted")
        options.validate()
        assert options.explain == "public-bucket-unencrypted"

    def test_invalid_flags_fail_before_collection(self):
        collector = MagicMock(spec=Collector)
        engine = cost_engine(collector=collector)
        with pytest.raises(InvalidFlagCombination):
            engine.audit(AuditContext(), AuditOptions(profile="prod", explain=94, show_risk_chains=False))
        collector.collect_all.assert_not_called()


# ===========================================================================
# AWS domain engine
# ===========================================================================

class TestAWSDomainEngine:

    def test_single_profile_report(self):
        report = cost_engine().run_audit(AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]))

        assert report.audit_type == Domain.COST
        assert report.profile == "prod"
        assert report.account_id == "111111111111"
        assert report.regions == ["us-east-1"]
        assert [f.rule_id for f in report.findings] == ["EBS_UNATTACHED", "EBS_GP2_LEGACY"]
        assert report.summary.total_findings == 2
        assert report.summary.medium_findings == 1
        assert report.summary.low_findings == 1
        assert report.summary.total_estimated_monthly_savings == pytest.approx(4.4)

    def test_active_regions_used_when_none_given(self):
        resolver = FakeResolver({"prod": "1"}, regions=["eu-west-1", "us-east-1"])
        report = cost_engine(resolver=resolver).run_audit(AuditContext(), AuditOptions(profile="prod"))
        assert report.regions == ["eu-west-1", "us-east-1"]
        assert len(report.findings) == 4

    def test_empty_scope_is_an_empty_report(self):
        resolver = FakeResolver({"prod": "1"}, regions=[])
        report = cost_engine(resolver=resolver).run_audit(AuditContext(), AuditOptions(profile="prod"))
        assert report.findings == []
        assert report.summary.total_findings == 0
        assert report.summary.risk_score == 0

    def test_deterministic_across_runs(self):
        options = AuditOptions(profile="prod", regions=["us-east-1", "eu-west-1"])
        first = cost_engine().run_audit(AuditContext(), options)
        second = cost_engine().run_audit(AuditContext(), options)
        assert [f.to_dict() for f in first.findings] == [f.to_dict() for f in second.findings]
        assert first.summary.to_dict() == second.summary.to_dict()

    def test_broken_rule_is_isolated(self):
        rules = [BrokenRule()] + cost_rules()
        report = cost_engine(rules=rules).run_audit(AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]))

        assert len(report.findings) == 2
        assert len(report.diagnostics) == 1
        diag = report.diagnostics[0]
        assert diag.rule_id == "BROKEN_RULE"
        assert diag.domain == Domain.COST
        assert diag.scope == "profile=prod"
        assert "KeyError" in diag.error

    def test_collection_failure_aborts(self):
        collector = FakeCollector(build_region=MagicMock(side_effect=RuntimeError("throttled")))
        with pytest.raises(CollectionFailed) as exc:
            cost_engine(collector=collector).run_audit(AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]))
        assert exc.value.domain == Domain.COST
        assert "profile=prod" in exc.value.scope

    def test_unresolvable_single_profile_is_fatal(self):
        with pytest.raises(CollectionFailed):
            cost_engine().run_audit(AuditContext(), AuditOptions(profile="missing"))

    def test_resolver_session_error_is_wrapped(self):
        resolver = MagicMock(spec=ProfileResolver)
        resolver.resolve.side_effect = AWSSessionError("sts:GetCallerIdentity failed: Throttling")
        with pytest.raises(CollectionFailed) as exc:
            cost_engine(resolver=resolver).run_audit(AuditContext(), AuditOptions(profile="prod"))
        assert exc.value.domain == Domain.COST
        assert exc.value.scope == "profile=prod"
        assert isinstance(exc.value.cause, AWSSessionError)

    def test_all_profiles_session_error_is_fatal(self):
        resolver = FakeResolver({"a": "111", "b": "222"})
        resolve = resolver.resolve

        def throttled(name):
            if name == "b":
                raise AWSSessionError("sts:GetCallerIdentity failed: Throttling")
            return resolve(name)

        resolver.resolve = throttled
        with pytest.raises(CollectionFailed) as exc:
            cost_engine(resolver=resolver).run_audit(AuditContext(), AuditOptions(all_profiles=True))
        assert exc.value.scope == "profile=b"

    def test_resolver_cancellation_is_not_wrapped(self):
        resolver = MagicMock(spec=ProfileResolver)
        resolver.resolve.side_effect = AuditCancelled("deadline exceeded")
        with pytest.raises(AuditCancelled):
            cost_engine(resolver=resolver).run_audit(AuditContext(), AuditOptions(profile="prod"))

    def test_all_profiles_skips_unresolvable(self):
        collector = FakeCollector(idle_volumes)
        resolver = FakeResolver({"a": "111", "b": "222", "c": "333"}, broken=["b"])
        report = cost_engine(collector=collector, resolver=resolver).run_audit(
            AuditContext(), AuditOptions(all_profiles=True, regions=["us-east-1"]),
        )
        assert collector.calls == ["a", "c"]
        assert report.profile == MULTI_PROFILE_LABEL
        assert report.account_id == MULTI_PROFILE_LABEL
        assert {f.account_id for f in report.findings} == {"111", "333"}

    def test_cancelled_context(self):
        ctx = AuditContext()
        ctx.cancel("operator abort")
        with pytest.raises(AuditCancelled):
            cost_engine().run_audit(ctx, AuditOptions(profile="prod"))

    def test_findings_on_one_volume_are_merged(self):
        def idle_gp2(region):
            return AWSRegionInventory(region, volumes=[
                EBSVolume("vol-c", volume_type="gp2", size_gb=50, state="available", attached=False),
            ])

        result = cost_engine(collector=FakeCollector(idle_gp2)).audit(
            AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]),
        )
        [merged] = result.report.findings
        assert merged.id == "EBS_UNATTACHED:111111111111:us-east-1:vol-c"
        assert merged.rule_ids == ["EBS_UNATTACHED", "EBS_GP2_LEGACY"]
        assert merged.severity == Severity.MEDIUM
        assert merged.estimated_monthly_savings == pytest.approx(5.0)
        assert result.report.summary.total_findings == 1
        assert result.findings == result.report.findings

    def test_policy_disables_rule_and_overrides_severity(self):
        policy = PolicyConfig(rules={
            "EBS_GP2_LEGACY": RulePolicy(enabled=False),
            "EBS_UNATTACHED": RulePolicy(severity="CRITICAL"),
        })
        report = cost_engine(policy=policy).run_audit(AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]))
        assert [(f.rule_id, f.severity) for f in report.findings] == [("EBS_UNATTACHED", Severity.CRITICAL)]
        assert report.summary.critical_findings == 1

    def test_policy_min_severity_and_disabled_domain(self):
        policy = PolicyConfig(domains={Domain.COST: DomainPolicy(min_severity="MEDIUM")})
        report = cost_engine(policy=policy).run_audit(AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]))
        assert [f.rule_id for f in report.findings] == ["EBS_UNATTACHED"]

        policy = PolicyConfig(domains={Domain.COST: DomainPolicy(enabled=False)})
        report = cost_engine(policy=policy).run_audit(AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]))
        assert report.findings == []


class TestSecurityNarratives:

    def _engine(self):
        account = AWSAccountInventory(
            root=RootAccountInfo(has_access_keys=True, mfa_enabled=False, data_available=True),
            buckets=[S3Bucket("open", public=True)],
        )
        return AWSDomainEngine(
            domain=Domain.SECURITY,
            registry=RuleRegistry(Domain.SECURITY, security_rules()),
            collector=FakeCollector(account=account),
            resolver=FakeResolver({"prod": "111111111111"}),
        )

    def test_chain_in_report_and_references_resolve(self):
        report = self._engine().run_audit(AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"]))
        assert [c.pattern_id for c in report.summary.risk_chains] == ["root-keys-without-mfa"]
        assert report.summary.risk_score == 89
        assert report.dangling_references() == []

    def test_hiding_risk_chains_keeps_risk_score(self):
        report = self._engine().run_audit(
            AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"], show_risk_chains=False),
        )
        assert report.summary.risk_chains == []
        assert report.summary.risk_score == 89

    def test_min_risk_score_keeps_only_correlated_findings(self):
        report = self._engine().run_audit(
            AuditContext(), AuditOptions(profile="prod", regions=["us-east-1"], min_risk_score=80),
        )
        assert [f.rule_ids for f in report.findings] == [["ROOT_ACCESS_KEY", "ROOT_ACCOUNT_MFA_DISABLED"]]
        assert report.dangling_references() == []


class TestEnsureUniqueIds:

    def test_repeated_ids_get_suffixes(self):
        f = Finding(id="X:1:r:res", rule_id="X", resource_id="res", resource_type="", region="r")
        ids = [x.id for x in ensure_unique_ids([f, f, f])]
        assert ids == ["X:1:r:res", "X:1:r:res#2", "X:1:r:res#3"]


def pod_finding(rule_id, severity, namespace="payments", pod="api", **metadata) -> Finding:
    return Finding(
        id=f"{rule_id}:ctx:ctx:{namespace}/{pod}",
        rule_id=rule_id,
        resource_id=pod,
        resource_type="Pod",
        region="ctx",
        account_id="ctx",
        domain=Domain.KUBERNETES,
        severity=severity,
        metadata=dict(metadata, namespace=namespace),
    )


class TestMergeFindings:

    def test_first_finding_is_the_base(self):
        findings = [
            pod_finding("K8S_DEFAULT_SERVICEACCOUNT_USED", Severity.MEDIUM, service_account="default"),
            pod_finding("K8S_SERVICE_PUBLIC_LOADBALANCER", Severity.HIGH, pod="web"),
            pod_finding("K8S_POD_PRIVILEGED_CONTAINER", Severity.CRITICAL, service_account="other", container="app"),
        ]
        merged = merge_findings(findings)

        assert [f.resource_id for f in merged] == ["api", "web"]
        api = merged[0]
        assert api.id == findings[0].id
        assert api.rule_id == "K8S_DEFAULT_SERVICEACCOUNT_USED"
        assert api.severity == Severity.CRITICAL
        assert api.rule_ids == ["K8S_DEFAULT_SERVICEACCOUNT_USED", "K8S_POD_PRIVILEGED_CONTAINER"]
        assert api.severity_for("K8S_DEFAULT_SERVICEACCOUNT_USED") == Severity.MEDIUM
        assert api.metadata["service_account"] == "default"
        assert api.metadata["container"] == "app"

    def test_singletons_carry_their_rule(self):
        [single] = merge_findings([pod_finding("K8S_POD_NO_SECCOMP", Severity.MEDIUM)])
        assert single.metadata["rule_ids"] == ["K8S_POD_NO_SECCOMP"]
        assert single.metadata["rule_severities"] == {"K8S_POD_NO_SECCOMP": "MEDIUM"}

    def test_same_name_in_two_namespaces_stays_apart(self):
        merged = merge_findings([
            pod_finding("K8S_POD_RUN_AS_ROOT", Severity.HIGH, namespace="a"),
            pod_finding("K8S_POD_NO_SECCOMP", Severity.MEDIUM, namespace="b"),
        ])
        assert len(merged) == 2

    def test_savings_are_summed(self):
        volume = dict(resource_id="vol-1", resource_type="EBSVolume", region="us-east-1", account_id="1")
        merged = merge_findings([
            Finding(id="EBS_UNATTACHED:1:us-east-1:vol-1", rule_id="EBS_UNATTACHED",
                    severity=Severity.MEDIUM, estimated_monthly_savings=4.0, **volume),
            Finding(id="EBS_GP2_LEGACY:1:us-east-1:vol-1", rule_id="EBS_GP2_LEGACY",
                    severity=Severity.LOW, estimated_monthly_savings=1.0, **volume),
        ])
        assert [f.estimated_monthly_savings for f in merged] == [5.0]

    def test_inputs_are_untouched(self):
        first = pod_finding("K8S_POD_RUN_AS_ROOT", Severity.HIGH)
        merge_findings([first, pod_finding("K8S_POD_NO_SECCOMP", Severity.MEDIUM)])
        assert first.severity == Severity.HIGH
        assert "rule_ids" not in first.metadata


# ===========================================================================
# Kubernetes engine
# ===========================================================================

def eks_node(name="ip-10-0-0-1") -> NodeInfo:
    return NodeInfo(
        name=name,
        provider_id="aws:///us-east-1a/i-0abc",
        labels={"eks.amazonaws.com/nodegroup": "ng-1", "alpha.eksctl.io/cluster-name": "prod"},
        capacity_cpu_millis=2000,
        allocatable_cpu_millis=1930,
    )


def risky_cluster(nodes=None) -> ClusterInventory:
    privileged = ContainerInfo("app", privileged=True, run_as_non_root=True, run_as_user=1000,
                               seccomp_profile_type="RuntimeDefault")
    return ClusterInventory(
        context_name="prod-ctx",
        nodes=nodes if nodes is not None else [eks_node("a"), eks_node("b")],
        namespaces=[
            NamespaceInfo("payments", labels={"pod-security.kubernetes.io/enforce": "baseline"},
                          has_limit_range=True),
            NamespaceInfo("kube-system", labels={"pod-security.kubernetes.io/enforce": "privileged"},
                          has_limit_range=True),
        ],
        pods=[
            PodInfo("api", "payments", containers=[privileged], service_account_name="default"),
            PodInfo("aws-node", "kube-system", containers=[privileged], service_account_name="aws-node"),
        ],
        services=[ServiceInfo("web", "payments", service_type="LoadBalancer")],
    )


class FakeEKSCollector(EKSDataCollector):

    def __init__(self, data: EKSClusterData = None, error: Exception = None):
        self.data = data
        self.error = error
        self.calls = []

    def collect(self, ctx, cluster_name, region, cluster=None):
        self.calls.append((cluster_name, region))
        if self.error is not None:
            raise self.error
        return self.data


def k8s_engine(cluster, eks_collector=None) -> KubernetesAuditEngine:
    return KubernetesAuditEngine(
        registry=RuleRegistry(Domain.KUBERNETES, core_rules()),
        cluster_collector=FakeClusterCollector(cluster),
        eks_registry=RuleRegistry(Domain.KUBERNETES, eks_rules()),
        eks_collector=eks_collector,
    )


class TestProviderDetection:

    def test_eks_from_provider_id(self):
        assert detect_cluster_provider([NodeInfo("n", provider_id="aws:///us-east-1a/i-1")]) == PROVIDER_EKS

    def test_gke_from_label(self):
        node = NodeInfo("n", labels={"cloud.google.com/gke-nodepool": "pool"})
        assert detect_cluster_provider([node]) == PROVIDER_GKE

    def test_unknown(self):
        assert detect_cluster_provider([NodeInfo("kind-control-plane")]) == PROVIDER_UNKNOWN
        assert detect_cluster_provider([]) == PROVIDER_UNKNOWN

    def test_eks_info_from_labels_and_provider_id(self):
        assert extract_eks_info([eks_node()]) == ("prod", "us-east-1")

    def test_eks_info_prefers_region_label(self):
        node = NodeInfo("n", provider_id="aws:///us-east-1a/i-1",
                        labels={"topology.kubernetes.io/region": "eu-west-1"})
        assert extract_eks_info([node]) == ("", "eu-west-1")


class TestKubernetesAuditEngine:

    def test_report_shape(self):
        eks = FakeEKSCollector(EKSClusterData("prod", "us-east-1", encryption_key_arn="k",
                                              enabled_log_types=["api", "audit", "authenticator"],
                                              oidc_provider_associated=True))
        result = k8s_engine(risky_cluster(), eks).audit(AuditContext(), AuditOptions())
        report = result.report

        assert report.audit_type == Domain.KUBERNETES
        assert report.profile == "prod-ctx"
        assert report.account_id == "prod-ctx"
        assert report.regions == ["prod-ctx"]
        assert report.cluster_provider == PROVIDER_EKS
        assert eks.calls == [("prod", "us-east-1")]
        assert report.summary.attack_paths
        assert report.summary.attack_paths[0].score >= 90
        assert report.dangling_references() == []

    def test_eks_failure_is_not_fatal(self):
        eks = FakeEKSCollector(error=RuntimeError("AccessDenied"))
        report = k8s_engine(risky_cluster(), eks).run_audit(AuditContext(), AuditOptions())
        rule_ids = {r for f in report.findings for r in f.rule_ids}
        assert "K8S_POD_PRIVILEGED_CONTAINER" in rule_ids
        assert not any(r.startswith("EKS_") and r != "EKS_SERVICEACCOUNT_NO_IRSA" for r in rule_ids)

    def test_non_eks_cluster_skips_eks_pack(self):
        cluster = risky_cluster(nodes=[NodeInfo("a"), NodeInfo("b")])
        eks = FakeEKSCollector()
        report = k8s_engine(cluster, eks).run_audit(AuditContext(), AuditOptions())
        assert report.cluster_provider == PROVIDER_UNKNOWN
        assert eks.calls == []
        assert not any(r.startswith("EKS_") for f in report.findings for r in f.rule_ids)

    def test_exclude_system_namespaces(self):
        report = k8s_engine(risky_cluster()).run_audit(AuditContext(), AuditOptions(exclude_system=True))
        assert report.findings
        assert all(f.namespace != "kube-system" for f in report.findings)
        assert report.dangling_references() == []

    def test_collection_failure(self):
        collector = MagicMock(spec=ClusterCollector)
        collector.collect.side_effect = OSError("no kubeconfig")
        engine = KubernetesAuditEngine(RuleRegistry(Domain.KUBERNETES, core_rules()), collector)
        with pytest.raises(CollectionFailed):
            engine.run_audit(AuditContext(), AuditOptions(context_name="missing"))
