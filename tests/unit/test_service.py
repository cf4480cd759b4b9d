"""
tests/unit/test_service.py

Unit tests for AuditService: wiring, explanations, exit-code gates.

Run with:
    pytest tests/unit/test_service.py -v
"""

from __future__ import annotations

import json
import os
import sys
import unittest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from core.collector import AuditContext, ClusterCollector, Collector, ResolvedProfile
from core.config import AppConfig
from core.engine import AuditOptions
from core.exceptions import ConfigError, InvalidFlagCombination, PolicyEnforced
from core.models.finding import Domain
from core.models.inventory import (
    AWSAccountInventory, AWSInventory, AWSRegionInventory, ClusterInventory,
    ContainerInfo, PodInfo, S3Bucket,
)
from core.policy.config import PolicyConfig
from core.service import EKS_PACK, AuditService, ExitCode, build_registries

ACCOUNT = "111111111111"


# ===========================================================================
# Helpers
# ===========================================================================

class BucketCollector(Collector):
    """One public, unencrypted bucket and an empty region."""

    def collect_all(self, ctx, profile, regions):
        return AWSInventory(
            account_id=profile.account_id,
            profile=profile.name,
            regions=[AWSRegionInventory(r) for r in regions],
            account=AWSAccountInventory(buckets=[
                S3Bucket("open-data", public=True, default_encryption_enabled=False),
            ]),
        )

    def collect_region(self, ctx, profile, region):
        return AWSRegionInventory(region)


class StaticClusterCollector(ClusterCollector):

    def __init__(self, cluster: ClusterInventory):
        self.cluster = cluster
        self.calls = []

    def collect(self, ctx, context_name):
        self.calls.append(context_name)
        return self.cluster


def make_resolver() -> MagicMock:
    resolver = MagicMock()
    resolver.resolve.side_effect = lambda name: ResolvedProfile(name or "default", ACCOUNT, session=None)
    resolver.active_regions.return_value = ["us-east-1"]
    return resolver


def make_service(policy=None, app_config=None, **kwargs) -> AuditService:
    collectors = {domain: BucketCollector() for domain in Domain.AWS_ORDER}
    return AuditService(
        app_config=app_config,
        policy=policy,
        resolver=kwargs.pop("resolver", make_resolver()),
        collectors=collectors,
        **kwargs,
    )


# ===========================================================================
# Registries
# ===========================================================================

class TestBuildRegistries(unittest.TestCase):

    def test_packs(self):
        registries = build_registries()
        self.assertEqual(
            list(registries),
            [Domain.COST, Domain.SECURITY, Domain.DATAPROTECTION, Domain.KUBERNETES, EKS_PACK],
        )
        self.assertEqual(registries[EKS_PACK].domain, Domain.KUBERNETES)


# ===========================================================================
# AWS audits
# ===========================================================================

class TestDomainAudit(unittest.TestCase):

    def test_clean_exit(self):
        outcome = make_service().run_domain_audit(Domain.SECURITY, AuditOptions(profile="prod"))
        self.assertEqual(outcome.exit_code, ExitCode.OK)
        self.assertEqual([f.rule_id for f in outcome.report.findings], ["S3_PUBLIC_BUCKET"])
        self.assertIsNone(outcome.explanation)
        outcome.raise_for_policy()

    def test_high_severity_gate(self):
        outcome = make_service().run_domain_audit(
            Domain.SECURITY, AuditOptions(profile="prod", fail_on_high=True),
        )
        self.assertEqual(outcome.exit_code, ExitCode.HIGH_SEVERITY)

    def test_policy_gate_wins_over_high_severity(self):
        policy = PolicyConfig(fail_on_severity={"security": "HIGH"})
        outcome = make_service(policy).run_domain_audit(
            Domain.SECURITY, AuditOptions(profile="prod", fail_on_high=True),
        )
        self.assertEqual(outcome.exit_code, ExitCode.POLICY_ENFORCED)
        self.assertEqual(outcome.enforced_domains, [Domain.SECURITY])
        with self.assertRaises(PolicyEnforced) as exc:
            outcome.raise_for_policy()
        self.assertIs(exc.exception.report, outcome.report)
        self.assertEqual(ExitCode.for_exception(exc.exception), ExitCode.POLICY_ENFORCED)

    def test_excepted_rule_does_not_gate(self):
        policy = PolicyConfig(fail_on_severity={"security": "HIGH"}, exceptions=["S3_PUBLIC_BUCKET"])
        outcome = make_service(policy).run_domain_audit(Domain.SECURITY, AuditOptions(profile="prod"))
        self.assertEqual(outcome.exit_code, ExitCode.OK)

    def test_view_filters_do_not_disarm_policy_gate(self):
        # inside the security domain the public bucket joins no chain, so the filter hides it
        policy = PolicyConfig(fail_on_severity={"security": "HIGH"})
        outcome = make_service(policy).run_domain_audit(
            Domain.SECURITY, AuditOptions(profile="prod", min_risk_score=50),
        )
        self.assertEqual(outcome.report.findings, [])
        self.assertEqual(outcome.enforced_domains, [Domain.SECURITY])
        self.assertEqual(outcome.exit_code, ExitCode.POLICY_ENFORCED)

    def test_view_filters_do_not_disarm_high_severity_gate(self):
        outcome = make_service().run_domain_audit(
            Domain.SECURITY, AuditOptions(profile="prod", min_risk_score=50, fail_on_high=True),
        )
        self.assertEqual(outcome.report.findings, [])
        self.assertEqual(outcome.exit_code, ExitCode.HIGH_SEVERITY)

    def test_unknown_domain(self):
        with self.assertRaises(ConfigError):
            make_service().run_domain_audit("billing", AuditOptions())
        self.assertEqual(ExitCode.for_exception(ConfigError("x")), ExitCode.EXECUTION_ERROR)

    def test_invalid_flags_raise_before_collection(self):
        resolver = make_resolver()
        with self.assertRaises(InvalidFlagCombination):
            make_service(resolver=resolver).run_domain_audit(
                Domain.SECURITY, AuditOptions(explain=80, show_risk_chains=False),
            )
        resolver.resolve.assert_not_called()

    def test_default_profile_from_config(self):
        resolver = make_resolver()
        service = make_service(app_config=AppConfig(default_profile="staging"), resolver=resolver)
        options = AuditOptions()

        outcome = service.run_domain_audit(Domain.COST, options)

        resolver.resolve.assert_called_with("staging")
        self.assertEqual(outcome.report.profile, "staging")
        self.assertIsNone(options.profile)

    def test_explicit_profile_beats_config(self):
        resolver = make_resolver()
        service = make_service(app_config=AppConfig(default_profile="staging"), resolver=resolver)
        service.run_domain_audit(Domain.COST, AuditOptions(profile="prod"))
        resolver.resolve.assert_called_with("prod")


class TestAllAWS(unittest.TestCase):

    def test_cross_domain_chain_and_explanation(self):
        outcome = make_service().run_all_aws(AuditOptions(profile="prod", explain=80))

        self.assertEqual(outcome.report.audit_type, "all")
        self.assertEqual(
            [c.pattern_id for c in outcome.report.summary.risk_chains],
            ["public-bucket-unencrypted"],
        )
        self.assertIn("RISK CHAIN (Score: 80)", outcome.explanation)
        self.assertIn("S3_PUBLIC_BUCKET", outcome.explanation)

    def test_explanation_json_by_pattern_id(self):
        outcome = make_service().run_all_aws(AuditOptions(
            profile="prod", explain="public-bucket-unencrypted", explain_format="json",
        ))
        data = json.loads(outcome.explanation)
        self.assertIn("risk_chain", data)
        self.assertEqual(len(data["findings"]), 2)

    def test_explanation_not_found(self):
        outcome = make_service().run_all_aws(AuditOptions(profile="prod", explain=42))
        self.assertEqual(outcome.explanation, "No attack path or risk chain found with score 42")
        self.assertEqual(outcome.exit_code, ExitCode.OK)

    def test_enforcement_per_domain(self):
        policy = PolicyConfig(fail_on_severity={"dataprotection": "HIGH"})
        outcome = make_service(policy).run_all_aws(AuditOptions(profile="prod"))
        self.assertEqual(outcome.enforced_domains, [Domain.DATAPROTECTION])
        self.assertEqual(outcome.exit_code, ExitCode.POLICY_ENFORCED)

    def test_min_risk_score_keeps_cross_domain_chain(self):
        outcome = make_service().run_all_aws(AuditOptions(profile="prod", min_risk_score=50, explain="80"))

        self.assertEqual(
            [f.rule_id for f in outcome.report.findings],
            ["S3_PUBLIC_BUCKET", "S3_DEFAULT_ENCRYPTION_MISSING"],
        )
        self.assertEqual(
            [c.pattern_id for c in outcome.report.summary.risk_chains],
            ["public-bucket-unencrypted"],
        )
        self.assertIn("RISK CHAIN (Score: 80)", outcome.explanation)
        self.assertEqual(outcome.exit_code, ExitCode.OK)

    def test_all_aws_gates_ignore_view_filters(self):
        policy = PolicyConfig(fail_on_severity={"security": "HIGH"})
        outcome = make_service(policy).run_all_aws(AuditOptions(profile="prod", min_risk_score=81))
        self.assertEqual(outcome.report.findings, [])
        self.assertEqual(outcome.enforced_domains, [Domain.SECURITY])
        self.assertEqual(outcome.exit_code, ExitCode.POLICY_ENFORCED)

        outcome = make_service().run_all_aws(
            AuditOptions(profile="prod", min_risk_score=81, fail_on_high=True),
        )
        self.assertEqual(outcome.report.findings, [])
        self.assertEqual(outcome.exit_code, ExitCode.HIGH_SEVERITY)


# ===========================================================================
# Kubernetes audits
# ===========================================================================

class TestKubernetesAudit(unittest.TestCase):

    def make_cluster(self) -> ClusterInventory:
        return ClusterInventory(
            context_name="kind-dev",
            pods=[PodInfo("api-0", "payments", containers=[ContainerInfo("api", privileged=True)])],
        )

    def test_requires_cluster_source(self):
        with self.assertRaises(ConfigError):
            make_service().run_kubernetes_audit(AuditOptions())

    def test_dispatch_through_domain_audit(self):
        clusters = StaticClusterCollector(self.make_cluster())
        eks = MagicMock()
        service = make_service(cluster_collector=clusters, eks_collector=eks)

        outcome = service.run_domain_audit(Domain.KUBERNETES, AuditOptions(context_name="kind-dev"))

        self.assertEqual(outcome.report.audit_type, Domain.KUBERNETES)
        self.assertEqual(clusters.calls, ["kind-dev"])
        self.assertIn("K8S_POD_PRIVILEGED_CONTAINER", [r for f in outcome.report.findings for r in f.rule_ids])
        eks.collect.assert_not_called()

    def test_kubernetes_policy_gate(self):
        policy = PolicyConfig(fail_on_severity={"kubernetes": "HIGH"})
        service = make_service(policy, cluster_collector=StaticClusterCollector(self.make_cluster()))
        outcome = service.run_kubernetes_audit(AuditOptions())
        self.assertEqual(outcome.enforced_domains, [Domain.KUBERNETES])
        self.assertEqual(outcome.exit_code, ExitCode.POLICY_ENFORCED)


if __name__ == "__main__":
    unittest.main(verbosity=2)
