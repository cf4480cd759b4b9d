"""
tests/unit/test_correlation.py

Unit tests for the risk correlation engine and the explain renderer.

Testing strategy:
  - Findings are built directly; the engine never looks at inventories
  - Scores are checked against the weight formula (two HIGH stages → 80,
    HIGH+HIGH+MEDIUM path → 94, CRITICAL+HIGH+HIGH path → 98)
  - Order independence is checked by feeding the same set reversed and
    shuffled with a fixed seed

Run with:
    pytest tests/unit/test_correlation.py -v
"""

from __future__ import annotations

import json
import os
import random
import sys
import unittest
from typing import Dict, List

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from core.correlation.detectors import (
    SCOPE_CLUSTER, SCOPE_NAMESPACE, SCOPE_RESOURCE, TIER_CHAIN, TIER_PATH, score_for, scope_key,
)
from core.correlation.engine import CorrelationResult, RiskCorrelationEngine
from core.correlation.explain import FORMAT_JSON, FORMAT_TEXT, not_found_message, render
from core.engine import merge_findings
from core.models.finding import Domain, Finding, Severity

CONTEXT = "prod-ctx"
ACCOUNT = "123456789012"


# ===========================================================================
# Helpers
# ===========================================================================

def k8s(rule_id: str, severity: Severity, name: str, namespace: str = "payments",
        context: str = CONTEXT) -> Finding:
    metadata = {"namespace": namespace} if namespace else {}
    key = f"{namespace}/{name}" if namespace else name
    return Finding(
        id=f"{rule_id}:{context}:{context}:{key}",
        rule_id=rule_id,
        resource_id=name,
        resource_type="Pod",
        region=context,
        account_id=context,
        profile=context,
        domain=Domain.KUBERNETES,
        severity=severity,
        metadata=metadata,
    )


def aws(rule_id: str, severity: Severity, resource: str, region: str = "global",
        domain: str = Domain.SECURITY, account: str = ACCOUNT) -> Finding:
    return Finding(
        id=f"{rule_id}:{account}:{region}:{resource}",
        rule_id=rule_id,
        resource_id=resource,
        resource_type="",
        region=region,
        account_id=account,
        profile="prod",
        domain=domain,
        severity=severity,
    )


def by_id(findings: List[Finding]) -> Dict[str, Finding]:
    return {f.id: f for f in findings}


def exposed_privileged_findings() -> List[Finding]:
    """Public LB + privileged pod + default SA in one namespace."""
    return [
        k8s("K8S_SERVICE_PUBLIC_LOADBALANCER", Severity.HIGH, "web"),
        k8s("K8S_POD_PRIVILEGED_CONTAINER", Severity.CRITICAL, "api"),
        k8s("K8S_DEFAULT_SERVICEACCOUNT_USED", Severity.MEDIUM, "api"),
    ]


def snapshot(result: CorrelationResult):
    return (
        [p.to_dict() for p in result.attack_paths],
        [c.to_dict() for c in result.risk_chains],
        result.risk_score,
    )


# ===========================================================================
# Scoring and co-location
# ===========================================================================

class TestScoring(unittest.TestCase):

    def test_chain_of_two_highs_scores_80(self):
        self.assertEqual(score_for(TIER_CHAIN, 3 + 3), 80)

    def test_path_examples(self):
        self.assertEqual(score_for(TIER_PATH, 3 + 3 + 2), 94)
        self.assertEqual(score_for(TIER_PATH, 4 + 3 + 3), 98)

    def test_scores_clamped_to_tier_ranges(self):
        self.assertEqual(score_for(TIER_CHAIN, 1), 50)
        self.assertEqual(score_for(TIER_CHAIN, 40), 89)
        self.assertEqual(score_for(TIER_PATH, 0), 90)
        self.assertEqual(score_for(TIER_PATH, 40), 99)

    def test_scope_keys_start_with_account(self):
        f = k8s("K8S_POD_RUN_AS_ROOT", Severity.HIGH, "api")
        self.assertEqual(scope_key(f, SCOPE_CLUSTER), (CONTEXT, CONTEXT))
        self.assertEqual(scope_key(f, SCOPE_NAMESPACE), (CONTEXT, CONTEXT, "payments"))
        self.assertEqual(scope_key(f, SCOPE_RESOURCE), (CONTEXT, CONTEXT, "api"))

    def test_finding_without_namespace_has_no_namespace_key(self):
        f = k8s("K8S_CLUSTER_SINGLE_NODE", Severity.HIGH, CONTEXT, namespace="")
        self.assertIsNone(scope_key(f, SCOPE_NAMESPACE))


# ===========================================================================
# Kubernetes narratives
# ===========================================================================

class TestKubernetesCorrelation(unittest.TestCase):

    def setUp(self):
        self.engine = RiskCorrelationEngine()

    def test_exposed_privileged_workload_path(self):
        result = self.engine.correlate(exposed_privileged_findings())

        self.assertEqual(len(result.attack_paths), 1)
        path = result.attack_paths[0]
        self.assertEqual(path.pattern_id, "exposed-privileged-workload")
        self.assertGreaterEqual(path.score, 90)
        self.assertEqual(path.score, 96)
        self.assertEqual(path.layers, ["Network Exposure", "Workload Privilege", "Identity Weakness"])
        self.assertEqual(len(path.finding_ids), 3)
        self.assertEqual(result.risk_score, 96)

    def test_lb_and_privileged_also_form_a_chain(self):
        result = self.engine.correlate(exposed_privileged_findings())
        chains = {c.pattern_id: c for c in result.risk_chains}
        self.assertIn("public-service-privileged-workload", chains)
        self.assertEqual(chains["public-service-privileged-workload"].score, 86)

    def test_high_high_medium_path_scores_94(self):
        findings = [
            k8s("K8S_SERVICE_PUBLIC_LOADBALANCER", Severity.HIGH, "web"),
            k8s("K8S_POD_RUN_AS_ROOT", Severity.HIGH, "api"),
            k8s("K8S_DEFAULT_SERVICEACCOUNT_USED", Severity.MEDIUM, "api"),
        ]
        result = self.engine.correlate(findings)
        self.assertEqual(result.attack_paths[0].score, 94)
        chains = {c.pattern_id: c.score for c in result.risk_chains}
        self.assertEqual(chains["public-service-privileged-workload"], 80)

    def test_critical_high_high_path_scores_98(self):
        findings = [
            k8s("K8S_SERVICE_PUBLIC_LOADBALANCER", Severity.HIGH, "web"),
            k8s("K8S_POD_PRIVILEGED_CONTAINER", Severity.CRITICAL, "api"),
            k8s("EKS_SERVICEACCOUNT_NO_IRSA", Severity.HIGH, "api-sa"),
        ]
        self.assertEqual(self.engine.correlate(findings).attack_paths[0].score, 98)

    def test_optional_node_role_stage_adds_a_layer(self):
        findings = exposed_privileged_findings() + [
            k8s("EKS_NODE_ROLE_OVERPERMISSIVE", Severity.CRITICAL, "arn:aws:iam::1:role/node", namespace=""),
        ]
        path = self.engine.correlate(findings).attack_paths[0]
        self.assertEqual(path.layers[-1], "IAM Over-permission")
        self.assertEqual(path.score, 99)
        self.assertEqual(len(path.finding_ids), 4)

    def test_namespaces_do_not_mix(self):
        findings = [
            k8s("K8S_SERVICE_PUBLIC_LOADBALANCER", Severity.HIGH, "web", namespace="frontend"),
            k8s("K8S_POD_PRIVILEGED_CONTAINER", Severity.CRITICAL, "api", namespace="backend"),
            k8s("K8S_DEFAULT_SERVICEACCOUNT_USED", Severity.MEDIUM, "api", namespace="backend"),
        ]
        result = self.engine.correlate(findings)
        self.assertEqual(result.attack_paths, [])
        self.assertNotIn("public-service-privileged-workload", [c.pattern_id for c in result.risk_chains])

    def test_contexts_do_not_mix(self):
        findings = [
            k8s("K8S_SERVICE_PUBLIC_LOADBALANCER", Severity.HIGH, "web", context="a"),
            k8s("K8S_POD_PRIVILEGED_CONTAINER", Severity.CRITICAL, "api", context="b"),
        ]
        self.assertEqual(self.engine.correlate(findings).risk_chains, [])

    def test_governance_collapse_path(self):
        findings = [
            k8s("EKS_ENCRYPTION_DISABLED", Severity.CRITICAL, "prod", namespace=""),
            k8s("EKS_CONTROL_PLANE_LOGGING_DISABLED", Severity.HIGH, "prod", namespace=""),
            k8s("K8S_CLUSTER_SINGLE_NODE", Severity.HIGH, CONTEXT, namespace=""),
        ]
        result = self.engine.correlate(findings)
        self.assertEqual([p.pattern_id for p in result.attack_paths], ["governance-collapse"])
        # single node + the critical encryption finding
        self.assertIn("single-node-critical-violation", [c.pattern_id for c in result.risk_chains])

    def test_oidc_chain_ignores_the_oidc_finding_itself(self):
        findings = [k8s("EKS_OIDC_PROVIDER_NOT_ASSOCIATED", Severity.HIGH, "prod", namespace="")]
        self.assertEqual(self.engine.correlate(findings).risk_chains, [])

        findings.append(k8s("K8S_POD_RUN_AS_ROOT", Severity.HIGH, "api"))
        chains = [c.pattern_id for c in self.engine.correlate(findings).risk_chains]
        self.assertEqual(chains, ["oidc-missing-high-risk-workloads"])


# ===========================================================================
# AWS narratives
# ===========================================================================

class TestAWSCorrelation(unittest.TestCase):

    def setUp(self):
        self.engine = RiskCorrelationEngine()

    def test_public_bucket_without_encryption_spans_domains(self):
        findings = [
            aws("S3_PUBLIC_BUCKET", Severity.HIGH, "open-data"),
            aws("S3_DEFAULT_ENCRYPTION_MISSING", Severity.HIGH, "open-data", domain=Domain.DATAPROTECTION),
        ]
        result = self.engine.correlate(findings)
        self.assertEqual([c.pattern_id for c in result.risk_chains], ["public-bucket-unencrypted"])
        self.assertEqual(result.risk_chains[0].score, 80)

    def test_public_bucket_and_root_keys_are_not_correlated(self):
        findings = [
            aws("S3_PUBLIC_BUCKET", Severity.HIGH, "open-data"),
            aws("ROOT_ACCESS_KEY", Severity.CRITICAL, ACCOUNT),
        ]
        result = self.engine.correlate(findings)
        self.assertEqual(result.risk_chains, [])
        self.assertEqual(result.attack_paths, [])
        self.assertEqual(result.risk_score, 0)

    def test_root_keys_without_mfa(self):
        findings = [
            aws("ROOT_ACCESS_KEY", Severity.CRITICAL, ACCOUNT),
            aws("ROOT_ACCOUNT_MFA_DISABLED", Severity.CRITICAL, ACCOUNT),
        ]
        chain = self.engine.correlate(findings).risk_chains[0]
        self.assertEqual(chain.pattern_id, "root-keys-without-mfa")
        self.assertEqual(chain.score, 89)

    def test_accounts_never_correlate(self):
        findings = [
            aws("S3_PUBLIC_BUCKET", Severity.HIGH, "shared-name", account="111111111111"),
            aws("S3_DEFAULT_ENCRYPTION_MISSING", Severity.HIGH, "shared-name", account="222222222222"),
        ]
        self.assertEqual(self.engine.correlate(findings).risk_chains, [])

    def test_idle_unencrypted_volume(self):
        findings = [
            aws("EBS_UNATTACHED", Severity.MEDIUM, "vol-1", region="us-east-1", domain=Domain.COST),
            aws("EBS_UNENCRYPTED", Severity.HIGH, "vol-1", region="us-east-1", domain=Domain.DATAPROTECTION),
        ]
        chain = self.engine.correlate(findings).risk_chains[0]
        self.assertEqual(chain.pattern_id, "idle-unencrypted-volume")
        self.assertEqual(chain.score, 74)


# ===========================================================================
# Merged findings
# ===========================================================================

class TestMergedFindings(unittest.TestCase):
    """Findings collapsed per resource still correlate rule by rule."""

    def setUp(self):
        self.engine = RiskCorrelationEngine()

    def test_one_root_finding_carrying_both_rules(self):
        [root] = merge_findings([
            aws("ROOT_ACCESS_KEY", Severity.CRITICAL, ACCOUNT),
            aws("ROOT_ACCOUNT_MFA_DISABLED", Severity.CRITICAL, ACCOUNT),
        ])
        chain = self.engine.correlate([root]).risk_chains[0]
        self.assertEqual(chain.pattern_id, "root-keys-without-mfa")
        self.assertEqual(chain.score, 89)
        self.assertEqual(chain.finding_ids, [root.id])

    def test_scores_use_each_rule_severity(self):
        merged = merge_findings(exposed_privileged_findings())
        self.assertEqual(len(merged), 2)

        path = self.engine.correlate(merged).attack_paths[0]
        self.assertEqual(path.score, 96)
        self.assertEqual(path.layers, ["Network Exposure", "Workload Privilege", "Identity Weakness"])
        self.assertEqual(len(path.finding_ids), 2)

    def test_single_rule_cannot_fill_two_stages(self):
        findings = [k8s("K8S_CLUSTER_SINGLE_NODE", Severity.CRITICAL, CONTEXT, namespace="")]
        self.assertEqual(self.engine.correlate(findings).risk_chains, [])

    def test_explain_lists_merged_finding_under_each_rule(self):
        merged = merge_findings(exposed_privileged_findings())
        result = self.engine.correlate(merged)
        text = render(result.find(96), by_id(merged), 96, FORMAT_TEXT)
        self.assertIn("✓ K8S_POD_PRIVILEGED_CONTAINER", text)
        self.assertIn("✓ K8S_DEFAULT_SERVICEACCOUNT_USED", text)

        payload = json.loads(render(result.find(96), by_id(merged), 96, FORMAT_JSON))
        identity = [p for p in payload["predicates"] if p["layer"] == "Identity Weakness"][0]
        self.assertEqual(identity["rule_ids"], ["K8S_DEFAULT_SERVICEACCOUNT_USED"])
        self.assertEqual(identity["max_severity"], "MEDIUM")


# ===========================================================================
# Engine guarantees
# ===========================================================================

class TestEngineGuarantees(unittest.TestCase):

    def setUp(self):
        self.engine = RiskCorrelationEngine()
        self.findings = exposed_privileged_findings() + [
            k8s("K8S_SERVICEACCOUNT_TOKEN_AUTOMOUNT", Severity.MEDIUM, "default"),
            k8s("EKS_SERVICEACCOUNT_NO_IRSA", Severity.HIGH, "default"),
            k8s("EKS_OIDC_PROVIDER_NOT_ASSOCIATED", Severity.HIGH, "prod", namespace=""),
            aws("S3_PUBLIC_BUCKET", Severity.HIGH, "b"),
            aws("S3_DEFAULT_ENCRYPTION_MISSING", Severity.HIGH, "b", domain=Domain.DATAPROTECTION),
        ]

    def test_order_independent(self):
        expected = snapshot(self.engine.correlate(self.findings))
        self.assertEqual(snapshot(self.engine.correlate(list(reversed(self.findings)))), expected)
        shuffled = list(self.findings)
        random.Random(7).shuffle(shuffled)
        self.assertEqual(snapshot(self.engine.correlate(shuffled)), expected)

    def test_member_ids_come_from_input(self):
        result = self.engine.correlate(self.findings)
        known = {f.id for f in self.findings}
        for narrative in result.attack_paths + result.risk_chains:
            self.assertTrue(set(narrative.finding_ids) <= known)
            self.assertGreaterEqual(len(narrative.finding_ids), 2)

    def test_input_not_mutated(self):
        before = [f.to_dict() for f in self.findings]
        self.engine.correlate(self.findings)
        self.assertEqual([f.to_dict() for f in self.findings], before)

    def test_paths_sorted_before_chains_and_by_score(self):
        result = self.engine.correlate(self.findings)
        self.assertEqual([m.detector.tier for m in result.matches],
                         [TIER_PATH] * len(result.attack_paths) + [TIER_CHAIN] * len(result.risk_chains))
        scores = [c.score for c in result.risk_chains]
        self.assertEqual(scores, sorted(scores, reverse=True))

    def test_empty_input(self):
        result = self.engine.correlate([])
        self.assertEqual(snapshot(result), ([], [], 0))

    def test_restricted_to_drops_narratives_with_hidden_members(self):
        result = self.engine.correlate(self.findings)
        hidden = exposed_privileged_findings()[1].id
        restricted = result.restricted_to(f.id for f in self.findings if f.id != hidden)
        for narrative in restricted.attack_paths + restricted.risk_chains:
            self.assertNotIn(hidden, narrative.finding_ids)
        self.assertNotIn("exposed-privileged-workload", [p.pattern_id for p in restricted.attack_paths])

    def test_score_by_finding_keeps_best_score(self):
        result = self.engine.correlate(exposed_privileged_findings())
        lb = exposed_privileged_findings()[0].id
        self.assertEqual(result.score_by_finding()[lb], 96)


# ===========================================================================
# Explain
# ===========================================================================

class TestExplain(unittest.TestCase):

    def setUp(self):
        self.engine = RiskCorrelationEngine()
        self.findings = exposed_privileged_findings()
        self.result = self.engine.correlate(self.findings)

    def test_find_by_score_prefers_paths(self):
        match = self.result.find(96)
        self.assertTrue(match.detector.is_path)

    def test_find_by_pattern_id(self):
        match = self.result.find("public-service-privileged-workload")
        self.assertEqual(match.score, 86)

    def test_engine_explain_matches_find(self):
        self.assertEqual(self.engine.explain(self.findings, 96).finding_ids, self.result.find(96).finding_ids)

    def test_text_rendering(self):
        text = render(self.result.find(96), by_id(self.findings), 96, FORMAT_TEXT)
        self.assertIn("ATTACK PATH (Score: 96)", text)
        self.assertIn("Layers: Network Exposure → Workload Privilege → Identity Weakness", text)
        self.assertIn("✓ K8S_POD_PRIVILEGED_CONTAINER", text)
        self.assertIn("    - api (payments)", text)
        self.assertIn("[Network Exposure] public-load-balancer matched 1 finding(s) (max HIGH)", text)

    def test_chain_text_rendering(self):
        text = render(self.result.find(86), by_id(self.findings), 86, FORMAT_TEXT)
        self.assertTrue(text.startswith("RISK CHAIN (Score: 86)"))
        self.assertIn("Reason: Public service exposes a privileged workload.", text)

    def test_json_rendering(self):
        payload = json.loads(render(self.result.find(96), by_id(self.findings), 96, FORMAT_JSON))
        self.assertEqual(payload["attack_path"]["score"], 96)
        self.assertEqual(len(payload["findings"]), 3)
        self.assertEqual(payload["predicates"][0]["layer"], "Network Exposure")

    def test_not_found(self):
        self.assertIsNone(self.result.find(42))
        self.assertEqual(
            render(None, by_id(self.findings), 42, FORMAT_TEXT),
            "No attack path or risk chain found with score 42",
        )
        self.assertEqual(
            json.loads(render(None, {}, 42, FORMAT_JSON)),
            {"error": not_found_message(42)},
        )

    def test_unknown_format_rejected(self):
        with self.assertRaises(ValueError):
            render(None, {}, 42, "yaml")


if __name__ == "__main__":
    unittest.main(verbosity=2)
