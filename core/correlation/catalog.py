"""
core/correlation/catalog.py

The fixed set of correlation patterns. Order here is detection order:
it breaks score ties when narratives are listed and explained.

Rule ids are referenced by name only so core never imports a rule pack.
"""

from __future__ import annotations

from core.correlation.detectors import (
    SCOPE_CLUSTER, SCOPE_NAMESPACE, SCOPE_RESOURCE, TIER_CHAIN, TIER_PATH,
    PatternDetector, Predicate, Stage, rules,
)
from core.models.finding import Domain, Severity

# ---------------------------------------------------------------------------
# Shared predicates
# ---------------------------------------------------------------------------

PUBLIC_LB = rules("public-load-balancer", "K8S_SERVICE_PUBLIC_LOADBALANCER")

PRIVILEGED_WORKLOAD = rules(
    "privileged-workload",
    "K8S_POD_PRIVILEGED_CONTAINER", "K8S_POD_RUN_AS_ROOT", "K8S_POD_CAP_SYS_ADMIN",
)

WEAK_WORKLOAD_IDENTITY = rules(
    "weak-workload-identity",
    "K8S_DEFAULT_SERVICEACCOUNT_USED", "EKS_SERVICEACCOUNT_NO_IRSA",
)

DEFAULT_SA_USED   = rules("default-serviceaccount-used", "K8S_DEFAULT_SERVICEACCOUNT_USED")
TOKEN_AUTOMOUNT   = rules("token-automount", "K8S_SERVICEACCOUNT_TOKEN_AUTOMOUNT")
NO_IRSA           = rules("no-irsa", "EKS_SERVICEACCOUNT_NO_IRSA")
OIDC_MISSING      = rules("oidc-provider-missing", "EKS_OIDC_PROVIDER_NOT_ASSOCIATED")
NODE_ROLE_BROAD   = rules("node-role-overpermissive", "EKS_NODE_ROLE_OVERPERMISSIVE")
SINGLE_NODE       = rules("single-node", "K8S_CLUSTER_SINGLE_NODE")
ENCRYPTION_OFF    = rules("secrets-encryption-disabled", "EKS_ENCRYPTION_DISABLED")
LOGGING_OFF       = rules("control-plane-logging-disabled", "EKS_CONTROL_PLANE_LOGGING_DISABLED")

ANY_CRITICAL_K8S = Predicate(
    name="critical-cluster-finding",
    min_severity=Severity.CRITICAL,
    domain=Domain.KUBERNETES,
)

ANY_HIGH_K8S = Predicate(
    name="high-risk-cluster-finding",
    min_severity=Severity.HIGH,
    domain=Domain.KUBERNETES,
    exclude_rule_ids=frozenset({"EKS_OIDC_PROVIDER_NOT_ASSOCIATED"}),
)


# ---------------------------------------------------------------------------
# Attack paths
# ---------------------------------------------------------------------------

ATTACK_PATHS = (
    PatternDetector(
        pattern_id="exposed-privileged-workload",
        tier=TIER_PATH,
        scope=SCOPE_NAMESPACE,
        narrative="Externally exposed privileged workload with weak identity isolation.",
        stages=(
            Stage("Network Exposure", PUBLIC_LB),
            Stage("Workload Privilege", PRIVILEGED_WORKLOAD),
            Stage("Identity Weakness", WEAK_WORKLOAD_IDENTITY),
            Stage("IAM Over-permission", NODE_ROLE_BROAD, optional=True, scope=SCOPE_CLUSTER),
        ),
    ),
    PatternDetector(
        pattern_id="service-account-token-misuse",
        tier=TIER_PATH,
        scope=SCOPE_NAMESPACE,
        narrative="Service account token misuse combined with missing IRSA and OIDC.",
        stages=(
            Stage("Service Account Usage", DEFAULT_SA_USED),
            Stage("Token Exposure", TOKEN_AUTOMOUNT),
            Stage("Identity Federation Missing", NO_IRSA),
            Stage("Identity Federation Missing", OIDC_MISSING, scope=SCOPE_CLUSTER),
        ),
    ),
    PatternDetector(
        pattern_id="governance-collapse",
        tier=TIER_PATH,
        scope=SCOPE_CLUSTER,
        narrative="Cluster governance protections disabled with no redundancy.",
        stages=(
            Stage("Encryption Disabled", ENCRYPTION_OFF),
            Stage("Logging Disabled", LOGGING_OFF),
            Stage("No Redundancy", SINGLE_NODE),
        ),
    ),
)


# ---------------------------------------------------------------------------
# Risk chains
# ---------------------------------------------------------------------------

RISK_CHAINS = (
    PatternDetector(
        pattern_id="public-service-privileged-workload",
        tier=TIER_CHAIN,
        scope=SCOPE_NAMESPACE,
        narrative="Public service exposes a privileged workload.",
        stages=(
            Stage("Public Exposure", PUBLIC_LB),
            Stage("Privileged Workload", PRIVILEGED_WORKLOAD),
        ),
    ),
    PatternDetector(
        pattern_id="default-sa-automount",
        tier=TIER_CHAIN,
        scope=SCOPE_NAMESPACE,
        narrative="Default service account used with an auto-mounted token.",
        stages=(
            Stage("Default Identity", DEFAULT_SA_USED),
            Stage("Token Exposure", TOKEN_AUTOMOUNT),
        ),
    ),
    PatternDetector(
        pattern_id="default-sa-without-irsa",
        tier=TIER_CHAIN,
        scope=SCOPE_NAMESPACE,
        narrative="Default service account used without IRSA.",
        stages=(
            Stage("Default Identity", DEFAULT_SA_USED),
            Stage("No Workload IAM Role", NO_IRSA),
        ),
    ),
    PatternDetector(
        pattern_id="public-service-overpermissive-node-role",
        tier=TIER_CHAIN,
        scope=SCOPE_CLUSTER,
        narrative="Public service exposed in a cluster with an over-permissive node IAM role.",
        stages=(
            Stage("Public Exposure", PUBLIC_LB),
            Stage("Node IAM Over-permission", NODE_ROLE_BROAD),
        ),
    ),
    PatternDetector(
        pattern_id="single-node-critical-violation",
        tier=TIER_CHAIN,
        scope=SCOPE_CLUSTER,
        narrative="Single-node cluster also carries a critical violation.",
        stages=(
            Stage("No Redundancy", SINGLE_NODE),
            Stage("Critical Violation", ANY_CRITICAL_K8S),
        ),
    ),
    PatternDetector(
        pattern_id="oidc-missing-high-risk-workloads",
        tier=TIER_CHAIN,
        scope=SCOPE_CLUSTER,
        narrative="No OIDC provider while high-risk findings are present.",
        stages=(
            Stage("Identity Federation Missing", OIDC_MISSING),
            Stage("High-Risk Finding", ANY_HIGH_K8S),
        ),
    ),
    PatternDetector(
        pattern_id="root-keys-without-mfa",
        tier=TIER_CHAIN,
        scope=SCOPE_RESOURCE,
        narrative="Root account has access keys and no MFA.",
        stages=(
            Stage("Root Credentials", rules("root-access-key", "ROOT_ACCESS_KEY")),
            Stage("No Second Factor", rules("root-mfa-disabled", "ROOT_ACCOUNT_MFA_DISABLED")),
        ),
    ),
    PatternDetector(
        pattern_id="public-bucket-unencrypted",
        tier=TIER_CHAIN,
        scope=SCOPE_RESOURCE,
        narrative="Public S3 bucket without default encryption.",
        stages=(
            Stage("Public Exposure", rules("public-bucket", "S3_PUBLIC_BUCKET")),
            Stage("Unencrypted Data", rules("bucket-unencrypted", "S3_DEFAULT_ENCRYPTION_MISSING")),
        ),
    ),
    PatternDetector(
        pattern_id="idle-unencrypted-volume",
        tier=TIER_CHAIN,
        scope=SCOPE_RESOURCE,
        narrative="Orphaned EBS volume holds unencrypted data.",
        stages=(
            Stage("Orphaned Volume", rules("unattached-volume", "EBS_UNATTACHED")),
            Stage("Unencrypted Data", rules("volume-unencrypted", "EBS_UNENCRYPTED")),
        ),
    ),
)

CATALOG = ATTACK_PATHS + RISK_CHAINS
