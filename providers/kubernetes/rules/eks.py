"""
providers/kubernetes/rules/eks.py

EKS-specific rules. The Kubernetes engine only evaluates this pack when
the cluster was detected as EKS. Every rule here is silent when no EKS
control-plane data could be collected (inventory.eks is None), except
the IRSA rule which only needs ServiceAccount annotations.

Findings keep the kube context as their region; the AWS region of the
cluster is recorded in metadata["eks_region"].
"""

from __future__ import annotations

import re
from abc import abstractmethod
from typing import List, Optional, Tuple

from core.models.finding import Domain, Finding, Severity
from core.models.inventory import ClusterInventory, EKSClusterData
from core.rules.base import Rule, RuleContext

IRSA_ANNOTATION = "eks.amazonaws.com/role-arn"

REQUIRED_LOG_TYPES = ("api", "audit", "authenticator")
RECOMMENDED_LOG_TYPES = ("audit", "authenticator", "controllerManager", "scheduler")

_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)")


def parse_minor_version(version: str) -> Optional[Tuple[int, int]]:
    """'1.29', 'v1.28.3-eks-abc' → (1, 29) / (1, 28). None if unparseable."""
    match = _VERSION_RE.match(version or "")
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


class EKSRule(Rule):
    domain = Domain.KUBERNETES
    resource_type = "EKSCluster"

    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        cluster: ClusterInventory = ctx.inventory
        if cluster.eks is None:
            return []
        return self._evaluate(ctx, cluster, cluster.eks)

    @abstractmethod
    def _evaluate(self, ctx: RuleContext, cluster: ClusterInventory,
                  eks: EKSClusterData) -> List[Finding]:
        ...

    def _cluster_finding(self, ctx, cluster, eks, explanation, **kwargs) -> Finding:
        metadata = {"eks_region": eks.region, "cluster_name": eks.cluster_name}
        metadata.update(kwargs.pop("metadata", {}) or {})
        return self._finding(
            ctx, eks.cluster_name or cluster.context_name, cluster.context_name,
            explanation, metadata=metadata, **kwargs,
        )


class EKSPublicEndpointWideOpenRule(EKSRule):
    """EKS API endpoint is public to the whole internet."""

    rule_id = "EKS_PUBLIC_ENDPOINT_WIDE_OPEN"
    default_severity = Severity.CRITICAL
    recommendation = "Disable public endpoint access or restrict publicAccessCidrs."

    def _evaluate(self, ctx, cluster, eks):
        if not eks.endpoint_public_access:
            return []
        # EKS reports 0.0.0.0/0 when no CIDRs were configured
        if eks.public_access_cidrs and "0.0.0.0/0" not in eks.public_access_cidrs:
            return []
        return [self._cluster_finding(
            ctx, cluster, eks,
            "The cluster API endpoint is publicly reachable from 0.0.0.0/0.",
        )]


class EKSEncryptionDisabledRule(EKSRule):
    """Kubernetes secrets are not envelope-encrypted with KMS."""

    rule_id = "EKS_ENCRYPTION_DISABLED"
    default_severity = Severity.CRITICAL
    recommendation = "Associate a KMS key for secrets encryption (aws eks associate-encryption-config)."

    def _evaluate(self, ctx, cluster, eks):
        if eks.encryption_key_arn:
            return []
        return [self._cluster_finding(
            ctx, cluster, eks,
            "Secrets envelope encryption with a KMS key is not configured.",
        )]


class EKSControlPlaneLoggingDisabledRule(EKSRule):
    """Essential control-plane log types are off."""

    rule_id = "EKS_CONTROL_PLANE_LOGGING_DISABLED"
    default_severity = Severity.HIGH
    recommendation = "Enable api, audit and authenticator control-plane logs."

    def _evaluate(self, ctx, cluster, eks):
        missing = [t for t in REQUIRED_LOG_TYPES if t not in eks.enabled_log_types]
        if not missing:
            return []
        return [self._cluster_finding(
            ctx, cluster, eks,
            f"Control-plane log types disabled: {', '.join(missing)}.",
            metadata={"missing_log_types": missing},
        )]


class EKSClusterLoggingPartialRule(EKSRule):
    """Some, but not all, recommended log types are on."""

    rule_id = "EKS_CLUSTER_LOGGING_PARTIAL"
    default_severity = Severity.MEDIUM
    recommendation = "Enable every control-plane log type for complete forensics."

    def _evaluate(self, ctx, cluster, eks):
        enabled = [t for t in RECOMMENDED_LOG_TYPES if t in eks.enabled_log_types]
        if not enabled or len(enabled) == len(RECOMMENDED_LOG_TYPES):
            return []
        missing = [t for t in RECOMMENDED_LOG_TYPES if t not in enabled]
        return [self._cluster_finding(
            ctx, cluster, eks,
            f"Control-plane logging is partial; missing {', '.join(missing)}.",
            metadata={"missing_log_types": missing},
        )]


class EKSNodegroupIMDSv2NotEnforcedRule(EKSRule):
    """Node group does not require IMDSv2."""

    rule_id = "EKS_NODEGROUP_IMDSV2_NOT_ENFORCED"
    default_severity = Severity.HIGH
    resource_type = "EKSNodeGroup"
    recommendation = "Set HttpTokens=required in the node group launch template."

    def _evaluate(self, ctx, cluster, eks):
        return [
            self._finding(
                ctx, ng.name, cluster.context_name,
                f"Node group {ng.name!r} allows IMDSv1 (HttpTokens={ng.http_tokens}).",
                metadata={"eks_region": eks.region, "cluster_name": eks.cluster_name},
            )
            for ng in eks.node_groups
            if ng.http_tokens != "required"
        ]


class EKSNodeVersionSkewRule(EKSRule):
    """Node group kubelet lags the control plane by more than one minor."""

    rule_id = "EKS_NODE_VERSION_SKEW"
    default_severity = Severity.MEDIUM
    resource_type = "EKSNodeGroup"
    recommendation = "Upgrade the node group to within one minor version of the control plane."

    def _evaluate(self, ctx, cluster, eks):
        control = parse_minor_version(eks.version)
        if control is None:
            return []
        findings = []
        for ng in eks.node_groups:
            node = parse_minor_version(ng.version)
            if node is None or node[0] != control[0]:
                continue
            skew = control[1] - node[1]
            if skew <= 1:
                continue
            findings.append(self._finding(
                ctx, ng.name, cluster.context_name,
                f"Node group {ng.name!r} runs {ng.version}, {skew} minor versions "
                f"behind the control plane ({eks.version}).",
                metadata={"eks_region": eks.region, "skew": skew},
            ))
        return findings


class EKSOIDCProviderNotAssociatedRule(EKSRule):
    """No IAM OIDC provider, so IRSA cannot work."""

    rule_id = "EKS_OIDC_PROVIDER_NOT_ASSOCIATED"
    default_severity = Severity.HIGH
    recommendation = "Associate an IAM OIDC provider (eksctl utils associate-iam-oidc-provider)."

    def _evaluate(self, ctx, cluster, eks):
        if eks.oidc_provider_associated:
            return []
        return [self._cluster_finding(
            ctx, cluster, eks,
            "No IAM OIDC provider is associated; pods cannot use IAM roles for service accounts.",
        )]


class EKSServiceAccountNoIRSARule(Rule):
    """ServiceAccount has no IAM role annotation."""

    rule_id = "EKS_SERVICEACCOUNT_NO_IRSA"
    domain = Domain.KUBERNETES
    default_severity = Severity.HIGH
    resource_type = "ServiceAccount"
    recommendation = f"Annotate the ServiceAccount with {IRSA_ANNOTATION} pointing at a least-privilege role."

    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        cluster: ClusterInventory = ctx.inventory
        findings = []
        for sa in cluster.service_accounts:
            if sa.annotations.get(IRSA_ANNOTATION):
                continue
            findings.append(self._finding(
                ctx, sa.name, cluster.context_name,
                f"ServiceAccount {sa.name!r} in {sa.namespace!r} has no IRSA role; "
                f"its pods fall back to the node's IAM role.",
                metadata={"namespace": sa.namespace},
                resource_key=f"{sa.namespace}/{sa.name}",
            ))
        return findings


class EKSNodeRoleOverpermissiveRule(EKSRule):
    """Node IAM role carries broad policies."""

    rule_id = "EKS_NODE_ROLE_OVERPERMISSIVE"
    default_severity = Severity.CRITICAL
    resource_type = "IAMRole"
    recommendation = "Limit the node role to the EKS worker, CNI and ECR read-only policies."

    def _evaluate(self, ctx, cluster, eks):
        if not eks.overpermissive_node_policies:
            return []
        role = eks.node_role_arns[0] if eks.node_role_arns else eks.cluster_name
        return [self._finding(
            ctx, role, cluster.context_name,
            f"Node IAM role grants broad permissions: "
            f"{', '.join(eks.overpermissive_node_policies)}. Every pod without IRSA inherits them.",
            metadata={
                "eks_region": eks.region,
                "policies":   list(eks.overpermissive_node_policies),
            },
        )]


def eks_rules() -> List[Rule]:
    """EKS pack, evaluated after the core pack on EKS clusters."""
    return [
        EKSPublicEndpointWideOpenRule(),
        EKSEncryptionDisabledRule(),
        EKSControlPlaneLoggingDisabledRule(),
        EKSClusterLoggingPartialRule(),
        EKSNodegroupIMDSv2NotEnforcedRule(),
        EKSNodeVersionSkewRule(),
        EKSOIDCProviderNotAssociatedRule(),
        EKSServiceAccountNoIRSARule(),
        EKSNodeRoleOverpermissiveRule(),
    ]
