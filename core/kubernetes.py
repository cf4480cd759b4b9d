"""
core/kubernetes.py

KubernetesAuditEngine audits one cluster (one kube context).

Flow:
    1. Collect the cluster inventory (fatal on failure)
    2. Detect the cluster provider from node providerIDs and labels
    3. On EKS, try to fetch control-plane data. Failure here is logged and
       the EKS rules simply see no control-plane data.
    4. Evaluate the core pack, then the EKS pack when the cluster is EKS
    5. Shared post-pipeline (policy, correlation, view filters, report)

The "exclude system namespaces" view filter lives here because only this
domain has namespaces.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Callable, Optional, Sequence, Tuple

from core.collector import AuditContext, ClusterCollector, EKSDataCollector
from core.correlation.engine import RiskCorrelationEngine
from core.engine import AuditOptions, DomainAuditEngine, DomainAuditResult, evaluate_registry
from core.exceptions import AuditCancelled, CollectionFailed
from core.models.finding import Domain, Finding
from core.models.inventory import ClusterInventory, NodeInfo
from core.policy.config import PolicyConfig
from core.report import ReportAssembler
from core.rules.base import RuleContext
from core.rules.registry import RuleRegistry

logger = logging.getLogger(__name__)

SYSTEM_NAMESPACES = ("kube-system", "kube-public", "kube-node-lease")

PROVIDER_EKS     = "eks"
PROVIDER_GKE     = "gke"
PROVIDER_AKS     = "aks"
PROVIDER_UNKNOWN = "unknown"

# (providerID prefix, well-known node label) → provider
_PROVIDER_MARKERS = (
    ("aws://",   "eks.amazonaws.com/nodegroup",    PROVIDER_EKS),
    ("gce://",   "cloud.google.com/gke-nodepool",  PROVIDER_GKE),
    ("azure://", "kubernetes.azure.com/cluster",   PROVIDER_AKS),
)

EKS_CLUSTER_NAME_LABELS = ("eks.amazonaws.com/cluster-name", "alpha.eksctl.io/cluster-name")
REGION_LABEL = "topology.kubernetes.io/region"


def detect_cluster_provider(nodes: Sequence[NodeInfo]) -> str:
    for node in nodes:
        for prefix, label, provider in _PROVIDER_MARKERS:
            if node.provider_id.startswith(prefix) or label in node.labels:
                return provider
    return PROVIDER_UNKNOWN


def extract_eks_info(nodes: Sequence[NodeInfo]) -> Tuple[str, str]:
    """
    (cluster_name, region) from node labels. The region falls back to the
    availability zone in an aws:///us-east-1a/i-0abc providerID with the
    zone letter stripped. Empty strings when unknown.
    """
    cluster_name, region = "", ""
    for node in nodes:
        if not cluster_name:
            for label in EKS_CLUSTER_NAME_LABELS:
                if node.labels.get(label):
                    cluster_name = node.labels[label]
                    break
        if not region:
            region = node.labels.get(REGION_LABEL, "")
        if not region and node.provider_id.startswith("aws://"):
            parts = [p for p in node.provider_id[len("aws://"):].split("/") if p]
            if parts and len(parts[0]) > 1 and parts[0][-1].isalpha():
                region = parts[0][:-1]
        if cluster_name and region:
            break
    return cluster_name, region


def is_system_namespace(namespace: str) -> bool:
    return namespace in SYSTEM_NAMESPACES


class KubernetesAuditEngine(DomainAuditEngine):
    """
    Usage:
        engine = KubernetesAuditEngine(
            registry=RuleRegistry("kubernetes", core_rules()),
            eks_registry=RuleRegistry("kubernetes", eks_rules()),
            cluster_collector=SnapshotClusterCollector("cluster.yaml"),
            eks_collector=BotoEKSCollector(resolver),
        )
        result = engine.audit(AuditContext(), AuditOptions(exclude_system=True))
    """

    domain = Domain.KUBERNETES

    def __init__(
        self,
        registry:          RuleRegistry,
        cluster_collector: ClusterCollector,
        eks_registry:      Optional[RuleRegistry]     = None,
        eks_collector:     Optional[EKSDataCollector] = None,
        policy:            Optional[PolicyConfig]     = None,
        correlator:        Optional[RiskCorrelationEngine] = None,
        assembler:         Optional[ReportAssembler]  = None,
    ):
        super().__init__(registry, policy=policy, correlator=correlator, assembler=assembler)
        self.cluster_collector = cluster_collector
        self.eks_registry      = eks_registry
        self.eks_collector     = eks_collector

    def _run(self, ctx: AuditContext, options: AuditOptions) -> DomainAuditResult:
        cluster = self._collect(ctx, options)
        context = cluster.context_name

        provider = detect_cluster_provider(cluster.nodes)
        cluster = dataclasses.replace(cluster, cluster_provider=provider)
        self.logger.info(
            f"Cluster {context}: provider={provider}, nodes={cluster.node_count}, "
            f"namespaces={len(cluster.namespaces)}, pods={len(cluster.pods)}"
        )
        if provider == PROVIDER_EKS and cluster.eks is None:
            cluster = self._with_eks_data(ctx, cluster)

        rule_ctx = RuleContext(inventory=cluster, account_id=context, profile=context, policy=self.policy)
        findings, diagnostics = evaluate_registry(self.registry, rule_ctx, ctx, scope=f"context={context}")
        if provider == PROVIDER_EKS and self.eks_registry is not None:
            eks_findings, eks_diagnostics = evaluate_registry(
                self.eks_registry, rule_ctx, ctx, scope=f"context={context}",
            )
            findings.extend(eks_findings)
            diagnostics.extend(eks_diagnostics)

        return self._finish(
            options, findings, diagnostics,
            profile=context, account_id=context, regions=[context],
            cluster_provider=provider,
        )

    def _hidden(self, options: AuditOptions) -> Optional[Callable[[Finding], bool]]:
        if not options.exclude_system:
            return None
        return lambda f: is_system_namespace(f.namespace)

    # ------------------------------------------------------------------
    # Collection
    # ------------------------------------------------------------------

    def _collect(self, ctx: AuditContext, options: AuditOptions) -> ClusterInventory:
        scope = f"context={options.context_name or 'current'}"
        try:
            return self.cluster_collector.collect(ctx, options.context_name)
        except AuditCancelled:
            raise
        except Exception as e:
            self.logger.error(f"Cluster collection failed for {scope}: {e}")
            raise CollectionFailed(self.domain, scope, e) from e

    def _with_eks_data(self, ctx: AuditContext, cluster: ClusterInventory) -> ClusterInventory:
        if self.eks_collector is None:
            return cluster
        name, region = extract_eks_info(cluster.nodes)
        if not name or not region:
            self.logger.warning(
                f"EKS cluster detected but name/region unknown "
                f"(name={name!r}, region={region!r}); skipping control-plane checks"
            )
            return cluster
        try:
            eks = self.eks_collector.collect(ctx, name, region, cluster)
        except AuditCancelled:
            raise
        except Exception as e:
            self.logger.warning(
                f"EKS data collection failed for {name} in {region}: {e}. "
                f"Continuing without control-plane checks."
            )
            return cluster
        return dataclasses.replace(cluster, eks=eks)
