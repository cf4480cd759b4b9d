"""
providers/kubernetes/rules/core.py

Provider-agnostic Kubernetes rules: cluster resilience, namespace
guardrails, pod security context, service exposure and service accounts.

Every finding uses the kube context name as its region. Namespaced
findings carry metadata["namespace"]; the correlation engine co-locates
on it, so a rule that knows the namespace must always set it.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import List

from core.models.finding import Domain, Finding, Severity
from core.models.inventory import ClusterInventory, ContainerInfo, PodInfo, ServiceInfo
from core.rules.base import Rule, RuleContext

PSS_ENFORCE_LABEL = "pod-security.kubernetes.io/enforce"
SAFE_SECCOMP_PROFILES = ("RuntimeDefault", "Localhost")

# Annotations that turn a LoadBalancer Service into an internal one
INTERNAL_LB_ANNOTATIONS = {
    "service.beta.kubernetes.io/aws-load-balancer-internal":   ("true", "0.0.0.0/0"),
    "service.beta.kubernetes.io/aws-load-balancer-scheme":     ("internal",),
    "service.beta.kubernetes.io/azure-load-balancer-internal": ("true",),
    "networking.gke.io/load-balancer-type":                    ("internal",),
    "cloud.google.com/load-balancer-type":                     ("internal",),
}


class KubernetesRule(Rule):
    domain = Domain.KUBERNETES

    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        return self._evaluate(ctx, ctx.inventory)

    @abstractmethod
    def _evaluate(self, ctx: RuleContext, cluster: ClusterInventory) -> List[Finding]:
        ...

    def _namespaced(
        self,
        ctx: RuleContext,
        cluster: ClusterInventory,
        namespace: str,
        name: str,
        explanation: str,
        **extra,
    ) -> Finding:
        metadata = {"namespace": namespace}
        metadata.update(extra.pop("metadata", {}) or {})
        return self._finding(
            ctx, name, cluster.context_name, explanation,
            metadata=metadata,
            resource_key=f"{namespace}/{name}",
            **extra,
        )


class PodRule(KubernetesRule):
    """One finding per pod whose containers trip offending()."""

    resource_type = "Pod"

    def _evaluate(self, ctx, cluster):
        findings = []
        for pod in cluster.pods:
            hits = [c.name for c in pod.containers if self.offending(pod, c)]
            if not hits:
                continue
            findings.append(self._namespaced(
                ctx, cluster, pod.namespace, pod.name,
                self.describe(pod, hits),
                metadata={"containers": hits},
            ))
        return findings

    @abstractmethod
    def offending(self, pod: PodInfo, container: ContainerInfo) -> bool:
        ...

    @abstractmethod
    def describe(self, pod: PodInfo, containers: List[str]) -> str:
        ...


# ---------------------------------------------------------------------------
# Cluster and node
# ---------------------------------------------------------------------------

class ClusterSingleNodeRule(KubernetesRule):
    """Cluster runs on a single node."""

    rule_id = "K8S_CLUSTER_SINGLE_NODE"
    default_severity = Severity.HIGH
    resource_type = "Cluster"
    recommendation = "Run at least two nodes across availability zones."

    def _evaluate(self, ctx, cluster):
        if cluster.node_count != 1:
            return []
        return [self._finding(
            ctx, cluster.context_name, cluster.context_name,
            "The cluster has exactly one node; any node failure is a full outage.",
            metadata={"node_count": cluster.node_count},
        )]


class NodeOverallocatedRule(KubernetesRule):
    """Node reserves most of its CPU capacity away from pods."""

    rule_id = "K8S_NODE_OVERALLOCATED"
    default_severity = Severity.HIGH
    resource_type = "Node"
    recommendation = "Review kube-reserved/system-reserved settings or move to a larger node type."

    def _evaluate(self, ctx, cluster):
        ratio_floor = self._param(ctx, "allocatable_ratio", 0.20)
        findings = []
        for node in cluster.nodes:
            if node.capacity_cpu_millis <= 0:
                continue
            ratio = node.allocatable_cpu_millis / node.capacity_cpu_millis
            if ratio >= ratio_floor:
                continue
            findings.append(self._finding(
                ctx, node.name, cluster.context_name,
                f"Only {ratio:.0%} of node CPU capacity is allocatable to pods.",
                metadata={
                    "capacity_cpu_millis":    node.capacity_cpu_millis,
                    "allocatable_cpu_millis": node.allocatable_cpu_millis,
                },
            ))
        return findings


# ---------------------------------------------------------------------------
# Namespace guardrails
# ---------------------------------------------------------------------------

class NamespaceWithoutLimitsRule(KubernetesRule):
    """Namespace has no LimitRange."""

    rule_id = "K8S_NAMESPACE_WITHOUT_LIMITS"
    default_severity = Severity.MEDIUM
    resource_type = "Namespace"
    recommendation = "Add a LimitRange with default requests and limits."

    def _evaluate(self, ctx, cluster):
        return [
            self._namespaced(
                ctx, cluster, ns.name, ns.name,
                f"Namespace {ns.name!r} has no LimitRange; pods may run unbounded.",
            )
            for ns in cluster.namespaces
            if not ns.has_limit_range
        ]


class PodSecurityAdmissionNotEnforcedRule(KubernetesRule):
    """No namespace enforces a Pod Security Standard."""

    rule_id = "K8S_POD_SECURITY_ADMISSION_NOT_ENFORCED"
    default_severity = Severity.HIGH
    resource_type = "Cluster"
    recommendation = f"Label namespaces with {PSS_ENFORCE_LABEL}=restricted (or baseline)."

    def _evaluate(self, ctx, cluster):
        if not cluster.namespaces:
            return []
        if any(PSS_ENFORCE_LABEL in ns.labels for ns in cluster.namespaces):
            return []
        return [self._finding(
            ctx, cluster.context_name, cluster.context_name,
            "No namespace enforces Pod Security Admission; nothing blocks privileged pods.",
        )]


class NamespacePSSNotSetRule(KubernetesRule):
    """Namespace has no Pod Security Standard enforce label."""

    rule_id = "K8S_NAMESPACE_PSS_NOT_SET"
    default_severity = Severity.MEDIUM
    resource_type = "Namespace"
    recommendation = f"Set the {PSS_ENFORCE_LABEL} label on the namespace."

    def _evaluate(self, ctx, cluster):
        return [
            self._namespaced(
                ctx, cluster, ns.name, ns.name,
                f"Namespace {ns.name!r} does not set {PSS_ENFORCE_LABEL}.",
            )
            for ns in cluster.namespaces
            if PSS_ENFORCE_LABEL not in ns.labels
        ]


# ---------------------------------------------------------------------------
# Pod security context
# ---------------------------------------------------------------------------

class PodPrivilegedContainerRule(PodRule):
    """Pod runs a privileged container."""

    rule_id = "K8S_POD_PRIVILEGED_CONTAINER"
    default_severity = Severity.CRITICAL
    recommendation = "Remove securityContext.privileged; grant only the capabilities needed."

    def offending(self, pod, container):
        return container.privileged

    def describe(self, pod, containers):
        return (
            f"Pod {pod.name!r} runs privileged container(s) {', '.join(containers)} "
            f"with full access to the host."
        )


class PodRunAsRootRule(PodRule):
    """Pod container may run as root."""

    rule_id = "K8S_POD_RUN_AS_ROOT"
    default_severity = Severity.HIGH
    recommendation = "Set runAsNonRoot: true and a non-zero runAsUser."

    def offending(self, pod, container):
        if pod.effective_run_as_user(container) == 0:
            return True
        return pod.effective_run_as_non_root(container) is not True

    def describe(self, pod, containers):
        return f"Pod {pod.name!r} container(s) {', '.join(containers)} may run as root."


class PodCapSysAdminRule(PodRule):
    """Pod container adds CAP_SYS_ADMIN."""

    rule_id = "K8S_POD_CAP_SYS_ADMIN"
    default_severity = Severity.HIGH
    recommendation = "Drop SYS_ADMIN from securityContext.capabilities.add."

    def offending(self, pod, container):
        caps = {c.upper().replace("CAP_", "", 1) for c in container.added_capabilities}
        return "SYS_ADMIN" in caps or "ALL" in caps

    def describe(self, pod, containers):
        return f"Pod {pod.name!r} container(s) {', '.join(containers)} add SYS_ADMIN."


class PodNoSeccompRule(PodRule):
    """Pod container runs without a seccomp profile."""

    rule_id = "K8S_POD_NO_SECCOMP"
    default_severity = Severity.MEDIUM
    recommendation = "Set seccompProfile.type: RuntimeDefault on the pod."

    def offending(self, pod, container):
        return pod.effective_seccomp(container) not in SAFE_SECCOMP_PROFILES

    def describe(self, pod, containers):
        return f"Pod {pod.name!r} container(s) {', '.join(containers)} run unconfined by seccomp."


class PodNoResourceRequestsRule(PodRule):
    """Pod container declares no resource requests."""

    rule_id = "K8S_POD_NO_RESOURCE_REQUESTS"
    default_severity = Severity.MEDIUM
    recommendation = "Declare CPU and memory requests for every container."

    def offending(self, pod, container):
        return not container.has_resource_requests

    def describe(self, pod, containers):
        return f"Pod {pod.name!r} container(s) {', '.join(containers)} declare no resource requests."


class PodHostNetworkRule(KubernetesRule):
    """Pod shares the host network namespace."""

    rule_id = "K8S_POD_HOST_NETWORK"
    default_severity = Severity.HIGH
    resource_type = "Pod"
    recommendation = "Remove hostNetwork: true unless the pod is a node-level agent."

    def _evaluate(self, ctx, cluster):
        return [
            self._namespaced(
                ctx, cluster, pod.namespace, pod.name,
                f"Pod {pod.name!r} uses the host network namespace.",
            )
            for pod in cluster.pods
            if pod.host_network
        ]


class PodHostPIDOrIPCRule(KubernetesRule):
    """Pod shares the host PID or IPC namespace."""

    rule_id = "K8S_POD_HOST_PID_OR_IPC"
    default_severity = Severity.HIGH
    resource_type = "Pod"
    recommendation = "Remove hostPID and hostIPC from the pod spec."

    def _evaluate(self, ctx, cluster):
        findings = []
        for pod in cluster.pods:
            shared = [n for n, on in (("hostPID", pod.host_pid), ("hostIPC", pod.host_ipc)) if on]
            if not shared:
                continue
            findings.append(self._namespaced(
                ctx, cluster, pod.namespace, pod.name,
                f"Pod {pod.name!r} shares host namespaces: {', '.join(shared)}.",
                metadata={"shared": shared},
            ))
        return findings


# ---------------------------------------------------------------------------
# Exposure and identity
# ---------------------------------------------------------------------------

def is_public_load_balancer(svc: ServiceInfo) -> bool:
    if svc.service_type != "LoadBalancer":
        return False
    for key, internal_values in INTERNAL_LB_ANNOTATIONS.items():
        value = svc.annotations.get(key)
        if value is not None and value.lower() in internal_values:
            return False
    return True


class ServicePublicLoadBalancerRule(KubernetesRule):
    """Service is exposed through an internet-facing load balancer."""

    rule_id = "K8S_SERVICE_PUBLIC_LOADBALANCER"
    default_severity = Severity.HIGH
    resource_type = "Service"
    recommendation = "Mark the Service internal or front it with an authenticated ingress."

    def _evaluate(self, ctx, cluster):
        return [
            self._namespaced(
                ctx, cluster, svc.namespace, svc.name,
                f"Service {svc.name!r} is exposed by a public LoadBalancer.",
                metadata={"selector": dict(svc.selector)},
            )
            for svc in cluster.services
            if is_public_load_balancer(svc)
        ]


class ServiceAccountTokenAutomountRule(KubernetesRule):
    """ServiceAccount auto-mounts its API token."""

    rule_id = "K8S_SERVICEACCOUNT_TOKEN_AUTOMOUNT"
    default_severity = Severity.MEDIUM
    resource_type = "ServiceAccount"
    recommendation = "Set automountServiceAccountToken: false and mount tokens only where needed."

    def _evaluate(self, ctx, cluster):
        return [
            self._namespaced(
                ctx, cluster, sa.namespace, sa.name,
                f"ServiceAccount {sa.name!r} auto-mounts its token into every pod that uses it.",
            )
            for sa in cluster.service_accounts
            # unset defaults to true
            if sa.automount_token is not False
        ]


class DefaultServiceAccountUsedRule(KubernetesRule):
    """Pod runs as the namespace's default ServiceAccount."""

    rule_id = "K8S_DEFAULT_SERVICEACCOUNT_USED"
    default_severity = Severity.MEDIUM
    resource_type = "Pod"
    recommendation = "Create a dedicated ServiceAccount per workload."

    def _evaluate(self, ctx, cluster):
        return [
            self._namespaced(
                ctx, cluster, pod.namespace, pod.name,
                f"Pod {pod.name!r} uses the default ServiceAccount; its permissions "
                f"are shared with every pod in the namespace that does the same.",
            )
            for pod in cluster.pods
            if pod.service_account_name in ("", "default")
        ]


def core_rules() -> List[Rule]:
    """Provider-agnostic Kubernetes pack, in evaluation order."""
    return [
        ClusterSingleNodeRule(),
        NodeOverallocatedRule(),
        NamespaceWithoutLimitsRule(),
        PodPrivilegedContainerRule(),
        PodHostNetworkRule(),
        PodHostPIDOrIPCRule(),
        PodRunAsRootRule(),
        PodCapSysAdminRule(),
        PodNoSeccompRule(),
        PodNoResourceRequestsRule(),
        ServicePublicLoadBalancerRule(),
        PodSecurityAdmissionNotEnforcedRule(),
        NamespacePSSNotSetRule(),
        ServiceAccountTokenAutomountRule(),
        DefaultServiceAccountUsedRule(),
    ]
