"""
providers/kubernetes/snapshot.py

SnapshotClusterCollector reads a cluster inventory from a kubectl dump
instead of a live API server:

    kubectl get nodes,namespaces,pods,services,serviceaccounts,limitranges \
        --all-namespaces -o yaml > cluster.yaml

Accepted input:
  - a single "kind: List" document (the kubectl default)
  - several YAML documents, each a List or a single object
  - the same in JSON (JSON is valid YAML)

Objects of any other kind are ignored.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Iterable, Iterator, List, Optional

import yaml

from core.collector import AuditContext, ClusterCollector
from core.exceptions import GovAuditError
from core.models.inventory import (
    ClusterInventory, ContainerInfo, NamespaceInfo, NodeInfo, PodInfo,
    ServiceAccountInfo, ServiceInfo,
)

logger = logging.getLogger(__name__)


def parse_cpu_millis(quantity: Any) -> int:
    """Kubernetes CPU quantity → millicores. "2" → 2000, "250m" → 250, "1.5" → 1500."""
    if quantity is None or quantity == "":
        return 0
    text = str(quantity).strip()
    try:
        if text.endswith("m"):
            return int(float(text[:-1]))
        return int(round(float(text) * 1000))
    except ValueError as e:
        raise SnapshotLoadError(f"invalid CPU quantity {quantity!r}") from e


def _optional_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)


def _optional_bool(value: Any) -> Optional[bool]:
    return None if value is None else bool(value)


def _seccomp_type(security_context: Dict) -> Optional[str]:
    return (security_context.get("seccompProfile") or {}).get("type")


class SnapshotClusterCollector(ClusterCollector):
    """
    Usage:
        collector = SnapshotClusterCollector("cluster.yaml", context_name="prod")
        cluster   = collector.collect(AuditContext(), None)
    """

    def __init__(self, path: str, context_name: Optional[str] = None):
        self.path = path
        self.context_name = context_name
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def collect(self, ctx: AuditContext, context_name: Optional[str]) -> ClusterInventory:
        ctx.raise_if_cancelled()
        context = context_name or self.context_name or os.path.splitext(os.path.basename(self.path))[0]
        objects = list(self._objects())
        cluster = build_inventory(context, objects)
        self.logger.info(
            f"Loaded snapshot {self.path} as context {context}: {len(cluster.nodes)} node(s), "
            f"{len(cluster.namespaces)} namespace(s), {len(cluster.pods)} pod(s)"
        )
        return cluster

    def _objects(self) -> Iterator[Dict]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                documents = list(yaml.safe_load_all(fh))
        except OSError as e:
            raise SnapshotLoadError(f"cannot read {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise SnapshotLoadError(f"malformed snapshot {self.path}: {e}") from e

        for doc in documents:
            if doc is None:
                continue
            if not isinstance(doc, dict):
                raise SnapshotLoadError(f"{self.path}: expected a mapping, got {type(doc).__name__}")
            if doc.get("kind") == "List" or ("items" in doc and "kind" not in doc):
                yield from (item for item in doc.get("items") or [] if isinstance(item, dict))
            else:
                yield doc


def build_inventory(context_name: str, objects: Iterable[Dict]) -> ClusterInventory:
    """Turn raw Kubernetes objects into a ClusterInventory. Input order is kept."""
    cluster = ClusterInventory(context_name=context_name)
    limit_range_namespaces = set()

    for obj in objects:
        kind = obj.get("kind")
        meta = obj.get("metadata") or {}
        if kind == "Node":
            cluster.nodes.append(_node(obj, meta))
        elif kind == "Namespace":
            cluster.namespaces.append(NamespaceInfo(name=meta.get("name", ""), labels=dict(meta.get("labels") or {})))
        elif kind == "Pod":
            cluster.pods.append(_pod(obj, meta))
        elif kind == "Service":
            spec = obj.get("spec") or {}
            cluster.services.append(ServiceInfo(
                name=meta.get("name", ""),
                namespace=meta.get("namespace", "default"),
                service_type=spec.get("type", "ClusterIP"),
                annotations=dict(meta.get("annotations") or {}),
                selector=dict(spec.get("selector") or {}),
            ))
        elif kind == "ServiceAccount":
            cluster.service_accounts.append(ServiceAccountInfo(
                name=meta.get("name", ""),
                namespace=meta.get("namespace", "default"),
                automount_token=_optional_bool(obj.get("automountServiceAccountToken")),
                annotations=dict(meta.get("annotations") or {}),
            ))
        elif kind == "LimitRange":
            limit_range_namespaces.add(meta.get("namespace", "default"))

    for ns in cluster.namespaces:
        ns.has_limit_range = ns.name in limit_range_namespaces
    return cluster


def _node(obj: Dict, meta: Dict) -> NodeInfo:
    status = obj.get("status") or {}
    return NodeInfo(
        name=meta.get("name", ""),
        provider_id=(obj.get("spec") or {}).get("providerID", ""),
        labels=dict(meta.get("labels") or {}),
        capacity_cpu_millis=parse_cpu_millis((status.get("capacity") or {}).get("cpu")),
        allocatable_cpu_millis=parse_cpu_millis((status.get("allocatable") or {}).get("cpu")),
        kubelet_version=(status.get("nodeInfo") or {}).get("kubeletVersion", ""),
    )


def _pod(obj: Dict, meta: Dict) -> PodInfo:
    spec = obj.get("spec") or {}
    pod_sc = spec.get("securityContext") or {}
    containers: List[ContainerInfo] = []
    for c in spec.get("containers") or []:
        sc = c.get("securityContext") or {}
        requests = (c.get("resources") or {}).get("requests") or {}
        containers.append(ContainerInfo(
            name=c.get("name", ""),
            image=c.get("image", ""),
            privileged=bool(sc.get("privileged", False)),
            run_as_non_root=_optional_bool(sc.get("runAsNonRoot")),
            run_as_user=_optional_int(sc.get("runAsUser")),
            added_capabilities=list((sc.get("capabilities") or {}).get("add") or []),
            seccomp_profile_type=_seccomp_type(sc),
            has_resource_requests=bool(requests.get("cpu") or requests.get("memory")),
        ))
    return PodInfo(
        name=meta.get("name", ""),
        namespace=meta.get("namespace", "default"),
        containers=containers,
        host_network=bool(spec.get("hostNetwork", False)),
        host_pid=bool(spec.get("hostPID", False)),
        host_ipc=bool(spec.get("hostIPC", False)),
        service_account_name=spec.get("serviceAccountName") or "default",
        labels=dict(meta.get("labels") or {}),
        run_as_non_root=_optional_bool(pod_sc.get("runAsNonRoot")),
        run_as_user=_optional_int(pod_sc.get("runAsUser")),
        seccomp_profile_type=_seccomp_type(pod_sc),
    )


class SnapshotLoadError(GovAuditError):
    """The snapshot file is missing, unreadable or not a Kubernetes dump."""
    pass
