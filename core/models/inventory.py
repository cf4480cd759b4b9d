"""
core/models/inventory.py

Inventory snapshots handed from collectors to rules.

A collector turns cloud or cluster API responses into these plain
dataclasses; rules read them and never call an API themselves. That split
is what keeps rule evaluation a pure, repeatable function of its input.

Two families:
  - AWS:        AWSInventory → [AWSRegionInventory] + AWSAccountInventory
  - Kubernetes: ClusterInventory (+ optional EKSClusterData)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


# ---------------------------------------------------------------------------
# AWS: regional resources
# ---------------------------------------------------------------------------

@dataclass
class EC2Instance:
    instance_id:     str
    instance_type:   str   = ""
    state:           str   = "running"
    avg_cpu_percent: float = 0.0     # CloudWatch CPUUtilization, trailing 14 days
    monthly_cost:    float = 0.0     # on-demand estimate
    name:            str   = ""


@dataclass
class EBSVolume:
    volume_id:   str
    volume_type: str                = "gp3"
    size_gb:     int                = 0
    state:       str                = "in-use"
    attached:    bool               = True
    encrypted:   bool               = True
    create_time: Optional[datetime] = None


@dataclass
class NATGateway:
    nat_gateway_id:   str
    state:            str   = "available"
    bytes_out_gb:     float = 0.0    # data processed, trailing 14 days


@dataclass
class RDSInstance:
    db_instance_id:    str
    engine:            str   = ""
    instance_class:    str   = ""
    status:            str   = "available"
    avg_cpu_percent:   float = 0.0
    monthly_cost:      float = 0.0
    storage_encrypted: bool  = True


@dataclass
class LoadBalancer:
    arn:           str
    name:          str = ""
    lb_type:       str = "application"
    state:         str = "active"
    request_count: int = 0           # trailing 14 days


@dataclass
class SavingsPlanCoverage:
    coverage_percent: float = 0.0
    on_demand_cost:   float = 0.0


@dataclass
class SecurityGroupRule:
    protocol:  str            # "tcp", "udp", "-1"
    from_port: int = 0
    to_port:   int = 0
    cidr:      str = ""

    def covers_port(self, port: int) -> bool:
        if self.protocol == "-1":
            return True
        return self.from_port <= port <= self.to_port


@dataclass
class SecurityGroup:
    group_id:   str
    group_name: str                     = ""
    vpc_id:     str                     = ""
    ingress:    List[SecurityGroupRule] = field(default_factory=list)


@dataclass
class AWSRegionInventory:
    """Everything one region contributes. Produced by one collect_region() call."""
    region:          str
    instances:       List[EC2Instance]    = field(default_factory=list)
    volumes:         List[EBSVolume]      = field(default_factory=list)
    nat_gateways:    List[NATGateway]     = field(default_factory=list)
    rds_instances:   List[RDSInstance]    = field(default_factory=list)
    load_balancers:  List[LoadBalancer]   = field(default_factory=list)
    security_groups: List[SecurityGroup]  = field(default_factory=list)
    savings_plan:    Optional[SavingsPlanCoverage] = None

    # None = not collected for this domain, False = collected and disabled
    guardduty_enabled: Optional[bool] = None
    config_enabled:    Optional[bool] = None


# ---------------------------------------------------------------------------
# AWS: account-wide resources
# ---------------------------------------------------------------------------

@dataclass
class S3Bucket:
    name:                       str
    region:                     str  = ""
    public:                     bool = False
    default_encryption_enabled: bool = True


@dataclass
class IAMUser:
    user_name:          str
    arn:                str  = ""
    has_console_access: bool = False
    mfa_enabled:        bool = False


@dataclass
class RootAccountInfo:
    """
    Root account posture from the IAM account summary.
    data_available is False when the summary could not be read, in which
    case the root MFA rule stays silent rather than guessing.
    """
    has_access_keys: bool = False
    mfa_enabled:     bool = True
    data_available:  bool = False


@dataclass
class CloudTrailTrail:
    name:            str
    is_multi_region: bool = False
    is_logging:      bool = True
    home_region:     str  = ""


@dataclass
class AWSAccountInventory:
    buckets: List[S3Bucket]        = field(default_factory=list)
    users:   List[IAMUser]         = field(default_factory=list)
    root:    RootAccountInfo       = field(default_factory=RootAccountInfo)
    trails:  List[CloudTrailTrail] = field(default_factory=list)

    # False when the domain did not collect CloudTrail at all
    trails_collected: bool = False


@dataclass
class AWSInventory:
    """
    One profile's complete snapshot. regions is in the order the scope was
    resolved, never in collector completion order.
    """
    account_id:   str
    profile:      str
    regions:      List[AWSRegionInventory] = field(default_factory=list)
    account:      AWSAccountInventory      = field(default_factory=AWSAccountInventory)
    collected_at: datetime                 = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def region_names(self) -> List[str]:
        return [r.region for r in self.regions]

    @property
    def is_empty(self) -> bool:
        return not self.regions and not (
            self.account.buckets or self.account.users or self.account.trails
        )


# ---------------------------------------------------------------------------
# Kubernetes
# ---------------------------------------------------------------------------

@dataclass
class NodeInfo:
    name:                   str
    provider_id:            str            = ""
    labels:                 Dict[str, str] = field(default_factory=dict)
    capacity_cpu_millis:    int            = 0
    allocatable_cpu_millis: int            = 0
    kubelet_version:        str            = ""


@dataclass
class NamespaceInfo:
    name:            str
    labels:          Dict[str, str] = field(default_factory=dict)
    has_limit_range: bool           = False


@dataclass
class ContainerInfo:
    name:                  str
    image:                 str           = ""
    privileged:            bool          = False
    run_as_non_root:       Optional[bool] = None
    run_as_user:           Optional[int]  = None
    added_capabilities:    List[str]     = field(default_factory=list)
    seccomp_profile_type:  Optional[str] = None
    has_resource_requests: bool          = True


@dataclass
class PodInfo:
    name:                 str
    namespace:            str
    containers:           List[ContainerInfo] = field(default_factory=list)
    host_network:         bool                = False
    host_pid:             bool                = False
    host_ipc:             bool                = False
    service_account_name: str                 = "default"
    labels:               Dict[str, str]      = field(default_factory=dict)

    # Pod-level securityContext; container values take precedence
    run_as_non_root:      Optional[bool] = None
    run_as_user:          Optional[int]  = None
    seccomp_profile_type: Optional[str]  = None

    def effective_run_as_non_root(self, container: ContainerInfo) -> Optional[bool]:
        if container.run_as_non_root is not None:
            return container.run_as_non_root
        return self.run_as_non_root

    def effective_run_as_user(self, container: ContainerInfo) -> Optional[int]:
        if container.run_as_user is not None:
            return container.run_as_user
        return self.run_as_user

    def effective_seccomp(self, container: ContainerInfo) -> Optional[str]:
        return container.seccomp_profile_type or self.seccomp_profile_type


@dataclass
class ServiceInfo:
    name:         str
    namespace:    str
    service_type: str            = "ClusterIP"
    annotations:  Dict[str, str] = field(default_factory=dict)
    selector:     Dict[str, str] = field(default_factory=dict)


@dataclass
class ServiceAccountInfo:
    name:                    str
    namespace:               str
    automount_token:         Optional[bool] = None
    annotations:             Dict[str, str] = field(default_factory=dict)


@dataclass
class EKSNodeGroup:
    name:        str
    version:     str = ""
    http_tokens: str = "optional"    # launch template metadata option


@dataclass
class EKSClusterData:
    """Control-plane facts only the EKS API can answer."""
    cluster_name:            str
    region:                  str
    version:                 str       = ""
    endpoint_public_access:  bool      = False
    public_access_cidrs:     List[str] = field(default_factory=list)
    encryption_key_arn:      str       = ""
    enabled_log_types:       List[str] = field(default_factory=list)
    node_groups:             List[EKSNodeGroup] = field(default_factory=list)
    oidc_issuer:             str       = ""
    oidc_provider_associated: bool     = False
    node_role_arns:          List[str] = field(default_factory=list)
    # Attached managed/inline policies judged over-permissive (e.g. AdministratorAccess)
    overpermissive_node_policies: List[str] = field(default_factory=list)


@dataclass
class ClusterInventory:
    context_name:     str
    nodes:            List[NodeInfo]           = field(default_factory=list)
    namespaces:       List[NamespaceInfo]      = field(default_factory=list)
    pods:             List[PodInfo]            = field(default_factory=list)
    services:         List[ServiceInfo]        = field(default_factory=list)
    service_accounts: List[ServiceAccountInfo] = field(default_factory=list)
    cluster_provider: str                      = "unknown"
    eks:              Optional[EKSClusterData] = None

    @property
    def node_count(self) -> int:
        return len(self.nodes)

    def service_account(self, namespace: str, name: str) -> Optional[ServiceAccountInfo]:
        for sa in self.service_accounts:
            if sa.namespace == namespace and sa.name == name:
                return sa
        return None
