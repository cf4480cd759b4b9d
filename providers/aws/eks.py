"""
providers/aws/eks.py

BotoEKSCollector fetches the EKS control-plane facts the Kubernetes API
cannot answer: endpoint exposure, secrets encryption, control-plane
logging, managed node groups (version, IMDS mode), the cluster's OIDC
issuer and whether IAM trusts it, and the node IAM role's policies.

The engine treats any exception from here as "no EKS data" and carries
on, so this module raises freely.

IAM permissions required:
  eks:DescribeCluster, eks:ListNodegroups, eks:DescribeNodegroup,
  ec2:DescribeLaunchTemplateVersions, iam:ListOpenIDConnectProviders,
  iam:ListAttachedRolePolicies, iam:ListRolePolicies, iam:GetRolePolicy
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import unquote

from core.collector import AuditContext, EKSDataCollector, ProfileResolver
from core.models.inventory import ClusterInventory, EKSClusterData, EKSNodeGroup
from providers.aws.collectors import paginate
from providers.aws.session import client_for

logger = logging.getLogger(__name__)

ADMIN_POLICY_SUFFIX = "/AdministratorAccess"
DEFAULT_HTTP_TOKENS = "optional"


def is_overpermissive_policy(document: Dict) -> Tuple[bool, str]:
    """
    (flagged, reason) for an IAM policy document.

    Flags Allow statements with Action "*", and NotAction + Resource "*"
    (allow everything except a short list).
    """
    statements = document.get("Statement", [])
    if isinstance(statements, dict):
        statements = [statements]

    for stmt in statements:
        if stmt.get("Effect", "Allow") != "Allow":
            continue
        actions   = stmt.get("Action", [])
        resources = stmt.get("Resource", [])
        if isinstance(actions, str):
            actions = [actions]
        if isinstance(resources, str):
            resources = [resources]

        if stmt.get("NotAction") and "*" in resources:
            return True, "NotAction with Effect:Allow and Resource:*"
        if "*" in actions:
            return True, "Action:*"
    return False, ""


def _document(raw: Any) -> Dict:
    """boto3 decodes policy documents; older SDKs hand back URL-encoded JSON."""
    if isinstance(raw, dict):
        return raw
    return json.loads(unquote(raw or "{}"))


class BotoEKSCollector(EKSDataCollector):
    """
    Usage:
        collector = BotoEKSCollector(AWSProfileResolver(), profile="prod")
        data = collector.collect(AuditContext(), "prod-eks", "us-east-1")
    """

    def __init__(self, resolver: ProfileResolver, profile: Optional[str] = None):
        self.resolver = resolver
        self.profile  = profile
        self.logger   = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def collect(
        self,
        ctx: AuditContext,
        cluster_name: str,
        region: str,
        cluster: Optional[ClusterInventory] = None,
    ) -> EKSClusterData:
        session = self.resolver.resolve(self.profile).session
        eks = client_for(session, "eks", region)
        iam = client_for(session, "iam", "global")
        ec2 = client_for(session, "ec2", region)

        ctx.raise_if_cancelled()
        described = eks.describe_cluster(name=cluster_name)["cluster"]
        vpc = described.get("resourcesVpcConfig", {})

        enabled_logs: List[str] = []
        for entry in described.get("logging", {}).get("clusterLogging", []):
            if entry.get("enabled"):
                enabled_logs.extend(entry.get("types", []))

        encryption_key = ""
        for config in described.get("encryptionConfig", []):
            if "secrets" in config.get("resources", []):
                encryption_key = config.get("provider", {}).get("keyArn", "")

        issuer = described.get("identity", {}).get("oidc", {}).get("issuer", "")

        node_groups, role_arns = self._node_groups(ctx, eks, ec2, cluster_name)
        data = EKSClusterData(
            cluster_name=cluster_name,
            region=region,
            version=described.get("version", ""),
            endpoint_public_access=bool(vpc.get("endpointPublicAccess", False)),
            public_access_cidrs=list(vpc.get("publicAccessCidrs", [])),
            encryption_key_arn=encryption_key,
            enabled_log_types=enabled_logs,
            node_groups=node_groups,
            oidc_issuer=issuer,
            oidc_provider_associated=self._oidc_associated(ctx, iam, issuer),
            node_role_arns=role_arns,
            overpermissive_node_policies=self._overpermissive_policies(ctx, iam, role_arns),
        )
        self.logger.info(
            f"EKS {cluster_name} ({region}): version={data.version}, "
            f"node_groups={len(node_groups)}, logs={','.join(enabled_logs) or 'none'}"
        )
        return data

    # ------------------------------------------------------------------
    # Node groups
    # ------------------------------------------------------------------

    def _node_groups(self, ctx: AuditContext, eks: Any, ec2: Any, cluster_name: str) -> Tuple[List[EKSNodeGroup], List[str]]:
        groups: List[EKSNodeGroup] = []
        role_arns: List[str] = []
        for name in paginate(ctx, eks, "list_nodegroups", "nodegroups", clusterName=cluster_name):
            ng = eks.describe_nodegroup(clusterName=cluster_name, nodegroupName=name)["nodegroup"]
            groups.append(EKSNodeGroup(
                name=name,
                version=ng.get("version", ""),
                http_tokens=self._http_tokens(ec2, ng.get("launchTemplate")),
            ))
            role = ng.get("nodeRole", "")
            if role and role not in role_arns:
                role_arns.append(role)
        return groups, role_arns

    def _http_tokens(self, ec2: Any, template: Optional[Dict]) -> str:
        if not template or not template.get("id"):
            return DEFAULT_HTTP_TOKENS
        versions = ec2.describe_launch_template_versions(
            LaunchTemplateId=template["id"],
            Versions=[str(template.get("version", "$Default"))],
        ).get("LaunchTemplateVersions", [])
        if not versions:
            return DEFAULT_HTTP_TOKENS
        options = versions[0].get("LaunchTemplateData", {}).get("MetadataOptions", {})
        return options.get("HttpTokens", DEFAULT_HTTP_TOKENS)

    # ------------------------------------------------------------------
    # IAM
    # ------------------------------------------------------------------

    def _oidc_associated(self, ctx: AuditContext, iam: Any, issuer: str) -> bool:
        if not issuer:
            return False
        ctx.raise_if_cancelled()
        provider_url = issuer[len("https://"):] if issuer.startswith("https://") else issuer
        providers = iam.list_open_id_connect_providers().get("OpenIDConnectProviderList", [])
        return any(p.get("Arn", "").endswith("/" + provider_url) for p in providers)

    def _overpermissive_policies(self, ctx: AuditContext, iam: Any, role_arns: List[str]) -> List[str]:
        flagged: List[str] = []
        for role_arn in role_arns:
            role_name = role_arn.rsplit("/", 1)[-1]
            for policy in paginate(ctx, iam, "list_attached_role_policies", "AttachedPolicies", RoleName=role_name):
                if policy.get("PolicyArn", "").endswith(ADMIN_POLICY_SUFFIX):
                    flagged.append(policy.get("PolicyName", "AdministratorAccess"))
            for policy_name in paginate(ctx, iam, "list_role_policies", "PolicyNames", RoleName=role_name):
                raw = iam.get_role_policy(RoleName=role_name, PolicyName=policy_name)["PolicyDocument"]
                is_flagged, reason = is_overpermissive_policy(_document(raw))
                if is_flagged:
                    self.logger.debug(f"Inline policy {policy_name} on {role_name}: {reason}")
                    flagged.append(policy_name)
        return flagged
