"""
providers/aws/collectors.py

boto3 implementations of the Collector contract, one per AWS domain.

  CostCollector            EC2 (+ CloudWatch CPU, Cost Explorer cost), EBS,
                           NAT gateways, RDS, ELBv2, Savings Plans coverage
  SecurityCollector        security groups, GuardDuty, AWS Config per region;
                           S3 exposure, IAM users, root posture, CloudTrail
                           once per account
  DataProtectionCollector  EBS and RDS encryption per region; S3 default
                           encryption once per account

Regional work goes through RegionFanOut (bounded, input-ordered,
cancel-on-first-failure). Account-wide work runs once, after the fan-out.

Failure model:
  - A describe/list call that fails aborts the whole collection. The
    engine wraps it in CollectionFailed.
  - Metric and billing enrichment (CloudWatch, Cost Explorer) is
    best-effort. When it fails the value stays 0, which the cost rules
    read as "no data" and skip.

IAM permissions required (read-only):
  ec2:Describe*, cloudwatch:GetMetricStatistics, rds:DescribeDBInstances,
  elasticloadbalancing:DescribeLoadBalancers, ce:GetCostAndUsageWithResources,
  ce:GetSavingsPlansCoverage, s3:GetBucket*, s3:ListAllMyBuckets,
  iam:ListUsers, iam:GetLoginProfile, iam:ListMFADevices,
  iam:GetAccountSummary, cloudtrail:DescribeTrails, cloudtrail:GetTrailStatus,
  guardduty:ListDetectors, guardduty:GetDetector,
  config:DescribeConfigurationRecorderStatus
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

from core.collector import AuditContext, Collector, ResolvedProfile
from core.models.finding import Domain
from core.models.inventory import (
    AWSAccountInventory, AWSInventory, AWSRegionInventory, CloudTrailTrail,
    EBSVolume, EC2Instance, IAMUser, LoadBalancer, NATGateway, RDSInstance,
    RootAccountInfo, S3Bucket, SavingsPlanCoverage, SecurityGroup, SecurityGroupRule,
)
from providers.aws.fanout import RegionFanOut
from providers.aws.session import client_for

logger = logging.getLogger(__name__)

# Cost Explorer resource-level data only reaches back 14 days
LOOKBACK_DAYS = 14
DAYS_PER_MONTH = 30
METRIC_PERIOD_SECONDS = 86400
BILLING_REGION = "us-east-1"

EC2_COMPUTE_SERVICE = "Amazon Elastic Compute Cloud - Compute"
RDS_SERVICE         = "Amazon Relational Database Service"

ALL_USERS_GROUPS = (
    "http://acs.amazonaws.com/groups/global/AllUsers",
    "http://acs.amazonaws.com/groups/global/AuthenticatedUsers",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def paginate(ctx: AuditContext, client: Any, operation: str, key: str, **kwargs) -> Iterator[Dict]:
    """Yield every item under key across all pages, checking ctx per page."""
    paginator = client.get_paginator(operation)
    for page in paginator.paginate(**kwargs):
        ctx.raise_if_cancelled()
        yield from page.get(key, [])


def error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return response.get("Error", {}).get("Code", "")


def tag_value(tags: Optional[List[Dict]], key: str) -> str:
    for tag in tags or []:
        if tag.get("Key") == key:
            return tag.get("Value", "")
    return ""


def lookback_window(now: Optional[datetime] = None, days: int = LOOKBACK_DAYS):
    end = now or datetime.now(timezone.utc)
    return end - timedelta(days=days), end


def metric_datapoints(
    cw: Any,
    namespace: str,
    metric: str,
    dimension: str,
    value: str,
    statistic: str,
    start: datetime,
    end: datetime,
) -> List[float]:
    """CloudWatch datapoints for one dimension. Empty on any API failure."""
    import botocore.exceptions

    try:
        response = cw.get_metric_statistics(
            Namespace=namespace,
            MetricName=metric,
            Dimensions=[{"Name": dimension, "Value": value}],
            StartTime=start,
            EndTime=end,
            Period=METRIC_PERIOD_SECONDS,
            Statistics=[statistic],
        )
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        logger.debug(f"CloudWatch {namespace}/{metric} unavailable for {value}: {e}")
        return []
    return [dp[statistic] for dp in response.get("Datapoints", []) if statistic in dp]


def average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def parse_cost(amount: Any) -> float:
    try:
        return float(amount)
    except (TypeError, ValueError):
        return 0.0


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------

class RegionalCollector(Collector):
    """
    collect_all() = fan out collect_region() over the regions, then
    collect_account() once. Subclasses implement the two halves.
    """

    def __init__(self, fanout: Optional[RegionFanOut] = None):
        super().__init__()
        self.fanout = fanout or RegionFanOut()

    def collect_all(
        self,
        ctx: AuditContext,
        profile: ResolvedProfile,
        regions: List[str],
    ) -> AWSInventory:
        collected_at = datetime.now(timezone.utc)
        region_inventories = self.fanout.run(
            ctx, regions, lambda child, region: self.collect_region(child, profile, region),
        )
        ctx.raise_if_cancelled()
        account = self.collect_account(ctx, profile)
        self.logger.info(
            f"{self.domain} inventory for {profile.name} ({profile.account_id}): "
            f"{len(region_inventories)} region(s) collected"
        )
        return AWSInventory(
            account_id=profile.account_id,
            profile=profile.name,
            regions=region_inventories,
            account=account,
            collected_at=collected_at,
        )

    @abstractmethod
    def collect_region(self, ctx: AuditContext, profile: ResolvedProfile, region: str) -> AWSRegionInventory:
        ...

    def collect_account(self, ctx: AuditContext, profile: ResolvedProfile) -> AWSAccountInventory:
        return AWSAccountInventory()

    # ------------------------------------------------------------------
    # Shared regional readers
    # ------------------------------------------------------------------

    def _volumes(self, ctx: AuditContext, ec2: Any) -> List[EBSVolume]:
        volumes = []
        for v in paginate(ctx, ec2, "describe_volumes", "Volumes"):
            volumes.append(EBSVolume(
                volume_id=v["VolumeId"],
                volume_type=v.get("VolumeType", ""),
                size_gb=int(v.get("Size", 0)),
                state=v.get("State", ""),
                attached=v.get("State") == "in-use",
                encrypted=bool(v.get("Encrypted", False)),
                create_time=v.get("CreateTime"),
            ))
        return volumes

    def _rds_instances(self, ctx: AuditContext, rds: Any) -> List[RDSInstance]:
        instances = []
        for db in paginate(ctx, rds, "describe_db_instances", "DBInstances"):
            instances.append(RDSInstance(
                db_instance_id=db["DBInstanceIdentifier"],
                engine=db.get("Engine", ""),
                instance_class=db.get("DBInstanceClass", ""),
                status=db.get("DBInstanceStatus", ""),
                storage_encrypted=bool(db.get("StorageEncrypted", False)),
            ))
        return instances

    def _buckets(self, ctx: AuditContext, s3: Any) -> List[Dict]:
        ctx.raise_if_cancelled()
        return s3.list_buckets().get("Buckets", [])

    def _bucket_region(self, s3: Any, name: str) -> str:
        location = s3.get_bucket_location(Bucket=name).get("LocationConstraint")
        # Buckets in us-east-1 report a null location
        return location or "us-east-1"


# ---------------------------------------------------------------------------
# Cost
# ---------------------------------------------------------------------------

class CostCollector(RegionalCollector):
    """
    Cost inventory. Savings Plans coverage is an account-level Cost
    Explorer call grouped by region; it is fetched once and attached to
    each region after the fan-out.
    """

    domain = Domain.COST

    def collect_all(self, ctx: AuditContext, profile: ResolvedProfile, regions: List[str]) -> AWSInventory:
        inventory = super().collect_all(ctx, profile, regions)
        coverage = self._savings_plan_coverage(ctx, profile)
        for region_inventory in inventory.regions:
            region_inventory.savings_plan = coverage.get(region_inventory.region)
        return inventory

    def collect_region(self, ctx: AuditContext, profile: ResolvedProfile, region: str) -> AWSRegionInventory:
        session = profile.session
        ec2 = client_for(session, "ec2", region)
        cw  = client_for(session, "cloudwatch", region)
        start, end = lookback_window()

        instances = self._instances(ctx, ec2, cw, start, end)
        ec2_costs = self._resource_costs(ctx, session, EC2_COMPUTE_SERVICE, region)
        for inst in instances:
            inst.monthly_cost = ec2_costs.get(inst.instance_id, 0.0)

        volumes = self._volumes(ctx, ec2)
        nat_gateways = self._nat_gateways(ctx, ec2, cw, start, end)

        rds_instances = self._rds_instances(ctx, client_for(session, "rds", region))
        rds_costs = self._resource_costs(ctx, session, RDS_SERVICE, region)
        for db in rds_instances:
            db.avg_cpu_percent = average(metric_datapoints(
                cw, "AWS/RDS", "CPUUtilization", "DBInstanceIdentifier", db.db_instance_id,
                "Average", start, end,
            ))
            db.monthly_cost = rds_costs.get(db.db_instance_id, 0.0)

        load_balancers = self._load_balancers(ctx, client_for(session, "elbv2", region), cw, start, end)

        self.logger.debug(
            f"{region}: {len(instances)} instance(s), {len(volumes)} volume(s), "
            f"{len(nat_gateways)} NAT gateway(s), {len(rds_instances)} RDS instance(s), "
            f"{len(load_balancers)} load balancer(s)"
        )
        return AWSRegionInventory(
            region=region,
            instances=instances,
            volumes=volumes,
            nat_gateways=nat_gateways,
            rds_instances=rds_instances,
            load_balancers=load_balancers,
        )

    def _instances(self, ctx: AuditContext, ec2: Any, cw: Any, start: datetime, end: datetime) -> List[EC2Instance]:
        instances = []
        filters = [{"Name": "instance-state-name", "Values": ["running", "stopped"]}]
        for reservation in paginate(ctx, ec2, "describe_instances", "Reservations", Filters=filters):
            for inst in reservation.get("Instances", []):
                instance = EC2Instance(
                    instance_id=inst["InstanceId"],
                    instance_type=inst.get("InstanceType", ""),
                    state=inst.get("State", {}).get("Name", ""),
                    name=tag_value(inst.get("Tags"), "Name"),
                )
                # Stopped instances publish no CPU metric
                if instance.state == "running":
                    instance.avg_cpu_percent = average(metric_datapoints(
                        cw, "AWS/EC2", "CPUUtilization", "InstanceId", instance.instance_id,
                        "Average", start, end,
                    ))
                instances.append(instance)
        return instances

    def _nat_gateways(self, ctx: AuditContext, ec2: Any, cw: Any, start: datetime, end: datetime) -> List[NATGateway]:
        gateways = []
        filters = [{"Name": "state", "Values": ["available"]}]
        for ng in paginate(ctx, ec2, "describe_nat_gateways", "NatGateways", Filter=filters):
            total_bytes = sum(metric_datapoints(
                cw, "AWS/NATGateway", "BytesOutToDestination", "NatGatewayId", ng["NatGatewayId"],
                "Sum", start, end,
            ))
            gateways.append(NATGateway(
                nat_gateway_id=ng["NatGatewayId"],
                state=ng.get("State", ""),
                bytes_out_gb=total_bytes / (1024 ** 3),
            ))
        return gateways

    def _load_balancers(self, ctx: AuditContext, elbv2: Any, cw: Any, start: datetime, end: datetime) -> List[LoadBalancer]:
        balancers = []
        for lb in paginate(ctx, elbv2, "describe_load_balancers", "LoadBalancers"):
            balancer = LoadBalancer(
                arn=lb["LoadBalancerArn"],
                name=lb.get("LoadBalancerName", ""),
                lb_type=lb.get("Type", ""),
                state=lb.get("State", {}).get("Code", ""),
            )
            # NLB/GWLB publish different metrics; only ALBs get a request count
            marker = ":loadbalancer/"
            if balancer.lb_type == "application" and marker in balancer.arn:
                dimension = balancer.arn.split(marker, 1)[1]
                balancer.request_count = int(sum(metric_datapoints(
                    cw, "AWS/ApplicationELB", "RequestCount", "LoadBalancer", dimension,
                    "Sum", start, end,
                )))
            balancers.append(balancer)
        return balancers

    def _resource_costs(self, ctx: AuditContext, session: Any, service: str, region: str) -> Dict[str, float]:
        """resource id → estimated monthly cost, from Cost Explorer. Empty on failure."""
        import botocore.exceptions

        start, end = lookback_window()
        ce = client_for(session, "ce", BILLING_REGION)
        totals: Dict[str, float] = {}
        kwargs: Dict[str, Any] = {
            "TimePeriod": {"Start": start.strftime("%Y-%m-%d"), "End": end.strftime("%Y-%m-%d")},
            "Granularity": "DAILY",
            "Metrics": ["UnblendedCost"],
            "GroupBy": [{"Type": "DIMENSION", "Key": "RESOURCE_ID"}],
            "Filter": {"And": [
                {"Dimensions": {"Key": "SERVICE", "Values": [service]}},
                {"Dimensions": {"Key": "REGION", "Values": [region]}},
            ]},
        }
        try:
            while True:
                ctx.raise_if_cancelled()
                response = ce.get_cost_and_usage_with_resources(**kwargs)
                for result in response.get("ResultsByTime", []):
                    for group in result.get("Groups", []):
                        resource = (group.get("Keys") or [""])[0].rsplit("/", 1)[-1].rsplit(":", 1)[-1]
                        amount = group.get("Metrics", {}).get("UnblendedCost", {}).get("Amount")
                        totals[resource] = totals.get(resource, 0.0) + parse_cost(amount)
                token = response.get("NextPageToken")
                if not token:
                    break
                kwargs["NextPageToken"] = token
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            self.logger.warning(f"Cost Explorer resource costs unavailable for {service} in {region}: {e}")
            return {}
        scale = DAYS_PER_MONTH / LOOKBACK_DAYS
        return {resource: round(cost * scale, 2) for resource, cost in totals.items()}

    def _savings_plan_coverage(self, ctx: AuditContext, profile: ResolvedProfile) -> Dict[str, SavingsPlanCoverage]:
        import botocore.exceptions

        start, end = lookback_window(days=DAYS_PER_MONTH)
        ce = client_for(profile.session, "ce", BILLING_REGION)
        totals: Dict[str, List[float]] = {}
        kwargs: Dict[str, Any] = {
            "TimePeriod": {"Start": start.strftime("%Y-%m-%d"), "End": end.strftime("%Y-%m-%d")},
            "GroupBy": [{"Type": "DIMENSION", "Key": "REGION"}],
            "Granularity": "MONTHLY",
        }
        try:
            while True:
                ctx.raise_if_cancelled()
                response = ce.get_savings_plans_coverage(**kwargs)
                for item in response.get("SavingsPlansCoverages", []):
                    attributes = item.get("Attributes", {})
                    region = attributes.get("REGION") or attributes.get("region")
                    coverage = item.get("Coverage")
                    if not region or not coverage:
                        continue
                    on_demand, covered = totals.setdefault(region, [0.0, 0.0])
                    totals[region] = [
                        on_demand + parse_cost(coverage.get("OnDemandCost")),
                        covered + parse_cost(coverage.get("SpendCoveredBySavingsPlans")),
                    ]
                token = response.get("NextToken")
                if not token:
                    break
                kwargs["NextToken"] = token
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            self.logger.warning(f"Savings Plans coverage unavailable for {profile.name}: {e}")
            return {}

        result: Dict[str, SavingsPlanCoverage] = {}
        for region, (on_demand, covered) in totals.items():
            spend = on_demand + covered
            result[region] = SavingsPlanCoverage(
                coverage_percent=(covered / spend) * 100 if spend > 0 else 0.0,
                on_demand_cost=on_demand,
            )
        return result


# ---------------------------------------------------------------------------
# Security
# ---------------------------------------------------------------------------

class SecurityCollector(RegionalCollector):

    domain = Domain.SECURITY

    def collect_region(self, ctx: AuditContext, profile: ResolvedProfile, region: str) -> AWSRegionInventory:
        session = profile.session
        return AWSRegionInventory(
            region=region,
            security_groups=self._security_groups(ctx, client_for(session, "ec2", region)),
            guardduty_enabled=self._guardduty_enabled(ctx, client_for(session, "guardduty", region)),
            config_enabled=self._config_enabled(ctx, client_for(session, "config", region)),
        )

    def collect_account(self, ctx: AuditContext, profile: ResolvedProfile) -> AWSAccountInventory:
        session = profile.session
        iam = client_for(session, "iam", "global")
        return AWSAccountInventory(
            buckets=self._public_buckets(ctx, client_for(session, "s3", "global")),
            users=self._users(ctx, iam),
            root=self._root(ctx, iam),
            trails=self._trails(ctx, client_for(session, "cloudtrail", profile.default_region)),
            trails_collected=True,
        )

    # ------------------------------------------------------------------
    # Regional
    # ------------------------------------------------------------------

    def _security_groups(self, ctx: AuditContext, ec2: Any) -> List[SecurityGroup]:
        groups = []
        for sg in paginate(ctx, ec2, "describe_security_groups", "SecurityGroups"):
            rules = []
            for perm in sg.get("IpPermissions", []):
                protocol  = str(perm.get("IpProtocol", "-1"))
                from_port = int(perm.get("FromPort", 0))
                to_port   = int(perm.get("ToPort", 65535))
                cidrs = [r.get("CidrIp", "") for r in perm.get("IpRanges", [])]
                cidrs += [r.get("CidrIpv6", "") for r in perm.get("Ipv6Ranges", [])]
                for cidr in cidrs:
                    rules.append(SecurityGroupRule(protocol=protocol, from_port=from_port, to_port=to_port, cidr=cidr))
            groups.append(SecurityGroup(
                group_id=sg["GroupId"],
                group_name=sg.get("GroupName", ""),
                vpc_id=sg.get("VpcId", ""),
                ingress=rules,
            ))
        return groups

    def _guardduty_enabled(self, ctx: AuditContext, guardduty: Any) -> bool:
        ctx.raise_if_cancelled()
        detector_ids = guardduty.list_detectors().get("DetectorIds", [])
        for detector_id in detector_ids:
            if guardduty.get_detector(DetectorId=detector_id).get("Status") == "ENABLED":
                return True
        return False

    def _config_enabled(self, ctx: AuditContext, config: Any) -> bool:
        ctx.raise_if_cancelled()
        statuses = config.describe_configuration_recorder_status().get("ConfigurationRecordersStatus", [])
        return any(s.get("recording") for s in statuses)

    # ------------------------------------------------------------------
    # Account-wide
    # ------------------------------------------------------------------

    def _public_buckets(self, ctx: AuditContext, s3: Any) -> List[S3Bucket]:
        buckets = []
        for bucket in self._buckets(ctx, s3):
            ctx.raise_if_cancelled()
            name = bucket["Name"]
            buckets.append(S3Bucket(
                name=name,
                region=self._bucket_region(s3, name),
                public=self._is_public(s3, name),
            ))
        return buckets

    def _is_public(self, s3: Any, name: str) -> bool:
        import botocore.exceptions

        try:
            block = s3.get_public_access_block(Bucket=name)["PublicAccessBlockConfiguration"]
            if block.get("RestrictPublicBuckets") and block.get("IgnorePublicAcls"):
                return False
        except botocore.exceptions.ClientError as e:
            if error_code(e) != "NoSuchPublicAccessBlockConfiguration":
                raise

        try:
            if s3.get_bucket_policy_status(Bucket=name)["PolicyStatus"].get("IsPublic"):
                return True
        except botocore.exceptions.ClientError as e:
            if error_code(e) != "NoSuchBucketPolicy":
                raise

        grants = s3.get_bucket_acl(Bucket=name).get("Grants", [])
        return any(g.get("Grantee", {}).get("URI") in ALL_USERS_GROUPS for g in grants)

    def _users(self, ctx: AuditContext, iam: Any) -> List[IAMUser]:
        import botocore.exceptions

        users = []
        for user in paginate(ctx, iam, "list_users", "Users"):
            name = user["UserName"]
            try:
                iam.get_login_profile(UserName=name)
                console = True
            except botocore.exceptions.ClientError as e:
                if error_code(e) != "NoSuchEntity":
                    raise
                console = False
            mfa_devices = iam.list_mfa_devices(UserName=name).get("MFADevices", [])
            users.append(IAMUser(
                user_name=name,
                arn=user.get("Arn", ""),
                has_console_access=console,
                mfa_enabled=bool(mfa_devices),
            ))
        return users

    def _root(self, ctx: AuditContext, iam: Any) -> RootAccountInfo:
        import botocore.exceptions

        ctx.raise_if_cancelled()
        try:
            summary = iam.get_account_summary()["SummaryMap"]
        except botocore.exceptions.ClientError as e:
            # Root rules stay silent when the summary is unreadable
            self.logger.warning(f"IAM account summary unavailable: {e}")
            return RootAccountInfo(data_available=False)
        return RootAccountInfo(
            has_access_keys=summary.get("AccountAccessKeysPresent", 0) > 0,
            mfa_enabled=summary.get("AccountMFAEnabled", 0) > 0,
            data_available=True,
        )

    def _trails(self, ctx: AuditContext, cloudtrail: Any) -> List[CloudTrailTrail]:
        ctx.raise_if_cancelled()
        trails = []
        for trail in cloudtrail.describe_trails(includeShadowTrails=False).get("trailList", []):
            status = cloudtrail.get_trail_status(Name=trail.get("TrailARN") or trail["Name"])
            trails.append(CloudTrailTrail(
                name=trail["Name"],
                is_multi_region=bool(trail.get("IsMultiRegionTrail", False)),
                is_logging=bool(status.get("IsLogging", False)),
                home_region=trail.get("HomeRegion", ""),
            ))
        return trails


# ---------------------------------------------------------------------------
# Data protection
# ---------------------------------------------------------------------------

class DataProtectionCollector(RegionalCollector):

    domain = Domain.DATAPROTECTION

    def collect_region(self, ctx: AuditContext, profile: ResolvedProfile, region: str) -> AWSRegionInventory:
        session = profile.session
        return AWSRegionInventory(
            region=region,
            volumes=self._volumes(ctx, client_for(session, "ec2", region)),
            rds_instances=self._rds_instances(ctx, client_for(session, "rds", region)),
        )

    def collect_account(self, ctx: AuditContext, profile: ResolvedProfile) -> AWSAccountInventory:
        import botocore.exceptions

        s3 = client_for(profile.session, "s3", "global")
        buckets = []
        for bucket in self._buckets(ctx, s3):
            ctx.raise_if_cancelled()
            name = bucket["Name"]
            try:
                rules = s3.get_bucket_encryption(Bucket=name)["ServerSideEncryptionConfiguration"].get("Rules", [])
                encrypted = bool(rules)
            except botocore.exceptions.ClientError as e:
                if error_code(e) != "ServerSideEncryptionConfigurationNotFoundError":
                    raise
                encrypted = False
            buckets.append(S3Bucket(
                name=name,
                region=self._bucket_region(s3, name),
                default_encryption_enabled=encrypted,
            ))
        return AWSAccountInventory(buckets=buckets)


def default_collectors(fanout: Optional[RegionFanOut] = None) -> Dict[str, RegionalCollector]:
    """domain → collector, sharing one fan-out."""
    fanout = fanout or RegionFanOut()
    return {
        Domain.COST:           CostCollector(fanout),
        Domain.SECURITY:       SecurityCollector(fanout),
        Domain.DATAPROTECTION: DataProtectionCollector(fanout),
    }
