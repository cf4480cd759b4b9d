"""
providers/aws/rules/cost.py

Cost rules: idle or oversized resources and missing commitment discounts.

Savings figures are monthly USD estimates from list prices. They rank
findings against each other; they are not a bill.

Rules in this pack:
    EBS_UNATTACHED              - volume in state "available"
    EBS_GP2_LEGACY              - gp2 volume that gp3 would undercut
    EC2_LOW_CPU                 - running instance averaging < 10% CPU
    EC2_NO_SAVINGS_PLAN         - on-demand spend in a region with no coverage
    NAT_LOW_TRAFFIC             - NAT gateway moving < 1 GB
    RDS_LOW_CPU                 - database averaging < 10% CPU
    ALB_IDLE                    - application LB with zero requests
    SAVINGS_PLAN_UNDERUTILIZED  - coverage below 60% with real on-demand spend
"""

from __future__ import annotations

from abc import abstractmethod
from typing import List

from core.models.finding import Domain, Finding, Severity
from core.models.inventory import AWSInventory
from core.rules.base import Rule, RuleContext

# List prices, us-east-1
EBS_PRICE_PER_GB       = 0.08
GP2_TO_GP3_SAVING_PER_GB = 0.02
NAT_GATEWAY_MONTHLY    = 32.0
ALB_MONTHLY            = 18.0

RIGHTSIZING_SAVING_RATIO   = 0.30
SAVINGS_PLAN_DISCOUNT      = 0.20
COVERAGE_GAP_SAVING_RATIO  = 0.10

# Unattached this long and the volume is almost certainly orphaned
STALE_VOLUME_DAYS = 90


class CostRule(Rule):
    domain = Domain.COST

    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        inventory: AWSInventory = ctx.inventory
        return self._evaluate(ctx, inventory)

    @abstractmethod
    def _evaluate(self, ctx: RuleContext, inventory: AWSInventory) -> List[Finding]:
        ...


class EBSUnattachedRule(CostRule):
    """Unattached EBS volume still billed for provisioned storage."""

    rule_id = "EBS_UNATTACHED"
    default_severity = Severity.MEDIUM
    resource_type = "EBSVolume"
    recommendation = "Snapshot the volume if the data matters, then delete it."

    def _evaluate(self, ctx, inventory):
        findings = []
        for region in inventory.regions:
            for vol in region.volumes:
                if vol.attached or vol.state != "available":
                    continue
                days = None
                if vol.create_time is not None:
                    days = max(0, (inventory.collected_at - vol.create_time).days)
                severity = Severity.HIGH if days is not None and days >= STALE_VOLUME_DAYS else None
                age = f", unattached for {days} days" if days is not None else ""
                findings.append(self._finding(
                    ctx, vol.volume_id, region.region,
                    f"EBS volume is not attached to any instance "
                    f"({vol.size_gb} GiB {vol.volume_type}{age}).",
                    severity=severity,
                    savings=vol.size_gb * EBS_PRICE_PER_GB,
                    metadata={
                        "volume_type":     vol.volume_type,
                        "size_gb":         vol.size_gb,
                        "days_unattached": days,
                    },
                ))
        return findings


class EBSGp2LegacyRule(CostRule):
    """gp2 volume that would be cheaper as gp3."""

    rule_id = "EBS_GP2_LEGACY"
    default_severity = Severity.LOW
    resource_type = "EBSVolume"
    recommendation = "Modify the volume type to gp3 (online, no detach needed)."

    def _evaluate(self, ctx, inventory):
        findings = []
        for region in inventory.regions:
            for vol in region.volumes:
                if vol.volume_type != "gp2":
                    continue
                findings.append(self._finding(
                    ctx, vol.volume_id, region.region,
                    f"Volume uses legacy gp2 storage ({vol.size_gb} GiB).",
                    savings=vol.size_gb * GP2_TO_GP3_SAVING_PER_GB,
                    metadata={"volume_type": vol.volume_type, "size_gb": vol.size_gb},
                ))
        return findings


class EC2LowCPURule(CostRule):
    """Running EC2 instance with consistently low CPU."""

    rule_id = "EC2_LOW_CPU"
    default_severity = Severity.MEDIUM
    resource_type = "EC2Instance"
    recommendation = "Downsize to a smaller instance type or consolidate workloads."

    def _evaluate(self, ctx, inventory):
        threshold = self._param(ctx, "cpu_threshold", 10.0)
        findings = []
        for region in inventory.regions:
            for inst in region.instances:
                if inst.state != "running" or inst.monthly_cost <= 0:
                    continue
                # 0% means no datapoints, not an idle box
                if not 0 < inst.avg_cpu_percent < threshold:
                    continue
                findings.append(self._finding(
                    ctx, inst.instance_id, region.region,
                    f"Instance {inst.instance_type} averages "
                    f"{inst.avg_cpu_percent:.1f}% CPU (threshold {threshold:.0f}%).",
                    savings=inst.monthly_cost * RIGHTSIZING_SAVING_RATIO,
                    metadata={
                        "instance_type":   inst.instance_type,
                        "avg_cpu_percent": inst.avg_cpu_percent,
                    },
                ))
        return findings


class EC2NoSavingsPlanRule(CostRule):
    """On-demand EC2 spend in a region with no Savings Plan coverage."""

    rule_id = "EC2_NO_SAVINGS_PLAN"
    default_severity = Severity.HIGH
    resource_type = "EC2Instance"
    recommendation = "Purchase a Compute Savings Plan sized to the steady-state baseline."

    def _evaluate(self, ctx, inventory):
        findings = []
        for region in inventory.regions:
            sp = region.savings_plan
            if sp is not None and sp.coverage_percent > 0:
                continue
            for inst in region.instances:
                if inst.state != "running" or inst.monthly_cost <= 0:
                    continue
                findings.append(self._finding(
                    ctx, inst.instance_id, region.region,
                    f"Instance runs fully on-demand "
                    f"(${inst.monthly_cost:.2f}/month) with no Savings Plan coverage.",
                    savings=inst.monthly_cost * SAVINGS_PLAN_DISCOUNT,
                    metadata={"instance_type": inst.instance_type},
                ))
        return findings


class NATLowTrafficRule(CostRule):
    """NAT gateway processing almost no traffic."""

    rule_id = "NAT_LOW_TRAFFIC"
    default_severity = Severity.HIGH
    resource_type = "NATGateway"
    recommendation = "Remove the NAT gateway or share one across subnets."

    def _evaluate(self, ctx, inventory):
        threshold = self._param(ctx, "traffic_gb_threshold", 1.0)
        findings = []
        for region in inventory.regions:
            for nat in region.nat_gateways:
                if nat.state != "available" or nat.bytes_out_gb >= threshold:
                    continue
                findings.append(self._finding(
                    ctx, nat.nat_gateway_id, region.region,
                    f"NAT gateway processed {nat.bytes_out_gb:.2f} GB in the lookback window.",
                    savings=NAT_GATEWAY_MONTHLY,
                    metadata={"bytes_out_gb": nat.bytes_out_gb},
                ))
        return findings


class RDSLowCPURule(CostRule):
    """RDS instance with consistently low CPU."""

    rule_id = "RDS_LOW_CPU"
    default_severity = Severity.MEDIUM
    resource_type = "RDSInstance"
    recommendation = "Downsize the instance class or move to Aurora Serverless."

    def _evaluate(self, ctx, inventory):
        threshold = self._param(ctx, "cpu_threshold", 10.0)
        findings = []
        for region in inventory.regions:
            for db in region.rds_instances:
                if db.status != "available" or db.monthly_cost <= 0:
                    continue
                if not 0 < db.avg_cpu_percent < threshold:
                    continue
                severity = Severity.HIGH if db.avg_cpu_percent < 5 else Severity.MEDIUM
                findings.append(self._finding(
                    ctx, db.db_instance_id, region.region,
                    f"{db.engine} {db.instance_class} averages "
                    f"{db.avg_cpu_percent:.1f}% CPU.",
                    severity=severity,
                    savings=db.monthly_cost * RIGHTSIZING_SAVING_RATIO,
                    metadata={
                        "instance_class":  db.instance_class,
                        "avg_cpu_percent": db.avg_cpu_percent,
                    },
                ))
        return findings


class ALBIdleRule(CostRule):
    """Application load balancer that served no requests."""

    rule_id = "ALB_IDLE"
    default_severity = Severity.HIGH
    resource_type = "LoadBalancer"
    recommendation = "Delete the load balancer if no target depends on it."

    def _evaluate(self, ctx, inventory):
        findings = []
        for region in inventory.regions:
            for lb in region.load_balancers:
                if lb.lb_type != "application" or lb.state != "active":
                    continue
                if lb.request_count > 0:
                    continue
                findings.append(self._finding(
                    ctx, lb.arn, region.region,
                    f"Load balancer {lb.name or lb.arn} received zero requests.",
                    savings=ALB_MONTHLY,
                    metadata={"name": lb.name},
                ))
        return findings


class SavingsPlanUnderutilizedRule(CostRule):
    """Savings Plan coverage well below the on-demand baseline."""

    rule_id = "SAVINGS_PLAN_UNDERUTILIZED"
    default_severity = Severity.MEDIUM
    resource_type = "SavingsPlan"
    recommendation = "Raise the Savings Plan commitment toward the steady-state spend."

    def _evaluate(self, ctx, inventory):
        threshold = self._param(ctx, "coverage_threshold", 60.0)
        findings = []
        for region in inventory.regions:
            sp = region.savings_plan
            if sp is None or sp.coverage_percent >= threshold or sp.on_demand_cost <= 100:
                continue
            severity = Severity.HIGH if sp.coverage_percent < 40 else Severity.MEDIUM
            findings.append(self._finding(
                ctx, f"savings-plan-{region.region}", region.region,
                f"Savings Plan covers {sp.coverage_percent:.0f}% of "
                f"${sp.on_demand_cost:.2f} on-demand spend.",
                severity=severity,
                savings=sp.on_demand_cost * COVERAGE_GAP_SAVING_RATIO,
                metadata={"coverage_percent": sp.coverage_percent},
            ))
        return findings


def cost_rules() -> List[Rule]:
    """The cost pack, in evaluation order."""
    return [
        EBSUnattachedRule(),
        EBSGp2LegacyRule(),
        EC2LowCPURule(),
        EC2NoSavingsPlanRule(),
        NATLowTrafficRule(),
        RDSLowCPURule(),
        ALBIdleRule(),
        SavingsPlanUnderutilizedRule(),
    ]
