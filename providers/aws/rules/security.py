"""
providers/aws/rules/security.py

Security rules: account identity hygiene, network exposure and the
detective controls (CloudTrail, GuardDuty, Config) that should be on.

Account-wide resources (root, IAM users, S3, trails) are reported under
region "global". Regional controls are reported per region.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import List

from core.models.finding import Domain, Finding, Severity
from core.models.inventory import AWSInventory
from core.rules.base import Rule, RuleContext

GLOBAL_REGION = "global"

OPEN_CIDRS = ("0.0.0.0/0", "::/0")
REMOTE_ADMIN_PORTS = (22, 3389)


class SecurityRule(Rule):
    domain = Domain.SECURITY

    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        return self._evaluate(ctx, ctx.inventory)

    @abstractmethod
    def _evaluate(self, ctx: RuleContext, inventory: AWSInventory) -> List[Finding]:
        ...


class RootAccessKeyRule(SecurityRule):
    """Root account has active access keys."""

    rule_id = "ROOT_ACCESS_KEY"
    default_severity = Severity.CRITICAL
    resource_type = "RootAccount"
    recommendation = "Delete the root access keys and use IAM roles instead."

    def _evaluate(self, ctx, inventory):
        if not inventory.account.root.has_access_keys:
            return []
        return [self._finding(
            ctx, inventory.account_id, GLOBAL_REGION,
            "The root account has access keys. Root keys cannot be scoped "
            "down and grant unrestricted access to the account.",
        )]


class RootMFADisabledRule(SecurityRule):
    """Root account has no MFA device."""

    rule_id = "ROOT_ACCOUNT_MFA_DISABLED"
    default_severity = Severity.CRITICAL
    resource_type = "RootAccount"
    recommendation = "Enable a hardware or virtual MFA device on the root user."

    def _evaluate(self, ctx, inventory):
        root = inventory.account.root
        if not root.data_available or root.mfa_enabled:
            return []
        return [self._finding(
            ctx, inventory.account_id, GLOBAL_REGION,
            "The root account does not have MFA enabled.",
        )]


class IAMUserNoMFARule(SecurityRule):
    """Console user without MFA."""

    rule_id = "IAM_USER_NO_MFA"
    default_severity = Severity.MEDIUM
    resource_type = "IAMUser"
    recommendation = "Require MFA for every IAM user with console access."

    def _evaluate(self, ctx, inventory):
        findings = []
        for user in inventory.account.users:
            # Programmatic-only users have no password to protect
            if not user.has_console_access or user.mfa_enabled:
                continue
            findings.append(self._finding(
                ctx, user.arn or user.user_name, GLOBAL_REGION,
                f"IAM user {user.user_name!r} can sign in to the console without MFA.",
                metadata={"user_name": user.user_name},
            ))
        return findings


class S3PublicBucketRule(SecurityRule):
    """S3 bucket reachable by the public."""

    rule_id = "S3_PUBLIC_BUCKET"
    default_severity = Severity.HIGH
    resource_type = "S3Bucket"
    recommendation = "Enable S3 Block Public Access on the bucket and the account."

    def _evaluate(self, ctx, inventory):
        findings = []
        for bucket in inventory.account.buckets:
            if not bucket.public:
                continue
            findings.append(self._finding(
                ctx, bucket.name, GLOBAL_REGION,
                f"Bucket {bucket.name!r} has no public access block and allows public access.",
                metadata={"bucket_region": bucket.region},
            ))
        return findings


class SGOpenSSHRule(SecurityRule):
    """Security group allows SSH or RDP from anywhere."""

    rule_id = "SG_OPEN_SSH"
    default_severity = Severity.HIGH
    resource_type = "SecurityGroup"
    recommendation = "Restrict remote administration ports to known CIDRs or use SSM Session Manager."

    def _evaluate(self, ctx, inventory):
        findings = []
        for region in inventory.regions:
            for sg in region.security_groups:
                exposed = self._exposed_port(sg)
                if exposed is None:
                    continue
                findings.append(self._finding(
                    ctx, sg.group_id, region.region,
                    f"Security group {sg.group_name or sg.group_id} allows port "
                    f"{exposed} from the internet.",
                    metadata={"port": exposed, "vpc_id": sg.vpc_id},
                ))
        return findings

    @staticmethod
    def _exposed_port(sg):
        # One finding per group: first offending port wins
        for rule in sg.ingress:
            if rule.cidr not in OPEN_CIDRS:
                continue
            for port in REMOTE_ADMIN_PORTS:
                if rule.covers_port(port):
                    return port
        return None


class CloudTrailNotMultiRegionRule(SecurityRule):
    """No multi-region CloudTrail trail is logging."""

    rule_id = "CLOUDTRAIL_NOT_MULTI_REGION"
    default_severity = Severity.HIGH
    resource_type = "CloudTrail"
    recommendation = "Create a multi-region trail that logs to a locked-down bucket."

    def _evaluate(self, ctx, inventory):
        account = inventory.account
        if not account.trails_collected:
            return []
        if any(t.is_multi_region and t.is_logging for t in account.trails):
            return []
        return [self._finding(
            ctx, inventory.account_id, GLOBAL_REGION,
            f"None of the account's {len(account.trails)} trail(s) is a logging "
            f"multi-region trail.",
            metadata={"trail_count": len(account.trails)},
        )]


class GuardDutyDisabledRule(SecurityRule):
    """GuardDuty is not enabled in a region."""

    rule_id = "GUARDDUTY_DISABLED"
    default_severity = Severity.HIGH
    resource_type = "GuardDutyDetector"
    recommendation = "Enable GuardDuty in every active region."

    def _evaluate(self, ctx, inventory):
        return [
            self._finding(
                ctx, f"guardduty-{r.region}", r.region,
                f"GuardDuty has no enabled detector in {r.region}.",
            )
            for r in inventory.regions
            if r.guardduty_enabled is False
        ]


class ConfigDisabledRule(SecurityRule):
    """AWS Config is not recording in a region."""

    rule_id = "AWS_CONFIG_DISABLED"
    default_severity = Severity.HIGH
    resource_type = "ConfigRecorder"
    recommendation = "Turn on an AWS Config recorder for all resource types."

    def _evaluate(self, ctx, inventory):
        return [
            self._finding(
                ctx, f"config-{r.region}", r.region,
                f"AWS Config is not recording in {r.region}.",
            )
            for r in inventory.regions
            if r.config_enabled is False
        ]


def security_rules() -> List[Rule]:
    """The security pack, in evaluation order."""
    return [
        RootAccessKeyRule(),
        RootMFADisabledRule(),
        IAMUserNoMFARule(),
        S3PublicBucketRule(),
        SGOpenSSHRule(),
        CloudTrailNotMultiRegionRule(),
        GuardDutyDisabledRule(),
        ConfigDisabledRule(),
    ]
