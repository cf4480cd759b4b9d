"""
providers/aws/rules/dataprotection.py

Encryption-at-rest rules for block, relational and object storage.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import List

from core.models.finding import Domain, Finding, Severity
from core.models.inventory import AWSInventory
from core.rules.base import Rule, RuleContext


class DataProtectionRule(Rule):
    domain = Domain.DATAPROTECTION

    def evaluate(self, ctx: RuleContext) -> List[Finding]:
        return self._evaluate(ctx, ctx.inventory)

    @abstractmethod
    def _evaluate(self, ctx: RuleContext, inventory: AWSInventory) -> List[Finding]:
        ...


class EBSUnencryptedRule(DataProtectionRule):
    """EBS volume without encryption at rest."""

    rule_id = "EBS_UNENCRYPTED"
    default_severity = Severity.HIGH
    resource_type = "EBSVolume"
    recommendation = "Copy a snapshot with encryption enabled and restore from it; turn on EBS default encryption."

    def _evaluate(self, ctx, inventory):
        findings = []
        for region in inventory.regions:
            for vol in region.volumes:
                if vol.encrypted:
                    continue
                findings.append(self._finding(
                    ctx, vol.volume_id, region.region,
                    f"EBS volume ({vol.size_gb} GiB {vol.volume_type}) is not encrypted.",
                    metadata={"volume_type": vol.volume_type, "attached": vol.attached},
                ))
        return findings


class RDSUnencryptedRule(DataProtectionRule):
    """RDS instance storage is not encrypted."""

    rule_id = "RDS_UNENCRYPTED"
    default_severity = Severity.CRITICAL
    resource_type = "RDSInstance"
    recommendation = "Restore from an encrypted snapshot copy; encryption cannot be enabled in place."

    def _evaluate(self, ctx, inventory):
        findings = []
        for region in inventory.regions:
            for db in region.rds_instances:
                if db.storage_encrypted:
                    continue
                findings.append(self._finding(
                    ctx, db.db_instance_id, region.region,
                    f"{db.engine or 'RDS'} instance storage is not encrypted at rest.",
                    metadata={"engine": db.engine},
                ))
        return findings


class S3DefaultEncryptionMissingRule(DataProtectionRule):
    """S3 bucket without a default encryption configuration."""

    rule_id = "S3_DEFAULT_ENCRYPTION_MISSING"
    default_severity = Severity.HIGH
    resource_type = "S3Bucket"
    recommendation = "Set SSE-S3 or SSE-KMS as the bucket's default encryption."

    def _evaluate(self, ctx, inventory):
        findings = []
        for bucket in inventory.account.buckets:
            if bucket.default_encryption_enabled:
                continue
            findings.append(self._finding(
                ctx, bucket.name, "global",
                f"Bucket {bucket.name!r} has no default encryption configured.",
                metadata={"bucket_region": bucket.region},
            ))
        return findings


def dataprotection_rules() -> List[Rule]:
    """The data-protection pack, in evaluation order."""
    return [
        EBSUnencryptedRule(),
        RDSUnencryptedRule(),
        S3DefaultEncryptionMissingRule(),
    ]
