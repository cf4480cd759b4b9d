"""
providers/aws/session.py

AWSProfileResolver implements ProfileResolver on top of boto3.

Responsibilities:
  1. Enumerate the named profiles in ~/.aws/config and ~/.aws/credentials
  2. Build a boto3 Session per profile and verify it with sts:GetCallerIdentity
  3. List the regions enabled for the account (opt-in regions included once
     opted in)

Credential chain when no profile is given (boto3's own order):
  1. AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY environment variables
  2. AWS_PROFILE, then the [default] profile
  3. Container / instance role (ECS task role, EC2 instance profile)
  4. Web identity token (EKS IRSA)

Sessions are cached per profile name: every domain engine of a
multi-domain run resolves the same profile, and sts:GetCallerIdentity
only needs to succeed once per invocation.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from core.collector import CredentialsUnavailable, ProfileResolver, ResolvedProfile
from core.exceptions import GovAuditError

logger = logging.getLogger(__name__)

DEFAULT_PROFILE_LABEL = "default"

# Regions a session can be used in without opting in, plus opted-in ones
ENABLED_REGION_FILTER = [
    {"Name": "opt-in-status", "Values": ["opt-in-not-required", "opted-in"]},
]

# sts error codes that mean "these credentials will never work"
_INVALID_CREDENTIAL_CODES = ("InvalidClientTokenId", "ExpiredToken", "AuthFailure", "SignatureDoesNotMatch")


class AWSProfileResolver(ProfileResolver):
    """
    Usage:
        resolver = AWSProfileResolver(default_region="eu-west-1")
        profile  = resolver.resolve("prod")
        regions  = resolver.active_regions(profile)
    """

    def __init__(self, default_region: str = "us-east-1"):
        self.default_region = default_region
        self._cache: Dict[str, ResolvedProfile] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    # ------------------------------------------------------------------
    # ProfileResolver contract
    # ------------------------------------------------------------------

    def list_profiles(self) -> List[str]:
        import boto3

        profiles = sorted(boto3.Session().available_profiles)
        self.logger.info(f"Discovered {len(profiles)} AWS profile(s)")
        return profiles

    def resolve(self, profile: Optional[str]) -> ResolvedProfile:
        key = profile or DEFAULT_PROFILE_LABEL
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        resolved = self._build(profile)
        with self._lock:
            self._cache[key] = resolved
        return resolved

    def active_regions(self, profile: ResolvedProfile) -> List[str]:
        try:
            ec2 = profile.session.client("ec2", region_name=profile.default_region)
            response = ec2.describe_regions(Filters=ENABLED_REGION_FILTER)
        except Exception as e:
            raise AWSSessionError(
                f"could not enumerate enabled regions for profile {profile.name}: {e}"
            ) from e
        regions = sorted(r["RegionName"] for r in response.get("Regions", []))
        self.logger.debug(f"Profile {profile.name}: {len(regions)} enabled region(s)")
        return regions

    # ------------------------------------------------------------------
    # Session construction
    # ------------------------------------------------------------------

    def _build(self, profile: Optional[str]) -> ResolvedProfile:
        import boto3
        import botocore.exceptions

        name = profile or DEFAULT_PROFILE_LABEL
        try:
            session = boto3.Session(profile_name=profile) if profile else boto3.Session()
            identity = session.client("sts").get_caller_identity()
        except botocore.exceptions.ProfileNotFound as e:
            raise ProfileResolutionError(name, "profile not found in ~/.aws/config or ~/.aws/credentials") from e
        except (botocore.exceptions.NoCredentialsError, botocore.exceptions.PartialCredentialsError) as e:
            raise ProfileResolutionError(name, f"no usable credentials ({e})") from e
        except botocore.exceptions.ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code in _INVALID_CREDENTIAL_CODES:
                raise ProfileResolutionError(name, f"credentials are invalid or expired (code={code})") from e
            raise AWSSessionError(f"sts:GetCallerIdentity failed for profile {name}: {e}") from e
        except botocore.exceptions.BotoCoreError as e:
            raise ProfileResolutionError(name, str(e)) from e

        account_id = identity["Account"]
        self.logger.info(f"Credentials verified: profile={name}, account={account_id}, arn={identity.get('Arn', '')}")
        return ResolvedProfile(
            name=name,
            account_id=account_id,
            session=session,
            default_region=session.region_name or self.default_region,
        )

    def __repr__(self) -> str:
        return f"AWSProfileResolver(default_region={self.default_region!r}, cached={len(self._cache)})"


def client_for(session: Any, service: str, region: str) -> Any:
    """Regional client; 'global' means the service's default endpoint."""
    if region == "global":
        return session.client(service)
    return session.client(service, region_name=region)


# ---------------------------------------------------------------------------
# Session exceptions
# ---------------------------------------------------------------------------

class AWSSessionError(GovAuditError):
    """Base exception for session and credential failures."""
    pass


class ProfileResolutionError(AWSSessionError, CredentialsUnavailable):
    """
    A profile's credentials cannot be resolved. Fatal for a single-profile
    audit; all-profiles mode logs it and moves on to the next profile.
    """

    def __init__(self, profile: str, reason: str):
        self.profile = profile
        self.reason  = reason
        super().__init__(f"cannot resolve AWS profile {profile!r}: {reason}")
