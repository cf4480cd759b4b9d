"""
core/collector.py

Contracts between the engines and the outside world. The engines only
ever call methods declared here; they never import boto3 or talk to a
cluster API directly.

This is the main abstraction boundary of the project:
    engines  ──▶  ProfileResolver / Collector / ClusterCollector / EKSDataCollector
                       ▲
                       └── providers/aws, providers/kubernetes implement them

Design principles:
  - collect_all() is all-or-nothing: it returns a complete inventory or
    raises. Partial inventories never reach the rules.
  - One AuditContext governs a whole invocation. Collectors check it
    between API calls; cancelling it fails the in-flight collection.
  - "Nothing to audit" (no regions, empty account) is a normal empty
    inventory, not an error.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, List, Optional

from core.exceptions import AuditCancelled, GovAuditError
from core.models.inventory import (
    AWSInventory, AWSRegionInventory, ClusterInventory, EKSClusterData,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class AuditContext:
    """
    Cancellable context shared by everything one invocation runs.

    child() derives a context that is cancelled when its parent is, but
    can also be cancelled on its own (the region fan-out uses that to
    stop its siblings without cancelling the whole audit).

    Usage:
        ctx = AuditContext(timeout=900)
        ...
        ctx.raise_if_cancelled()
    """

    def __init__(self, parent: Optional["AuditContext"] = None, timeout: Optional[float] = None):
        self._parent   = parent
        self._event    = threading.Event()
        self._reason   = ""
        self._deadline = time.monotonic() + timeout if timeout else None

    def child(self, timeout: Optional[float] = None) -> "AuditContext":
        return AuditContext(parent=self, timeout=timeout)

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return ""

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise AuditCancelled(self.reason or "cancelled")

    def __repr__(self) -> str:
        return f"AuditContext(cancelled={self.cancelled})"


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

class CredentialsUnavailable(GovAuditError):
    """A profile's credentials cannot be resolved. All-profiles mode skips it."""
    pass


@dataclass
class ResolvedProfile:
    name:           str
    account_id:     str
    session:        Any             # boto3.Session for AWS
    default_region: str = "us-east-1"


class ProfileResolver(ABC):
    """Credential/profile discovery. Implemented by providers/aws/session.py."""

    @abstractmethod
    def list_profiles(self) -> List[str]:
        """Every profile name that could be audited, in a stable order."""
        ...

    @abstractmethod
    def resolve(self, profile: Optional[str]) -> ResolvedProfile:
        """
        Build a session for profile (None = default chain) and verify it.
        Raises CredentialsUnavailable when it cannot.
        """
        ...

    @abstractmethod
    def active_regions(self, profile: ResolvedProfile) -> List[str]:
        """Regions enabled for the account, sorted."""
        ...


# ---------------------------------------------------------------------------
# Collectors
# ---------------------------------------------------------------------------

class Collector(ABC):
    """
    Gathers one domain's AWS inventory.

    collect_all() is what engines call. collect_region() is one unit of
    the region fan-out and is exposed so tests and tools can drive a
    single region.
    """

    domain: str = ""

    def __init__(self):
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    def collect_all(
        self,
        ctx: AuditContext,
        profile: ResolvedProfile,
        regions: List[str],
    ) -> AWSInventory:
        ...

    @abstractmethod
    def collect_region(
        self,
        ctx: AuditContext,
        profile: ResolvedProfile,
        region: str,
    ) -> AWSRegionInventory:
        ...


class ClusterCollector(ABC):
    """Reads a cluster's objects into a ClusterInventory."""

    @abstractmethod
    def collect(self, ctx: AuditContext, context_name: Optional[str]) -> ClusterInventory:
        ...


class EKSDataCollector(ABC):
    """Fetches EKS control-plane facts. Failures here are non-fatal to the audit."""

    @abstractmethod
    def collect(
        self,
        ctx: AuditContext,
        cluster_name: str,
        region: str,
        cluster: Optional[ClusterInventory] = None,
    ) -> EKSClusterData:
        ...
