"""
providers/aws/fanout.py

RegionFanOut runs one unit of work per region with a bounded number in
flight.

Guarantees:
  - at most max_workers regions are collected concurrently
  - results come back in the order the regions were given, regardless
    of completion order
  - the first failure cancels the fan-out's child context (so in-flight
    collectors stop at their next checkpoint), drops the regions that
    have not started yet, and is re-raised as RegionCollectionError
  - cancelling the parent context cancels the fan-out the same way
"""

from __future__ import annotations

import logging
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Sequence, TypeVar

from core.collector import AuditContext
from core.config import MAX_REGION_WORKERS
from core.exceptions import AuditCancelled, GovAuditError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RegionFanOut:
    """
    Usage:
        fanout  = RegionFanOut(max_workers=5)
        results = fanout.run(ctx, ["us-east-1", "eu-west-1"], lambda c, r: collect(c, r))
    """

    def __init__(self, max_workers: int = MAX_REGION_WORKERS):
        if not 1 <= max_workers <= MAX_REGION_WORKERS:
            raise ValueError(f"max_workers must be between 1 and {MAX_REGION_WORKERS}, got {max_workers}")
        self.max_workers = max_workers
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def run(
        self,
        ctx: AuditContext,
        regions: Sequence[str],
        work: Callable[[AuditContext, str], T],
    ) -> List[T]:
        ctx.raise_if_cancelled()
        if not regions:
            return []

        child = ctx.child()
        futures: Dict[str, Future] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(regions)),
                                thread_name_prefix="region") as pool:
            for region in regions:
                futures[region] = pool.submit(self._guarded, child, region, work)

            wait(list(futures.values()), return_when=FIRST_EXCEPTION)
            failed = next(
                (r for r in regions if futures[r].done() and futures[r].exception() is not None),
                None,
            )
            if failed is not None:
                child.cancel(f"region {failed} failed")
                for future in futures.values():
                    future.cancel()

        if failed is not None:
            error = futures[failed].exception()
            ctx.raise_if_cancelled()
            self.logger.error(f"Region {failed} failed, aborting fan-out: {error}")
            if isinstance(error, RegionCollectionError):
                raise error
            raise RegionCollectionError(failed, error) from error

        return [futures[r].result() for r in regions]

    @staticmethod
    def _guarded(ctx: AuditContext, region: str, work: Callable[[AuditContext, str], T]) -> T:
        ctx.raise_if_cancelled()
        return work(ctx, region)


class RegionCollectionError(GovAuditError):
    """Collection failed in one region; the whole fan-out was aborted."""

    def __init__(self, region: str, cause: BaseException):
        self.region = region
        self.cause  = cause
        super().__init__(f"region {region}: {type(cause).__name__}: {cause}")
