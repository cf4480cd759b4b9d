"""
core/correlation/engine.py

RiskCorrelationEngine: the second-order pass over a finished finding set.

It runs every detector in the catalog, turns matches into AttackPaths and
RiskChains, and keeps the matches around as the explain trace.

Guarantees:
  - pure: the input findings are only read
  - order-independent: any permutation of the input yields the same
    narratives, scores, member ids and listing order
  - referential integrity: member ids come from the input set only
  - attack paths are always listed before risk chains
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

from core.correlation.catalog import CATALOG
from core.correlation.detectors import PatternDetector, PatternMatch, detect
from core.models.finding import Finding
from core.models.report import AttackPath, RiskChain

logger = logging.getLogger(__name__)

# int → match by score, str → match by pattern id
Selector = Union[int, str]


@dataclass
class CorrelationResult:
    attack_paths: List[AttackPath]   = field(default_factory=list)
    risk_chains:  List[RiskChain]    = field(default_factory=list)

    # Paths first, then chains; same order as the two lists above
    matches: List[PatternMatch] = field(default_factory=list)

    @property
    def risk_score(self) -> int:
        """Highest path score, else highest chain score, else 0."""
        if self.attack_paths:
            return max(p.score for p in self.attack_paths)
        if self.risk_chains:
            return max(c.score for c in self.risk_chains)
        return 0

    def score_by_finding(self) -> Dict[str, int]:
        """Best narrative score each correlated finding takes part in."""
        best: Dict[str, int] = {}
        for m in self.matches:
            for fid in m.finding_ids:
                if m.score > best.get(fid, -1):
                    best[fid] = m.score
        return best

    def restricted_to(self, finding_ids) -> "CorrelationResult":
        """
        Keep only narratives whose every member is in finding_ids.
        Used after view filters so no narrative points at a hidden finding.
        """
        keep = set(finding_ids)
        kept = [m for m in self.matches if all(fid in keep for fid in m.finding_ids)]
        return _build_result(kept)

    def find(self, selector: Selector) -> Optional[PatternMatch]:
        """
        First match in listing order. Paths are searched before chains,
        so a chain only wins a score tie when no path has that score.
        """
        for m in self.matches:
            if isinstance(selector, int) and not isinstance(selector, bool):
                if m.score == selector:
                    return m
            elif m.detector.pattern_id == selector:
                return m
        return None


def _narrative(m: PatternMatch):
    if m.detector.is_path:
        return AttackPath(
            score=m.score,
            description=m.detector.narrative,
            layers=m.layers,
            finding_ids=list(m.finding_ids),
            pattern_id=m.detector.pattern_id,
        )
    return RiskChain(
        score=m.score,
        reason=m.detector.narrative,
        finding_ids=list(m.finding_ids),
        pattern_id=m.detector.pattern_id,
    )


def _build_result(matches: Sequence[PatternMatch]) -> CorrelationResult:
    paths  = sorted((m for m in matches if m.detector.is_path), key=PatternMatch.sort_key)
    chains = sorted((m for m in matches if not m.detector.is_path), key=PatternMatch.sort_key)
    ordered = paths + chains
    return CorrelationResult(
        attack_paths=[_narrative(m) for m in paths],
        risk_chains=[_narrative(m) for m in chains],
        matches=ordered,
    )


class RiskCorrelationEngine:
    """
    Usage:
        engine = RiskCorrelationEngine()
        result = engine.correlate(findings)
        result.attack_paths, result.risk_chains

        match = engine.explain(findings, 94)      # or a pattern id
    """

    def __init__(self, catalog: Optional[Sequence[PatternDetector]] = None):
        self.catalog = tuple(catalog if catalog is not None else CATALOG)
        self.logger  = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    def correlate(self, findings: Sequence[Finding]) -> CorrelationResult:
        matches: List[PatternMatch] = []
        for index, detector in enumerate(self.catalog):
            matches.extend(detect(detector, findings, catalog_index=index))
        result = _build_result(matches)
        self.logger.info(
            f"Correlation: {len(findings)} finding(s) → "
            f"{len(result.attack_paths)} attack path(s), "
            f"{len(result.risk_chains)} risk chain(s)"
        )
        return result

    def explain(
        self,
        findings: Sequence[Finding],
        selector: Selector,
    ) -> Optional[PatternMatch]:
        """The trace for the first narrative matching selector, or None."""
        return self.correlate(findings).find(selector)
