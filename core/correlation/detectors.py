"""
core/correlation/detectors.py

Building blocks of the correlation catalog.

A PatternDetector is a small declarative object:
  - stages:  ordered (label, predicate) pairs. Every required stage must be
             satisfied for the pattern to fire. For attack paths the
             stage labels become the ordered layers.
  - scope:   where the findings must live together. "resource" (same
             resource), "namespace" (same kube namespace) or "cluster"
             (same account+region, i.e. same kube context). A stage may
             widen its own scope to "cluster" (the node IAM role is a
             cluster fact even for a namespace story).
  - tier:    "chain" or "path". Paths score 90-99, chains 50-89.

The co-location key always starts with the account id, so no pattern
can ever link findings from two accounts.

Scoring:
    W      = Σ over satisfied stages of max(severity weight among matches),
             using the severity each matching rule assigned
             with weights CRITICAL=4, HIGH=3, MEDIUM=2, LOW=1
    chain  = clamp(50, 89, 44 + 6·W)      two HIGHs → 80
    path   = clamp(90, 99, 78 + 2·W)      HIGH+HIGH+MEDIUM → 94, CRITICAL+HIGH+HIGH → 98
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from core.models.finding import Finding, Severity

TIER_CHAIN = "chain"
TIER_PATH  = "path"

SCOPE_RESOURCE  = "resource"
SCOPE_NAMESPACE = "namespace"
SCOPE_CLUSTER   = "cluster"

CHAIN_SCORE_RANGE = (50, 89)
PATH_SCORE_RANGE  = (90, 99)

ScopeKey = Tuple[str, ...]


# ---------------------------------------------------------------------------
# Predicates and stages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Predicate:
    """
    Matches findings by rule id and/or severity floor.
    An empty rule_ids set means "any rule" (severity/domain must then narrow it).

    A merged finding carries several rules; each is tested on its own,
    with the severity that rule assigned.
    """
    name:             str
    rule_ids:         FrozenSet[str]     = frozenset()
    min_severity:     Optional[Severity] = None
    domain:           Optional[str]      = None
    exclude_rule_ids: FrozenSet[str]     = frozenset()

    def matched_rules(self, finding: Finding) -> List[str]:
        if self.domain is not None and finding.domain != self.domain:
            return []
        matched: List[str] = []
        for rule_id in finding.rule_ids:
            if self.rule_ids and rule_id not in self.rule_ids:
                continue
            if rule_id in self.exclude_rule_ids:
                continue
            if self.min_severity is not None and not finding.severity_for(rule_id).at_least(self.min_severity):
                continue
            matched.append(rule_id)
        return matched

    def matches(self, finding: Finding) -> bool:
        return bool(self.matched_rules(finding))


def rules(name: str, *rule_ids: str) -> Predicate:
    return Predicate(name=name, rule_ids=frozenset(rule_ids))


@dataclass(frozen=True)
class Stage:
    label:     str
    predicate: Predicate
    optional:  bool          = False
    scope:     Optional[str] = None   # None = detector's scope


@dataclass(frozen=True)
class PatternDetector:
    pattern_id: str
    tier:       str
    scope:      str
    narrative:  str
    stages:     Tuple[Stage, ...]

    @property
    def is_path(self) -> bool:
        return self.tier == TIER_PATH


# ---------------------------------------------------------------------------
# Match results (also the explain trace)
# ---------------------------------------------------------------------------

@dataclass
class StageMatch:
    label:        str
    predicate:    str
    finding_ids:  List[str]
    max_severity: Severity
    optional:     bool      = False
    rule_ids:     List[str] = field(default_factory=list)

    @property
    def weight(self) -> int:
        return self.max_severity.correlation_weight


@dataclass
class PatternMatch:
    """One detector firing for one co-location group."""
    detector:    PatternDetector
    scope_key:   ScopeKey
    stages:      List[StageMatch]
    finding_ids: List[str]
    score:       int
    catalog_index: int = 0

    @property
    def layers(self) -> List[str]:
        out: List[str] = []
        for sm in self.stages:
            if sm.label not in out:
                out.append(sm.label)
        return out

    @property
    def weight_sum(self) -> int:
        return sum(sm.weight for sm in self.stages)

    @property
    def location(self) -> str:
        parts = [p for p in self.scope_key if p]
        return "/".join(parts)

    def sort_key(self):
        return (-self.score, self.catalog_index, self.scope_key, self.finding_ids)


# ---------------------------------------------------------------------------
# Scoring and co-location
# ---------------------------------------------------------------------------

def _clamp(low: int, high: int, value: int) -> int:
    return max(low, min(high, value))


def score_for(tier: str, weight_sum: int) -> int:
    if tier == TIER_PATH:
        return _clamp(*PATH_SCORE_RANGE, 78 + 2 * weight_sum)
    return _clamp(*CHAIN_SCORE_RANGE, 44 + 6 * weight_sum)


def scope_key(finding: Finding, scope: str) -> Optional[ScopeKey]:
    """Co-location key for a finding, None if it cannot live at that scope."""
    if scope == SCOPE_CLUSTER:
        return (finding.account_id, finding.region)
    if scope == SCOPE_NAMESPACE:
        ns = finding.namespace
        if not ns:
            return None
        return (finding.account_id, finding.region, ns)
    if scope == SCOPE_RESOURCE:
        return (finding.account_id, finding.region, finding.resource_id)
    raise ValueError(f"unknown correlation scope {scope!r}")


def detect(
    detector: PatternDetector,
    findings: Sequence[Finding],
    catalog_index: int = 0,
) -> List[PatternMatch]:
    """
    Run one detector over a finding set. Pure and order-independent:
    groups are visited in sorted key order and ids are sorted.
    """
    groups: Dict[ScopeKey, List[Finding]] = {}
    clusters: Dict[ScopeKey, List[Finding]] = {}
    for f in findings:
        clusters.setdefault(scope_key(f, SCOPE_CLUSTER), []).append(f)
        key = scope_key(f, detector.scope)
        if key is not None:
            groups.setdefault(key, []).append(f)

    matches: List[PatternMatch] = []
    for key in sorted(groups):
        stage_matches: List[StageMatch] = []
        contributions = set()
        satisfied = True
        for stage in detector.stages:
            if (stage.scope or detector.scope) == SCOPE_CLUSTER:
                pool = clusters.get(key[:2], [])
            else:
                pool = groups[key]
            hits = [(f, rule_id) for f in pool for rule_id in stage.predicate.matched_rules(f)]
            if not hits:
                if stage.optional:
                    continue
                satisfied = False
                break
            contributions.update((f.id, rule_id) for f, rule_id in hits)
            stage_matches.append(StageMatch(
                label=stage.label,
                predicate=stage.predicate.name,
                finding_ids=sorted({f.id for f, _ in hits}),
                max_severity=max((f.severity_for(rule_id) for f, rule_id in hits), key=lambda s: s.rank),
                optional=stage.optional,
                rule_ids=sorted({rule_id for _, rule_id in hits}),
            ))
        if not satisfied:
            continue

        # Two rule hits minimum; they may sit on one merged finding
        if len(contributions) < 2:
            continue
        member_ids = sorted({fid for sm in stage_matches for fid in sm.finding_ids})
        weight = sum(sm.weight for sm in stage_matches)
        matches.append(PatternMatch(
            detector=detector,
            scope_key=key,
            stages=stage_matches,
            finding_ids=member_ids,
            score=score_for(detector.tier, weight),
            catalog_index=catalog_index,
        ))
    return matches
