"""
core/correlation/explain.py

Operator drill-down for one correlation narrative: which findings it is
made of and which predicates fired to pull them in.

Text output:

    ATTACK PATH (Score: 96)
    Description: Externally exposed privileged workload with weak identity isolation.
    Layers: Network Exposure → Workload Privilege → Identity Weakness
    Location: prod-ctx/prod-ctx/payments

    Findings (3):

      ✓ K8S_DEFAULT_SERVICEACCOUNT_USED
        - api-7f9 (payments)
      ...

    Predicates:
      [Network Exposure] public-load-balancer matched 1 finding(s) (max HIGH)
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Union

from core.correlation.detectors import PatternMatch
from core.models.finding import Finding

FORMAT_TEXT = "text"
FORMAT_JSON = "json"
FORMATS = (FORMAT_TEXT, FORMAT_JSON)


def not_found_message(selector: Union[int, str]) -> str:
    if isinstance(selector, int):
        return f"No attack path or risk chain found with score {selector}"
    return f"No attack path or risk chain found for pattern {selector!r}"


def _grouped(match: PatternMatch, findings: Mapping[str, Finding]) -> Dict[str, List[Finding]]:
    by_rule: Dict[str, List[Finding]] = {}
    for fid in match.finding_ids:
        f = findings.get(fid)
        if f is None:
            continue
        for rule_id in f.rule_ids:
            by_rule.setdefault(rule_id, []).append(f)
    return {rule_id: by_rule[rule_id] for rule_id in sorted(by_rule)}


def render_text(match: PatternMatch, findings: Mapping[str, Finding]) -> str:
    lines: List[str] = []
    if match.detector.is_path:
        lines.append(f"ATTACK PATH (Score: {match.score})")
        lines.append(f"Description: {match.detector.narrative}")
        lines.append(f"Layers: {' → '.join(match.layers)}")
    else:
        lines.append(f"RISK CHAIN (Score: {match.score})")
        lines.append(f"Reason: {match.detector.narrative}")
    lines.append(f"Location: {match.location}")
    lines.append("")
    lines.append(f"Findings ({len(match.finding_ids)}):")
    lines.append("")
    for rule_id, members in _grouped(match, findings).items():
        lines.append(f"  ✓ {rule_id}")
        for f in members:
            suffix = f" ({f.namespace})" if f.namespace else ""
            lines.append(f"    - {f.resource_id}{suffix}")
    lines.append("")
    lines.append("Predicates:")
    for sm in match.stages:
        tag = " (optional)" if sm.optional else ""
        lines.append(
            f"  [{sm.label}] {sm.predicate} matched {len(sm.finding_ids)} "
            f"finding(s) (max {sm.max_severity.value}){tag}"
        )
    return "\n".join(lines)


def explain_payload(match: PatternMatch, findings: Mapping[str, Finding]) -> Dict[str, Any]:
    members = [findings[fid].to_dict() for fid in match.finding_ids if fid in findings]
    predicates = [
        {
            "layer":        sm.label,
            "predicate":    sm.predicate,
            "finding_ids":  list(sm.finding_ids),
            "max_severity": sm.max_severity.value,
            "rule_ids":     list(sm.rule_ids),
            "optional":     sm.optional,
        }
        for sm in match.stages
    ]
    if match.detector.is_path:
        body = {
            "score":       match.score,
            "description": match.detector.narrative,
            "layers":      match.layers,
            "finding_ids": list(match.finding_ids),
        }
        key = "attack_path"
    else:
        body = {
            "score":       match.score,
            "reason":      match.detector.narrative,
            "finding_ids": list(match.finding_ids),
        }
        key = "risk_chain"
    body["pattern_id"] = match.detector.pattern_id
    body["location"] = match.location
    return {key: body, "findings": members, "predicates": predicates}


def render(
    match: Optional[PatternMatch],
    findings: Mapping[str, Finding],
    selector: Union[int, str],
    fmt: str = FORMAT_TEXT,
) -> str:
    """Render a match (or the not-found message) in the requested format."""
    if fmt not in FORMATS:
        raise ValueError(f"unknown explain format {fmt!r}")
    if match is None:
        message = not_found_message(selector)
        if fmt == FORMAT_JSON:
            return json.dumps({"error": message}, indent=2)
        return message
    if fmt == FORMAT_JSON:
        return json.dumps(explain_payload(match, findings), indent=2, ensure_ascii=False)
    return render_text(match, findings)
