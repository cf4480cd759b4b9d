"""
core/rules/registry.py

RuleRegistry is an ordered collection of rules for one domain.

Why explicit construction instead of self-registering decorators?
  - Order matters. Registration order is the report's finding order and
    the tie-break order for everything downstream, so it must be visible
    in one place (the pack function), not depend on import order
  - No process-wide mutable state: tests build the registry they need
  - The policy validator needs the full rule-id universe, which is just
    the union of every pack's registry

Usage:
    registry = RuleRegistry("cost", cost_rules())
    for rule in registry.all():
        findings.extend(rule.evaluate(ctx))

    registry.lookup("EBS_UNATTACHED")       # → the rule
    registry.lookup("NOPE")                 # → raises UnknownRuleID
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Optional

from core.exceptions import DuplicateRuleID, UnknownRuleID
from core.rules.base import Rule

logger = logging.getLogger(__name__)


class RuleRegistry:
    """Ordered, duplicate-free set of rules. Read-only once the audit starts."""

    def __init__(self, domain: str, rules: Optional[Iterable[Rule]] = None):
        self.domain = domain
        self._rules: List[Rule] = []
        self._by_id: Dict[str, Rule] = {}
        for rule in rules or ():
            self.register(rule)

    def register(self, rule: Rule) -> None:
        rule_id = rule.rule_id
        if rule_id in self._by_id:
            raise DuplicateRuleID(rule_id)
        self._rules.append(rule)
        self._by_id[rule_id] = rule
        logger.debug(f"Registered rule: {rule_id} [domain={self.domain}]")

    def all(self) -> List[Rule]:
        """Rules in registration order. Returns a copy."""
        return list(self._rules)

    def lookup(self, rule_id: str) -> Rule:
        try:
            return self._by_id[rule_id]
        except KeyError:
            raise UnknownRuleID(rule_id) from None

    def rule_ids(self) -> List[str]:
        return [r.rule_id for r in self._rules]

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._by_id

    def __iter__(self) -> Iterator[Rule]:
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)

    def __repr__(self) -> str:
        return f"RuleRegistry(domain={self.domain!r}, rules={len(self._rules)})"


def known_rule_ids(registries: Iterable[RuleRegistry]) -> List[str]:
    """Union of rule ids across registries, first-seen order."""
    seen: Dict[str, None] = {}
    for registry in registries:
        for rule_id in registry.rule_ids():
            seen.setdefault(rule_id, None)
    return list(seen)
