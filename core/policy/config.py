"""
core/policy/config.py

PolicyConfig is the parsed form of the policy document (govaudit.yaml).

Document shape:
    version: 1
    fail_on_severity:            # per-domain CI gate threshold
      security: HIGH
    exceptions:                  # rule ids never counted by the gate
      - S3_PUBLIC_BUCKET
    enforcement:                 # alternate spelling of fail_on_severity
      dataprotection:
        fail_on_severity: CRITICAL
    domains:                     # per-domain view controls
      cost: {enabled: true, min_severity: MEDIUM}
    rules:                       # per-rule controls
      EC2_LOW_CPU: {enabled: false, severity: LOW, params: {cpu_threshold: 5}}

Loading is deliberately lenient about values (version, severity names,
domain names are kept as written) and strict about structure. Whether
the values make sense is core/policy/validator.py's job, so one
validation pass can report every problem at once.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml

from core.exceptions import PolicyLoadFailed
from core.models.finding import Severity

logger = logging.getLogger(__name__)

SUPPORTED_POLICY_VERSION = 1
DEFAULT_POLICY_FILENAME  = "govaudit.yaml"


# ---------------------------------------------------------------------------
# Policy sections
# ---------------------------------------------------------------------------

@dataclass
class DomainPolicy:
    enabled:      bool          = True
    min_severity: Optional[str] = None   # raw; validator checks membership


@dataclass
class RulePolicy:
    enabled:  bool                  = True
    severity: Optional[str]         = None
    params:   Dict[str, Any]        = field(default_factory=dict)


@dataclass
class PolicyConfig:
    """
    Read-only after load. Severity values stay as strings until
    severity_threshold()/min_severity_for() parse them, so an invalid
    value reaches the validator instead of failing the load.
    """
    version:          Any                      = SUPPORTED_POLICY_VERSION
    fail_on_severity: Dict[str, str]           = field(default_factory=dict)
    exceptions:       List[str]                = field(default_factory=list)
    domains:          Dict[str, DomainPolicy]  = field(default_factory=dict)
    rules:            Dict[str, RulePolicy]    = field(default_factory=dict)
    source_path:      Optional[str]            = None

    def severity_threshold(self, domain: str) -> Optional[Severity]:
        return Severity.parse(self.fail_on_severity.get(domain))

    def min_severity_for(self, domain: str) -> Optional[Severity]:
        dp = self.domains.get(domain)
        if dp is None or dp.min_severity is None:
            return None
        return Severity.parse(dp.min_severity)

    def is_excepted(self, rule_id: str) -> bool:
        return rule_id in self.exceptions

    # ------------------------------------------------------------------
    # Construction from a parsed document
    # ------------------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source_path: Optional[str] = None) -> "PolicyConfig":
        path = source_path or "<policy>"

        fail_on = _mapping(data.get("fail_on_severity"), "fail_on_severity", path)
        thresholds = {str(k): _as_str(v) for k, v in fail_on.items()}

        # enforcement: {domain: {fail_on_severity: X}} folds into the same map
        enforcement = _mapping(data.get("enforcement"), "enforcement", path)
        for domain, block in enforcement.items():
            block = _mapping(block, f"enforcement.{domain}", path)
            if "fail_on_severity" in block:
                thresholds[str(domain)] = _as_str(block["fail_on_severity"])

        exceptions = data.get("exceptions") or []
        if not isinstance(exceptions, list):
            raise PolicyLoadFailed(path, "exceptions must be a list of rule ids")

        domains = {}
        for name, block in _mapping(data.get("domains"), "domains", path).items():
            block = _mapping(block, f"domains.{name}", path)
            domains[str(name)] = DomainPolicy(
                enabled=bool(block.get("enabled", True)),
                min_severity=_as_str(block.get("min_severity")),
            )

        rules = {}
        for rule_id, block in _mapping(data.get("rules"), "rules", path).items():
            block = _mapping(block, f"rules.{rule_id}", path)
            rules[str(rule_id)] = RulePolicy(
                enabled=bool(block.get("enabled", True)),
                severity=_as_str(block.get("severity")),
                params=_mapping(block.get("params"), f"rules.{rule_id}.params", path),
            )

        return cls(
            version=data.get("version"),
            fail_on_severity=thresholds,
            exceptions=[str(e) for e in exceptions],
            domains=domains,
            rules=rules,
            source_path=source_path,
        )


def _mapping(value: Any, name: str, path: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise PolicyLoadFailed(path, f"{name} must be a mapping, got {type(value).__name__}")
    return value


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_policy(
    path: Optional[str] = None,
    search_dir: str = ".",
    filename: str = DEFAULT_POLICY_FILENAME,
) -> Optional[PolicyConfig]:
    """
    Load the policy document.

    Args:
        path:       Explicit policy path. Missing or malformed → PolicyLoadFailed.
        search_dir: Where to look for the default file when path is None.
        filename:   Default file name to auto-discover.

    Returns None when no path was given and no default file exists:
    policy is simply disabled, which is not an error.
    """
    explicit = path is not None
    target = path if explicit else os.path.join(search_dir, filename)

    if not os.path.exists(target):
        if explicit:
            raise PolicyLoadFailed(target, "file not found")
        logger.debug(f"No policy file at {target}; policy disabled")
        return None

    try:
        with open(target, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as e:
        raise PolicyLoadFailed(target, f"invalid YAML: {e}") from e
    except OSError as e:
        raise PolicyLoadFailed(target, str(e)) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise PolicyLoadFailed(target, "top-level document must be a mapping")

    config = PolicyConfig.from_dict(data, source_path=target)
    logger.info(
        f"Loaded policy {target} (version={config.version!r}, "
        f"thresholds={config.fail_on_severity}, exceptions={len(config.exceptions)})"
    )
    return config
