"""
core/config.py

Process-wide settings, as opposed to per-invocation AuditOptions.

Sources, later wins:
    1. built-in defaults
    2. ~/.config/govaudit/config.yaml (optional)
    3. GOVAUDIT_* environment variables

Example config.yaml:
    default_profile: prod
    default_region: eu-west-1
    max_region_workers: 5
    policy_filename: govaudit.yaml
    log_level: INFO
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any, Dict, Mapping, Optional

import yaml

from core.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join("~", ".config", "govaudit", "config.yaml")
ENV_PREFIX = "GOVAUDIT_"
LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"

MAX_REGION_WORKERS = 5


class AppConfig:

    def __init__(
        self,
        default_profile:    Optional[str] = None,
        default_region:     str           = "us-east-1",
        max_region_workers: int           = MAX_REGION_WORKERS,
        policy_filename:    str           = "govaudit.yaml",
        log_level:          str           = "INFO",
    ):
        self.default_profile    = default_profile
        self.default_region     = default_region
        self.max_region_workers = max_region_workers
        self.policy_filename    = policy_filename
        self.log_level          = log_level

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppConfig":
        unknown = sorted(set(data) - set(_FIELDS))
        if unknown:
            raise ConfigError(f"unknown config key(s): {', '.join(unknown)}")
        values: Dict[str, Any] = {}
        for key, value in data.items():
            values[key] = _coerce(key, value)
        return cls(**values)

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "AppConfig":
        """
        Read the config file (a missing file is fine) and apply environment
        overrides. Raises ConfigError on an unreadable or malformed file or
        an unparseable value.
        """
        data: Dict[str, Any] = {}
        file_path = os.path.expanduser(path or DEFAULT_CONFIG_PATH)
        if os.path.isfile(file_path):
            try:
                with open(file_path, "r", encoding="utf-8") as fh:
                    raw = yaml.safe_load(fh)
            except (OSError, yaml.YAMLError) as e:
                raise ConfigError(f"cannot read {file_path}: {e}") from e
            if raw is not None and not isinstance(raw, dict):
                raise ConfigError(f"{file_path}: top level must be a mapping")
            data.update(raw or {})
            logger.debug(f"Loaded config from {file_path}")

        env = os.environ if environ is None else environ
        for key in _FIELDS:
            env_key = ENV_PREFIX + key.upper()
            if env_key in env:
                data[key] = env[env_key]

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, key) for key in _FIELDS}

    def __repr__(self) -> str:
        return (
            f"AppConfig(profile={self.default_profile!r}, region={self.default_region!r}, "
            f"workers={self.max_region_workers}, log_level={self.log_level!r})"
        )


_FIELDS = ("default_profile", "default_region", "max_region_workers", "policy_filename", "log_level")


def _coerce(key: str, value: Any) -> Any:
    if key == "max_region_workers":
        try:
            workers = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"max_region_workers must be an integer, got {value!r}") from e
        if not 1 <= workers <= MAX_REGION_WORKERS:
            raise ConfigError(f"max_region_workers must be between 1 and {MAX_REGION_WORKERS}, got {workers}")
        return workers
    if key == "log_level":
        level = str(value).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ConfigError(f"unknown log level {value!r}")
        return level
    if value is None:
        return None
    return str(value)


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Cached AppConfig for the running process."""
    return AppConfig.load()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # boto's own DEBUG output drowns ours
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
