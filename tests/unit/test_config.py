"""
tests/unit/test_config.py

Unit tests for AppConfig loading and logging setup.

Run with:
    pytest tests/unit/test_config.py -v
"""

from __future__ import annotations

import logging
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from core.config import MAX_REGION_WORKERS, AppConfig, configure_logging
from core.exceptions import ConfigError


def write_config(tmp_path, body: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(body, encoding="utf-8")
    return str(path)


class TestAppConfig:

    def test_defaults_when_file_missing(self, tmp_path):
        config = AppConfig.load(str(tmp_path / "absent.yaml"), environ={})
        assert config.default_profile is None
        assert config.default_region == "us-east-1"
        assert config.max_region_workers == MAX_REGION_WORKERS
        assert config.log_level == "INFO"

    def test_file_values(self, tmp_path):
        path = write_config(tmp_path, "default_profile: prod\nmax_region_workers: 3\nlog_level: debug\n")
        config = AppConfig.load(path, environ={})
        assert config.default_profile == "prod"
        assert config.max_region_workers == 3
        assert config.log_level == "DEBUG"

    def test_environment_overrides_file(self, tmp_path):
        path = write_config(tmp_path, "default_region: eu-west-1\nmax_region_workers: 3\n")
        config = AppConfig.load(path, environ={
            "GOVAUDIT_DEFAULT_REGION": "ap-south-1",
            "GOVAUDIT_MAX_REGION_WORKERS": "2",
            "UNRELATED": "x",
        })
        assert config.default_region == "ap-south-1"
        assert config.max_region_workers == 2

    def test_unknown_key(self, tmp_path):
        with pytest.raises(ConfigError, match="colour"):
            AppConfig.load(write_config(tmp_path, "colour: blue\n"), environ={})

    @pytest.mark.parametrize("value", ["0", "-1", "6", "many"])
    def test_bad_worker_count(self, value):
        with pytest.raises(ConfigError):
            AppConfig.from_dict({"max_region_workers": value})

    def test_bad_log_level(self):
        with pytest.raises(ConfigError):
            AppConfig.from_dict({"log_level": "chatty"})

    def test_malformed_file(self, tmp_path):
        with pytest.raises(ConfigError):
            AppConfig.load(write_config(tmp_path, "default_region: [eu\n"), environ={})
        with pytest.raises(ConfigError):
            AppConfig.load(write_config(tmp_path, "- a\n- b\n"), environ={})

    def test_to_dict(self):
        data = AppConfig(default_profile="dev").to_dict()
        assert data["default_profile"] == "dev"
        assert set(data) == {
            "default_profile", "default_region", "max_region_workers", "policy_filename", "log_level",
        }


def test_configure_logging_quiets_boto():
    configure_logging("DEBUG")
    assert logging.getLogger("botocore").level == logging.WARNING
    assert logging.getLogger("boto3").level == logging.WARNING
