"""
tests/test_config.py — config.yaml Loader Tests
===============================================
"""

from __future__ import annotations

import logging

import pytest

from keystone.config import load_config


def _write(tmp_path, text: str):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadConfig:
    def test_full_file(self, tmp_path):
        cfg = load_config(_write(tmp_path, (
            'platform_name: "Acme Academy"\n'
            'api_host: "127.0.0.1"\n'
            "api_port: 9000\n"
            "log_level: debug\n"
        )))
        assert cfg.platform_name == "Acme Academy"
        assert cfg.api_host == "127.0.0.1"
        assert cfg.api_port == 9000
        assert cfg.log_level == "DEBUG"
        assert cfg.log_level_value == logging.DEBUG

    def test_defaults(self, tmp_path):
        cfg = load_config(_write(tmp_path, "platform_name: Keystone\n"))
        assert (cfg.api_host, cfg.api_port, cfg.log_level) == ("0.0.0.0", 8000, "INFO")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="config.yaml.example"):
            load_config(tmp_path / "absent.yaml")

    def test_missing_platform_name(self, tmp_path):
        with pytest.raises(KeyError):
            load_config(_write(tmp_path, "api_port: 8000\n"))

    def test_bad_log_level(self, tmp_path):
        with pytest.raises(ValueError, match="log_level"):
            load_config(_write(tmp_path, "platform_name: Keystone\nlog_level: LOUD\n"))

    def test_config_is_frozen(self, tmp_path):
        cfg = load_config(_write(tmp_path, "platform_name: Keystone\n"))
        with pytest.raises(AttributeError):
            cfg.api_port = 1
