"""
Tests for configuration loading.
"""

from collections import namedtuple
import socket
from unittest.mock import patch

import pytest

from desk_relay import config as config_module
from desk_relay.config import DEFAULT_CONFIG, Config, deep_merge, get_local_ip, load_config


Addr = namedtuple("Addr", "family address")


class TestLoadConfig:
    """Test YAML loading and defaults."""

    def test_defaults_when_file_missing(self, tmp_path):
        cfg = load_config(tmp_path / "nope.yaml")
        assert cfg == DEFAULT_CONFIG
        assert cfg is not DEFAULT_CONFIG

    def test_file_overrides_are_merged(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("stream:\n  fps: 15\nsecurity:\n  lockout_seconds: 60\n")

        config = Config(path)

        assert config.fps == 15
        assert config.stream_enabled is True
        assert config.lockout_seconds == 60
        assert config.max_attempts == 5

    def test_invalid_yaml_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("stream: [unclosed\n")

        assert load_config(path) == DEFAULT_CONFIG

    def test_overrides_do_not_leak_into_defaults(self, tmp_path):
        config = Config(tmp_path / "nope.yaml")
        config.set("server", "port", 9999)

        assert DEFAULT_CONFIG["server"]["port"] == 8080
        assert Config(tmp_path / "nope.yaml").port == 8080

    def test_deep_merge(self):
        merged = deep_merge({"a": {"b": 1, "c": 2}, "d": 3}, {"a": {"c": 5}, "e": 6})
        assert merged == {"a": {"b": 1, "c": 5}, "d": 3, "e": 6}


class TestDerivedSettings:
    """Test computed properties."""

    def test_frame_interval_and_ports(self, tmp_path):
        config = Config(tmp_path / "nope.yaml")
        assert config.frame_interval == pytest.approx(1 / 30)
        assert config.ws_port == config.port + 1

    def test_security_units(self, tmp_path):
        config = Config(tmp_path / "nope.yaml")
        assert config.session_ttl == 24 * 3600
        assert config.sweep_interval == 3600

    def test_zero_fps_is_safe(self, tmp_path):
        config = Config(tmp_path / "nope.yaml")
        config.set("stream", "fps", 0)
        assert config.frame_interval == 1.0

    def test_auto_host_resolves(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("server:\n  host: auto\n")
        with patch.object(config_module, "get_local_ip", return_value="192.168.7.7"):
            assert Config(path).host == "192.168.7.7"


class TestLocalIp:
    """Test LAN address selection."""

    def test_prefers_192_168(self):
        interfaces = {
            "lo": [Addr(socket.AF_INET, "127.0.0.1")],
            "docker0": [Addr(socket.AF_INET, "172.17.0.1")],
            "eth0": [Addr(socket.AF_INET, "10.1.2.3")],
            "wlan0": [Addr(socket.AF_INET6, "fe80::1"), Addr(socket.AF_INET, "192.168.1.44")],
        }
        with patch.object(config_module.psutil, "net_if_addrs", return_value=interfaces):
            assert get_local_ip() == "192.168.1.44"

    def test_falls_back_to_ten_then_any(self):
        with patch.object(config_module.psutil, "net_if_addrs", return_value={
            "a": [Addr(socket.AF_INET, "172.17.0.1")],
            "b": [Addr(socket.AF_INET, "10.0.0.9")],
        }):
            assert get_local_ip() == "10.0.0.9"

        with patch.object(config_module.psutil, "net_if_addrs", return_value={
            "a": [Addr(socket.AF_INET, "172.17.0.1")],
        }):
            assert get_local_ip() == "172.17.0.1"

    def test_loopback_only(self):
        with patch.object(config_module.psutil, "net_if_addrs", return_value={
            "lo": [Addr(socket.AF_INET, "127.0.0.1")],
        }):
            assert get_local_ip() == "127.0.0.1"
