"""Tests for c2vm.config module."""

from __future__ import annotations

from pathlib import Path

import pytest

from c2vm import config as config_mod
from c2vm.config import default_socket_path, load_config_file, load_settings
from c2vm.constants import DEFAULT_NAMESERVER, OCI_CACHE_DIR
from c2vm.exceptions import ConfigError


@pytest.fixture
def no_default_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config_mod, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestLoadConfigFile:
    def test_missing_default_is_empty(self, no_default_config):
        assert load_config_file() == {}

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Config file missing"):
            load_config_file(tmp_path / "nope.yaml")

    def test_empty_file(self, tmp_path):
        assert load_config_file(_write(tmp_path, "")) == {}

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config_file(_write(tmp_path, "disk_size: [unclosed\n"))

    def test_not_a_mapping(self, tmp_path):
        with pytest.raises(ConfigError, match="must contain a YAML mapping"):
            load_config_file(_write(tmp_path, "- a\n- b\n"))


class TestLoadSettings:
    def test_defaults(self, clean_env, no_default_config, monkeypatch, tmp_path):
        monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
        settings = load_settings(run_name="alpine")
        assert settings.disk_size == "2G"
        assert settings.filesystem == "ext4"
        assert settings.vcpus == 1
        assert settings.memory_mib == 512
        assert settings.smt is False
        assert settings.cpu_template is None
        assert settings.extra_boot_args == ""
        assert settings.nameserver == DEFAULT_NAMESERVER
        assert settings.quote_command is False
        assert settings.cache_dir == OCI_CACHE_DIR
        assert settings.socket_path == tmp_path / "c2vm-alpine.sock"
        assert settings.network_interfaces == ()

    def test_file_values(self, clean_env, tmp_path):
        path = _write(
            tmp_path,
            "\n".join(
                [
                    "disk_size: 4G",
                    "filesystem: ext3",
                    "vcpus: 2",
                    "memory_mib: 1024",
                    "smt: true",
                    "cpu_template: T2",
                    "extra_boot_args: quiet",
                    "nameserver: 1.1.1.1",
                    "quote_command: yes",
                    f"cache_dir: {tmp_path / 'cache'}",
                    f"socket_path: {tmp_path / 'api.sock'}",
                ]
            )
            + "\n",
        )
        settings = load_settings(path)
        assert settings.disk_size == "4G"
        assert settings.filesystem == "ext3"
        assert (settings.vcpus, settings.memory_mib) == (2, 1024)
        assert settings.smt is True
        assert settings.cpu_template == "T2"
        assert settings.extra_boot_args == "quiet"
        assert settings.nameserver == "1.1.1.1"
        assert settings.quote_command is True
        assert settings.cache_dir == tmp_path / "cache"
        assert settings.socket_path == tmp_path / "api.sock"

    def test_env_overrides_file(self, clean_env, mock_env, tmp_path):
        path = _write(tmp_path, "vcpus: 2\nnameserver: 1.1.1.1\n")
        mock_env(VCPUS="4", NAMESERVER="9.9.9.9", FILESYSTEM="EXT2")
        settings = load_settings(path)
        assert settings.vcpus == 4
        assert settings.nameserver == "9.9.9.9"
        assert settings.filesystem == "ext2"

    @pytest.mark.parametrize(
        "env,message",
        [
            ({"DISK_SIZE": "lots"}, "Invalid DISK_SIZE"),
            ({"FILESYSTEM": "xfs"}, "Unsupported FILESYSTEM"),
            ({"VCPUS": "0"}, "VCPUS must be >= 1"),
            ({"VCPUS": "64"}, "VCPUS must be <= 32"),
            ({"MEMORY": "64"}, "MEMORY must be >= 128"),
            ({"MEMORY": "much"}, "MEMORY must be an integer"),
        ],
    )
    def test_invalid_values(self, clean_env, no_default_config, mock_env, env, message):
        mock_env(**env)
        with pytest.raises(ConfigError, match=message) as exc:
            load_settings()
        assert exc.value.stage == "config"


class TestNetworkInterfaces:
    def test_tap_device_env(self, clean_env, no_default_config, mock_env):
        mock_env(TAP_DEVICE="tap7")
        (iface,) = load_settings(run_name="vm").network_interfaces
        assert iface.iface_id == "eth0"
        assert iface.host_dev_name == "tap7"
        assert iface.guest_mac.startswith("52:54:00:")

    def test_file_interfaces(self, clean_env, tmp_path):
        path = _write(
            tmp_path,
            "network_interfaces:\n"
            "  - host_dev_name: tap0\n"
            "    guest_mac: 52:54:00:AB:CD:EF\n"
            "  - host_dev_name: tap1\n",
        )
        first, second = load_settings(path, run_name="vm").network_interfaces
        assert (first.iface_id, first.guest_mac) == ("eth0", "52:54:00:ab:cd:ef")
        assert second.iface_id == "eth1"
        assert second.guest_mac != first.guest_mac

    def test_generated_macs_are_stable(self, clean_env, tmp_path):
        path = _write(tmp_path, "network_interfaces:\n  - host_dev_name: tap0\n")
        first = load_settings(path, run_name="vm").network_interfaces[0].guest_mac
        assert first == load_settings(path, run_name="vm").network_interfaces[0].guest_mac

    @pytest.mark.parametrize(
        "body,message",
        [
            ("network_interfaces: tap0\n", "must be a list"),
            ("network_interfaces:\n  - tap0\n", "must be a mapping"),
            ("network_interfaces:\n  - iface_id: eth0\n", "host_dev_name is required"),
            (
                "network_interfaces:\n  - {iface_id: a, host_dev_name: t0}\n  - {iface_id: a, host_dev_name: t1}\n",
                "Duplicate network interface id 'a'",
            ),
            ("network_interfaces:\n  - {host_dev_name: t0, guest_mac: zz}\n", "Invalid guest_mac"),
        ],
    )
    def test_invalid_interfaces(self, clean_env, tmp_path, body, message):
        with pytest.raises(ConfigError, match=message):
            load_settings(_write(tmp_path, body))


def test_default_socket_path_falls_back_to_tempdir(monkeypatch, tmp_path):
    monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
    monkeypatch.setattr("c2vm.config.tempfile.gettempdir", lambda: str(tmp_path))
    assert default_socket_path("web") == tmp_path / "c2vm-web.sock"
