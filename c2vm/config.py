"""Configuration loading and environment variable parsing for c2vm."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from c2vm.constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DISK_SIZE,
    DEFAULT_FILESYSTEM,
    DEFAULT_MEMORY_MIB,
    DEFAULT_NAMESERVER,
    DEFAULT_VCPUS,
    MAC_ADDRESS_RE,
    MAX_VCPUS,
    MIN_MEMORY_MIB,
    OCI_CACHE_DIR,
    SUPPORTED_FILESYSTEMS,
    TRUTHY,
)
from c2vm.exceptions import ConfigError
from c2vm.models import NetworkInterface, Settings
from c2vm.utils import deterministic_mac, get_env, log, parse_int, validate_disk_size


def load_config_file(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Read the YAML settings file; a missing default file yields an empty mapping."""
    explicit = config_path is not None
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    if not config_path.exists():
        if explicit:
            raise ConfigError(f"Config file missing: {config_path}")
        log("DEBUG", f"No config file at {config_path}; using defaults")
        return {}
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"{config_path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ConfigError(f"Cannot read {config_path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a YAML mapping, got {type(data).__name__}")
    return data


def _pick(data: Dict[str, Any], key: str, env_name: str, default: Any) -> Any:
    """Environment wins over the file, the file wins over the default."""
    env_value = get_env(env_name)
    if env_value is not None and env_value.strip():
        return env_value.strip()
    if data.get(key) is not None:
        return data[key]
    return default


def _as_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in TRUTHY


def _parse_interfaces(data: Dict[str, Any], run_name: str) -> List[NetworkInterface]:
    tap_env = get_env("TAP_DEVICE")
    if tap_env is not None and tap_env.strip():
        entries: List[Any] = [{"iface_id": "eth0", "host_dev_name": tap_env.strip()}]
    else:
        entries = data.get("network_interfaces") or []
    if not isinstance(entries, list):
        raise ConfigError("network_interfaces must be a list of mappings")

    interfaces: List[NetworkInterface] = []
    seen_ids = set()
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ConfigError(f"network_interfaces[{index - 1}] must be a mapping")
        host_dev = str(entry.get("host_dev_name") or "").strip()
        if not host_dev:
            raise ConfigError(f"network_interfaces[{index - 1}].host_dev_name is required")
        iface_id = str(entry.get("iface_id") or f"eth{index - 1}").strip()
        if iface_id in seen_ids:
            raise ConfigError(f"Duplicate network interface id '{iface_id}'")
        seen_ids.add(iface_id)
        mac_raw = entry.get("guest_mac")
        mac = str(mac_raw).strip().lower() if mac_raw else None
        if mac and not MAC_ADDRESS_RE.match(mac):
            raise ConfigError(f"Invalid guest_mac '{mac_raw}' for {iface_id}. Use format aa:bb:cc:dd:ee:ff")
        if not mac:
            mac = deterministic_mac(f"{run_name}:{index}")
        interfaces.append(NetworkInterface(iface_id=iface_id, host_dev_name=host_dev, guest_mac=mac))
    return interfaces


def default_socket_path(run_name: str) -> Path:
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR") or tempfile.gettempdir()
    return Path(runtime_dir) / f"c2vm-{run_name}.sock"


def load_settings(config_path: Optional[Path] = None, run_name: str = "c2vm") -> Settings:
    data = load_config_file(config_path)

    disk_size = validate_disk_size(str(_pick(data, "disk_size", "DISK_SIZE", DEFAULT_DISK_SIZE)))

    filesystem = str(_pick(data, "filesystem", "FILESYSTEM", DEFAULT_FILESYSTEM)).lower()
    if filesystem not in SUPPORTED_FILESYSTEMS:
        supported = ", ".join(sorted(SUPPORTED_FILESYSTEMS))
        raise ConfigError(f"Unsupported FILESYSTEM '{filesystem}'. Supported: {supported}")

    vcpus = parse_int("VCPUS", _pick(data, "vcpus", "VCPUS", DEFAULT_VCPUS), min_val=1, max_val=MAX_VCPUS)
    memory_mib = parse_int("MEMORY", _pick(data, "memory_mib", "MEMORY", DEFAULT_MEMORY_MIB), min_val=MIN_MEMORY_MIB)

    cpu_template = _pick(data, "cpu_template", "CPU_TEMPLATE", None)
    if cpu_template is not None:
        cpu_template = str(cpu_template).strip() or None

    socket_raw = _pick(data, "socket_path", "FIRECRACKER_SOCKET", None)
    socket_path = Path(str(socket_raw)) if socket_raw else default_socket_path(run_name)

    return Settings(
        disk_size=disk_size,
        filesystem=filesystem,
        vcpus=vcpus,
        memory_mib=memory_mib,
        smt=_as_bool(_pick(data, "smt", "SMT", False)),
        cpu_template=cpu_template,
        extra_boot_args=str(_pick(data, "extra_boot_args", "EXTRA_BOOT_ARGS", "")).strip(),
        nameserver=str(_pick(data, "nameserver", "NAMESERVER", DEFAULT_NAMESERVER)).strip(),
        quote_command=_as_bool(_pick(data, "quote_command", "QUOTE_COMMAND", False)),
        cache_dir=Path(str(_pick(data, "cache_dir", "CACHE_DIR", OCI_CACHE_DIR))),
        socket_path=socket_path,
        network_interfaces=tuple(_parse_interfaces(data, run_name)),
    )
