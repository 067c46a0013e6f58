"""Thin client for the Firecracker REST API served on a Unix socket."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict
from urllib.parse import quote

try:
    import requests
    import requests_unixsocket  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("requests-unixsocket is required but not installed") from exc

from c2vm.exceptions import LaunchError
from c2vm.models import DriveSpec, VMConfig
from c2vm.network import render_network_interface
from c2vm.utils import log

REQUEST_TIMEOUT = 5.0


class FirecrackerClient:
    def __init__(self, socket_path: Path, timeout: float = REQUEST_TIMEOUT) -> None:
        self.base_url = "http+unix://" + quote(str(socket_path), safe="")
        self.timeout = timeout
        self.session = requests_unixsocket.Session()

    def put(self, path: str, payload: Dict[str, Any]) -> None:
        log("DEBUG", f"PUT {path} {payload}")
        try:
            response = self.session.put(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise LaunchError(f"Firecracker API request {path} failed: {exc}") from exc
        if response.status_code >= 300:
            try:
                fault = response.json().get("fault_message", response.text)
            except ValueError:
                fault = response.text
            raise LaunchError(f"Firecracker rejected {path} ({response.status_code}): {fault}")

    def close(self) -> None:
        self.session.close()


def boot_source_payload(config: VMConfig) -> Dict[str, Any]:
    return {"kernel_image_path": str(config.kernel_path), "boot_args": config.boot_args}


def drive_payload(drive: DriveSpec) -> Dict[str, Any]:
    return {
        "drive_id": drive.drive_id,
        "path_on_host": str(drive.path_on_host),
        "is_root_device": drive.is_root_device,
        "is_read_only": drive.is_read_only,
    }


def machine_config_payload(config: VMConfig) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "vcpu_count": config.vcpu_count,
        "mem_size_mib": config.mem_size_mib,
        "smt": config.smt,
    }
    if config.cpu_template:
        payload["cpu_template"] = config.cpu_template
    return payload


def apply_config(client: FirecrackerClient, config: VMConfig) -> None:
    """Push a full guest definition; the order matches what the API accepts pre-boot."""
    if config.metrics_path is not None:
        client.put("/metrics", {"metrics_path": str(config.metrics_path)})
    client.put("/boot-source", boot_source_payload(config))
    for drive in config.drives:
        client.put(f"/drives/{drive.drive_id}", drive_payload(drive))
    client.put("/machine-config", machine_config_payload(config))
    for iface in config.network_interfaces:
        client.put(f"/network-interfaces/{iface.iface_id}", render_network_interface(iface))


def start_instance(client: FirecrackerClient) -> None:
    client.put("/actions", {"action_type": "InstanceStart"})
