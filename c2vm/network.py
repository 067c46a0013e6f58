"""Network interface payloads for the Firecracker API."""

from __future__ import annotations

from typing import Any, Dict

from c2vm.constants import MAC_ADDRESS_RE
from c2vm.exceptions import LaunchError
from c2vm.models import NetworkInterface


def render_network_interface(iface: NetworkInterface) -> Dict[str, Any]:
    """Render the ``PUT /network-interfaces/{iface_id}`` body for a TAP-backed NIC.

    The guest MAC is required here; load_settings() derives one from the run
    name and interface index when the configuration leaves it out.
    """
    if not iface.iface_id:
        raise LaunchError("Network interface id must not be empty")
    if not iface.host_dev_name:
        raise LaunchError(f"Network interface {iface.iface_id} needs a host TAP device")
    if not iface.guest_mac:
        raise LaunchError(f"Network interface {iface.iface_id} has no guest MAC")
    mac = iface.guest_mac.lower()
    if not MAC_ADDRESS_RE.match(mac):
        raise LaunchError(f"Invalid guest MAC '{mac}' for {iface.iface_id}")
    return {
        "iface_id": iface.iface_id,
        "host_dev_name": iface.host_dev_name,
        "guest_mac": mac,
    }
