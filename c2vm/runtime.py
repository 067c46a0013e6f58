"""Host capability checks run before the pipeline starts."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import List

from c2vm.constants import REQUIRED_TOOLS
from c2vm.exceptions import AllocationError, LaunchError
from c2vm.utils import kvm_available, log, missing_tools

CAP_SYS_ADMIN = 21


@dataclass
class RuntimeInfo:
    engine: str  # "docker", "podman", "kubernetes", "host"
    rootless: bool
    can_mount: bool
    kvm: bool


def _detect_engine() -> str:
    if Path("/var/run/secrets/kubernetes.io").exists():
        return "kubernetes"
    if Path("/run/.containerenv").exists():
        return "podman"
    if Path("/.dockerenv").exists():
        return "docker"
    return "host"


def _is_rootless() -> bool:
    """UID 0 inside mapped to a non-zero UID outside means a user namespace."""
    try:
        with open("/proc/self/uid_map") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 3 and parts[0] == "0" and parts[1] != "0":
                    return True
        return False
    except OSError:
        return False


def _has_cap_sys_admin() -> bool:
    """Loop mounts need CAP_SYS_ADMIN in the effective set."""
    try:
        with open("/proc/self/status") as f:
            for line in f:
                if line.startswith("CapEff:"):
                    return bool(int(line.split(":", 1)[1].strip(), 16) & (1 << CAP_SYS_ADMIN))
        return False
    except (OSError, ValueError):
        return False


def detect_runtime() -> RuntimeInfo:
    info = RuntimeInfo(
        engine=_detect_engine(),
        rootless=_is_rootless(),
        can_mount=_has_cap_sys_admin(),
        kvm=kvm_available(),
    )
    return info


def preflight(filesystem: str, boot: bool) -> RuntimeInfo:
    """Fail early on hosts that cannot finish the pipeline."""
    info = detect_runtime()
    log("INFO", f"Runtime: engine={info.engine} rootless={info.rootless} can_mount={info.can_mount} kvm={info.kvm}")
    tools: List[str] = list(REQUIRED_TOOLS) + [f"mkfs.{filesystem}"]
    missing = missing_tools(tools)
    if missing:
        raise AllocationError(f"Required host tools not found: {', '.join(missing)}")
    if not info.can_mount:
        log("WARN", f"No CAP_SYS_ADMIN (uid {os.geteuid()}, engine {info.engine}); mounting the image will likely fail")
    if info.rootless:
        log("WARN", f"Rootless {info.engine} detected; loop devices may be unavailable")
    if boot and not info.kvm:
        raise LaunchError("/dev/kvm is not available; Firecracker requires KVM (use --no-boot to only convert)")
    return info
