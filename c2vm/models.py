"""Data models for c2vm."""

from __future__ import annotations

import enum
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple


@dataclass(frozen=True)
class LayerDescriptor:
    digest: str
    media_type: str
    size_bytes: int


@dataclass(frozen=True)
class ImageManifest:
    layers: Tuple[LayerDescriptor, ...]  # oldest first

    def __iter__(self):
        return iter(self.layers)

    def __len__(self) -> int:
        return len(self.layers)


@dataclass(frozen=True)
class ImageConfig:
    cmd: Tuple[str, ...] = ()
    env: Tuple[str, ...] = ()
    working_dir: str = ""
    entrypoint: Tuple[str, ...] = ()

    @property
    def command(self) -> Tuple[str, ...]:
        return tuple(self.entrypoint) + tuple(self.cmd)


@dataclass
class DiskImage:
    path: Path
    size_bytes: int
    filesystem_type: str
    mounted: bool = False
    finalized: bool = False


@dataclass(frozen=True)
class NetworkInterface:
    iface_id: str
    host_dev_name: str
    guest_mac: Optional[str] = None


@dataclass(frozen=True)
class DriveSpec:
    drive_id: str
    path_on_host: Path
    is_root_device: bool = False
    is_read_only: bool = False


@dataclass(frozen=True)
class VMConfig:
    kernel_path: Path
    boot_args: str
    drives: Tuple[DriveSpec, ...]
    vcpu_count: int
    mem_size_mib: int
    network_interfaces: Tuple[NetworkInterface, ...] = ()
    smt: bool = False
    cpu_template: Optional[str] = None
    metrics_path: Optional[Path] = None


class VMState(str, enum.Enum):
    CREATED = "Created"
    STARTING = "Starting"
    RUNNING = "Running"
    STOPPED = "Stopped"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in (VMState.STOPPED, VMState.FAILED)


@dataclass
class VMProcess:
    config: VMConfig
    socket_path: Path
    handle: Optional[subprocess.Popen] = None
    state: VMState = VMState.CREATED


@dataclass(frozen=True)
class ExitInfo:
    state: VMState
    returncode: Optional[int]
    cancelled: bool = False


@dataclass(frozen=True)
class Settings:
    disk_size: str
    filesystem: str
    vcpus: int
    memory_mib: int
    smt: bool
    cpu_template: Optional[str]
    extra_boot_args: str
    nameserver: str
    quote_command: bool
    cache_dir: Path
    socket_path: Path
    network_interfaces: Tuple[NetworkInterface, ...] = ()
