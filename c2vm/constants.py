"""Global constants and path configuration for c2vm."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(os.environ.get("C2VM_CONFIG", "/etc/c2vm/config.yaml"))
STATE_DIR = Path("/var/lib/c2vm")
OCI_CACHE_DIR = STATE_DIR / "oci"
TRUTHY = {"1", "true", "yes", "on"}
MAC_ADDRESS_RE = re.compile(r"^[0-9a-f]{2}(:[0-9a-f]{2}){5}$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
DEFAULT_DISK_SIZE = "2G"
SUPPORTED_FILESYSTEMS = {"ext2", "ext3", "ext4"}
DEFAULT_FILESYSTEM = "ext4"

# Paths inside the guest root filesystem
INIT_SCRIPT_PATH = "/init.sh"
HOSTS_PATH = "/etc/hosts"
RESOLV_CONF_PATH = "/etc/resolv.conf"
HOSTS_CONTENT = "127.0.0.1\tlocalhost\n"
DEFAULT_NAMESERVER = "192.168.0.1"

# OCI layer whiteouts
WHITEOUT_PREFIX = ".wh."
WHITEOUT_META_PREFIX = ".wh..wh."
WHITEOUT_OPAQUE = ".wh..wh..opq"

OCI_PLATFORM = {"os": "linux", "architecture": "amd64"}
OCI_INDEX_MEDIA_TYPES = {
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
}
ZSTD_MEDIA_SUFFIXES = ("+zstd", ".zstd")

FIRECRACKER_DEFAULT_BOOT_ARGS = (
    "console=ttyS0 reboot=k panic=1 acpi=off pci=off "
    "i8042.noaux i8042.nomux i8042.nopnp i8042.dumbkbd "
    f"init={INIT_SCRIPT_PATH} random.trust_cpu=on"
)
ROOT_DRIVE_ID = "rootfs"
DEFAULT_VCPUS = 1
DEFAULT_MEMORY_MIB = 512
MAX_VCPUS = 32
MIN_MEMORY_MIB = 128
STOP_GRACE_SECONDS = 5.0
SOCKET_WAIT_SECONDS = 10.0
WAIT_POLL_INTERVAL = 0.5

REQUIRED_TOOLS = ("fallocate", "mount", "umount", "losetup", "e2fsck", "resize2fs", "dumpe2fs")
