"""Shared test fixtures: settings, in-memory layers and a mounted root on tmp_path."""

from __future__ import annotations

import hashlib
import io
import tarfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from c2vm.disk import MountPoint
from c2vm.models import DiskImage, LayerDescriptor, Settings

TAR_MEDIA_TYPE = "application/vnd.oci.image.layer.v1.tar"


def tar_entry(name: str, kind: str = "file", data: bytes = b"", mode: Optional[int] = None, link: str = "") -> Dict:
    return {"name": name, "kind": kind, "data": data, "mode": mode, "link": link}


def build_layer(entries: Iterable[Dict], compression: str = "") -> Tuple[LayerDescriptor, bytes]:
    """Build a layer tarball in memory and describe it with its sha256 digest."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=f"w:{compression}") as archive:
        for entry in entries:
            info = tarfile.TarInfo(entry["name"])
            info.mtime = 1700000000
            kind = entry["kind"]
            payload = None
            if kind == "file":
                info.type = tarfile.REGTYPE
                info.size = len(entry["data"])
                info.mode = 0o644 if entry["mode"] is None else entry["mode"]
                payload = io.BytesIO(entry["data"])
            elif kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = 0o755 if entry["mode"] is None else entry["mode"]
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = entry["link"]
                info.mode = 0o777
            elif kind == "hardlink":
                info.type = tarfile.LNKTYPE
                info.linkname = entry["link"]
                info.mode = 0o644
            elif kind == "fifo":
                info.type = tarfile.FIFOTYPE
                info.mode = 0o644 if entry["mode"] is None else entry["mode"]
            else:
                raise ValueError(kind)
            archive.addfile(info, payload)
    blob = buffer.getvalue()
    media_type = TAR_MEDIA_TYPE + ("+gzip" if compression == "gz" else "")
    digest = "sha256:" + hashlib.sha256(blob).hexdigest()
    return LayerDescriptor(digest=digest, media_type=media_type, size_bytes=len(blob)), blob


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Return Settings with the same defaults load_settings() would produce."""
    return Settings(
        disk_size="2G",
        filesystem="ext4",
        vcpus=1,
        memory_mib=512,
        smt=False,
        cpu_template=None,
        extra_boot_args="",
        nameserver="192.168.0.1",
        quote_command=False,
        cache_dir=tmp_path / "cache",
        socket_path=tmp_path / "fc.sock",
        network_interfaces=(),
    )


@pytest.fixture
def disk(tmp_path) -> DiskImage:
    path = tmp_path / "container.img"
    path.write_bytes(b"")
    return DiskImage(path=path, size_bytes=2 * 1024**3, filesystem_type="ext4", mounted=True)


@pytest.fixture
def mount(tmp_path, disk) -> MountPoint:
    """A MountPoint whose root is a plain directory; the allocator is a mock."""
    root = tmp_path / "root"
    root.mkdir()
    return MountPoint(disk, root, MagicMock())


# Environment variables load_settings() reads; cleared so host settings do not leak into tests.
_SETTINGS_ENV_VARS = [
    "DISK_SIZE",
    "FILESYSTEM",
    "VCPUS",
    "MEMORY",
    "SMT",
    "CPU_TEMPLATE",
    "EXTRA_BOOT_ARGS",
    "NAMESERVER",
    "QUOTE_COMMAND",
    "CACHE_DIR",
    "FIRECRACKER_SOCKET",
    "TAP_DEVICE",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _SETTINGS_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


def read_text(root: Path, guest_path: str) -> str:
    return (root / guest_path.lstrip("/")).read_text()
