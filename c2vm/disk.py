"""Raw disk allocation and loop mounting for c2vm."""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path
from typing import Optional

from c2vm.constants import SUPPORTED_FILESYSTEMS
from c2vm.exceptions import AllocationError
from c2vm.models import DiskImage
from c2vm.utils import describe_failure, ensure_directory, log, run


class MountPoint:
    """Scoped directory bound to one mounted DiskImage.

    Usable as a context manager: leaving the block releases the mount if
    nothing released it earlier. Release failures on that path are logged,
    never raised, so they cannot mask the error that ended the block.
    """

    def __init__(self, disk: DiskImage, path: Path, allocator: "DiskAllocator") -> None:
        self.disk = disk
        self.path = path
        self._allocator = allocator
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    def join(self, guest_path: str) -> Path:
        """Map an absolute guest path to its location under the mount root."""
        if self._released:
            raise AllocationError(f"{self.path} is no longer mounted")
        return self.path / guest_path.lstrip("/")

    def _mark_released(self) -> None:
        self._released = True

    def __enter__(self) -> "MountPoint":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._released:
            return
        try:
            self._allocator.unmount(self)
        except AllocationError as release_exc:
            log("WARN", f"Failed to release {self.path}: {release_exc}")


class DiskAllocator:
    def allocate(self, path: Path, size_bytes: int, filesystem_type: str) -> DiskImage:
        """Create and format a raw image, publishing it at ``path`` only once complete."""
        if filesystem_type not in SUPPORTED_FILESYSTEMS:
            supported = ", ".join(sorted(SUPPORTED_FILESYSTEMS))
            raise AllocationError(f"Unsupported filesystem '{filesystem_type}'. Supported: {supported}")
        if size_bytes <= 0:
            raise AllocationError(f"Disk size must be positive (got {size_bytes})")

        path = Path(path)
        try:
            ensure_directory(path.parent)
            with tempfile.NamedTemporaryFile(dir=path.parent, prefix=f".{path.name}.", delete=False) as tmp:
                tmp_path = Path(tmp.name)
        except OSError as exc:
            raise AllocationError(f"Cannot create a temporary image next to {path}: {exc}") from exc

        log("INFO", f"Allocating {size_bytes} bytes for {path}")
        try:
            run(["fallocate", "-l", str(size_bytes), str(tmp_path)], capture_output=True)
            actual = tmp_path.stat().st_size
            if actual != size_bytes:
                raise AllocationError(f"Reserved {actual} bytes for {path}, expected {size_bytes}")
            run([f"mkfs.{filesystem_type}", "-F", "-q", str(tmp_path)], capture_output=True)
            os.replace(tmp_path, path)
        except (subprocess.CalledProcessError, OSError) as exc:
            tmp_path.unlink(missing_ok=True)
            raise AllocationError(f"Failed to create {path}: {describe_failure(exc)}") from exc
        except AllocationError:
            tmp_path.unlink(missing_ok=True)
            raise

        log("SUCCESS", f"Created {filesystem_type} image {path}")
        return DiskImage(path=path, size_bytes=size_bytes, filesystem_type=filesystem_type)

    def _attached_loop_devices(self, disk: DiskImage) -> Optional[str]:
        try:
            result = run(["losetup", "-j", str(disk.path)], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise AllocationError(f"Cannot query loop devices for {disk.path}: {describe_failure(exc)}") from exc
        return result.stdout.strip() or None

    def mount(self, disk: DiskImage) -> MountPoint:
        if disk.mounted:
            raise AllocationError(f"{disk.path} is already mounted")
        busy = self._attached_loop_devices(disk)
        if busy:
            raise AllocationError(f"{disk.path} is busy (attached to {busy.split(':', 1)[0]})")

        try:
            mount_dir = Path(tempfile.mkdtemp(prefix="c2vm"))
        except OSError as exc:
            raise AllocationError(f"Failed to create mount directory: {exc}") from exc

        try:
            run(["mount", "-o", "loop", str(disk.path), str(mount_dir)], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            mount_dir.rmdir()
            raise AllocationError(f"Failed to mount {disk.path}: {describe_failure(exc)}") from exc

        disk.mounted = True
        log("INFO", f"Mounted {disk.path} on {mount_dir}")
        return MountPoint(disk, mount_dir, self)

    def unmount(self, mount: MountPoint) -> None:
        if not mount.active:
            return
        log("INFO", f"Unmounting {mount.path}")
        try:
            run(["umount", str(mount.path)], capture_output=True)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise AllocationError(f"Failed to unmount {mount.path}: {describe_failure(exc)}") from exc
        mount._mark_released()
        mount.disk.mounted = False
        try:
            mount.path.rmdir()
        except OSError as exc:
            log("WARN", f"Failed to remove mount directory {mount.path}: {exc}")
