"""Unmount, repair and shrink a populated disk image."""

from __future__ import annotations

import os
import re
import subprocess
from typing import Dict

from c2vm.disk import DiskAllocator, MountPoint
from c2vm.exceptions import AllocationError, FinalizationError
from c2vm.models import DiskImage
from c2vm.utils import describe_failure, log, run

# e2fsck: 0 = clean, 1 = errors corrected; anything else needs attention
_FSCK_OK = {0, 1}
_SUPERBLOCK_FIELD_RE = re.compile(r"^(Block count|Block size):\s+(\d+)\s*$", re.MULTILINE)


class ImageFinalizer:
    def __init__(self, allocator: DiskAllocator) -> None:
        self._allocator = allocator

    def finalize(self, disk: DiskImage, mount: MountPoint) -> DiskImage:
        if disk.finalized:
            raise FinalizationError(f"{disk.path} has already been finalized")
        try:
            self._allocator.unmount(mount)
        except AllocationError as exc:
            raise FinalizationError(str(exc.args[0])) from exc
        self.check(disk)
        self.shrink(disk)
        disk.finalized = True
        log("SUCCESS", f"Finalized {disk.path} ({disk.size_bytes} bytes)")
        return disk

    def check(self, disk: DiskImage) -> None:
        log("INFO", f"Checking filesystem on {disk.path}")
        try:
            result = run(["e2fsck", "-p", "-f", str(disk.path)], check=False, capture_output=True)
        except OSError as exc:
            raise FinalizationError(f"e2fsck failed: {describe_failure(exc)}") from exc
        if result.returncode not in _FSCK_OK:
            detail = (result.stderr or result.stdout or "").strip()
            raise FinalizationError(f"e2fsck reported uncorrected errors (status {result.returncode}): {detail}")
        if result.returncode == 1:
            log("WARN", f"e2fsck corrected errors on {disk.path}")

    def _superblock(self, disk: DiskImage) -> Dict[str, int]:
        result = run(["dumpe2fs", "-h", str(disk.path)], capture_output=True)
        fields = {name: int(value) for name, value in _SUPERBLOCK_FIELD_RE.findall(result.stdout)}
        if len(fields) != 2:
            raise FinalizationError(f"Could not read block geometry of {disk.path}")
        return fields

    def shrink(self, disk: DiskImage) -> None:
        log("INFO", f"Shrinking {disk.path} to its minimum size")
        try:
            run(["resize2fs", "-M", str(disk.path)], capture_output=True)
            fields = self._superblock(disk)
            fs_bytes = fields["Block count"] * fields["Block size"]
            if fs_bytes > disk.size_bytes:
                raise FinalizationError(f"Filesystem ({fs_bytes} bytes) exceeds its image ({disk.size_bytes} bytes)")
            current = disk.path.stat().st_size
            if current > fs_bytes:
                os.truncate(disk.path, fs_bytes)
            elif current < fs_bytes:
                raise FinalizationError(f"{disk.path} is smaller ({current} bytes) than its filesystem ({fs_bytes} bytes)")
        except (subprocess.CalledProcessError, OSError) as exc:
            raise FinalizationError(f"Failed to shrink {disk.path}: {describe_failure(exc)}") from exc
        disk.size_bytes = fs_bytes
