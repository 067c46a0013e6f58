"""Ordered layer extraction onto a mounted root for c2vm.

Layers are applied oldest first. Every entry replaces whatever an earlier
layer left at the same path, whiteout markers remove lower-layer content,
and no entry may be created or resolved outside the mount root. Ownership
in the archives is ignored: everything lands owned by the extracting user.
"""

from __future__ import annotations

import hashlib
import os
import posixpath
import shutil
import stat
import tarfile
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Set

from c2vm.constants import (
    WHITEOUT_META_PREFIX,
    WHITEOUT_OPAQUE,
    WHITEOUT_PREFIX,
    ZSTD_MEDIA_SUFFIXES,
)
from c2vm.disk import MountPoint
from c2vm.exceptions import C2VMError, MaterializationError
from c2vm.models import ImageManifest, LayerDescriptor
from c2vm.utils import log

LayerReader = Callable[[str], BinaryIO]

_MAX_SYMLINK_HOPS = 255
_COPY_CHUNK = 1024 * 256  # 256 KiB


class _DigestReader:
    """File-like wrapper that hashes everything read through it."""

    def __init__(self, stream: BinaryIO, digest: str) -> None:
        algorithm, _, expected = digest.partition(":")
        if not expected:
            raise MaterializationError(f"Malformed layer digest '{digest}'")
        try:
            self._hash = hashlib.new(algorithm)
        except ValueError:
            raise MaterializationError(f"Unsupported digest algorithm '{algorithm}' in {digest}")
        self._stream = stream
        self._expected = expected.lower()
        self.digest = digest
        self.bytes_read = 0

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size)
        if chunk:
            self._hash.update(chunk)
            self.bytes_read += len(chunk)
        return chunk

    def drain(self) -> None:
        while self.read(_COPY_CHUNK):
            pass

    def verify(self) -> None:
        actual = self._hash.hexdigest()
        if actual != self._expected:
            raise MaterializationError(f"Layer {self.digest} failed verification (got {actual})")


def _normalize(name: str) -> Optional[str]:
    """Return the archive name relative to the root, or None for the root itself."""
    cleaned = posixpath.normpath(name.lstrip("/") or ".")
    if cleaned == ".":
        return None
    if cleaned == ".." or cleaned.startswith("../"):
        raise MaterializationError(f"Archive entry '{name}' escapes the mount root")
    return cleaned


def resolve_in_root(root: Path, rel: str, follow_last: bool = False) -> Path:
    """Resolve ``rel`` under ``root`` treating ``root`` as ``/`` for every symlink."""
    parts = [p for p in rel.split("/") if p not in ("", ".")]
    resolved: List[str] = []
    hops = 0
    while parts:
        part = parts.pop(0)
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = root.joinpath(*resolved, part)
        if (parts or follow_last) and candidate.is_symlink():
            hops += 1
            if hops > _MAX_SYMLINK_HOPS:
                raise MaterializationError(f"Too many levels of symbolic links resolving '{rel}'")
            target = os.readlink(candidate)
            if target.startswith("/"):
                resolved = []
            parts = [p for p in target.split("/") if p not in ("", ".")] + parts
            continue
        resolved.append(part)
    return root.joinpath(*resolved)


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif os.path.lexists(path):
        path.unlink()


class _LayerState:
    """Paths the current layer has written, used to scope its whiteouts."""

    def __init__(self) -> None:
        self.written: Set[str] = set()
        self.ancestors: Set[str] = set()

    def record(self, rel: str) -> None:
        self.written.add(rel)
        parent = posixpath.dirname(rel)
        while parent:
            self.ancestors.add(parent)
            parent = posixpath.dirname(parent)


class LayerMaterializer:
    def apply(self, mount: MountPoint, manifest: ImageManifest, layer_reader_for: LayerReader) -> None:
        try:
            root = mount.join("/")
        except C2VMError as exc:
            raise MaterializationError(exc.args[0]) from exc
        total = len(manifest)
        for index, layer in enumerate(manifest, start=1):
            log("INFO", f"Extracting layer {index}/{total} {layer.digest}")
            try:
                stream = layer_reader_for(layer.digest)
            except MaterializationError:
                raise
            except (C2VMError, OSError) as exc:
                raise MaterializationError(f"Cannot read layer {layer.digest}: {exc}") from exc
            self.apply_layer(root, layer, stream)
        log("SUCCESS", f"Applied {total} layer(s) to {root}")

    def apply_layer(self, root: Path, layer: LayerDescriptor, stream: BinaryIO) -> None:
        if layer.media_type.endswith(ZSTD_MEDIA_SUFFIXES):
            stream.close()
            raise MaterializationError(f"Layer {layer.digest} uses unsupported zstd compression")

        state = _LayerState()
        try:
            reader = _DigestReader(stream, layer.digest)
            with tarfile.open(fileobj=reader, mode="r|*") as archive:
                for member in archive:
                    self._apply_member(root, archive, member, state)
            reader.drain()
        except tarfile.ReadError as exc:
            if reader.bytes_read:
                raise MaterializationError(f"Failed to read layer {layer.digest}: {exc}") from exc
            log("DEBUG", f"Layer {layer.digest} is empty")
        except tarfile.TarError as exc:
            raise MaterializationError(f"Failed to read layer {layer.digest}: {exc}") from exc
        except OSError as exc:
            raise MaterializationError(f"Failed to write layer {layer.digest} to {root}: {exc}") from exc
        finally:
            stream.close()
        reader.verify()

    def _apply_member(self, root: Path, archive: tarfile.TarFile, member: tarfile.TarInfo, state: _LayerState) -> None:
        rel = _normalize(member.name)
        if rel is None:
            return
        parent_rel, base = posixpath.split(rel)

        if base == WHITEOUT_OPAQUE:
            directory = resolve_in_root(root, parent_rel, follow_last=True)
            if directory.is_dir():
                log("DEBUG", f"Opaque whiteout: {parent_rel or '/'}")
                self._purge(directory, parent_rel, state)
            return
        if base.startswith(WHITEOUT_META_PREFIX):
            return
        if base.startswith(WHITEOUT_PREFIX):
            victim_rel = posixpath.join(parent_rel, base[len(WHITEOUT_PREFIX):])
            if victim_rel in state.written:
                return
            victim = resolve_in_root(root, victim_rel)
            log("DEBUG", f"Whiteout: {victim_rel}")
            _remove(victim)
            return

        target = resolve_in_root(root, rel)
        self._clear_for(target, member)
        target.parent.mkdir(parents=True, exist_ok=True)
        mode = member.mode & 0o7777

        if member.isdir():
            target.mkdir(exist_ok=True)
            os.chmod(target, mode)
        elif member.isreg():
            self._write_file(archive, member, target, mode)
        elif member.issym():
            self._check_symlink(rel, member.linkname)
            os.symlink(member.linkname, target)
        elif member.islnk():
            source_rel = _normalize(member.linkname)
            source = resolve_in_root(root, source_rel or "")
            if source_rel is None or not os.path.lexists(source):
                raise MaterializationError(f"Hard link {rel} points at missing '{member.linkname}'")
            os.link(source, target, follow_symlinks=False)
        elif member.isfifo():
            os.mkfifo(target, mode)
        elif member.ischr() or member.isblk():
            kind = stat.S_IFCHR if member.ischr() else stat.S_IFBLK
            try:
                os.mknod(target, mode | kind, os.makedev(member.devmajor, member.devminor))
            except PermissionError:
                log("WARN", f"Skipping device node {rel}: not permitted")
                return
        else:
            log("WARN", f"Skipping {rel}: unsupported entry type {member.type!r}")
            return
        state.record(rel)

    def _clear_for(self, target: Path, member: tarfile.TarInfo) -> None:
        """Drop lower-layer content at ``target`` unless it is a directory being merged."""
        if not os.path.lexists(target):
            return
        if member.isdir() and target.is_dir() and not target.is_symlink():
            return
        _remove(target)

    def _write_file(self, archive: tarfile.TarFile, member: tarfile.TarInfo, target: Path, mode: int) -> None:
        source = archive.extractfile(member)
        if source is None:
            raise MaterializationError(f"Cannot read contents of {member.name}")
        fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_NOFOLLOW, 0o600)
        with source, os.fdopen(fd, "wb") as dest:
            shutil.copyfileobj(source, dest, _COPY_CHUNK)
        os.chmod(target, mode)
        os.utime(target, (member.mtime, member.mtime))

    def _check_symlink(self, rel: str, linkname: str) -> None:
        if linkname.startswith("/"):
            return
        resolved = posixpath.normpath(posixpath.join(posixpath.dirname(rel), linkname))
        if resolved == ".." or resolved.startswith("../"):
            raise MaterializationError(f"Symbolic link {rel} -> {linkname} escapes the mount root")

    def _purge(self, directory: Path, directory_rel: str, state: _LayerState) -> None:
        """Remove lower-layer children of ``directory``, keeping this layer's entries."""
        for child in list(directory.iterdir()):
            child_rel = posixpath.join(directory_rel, child.name) if directory_rel else child.name
            if child_rel in state.written or child_rel in state.ancestors:
                if child.is_dir() and not child.is_symlink():
                    self._purge(child, child_rel, state)
                continue
            _remove(child)
