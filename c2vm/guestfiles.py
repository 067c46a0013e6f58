"""Files injected into the guest root: the PID-1 init script and host identity."""

from __future__ import annotations

import os
import shlex
import tempfile
from pathlib import Path
from typing import List

from c2vm.constants import (
    DEFAULT_NAMESERVER,
    HOSTS_CONTENT,
    HOSTS_PATH,
    INIT_SCRIPT_PATH,
    RESOLV_CONF_PATH,
)
from c2vm.disk import MountPoint
from c2vm.exceptions import C2VMError, MaterializationError
from c2vm.layers import resolve_in_root
from c2vm.models import ImageConfig
from c2vm.utils import log


def _write_atomically(mount: MountPoint, guest_path: str, content: str, mode: int) -> Path:
    """Replace ``guest_path`` in the mounted root; an existing symlink is replaced, not followed."""
    parent_rel, name = os.path.split(guest_path.lstrip("/"))
    try:
        parent = resolve_in_root(mount.join("/"), parent_rel, follow_last=True)
        parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=parent, prefix=f".{name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(content)
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, parent / name)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise
    except (OSError, C2VMError) as exc:
        raise MaterializationError(f"Failed to write {guest_path}: {exc}") from exc
    return parent / name


def render_init_script(config: ImageConfig, quote: bool = False) -> str:
    """Render the init script.

    By default arguments are joined with single spaces and environment entries
    are exported verbatim, so commands containing shell metacharacters are
    interpreted by the guest shell. ``quote=True`` shell-quotes both instead.
    """
    command = list(config.command)
    if not command:
        raise MaterializationError("Image defines neither Entrypoint nor Cmd; nothing to run as init")

    lines: List[str] = ["#!/bin/sh"]
    for entry in config.env:
        if quote:
            key, sep, value = entry.partition("=")
            lines.append(f"export {key}={shlex.quote(value)}" if sep else f"export {key}")
        else:
            lines.append(f"export {entry}")
    lines.append(shlex.join(command) if quote else " ".join(command))
    return "\n".join(lines) + "\n"


class InitSynthesizer:
    def __init__(self, quote: bool = False) -> None:
        self.quote = quote

    def write(self, mount: MountPoint, config: ImageConfig) -> Path:
        script = render_init_script(config, quote=self.quote)
        path = _write_atomically(mount, INIT_SCRIPT_PATH, script, 0o755)
        log("INFO", "init script created")
        return path


class HostConfigInjector:
    def __init__(self, nameserver: str = DEFAULT_NAMESERVER) -> None:
        self.nameserver = nameserver

    def write(self, mount: MountPoint) -> None:
        _write_atomically(mount, HOSTS_PATH, HOSTS_CONTENT, 0o644)
        _write_atomically(mount, RESOLV_CONF_PATH, f"nameserver {self.nameserver}\n", 0o644)
        log("INFO", f"Wrote {HOSTS_PATH} and {RESOLV_CONF_PATH}")
