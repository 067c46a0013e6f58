"""Utility functions for c2vm."""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional

from c2vm.constants import _LOG_VERBOSE, DISK_SIZE_RE
from c2vm.exceptions import ConfigError

_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def log(level: str, message: str) -> None:
    """Print a levelled, coloured log line; DEBUG only when LOG_VERBOSE is set."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def parse_int(name: str, raw: object, min_val: int = 1, max_val: Optional[int] = None) -> int:
    try:
        value = int(str(raw))
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ConfigError(f"Invalid DISK_SIZE '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '2G')")
    return raw


def parse_size_to_bytes(raw: str) -> int:
    """Convert '2G' style sizes to bytes (binary units)."""
    validate_disk_size(raw)
    suffix = raw[-1].upper() if raw[-1].isalpha() else ""
    number = raw[:-1] if suffix else raw
    return int(number) * _SIZE_UNITS[suffix]


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDWR)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def deterministic_mac(seed: str) -> str:
    digest = hashlib.sha256(seed.encode("utf-8")).digest()
    octets = [0x52, 0x54, 0x00, digest[0], digest[1], digest[2]]
    octets[3] = octets[3] | 0x02  # ensure locally administered bit
    octets[3] = octets[3] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def missing_tools(tools: Iterable[str]) -> List[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging.

    The child gets its own session so a terminal Ctrl-C reaches only c2vm,
    which finishes the current tool before acting on the cancellation.
    """
    log("DEBUG", f"Running: {' '.join(cmd)}")
    kwargs.setdefault("start_new_session", True)
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def describe_failure(exc: Exception) -> str:
    """Render a tool failure with its stderr when captured."""
    if isinstance(exc, subprocess.CalledProcessError):
        tool = exc.cmd[0] if isinstance(exc.cmd, (list, tuple)) and exc.cmd else exc.cmd
        detail = (exc.stderr or "").strip()
        message = f"{tool} exited with status {exc.returncode}"
        return f"{message}: {detail}" if detail else message
    if isinstance(exc, FileNotFoundError) and exc.filename:
        return f"{exc.filename} not found"
    return str(exc)
