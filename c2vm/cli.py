"""CLI entry point for c2vm."""

from __future__ import annotations

import argparse
import signal
import threading
from pathlib import Path
from typing import List, Optional

from c2vm.config import load_settings
from c2vm.exceptions import C2VMError, PipelineCancelled
from c2vm.launcher import GuestLauncher
from c2vm.pipeline import Pipeline
from c2vm.resolver import resolver_for
from c2vm.runtime import preflight
from c2vm.utils import log

EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="c2vm",
        description="Convert a container image into a raw disk image and boot it in a Firecracker micro-VM",
    )
    parser.add_argument("image", help="Image reference (registry reference, or oci:<layout-dir>[:<tag>])")
    parser.add_argument("--out", default="container.img", help="Path to store the disk image")
    parser.add_argument("--kernel", help="Path to the guest Linux kernel image")
    parser.add_argument("--firecracker-binary", help="Path to the firecracker binary")
    parser.add_argument("--metrics-sink", help="File or FIFO receiving Firecracker metrics")
    parser.add_argument("--config", help="YAML settings file (default: /etc/c2vm/config.yaml)")
    parser.add_argument("--no-boot", action="store_true", help="Stop after producing the disk image")
    return parser


def install_cancel_handlers(cancel: threading.Event) -> dict:
    """Route SIGINT/SIGTERM to ``cancel``; returns the previous handlers."""

    def _request_cancel(signum, frame):
        sig_name = signal.Signals(signum).name
        if cancel.is_set():
            log("WARN", f"{sig_name} received again; already shutting down")
            return
        log("INFO", f"{sig_name} received, cancelling")
        cancel.set()

    return {sig: signal.signal(sig, _request_cancel) for sig in (signal.SIGINT, signal.SIGTERM)}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    boot = not args.no_boot

    if boot and not args.kernel:
        log("ERROR", "a linux kernel is required (--kernel)")
        return 1
    if boot and not args.firecracker_binary:
        log("ERROR", "the path to the firecracker binary is required (--firecracker-binary)")
        return 1

    output = Path(args.out)
    try:
        settings = load_settings(Path(args.config) if args.config else None, run_name=output.stem or "c2vm")
    except C2VMError as exc:
        log("ERROR", str(exc))
        return 1

    cancel = threading.Event()
    previous = install_cancel_handlers(cancel)
    try:
        preflight(settings.filesystem, boot=boot)
        launcher = GuestLauncher(Path(args.firecracker_binary), settings.socket_path) if boot else None
        pipeline = Pipeline(settings, resolver_for(args.image, settings.cache_dir), launcher=launcher, cancel=cancel)
        result = pipeline.run(
            args.image,
            output,
            kernel_path=Path(args.kernel) if args.kernel else None,
            metrics_path=Path(args.metrics_sink) if args.metrics_sink else None,
            boot=boot,
        )
    except PipelineCancelled as exc:
        log("WARN", str(exc))
        return EXIT_CANCELLED
    except C2VMError as exc:
        log("ERROR", str(exc))
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if result.cancelled:
        log("WARN", "Guest stopped on request")
        return EXIT_CANCELLED
    if boot:
        log("SUCCESS", "Guest exited cleanly")
    else:
        log("SUCCESS", f"Disk image ready at {output} ({result.disk.size_bytes} bytes)")
    return 0
