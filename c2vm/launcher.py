"""Guest lifecycle management: configure, start, supervise and stop a micro-VM."""

from __future__ import annotations

import errno
import socket
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from c2vm.constants import (
    ROOT_DRIVE_ID,
    SOCKET_WAIT_SECONDS,
    STOP_GRACE_SECONDS,
    WAIT_POLL_INTERVAL,
)
from c2vm.exceptions import C2VMError, LaunchError
from c2vm.firecracker import FirecrackerClient, apply_config, start_instance
from c2vm.models import (
    DiskImage,
    DriveSpec,
    ExitInfo,
    NetworkInterface,
    VMConfig,
    VMProcess,
    VMState,
)
from c2vm.utils import log


class GuestLauncher:
    def __init__(
        self,
        binary: Path,
        socket_path: Path,
        stop_grace: float = STOP_GRACE_SECONDS,
        socket_timeout: float = SOCKET_WAIT_SECONDS,
        client_factory: Callable[[Path], FirecrackerClient] = FirecrackerClient,
    ) -> None:
        self.binary = Path(binary)
        self.socket_path = Path(socket_path)
        self.stop_grace = stop_grace
        self.socket_timeout = socket_timeout
        self._client_factory = client_factory

    def configure(
        self,
        kernel_path: Path,
        boot_args: str,
        disk: DiskImage,
        vcpu_count: int,
        mem_size_mib: int,
        network_interfaces: Sequence[NetworkInterface] = (),
        smt: bool = False,
        cpu_template: Optional[str] = None,
        metrics_path: Optional[Path] = None,
    ) -> VMConfig:
        if not disk.finalized or disk.mounted:
            raise LaunchError(f"{disk.path} has not been finalized; refusing to boot it")
        kernel_path = Path(kernel_path)
        if not kernel_path.is_file():
            raise LaunchError(f"Kernel image not found: {kernel_path}")
        if vcpu_count < 1 or mem_size_mib < 1:
            raise LaunchError(f"Invalid machine size: {vcpu_count} vCPU(s), {mem_size_mib} MiB")
        return VMConfig(
            kernel_path=kernel_path,
            boot_args=boot_args,
            drives=(DriveSpec(ROOT_DRIVE_ID, disk.path, is_root_device=True, is_read_only=False),),
            vcpu_count=vcpu_count,
            mem_size_mib=mem_size_mib,
            network_interfaces=tuple(network_interfaces),
            smt=smt,
            cpu_template=cpu_template,
            metrics_path=Path(metrics_path) if metrics_path else None,
        )

    def _cleanup_socket(self) -> None:
        """Remove a stale API socket; refuse to touch one a live monitor still serves."""
        path = self.socket_path
        if not path.exists():
            return
        if not path.is_socket():
            raise LaunchError(f"{path} exists and is not a socket")
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
                client.settimeout(0.2)
                client.connect(str(path))
        except socket.timeout:
            pass
        except OSError as exc:
            if exc.errno not in {errno.ECONNREFUSED, errno.ENOENT}:
                raise LaunchError(f"Cannot probe socket {path}: {exc}") from exc
        else:
            raise LaunchError(f"Another Firecracker instance is listening on {path}")
        path.unlink(missing_ok=True)
        log("INFO", f"Removed stale socket {path}")

    def _prepare_metrics(self, config: VMConfig) -> None:
        if config.metrics_path is not None and not config.metrics_path.exists():
            config.metrics_path.parent.mkdir(parents=True, exist_ok=True)
            config.metrics_path.touch()

    def _wait_for_socket(self, vm: VMProcess) -> None:
        assert vm.handle is not None
        deadline = time.time() + self.socket_timeout
        while time.time() < deadline:
            if vm.handle.poll() is not None:
                raise LaunchError(f"firecracker exited prematurely (code {vm.handle.returncode})")
            if self.socket_path.exists():
                return
            time.sleep(0.05)
        raise LaunchError(f"Firecracker API socket {self.socket_path} did not appear")

    def start(self, config: VMConfig) -> VMProcess:
        vm = VMProcess(config=config, socket_path=self.socket_path)
        vm.state = VMState.STARTING
        try:
            self._cleanup_socket()
            self._prepare_metrics(config)
            self.socket_path.parent.mkdir(parents=True, exist_ok=True)
            cmd = [str(self.binary), "--api-sock", str(self.socket_path)]
            log("DEBUG", f"Running: {' '.join(cmd)}")
            # Own session: terminal signals reach c2vm, which then stops the guest itself.
            vm.handle = subprocess.Popen(cmd, start_new_session=True)
            self._wait_for_socket(vm)
            client = self._client_factory(self.socket_path)
            try:
                apply_config(client, config)
                start_instance(client)
            finally:
                client.close()
        except (C2VMError, OSError) as exc:
            vm.state = VMState.FAILED
            self._terminate(vm)
            if isinstance(exc, LaunchError):
                raise
            raise LaunchError(f"Failed to start firecracker: {exc}") from exc
        vm.state = VMState.RUNNING
        log("SUCCESS", f"Guest started (pid {vm.handle.pid})")
        return vm

    def wait(self, vm: VMProcess, cancel: Optional[threading.Event] = None, poll_interval: float = WAIT_POLL_INTERVAL) -> ExitInfo:
        """Block until the guest halts or ``cancel`` is set."""
        if vm.handle is None or vm.state is not VMState.RUNNING:
            if vm.state.terminal:
                return ExitInfo(vm.state, vm.handle.returncode if vm.handle else None)
            raise LaunchError(f"Guest is not running (state {vm.state.value})")

        log("INFO", "Waiting for the guest to halt")
        while True:
            try:
                returncode = vm.handle.poll()
            except OSError as exc:
                vm.state = VMState.FAILED
                self._terminate(vm)
                raise LaunchError(f"Lost track of firecracker: {exc}") from exc
            if returncode is not None:
                break
            if cancel is not None:
                if cancel.wait(poll_interval):
                    log("INFO", "Cancellation requested; stopping guest")
                    self.stop(vm)
                    return ExitInfo(vm.state, vm.handle.returncode, cancelled=True)
            else:
                time.sleep(poll_interval)

        self.socket_path.unlink(missing_ok=True)
        if returncode != 0:
            vm.state = VMState.FAILED
            raise LaunchError(f"firecracker exited with status {returncode}")
        vm.state = VMState.STOPPED
        log("INFO", "Guest halted")
        return ExitInfo(vm.state, returncode)

    def stop(self, vm: VMProcess) -> None:
        """Request termination; safe to call any number of times."""
        self._terminate(vm)
        if not vm.state.terminal:
            vm.state = VMState.STOPPED

    def _terminate(self, vm: VMProcess) -> None:
        proc = vm.handle
        if proc is None:
            return
        if proc.poll() is None:
            log("INFO", f"Stopping firecracker (pid {proc.pid})")
            proc.terminate()
            try:
                proc.wait(timeout=self.stop_grace)
            except subprocess.TimeoutExpired:
                log("WARN", "firecracker ignored SIGTERM; killing it")
                proc.kill()
                proc.wait()
        try:
            self.socket_path.unlink(missing_ok=True)
        except OSError as exc:
            log("WARN", f"Failed to remove socket {self.socket_path}: {exc}")
