"""The image-to-guest conversion pipeline.

Stages run strictly in order and none is retried or skipped:

    resolve -> allocate -> materialize -> synthesize -> finalize -> launch

The first failing stage ends the run with that stage's error. Cancellation is
checked before every stage and, once the guest runs, by the supervisor.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from c2vm.constants import FIRECRACKER_DEFAULT_BOOT_ARGS
from c2vm.disk import DiskAllocator
from c2vm.exceptions import C2VMError, PipelineCancelled, ResolutionError
from c2vm.finalize import ImageFinalizer
from c2vm.guestfiles import HostConfigInjector, InitSynthesizer
from c2vm.launcher import GuestLauncher
from c2vm.layers import LayerMaterializer
from c2vm.models import DiskImage, ExitInfo, ImageConfig, ImageManifest, Settings
from c2vm.resolver import ContentResolver
from c2vm.utils import log, parse_size_to_bytes


class Stage(str, enum.Enum):
    RESOLVE = "resolve"
    ALLOCATE = "allocate"
    MATERIALIZE = "materialize"
    SYNTHESIZE = "synthesize"
    FINALIZE = "finalize"
    LAUNCH = "launch"


@dataclass
class PipelineResult:
    disk: Optional[DiskImage] = None
    exit_info: Optional[ExitInfo] = None
    completed: List[Stage] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.exit_info is not None and self.exit_info.cancelled


def build_boot_args(extra: str = "") -> str:
    return f"{FIRECRACKER_DEFAULT_BOOT_ARGS} {extra}".strip()


class Pipeline:
    def __init__(
        self,
        settings: Settings,
        resolver: ContentResolver,
        launcher: Optional[GuestLauncher] = None,
        allocator: Optional[DiskAllocator] = None,
        materializer: Optional[LayerMaterializer] = None,
        init_synthesizer: Optional[InitSynthesizer] = None,
        host_injector: Optional[HostConfigInjector] = None,
        finalizer: Optional[ImageFinalizer] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self.settings = settings
        self.resolver = resolver
        self.launcher = launcher
        self.allocator = allocator or DiskAllocator()
        self.materializer = materializer or LayerMaterializer()
        self.init_synthesizer = init_synthesizer or InitSynthesizer(quote=settings.quote_command)
        self.host_injector = host_injector or HostConfigInjector(nameserver=settings.nameserver)
        self.finalizer = finalizer or ImageFinalizer(self.allocator)
        self.cancel = cancel or threading.Event()
        self.stage: Optional[Stage] = None
        self.result = PipelineResult()

    def _enter(self, stage: Stage) -> None:
        if self.stage is not None:
            self.result.completed.append(self.stage)
        if self.cancel.is_set():
            raise PipelineCancelled(f"cancelled before {stage.value}")
        self.stage = stage
        log("INFO", f"==> {stage.value}")

    def _resolve(self, reference: str):
        try:
            return self.resolver.pull(reference)
        except ResolutionError:
            raise
        except OSError as exc:
            raise ResolutionError(f"Failed to resolve {reference}: {exc}") from exc

    def convert(self, reference: str, output: Path) -> DiskImage:
        """Run every stage up to and including finalization."""
        self._enter(Stage.RESOLVE)
        manifest, config = self._resolve(reference)

        self._enter(Stage.ALLOCATE)
        size_bytes = parse_size_to_bytes(self.settings.disk_size)
        disk = self.allocator.allocate(Path(output), size_bytes, self.settings.filesystem)
        self.result.disk = disk
        with self.allocator.mount(disk) as mount:
            self._populate(mount, manifest, config)
            self._enter(Stage.FINALIZE)
            self.finalizer.finalize(disk, mount)
        return disk

    def _populate(self, mount, manifest: ImageManifest, config: ImageConfig) -> None:
        self._enter(Stage.MATERIALIZE)
        self.materializer.apply(mount, manifest, self.resolver.read_layer)
        self._enter(Stage.SYNTHESIZE)
        self.init_synthesizer.write(mount, config)
        self.host_injector.write(mount)

    def launch(self, disk: DiskImage, kernel_path: Path, metrics_path: Optional[Path] = None) -> ExitInfo:
        if self.launcher is None:
            raise C2VMError("no launcher configured", stage=Stage.LAUNCH.value)
        self._enter(Stage.LAUNCH)
        vm_config = self.launcher.configure(
            kernel_path,
            build_boot_args(self.settings.extra_boot_args),
            disk,
            self.settings.vcpus,
            self.settings.memory_mib,
            self.settings.network_interfaces,
            smt=self.settings.smt,
            cpu_template=self.settings.cpu_template,
            metrics_path=metrics_path,
        )
        vm = self.launcher.start(vm_config)
        try:
            exit_info = self.launcher.wait(vm, cancel=self.cancel)
        finally:
            self.launcher.stop(vm)
        self.result.exit_info = exit_info
        return exit_info

    def run(
        self,
        reference: str,
        output: Path,
        kernel_path: Optional[Path] = None,
        metrics_path: Optional[Path] = None,
        boot: bool = True,
    ) -> PipelineResult:
        disk = self.convert(reference, output)
        if boot:
            if kernel_path is None:
                raise C2VMError("a kernel image is required to boot", stage=Stage.LAUNCH.value)
            self.launch(disk, kernel_path, metrics_path)
        self.result.completed.append(self.stage)
        self.stage = None
        return self.result
