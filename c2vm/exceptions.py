"""Custom exceptions for c2vm."""

from __future__ import annotations

from typing import Optional


class C2VMError(RuntimeError):
    """Raised on unrecoverable configuration or pipeline errors."""

    stage = "c2vm"

    def __init__(self, message: str, stage: Optional[str] = None) -> None:
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"{self.stage}: {self.args[0]}"


class ConfigError(C2VMError):
    stage = "config"


class ResolutionError(C2VMError):
    stage = "resolve"


class AllocationError(C2VMError):
    stage = "allocate"


class MaterializationError(C2VMError):
    stage = "materialize"


class FinalizationError(C2VMError):
    stage = "finalize"


class LaunchError(C2VMError):
    stage = "launch"


class PipelineCancelled(C2VMError):
    """Cancellation observed before ``stage`` could run."""

    stage = "cancelled"
