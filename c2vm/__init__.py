"""c2vm package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "disk",
    "exceptions",
    "finalize",
    "firecracker",
    "guestfiles",
    "launcher",
    "layers",
    "models",
    "network",
    "pipeline",
    "resolver",
    "runtime",
    "utils",
]
