"""Platform backends for process group control."""

from __future__ import annotations

import sys

from ..protocol import ProcessGroupBackend
from .posix import PosixBackend
from .windows import WindowsBackend


def default_backend() -> ProcessGroupBackend:
    """Return the backend for the running platform."""
    if sys.platform.startswith("win"):
        return WindowsBackend()
    return PosixBackend()


__all__ = ["PosixBackend", "WindowsBackend", "default_backend"]
