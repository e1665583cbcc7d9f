"""WindowsBackend: process groups via CREATE_NEW_PROCESS_GROUP.

Windows has no graceful group signal that reaches console-less children,
so cleanup terminates the process outright.
"""

from __future__ import annotations

import logging
import subprocess
from typing import Any

logger = logging.getLogger(__name__)


class WindowsBackend:
    """Process control for Windows hosts."""

    def platform(self) -> str:
        return "windows"

    def popen_kwargs(self) -> dict[str, Any]:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}

    def send_signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            proc.send_signal(sig)
        except (ProcessLookupError, PermissionError):
            # Access is denied once the process has exited.
            pass

    def cleanup_group(self, proc: subprocess.Popen, grace_period: float) -> None:
        if proc.poll() is not None:
            return
        try:
            proc.kill()
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning("windows: kill(%d) failed: %s", proc.pid, exc)

    def is_closed_pipe_exit(self, returncode: int) -> bool:
        return False

    def signal_name(self, returncode: int) -> str | None:
        return None
