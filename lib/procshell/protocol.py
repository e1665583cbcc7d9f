"""ProcessGroupBackend protocol: the platform-specific half of process control.

Each platform (POSIX, Windows) implements this protocol. Cmd and Shell
use it to start children in their own process group, signal them, tear
the group down and classify exits.
"""

from __future__ import annotations

import subprocess
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ProcessGroupBackend(Protocol):
    """Platform operations on child processes and their groups."""

    def platform(self) -> str:
        """Return the platform: 'linux', 'darwin', or 'windows'."""
        ...

    def popen_kwargs(self) -> dict[str, Any]:
        """Extra subprocess.Popen arguments that start a new process group."""
        ...

    def send_signal(self, proc: subprocess.Popen, sig: int) -> None:
        """Send sig to the process. A process that already exited is not an error."""
        ...

    def cleanup_group(self, proc: subprocess.Popen, grace_period: float) -> None:
        """Stop the process group gracefully, killing it after grace_period seconds."""
        ...

    def is_closed_pipe_exit(self, returncode: int) -> bool:
        """Whether a return code means the process died writing to a closed pipe."""
        ...

    def signal_name(self, returncode: int) -> str | None:
        """Name of the signal that killed the process, or None."""
        ...
