"""PosixBackend: process groups on Linux and macOS.

Children start in a new session, so their pid is also their process group
id. Cleanup follows the graceful shutdown sequence: SIGINT to the group,
poll until the group is gone or the grace period ends, then SIGKILL.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from typing import Any

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1


class PosixBackend:
    """Process group control via sessions and killpg."""

    def platform(self) -> str:
        p = sys.platform
        if p.startswith("linux"):
            return "linux"
        return p

    def popen_kwargs(self) -> dict[str, Any]:
        return {"start_new_session": True}

    def send_signal(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            proc.send_signal(sig)
        except ProcessLookupError:
            pass

    def cleanup_group(self, proc: subprocess.Popen, grace_period: float) -> None:
        pgid = proc.pid
        if not self._kill_group(pgid, signal.SIGINT):
            return
        deadline = time.monotonic() + grace_period
        while time.monotonic() < deadline:
            time.sleep(_POLL_INTERVAL)
            # Reap the leader; a zombie still counts as a group member.
            proc.poll()
            if not self._kill_group(pgid, 0):
                return
        logger.debug("posix: process group %d ignored SIGINT, killing", pgid)
        self._kill_group(pgid, signal.SIGKILL)

    def _kill_group(self, pgid: int, sig: int) -> bool:
        """Signal the group. Returns False once the group no longer exists."""
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            return False
        except OSError as exc:
            logger.warning("posix: killpg(%d, %d) failed: %s", pgid, sig, exc)
            return False
        return True

    def is_closed_pipe_exit(self, returncode: int) -> bool:
        return returncode == -signal.SIGPIPE

    def signal_name(self, returncode: int) -> str | None:
        if returncode >= 0:
            return None
        try:
            return signal.Signals(-returncode).name
        except ValueError:
            return f"signal {-returncode}"
