"""Helpers for code running inside a child spawned by a Shell.

send_ready and send_vars report to the parent over stderr (see
procshell.messages). init_child_main applies the settings the parent
passes through the environment and should run before the child's own
logic.
"""

from __future__ import annotations

import logging
import os
import signal
import sys
import threading
from collections.abc import Mapping

from .env_filter import ENV_EXIT_AFTER, ENV_WATCH_PARENT
from .messages import encode_message
from .models import ChildMessage

logger = logging.getLogger(__name__)

WATCH_PARENT_INTERVAL = 1.0

_write_lock = threading.Lock()


def _send(msg: ChildMessage) -> None:
    data = encode_message(msg)
    with _write_lock:
        stream = sys.stderr
        buffer = getattr(stream, "buffer", None)
        stream.flush()
        if buffer is not None:
            buffer.write(data)
            buffer.flush()
        else:
            stream.write(data.decode())
            stream.flush()


def send_ready() -> None:
    """Tell the parent this process is ready; unblocks Cmd.await_ready."""
    _send(ChildMessage(type="ready"))


def send_vars(vars: Mapping[str, str]) -> None:
    """Send key/value pairs to the parent; merged into what Cmd.await_vars sees."""
    _send(ChildMessage(type="vars", vars=dict(vars)))


def watch_parent(
    interval: float = WATCH_PARENT_INTERVAL, parent_pid: int | None = None
) -> threading.Thread:
    """Exit this process once its parent exits.

    Polls the parent pid and exits when it differs from parent_pid (the
    current parent by default). A child whose expected parent is already
    gone exits on the first poll.
    """
    original = os.getppid() if parent_pid is None else parent_pid

    def poll() -> None:
        stop = threading.Event()
        while not stop.wait(interval):
            if os.getppid() != original:
                logger.error("child: parent process %d exited", original)
                os._exit(1)

    thread = threading.Thread(target=poll, name="procshell-watch-parent", daemon=True)
    thread.start()
    return thread


def maybe_watch_parent() -> bool:
    """Call watch_parent if the parent asked for it. Returns True if watching.

    The variable holds the parent's pid; any other non-empty value watches
    whichever process is the parent now.
    """
    raw = os.environ.pop(ENV_WATCH_PARENT, "")
    if not raw:
        return False
    watch_parent(parent_pid=int(raw) if raw.isdigit() else None)
    return True


def exit_after(seconds: float) -> threading.Timer:
    """Exit this process after seconds, whatever it is doing."""

    def expire() -> None:
        logger.error("child: exiting after %ss", seconds)
        os._exit(1)

    timer = threading.Timer(seconds, expire)
    timer.daemon = True
    timer.start()
    return timer


def maybe_exit_after() -> float:
    """Start the exit deadline requested by the parent. Returns it, or 0."""
    raw = os.environ.pop(ENV_EXIT_AFTER, "")
    if not raw:
        return 0.0
    seconds = float(raw)
    if seconds > 0:
        exit_after(seconds)
    return seconds


def init_child_main() -> None:
    """Apply the environment contract for a child spawned by a Shell.

    Also restores default SIGPIPE handling on POSIX, so writing into a
    pipeline whose reader exited ends the process like other programs.
    """
    maybe_watch_parent()
    maybe_exit_after()
    if hasattr(signal, "SIGPIPE"):
        signal.signal(signal.SIGPIPE, signal.SIG_DFL)
