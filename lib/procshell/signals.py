"""Cleanup of live Shells on SIGINT, SIGTERM and SIGQUIT.

Signal handlers are process-wide, so one SignalCleanup tracks every Shell
that asked for it. On a termination signal, a non-daemon thread cleans
up each Shell while holding its cleanup lock and then exits with status
1. Holding the locks keeps the main thread from starting new children
in the meantime.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
import weakref
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .shell import Shell

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS: tuple[int, ...] = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGQUIT")
    if hasattr(signal, name)
)


class SignalCleanup:
    """Installs termination-signal handlers while any Shell is registered."""

    def __init__(self, signals: tuple[int, ...] = TERMINATION_SIGNALS) -> None:
        self._signals = signals
        self._lock = threading.Lock()
        self._shells: weakref.WeakSet[Shell] = weakref.WeakSet()
        self._previous: dict[int, Any] = {}

    @property
    def installed(self) -> bool:
        return bool(self._previous)

    def register(self, sh: Shell) -> bool:
        """Track sh. Returns False when handlers cannot be installed from this thread."""
        if threading.current_thread() is not threading.main_thread():
            logger.debug("signals: not on the main thread, skipping handlers")
            return False
        with self._lock:
            if not self._previous:
                for sig in self._signals:
                    prev = signal.signal(sig, self._handle)
                    self._previous[sig] = signal.SIG_DFL if prev is None else prev
            self._shells.add(sh)
        return True

    def unregister(self, sh: Shell) -> None:
        """Stop tracking sh; restores the previous handlers after the last one."""
        with self._lock:
            self._shells.discard(sh)
            if len(self._shells) or not self._previous:
                return
            if threading.current_thread() is not threading.main_thread():
                return
            for sig, prev in self._previous.items():
                signal.signal(sig, prev)
            self._previous.clear()

    def _handle(self, signum: int, frame: Any) -> None:
        shells = list(self._shells)
        threading.Thread(
            target=self._cleanup_and_exit,
            args=(signum, shells),
            name="procshell-signal-cleanup",
        ).start()

    def _cleanup_and_exit(self, signum: int, shells: list[Shell]) -> None:
        logger.warning(
            "signals: received %s, cleaning up %d shell(s)",
            signal.Signals(signum).name,
            len(shells),
        )
        for sh in shells:
            # Never released: the process exits below.
            sh._cleanup_lock.acquire()
            if sh._called_cleanup:
                continue
            try:
                sh._cleanup()
            except Exception:
                logger.exception("signals: cleanup failed")
        os._exit(1)


signal_cleanup = SignalCleanup()
