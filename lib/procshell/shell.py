"""Shell: owns child processes, temp files and dirs, and cleanup callbacks.

Every error from every operation goes through Shell.handle_error, which
records it in Shell.err and then, depending on ShellOpts, logs and
continues, calls opts.fatal, or raises. Calling methods after cleanup,
or while Shell.err is set, raises UsageError.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import shutil
import sys
import tempfile
import threading
from collections.abc import Callable
from typing import IO, Any

from .backends import default_backend
from .cmd import Cmd
from .env_filter import ENV_INVOCATION, filter_env_vars, merge_vars
from .errors import (
    ERR_ALREADY_CALLED_CLEANUP,
    ERR_DID_NOT_CALL_INIT_MAIN,
    ERR_SHELL_ERR_SET,
    UsageError,
)
from .models import ShellOpts
from .protocol import ProcessGroupBackend
from .registry import Func
from .signals import signal_cleanup

logger = logging.getLogger(__name__)


class Shell:
    """A scope for child processes and temporary resources.

    Use as a context manager, or call cleanup() when done. ``vars`` seeds
    the environment of every Cmd created afterwards; ``args`` is appended
    to every Cmd's arguments.
    """

    def __init__(
        self,
        opts: ShellOpts | None = None,
        backend: ProcessGroupBackend | None = None,
    ) -> None:
        self.opts = opts if opts is not None else ShellOpts.from_env()
        self.err: BaseException | None = None
        self.vars: dict[str, str] = filter_env_vars(self.opts.env_policy, os.environ)
        self.args: list[str] = []
        self._backend = backend if backend is not None else default_backend()
        # Guards _called_cleanup, _cmds and the temp resource lists.
        self._cleanup_lock = threading.RLock()
        self._called_cleanup = False
        self._cmds: list[Cmd] = []
        self._temp_files: list[IO[bytes]] = []
        self._temp_dirs: list[str] = []
        self._dir_stack: list[str] = []
        self._cleanup_handlers: list[Callable[[], Any]] = []
        self._handles_signals = self.opts.handle_signals and signal_cleanup.register(
            self
        )

    def __enter__(self) -> Shell:
        return self

    def __exit__(self, *exc) -> None:
        self.cleanup()

    # -- Error handling ------------------------------------------------------

    def ok(self) -> None:
        """Raise UsageError if this Shell may not be used."""
        with self._cleanup_lock:
            if self._called_cleanup:
                raise UsageError(ERR_ALREADY_CALLED_CLEANUP)
        if self.err is not None:
            raise UsageError(f"{ERR_SHELL_ERR_SET}: {self.err}")

    def handle_error(self, err: BaseException | None) -> None:
        """Record err as Shell.err, then continue, call opts.fatal, or raise it."""
        self.ok()
        self._handle_error(err)

    def _handle_error(self, err: BaseException | None) -> None:
        self.err = err
        if err is None:
            return
        if self.opts.continue_on_error:
            logger.warning("shell: %s", err)
            return
        logger.error("shell: %s", err)
        if self.opts.fatal is not None:
            self.opts.fatal(f"{type(err).__name__}: {err}")
            return
        raise err

    @contextlib.contextmanager
    def _reporting(self):
        try:
            yield
        except Exception as exc:
            self._handle_error(exc)
        else:
            self._handle_error(None)

    # -- Commands ------------------------------------------------------------

    def cmd(self, name: str, *args: str) -> Cmd | None:
        """Return a Cmd for an executable; bare names are looked up on vars['PATH']."""
        self.ok()
        with self._reporting():
            return self._cmd(name, *args)

    def _cmd(self, name: str, *args: str) -> Cmd:
        path = name
        if os.path.basename(name) == name:
            found = shutil.which(name, path=self.vars.get("PATH", os.defpath))
            if found is None:
                raise FileNotFoundError(f"failed to locate executable {name!r}")
            path = found
        return self._add_cmd(dict(self.vars), path, [*args, *self.args])

    def func_cmd(self, func: Func, *args: Any) -> Cmd | None:
        """Return a Cmd that runs a registered function in a child process."""
        self.ok()
        with self._reporting():
            return self._func_cmd(func, *args)

    def _func_cmd(self, func: Func, *args: Any) -> Cmd:
        registry = func.registry
        encoded = registry.encode(func.name, *args)
        if registry.location:
            argv = ["-m", "procshell", registry.location]
        else:
            if not registry.called_init_main:
                raise UsageError(ERR_DID_NOT_CALL_INIT_MAIN)
            argv = list(sys.argv)
        vars = merge_vars(self.vars, {ENV_INVOCATION: encoded})
        return self._add_cmd(vars, sys.executable, [*argv, *self.args])

    def _add_cmd(self, vars: dict[str, str], path: str, args: list[str]) -> Cmd:
        c = Cmd(self, vars, path, args)
        with self._cleanup_lock:
            self._cmds.append(c)
        return c

    def wait(self) -> None:
        """Wait for every started Cmd that has not been waited on yet.

        Reports the last failure.
        """
        self.ok()
        with self._reporting():
            self._wait()

    def _wait(self) -> None:
        last: BaseException | None = None
        for c in list(self._cmds):
            if not c._started or c._called_wait:
                continue
            try:
                c._wait()
            except Exception as exc:
                err = c._record_error(exc)
                if err is not None:
                    last = err
        if last is not None:
            raise last

    async def wait_async(self) -> None:
        await asyncio.to_thread(self.wait)

    # -- Files and directories -----------------------------------------------

    def move(self, oldpath: str, newpath: str) -> None:
        """Rename oldpath to newpath, copying across filesystems."""
        self.ok()
        with self._reporting():
            shutil.move(oldpath, newpath)

    def make_temp_file(self) -> IO[bytes] | None:
        """Create an open temp file, closed and removed at cleanup."""
        self.ok()
        with self._reporting():
            f = tempfile.NamedTemporaryFile(prefix="procshell-", delete=False)
            with self._cleanup_lock:
                self._temp_files.append(f)
            return f

    def make_temp_dir(self) -> str | None:
        """Create a temp directory, removed at cleanup."""
        self.ok()
        with self._reporting():
            name = tempfile.mkdtemp(prefix="procshell-")
            with self._cleanup_lock:
                self._temp_dirs.append(name)
            return name

    def pushd(self, dir: str) -> None:
        """Change into dir, remembering the current directory."""
        self.ok()
        with self._reporting():
            cwd = os.getcwd()
            os.chdir(dir)
            self._dir_stack.append(cwd)

    def popd(self) -> None:
        """Return to the directory saved by the matching pushd."""
        self.ok()
        with self._reporting():
            if not self._dir_stack:
                raise UsageError("dir stack is empty")
            os.chdir(self._dir_stack[-1])
            self._dir_stack.pop()

    # -- Cleanup -------------------------------------------------------------

    def add_cleanup_handler(self, fn: Callable[[], Any]) -> None:
        """Run fn at cleanup. Handlers run last-in first-out."""
        self.ok()
        with self._cleanup_lock:
            self._cleanup_handlers.append(fn)

    def cleanup(self) -> None:
        """Stop all children and release everything this Shell created.

        Idempotent. Failing handlers do not stop the rest; the first
        failure is raised afterwards.
        """
        with self._cleanup_lock:
            if not self._called_cleanup:
                self._cleanup()

    def _cleanup(self) -> None:
        self._called_cleanup = True
        self._cleanup_running_cmds()
        for f in self._temp_files:
            try:
                f.close()
                os.remove(f.name)
            except Exception as exc:
                logger.warning("shell: removing temp file %s failed: %s", f.name, exc)
        for d in self._temp_dirs:
            try:
                shutil.rmtree(d)
            except Exception as exc:
                logger.warning("shell: removing temp dir %s failed: %s", d, exc)
        if self._dir_stack:
            try:
                os.chdir(self._dir_stack[0])
            except Exception as exc:
                logger.warning("shell: restoring working directory failed: %s", exc)
        first_error: Exception | None = None
        for handler in reversed(self._cleanup_handlers):
            try:
                handler()
            except Exception as exc:
                logger.warning("shell: cleanup handler %r failed: %s", handler, exc)
                if first_error is None:
                    first_error = exc
        if self._handles_signals:
            signal_cleanup.unregister(self)
        if first_error is not None:
            raise first_error

    def _cleanup_running_cmds(self) -> None:
        started = [c for c in self._cmds if c._started]
        threads = [
            threading.Thread(
                target=c._cleanup_process_group, name="procshell-cleanup", daemon=True
            )
            for c in started
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
