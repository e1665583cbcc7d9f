"""Cmd: a single child process owned by a Shell.

Lifecycle: created by Shell.cmd or Shell.func_cmd, configured, started,
then waited exactly once. Each started process gets:
- a pump thread per output stream, copying bytes into its writers
- a stdin copier thread when stdin is not a real file
- an exit watcher thread that publishes the result for wait()

Public methods report errors through Shell.handle_error. The
underscore-prefixed variants raise, and are used by Pipeline and Shell.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import io
import logging
import os
import signal as signal_mod
import subprocess
import sys
import threading
from concurrent.futures import Future
from datetime import datetime
from typing import IO, TYPE_CHECKING, Any

from .buffers import BufferedPipe, HeadTailBuffer
from .env_filter import ENV_EXIT_AFTER, ENV_WATCH_PARENT
from .errors import (
    ERR_ALREADY_CALLED_CLEANUP,
    ERR_ALREADY_CALLED_START,
    ERR_ALREADY_CALLED_WAIT,
    ERR_ALREADY_SET_STDIN,
    ERR_DID_NOT_CALL_START,
    ExitError,
    ProcessExitedError,
    UsageError,
    is_closed_pipe_error,
)
from .messages import MessageParser
from .models import ChildMessage

if TYPE_CHECKING:
    from .shell import Shell

logger = logging.getLogger(__name__)

_CHUNK = 1 << 15
_RULE = "-" * 40


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace")


def _write_all(w: Any, data: bytes) -> None:
    while data:
        n = w.write(data)
        if n is None or n >= len(data):
            return
        data = data[n:]


def _has_fileno(f: Any) -> bool:
    try:
        f.fileno()
    except (AttributeError, OSError, ValueError):
        return False
    return True


def _close_all(closers: list[Any]) -> Exception | None:
    """Close each object once, returning the first error."""
    seen: set[int] = set()
    first: Exception | None = None
    for c in closers:
        if id(c) in seen:
            continue
        seen.add(id(c))
        try:
            c.close()
        except Exception as exc:
            if first is None:
                first = exc
    return first


def _create_exclusive(path: str) -> IO[bytes]:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    return os.fdopen(fd, "wb")


class _TextWriter:
    """Adapts a text stream such as sys.stdout to raw byte writes."""

    def __init__(self, stream: Any) -> None:
        self._stream = stream
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def write(self, data: bytes) -> int:
        buffer = getattr(self._stream, "buffer", None)
        if buffer is not None:
            self._stream.flush()
            buffer.write(data)
            buffer.flush()
        else:
            self._stream.write(self._decoder.decode(data))
            if hasattr(self._stream, "flush"):
                self._stream.flush()
        return len(data)


class _MultiWriter:
    """Writes to every writer in order; stops at the first failure."""

    def __init__(self, writers: list[Any]) -> None:
        self._writers = writers

    def write(self, data: bytes) -> int:
        for w in self._writers:
            _write_all(w, data)
        return len(data)


class _LockedWriter:
    def __init__(self, lock: threading.Lock, inner: Any) -> None:
        self._lock = lock
        self._inner = inner

    def write(self, data: bytes) -> int:
        with self._lock:
            return self._inner.write(data)


def _as_writer(w: Any) -> Any:
    if isinstance(w, io.TextIOBase):
        return _TextWriter(w)
    return w


class Cmd:
    """A child process: configuration, stdio wiring, and lifecycle.

    Configure the public attributes before start(). ``args[0]`` is the
    path; ``vars`` is the child's full environment.
    """

    def __init__(self, sh: Shell, vars: dict[str, str], path: str, args: list[str]):
        self.err: BaseException | None = None
        self.path = path
        self.vars = vars
        self.args = [path, *args]
        # Skip the parent watch in the child.
        self.ignore_parent_exit = False
        # Seconds after which the child exits on its own; 0 disables.
        self.exit_after = 0.0
        self.propagate_output = sh.opts.propagate_child_output
        self.output_dir = sh.opts.child_output_dir
        self.exit_error_is_ok = False
        self.ignore_closed_pipe_error = False
        # Bytes (or str) fed to the child's stdin, then closed.
        self.stdin: str | bytes | None = None
        # Extra file descriptors inherited by the child. Not cloned.
        self.pass_fds: tuple[int, ...] = ()

        self._sh = sh
        self._proc: subprocess.Popen | None = None
        self._called_start = False
        self._called_wait = False
        # Guarded by the shell's cleanup lock.
        self._started = False
        self._cleanup_lock = threading.Lock()
        self._called_cleanup = False

        self._stdin_buf: BufferedPipe | None = None
        self._stdin_src: Any = None
        self._stdin_feed: Any = None
        self._join_stdin = False
        self._stdin_copier: threading.Thread | None = None
        self._stdin_error: Exception | None = None
        self._stdout_writers: list[Any] = []
        self._stderr_writers: list[Any] = []
        self._after_wait_closers: list[Any] = []
        self._stdout_capture = HeadTailBuffer()
        self._stderr_capture = HeadTailBuffer()
        self._pumps: list[threading.Thread] = []
        self._pump_errors: list[Exception] = []

        self._cond = threading.Condition()
        self._exited = False
        self._recv_ready = False
        self._recv_vars: dict[str, str] = {}
        self._result: Future[BaseException | None] = Future()

    def __repr__(self) -> str:
        pid = self._proc.pid if self._proc is not None else -1
        return f"<Cmd args={self.args!r} pid={pid}>"

    @property
    def shell(self) -> Shell:
        return self._sh

    @property
    def pid(self) -> int:
        """The child's pid, or -1 before start."""
        self._sh.ok()
        return self._proc.pid if self._proc is not None else -1

    # -- Error reporting -----------------------------------------------------

    @contextlib.contextmanager
    def _reporting(self):
        try:
            yield
        except Exception as exc:
            self._handle_error(exc)
        else:
            self._handle_error(None)

    def _record_error(self, err: BaseException | None) -> BaseException | None:
        """Store err on this Cmd and return what the shell should see."""
        if self.ignore_closed_pipe_error and is_closed_pipe_error(
            err, self._sh._backend
        ):
            err = None
        self.err = err
        if err is None or (self.exit_error_is_ok and isinstance(err, ExitError)):
            return None
        if isinstance(err, ExitError) and not self._sh.opts.continue_on_error:
            logger.error(
                "%s failed: %s\n%s\nSTDOUT\n%s\n%s\nSTDERR\n%s",
                self.args,
                err,
                _RULE,
                str(self._stdout_capture) or "[ empty ]",
                _RULE,
                str(self._stderr_capture) or "[ empty ]",
            )
        return err

    def _handle_error(self, err: BaseException | None) -> None:
        self._sh._handle_error(self._record_error(err))

    # -- Configuration -------------------------------------------------------

    def clone(self) -> Cmd | None:
        """Return a new Cmd with the same configuration but no stdio wiring."""
        self._sh.ok()
        with self._reporting():
            return self._clone()

    def _clone(self) -> Cmd:
        c = self._sh._add_cmd(dict(self.vars), self.path, list(self.args[1:]))
        c.ignore_parent_exit = self.ignore_parent_exit
        c.exit_after = self.exit_after
        c.propagate_output = self.propagate_output
        c.output_dir = self.output_dir
        c.exit_error_is_ok = self.exit_error_is_ok
        c.ignore_closed_pipe_error = self.ignore_closed_pipe_error
        c.stdin = self.stdin
        return c

    def stdin_pipe(self) -> BufferedPipe | None:
        """Return a pipe whose contents become the child's stdin.

        Repeated calls return the same pipe. Close it to signal EOF; it is
        also closed when the process exits.
        """
        self._sh.ok()
        with self._reporting():
            return self._stdin_pipe()

    def _stdin_pipe(self) -> BufferedPipe:
        if self._called_start:
            raise UsageError(ERR_ALREADY_CALLED_START)
        if self._stdin_src is not None:
            raise UsageError(ERR_ALREADY_SET_STDIN)
        if self._stdin_buf is None:
            self._stdin_buf = BufferedPipe()
            self._after_wait_closers.append(self._stdin_buf)
        return self._stdin_buf

    def set_stdin_reader(self, r: Any) -> None:
        """Use r as the child's stdin. Real files are inherited directly."""
        self._sh.ok()
        with self._reporting():
            self._set_stdin_reader(r)

    def _set_stdin_reader(self, r: Any) -> None:
        if self._called_start:
            raise UsageError(ERR_ALREADY_CALLED_START)
        if self._stdin_buf is not None or self._stdin_src is not None:
            raise UsageError(ERR_ALREADY_SET_STDIN)
        self._stdin_src = r

    def stdout_pipe(self) -> BufferedPipe | None:
        """Return a new pipe that receives a copy of stdout; closed on exit."""
        self._sh.ok()
        with self._reporting():
            return self._output_pipe(self._stdout_writers)

    def stderr_pipe(self) -> BufferedPipe | None:
        """Return a new pipe that receives a copy of stderr; closed on exit."""
        self._sh.ok()
        with self._reporting():
            return self._output_pipe(self._stderr_writers)

    def _output_pipe(self, writers: list[Any]) -> BufferedPipe:
        if self._called_start:
            raise UsageError(ERR_ALREADY_CALLED_START)
        p = BufferedPipe()
        writers.append(p)
        self._after_wait_closers.append(p)
        return p

    def add_stdout_writer(self, w: Any) -> None:
        """Copy stdout to w.

        BufferedPipes (such as another Cmd's stdin_pipe()) are closed when
        this process exits. Text streams receive decoded text.
        """
        self._sh.ok()
        with self._reporting():
            self._add_writer(self._stdout_writers, w)

    def add_stderr_writer(self, w: Any) -> None:
        """Copy stderr to w. See add_stdout_writer."""
        self._sh.ok()
        with self._reporting():
            self._add_writer(self._stderr_writers, w)

    def _add_stdout_writer(self, w: Any) -> None:
        self._add_writer(self._stdout_writers, w)

    def _add_stderr_writer(self, w: Any) -> None:
        self._add_writer(self._stderr_writers, w)

    def _add_writer(self, writers: list[Any], w: Any) -> None:
        if self._called_start:
            raise UsageError(ERR_ALREADY_CALLED_START)
        if isinstance(w, BufferedPipe):
            self._after_wait_closers.append(w)
        writers.append(_as_writer(w))

    # -- Start ---------------------------------------------------------------

    def start(self) -> None:
        self._sh.ok()
        with self._reporting():
            self._start()

    def _start(self) -> None:
        if self._called_start:
            raise UsageError(ERR_ALREADY_CALLED_START)
        self._called_start = True
        try:
            # Held across spawn so signal-triggered cleanup sees every child.
            with self._sh._cleanup_lock:
                if self._sh._called_cleanup:
                    raise UsageError(ERR_ALREADY_CALLED_CLEANUP)
                self._spawn()
        finally:
            if not self._started:
                _close_all(self._after_wait_closers)

    def _spawn(self) -> None:
        env = dict(self.vars)
        if not self.ignore_parent_exit:
            env[ENV_WATCH_PARENT] = str(os.getpid())
        if self.exit_after > 0:
            env[ENV_EXIT_AFTER] = repr(float(self.exit_after))
        stdin = self._make_stdin()
        stdout_w, stderr_w = self._make_stdout_stderr()

        kwargs = self._sh._backend.popen_kwargs()
        if self.pass_fds:
            kwargs["pass_fds"] = self.pass_fds
        self._proc = proc = subprocess.Popen(
            self.args,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            bufsize=0,
            **kwargs,
        )
        self._started = True
        logger.debug("cmd: started %s (pid %d)", self.args, proc.pid)

        self._pumps = [
            self._thread(self._pump, proc.stdout, stdout_w, name="stdout"),
            self._thread(self._pump, proc.stderr, stderr_w, name="stderr"),
        ]
        if self._stdin_feed is not None:
            self._stdin_copier = self._thread(
                self._copy_stdin, self._stdin_feed, proc.stdin, name="stdin"
            )
        self._thread(self._watch_exit, name="wait")

    def _thread(self, target: Any, *args: Any, name: str) -> threading.Thread:
        assert self._proc is not None
        t = threading.Thread(
            target=target,
            args=args,
            name=f"procshell-{name}-{self._proc.pid}",
            daemon=True,
        )
        t.start()
        return t

    def _make_stdin(self) -> Any:
        """Return the Popen stdin argument, setting up a copier if needed."""
        if self.stdin is not None:
            if self._stdin_buf is not None or self._stdin_src is not None:
                raise UsageError(ERR_ALREADY_SET_STDIN)
            data = self.stdin.encode() if isinstance(self.stdin, str) else self.stdin
            feed = BufferedPipe()
            feed.write(data)
            feed.close()
            self._stdin_feed, self._join_stdin = feed, True
            return subprocess.PIPE
        if self._stdin_buf is not None:
            self._stdin_feed, self._join_stdin = self._stdin_buf, True
            return subprocess.PIPE
        if self._stdin_src is not None:
            if _has_fileno(self._stdin_src):
                return self._stdin_src
            # Arbitrary readers may never reach EOF; the copier is not joined.
            self._stdin_feed, self._join_stdin = self._stdin_src, False
            return subprocess.PIPE
        return subprocess.DEVNULL

    def _make_stdout_stderr(self) -> tuple[_LockedWriter, _LockedWriter]:
        stdout_ws: list[Any] = [self._stdout_capture]
        stderr_ws: list[Any] = [self._stderr_capture, MessageParser(self._on_message)]
        if self.propagate_output:
            stdout_ws.append(_TextWriter(sys.stdout))
            stderr_ws.append(_TextWriter(sys.stderr))
        if self.output_dir:
            stamp = datetime.now().strftime("%Y%m%d.%H%M%S.%f")
            base = os.path.join(
                self.output_dir, f"{os.path.basename(self.path)}.{stamp}"
            )
            for suffix, ws in (("stdout", stdout_ws), ("stderr", stderr_ws)):
                f = _create_exclusive(f"{base}.{suffix}")
                self._after_wait_closers.append(f)
                ws.append(f)
        stdout_ws.extend(self._stdout_writers)
        stderr_ws.extend(self._stderr_writers)
        # One lock for both streams keeps shared sinks in temporal order.
        lock = threading.Lock()
        return (
            _LockedWriter(lock, _MultiWriter(stdout_ws)),
            _LockedWriter(lock, _MultiWriter(stderr_ws)),
        )

    def _on_message(self, msg: ChildMessage) -> None:
        with self._cond:
            if msg.type == "ready":
                self._recv_ready = True
            elif msg.vars:
                self._recv_vars.update(msg.vars)
            self._cond.notify_all()

    # -- Background threads --------------------------------------------------

    def _pump(self, src: IO[bytes], dst: Any) -> None:
        try:
            while chunk := src.read(_CHUNK):
                dst.write(chunk)
        except Exception as exc:
            self._pump_errors.append(exc)
        finally:
            # Closing early makes the child see a closed pipe on its next write.
            src.close()

    def _copy_stdin(self, src: Any, dst: IO[bytes]) -> None:
        try:
            while chunk := src.read(_CHUNK):
                _write_all(dst, chunk)
        except BrokenPipeError:
            # The child closed its stdin or exited.
            pass
        except Exception as exc:
            self._stdin_error = exc
        finally:
            with contextlib.suppress(BrokenPipeError):
                dst.close()

    def _watch_exit(self) -> None:
        assert self._proc is not None
        returncode = self._proc.wait()
        for t in self._pumps:
            t.join()
        err: BaseException | None = self._exit_error(returncode)
        if err is None and self._pump_errors:
            err = self._pump_errors[0]
        with self._cond:
            self._exited = True
            self._cond.notify_all()
        close_err = _close_all(self._after_wait_closers)
        if err is None:
            err = close_err
        copier = self._stdin_copier
        if copier is not None:
            if self._join_stdin:
                copier.join()
            if err is None and not copier.is_alive():
                err = self._stdin_error
        logger.debug("cmd: %s exited with %s", self.args, returncode)
        self._result.set_result(err)
        self._cleanup_process_group()

    def _exit_error(self, returncode: int) -> ExitError | None:
        if returncode == 0:
            return None
        return ExitError(returncode, self.args, self._sh._backend.signal_name(returncode))

    def _cleanup_process_group(self) -> None:
        with self._cleanup_lock:
            if self._called_cleanup:
                return
            self._called_cleanup = True
            assert self._proc is not None
            self._sh._backend.cleanup_group(
                self._proc, self._sh.opts.cleanup_grace_period
            )

    # -- Waiting -------------------------------------------------------------

    def await_ready(self) -> None:
        """Block until the child calls send_ready; fails if it exits first."""
        self._sh.ok()
        with self._reporting():
            self._await_ready()

    def _await_ready(self) -> None:
        self._check_running()
        with self._cond:
            self._cond.wait_for(lambda: self._recv_ready or self._exited)
            if not self._recv_ready:
                raise ProcessExitedError(f"{self.args!r} exited before sending ready")

    def await_vars(self, *keys: str) -> dict[str, str] | None:
        """Block until the child has sent all keys; fails if it exits first."""
        self._sh.ok()
        with self._reporting():
            return self._await_vars(*keys)

    def _await_vars(self, *keys: str) -> dict[str, str]:
        self._check_running()

        def missing() -> list[str]:
            return [k for k in keys if k not in self._recv_vars]

        with self._cond:
            self._cond.wait_for(lambda: self._exited or not missing())
            if missing():
                raise ProcessExitedError(
                    f"{self.args!r} exited before sending vars {missing()}"
                )
            return {k: self._recv_vars[k] for k in keys}

    def _check_running(self) -> None:
        if not self._started:
            raise UsageError(ERR_DID_NOT_CALL_START)
        if self._called_wait:
            raise UsageError(ERR_ALREADY_CALLED_WAIT)

    def wait(self) -> None:
        """Block until the process exits and its output is fully copied."""
        self._sh.ok()
        with self._reporting():
            self._wait()

    def _wait(self) -> None:
        with self._cond:
            self._check_running()
            self._called_wait = True
        err = self._result.result()
        if err is not None:
            raise err

    async def wait_async(self) -> None:
        await asyncio.to_thread(self.wait)

    async def await_ready_async(self) -> None:
        await asyncio.to_thread(self.await_ready)

    async def await_vars_async(self, *keys: str) -> dict[str, str] | None:
        return await asyncio.to_thread(self.await_vars, *keys)

    # -- Signals -------------------------------------------------------------

    def signal(self, sig: int) -> None:
        """Send sig to the process; a process that already exited is fine."""
        self._sh.ok()
        with self._reporting():
            self._signal(sig)

    def _signal(self, sig: int) -> None:
        self._check_running()
        with self._cond:
            if self._exited:
                return
        assert self._proc is not None
        self._sh._backend.send_signal(self._proc, sig)

    def terminate(self, sig: int = signal_mod.SIGTERM) -> None:
        """Send sig and wait; any exit status counts as success."""
        self._sh.ok()
        with self._reporting():
            self._terminate(sig)

    def _terminate(self, sig: int) -> None:
        self._signal(sig)
        try:
            self._wait()
        except ExitError:
            pass

    # -- Convenience ---------------------------------------------------------

    def run(self) -> None:
        """start() then wait()."""
        self._sh.ok()
        with self._reporting():
            self._run()

    def _run(self) -> None:
        self._start()
        self._wait()

    def stdout(self) -> str:
        """Run the command and return its stdout."""
        self._sh.ok()
        buf = io.BytesIO()
        with self._reporting():
            self._add_stdout_writer(buf)
            self._run()
        return _decode(buf.getvalue())

    def stdout_stderr(self) -> tuple[str, str]:
        """Run the command and return its stdout and stderr."""
        self._sh.ok()
        out, err = io.BytesIO(), io.BytesIO()
        with self._reporting():
            self._add_stdout_writer(out)
            self._add_stderr_writer(err)
            self._run()
        return _decode(out.getvalue()), _decode(err.getvalue())

    def combined_output(self) -> str:
        """Run the command and return stdout and stderr interleaved."""
        self._sh.ok()
        buf = io.BytesIO()
        with self._reporting():
            self._add_stdout_writer(buf)
            self._add_stderr_writer(buf)
            self._run()
        return _decode(buf.getvalue())
