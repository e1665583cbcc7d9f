"""Pipeline: a chain of Cmds, each feeding its output into the next one's stdin.

Each junction is an OS pipe, so a slow consumer applies backpressure to
its producer. Every stage tolerates closed-pipe errors, as a shell
without pipefail does: an upstream stage cut off because a downstream
stage finished early is not a failure. Clear ignore_closed_pipe_error on
a stage to report them.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import os
import signal as signal_mod
import threading
from dataclasses import dataclass
from enum import Enum
from typing import IO

from .cmd import Cmd, _close_all, _decode
from .errors import ClosedPipeError, ShellError


class PipeMode(str, Enum):
    """Which output of the upstream stage feeds a junction."""

    STDOUT = "stdout"
    STDERR = "stderr"
    COMBINED = "combined"


class _PipeWriter:
    """Write end of a junction. Writes after close fail as a closed pipe."""

    def __init__(self, fd: int) -> None:
        self._file = os.fdopen(fd, "wb", buffering=0)
        self._lock = threading.Lock()
        self._closed = False

    def write(self, data: bytes) -> int | None:
        with self._lock:
            if self._closed:
                raise ClosedPipeError()
            return self._file.write(data)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._file.close()


@dataclass
class _Junction:
    reader: IO[bytes]
    writer: _PipeWriter
    mode: PipeMode


class Pipeline:
    """An ordered chain of Cmds from the same Shell."""

    def __init__(self, first: Cmd, *cmds: Cmd) -> None:
        self._sh = first.shell
        self._sh.ok()
        self._cmds: list[Cmd] = [first]
        self._junctions: list[_Junction] = []
        first.ignore_closed_pipe_error = True
        with self._reporting():
            for c in cmds:
                self._pipe_to(c, PipeMode.STDOUT, clone=False)

    @property
    def cmds(self) -> list[Cmd]:
        return list(self._cmds)

    @contextlib.contextmanager
    def _reporting(self):
        try:
            yield
        except Exception as exc:
            self._sh._handle_error(exc)
        else:
            self._sh._handle_error(None)

    def _pipe_to(self, c: Cmd, mode: PipeMode, clone: bool) -> None:
        if c.shell is not self._sh:
            raise ShellError("cmds in a pipeline must belong to the same Shell")
        if clone:
            c = c._clone()
        else:
            c.ignore_closed_pipe_error = True
        r, w = os.pipe()
        reader = os.fdopen(r, "rb", buffering=0)
        writer = _PipeWriter(w)
        try:
            c._set_stdin_reader(reader)
            last = self._cmds[-1]
            if mode in (PipeMode.STDOUT, PipeMode.COMBINED):
                last._add_stdout_writer(writer)
            if mode in (PipeMode.STDERR, PipeMode.COMBINED):
                last._add_stderr_writer(writer)
        except Exception:
            reader.close()
            writer.close()
            raise
        self._cmds.append(c)
        self._junctions.append(_Junction(reader, writer, mode))

    def pipe_stdout(self, c: Cmd) -> None:
        """Append c, fed by the last stage's stdout."""
        self._sh.ok()
        with self._reporting():
            self._pipe_to(c, PipeMode.STDOUT, clone=False)

    def pipe_stderr(self, c: Cmd) -> None:
        """Append c, fed by the last stage's stderr."""
        self._sh.ok()
        with self._reporting():
            self._pipe_to(c, PipeMode.STDERR, clone=False)

    def pipe_combined_output(self, c: Cmd) -> None:
        """Append c, fed by the last stage's stdout and stderr."""
        self._sh.ok()
        with self._reporting():
            self._pipe_to(c, PipeMode.COMBINED, clone=False)

    def clone(self) -> Pipeline | None:
        """Return a new Pipeline of cloned Cmds with the same junctions."""
        self._sh.ok()
        with self._reporting():
            return self._clone()

    def _clone(self) -> Pipeline:
        res = Pipeline.__new__(Pipeline)
        res._sh = self._sh
        res._cmds = [self._cmds[0]._clone()]
        res._junctions = []
        for c, junction in zip(self._cmds[1:], self._junctions):
            res._pipe_to(c, junction.mode, clone=True)
        return res

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Start every stage; a stage failing to start does not stop the others."""
        self._sh.ok()
        with self._reporting():
            self._start()

    def _start(self) -> None:
        first: BaseException | None = None
        for i, c in enumerate(self._cmds):
            try:
                c._start()
                err = c._record_error(None)
            except Exception as exc:
                err = c._record_error(exc)
            if first is None:
                first = err
            if i > 0:
                # The child has its own copy now.
                self._junctions[i - 1].reader.close()
        if first is not None:
            # Unblock producers that did start.
            _close_all([j.writer for j in self._junctions])
            raise first

    def wait(self) -> None:
        """Wait for every stage in order, closing each junction after its producer."""
        self._sh.ok()
        with self._reporting():
            self._wait()

    def _wait(self) -> None:
        first: BaseException | None = None
        for i, c in enumerate(self._cmds):
            try:
                c._wait()
                err = c._record_error(None)
            except Exception as exc:
                err = c._record_error(exc)
            if first is None:
                first = err
            if i < len(self._junctions):
                self._junctions[i].writer.close()
        if first is not None:
            raise first

    async def wait_async(self) -> None:
        await asyncio.to_thread(self.wait)

    def signal(self, sig: int) -> None:
        """Send sig to every stage."""
        self._sh.ok()
        with self._reporting():
            self._signal(sig)

    def _signal(self, sig: int) -> None:
        first: BaseException | None = None
        for c in self._cmds:
            try:
                c._signal(sig)
                err = c._record_error(None)
            except Exception as exc:
                err = c._record_error(exc)
            if first is None:
                first = err
        if first is not None:
            raise first

    def terminate(self, sig: int = signal_mod.SIGTERM) -> None:
        """Signal and wait for each stage; exits of any status count as success.

        Every stage is terminated and every junction closed even when an
        earlier stage fails; the first failure is reported.
        """
        self._sh.ok()
        with self._reporting():
            self._terminate(sig)

    def _terminate(self, sig: int) -> None:
        first: BaseException | None = None
        for i, c in enumerate(self._cmds):
            try:
                c._terminate(sig)
                err = c._record_error(None)
            except Exception as exc:
                err = c._record_error(exc)
            if first is None:
                first = err
            if i < len(self._junctions):
                self._junctions[i].writer.close()
        if first is not None:
            raise first

    def run(self) -> None:
        self._sh.ok()
        with self._reporting():
            self._start()
            self._wait()

    def stdout(self) -> str:
        """Run the pipeline and return the last stage's stdout."""
        self._sh.ok()
        buf = io.BytesIO()
        with self._reporting():
            self._cmds[-1]._add_stdout_writer(buf)
            self._start()
            self._wait()
        return _decode(buf.getvalue())

    def stdout_stderr(self) -> tuple[str, str]:
        """Run the pipeline and return the last stage's stdout and stderr."""
        self._sh.ok()
        out, err = io.BytesIO(), io.BytesIO()
        with self._reporting():
            last = self._cmds[-1]
            last._add_stdout_writer(out)
            last._add_stderr_writer(err)
            self._start()
            self._wait()
        return _decode(out.getvalue()), _decode(err.getvalue())

    def combined_output(self) -> str:
        """Run the pipeline and return the last stage's interleaved output."""
        self._sh.ok()
        buf = io.BytesIO()
        with self._reporting():
            last = self._cmds[-1]
            last._add_stdout_writer(buf)
            last._add_stderr_writer(buf)
            self._start()
            self._wait()
        return _decode(buf.getvalue())
