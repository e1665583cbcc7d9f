"""In-memory byte buffers used to capture and relay child process output.

- BufferedPipe: unbounded pipe; writes never block, reads block until data or close
- RingBuffer: keeps the last N bytes appended
- HeadTailBuffer: keeps the first and last N bytes of a stream for diagnostics
"""

from __future__ import annotations

import threading

from .errors import ClosedPipeError

HEAD_TAIL_CAPACITY = 1 << 15


class BufferedPipe:
    """An in-memory pipe with an unbounded buffer.

    Writes append to the buffer and return immediately. Reads block until
    data is available or the pipe is closed. After close, buffered bytes
    remain readable and writes raise ClosedPipeError.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._buf = bytearray()
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def write(self, data: bytes) -> int:
        with self._cond:
            if self._closed:
                raise ClosedPipeError()
            self._buf.extend(data)
            self._cond.notify_all()
        return len(data)

    def read(self, size: int = -1) -> bytes:
        """Read up to size bytes, blocking until some are available.

        With a negative size, blocks until the pipe is closed and returns
        everything written. Returns b"" once closed and drained.
        """
        with self._cond:
            if size < 0:
                self._cond.wait_for(lambda: self._closed)
                size = len(self._buf)
            elif size == 0:
                return b""
            else:
                self._cond.wait_for(lambda: self._buf or self._closed)
            data = bytes(self._buf[:size])
            del self._buf[:size]
            return data

    def readline(self) -> bytes:
        """Read through the next newline, or the remainder once closed."""
        with self._cond:
            self._cond.wait_for(lambda: b"\n" in self._buf or self._closed)
            end = self._buf.find(b"\n")
            end = len(self._buf) if end < 0 else end + 1
            data = bytes(self._buf[:end])
            del self._buf[:end]
            return data

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self):
        while line := self.readline():
            yield line

    def __enter__(self) -> BufferedPipe:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RingBuffer:
    """Fixed-capacity store of the most recently appended bytes."""

    def __init__(self, capacity: int) -> None:
        if capacity < 0:
            raise ValueError(f"capacity must be non-negative, got {capacity}")
        self._buf = bytearray(capacity)
        self._start = 0
        self._len = 0

    @property
    def capacity(self) -> int:
        return len(self._buf)

    def append(self, data: bytes) -> None:
        cap = len(self._buf)
        if cap == 0 or not data:
            return
        data = bytes(data[-cap:])
        # Write position is one past the newest byte.
        pos = (self._start + self._len) % cap
        first = min(len(data), cap - pos)
        self._buf[pos : pos + first] = data[:first]
        self._buf[: len(data) - first] = data[first:]
        total = self._len + len(data)
        if total > cap:
            self._start = (self._start + total - cap) % cap
            self._len = cap
        else:
            self._len = total

    def getvalue(self) -> bytes:
        end = self._start + self._len
        if end <= len(self._buf):
            return bytes(self._buf[self._start : end])
        return bytes(self._buf[self._start :] + self._buf[: end - len(self._buf)])

    def __len__(self) -> int:
        return self._len

    def __str__(self) -> str:
        return self.getvalue().decode("utf-8", errors="replace")


class HeadTailBuffer:
    """Captures the first and last ``capacity`` bytes written to it.

    Thread-safe; a single instance may be written from the stdout and
    stderr pumps of one process.
    """

    def __init__(self, capacity: int = HEAD_TAIL_CAPACITY) -> None:
        self._lock = threading.Lock()
        self._capacity = capacity
        self._head = bytearray()
        self._tail = RingBuffer(capacity)
        self._total = 0

    @property
    def total(self) -> int:
        """Number of bytes written so far."""
        with self._lock:
            return self._total

    def write(self, data: bytes) -> int:
        n = len(data)
        with self._lock:
            self._total += n
            room = self._capacity - len(self._head)
            if room > 0:
                self._head.extend(data[:room])
                data = data[room:]
            self._tail.append(data)
        return n

    def getvalue(self) -> bytes:
        """Return head and tail joined, without any elision marker."""
        with self._lock:
            return bytes(self._head) + self._tail.getvalue()

    def __str__(self) -> str:
        with self._lock:
            head = self._head.decode("utf-8", errors="replace")
            tail = str(self._tail)
            skipped = self._total - len(self._head) - len(self._tail)
        if skipped <= 0:
            return head + tail
        return f"{head}\n[ ... skipping {skipped} bytes ... ]\n{tail}"
