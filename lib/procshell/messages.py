"""Child-to-parent message wire format and its incremental parser.

A child reports to its parent by writing framed JSON on stderr. Two
framings are recognised anywhere in the stream:

- ``#! {"type": "ready"}`` or ``#! {"type": "vars", "vars": {...}}`` up to a newline
- ``<procshell-vars{"key": "value"}procshell-vars>``, a vars message

Text outside the frames is ignored. Frames need not start on a line
boundary, so the parser scans byte by byte.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import TypeAdapter, ValidationError

from .models import ChildMessage

logger = logging.getLogger(__name__)

MSG_PREFIX = b"#! "
MSG_SUFFIX = b"\n"
VARS_PREFIX = b"<procshell-vars"
VARS_SUFFIX = b"procshell-vars>"

# Frames with larger payloads are dropped.
MAX_PAYLOAD = 1 << 16

_VARS_ADAPTER = TypeAdapter(dict[str, str])


def encode_message(msg: ChildMessage) -> bytes:
    return MSG_PREFIX + msg.model_dump_json(exclude_none=True).encode() + MSG_SUFFIX


def encode_vars_block(vars: dict[str, str]) -> bytes:
    return VARS_PREFIX + _VARS_ADAPTER.dump_json(vars) + VARS_SUFFIX


def _parse_message(payload: bytes) -> ChildMessage:
    return ChildMessage.model_validate_json(payload)


def _parse_vars_block(payload: bytes) -> ChildMessage:
    return ChildMessage(type="vars", vars=_VARS_ADAPTER.validate_json(payload))


class _Frame:
    """Matches one prefix ... suffix framing."""

    def __init__(
        self, prefix: bytes, suffix: bytes, parse: Callable[[bytes], ChildMessage]
    ) -> None:
        self.prefix = prefix
        self.suffix = suffix
        self.parse = parse
        self.matched = 0
        self.payload: bytearray | None = None

    def reset(self) -> None:
        self.matched = 0
        self.payload = None

    def feed_prefix(self, b: int) -> bool:
        """Advance the prefix match. Returns True when the prefix completes."""
        if b != self.prefix[self.matched]:
            self.matched = 0
        if b == self.prefix[self.matched]:
            self.matched += 1
        if self.matched == len(self.prefix):
            self.matched = 0
            self.payload = bytearray()
            return True
        return False

    def feed_payload(self, b: int) -> bytes | None:
        """Collect a payload byte. Returns the payload once the suffix is seen."""
        assert self.payload is not None
        self.payload.append(b)
        if self.payload.endswith(self.suffix):
            payload = bytes(self.payload[: -len(self.suffix)])
            self.payload = None
            return payload
        if len(self.payload) > MAX_PAYLOAD:
            logger.debug("messages: dropping oversized %r frame", self.prefix)
            self.payload = None
        return None


class MessageParser:
    """Incremental parser for child messages.

    Acts as a writer: feed it raw stderr bytes via write(), in chunks of
    any size. on_message is called for each complete, valid message.
    Malformed payloads are logged and skipped.
    """

    def __init__(self, on_message: Callable[[ChildMessage], None]) -> None:
        self._on_message = on_message
        self._frames = [
            _Frame(MSG_PREFIX, MSG_SUFFIX, _parse_message),
            _Frame(VARS_PREFIX, VARS_SUFFIX, _parse_vars_block),
        ]
        self._active: _Frame | None = None

    def write(self, data: bytes) -> int:
        for b in data:
            if self._active is not None:
                payload = self._active.feed_payload(b)
                if self._active.payload is None:
                    frame, self._active = self._active, None
                    if payload is not None:
                        self._dispatch(frame, payload)
                continue
            for frame in self._frames:
                if frame.feed_prefix(b):
                    self._active = frame
                    for other in self._frames:
                        if other is not frame:
                            other.reset()
                    break
        return len(data)

    def _dispatch(self, frame: _Frame, payload: bytes) -> None:
        try:
            msg = frame.parse(payload)
        except ValidationError as exc:
            logger.debug("messages: ignoring malformed payload %r: %s", payload, exc)
            return
        self._on_message(msg)
