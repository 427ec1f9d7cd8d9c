from __future__ import annotations

import codecs
import json
from enum import Enum
from typing import Any

from .errors import StreamDecodeError

DEFAULT_BUFFER_LIMIT = 1024 * 1024


class DecoderState(str, Enum):
    EXPECT_OPEN = "expect_open"
    EXPECT_ITEM = "expect_item"
    IN_ITEM = "in_item"
    AFTER_ITEM = "after_item"
    CLOSED = "closed"


class GeminiStreamDecoder:
    """Incremental parser for the body of ``streamGenerateContent``.

    The upstream sends one JSON array whose elements arrive spread over
    arbitrary network chunks (``[{...}\\r\\n,{...}\\r\\n]``). Bytes are
    accumulated until an element is complete; completed elements are handed
    back from :meth:`feed` and the unfinished tail is kept for the next call.
    A bare sequence of concatenated objects is accepted as well.

    Incomplete data is never an error while the stream is open. Data that can
    not start or continue a JSON element raises :class:`StreamDecodeError`,
    after any elements completed earlier in the same chunk have been returned.
    """

    def __init__(self, buffer_limit: int = DEFAULT_BUFFER_LIMIT) -> None:
        self._text_decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._pos = 0
        self._item_start = 0
        self._depth = 0
        self._in_string = False
        self._escaped = False
        self._buffer_limit = buffer_limit
        self._failure: StreamDecodeError | None = None
        self.state = DecoderState.EXPECT_OPEN

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        if self._failure is not None:
            raise self._failure
        try:
            self._buffer += self._text_decoder.decode(chunk)
        except UnicodeDecodeError as exc:
            raise StreamDecodeError(f"invalid UTF-8 in upstream stream ({exc.reason})") from exc
        return self._drain()

    def close(self) -> list[dict[str, Any]]:
        if self._failure is not None:
            raise self._failure
        try:
            self._buffer += self._text_decoder.decode(b"", final=True)
        except UnicodeDecodeError as exc:
            raise StreamDecodeError("upstream stream ended inside a UTF-8 sequence") from exc

        units = self._drain()
        if self.state is DecoderState.IN_ITEM:
            raise StreamDecodeError("upstream stream ended inside a JSON object")

        self.state = DecoderState.CLOSED
        return units

    def _drain(self) -> list[dict[str, Any]]:
        units: list[dict[str, Any]] = []
        buf = self._buffer

        try:
            i = self._consume(buf, units)
        except StreamDecodeError as exc:
            if not units:
                raise
            # Elements decoded before the failure are still delivered.
            self._failure = exc
            return units

        if self.state is DecoderState.IN_ITEM:
            self._buffer = buf[self._item_start :]
            self._pos = i - self._item_start
            self._item_start = 0
        else:
            self._buffer = buf[i:]
            self._pos = 0

        if len(self._buffer) > self._buffer_limit:
            raise StreamDecodeError(
                f"pending upstream data exceeds {self._buffer_limit} characters"
            )

        return units

    def _consume(self, buf: str, units: list[dict[str, Any]]) -> int:
        i = self._pos

        while i < len(buf):
            if self.state is DecoderState.IN_ITEM:
                i = self._scan_item(buf, i)
                if self.state is DecoderState.IN_ITEM:
                    break
                units.append(self._parse(buf[self._item_start : i]))
                continue

            ch = buf[i]
            if ch.isspace():
                i += 1
                continue

            if ch == "{" and self.state is not DecoderState.CLOSED:
                self._start_item(i)
                continue

            if self.state is DecoderState.EXPECT_OPEN and ch == "[":
                self.state = DecoderState.EXPECT_ITEM
            elif self.state is DecoderState.AFTER_ITEM and ch == ",":
                self.state = DecoderState.EXPECT_ITEM
            elif self.state in (DecoderState.EXPECT_ITEM, DecoderState.AFTER_ITEM) and ch == "]":
                self.state = DecoderState.CLOSED
            else:
                raise StreamDecodeError(
                    f"unexpected character {ch!r} in state {self.state.value}"
                )
            i += 1

        return i

    def _start_item(self, index: int) -> None:
        self.state = DecoderState.IN_ITEM
        self._item_start = index
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def _scan_item(self, buf: str, i: int) -> int:
        while i < len(buf):
            ch = buf[i]
            i += 1

            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif ch == "\\":
                    self._escaped = True
                elif ch == '"':
                    self._in_string = False
                continue

            if ch == '"':
                self._in_string = True
            elif ch in "{[":
                self._depth += 1
            elif ch in "}]":
                self._depth -= 1
                if self._depth == 0:
                    self.state = DecoderState.AFTER_ITEM
                    return i

        return i

    @staticmethod
    def _parse(text: str) -> dict[str, Any]:
        try:
            unit = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StreamDecodeError(f"invalid JSON element ({exc.msg})") from exc

        if not isinstance(unit, dict):
            raise StreamDecodeError("stream element is not a JSON object")
        return unit
