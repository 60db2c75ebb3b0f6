"""Streaming primitives for provider responses.

Providers yield :class:`StreamChunk` objects.  The
:class:`ToolCallAccumulator` reassembles a tool call whose arguments
arrive as partial JSON text spread over many chunks.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ToolCallParseError(Exception):
    """Accumulated tool-call arguments are not valid JSON.

    ``raw`` keeps the concatenated buffer for diagnostics.
    """

    def __init__(self, message: str, raw: str, call_id: str = "", name: str = ""):
        super().__init__(message)
        self.raw = raw
        self.call_id = call_id
        self.name = name


@dataclass
class ToolCallFragment:
    """A fragment of a tool call from a streaming chunk."""

    index: int = 0
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str | None = None


@dataclass
class StreamChunk:
    """Normalised streaming chunk from any provider.

    ``raw`` holds the provider envelope the chunk was built from, so
    plain content can be re-broadcast verbatim.
    """

    content_delta: str | None = None
    tool_call_fragments: list[ToolCallFragment] | None = None
    finish_reason: str | None = None
    raw: dict | None = None


@dataclass
class ToolCall:
    """A resolved tool call with deserialized arguments."""

    id: str = ""
    name: str = ""
    arguments: Any = field(default_factory=dict)
    index: int = 0


class Phase(Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    COMPLETE = "complete"
    FAILED = "failed"


class ToolCallAccumulator:
    """Assembles one tool call from streaming fragments.

    The first id and the first non-empty name win.  Argument chunks are
    concatenated in arrival order and parsed exactly once, by
    :meth:`complete`.  Once COMPLETE or FAILED the accumulator is spent
    and further input raises ``RuntimeError``.
    """

    def __init__(self, index: int = 0) -> None:
        self.index = index
        self.id: str | None = None
        self.name: str | None = None
        self._buffer: list[str] = []
        self.phase = Phase.IDLE

    @property
    def arguments_text(self) -> str:
        return "".join(self._buffer)

    @property
    def spent(self) -> bool:
        return self.phase in (Phase.COMPLETE, Phase.FAILED)

    def ingest(self, fragment: ToolCallFragment) -> Phase:
        if self.spent:
            raise RuntimeError("accumulator already completed")
        if self.id is None and fragment.call_id:
            self.id = fragment.call_id
        if not self.name and fragment.name:
            self.name = fragment.name
        if fragment.arguments_delta:
            self._buffer.append(fragment.arguments_delta)
        self.phase = Phase.ACCUMULATING
        return self.phase

    def complete(self) -> ToolCall:
        """Deserialize the buffer and return the finished call.

        Raises:
            ToolCallParseError: If the buffer is not valid JSON; the
                accumulator is then FAILED.
        """
        if self.spent:
            raise RuntimeError("accumulator already completed")
        raw = self.arguments_text
        try:
            # parameterless tools may stream no argument text
            arguments = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as e:
            self.phase = Phase.FAILED
            raise ToolCallParseError(
                f"invalid arguments for {self.name or 'tool call'}: {e}",
                raw=raw, call_id=self.id or "", name=self.name or "",
            ) from e
        self.phase = Phase.COMPLETE
        return ToolCall(
            id=self.id or "", name=self.name or "",
            arguments=arguments, index=self.index,
        )


class TurnAccumulator:
    """Routes a turn's fragments to one accumulator per tool call.

    A fragment opens a new call when its index has not been seen, or
    when it carries an id different from the current call at that
    index.  Fragments of calls beyond ``limit`` are dropped, so no more
    than ``limit`` calls are ever accumulated.
    """

    def __init__(self, limit: int | None = None) -> None:
        self.limit = limit
        self._calls: list[ToolCallAccumulator] = []
        self._current: dict[int, ToolCallAccumulator | None] = {}
        self.dropped = 0

    def __bool__(self) -> bool:
        return bool(self._calls)

    def __len__(self) -> int:
        return len(self._calls)

    def _opens_new_call(self, fragment: ToolCallFragment) -> bool:
        if fragment.index not in self._current:
            return True
        current = self._current[fragment.index]
        if current is None:
            # index is held by a dropped call
            return False
        return (
            fragment.call_id is not None
            and current.id is not None
            and fragment.call_id != current.id
        )

    def feed(self, fragment: ToolCallFragment) -> ToolCallAccumulator | None:
        if self._opens_new_call(fragment):
            if self.limit is not None and len(self._calls) >= self.limit:
                self._current[fragment.index] = None
            else:
                acc = ToolCallAccumulator(index=len(self._calls))
                self._calls.append(acc)
                self._current[fragment.index] = acc
        acc = self._current[fragment.index]
        if acc is None:
            self.dropped += 1
            return None
        acc.ingest(fragment)
        return acc

    def accumulators(self) -> list[ToolCallAccumulator]:
        """Return accumulators in the order their calls opened."""
        return list(self._calls)
