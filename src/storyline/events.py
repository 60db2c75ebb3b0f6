"""Outbound frames broadcast to subscribers.

Every frame uses the provider's chat-completion chunk envelope so the
browser parses one shape::

    {"choices": [{"index": 0, "delta": {...}, "finish_reason": ...}]}

Error frames are the exception: ``{"error": "<message>"}``.
"""

from __future__ import annotations

from typing import Any

DEFAULT_PROGRESS_TEXT = "⏳ working…"


def _envelope(delta: dict, finish_reason: str | None = None, **extra: Any) -> dict:
    frame = {
        "choices": [
            {"index": 0, "delta": delta, "finish_reason": finish_reason},
        ],
    }
    frame.update(extra)
    return frame


def content_frame(content: str | None, finish_reason: str | None = None) -> dict:
    """A content delta, for chunks that arrive without an envelope."""
    delta = {"content": content} if content is not None else {}
    return _envelope(delta, finish_reason=finish_reason)


def progress_frame(text: str = DEFAULT_PROGRESS_TEXT) -> dict:
    return _envelope({"role": "assistant", "content": text})


def result_frame(text: str) -> dict:
    """Synthetic completed-turn frame carrying the rendered tool result."""
    return _envelope({"role": "assistant", "content": text}, finish_reason="stop")


def stop_frame() -> dict:
    return _envelope({}, finish_reason="stop")


def error_frame(message: str) -> dict:
    return {"error": message}


def is_terminal(frame: dict) -> bool:
    if "error" in frame:
        return True
    choices = frame.get("choices") or []
    return bool(choices) and choices[0].get("finish_reason") is not None
