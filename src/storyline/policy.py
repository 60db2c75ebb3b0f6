"""How many completed tool calls a turn may execute."""

from __future__ import annotations


class ToolCallPolicy:
    """Base policy.

    ``max_calls`` caps how many calls are accumulated and dispatched
    per turn; ``None`` means no cap.
    """

    name = "base"
    max_calls: int | None = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(max_calls={self.max_calls})"


class SingleCallPerTurn(ToolCallPolicy):
    """Execute only the first tool call of a turn.

    Later calls in the same turn are never accumulated or dispatched,
    and the turn ends once the first call's result is broadcast.
    """

    name = "single"
    max_calls = 1


class MultiCall(ToolCallPolicy):
    """Execute every tool call of a turn, in the order they opened."""

    name = "multi"
    max_calls = None


POLICIES = {p.name: p for p in (SingleCallPerTurn, MultiCall)}


def get_policy(name: str) -> ToolCallPolicy:
    try:
        return POLICIES[name]()
    except KeyError:
        raise ValueError(
            f"unknown tool call policy {name!r}; expected one of {sorted(POLICIES)}"
        ) from None
