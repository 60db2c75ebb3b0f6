import json

import pytest

from storyline.broadcast import Broadcaster, Subscriber, SubscriberRegistry
from storyline.provider import ModelProvider, UpstreamStreamError, chunk_from_envelope
from storyline.store import StoryStore
from storyline.tools import ToolDispatcher, tool


# ---------------------------------------------------------------------------
# Envelope builders (mirror the chat-completion chunk shape)
# ---------------------------------------------------------------------------

def envelope(content=None, tool_calls=None, finish_reason=None, role=None) -> dict:
    delta = {}
    if role is not None:
        delta["role"] = role
    if content is not None:
        delta["content"] = content
    if tool_calls is not None:
        delta["tool_calls"] = tool_calls
    return {"choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


def fragment(arguments=None, call_id=None, name=None, index=None) -> dict:
    """One ``delta.tool_calls`` entry."""
    function = {}
    if name is not None:
        function["name"] = name
    if arguments is not None:
        function["arguments"] = arguments
    tc = {"function": function}
    if call_id is not None:
        tc["id"] = call_id
    if index is not None:
        tc["index"] = index
    return tc


def text_stream(*parts: str) -> list[dict]:
    """Content deltas followed by a ``stop`` finish."""
    return [envelope(content=p) for p in parts] + [envelope(finish_reason="stop")]


def tool_call_stream(name: str, args: dict, call_id: str = "call_1", pieces: int = 3) -> list[dict]:
    """One tool call whose JSON arguments arrive in ``pieces`` chunks."""
    text = json.dumps(args)
    size = max(1, -(-len(text) // pieces))
    chunks = [text[i:i + size] for i in range(0, len(text), size)]
    events = [envelope(tool_calls=[fragment(call_id=call_id, name=name)], role="assistant")]
    events += [envelope(tool_calls=[fragment(arguments=c)]) for c in chunks]
    events.append(envelope(finish_reason="tool_calls"))
    return events


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------

class ScriptedProvider(ModelProvider):
    """Replays queued envelope scripts, one per ``stream_complete`` call.

    A script item that is an exception instance is raised at that point
    of the stream.
    """

    name = "scripted"

    def __init__(self, *scripts: list):
        self.scripts = list(scripts)
        self.call_log: list[dict] = []
        self.consumed = 0
        self.closed = False

    async def stream_complete(self, model, messages, tools=None):
        self.call_log.append({"model": model, "messages": messages, "tools": tools})
        script = self.scripts.pop(0)
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                self.consumed += 1
                yield chunk_from_envelope(item)
        finally:
            self.closed = True


class BrokenProvider(ModelProvider):
    """Fails before yielding anything."""

    async def stream_complete(self, model, messages, tools=None):
        raise UpstreamStreamError("connection refused")
        yield  # pragma: no cover


# ---------------------------------------------------------------------------
# Subscriber doubles
# ---------------------------------------------------------------------------

class RecordingSubscriber(Subscriber):
    """Subscriber that keeps every frame it accepted."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.frames: list[dict] = []

    def write(self, frame: dict) -> None:
        super().write(frame)
        self.frames.append(frame)


class ExplodingSubscriber(Subscriber):
    """Subscriber whose writes always fail."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.attempts = 0

    def write(self, frame: dict) -> None:
        self.attempts += 1
        raise ConnectionResetError("client went away")


def contents(frames: list[dict]) -> list[str]:
    """Text of every content delta, in order."""
    out = []
    for f in frames:
        for choice in f.get("choices", []):
            if choice["delta"].get("content"):
                out.append(choice["delta"]["content"])
    return out


def finish_reasons(frames: list[dict]) -> list[str]:
    return [
        f["choices"][0]["finish_reason"]
        for f in frames
        if f.get("choices") and f["choices"][0]["finish_reason"]
    ]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def registry():
    return SubscriberRegistry("test")


@pytest.fixture
def broadcaster(registry):
    return Broadcaster(registry, eviction_threshold=None)


@pytest.fixture
def subscriber(registry):
    sub = RecordingSubscriber()
    registry.register(sub)
    return sub


@pytest.fixture
def store():
    return StoryStore("sqlite://")


@pytest.fixture
def project(store):
    """A project with three stories: one done, one blocked, one todo."""
    project_id = store.create_project(
        "Roadmap", owner_id="u1", settings={"projectStartDate": "2024-01-08"},
    )
    done = store.create_user_story(project_id, title="Login page", estimation=3, status="done")
    store.create_user_story(project_id, title="Export CSV", estimation=5, epic="Reports")
    blocked = store.create_user_story(project_id, title="SSO", estimation=2)
    store.update_story_status(project_id, blocked, "blocked")
    return {"id": project_id, "done": done, "blocked": blocked}


@pytest.fixture
def metrics_calls():
    return []


@pytest.fixture
def metrics_tool(metrics_calls):
    @tool(render=lambda m: f"{m['projectId']}: {m['storyCount']} stories")
    def get_project_metrics(projectId: str):
        """Project metrics."""
        metrics_calls.append(projectId)
        return {"projectId": projectId, "storyCount": 4}

    return get_project_metrics


@pytest.fixture
def dispatcher(metrics_tool):
    return ToolDispatcher([metrics_tool])
