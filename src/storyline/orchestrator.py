import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum

import storyline.instrumentation as inst
from storyline.broadcast import Broadcaster
from storyline.events import (
    DEFAULT_PROGRESS_TEXT,
    content_frame,
    error_frame,
    progress_frame,
    result_frame,
    stop_frame,
)
from storyline.message import TurnRequest
from storyline.policy import SingleCallPerTurn, ToolCallPolicy
from storyline.provider import ModelProvider, UpstreamStreamError
from storyline.streaming import StreamChunk, ToolCall, ToolCallParseError, TurnAccumulator
from storyline.tools import ToolDispatcher, ToolExecutionError, UnknownToolError

logger = logging.getLogger(__name__)

TOOL_CALLS = "tool_calls"


class TurnState(Enum):
    STREAMING = "streaming"
    ACCUMULATING_CALL = "accumulating_call"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"


@dataclass
class OrchestrationResult:
    """Outcome of one triggering request.

    ``status`` is ``"ok"`` unless the upstream stream failed.
    """

    request_id: str
    status: str = "ok"
    state: TurnState = TurnState.STREAMING
    calls: list[ToolCall] = field(default_factory=list)
    frames: int = 0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


def apology(name: str) -> str:
    return f"Sorry, something went wrong while running `{name}`. Please try again."


class StreamOrchestrator:
    """Drives one upstream stream per triggering request.

    Plain content is re-broadcast verbatim in arrival order.  Tool-call
    fragments are accumulated and never broadcast.  When the turn ends
    with ``finish_reason == "tool_calls"`` the accumulated calls are
    completed, dispatched, and their rendered results broadcast as one
    synthetic frame with ``finish_reason == "stop"``.  The upstream
    stream is not consumed past that point.

    None of the orchestration errors escape :meth:`run`.

    Args:
        provider: Upstream model provider.
        dispatcher: Tool handler table.
        broadcaster: Fan-out for the request's session.
        policy: Caps tool calls per turn; defaults to one.
        progress_text: Text of the frame sent before a tool runs.
        upstream_idle_timeout: Seconds to wait for the next upstream
            chunk before failing the request. ``None`` waits forever.
        system_prompt: Prepended to the transcript when it has none.
    """

    def __init__(
        self,
        provider: ModelProvider,
        dispatcher: ToolDispatcher,
        broadcaster: Broadcaster,
        policy: ToolCallPolicy | None = None,
        progress_text: str = DEFAULT_PROGRESS_TEXT,
        upstream_idle_timeout: float | None = None,
        system_prompt: str | None = None,
        default_model: str = "gpt-4.1-mini",
    ):
        self.provider = provider
        self.dispatcher = dispatcher
        self.broadcaster = broadcaster
        self.policy = policy or SingleCallPerTurn()
        self.progress_text = progress_text
        self.upstream_idle_timeout = upstream_idle_timeout
        self.system_prompt = system_prompt
        self.default_model = default_model

    async def run(self, request: TurnRequest, request_id: str | None = None) -> OrchestrationResult:
        result = OrchestrationResult(request_id=request_id or uuid.uuid4().hex)
        model = request.model or self.default_model
        tools = self.dispatcher.descriptors() if request.tools and len(self.dispatcher) else None

        async with inst.turn_span(result.request_id, model, request.session) as span:
            try:
                await self._consume(request, model, tools, result)
            except UpstreamStreamError as e:
                logger.error(f"Request {result.request_id}: upstream failed: {e}")
                inst.record_error(span, e)
                await self._send(error_frame(str(e)), result)
                result.status = "failed"
                result.error = str(e)
            result.state = TurnState.DONE
            inst.record_result(span, result.state.value, result.frames)

        logger.info(
            f"Request {result.request_id} done: status={result.status} "
            f"calls={len(result.calls)} frames={result.frames}"
        )
        return result

    async def _send(self, frame: dict, result: OrchestrationResult) -> None:
        await self.broadcaster.broadcast(frame)
        result.frames += 1

    async def _next_chunk(self, iterator) -> StreamChunk | None:
        try:
            return await asyncio.wait_for(iterator.__anext__(), timeout=self.upstream_idle_timeout)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError as e:
            raise UpstreamStreamError(
                f"no upstream event for {self.upstream_idle_timeout}s"
            ) from e

    async def _consume(self, request, model, tools, result) -> None:
        turn = TurnAccumulator(limit=self.policy.max_calls)
        messages = request.messages(self.system_prompt)
        try:
            stream = self.provider.stream_complete(model=model, messages=messages, tools=tools)
        except UpstreamStreamError:
            raise
        except Exception as e:
            raise UpstreamStreamError(str(e)) from e

        async with aclosing(stream):
            iterator = stream.__aiter__()
            while True:
                try:
                    chunk = await self._next_chunk(iterator)
                except UpstreamStreamError:
                    raise
                except Exception as e:
                    raise UpstreamStreamError(str(e)) from e
                if chunk is None:
                    break

                if chunk.tool_call_fragments:
                    result.state = TurnState.ACCUMULATING_CALL
                    if chunk.content_delta:
                        await self._send(content_frame(chunk.content_delta), result)
                    for fragment in chunk.tool_call_fragments:
                        if turn.feed(fragment) is None:
                            logger.debug(f"Request {result.request_id}: ignoring fragment beyond {self.policy}")

                if chunk.finish_reason == TOOL_CALLS or (chunk.finish_reason and turn):
                    if chunk.finish_reason != TOOL_CALLS:
                        # some compatible servers finish tool turns with "stop"
                        logger.info(
                            f"Request {result.request_id}: finish_reason "
                            f"{chunk.finish_reason!r} after tool call fragments"
                        )
                    await self._finish_tool_turn(turn, result)
                    return

                if chunk.tool_call_fragments:
                    continue
                if chunk.raw is not None and not chunk.raw.get("choices"):
                    # keep-alive or usage-only chunk
                    continue
                frame = chunk.raw
                if frame is None:
                    if chunk.content_delta is None and chunk.finish_reason is None:
                        continue
                    frame = content_frame(chunk.content_delta, chunk.finish_reason)
                await self._send(frame, result)

        if turn:
            # stream ended while a call was still arriving
            names = ", ".join(a.name or "?" for a in turn.accumulators())
            raise UpstreamStreamError(f"upstream ended before tool call completed ({names})")

    async def _finish_tool_turn(self, turn: TurnAccumulator, result: OrchestrationResult) -> None:
        if not turn:
            logger.warning(f"Request {result.request_id}: tool_calls finish without fragments")
            await self._send(stop_frame(), result)
            return

        calls: list[ToolCall] = []
        for acc in turn.accumulators():
            try:
                calls.append(acc.complete())
            except ToolCallParseError as e:
                logger.warning(f"Request {result.request_id}: {e}; raw={e.raw!r}")
                await self._send(error_frame(str(e)), result)

        if not calls:
            await self._send(stop_frame(), result)
            return

        await self._send(progress_frame(self.progress_text), result)
        result.state = TurnState.EXECUTING_TOOL
        texts = []
        for call in calls:
            text = await self._dispatch(call, result)
            if text is not None:
                texts.append(text)

        await self._send(result_frame("\n\n".join(texts)) if texts else stop_frame(), result)

    async def _dispatch(self, call: ToolCall, result: OrchestrationResult) -> str | None:
        result.calls.append(call)
        async with inst.tool_span(call.name, call.id) as span:
            try:
                return await self.dispatcher.dispatch(call.name, call.arguments)
            except UnknownToolError as e:
                logger.warning(f"Request {result.request_id}: {e}")
                inst.record_error(span, e)
                await self._send(error_frame(str(e)), result)
                return None
            except ToolExecutionError as e:
                inst.record_error(span, e)
                return apology(call.name)
