import logging
import os
from collections.abc import AsyncIterator

from openai import AsyncOpenAI, OpenAIError

from storyline.streaming import StreamChunk, ToolCallFragment

logger = logging.getLogger(__name__)


class UpstreamStreamError(Exception):
    """The model provider could not be reached or its stream broke."""


def chunk_from_envelope(envelope: dict) -> StreamChunk:
    """Normalise one chat-completion chunk envelope.

    Accepts the provider's ``arguments`` key and the ``arguments_chunk``
    spelling used by recorded streams.  Fragments without an ``index``
    are treated as index 0.
    """
    choices = envelope.get("choices") or []
    if not choices:
        return StreamChunk(raw=envelope)
    choice = choices[0]
    delta = choice.get("delta") or {}

    fragments = None
    if delta.get("tool_calls"):
        fragments = []
        for tc in delta["tool_calls"]:
            function = tc.get("function") or {}
            arguments = function.get("arguments")
            if arguments is None:
                arguments = function.get("arguments_chunk")
            fragments.append(ToolCallFragment(
                index=tc.get("index") or 0,
                call_id=tc.get("id"),
                name=function.get("name"),
                arguments_delta=arguments,
            ))

    return StreamChunk(
        content_delta=delta.get("content"),
        tool_call_fragments=fragments,
        finish_reason=choice.get("finish_reason"),
        raw=envelope,
    )


class ModelProvider:
    """Streams chat completions as :class:`StreamChunk` objects."""

    name = "unknown"

    async def stream_complete(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError
        yield  # pragma: no cover


class OpenAIProvider(ModelProvider):

    name = "openai"

    def __init__(self, api_key: str | None = None, timeout: float = 600.0):
        if not api_key:
            api_key = os.getenv("OPENAI_API_KEY")
        self.client = AsyncOpenAI(
            api_key=api_key,
            max_retries=5,
            timeout=timeout,
        )

    async def stream_complete(
            self,
            model: str,
            messages: list[dict],
            tools: list[dict] | None = None,
    ) -> AsyncIterator[StreamChunk]:
        kwargs = {"model": model, "messages": messages, "stream": True}
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        try:
            stream = await self.client.chat.completions.create(**kwargs)
            async for chunk in stream:
                yield chunk_from_envelope(chunk.model_dump(mode="json", exclude_unset=True))
        except OpenAIError as e:
            logger.error(f"{self.name} stream failed: {e}")
            raise UpstreamStreamError(str(e)) from e


class OpenAICompatibleProvider(OpenAIProvider):
    """Any server speaking the OpenAI chat-completions protocol."""

    name = "openai_compatible"

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 600.0):
        self.base_url = base_url.rstrip("/")
        self.client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key or "DUMMY",
            max_retries=5,
            timeout=timeout,
        )
