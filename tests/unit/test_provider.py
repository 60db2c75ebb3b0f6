from unittest.mock import AsyncMock

import httpx
import openai
import pytest
from openai.types.chat import ChatCompletionChunk

from storyline.provider import (
    OpenAICompatibleProvider,
    OpenAIProvider,
    UpstreamStreamError,
    chunk_from_envelope,
)

from tests.conftest import envelope, fragment


# ---------------------------------------------------------------------------
# Envelope normalisation
# ---------------------------------------------------------------------------


class TestChunkFromEnvelope:
    def test_content(self):
        env = envelope(content="Hel", role="assistant")
        chunk = chunk_from_envelope(env)

        assert chunk.content_delta == "Hel"
        assert chunk.tool_call_fragments is None
        assert chunk.finish_reason is None
        assert chunk.raw is env

    def test_tool_call_fragment(self):
        chunk = chunk_from_envelope(envelope(tool_calls=[
            fragment(call_id="c1", name="get_project_metrics", arguments='{"pro'),
        ]))

        [frag] = chunk.tool_call_fragments
        assert frag.index == 0
        assert frag.call_id == "c1"
        assert frag.name == "get_project_metrics"
        assert frag.arguments_delta == '{"pro'

    def test_arguments_chunk_spelling(self):
        chunk = chunk_from_envelope({"choices": [{
            "index": 0,
            "delta": {"tool_calls": [{"function": {"arguments_chunk": 'abc"}'}}]},
            "finish_reason": None,
        }]})

        assert chunk.tool_call_fragments[0].arguments_delta == 'abc"}'

    def test_index_kept(self):
        chunk = chunk_from_envelope(envelope(tool_calls=[fragment(index=2, arguments="{}")]))
        assert chunk.tool_call_fragments[0].index == 2

    def test_finish_reason(self):
        assert chunk_from_envelope(envelope(finish_reason="tool_calls")).finish_reason == "tool_calls"

    def test_no_choices(self):
        chunk = chunk_from_envelope({"choices": [], "usage": {"total_tokens": 3}})

        assert chunk.content_delta is None
        assert chunk.finish_reason is None
        assert chunk.raw == {"choices": [], "usage": {"total_tokens": 3}}


# ---------------------------------------------------------------------------
# OpenAIProvider.stream_complete
# ---------------------------------------------------------------------------


def _sdk_chunk(delta: dict, finish_reason=None) -> ChatCompletionChunk:
    return ChatCompletionChunk.model_validate({
        "id": "chatcmpl-1",
        "object": "chat.completion.chunk",
        "created": 0,
        "model": "gpt-4.1-mini",
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    })


async def _aiter(items):
    for item in items:
        yield item


def test_openai_provider_reads_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "from-env")
    assert OpenAIProvider().client.api_key == "from-env"


def test_compatible_provider_strips_trailing_slash():
    p = OpenAICompatibleProvider(base_url="http://localhost:11434/v1/")
    assert p.base_url == "http://localhost:11434/v1"
    assert p.client.api_key == "DUMMY"


class TestOpenAIProviderStream:
    @pytest.mark.asyncio
    async def test_streams_normalised_chunks(self, monkeypatch):
        provider = OpenAIProvider(api_key="test")
        mock_create = AsyncMock(return_value=_aiter([
            _sdk_chunk({"role": "assistant", "content": "Hi"}),
            _sdk_chunk({"tool_calls": [{"index": 0, "id": "c1", "type": "function",
                                        "function": {"name": "list_projects", "arguments": ""}}]}),
            _sdk_chunk({}, finish_reason="tool_calls"),
        ]))
        monkeypatch.setattr(provider.client.chat.completions, "create", mock_create)

        tools = [{"type": "function", "function": {"name": "list_projects"}}]
        chunks = [c async for c in provider.stream_complete("gpt-4.1-mini", [], tools=tools)]

        assert chunks[0].content_delta == "Hi"
        assert chunks[0].raw["choices"][0]["delta"] == {"role": "assistant", "content": "Hi"}
        assert chunks[1].tool_call_fragments[0].name == "list_projects"
        assert chunks[2].finish_reason == "tool_calls"

        _, kwargs = mock_create.call_args
        assert kwargs["stream"] is True
        assert kwargs["tools"] == tools
        assert kwargs["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_omits_tools_when_none(self, monkeypatch):
        provider = OpenAIProvider(api_key="test")
        mock_create = AsyncMock(return_value=_aiter([]))
        monkeypatch.setattr(provider.client.chat.completions, "create", mock_create)

        _ = [c async for c in provider.stream_complete("m", [], tools=None)]

        _, kwargs = mock_create.call_args
        assert "tools" not in kwargs
        assert "tool_choice" not in kwargs

    @pytest.mark.asyncio
    async def test_connection_error_becomes_upstream_error(self, monkeypatch):
        provider = OpenAIProvider(api_key="test")
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        mock_create = AsyncMock(side_effect=openai.APIConnectionError(request=request))
        monkeypatch.setattr(provider.client.chat.completions, "create", mock_create)

        with pytest.raises(UpstreamStreamError):
            _ = [c async for c in provider.stream_complete("m", [])]
