"""
Unit tests for the OpenAI chat client and embedding provider.

The SDK client is replaced with MagicMock/AsyncMock objects that replay
streamed completion chunks.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from colloquy.agent.domain.entities import (
    ChatEventType,
    ErrorType,
    Message,
    Parameters,
    ToolCallRequest,
    ToolCallState,
    ToolDefinition,
    ToolOutput,
)
from colloquy.agent.domain.errors import EmbeddingError
from colloquy.agent.providers.base import ProviderConfig
from colloquy.agent.providers.openai import OpenAIChatClient, OpenAIEmbeddingProvider


@pytest.fixture
def openai_config():
    """Test OpenAI config."""
    return ProviderConfig(
        api_key="test-api-key",
        model="gpt-4o-mini",
        embedding_model="text-embedding-3-large",
    )


def chunk(content=None, tool_calls=None, finish_reason=None):
    c = MagicMock()
    c.choices = [MagicMock()]
    c.choices[0].delta.content = content
    c.choices[0].delta.tool_calls = tool_calls
    c.choices[0].finish_reason = finish_reason
    return c


def tool_delta(index, call_id=None, name=None, arguments=None):
    tc = MagicMock()
    tc.index = index
    tc.id = call_id
    tc.function.name = name
    tc.function.arguments = arguments
    return tc


def streaming_client(*chunks):
    """Mock AsyncOpenAI whose chat.completions.create returns a stream of chunks."""

    async def stream():
        for c in chunks:
            yield c

    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=stream())
    client.close = AsyncMock()
    return client


def api_response(status):
    return httpx.Response(status, request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))


async def collect(client, context, params):
    return [event async for event in client.send(context, params)]


class TestOpenAIChat:
    """Tests for streamed chat completions."""

    @pytest.mark.asyncio
    async def test_text_streaming(self, openai_config):
        sdk = streaming_client(chunk("Hello"), chunk(" world!", finish_reason="stop"))
        client = OpenAIChatClient(openai_config, client=sdk)

        events = await collect(client, [Message.user("Hi")], Parameters(model="", system_prompt="Be nice."))

        assert [e.type for e in events] == [
            ChatEventType.TEXT_DELTA,
            ChatEventType.TEXT_DELTA,
            ChatEventType.DONE,
        ]
        assert "".join(e.content for e in events[:2]) == "Hello world!"

        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["stream"] is True
        assert kwargs["messages"][0] == {"role": "system", "content": "Be nice."}
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_tool_call_fragments_are_assembled(self, openai_config):
        sdk = streaming_client(
            chunk(tool_calls=[tool_delta(0, "call_1", "get_weather", '{"ci')]),
            chunk(tool_calls=[tool_delta(0, arguments='ty": "Oslo"}')]),
            chunk(finish_reason="tool_calls"),
        )
        client = OpenAIChatClient(openai_config, client=sdk)
        params = Parameters(model="gpt-4o", tools=(ToolDefinition(name="get_weather"),))

        events = await collect(client, [Message.user("Weather?")], params)

        start, end, done = events
        assert start.type == ChatEventType.TOOL_CALL_START
        assert (start.tool_call_id, start.tool_name) == ("call_1", "get_weather")
        assert end.tool_arguments == {"city": "Oslo"}
        assert end.tool_name == "get_weather"
        assert done.type == ChatEventType.DONE

        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["model"] == "gpt-4o"

    def test_tool_round_formatting(self, openai_config):
        client = OpenAIChatClient(openai_config, client=MagicMock())
        context = [
            Message.system("Summary of the conversation so far:\nweather talk"),
            Message.user("Weather?"),
            Message.assistant("", tool_calls=(ToolCallRequest("c1", "get_weather", {"city": "Oslo"}),)),
            Message.tool(ToolOutput("c1", "get_weather", "sunny", ToolCallState.COMPLETED)),
        ]

        api_messages = client._format_messages_for_api(context, Parameters(model="", system_prompt="Be nice."))

        assert api_messages[0]["content"].startswith("Be nice.\n\nSummary")
        assert api_messages[2]["content"] is None
        assert json.loads(api_messages[2]["tool_calls"][0]["function"]["arguments"]) == {"city": "Oslo"}
        assert api_messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "sunny"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, error_type",
        [
            (openai.AuthenticationError("bad key", response=api_response(401), body=None), ErrorType.AUTHENTICATION),
            (openai.RateLimitError("slow down", response=api_response(429), body=None), ErrorType.RATE_LIMIT),
            (openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com")), ErrorType.TIMEOUT),
            (openai.InternalServerError("boom", response=api_response(500), body=None), ErrorType.RECOVERABLE),
            (RuntimeError("unexpected"), ErrorType.FATAL),
        ],
    )
    async def test_errors_are_yielded_as_events(self, openai_config, error, error_type):
        sdk = MagicMock()
        sdk.chat.completions.create = AsyncMock(side_effect=error)
        client = OpenAIChatClient(openai_config, client=sdk)

        [event] = await collect(client, [Message.user("Hi")], Parameters(model=""))

        assert event.type == ChatEventType.ERROR
        assert event.error_type == error_type


class TestOpenAIEmbeddings:
    """Tests for the embedding provider."""

    @pytest.mark.asyncio
    async def test_embed_batch(self, openai_config):
        sdk = MagicMock()
        response = MagicMock()
        response.data = [MagicMock(embedding=[0.1] * 3072), MagicMock(embedding=[0.2] * 3072)]
        sdk.embeddings.create = AsyncMock(return_value=response)
        provider = OpenAIEmbeddingProvider(openai_config, client=sdk)

        vectors = await provider.embed_batch(["a", "b"])

        assert len(vectors) == 2
        assert len(vectors[0]) == provider.dimension == 3072
        sdk.embeddings.create.assert_awaited_once_with(model="text-embedding-3-large", input=["a", "b"])

    @pytest.mark.asyncio
    async def test_empty_batch_skips_request(self, openai_config):
        sdk = MagicMock()
        sdk.embeddings.create = AsyncMock()
        provider = OpenAIEmbeddingProvider(openai_config, client=sdk)

        assert await provider.embed_batch([]) == []
        sdk.embeddings.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_api_error_raises_embedding_error(self, openai_config):
        sdk = MagicMock()
        sdk.embeddings.create = AsyncMock(
            side_effect=openai.RateLimitError("slow down", response=api_response(429), body=None)
        )
        provider = OpenAIEmbeddingProvider(openai_config, client=sdk)

        with pytest.raises(EmbeddingError):
            await provider.embed("text")

    def test_default_model(self):
        provider = OpenAIEmbeddingProvider(ProviderConfig(api_key="k", model="gpt-4o"), client=MagicMock())

        assert provider.model_name == "text-embedding-3-small"
        assert provider.dimension == 1536
