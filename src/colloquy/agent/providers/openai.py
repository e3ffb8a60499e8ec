"""
OpenAI chat and embedding providers.

Implements IChatApiClient and IEmbeddingProvider for OpenAI models.
Supports streaming, tool calling, and embeddings.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from ..domain.entities import (
    ChatEvent,
    ErrorType,
    Message,
    MessageRole,
    Parameters,
    ToolDefinition,
)
from ..domain.errors import EmbeddingError
from ..domain.ports import IEmbeddingProvider
from .base import BaseChatClient, EventSequence, ProviderConfig

logger = logging.getLogger(__name__)


def _client_for(config: ProviderConfig) -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.timeout,
        max_retries=config.max_retries,
    )


class OpenAIChatClient(BaseChatClient):
    """OpenAI chat client.

    Usage:
        config = ProviderConfig(api_key="sk-...", model="gpt-4o-mini")
        client = OpenAIChatClient(config)

        async for event in client.send(context, params):
            print(event)
    """

    DEFAULT_MODEL = "gpt-4o-mini"

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        super().__init__(config)
        self.client = client or _client_for(config)

    def _format_messages_for_api(self, context: list[Message], params: Parameters) -> list[dict[str, Any]]:
        """Convert items to OpenAI format.

        OpenAI includes system messages in the messages array.
        """
        api_messages: list[dict[str, Any]] = []

        system = self._system_text(context, params)
        if system:
            api_messages.append({"role": "system", "content": system})

        for msg in context:
            if msg.role == MessageRole.SYSTEM:
                continue
            if msg.role == MessageRole.TOOL:
                api_messages.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id or "unknown",
                    "content": msg.content,
                })
            elif msg.role == MessageRole.ASSISTANT and msg.tool_calls:
                api_messages.append({
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.name,
                                "arguments": json.dumps(tc.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ],
                })
            else:
                api_messages.append({"role": msg.role.value, "content": msg.content})

        return api_messages

    def _format_tools_for_api(self, tools: tuple[ToolDefinition, ...]) -> list[dict[str, Any]]:
        return [tool.to_openai_format() for tool in tools]

    async def send(self, context: list[Message], params: Parameters) -> AsyncIterator[ChatEvent]:
        """Stream a response from the Chat Completions API.

        Yields:
            ChatEvent objects
        """
        events = EventSequence()

        kwargs: dict[str, Any] = {
            "model": self._model_for(params),
            "messages": self._format_messages_for_api(context, params),
            "temperature": params.temperature,
            "stream": True,
        }
        if params.max_tokens:
            kwargs["max_tokens"] = params.max_tokens
        if params.tools:
            kwargs["tools"] = self._format_tools_for_api(params.tools)
            kwargs["tool_choice"] = "auto"

        try:
            stream_response = await self.client.chat.completions.create(**kwargs)

            # Track tool calls being assembled
            tool_calls_in_progress: dict[int, dict[str, Any]] = {}

            async for chunk in stream_response:
                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue

                delta = choice.delta

                if delta.content:
                    yield events.text_delta(delta.content)

                if delta.tool_calls:
                    for tc in delta.tool_calls:
                        idx = tc.index

                        if idx not in tool_calls_in_progress:
                            tool_calls_in_progress[idx] = {
                                "id": tc.id or f"call_{idx}",
                                "name": tc.function.name if tc.function else "",
                                "arguments": "",
                            }
                            if tc.function and tc.function.name:
                                yield events.tool_call_start(
                                    tool_calls_in_progress[idx]["id"],
                                    tc.function.name,
                                )

                        if tc.function and tc.function.arguments:
                            tool_calls_in_progress[idx]["arguments"] += tc.function.arguments

                if choice.finish_reason:
                    for tc_data in tool_calls_in_progress.values():
                        try:
                            arguments = json.loads(tc_data["arguments"]) if tc_data["arguments"] else {}
                        except json.JSONDecodeError:
                            arguments = {"raw": tc_data["arguments"]}

                        yield events.tool_call_end(tc_data["id"], arguments, name=tc_data["name"])
                    break

            yield events.done()

        except openai.AuthenticationError as e:
            logger.error(f"OpenAI rejected credentials: {e}")
            yield events.error(f"Authentication failed: {e}", ErrorType.AUTHENTICATION)
        except openai.RateLimitError as e:
            logger.warning(f"Rate limited by OpenAI: {e}")
            yield events.error(f"Rate limited: {e}", ErrorType.RATE_LIMIT)
        except openai.APITimeoutError as e:
            logger.error(f"OpenAI API timeout: {e}")
            yield events.error(f"Request timed out: {e}", ErrorType.TIMEOUT)
        except openai.APIError as e:
            logger.error(f"OpenAI API error: {e}")
            yield events.error(f"API error: {e}", ErrorType.RECOVERABLE)
        except Exception as e:
            logger.exception(f"Unexpected error in OpenAI chat: {e}")
            yield events.error(str(e), ErrorType.FATAL)

    async def close(self) -> None:
        await self.client.close()


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """OpenAI embeddings (text-embedding-3-small/large).

    Usage:
        embedder = OpenAIEmbeddingProvider(ProviderConfig(api_key="sk-...", model="gpt-4o-mini"))
        vector = await embedder.embed("hello")
    """

    DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"

    # Embedding dimensions by model
    EMBEDDING_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(self, config: ProviderConfig, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self.embedding_model = config.embedding_model or self.DEFAULT_EMBEDDING_MODEL
        self.client = client or _client_for(config)

    @property
    def model_name(self) -> str:
        return self.embedding_model

    @property
    def dimension(self) -> int:
        return self.EMBEDDING_DIMENSIONS.get(self.embedding_model, 1536)

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding for text.

        Raises:
            EmbeddingError: On API errors
        """
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts in one request."""
        if not texts:
            return []

        try:
            response = await self.client.embeddings.create(
                model=self.embedding_model,
                input=texts,
            )
        except openai.RateLimitError as e:
            logger.warning(f"Rate limited during embedding: {e}")
            raise EmbeddingError(f"Rate limited: {e}", original_error=e) from e
        except openai.APIError as e:
            logger.error(f"OpenAI embedding error: {e}")
            raise EmbeddingError(f"Embedding failed: {e}", original_error=e) from e

        return [list(item.embedding) for item in response.data]

    async def close(self) -> None:
        await self.client.close()
