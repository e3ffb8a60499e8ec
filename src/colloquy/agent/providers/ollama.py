"""
Ollama chat and embedding providers.

Talks to a local Ollama server over its HTTP API with httpx. Supports
streaming chat, tool calling (model-dependent) and embeddings.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, AsyncIterator, Optional

import httpx

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

DEFAULT_BASE_URL = "http://localhost:11434"


def _http_client(config: ProviderConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=config.base_url or DEFAULT_BASE_URL,
        timeout=config.timeout,
    )


class OllamaChatClient(BaseChatClient):
    """Ollama local chat client.

    Usage:
        config = ProviderConfig(
            api_key=None,  # Ollama doesn't require auth
            model="qwen3:4b",
            base_url="http://localhost:11434",
        )
        client = OllamaChatClient(config)

        async for event in client.send(context, params):
            print(event)
    """

    DEFAULT_MODEL = "qwen3:4b"

    def __init__(self, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None):
        super().__init__(config)
        self.client = client or _http_client(config)

    def _format_messages_for_api(self, context: list[Message], params: Parameters) -> list[dict[str, Any]]:
        """Convert items to Ollama's chat format."""
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
                    "content": msg.content,
                    "tool_name": msg.name,
                })
            elif msg.role == MessageRole.ASSISTANT and msg.tool_calls:
                api_messages.append({
                    "role": "assistant",
                    "content": msg.content or "",
                    "tool_calls": [
                        {"function": {"name": tc.name, "arguments": tc.arguments}}
                        for tc in msg.tool_calls
                    ],
                })
            else:
                api_messages.append({"role": msg.role.value, "content": msg.content})

        return api_messages

    def _format_tools_for_api(self, tools: tuple[ToolDefinition, ...]) -> list[dict[str, Any]]:
        """Ollama uses the OpenAI-compatible tool format."""
        return [tool.to_openai_format() for tool in tools]

    async def send(self, context: list[Message], params: Parameters) -> AsyncIterator[ChatEvent]:
        """Stream a response from /api/chat.

        Yields:
            ChatEvent objects
        """
        events = EventSequence()

        payload: dict[str, Any] = {
            "model": self._model_for(params),
            "messages": self._format_messages_for_api(context, params),
            "stream": True,
            "options": {"temperature": params.temperature},
        }
        if params.max_tokens:
            payload["options"]["num_predict"] = params.max_tokens
        if params.tools:
            payload["tools"] = self._format_tools_for_api(params.tools)

        try:
            async with self.client.stream("POST", "/api/chat", json=payload) as response:
                response.raise_for_status()

                # Newline-delimited JSON stream
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue

                    try:
                        chunk = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Failed to parse Ollama response: {e}")
                        continue

                    if chunk.get("error"):
                        yield events.error(f"Ollama error: {chunk['error']}", ErrorType.RECOVERABLE)
                        return

                    message = chunk.get("message", {})
                    content = message.get("content", "")
                    if content:
                        yield events.text_delta(content)

                    for tool_call in message.get("tool_calls", []):
                        function = tool_call.get("function", {})
                        tool_name = function.get("name")
                        if not tool_name:
                            continue
                        tool_args = function.get("arguments", {})
                        if isinstance(tool_args, str):
                            try:
                                tool_args = json.loads(tool_args)
                            except json.JSONDecodeError:
                                tool_args = {"raw": tool_args}
                        tool_id = tool_call.get("id") or f"call_{uuid.uuid4().hex[:12]}"

                        yield events.tool_call_start(tool_id, tool_name)
                        yield events.tool_call_end(tool_id, tool_args or {}, name=tool_name)

                    if chunk.get("done"):
                        break

            yield events.done()

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            error_msg = f"Ollama API error: {status}"
            logger.error(error_msg)
            error_type = ErrorType.AUTHENTICATION if status in (401, 403) else ErrorType.RECOVERABLE
            yield events.error(error_msg, error_type)

        except httpx.TimeoutException as e:
            error_msg = f"Ollama request timeout: {e}"
            logger.error(error_msg)
            yield events.error(error_msg, ErrorType.TIMEOUT)

        except httpx.RequestError as e:
            error_msg = f"Ollama connection error: {e}"
            logger.error(error_msg)
            yield events.error(error_msg, ErrorType.RECOVERABLE)

        except Exception as e:
            error_msg = f"Unexpected error in Ollama provider: {e}"
            logger.exception(error_msg)
            yield events.error(error_msg, ErrorType.FATAL)

    async def close(self) -> None:
        await self.client.aclose()


class OllamaEmbeddingProvider(IEmbeddingProvider):
    """Embeddings from a local Ollama server (e.g. nomic-embed-text)."""

    DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        dimension: int = 768,
    ):
        self.config = config
        self.embedding_model = config.embedding_model or self.DEFAULT_EMBEDDING_MODEL
        self.client = client or _http_client(config)
        self._dimension = dimension

    @property
    def model_name(self) -> str:
        return self.embedding_model

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding using Ollama.

        Raises:
            EmbeddingError: If embedding generation fails
        """
        try:
            response = await self.client.post(
                "/api/embeddings",
                json={"model": self.embedding_model, "prompt": text},
            )
            response.raise_for_status()
            embedding = response.json().get("embedding", [])

        except httpx.HTTPStatusError as e:
            raise EmbeddingError(
                f"Ollama embedding API error: {e.response.status_code}",
                original_error=e,
            ) from e
        except httpx.TimeoutException as e:
            raise EmbeddingError(f"Ollama embedding timeout: {e}", original_error=e) from e
        except httpx.RequestError as e:
            raise EmbeddingError(f"Ollama connection error: {e}", original_error=e) from e

        if not embedding:
            raise EmbeddingError("No embedding returned from Ollama")
        return embedding

    async def close(self) -> None:
        await self.client.aclose()
