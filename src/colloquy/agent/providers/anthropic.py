"""
Anthropic Claude chat client.

Implements IChatApiClient for Anthropic's Claude models.
Supports streaming and tool calling. Anthropic has no embeddings API;
pair this client with an OpenAI or Ollama embedding provider.
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator, Optional

import anthropic
from anthropic import AsyncAnthropic

from ..domain.entities import (
    ChatEvent,
    ErrorType,
    Message,
    MessageRole,
    Parameters,
    ToolDefinition,
)
from .base import BaseChatClient, EventSequence, ProviderConfig

logger = logging.getLogger(__name__)


class AnthropicChatClient(BaseChatClient):
    """Anthropic Claude chat client.

    Usage:
        config = ProviderConfig(api_key="sk-ant-...", model="claude-sonnet-4-5")
        client = AnthropicChatClient(config)

        async for event in client.send(context, params):
            print(event)
    """

    DEFAULT_MODEL = "claude-sonnet-4-5"

    def __init__(self, config: ProviderConfig, client: Optional[AsyncAnthropic] = None):
        super().__init__(config)
        self.client = client or AsyncAnthropic(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
            max_retries=config.max_retries,
        )

    def _format_messages_for_api(self, context: list[Message]) -> list[dict[str, Any]]:
        """Convert items to Anthropic format.

        Anthropic takes the system prompt as a separate parameter, and
        tool results are user messages made of tool_result blocks.
        Consecutive tool results are merged into one user message.
        """
        api_messages: list[dict[str, Any]] = []

        for msg in context:
            if msg.role == MessageRole.SYSTEM:
                continue
            if msg.role == MessageRole.TOOL:
                block = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "unknown",
                    "content": msg.content,
                }
                previous = api_messages[-1] if api_messages else None
                if (
                    previous
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                    and previous["content"]
                    and previous["content"][0].get("type") == "tool_result"
                ):
                    previous["content"].append(block)
                else:
                    api_messages.append({"role": "user", "content": [block]})
            elif msg.role == MessageRole.ASSISTANT and msg.tool_calls:
                content_blocks: list[dict[str, Any]] = []
                if msg.content:
                    content_blocks.append({"type": "text", "text": msg.content})
                for tc in msg.tool_calls:
                    content_blocks.append({
                        "type": "tool_use",
                        "id": tc.id,
                        "name": tc.name,
                        "input": tc.arguments,
                    })
                api_messages.append({"role": "assistant", "content": content_blocks})
            else:
                api_messages.append({"role": msg.role.value, "content": msg.content})

        return api_messages

    def _format_tools_for_api(self, tools: tuple[ToolDefinition, ...]) -> list[dict[str, Any]]:
        return [tool.to_anthropic_format() for tool in tools]

    async def send(self, context: list[Message], params: Parameters) -> AsyncIterator[ChatEvent]:
        """Stream a response using the Messages API.

        Yields:
            ChatEvent objects
        """
        events = EventSequence()

        kwargs: dict[str, Any] = {
            "model": self._model_for(params),
            "messages": self._format_messages_for_api(context),
            "temperature": params.temperature,
            "max_tokens": params.max_tokens or self.config.max_tokens,
        }

        system = self._system_text(context, params)
        if system:
            kwargs["system"] = system
        if params.tools:
            kwargs["tools"] = self._format_tools_for_api(params.tools)

        try:
            async with self.client.messages.stream(**kwargs) as stream_response:
                current_tool_call_id: Optional[str] = None
                current_tool_name: Optional[str] = None
                accumulated_tool_input = ""

                async for event in stream_response:
                    if event.type == "content_block_start":
                        block = event.content_block
                        if block.type == "tool_use":
                            current_tool_call_id = block.id
                            current_tool_name = block.name
                            accumulated_tool_input = ""
                            yield events.tool_call_start(block.id, block.name)

                    elif event.type == "content_block_delta":
                        delta = event.delta
                        if delta.type == "text_delta":
                            yield events.text_delta(delta.text)
                        elif delta.type == "input_json_delta":
                            accumulated_tool_input += delta.partial_json

                    elif event.type == "content_block_stop":
                        if current_tool_call_id:
                            try:
                                arguments = json.loads(accumulated_tool_input) if accumulated_tool_input else {}
                            except json.JSONDecodeError:
                                arguments = {"raw": accumulated_tool_input}

                            yield events.tool_call_end(
                                current_tool_call_id, arguments, name=current_tool_name
                            )
                            current_tool_call_id = None
                            current_tool_name = None

                yield events.done()

        except anthropic.AuthenticationError as e:
            logger.error(f"Anthropic rejected credentials: {e}")
            yield events.error(f"Authentication failed: {e}", ErrorType.AUTHENTICATION)
        except anthropic.RateLimitError as e:
            logger.warning(f"Rate limited by Anthropic: {e}")
            yield events.error(f"Rate limited: {e}", ErrorType.RATE_LIMIT)
        except anthropic.APITimeoutError as e:
            logger.error(f"Anthropic API timeout: {e}")
            yield events.error(f"Request timed out: {e}", ErrorType.TIMEOUT)
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            yield events.error(f"API error: {e}", ErrorType.RECOVERABLE)
        except Exception as e:
            logger.exception(f"Unexpected error in Anthropic chat: {e}")
            yield events.error(str(e), ErrorType.FATAL)

    async def close(self) -> None:
        await self.client.close()
