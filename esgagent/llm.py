"""Model-invocation client.

``LLMClient.invoke`` speaks the OpenAI chat-completion shape regardless of
provider::

    {"choices": [{"message": {"content": ..., "tool_calls": [...]}}],
     "usage": {"prompt_tokens": ..., "completion_tokens": ...}}

For Anthropic, tool contracts are converted to ``input_schema`` tools, tool-use
blocks are translated back into ``tool_calls`` and a ``json_schema`` response
format becomes an output instruction appended to the system prompt.
"""
from __future__ import annotations

import json
import logging
import os
from typing import Any

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """LLM call failed at the provider."""


class LLMClient:
    """Unified async LLM client supporting Anthropic and OpenAI."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "openai")
        self.model = model or os.environ.get("LLM_MODEL", "")
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key or os.environ.get("ANTHROPIC_API_KEY")
            )
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs: dict[str, Any] = {}
            key = self._api_key or os.environ.get("OPENAI_API_KEY")
            if key:
                kwargs["api_key"] = key
            url = self._base_url or os.environ.get("OPENAI_BASE_URL")
            if url:
                kwargs["base_url"] = url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def invoke(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a chat request, return an OpenAI-shaped completion dict."""
        try:
            if self.provider == "anthropic":
                return await self._invoke_anthropic(messages, tools, tool_choice, response_format)
            kwargs: dict[str, Any] = {"model": self.model, "max_tokens": 4096, "messages": messages}
            if tools:
                kwargs["tools"] = tools
                kwargs["tool_choice"] = tool_choice or "auto"
            if response_format:
                kwargs["response_format"] = response_format
            response = await self._client.chat.completions.create(**kwargs)
            return response.model_dump()
        except LLMCallError:
            raise
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}") from exc

    async def _invoke_anthropic(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        tool_choice: str | None,
        response_format: dict[str, Any] | None,
    ) -> dict[str, Any]:
        system_parts = [str(m.get("content") or "") for m in messages if m.get("role") == "system"]
        if response_format:
            system_parts.append(_schema_instruction(response_format))
        kwargs: dict[str, Any] = {
            "model": self.model,
            "max_tokens": 4096,
            "messages": [
                {"role": m["role"], "content": m.get("content") or ""}
                for m in messages if m.get("role") in ("user", "assistant")
            ],
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)
        if tools:
            kwargs["tools"] = [
                {
                    "name": t["function"]["name"],
                    "description": t["function"].get("description", ""),
                    "input_schema": t["function"].get("parameters") or {"type": "object", "properties": {}},
                }
                for t in tools
            ]
            kwargs["tool_choice"] = {"type": tool_choice or "auto"}
        response = await self._client.messages.create(**kwargs)
        return _from_anthropic(response)


def _schema_instruction(response_format: dict[str, Any]) -> str:
    spec = response_format.get("json_schema") or {}
    schema = spec.get("schema")
    if not schema:
        return "Respond with ONLY valid JSON."
    return "Respond with ONLY valid JSON matching this JSON schema:\n" + json.dumps(schema, indent=2)


def _from_anthropic(response: Any) -> dict[str, Any]:
    texts: list[str] = []
    tool_calls: list[dict[str, Any]] = []
    for block in response.content:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            tool_calls.append({
                "id": block.id,
                "type": "function",
                "function": {"name": block.name, "arguments": json.dumps(block.input)},
            })
    message: dict[str, Any] = {"role": "assistant", "content": "\n".join(texts).strip() or None}
    if tool_calls:
        message["tool_calls"] = tool_calls
    usage = getattr(response, "usage", None)
    return {
        "choices": [{"index": 0, "message": message, "finish_reason": getattr(response, "stop_reason", None)}],
        "usage": {
            "prompt_tokens": getattr(usage, "input_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "output_tokens", 0) or 0,
        },
    }


def first_message(response: dict[str, Any]) -> dict[str, Any]:
    """Return ``choices[0].message`` or an empty message."""
    choices = response.get("choices") or []
    if not choices:
        return {}
    return choices[0].get("message") or {}
