"""OpenAI-compatible chat completions over HTTP."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from healz.carol.ports import ChatModelError, ChatReply, ToolCall
from healz.core.config import settings

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(connect=5.0, read=60.0, write=15.0, pool=5.0)


class OpenAIChatModel:
    """Calls ``/chat/completions`` on OpenAI or any server speaking its protocol."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        temperature: float = 0.7,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.openai_model
        self.base_url = (base_url or settings.openai_base_url).rstrip("/")
        self.temperature = temperature
        self._transport = transport

    def complete(
        self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> ChatReply:
        if not self.api_key:
            raise ChatModelError("OPENAI_API_KEY is not configured")

        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if tools:
            payload["tools"] = tools

        started = time.perf_counter()
        try:
            with httpx.Client(timeout=_TIMEOUT, transport=self._transport) as client:
                response = client.post(
                    f"{self.base_url}/chat/completions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=payload,
                )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "chat completion failed",
                extra={"status_code": exc.response.status_code, "model": self.model},
            )
            if exc.response.status_code == 429:
                raise ChatModelError("Language model rate limit reached") from exc
            raise ChatModelError(f"Language model error: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.error("chat completion failed", extra={"error": str(exc), "model": self.model})
            raise ChatModelError(f"Language model unreachable: {exc}") from exc

        data = response.json()
        message = data["choices"][0]["message"]
        tool_calls = [
            ToolCall(
                id=call["id"],
                name=call["function"]["name"],
                arguments=json.loads(call["function"].get("arguments") or "{}"),
            )
            for call in message.get("tool_calls") or []
        ]
        usage = data.get("usage") or {}
        logger.info(
            "chat completion",
            extra={
                "model": data.get("model", self.model),
                "latency_ms": int((time.perf_counter() - started) * 1000),
                "total_tokens": usage.get("total_tokens"),
                "tool_calls": [call.name for call in tool_calls],
            },
        )
        return ChatReply(content=message.get("content"), tool_calls=tool_calls)
