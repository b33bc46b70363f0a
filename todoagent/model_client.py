"""Language model clients: the Anthropic Messages API over httpx, plus an offline fallback."""

from __future__ import annotations

import logging
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, Field

from todoagent.config import Settings
from todoagent.prompts import OFFLINE_REPLY
from todoagent.schemas import ContentBlock, TextBlock, ToolUseBlock

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

ToolChoice = Literal["auto", "none"]


class ModelUnavailableError(Exception):
    """Raised when the language model cannot be reached or refuses the request."""

    pass


class ModelReply(BaseModel):
    """One assistant turn: text and/or tool requests."""

    content: list[ContentBlock] = Field(default_factory=list)
    stop_reason: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(
            block.text for block in self.content if isinstance(block, TextBlock)
        ).strip()

    @property
    def tool_requests(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]


class ModelClient(Protocol):
    """Opaque model call: system instructions, history and tools in; a reply out."""

    async def create(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tool_choice: ToolChoice = "auto",
    ) -> ModelReply: ...


class AnthropicModelClient:
    """Call the Anthropic Messages API with tool definitions."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.anthropic.com",
        max_tokens: int = 1024,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._transport = transport

    async def create(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tool_choice: ToolChoice = "auto",
    ) -> ModelReply:
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system,
            "messages": messages,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = {"type": tool_choice}

        data = await self._post(body)
        content = [
            block
            for block in data.get("content", [])
            if block.get("type") in ("text", "tool_use")
        ]
        return ModelReply.model_validate({"content": content, "stop_reason": data.get("stop_reason")})

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        url = f"{self.base_url}/v1/messages"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=body, headers=headers)
                response.raise_for_status()
                return response.json()

        except httpx.ConnectError as e:
            logger.error(f"Failed to connect to model API: {e}")
            raise ModelUnavailableError("Model service unavailable") from e

        except httpx.TimeoutException as e:
            logger.error(f"Model request timed out after {self.timeout}s")
            raise ModelUnavailableError("Model request timed out") from e

        except httpx.HTTPStatusError as e:
            detail = _error_detail(e.response)
            logger.error(f"Model API error {e.response.status_code}: {detail}")
            raise ModelUnavailableError(f"Model returned error: {e.response.status_code}") from e


def _error_detail(response: httpx.Response) -> str:
    try:
        return response.json().get("error", {}).get("message", response.text)
    except ValueError:
        return response.text


class OfflineModelClient:
    """Fallback used when no API key is configured: answers without tools."""

    def __init__(self, reply: str = OFFLINE_REPLY):
        self.reply = reply

    async def create(
        self,
        *,
        system: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        tool_choice: ToolChoice = "auto",
    ) -> ModelReply:
        return ModelReply(content=[TextBlock(text=self.reply)], stop_reason="end_turn")


def build_model_client(settings: Settings) -> ModelClient:
    """Pick the Anthropic client when an API key is set, otherwise the offline one."""
    api_key = settings.resolved_api_key()
    if not api_key:
        logger.warning("No Anthropic API key configured, using offline replies")
        return OfflineModelClient()
    return AnthropicModelClient(
        api_key=api_key,
        model=settings.model,
        base_url=settings.anthropic_base_url,
        max_tokens=settings.max_tokens,
        timeout=settings.model_timeout_s,
    )
