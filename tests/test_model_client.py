"""Tests for the language model clients."""

import json

import httpx
import pytest

from todoagent.config import Settings
from todoagent.model_client import (
    ANTHROPIC_VERSION,
    AnthropicModelClient,
    ModelUnavailableError,
    OfflineModelClient,
    build_model_client,
)
from todoagent.prompts import OFFLINE_REPLY, build_system_prompt

TOOLS = [{"name": "todo_list", "description": "List todos", "input_schema": {"type": "object"}}]


def make_client(handler) -> AnthropicModelClient:
    return AnthropicModelClient(
        api_key="test-key",
        model="claude-test",
        transport=httpx.MockTransport(handler),
    )


class TestAnthropicModelClient:
    """Test request shape and response parsing."""

    @pytest.mark.asyncio
    async def test_request_and_reply(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["headers"] = request.headers
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "content": [
                    {"type": "text", "text": "Let me check."},
                    {"type": "tool_use", "id": "toolu_1", "name": "todo_list", "input": {}},
                ],
                "stop_reason": "tool_use",
            })

        reply = await make_client(handler).create(
            system="be helpful",
            messages=[{"role": "user", "content": "what's on my list?"}],
            tools=TOOLS,
        )

        assert captured["url"] == "https://api.anthropic.com/v1/messages"
        assert captured["headers"]["x-api-key"] == "test-key"
        assert captured["headers"]["anthropic-version"] == ANTHROPIC_VERSION
        assert captured["body"]["tools"] == TOOLS
        assert captured["body"]["tool_choice"] == {"type": "auto"}
        assert reply.text == "Let me check."
        assert [request.name for request in reply.tool_requests] == ["todo_list"]
        assert reply.stop_reason == "tool_use"

    @pytest.mark.asyncio
    async def test_tool_choice_none(self):
        captured = {}

        def handler(request):
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"content": [{"type": "text", "text": "ok"}]})

        await make_client(handler).create(system="s", messages=[], tools=TOOLS, tool_choice="none")
        assert captured["body"]["tool_choice"] == {"type": "none"}

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(529, json={"error": {"message": "Overloaded"}})

        with pytest.raises(ModelUnavailableError):
            await make_client(handler).create(system="s", messages=[], tools=[])

    @pytest.mark.asyncio
    async def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ModelUnavailableError) as exc_info:
            await make_client(handler).create(system="s", messages=[], tools=[])
        assert "unavailable" in str(exc_info.value)


class TestOfflineFallback:
    """Test the no-API-key path."""

    @pytest.mark.asyncio
    async def test_offline_reply(self):
        reply = await OfflineModelClient().create(system="s", messages=[], tools=TOOLS)

        assert reply.text == OFFLINE_REPLY
        assert reply.tool_requests == []

    def test_build_without_key(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        client = build_model_client(Settings(anthropic_api_key=""))
        assert isinstance(client, OfflineModelClient)

    def test_build_with_env_key(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        client = build_model_client(Settings(anthropic_api_key=""))

        assert isinstance(client, AnthropicModelClient)
        assert client.api_key == "sk-test"


class TestSystemPrompt:
    """Test system prompt assembly."""

    def test_lists_tools(self):
        prompt = build_system_prompt(["todo_list", "todo_create"])
        assert "Available tools: todo_create, todo_list" in prompt
        assert "NEVER show todo IDs" in prompt

    def test_finalizing_forbids_tools(self):
        assert "Do not request any more tools" in build_system_prompt(finalizing=True)
        assert "Do not request any more tools" not in build_system_prompt()
