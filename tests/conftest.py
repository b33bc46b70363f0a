"""Pytest configuration and fixtures for todoagent tests."""

import asyncio
import itertools
import re
from pathlib import Path

import pytest

from todoagent.config import get_settings
from todoagent.gateway import ToolCallResult, ToolGateway
from todoagent.model_client import ModelReply, ModelUnavailableError
from todoagent.protocol import ProtocolServer
from todoagent.schemas import TextBlock, ToolUseBlock
from todoagent.store import TodoStore

ID_PATTERN = re.compile(r'"id":"([0-9a-f-]{36})"')
CREATE_PATTERN = re.compile(r"create a todo called '([^']+)'", re.IGNORECASE)


def _blocks(message: dict) -> list[dict]:
    content = message["content"]
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return content


def _text_of(message: dict) -> str:
    return " ".join(block["text"] for block in _blocks(message) if block["type"] == "text")


def _renderings(message: dict) -> list[str]:
    return [
        block["content"].split("\n\nData: ")[0]
        for block in _blocks(message)
        if block["type"] == "tool_result"
    ]


class ScriptedModel:
    """Deterministic stand-in for the language model.

    Understands "create a todo called '<title>'" (optionally "high priority")
    and "mark it completed", taking the record id from the Data lines of earlier
    tool results. After a tool round trip it answers with the renderings.
    """

    def __init__(self, replies=None, always_tools=False, delay=0.0, fail_finalize=False):
        self.replies = list(replies or [])
        self.always_tools = always_tools
        self.delay = delay
        self.fail_finalize = fail_finalize
        self.calls = []
        self._ids = itertools.count(1)

    def _tool(self, name: str, args: dict) -> ModelReply:
        return ModelReply(
            content=[ToolUseBlock(id=f"toolu_{next(self._ids)}", name=name, input=args)],
            stop_reason="tool_use",
        )

    async def create(self, *, system, messages, tools, tool_choice="auto"):
        self.calls.append(
            {"system": system, "messages": messages, "tools": tools, "tool_choice": tool_choice}
        )
        last = messages[-1]

        if tool_choice == "none":
            if self.fail_finalize:
                raise ModelUnavailableError("finalization refused")
            return text_reply("Final answer. " + " ".join(_renderings(last)))

        if self.delay:
            await asyncio.sleep(self.delay)
        if self.always_tools:
            return self._tool("todo_list", {"search": f"round {len(self.calls)}"})
        if self.replies:
            return self.replies.pop(0)

        results = _renderings(last)
        if results:
            return text_reply("\n".join(results))

        text = _text_of(last)
        match = CREATE_PATTERN.search(text)
        if match:
            args = {"title": match.group(1)}
            if "high priority" in text.lower():
                args["priority"] = "high"
            return self._tool("todo_create", args)

        if "mark it completed" in text.lower():
            seen = []
            for message in messages:
                for block in _blocks(message):
                    if block["type"] == "tool_result":
                        seen.extend(ID_PATTERN.findall(block["content"]))
            if seen:
                return self._tool("todo_update", {"id": seen[-1], "status": "completed"})

        return text_reply("I can help you manage your todos.")


class FakeGateway:
    """Gateway double whose calls can be delayed, blocked or made to fail."""

    def __init__(self, delays=None, block=False, error=None, failures=None, tools_delay=0.0):
        self.delays = delays or {}
        self.block = block
        self.error = error
        self.failures = failures or {}
        self.tools_delay = tools_delay
        self.started = asyncio.Event()
        self.invoked = []
        self.completed = []

    async def model_tools(self):
        await asyncio.sleep(self.tools_delay)
        return []

    async def invoke(self, name, args=None):
        args = args or {}
        tag = args.get("tag")
        self.invoked.append((name, args))
        self.started.set()
        if self.error is not None:
            raise self.error
        if tag in self.failures:
            raise self.failures[tag]
        if self.block:
            await asyncio.Event().wait()
        await asyncio.sleep(self.delays.get(tag, 0))
        self.completed.append(tag)
        return ToolCallResult(name=name, text=f"done {tag}", payload={"tag": tag})


def text_reply(text: str) -> ModelReply:
    return ModelReply(content=[TextBlock(text=text)], stop_reason="end_turn")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Create a temporary path for the todo database."""
    return tmp_path / "todos.db"


@pytest.fixture
def store(db_path: Path) -> TodoStore:
    return TodoStore(db_path)


@pytest.fixture
def server(db_path: Path) -> ProtocolServer:
    """Dormant protocol server; the first initialize activates it."""
    return ProtocolServer(db_path)


@pytest.fixture
def gateway(server: ProtocolServer) -> ToolGateway:
    return ToolGateway(server)


@pytest.fixture
def scripted_model():
    """Factory for ScriptedModel instances."""
    return ScriptedModel


@pytest.fixture
def fake_gateway():
    """Factory for FakeGateway instances."""
    return FakeGateway


@pytest.fixture
def reply():
    """Helpers for building model replies."""

    class Replies:
        text = staticmethod(text_reply)

        @staticmethod
        def tools(*calls):
            return ModelReply(
                content=[ToolUseBlock(id=call_id, name=name, input=args) for call_id, name, args in calls],
                stop_reason="tool_use",
            )

    return Replies


@pytest.fixture
def app_settings(monkeypatch, db_path: Path):
    """Point settings at a temporary store and disable the real model."""
    monkeypatch.setenv("TODOAGENT_DB_PATH", str(db_path))
    monkeypatch.delenv("TODOAGENT_ANTHROPIC_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()
