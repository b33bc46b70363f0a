"""Conversation history helpers: role alternation, ids and block access."""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, Iterable

from todoagent.schemas import ChatMessage, TextBlock, ToolResultBlock, ToolUseBlock


class InvalidHistoryError(ValueError):
    """Raised when conversation history breaks role alternation."""


def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def generate_run_id(request_id: str | None = None) -> str:
    return f"run_{request_id or uuid.uuid4().hex[:12]}"


def blocks(message: ChatMessage) -> list[Any]:
    """Return content as a list of blocks, wrapping plain strings."""
    if isinstance(message.content, str):
        return [TextBlock(text=message.content)]
    return list(message.content)


def message_text(message: ChatMessage) -> str:
    return "\n".join(block.text for block in blocks(message) if isinstance(block, TextBlock)).strip()


def tool_uses(message: ChatMessage) -> list[ToolUseBlock]:
    return [block for block in blocks(message) if isinstance(block, ToolUseBlock)]


def tool_results(message: ChatMessage) -> list[ToolResultBlock]:
    return [block for block in blocks(message) if isinstance(block, ToolResultBlock)]


def alternation_error(messages: Iterable[ChatMessage]) -> str | None:
    """Describe the first role-alternation violation, or None if valid.

    Roles alternate strictly starting with user. A user message carrying
    tool results must directly follow the assistant message whose tool
    requests it answers, and every tool request must be answered there.
    """
    expected = "user"
    previous: ChatMessage | None = None
    pending: set[str] = set()
    index = -1

    for index, message in enumerate(messages):
        if message.role != expected:
            return f"message {index} has role {message.role!r}, expected {expected!r}"

        results = tool_results(message)
        if results:
            if message.role != "user" or previous is None:
                return f"message {index} carries tool results outside a tool round trip"
            unknown = [block.tool_use_id for block in results if block.tool_use_id not in pending]
            if unknown:
                return f"message {index} answers unknown tool requests: {', '.join(unknown)}"

        if pending:
            unanswered = pending - {block.tool_use_id for block in results}
            if unanswered:
                return f"message {index} leaves tool requests unanswered: {', '.join(sorted(unanswered))}"

        if message.role == "user" and tool_uses(message):
            return f"message {index} is a user message carrying tool requests"

        pending = {block.id for block in tool_uses(message)} if message.role == "assistant" else set()
        previous = message
        expected = "assistant" if expected == "user" else "user"

    if pending:
        return f"message {index} ends the history with unanswered tool requests"
    return None


def validate_role_alternation(messages: Iterable[ChatMessage]) -> bool:
    return alternation_error(messages) is None


def ensure_valid_history(messages: Iterable[ChatMessage]) -> None:
    error = alternation_error(messages)
    if error is not None:
        raise InvalidHistoryError(f"Invalid conversation history: {error}")


def dedupe_key(name: str, arguments: dict[str, Any] | None) -> str:
    """Canonical key for a tool call; argument order does not matter."""
    return f"{name}:{json.dumps(arguments or {}, sort_keys=True, separators=(',', ':'), default=str)}"


def to_wire(messages: Iterable[ChatMessage]) -> list[dict[str, Any]]:
    """Serialize messages for the model API."""
    return [message.model_dump(mode="json") for message in messages]
