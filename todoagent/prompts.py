"""System instructions for the todo assistant."""

from __future__ import annotations

from typing import Iterable

SYSTEM_PROMPT = """You are a helpful todo management assistant. You manage the user's todos with the available tools.

CRITICAL RULES:
1. ALWAYS use tools before making claims about todos - never guess or assume.
2. To change or delete a todo you need its ID. Take IDs from the Data lines of earlier tool results; call todo_list first if you do not have one.
3. NEVER show todo IDs to the user. Refer to todos by their exact titles.
4. When confirming actions, cite the specific changes reported by the tool results.
5. If a tool reports an error, explain it plainly and suggest what to do next.
6. Be concise and helpful."""

FINALIZE_INSTRUCTION = """The tool budget for this request is used up. Do not request any more tools.
Answer the user now using only the tool results already in the conversation. If something could not be done, say so."""

OFFLINE_REPLY = (
    "I can help you manage your todos once a language model is configured. "
    "Set ANTHROPIC_API_KEY and try again, or use the todo list directly in the meantime."
)


def build_system_prompt(tool_names: Iterable[str] | None = None, finalizing: bool = False) -> str:
    """Build the system prompt.

    Args:
        tool_names: Names of the tools currently available
        finalizing: Append the instruction that forbids further tool use

    Returns:
        System prompt string
    """
    parts = [SYSTEM_PROMPT]

    names = sorted(tool_names or [])
    if names:
        parts.append("")
        parts.append("Available tools: " + ", ".join(names))

    if finalizing:
        parts.append("")
        parts.append(FINALIZE_INSTRUCTION)

    return "\n".join(parts)
