"""Agentic loop: call the model, run the tools it asks for, repeat within budget."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable

from todoagent.conversation import (
    InvalidHistoryError,
    dedupe_key,
    ensure_valid_history,
    generate_run_id,
    to_wire,
)
from todoagent.formatter import format_error
from todoagent.gateway import ServerNotReadyError, ToolCallResult, ToolGateway, ToolInvocationError
from todoagent.model_client import ModelClient, ModelReply, ModelUnavailableError
from todoagent.prompts import build_system_prompt
from todoagent.schemas import (
    MAX_ITERATIONS_CEILING,
    ChatMessage,
    StreamEvent,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 3
DEFAULT_DEADLINE_S = 20.0
DEFAULT_FINALIZE_TIMEOUT_S = 5.0

DUPLICATE_SKIPPED = (
    "Duplicate call skipped: {name} was already executed with these arguments "
    "in this run. Nothing new happened."
)
FALLBACK_EMPTY = "I wasn't able to finish that request in time. Please try again."

ProgressCallback = Callable[[StreamEvent], None]


@dataclass
class RunContext:
    """Per-turn state. Created at turn start and discarded afterwards."""

    run_id: str
    max_iterations: int
    started_at: float
    deadline: float
    iteration: int = 0
    executed_keys: set[str] = field(default_factory=set)
    history_delta: list[ChatMessage] = field(default_factory=list)
    tools_executed: list[str] = field(default_factory=list)
    tool_texts: list[str] = field(default_factory=list)

    def record_execution(self, result: ToolCallResult) -> None:
        if result.name not in self.tools_executed:
            self.tools_executed.append(result.name)
        if not result.is_error and result.text:
            self.tool_texts.append(result.text)


@dataclass
class RunResult:
    run_id: str
    response: str
    iterations: int
    tools_executed: list[str]
    history_delta: list[ChatMessage]
    duration_ms: float
    finalized: bool = False


def render_for_model(result: ToolCallResult) -> str:
    """Tool result text handed back to the model.

    The readable rendering comes first; the Data line carries the machine
    payload so later calls can reference record ids.
    """
    if result.is_error:
        return format_error(result.text)
    if result.payload is None:
        return result.text
    data = json.dumps(result.payload, separators=(",", ":"), ensure_ascii=False)
    return f"{result.text}\n\nData: {data}"


def compose_fallback(texts: list[str]) -> str:
    if not texts:
        return FALLBACK_EMPTY
    return "Here's what I was able to do:\n\n" + "\n\n".join(texts)


class Orchestrator:
    """Run one user turn through the model/tool loop.

    Iterations are sequential. Tool calls requested in the same model turn run
    concurrently and are matched back to their request ids. A run stops on a
    plain-text answer, the iteration cap, or the deadline; the last two end in
    a forced finalization call with tool use disabled.
    """

    def __init__(
        self,
        model: ModelClient,
        gateway: ToolGateway,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        deadline_s: float = DEFAULT_DEADLINE_S,
        finalize_timeout_s: float = DEFAULT_FINALIZE_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.model = model
        self.gateway = gateway
        self.max_iterations = max_iterations
        self.deadline_s = deadline_s
        self.finalize_timeout_s = finalize_timeout_s
        self._clock = clock

    async def run(
        self,
        message: str,
        history: Iterable[ChatMessage] = (),
        *,
        run_id: str | None = None,
        max_iterations: int | None = None,
        progress: ProgressCallback | None = None,
    ) -> RunResult:
        """Process one user message.

        Args:
            message: The user's utterance
            history: Prior conversation, already merged from earlier deltas
            run_id: Optional run id; generated when omitted
            max_iterations: Override for the iteration cap (clamped to 1..5)
            progress: Callback receiving non-terminal progress events

        Returns:
            RunResult with the final text and the history delta

        Raises:
            InvalidHistoryError: History breaks role alternation
            ServerNotReadyError: Tool server still activating
            ModelUnavailableError: Model could not be reached
        """
        history = list(history)
        ensure_valid_history(history)

        limit = max_iterations or self.max_iterations
        limit = min(max(limit, 1), MAX_ITERATIONS_CEILING)
        now = self._clock()
        ctx = RunContext(
            run_id=run_id or generate_run_id(),
            max_iterations=limit,
            started_at=now,
            deadline=now + self.deadline_s,
        )

        conversation = list(history)
        last = conversation[-1] if conversation else None
        if last is not None and last.role == "user":
            if last.content != message:
                raise InvalidHistoryError("Invalid conversation history: it already ends with a user message")
        else:
            user_message = ChatMessage(role="user", content=message)
            conversation.append(user_message)
            ctx.history_delta.append(user_message)

        logger.info(f"Run {ctx.run_id} started (max_iterations={limit})")
        final_text = await self._loop(ctx, conversation, progress)

        finalized = False
        if not final_text:
            _emit(progress, StreamEvent(type="finalizing", message="Preparing response"))
            final_text = await self._finalize(ctx, conversation)
            finalized = True

        duration_ms = round((self._clock() - ctx.started_at) * 1000.0, 2)
        logger.info(
            f"Run {ctx.run_id} finished after {ctx.iteration} iteration(s), "
            f"tools={ctx.tools_executed}, finalized={finalized}, {duration_ms}ms"
        )
        return RunResult(
            run_id=ctx.run_id,
            response=final_text,
            iterations=ctx.iteration,
            tools_executed=list(ctx.tools_executed),
            history_delta=list(ctx.history_delta),
            duration_ms=duration_ms,
            finalized=finalized,
        )

    async def _loop(
        self,
        ctx: RunContext,
        conversation: list[ChatMessage],
        progress: ProgressCallback | None,
    ) -> str | None:
        for iteration in range(1, ctx.max_iterations + 1):
            remaining = ctx.deadline - self._clock()
            if remaining <= 0:
                logger.warning(f"Run {ctx.run_id} hit its deadline before iteration {iteration}")
                return None

            ctx.iteration = iteration
            _emit(
                progress,
                StreamEvent(
                    type="iteration",
                    iteration=iteration,
                    max_iterations=ctx.max_iterations,
                    message=f"Thinking... (step {iteration}/{ctx.max_iterations})",
                ),
            )

            try:
                reply = await asyncio.wait_for(
                    self._call_model(conversation, finalizing=False),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Run {ctx.run_id} deadline reached during model call")
                return None

            requests = reply.tool_requests
            if not requests:
                if reply.text:
                    self._append(ctx, conversation, ChatMessage(role="assistant", content=reply.content))
                return reply.text or None

            self._append(ctx, conversation, ChatMessage(role="assistant", content=reply.content))
            _emit(progress, StreamEvent(type="tools", tools=[request.name for request in requests]))

            results = await self._execute_batch(ctx, requests, progress)
            self._append(ctx, conversation, ChatMessage(role="user", content=results))

        logger.info(f"Run {ctx.run_id} reached its iteration cap ({ctx.max_iterations})")
        return None

    async def _call_model(self, conversation: list[ChatMessage], finalizing: bool) -> ModelReply:
        # Registry fetch may wait on server activation; it shares the caller's timeout
        tools = await self.gateway.model_tools()
        return await self.model.create(
            system=build_system_prompt([tool["name"] for tool in tools], finalizing=finalizing),
            messages=to_wire(conversation),
            tools=tools,
            tool_choice="none" if finalizing else "auto",
        )

    async def _execute_batch(
        self,
        ctx: RunContext,
        requests: list[ToolUseBlock],
        progress: ProgressCallback | None,
    ) -> list[ToolResultBlock]:
        calls = []
        for request in requests:
            key = dedupe_key(request.name, request.input)
            if key in ctx.executed_keys:
                logger.info(f"Run {ctx.run_id} skipping duplicate call {request.name}")
                calls.append(self._skip_duplicate(request, progress))
            else:
                # Reserved before dispatch so duplicates within this batch are caught too
                ctx.executed_keys.add(key)
                calls.append(self._execute_one(ctx, request, progress))

        tasks = [asyncio.ensure_future(call) for call in calls]
        try:
            completed = await asyncio.gather(*tasks)
        except BaseException:
            # A propagating failure ends the run; siblings must not outlive it
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        by_id = {block.tool_use_id: block for block in completed}
        return [by_id[request.id] for request in requests]

    async def _execute_one(
        self,
        ctx: RunContext,
        request: ToolUseBlock,
        progress: ProgressCallback | None,
    ) -> ToolResultBlock:
        try:
            result = await self.gateway.invoke(request.name, request.input)
        except ServerNotReadyError:
            raise
        except ToolInvocationError as e:
            if e.is_envelope_error:
                raise
            logger.warning(f"Tool {request.name} rejected: {e.message}")
            block = ToolResultBlock(tool_use_id=request.id, content=format_error(e.message), is_error=True)
        except Exception as e:
            logger.error(f"Tool {request.name} failed: {e}", exc_info=True)
            block = ToolResultBlock(tool_use_id=request.id, content=format_error(str(e)), is_error=True)
        else:
            ctx.record_execution(result)
            block = ToolResultBlock(
                tool_use_id=request.id,
                content=render_for_model(result),
                is_error=result.is_error,
            )

        _emit(progress, StreamEvent(type="tool_complete", tool=request.name))
        return block

    async def _skip_duplicate(
        self,
        request: ToolUseBlock,
        progress: ProgressCallback | None,
    ) -> ToolResultBlock:
        _emit(progress, StreamEvent(type="tool_complete", tool=request.name))
        return ToolResultBlock(
            tool_use_id=request.id,
            content=DUPLICATE_SKIPPED.format(name=request.name),
            is_error=True,
        )

    async def _finalize(self, ctx: RunContext, conversation: list[ChatMessage]) -> str:
        """Force a concluding answer without further tool use."""
        text = ""
        if conversation and conversation[-1].role == "user":
            try:
                reply = await asyncio.wait_for(
                    self._call_model(conversation, finalizing=True),
                    timeout=self.finalize_timeout_s,
                )
                text = reply.text
            except asyncio.TimeoutError:
                logger.warning(f"Run {ctx.run_id} finalization timed out")
            except ModelUnavailableError as e:
                logger.warning(f"Run {ctx.run_id} finalization failed: {e}")

        if not text:
            text = compose_fallback(ctx.tool_texts)

        self._append(ctx, conversation, ChatMessage(role="assistant", content=[TextBlock(text=text)]))
        return text

    def _append(self, ctx: RunContext, conversation: list[ChatMessage], message: ChatMessage) -> None:
        conversation.append(message)
        ctx.history_delta.append(message)


def _emit(progress: ProgressCallback | None, event: StreamEvent) -> None:
    if progress is not None:
        progress(event)
