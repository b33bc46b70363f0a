"""Real-time progress stream for a run, with cancellation."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, Iterable

from todoagent.conversation import InvalidHistoryError, generate_run_id
from todoagent.gateway import ServerNotReadyError, ToolInvocationError
from todoagent.model_client import ModelUnavailableError
from todoagent.orchestrator import Orchestrator
from todoagent.schemas import ChatMessage, StreamEvent

logger = logging.getLogger(__name__)

NOT_READY_MESSAGE = "The todo service is still starting up, try again in a moment."
MODEL_UNAVAILABLE_MESSAGE = "The assistant is unavailable right now. Please try again later."
GENERIC_ERROR_MESSAGE = "Sorry, something went wrong while processing your request."
CANCELLED_MESSAGE = "Request cancelled"


def terminal_message(error: BaseException) -> str:
    """Human-readable text for an error that ended a run."""
    if isinstance(error, ServerNotReadyError):
        return NOT_READY_MESSAGE
    if isinstance(error, InvalidHistoryError):
        return str(error)
    if isinstance(error, ModelUnavailableError):
        return MODEL_UNAVAILABLE_MESSAGE
    return GENERIC_ERROR_MESSAGE


class RunStream:
    """Run the orchestrator in a producer task and expose its events.

    The sequence is finite and can be iterated once. It always ends with
    exactly one of complete, error or cancelled. Closing the iterator early
    cancels the run.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        message: str,
        history: Iterable[ChatMessage] = (),
        *,
        run_id: str | None = None,
        max_iterations: int | None = None,
    ):
        self.orchestrator = orchestrator
        self.message = message
        self.history = list(history)
        self.run_id = run_id or generate_run_id()
        self.max_iterations = max_iterations
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._terminated = False
        self._consumed = False

    @property
    def done(self) -> bool:
        return self._terminated

    def start(self) -> None:
        """Start the producer; iterating events() starts it implicitly."""
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._produce())
        self._task.add_done_callback(self._on_done)

    def cancel(self) -> None:
        """Cancel the run. No effect once a terminal event has been emitted."""
        if self._task is None:
            self._put(StreamEvent(type="cancelled", run_id=self.run_id, message=CANCELLED_MESSAGE))
        elif not self._task.done():
            self._task.cancel()

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("A run stream can only be consumed once")
        self._consumed = True
        self.start()

        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            # consumer went away before the end: stop the run
            if self._task is not None and not self._task.done():
                logger.info(f"Stream for run {self.run_id} closed early, cancelling")
                self._task.cancel()

    def _put(self, event: StreamEvent) -> None:
        if self._terminated:
            return
        if event.is_terminal:
            self._terminated = True
        self._queue.put_nowait(event)

    async def _produce(self) -> None:
        self._put(StreamEvent(type="start", run_id=self.run_id, message="Processing your request..."))
        try:
            result = await self.orchestrator.run(
                self.message,
                self.history,
                run_id=self.run_id,
                max_iterations=self.max_iterations,
                progress=self._put,
            )
        except (ServerNotReadyError, InvalidHistoryError, ModelUnavailableError, ToolInvocationError) as e:
            logger.warning(f"Run {self.run_id} failed: {e}")
            self._put(StreamEvent(type="error", run_id=self.run_id, error=terminal_message(e)))
        except Exception as e:
            logger.error(f"Run {self.run_id} crashed: {e}", exc_info=True)
            self._put(StreamEvent(type="error", run_id=self.run_id, error=GENERIC_ERROR_MESSAGE))
        else:
            self._put(
                StreamEvent(
                    type="complete",
                    run_id=result.run_id,
                    response=result.response,
                    tools_executed=result.tools_executed,
                    history_delta=result.history_delta,
                    iterations=result.iterations,
                    duration_ms=result.duration_ms,
                )
            )

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info(f"Run {self.run_id} cancelled")
            self._put(StreamEvent(type="cancelled", run_id=self.run_id, message=CANCELLED_MESSAGE))


def encode_sse(event: StreamEvent) -> str:
    """Encode one event as a server-sent events frame."""
    return f"data: {json.dumps(event.to_wire(), ensure_ascii=False)}\n\n"


async def sse_frames(stream: RunStream) -> AsyncIterator[str]:
    async for event in stream.events():
        yield encode_sse(event)
