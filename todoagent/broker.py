"""HTTP broker for the todo assistant."""

from __future__ import annotations

import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from todoagent import __version__
from todoagent.conversation import InvalidHistoryError, generate_request_id, generate_run_id
from todoagent.gateway import ServerNotReadyError, ToolCallResult, ToolInvocationError
from todoagent.model_client import AnthropicModelClient, ModelUnavailableError
from todoagent.protocol import ErrorCode, peek_server
from todoagent.runtime import get_runtime, peek_runtime, start_runtime, stop_runtime
from todoagent.schemas import (
    ChatRequest,
    ChatResponse,
    CreateTodoInput,
    ErrorResponse,
    HealthResponse,
    TaskPriority,
    TaskStatus,
    TodoChanges,
)
from todoagent.streaming import (
    GENERIC_ERROR_MESSAGE,
    MODEL_UNAVAILABLE_MESSAGE,
    NOT_READY_MESSAGE,
    RunStream,
    sse_frames,
)

logger = logging.getLogger(__name__)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await start_runtime()
    try:
        yield
    finally:
        await stop_runtime()


app = FastAPI(
    title="Todo Agent Broker",
    description="HTTP broker for the tool-calling todo assistant",
    version=__version__,
    lifespan=lifespan,
)


def _sse_headers() -> dict[str, str]:
    return {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _run_id(request: ChatRequest) -> str:
    return request.run_id or generate_run_id(request.request_id or generate_request_id())


# --- HTTP Endpoints ---


@app.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest) -> ChatResponse:
    """Run one user turn and return the final answer.

    Args:
        request: ChatRequest with the message and prior history

    Returns:
        ChatResponse with the answer and the history delta
    """
    runtime = get_runtime()
    run_id = _run_id(request)
    logger.info(f"Received chat request: run_id={run_id}, history={len(request.history)} messages")

    result = await runtime.orchestrator.run(
        request.message,
        request.history,
        run_id=run_id,
        max_iterations=request.max_iterations,
    )

    return ChatResponse(
        response=result.response,
        run_id=result.run_id,
        iterations=result.iterations,
        tools_executed=result.tools_executed,
        history_delta=result.history_delta,
        duration_ms=result.duration_ms,
    )


@app.post("/chat/stream")
async def chat_stream(request: ChatRequest) -> StreamingResponse:
    """Run one user turn and stream progress as server-sent events."""
    runtime = get_runtime()
    stream = RunStream(
        runtime.orchestrator,
        request.message,
        request.history,
        run_id=_run_id(request),
        max_iterations=request.max_iterations,
    )
    logger.info(f"Streaming run {stream.run_id}")
    return StreamingResponse(
        sse_frames(stream),
        media_type="text/event-stream",
        headers=_sse_headers(),
    )


@app.post("/mcp")
async def mcp_endpoint(request: Request) -> Response:
    """Pass a raw JSON-RPC envelope to the embedded protocol server."""
    runtime = get_runtime()
    response = await runtime.server.handle(await request.body())
    if response is None:
        return Response(status_code=202)
    return JSONResponse(content=response)


async def _call_todo_tool(name: str, args: dict[str, Any]) -> ToolCallResult:
    """Invoke a todo tool for a REST route, mapping tool failures to HTTP errors."""
    runtime = get_runtime()
    try:
        result = await runtime.gateway.invoke(name, args)
    except ToolInvocationError as e:
        if e.code == ErrorCode.INVALID_PARAMS:
            raise HTTPException(status_code=400, detail=e.message) from e
        raise

    if result.is_error:
        raise HTTPException(status_code=404, detail=result.text)
    return result


@app.get("/todos")
async def list_todos(
    status: TaskStatus | None = None,
    priority: TaskPriority | None = None,
    search: str | None = None,
    due_after: datetime | None = None,
    due_before: datetime | None = None,
) -> dict[str, Any]:
    """List todos through the tool gateway, newest first.

    Args:
        status: Only todos with this status
        priority: Only todos with this priority
        search: Substring of title or description
        due_after: Only todos due at or after this instant
        due_before: Only todos due at or before this instant
    """
    args: dict[str, Any] = {}
    if status is not None:
        args["status"] = status.value
    if priority is not None:
        args["priority"] = priority.value
    if search:
        args["search"] = search
    if due_after is not None:
        args["dueAfter"] = due_after.isoformat()
    if due_before is not None:
        args["dueBefore"] = due_before.isoformat()

    result = await _call_todo_tool("todo_list", args)
    payload = result.payload or {"todos": [], "total": 0}
    return {**payload, "summary": result.text}


@app.post("/todos", status_code=201)
async def create_todo(request: CreateTodoInput) -> dict[str, Any]:
    """Create a todo."""
    result = await _call_todo_tool("todo_create", request.model_dump(mode="json", by_alias=True))
    return {**result.payload, "summary": result.text}


@app.get("/todos/{todo_id}")
async def get_todo(todo_id: str) -> dict[str, Any]:
    """Fetch one todo by id."""
    result = await _call_todo_tool("todo_get", {"id": todo_id})
    return {**result.payload, "summary": result.text}


@app.put("/todos/{todo_id}")
async def update_todo(todo_id: str, request: TodoChanges) -> dict[str, Any]:
    """Update the supplied fields of a todo; explicit nulls clear optional fields."""
    changes = request.model_dump(mode="json", by_alias=True, exclude_unset=True)
    result = await _call_todo_tool("todo_update", {**changes, "id": todo_id})
    return {**result.payload, "summary": result.text}


@app.delete("/todos/{todo_id}")
async def delete_todo(todo_id: str) -> dict[str, Any]:
    """Delete a todo by id."""
    result = await _call_todo_tool("todo_delete", {"id": todo_id})
    return {**result.payload, "summary": result.text}


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Report broker, protocol server and model status."""
    runtime = peek_runtime()
    server = runtime.server if runtime is not None else peek_server()
    model = "offline"
    if runtime is not None and isinstance(runtime.model, AnthropicModelClient):
        model = "anthropic"

    return HealthResponse(
        broker="healthy",
        protocol_server=server.state.value if server is not None else "dormant",
        model=model,
    )


# --- Error handlers ---


@app.exception_handler(ServerNotReadyError)
async def not_ready_handler(request: Request, exc: ServerNotReadyError) -> JSONResponse:
    logger.warning(f"Request rejected, tool server not ready: {exc}")
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            detail=NOT_READY_MESSAGE,
            error_code="SERVER_NOT_READY",
            retry_after_s=exc.retry_after_s,
        ).model_dump(),
        headers={"Retry-After": str(max(1, math.ceil(exc.retry_after_s)))},
    )


@app.exception_handler(InvalidHistoryError)
async def invalid_history_handler(request: Request, exc: InvalidHistoryError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(detail=str(exc), error_code="INVALID_HISTORY").model_dump(),
    )


@app.exception_handler(ModelUnavailableError)
async def model_unavailable_handler(request: Request, exc: ModelUnavailableError) -> JSONResponse:
    logger.error(f"Model unavailable: {exc}")
    return JSONResponse(
        status_code=502,
        content=ErrorResponse(detail=MODEL_UNAVAILABLE_MESSAGE, error_code="MODEL_UNAVAILABLE").model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail=GENERIC_ERROR_MESSAGE,
            error_code="INTERNAL_ERROR",
        ).model_dump(),
    )
