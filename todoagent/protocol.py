"""Embedded JSON-RPC protocol server answering MCP-style tool requests in-process."""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from todoagent import __version__
from todoagent.adapter import ToolSpec, build_registry
from todoagent.config import Settings, get_settings
from todoagent.store import RecordNotFoundError, TodoStore

logger = logging.getLogger(__name__)

JSONRPC_VERSION = "2.0"
PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "todoagent-embedded"


class ErrorCode(IntEnum):
    """Stable JSON-RPC error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603
    SERVER_NOT_INITIALIZED = -32002


class ServerState(str, Enum):
    DORMANT = "dormant"
    ACTIVATING = "activating"
    ACTIVE = "active"
    CLOSED = "closed"


class EnvelopeError(Exception):
    """A request that must be answered with a JSON-RPC error."""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class ToolCallParams(BaseModel):
    name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)


def success_response(request_id: Any, result: dict[str, Any]) -> dict[str, Any]:
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


def error_response(request_id: Any, code: ErrorCode, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": int(code), "message": message},
    }


def _tool_result(text: str, payload: dict[str, Any] | None = None, is_error: bool = False) -> dict[str, Any]:
    result: dict[str, Any] = {
        "content": [{"type": "text", "text": text}],
        "isError": is_error,
    }
    if payload is not None:
        result["structuredContent"] = payload
    return result


class ProtocolServer:
    """In-process request handler for handshake, tool listing and tool calls.

    The server is dormant until activated. Activation opens the store; it runs
    at most once even when several callers race to activate, and it must finish
    before any tool request is answered.
    """

    def __init__(
        self,
        db_path: Path | str,
        registry: dict[str, ToolSpec] | None = None,
    ):
        self.db_path = Path(db_path)
        self.registry = registry or build_registry()
        self.state = ServerState.DORMANT
        self._store: TodoStore | None = None
        self._activation: asyncio.Task | None = None

    @property
    def is_active(self) -> bool:
        return self.state == ServerState.ACTIVE

    @property
    def store(self) -> TodoStore:
        if self._store is None:
            raise RuntimeError("Protocol server is not active")
        return self._store

    # --- Lifecycle ---

    async def activate(self) -> None:
        """Activate the server, joining any activation already in flight."""
        if self.state == ServerState.ACTIVE:
            return
        if self.state == ServerState.CLOSED:
            raise RuntimeError("Protocol server is closed")

        if self._activation is None:
            self.state = ServerState.ACTIVATING
            self._activation = asyncio.create_task(self._open_store())

        activation = self._activation
        try:
            # shield so one cancelled waiter does not abort the shared activation
            await asyncio.shield(activation)
        except Exception:
            if self._activation is activation:
                self._activation = None
                self.state = ServerState.DORMANT
            raise

    async def _open_store(self) -> None:
        logger.info(f"Activating protocol server with store at {self.db_path}")
        self._store = await asyncio.to_thread(TodoStore, self.db_path)
        self.state = ServerState.ACTIVE
        logger.info("Protocol server active")

    async def close(self) -> None:
        if self._activation is not None and not self._activation.done():
            self._activation.cancel()
        self._activation = None
        self._store = None
        self.state = ServerState.CLOSED
        logger.info("Protocol server closed")

    # --- Request handling ---

    async def handle(self, request: bytes | str | Any) -> dict[str, Any] | None:
        """Answer one JSON-RPC request.

        Args:
            request: Raw JSON (bytes/str) or an already-decoded envelope

        Returns:
            Response envelope, or None for notifications
        """
        request_id = None
        try:
            envelope = self._decode(request)
            if isinstance(envelope.get("id"), (str, int)):
                request_id = envelope["id"]
            method = self._validate(envelope)

            if "id" not in envelope:
                # Notifications never get a response
                logger.debug(f"Notification received: {method}")
                return None

            result = await self._dispatch(method, envelope.get("params"))
            return success_response(request_id, result)

        except EnvelopeError as e:
            logger.warning(f"Rejected request {request_id}: {e.code.name} {e.message}")
            return error_response(request_id, e.code, e.message)

        except Exception as e:
            logger.error(f"Unhandled protocol error: {e}", exc_info=True)
            return error_response(request_id, ErrorCode.INTERNAL_ERROR, f"Internal error: {e}")

    def _decode(self, request: bytes | str | Any) -> dict[str, Any]:
        if isinstance(request, (bytes, str)):
            try:
                request = json.loads(request)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise EnvelopeError(ErrorCode.PARSE_ERROR, f"Parse error: {e}") from e
        if not isinstance(request, dict):
            raise EnvelopeError(ErrorCode.INVALID_REQUEST, "Invalid Request: envelope must be an object")
        return request

    def _validate(self, envelope: dict[str, Any]) -> str:
        if envelope.get("jsonrpc") != JSONRPC_VERSION:
            raise EnvelopeError(
                ErrorCode.INVALID_REQUEST,
                f"Invalid Request: JSON-RPC version must be {JSONRPC_VERSION}",
            )

        request_id = envelope.get("id")
        if request_id is not None and (isinstance(request_id, bool) or not isinstance(request_id, (str, int))):
            raise EnvelopeError(ErrorCode.INVALID_REQUEST, "Invalid Request: id must be a string or integer")

        method = envelope.get("method")
        if not isinstance(method, str) or not method:
            raise EnvelopeError(ErrorCode.INVALID_REQUEST, "Invalid Request: method is required")

        params = envelope.get("params")
        if params is not None and not isinstance(params, dict):
            raise EnvelopeError(ErrorCode.INVALID_PARAMS, "Invalid params: params must be an object")

        return method

    async def _dispatch(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        if method == "initialize":
            return await self._handle_initialize()
        if method == "ping":
            return {}
        if method == "tools/list":
            self._require_active()
            return self._handle_tools_list()
        if method == "tools/call":
            self._require_active()
            return await self._handle_tool_call(params or {})
        raise EnvelopeError(ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")

    def _require_active(self) -> None:
        if not self.is_active:
            raise EnvelopeError(
                ErrorCode.SERVER_NOT_INITIALIZED,
                f"Server not initialized (state: {self.state.value})",
            )

    async def _handle_initialize(self) -> dict[str, Any]:
        await self.activate()
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": SERVER_NAME, "version": __version__},
            "capabilities": {"tools": {}},
        }

    def _handle_tools_list(self) -> dict[str, Any]:
        return {"tools": [spec.descriptor() for spec in self.registry.values()]}

    async def _handle_tool_call(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            call = ToolCallParams.model_validate(params)
        except ValidationError as e:
            raise EnvelopeError(ErrorCode.INVALID_PARAMS, f"Invalid params: {_describe(e)}") from e

        spec = self.registry.get(call.name)
        if spec is None:
            raise EnvelopeError(ErrorCode.METHOD_NOT_FOUND, f"Unknown tool: {call.name}")

        try:
            args = spec.input_model.model_validate(call.arguments)
        except ValidationError as e:
            raise EnvelopeError(
                ErrorCode.INVALID_PARAMS,
                f"Invalid parameters for {call.name}: {_describe(e)}",
            ) from e

        logger.info(f"Calling tool {call.name}")
        try:
            output = await spec.handler(self.store, args)
        except RecordNotFoundError as e:
            return _tool_result(str(e), is_error=True)
        except Exception as e:
            logger.error(f"Tool {call.name} failed: {e}", exc_info=True)
            raise EnvelopeError(ErrorCode.INTERNAL_ERROR, f"Tool execution failed: {e}") from e

        return _tool_result(output.text, output.payload)


def _describe(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "arguments"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


# Process-wide server instance
_server_instance: ProtocolServer | None = None


async def get_server(settings: Settings | None = None) -> ProtocolServer:
    """Get the shared protocol server, activating it on first use.

    Args:
        settings: Optional settings; defaults to the environment settings

    Returns:
        Active ProtocolServer instance
    """
    global _server_instance
    if _server_instance is None or _server_instance.state == ServerState.CLOSED:
        settings = settings or get_settings()
        _server_instance = ProtocolServer(db_path=settings.db_path)
    await _server_instance.activate()
    return _server_instance


def peek_server() -> ProtocolServer | None:
    """Return the shared server without activating it."""
    return _server_instance


async def shutdown_server() -> None:
    global _server_instance
    if _server_instance is not None:
        await _server_instance.close()
    _server_instance = None
