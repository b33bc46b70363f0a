"""Client-side facade for calling tools on the embedded protocol server."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from todoagent.protocol import JSONRPC_VERSION, ErrorCode, ProtocolServer

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_TTL_S = 60.0
DEFAULT_READY_TIMEOUT_S = 5.0


class ServerNotReadyError(Exception):
    """Raised when the protocol server has not finished activating.

    This is a retryable condition, distinct from a tool or protocol failure.
    """

    def __init__(self, message: str = "Tool server is still starting up", retry_after_s: float = 1.0):
        super().__init__(message)
        self.retry_after_s = retry_after_s


class ToolInvocationError(Exception):
    """Raised when the server answers a request with a JSON-RPC error."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def is_envelope_error(self) -> bool:
        """True for malformed or unsupported requests, which are never retried."""
        return self.code in (ErrorCode.PARSE_ERROR, ErrorCode.INVALID_REQUEST)


@dataclass
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)

    def to_model_tool(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolCallResult:
    """Parsed outcome of one tool call."""

    name: str
    text: str
    payload: dict[str, Any] | None = None
    is_error: bool = False


class ToolGateway:
    """Invoke tools on the protocol server with a short-lived registry cache."""

    def __init__(
        self,
        server: ProtocolServer,
        registry_ttl_s: float = DEFAULT_REGISTRY_TTL_S,
        ready_timeout_s: float = DEFAULT_READY_TIMEOUT_S,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.server = server
        self.registry_ttl_s = registry_ttl_s
        self.ready_timeout_s = ready_timeout_s
        self._clock = clock
        self._ids = itertools.count(1)
        self._handshake: dict[str, Any] | None = None
        self._registry: list[ToolDescriptor] | None = None
        self._registry_fetched_at = 0.0

    @property
    def server_info(self) -> dict[str, Any] | None:
        return self._handshake

    async def ensure_ready(self) -> None:
        """Perform the handshake once per gateway session."""
        if self._handshake is not None and self.server.is_active:
            return

        try:
            result = await asyncio.wait_for(
                self._request("initialize", {"clientInfo": {"name": "todoagent-gateway"}}),
                timeout=self.ready_timeout_s,
            )
        except asyncio.TimeoutError as e:
            logger.warning(f"Protocol server not ready after {self.ready_timeout_s}s")
            raise ServerNotReadyError() from e
        except ToolInvocationError as e:
            raise ServerNotReadyError(f"Tool server failed to start: {e.message}") from e

        self._handshake = result
        logger.info(
            f"Connected to {result['serverInfo']['name']} {result['serverInfo']['version']} "
            f"(protocol {result['protocolVersion']})"
        )

    async def list_tools(self, force: bool = False) -> list[ToolDescriptor]:
        """Get the tool registry, refetching only when the cache has expired."""
        now = self._clock()
        if (
            not force
            and self._registry is not None
            and now - self._registry_fetched_at < self.registry_ttl_s
        ):
            return self._registry

        await self.ensure_ready()
        result = await self._request("tools/list", {})
        self._registry = [
            ToolDescriptor(
                name=tool["name"],
                description=tool.get("description", ""),
                input_schema=tool.get("inputSchema", {}),
            )
            for tool in result.get("tools", [])
        ]
        self._registry_fetched_at = now
        logger.debug(f"Fetched tool registry: {[tool.name for tool in self._registry]}")
        return self._registry

    def invalidate(self) -> None:
        self._registry = None

    async def model_tools(self) -> list[dict[str, Any]]:
        return [tool.to_model_tool() for tool in await self.list_tools()]

    async def invoke(self, name: str, args: dict[str, Any] | None = None) -> ToolCallResult:
        """Call a tool.

        Args:
            name: Tool name
            args: Tool arguments

        Returns:
            ToolCallResult; is_error is set when the tool reported a failure

        Raises:
            ServerNotReadyError: The server is still activating
            ToolInvocationError: The server rejected the request
        """
        await self.ensure_ready()
        result = await self._request("tools/call", {"name": name, "arguments": args or {}})

        text = "\n".join(
            block.get("text", "")
            for block in result.get("content", [])
            if block.get("type") == "text"
        )
        return ToolCallResult(
            name=name,
            text=text,
            payload=result.get("structuredContent"),
            is_error=bool(result.get("isError", False)),
        )

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        envelope = {
            "jsonrpc": JSONRPC_VERSION,
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        response = await self.server.handle(envelope)
        if response is None:
            raise ToolInvocationError(ErrorCode.INTERNAL_ERROR, f"No response to {method}")

        error = response.get("error")
        if error is not None:
            code = error.get("code", ErrorCode.INTERNAL_ERROR)
            message = error.get("message", "Unknown error")
            if code == ErrorCode.SERVER_NOT_INITIALIZED:
                self._handshake = None
                raise ServerNotReadyError(message)
            raise ToolInvocationError(code, message)

        return response.get("result", {})
