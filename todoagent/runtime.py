"""Process-wide wiring of protocol server, gateway, model client and orchestrator."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from todoagent.config import Settings, get_settings
from todoagent.gateway import ServerNotReadyError, ToolGateway
from todoagent.model_client import ModelClient, build_model_client
from todoagent.orchestrator import Orchestrator
from todoagent.protocol import ProtocolServer, get_server, shutdown_server

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Collaborators shared by every run in this process."""

    server: ProtocolServer
    gateway: ToolGateway
    model: ModelClient
    orchestrator: Orchestrator


_runtime: Runtime | None = None


async def start_runtime(settings: Settings | None = None, model: ModelClient | None = None) -> Runtime:
    """Activate the protocol server and build the objects that depend on it.

    Args:
        settings: Optional settings; defaults to the environment settings
        model: Optional model client; built from settings when omitted

    Returns:
        The shared Runtime
    """
    global _runtime
    settings = settings or get_settings()

    server = await get_server(settings)
    gateway = ToolGateway(
        server,
        registry_ttl_s=settings.registry_ttl_s,
        ready_timeout_s=settings.ready_timeout_s,
    )
    model = model or build_model_client(settings)
    orchestrator = Orchestrator(
        model,
        gateway,
        max_iterations=settings.max_iterations,
        deadline_s=settings.run_deadline_s,
        finalize_timeout_s=settings.finalize_timeout_s,
    )
    _runtime = Runtime(server=server, gateway=gateway, model=model, orchestrator=orchestrator)
    logger.info(f"Runtime ready (store: {settings.db_path})")
    return _runtime


async def stop_runtime() -> None:
    global _runtime
    _runtime = None
    await shutdown_server()


def get_runtime() -> Runtime:
    """Return the shared runtime; raises ServerNotReadyError before start-up."""
    if _runtime is None:
        raise ServerNotReadyError()
    return _runtime


def peek_runtime() -> Runtime | None:
    return _runtime
