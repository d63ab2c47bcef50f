"""FastAPI service for the cloud relay.

Users and bridges share one WebSocket endpoint (``/ws``); everything behind
it lives in :class:`~ardubridge.relay.core.RelayCore`. This module only keeps
the web-facing wiring: the relay singleton, the lifespan hooks, the health
and info routes and the uvicorn entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect

from . import __version__
from .api.exceptions import bridge_not_found
from .commands import FUNCTIONS
from .constants import BRIDGE_STALE_AFTER, DEFAULT_MODEL, RELAY_COMMAND_TIMEOUT
from .llm import GeminiClient, LanguageModel
from .logging_config import configure_logging, get_uvicorn_log_config
from .relay import BridgeRegistry, RelayCore, SessionRegistry, new_connection_id
from .utils import get_env_float, get_env_int, get_env_str

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


class WebSocketConnection:
    """Adapts a Starlette WebSocket to the relay's connection interface."""

    def __init__(self, websocket: WebSocket, connection_id: Optional[str] = None):
        self.websocket = websocket
        self.id = connection_id or new_connection_id()

    async def send(self, message: Mapping[str, Any]) -> None:
        await self.websocket.send_json(dict(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        await self.websocket.close(code=code, reason=reason)


def gemini_factory(api_key: str) -> LanguageModel:
    """Build the default model client for a session credential."""
    return GeminiClient(api_key, model=get_env_str("ARDUBRIDGE_MODEL", DEFAULT_MODEL) or DEFAULT_MODEL)


def build_relay() -> RelayCore:
    """Create a relay configured from the environment."""
    return RelayCore(
        BridgeRegistry(stale_after=get_env_float("ARDUBRIDGE_BRIDGE_STALE_AFTER", BRIDGE_STALE_AFTER)),
        SessionRegistry(),
        gemini_factory,
        command_timeout=get_env_float("ARDUBRIDGE_COMMAND_TIMEOUT", RELAY_COMMAND_TIMEOUT),
    )


# Global relay instance - initialized lazily on first access
_relay_instance: RelayCore | None = None


def get_relay() -> RelayCore:
    """Get or create the singleton relay instance.

    This lazy initialization prevents double-initialization when uvicorn
    imports the module in both main and worker processes.
    """
    global _relay_instance
    if _relay_instance is None:
        _relay_instance = build_relay()
    return _relay_instance


def create_app(relay: Optional[RelayCore] = None) -> FastAPI:
    """Build the relay application around ``relay`` (the singleton by default)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the bridge liveness sweep and tear the relay down on exit."""
        core = relay or get_relay()
        app.state.relay = core
        core.start()
        try:
            yield
        finally:
            await core.stop()

    app = FastAPI(title="ArduBridge Relay", version=__version__, lifespan=lifespan)

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        """Health check endpoint for container monitoring."""
        return request.app.state.relay.health()

    @app.get("/api/info")
    async def info(request: Request) -> Dict[str, Any]:
        """Describe the relay and its command surface."""
        core: RelayCore = request.app.state.relay
        return {
            "name": "ArduBridge Relay",
            "version": __version__,
            "websocket": "/ws",
            "functions": sorted(FUNCTIONS),
            "privacy": "API keys are held in memory for the lifetime of the connection only",
            "bridges": {"connected": len(core.bridges)},
        }

    @app.get("/api/bridges")
    async def list_bridges(request: Request) -> Dict[str, Any]:
        """Return every registered bridge."""
        core: RelayCore = request.app.state.relay
        bridges = [core.bridge_summary(record) for record in core.bridges.list()]
        return {"bridges": bridges, "count": len(bridges)}

    @app.get("/api/bridges/{bridge_id}")
    async def get_bridge(request: Request, bridge_id: str) -> Dict[str, Any]:
        """Return one bridge including its mirrored hardware state."""
        core: RelayCore = request.app.state.relay
        record = core.bridges.get(bridge_id)
        if record is None:
            raise bridge_not_found(bridge_id)
        return core.bridge_summary(record)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        core: RelayCore = websocket.app.state.relay
        await websocket.accept()
        connection = WebSocketConnection(websocket)
        await core.connect(connection)
        try:
            while True:
                raw = await websocket.receive_text()
                await core.handle_message(connection, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await core.disconnect(connection)

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    """Run the relay under Uvicorn.

    Configuration is handled via environment variables (``PORT``,
    ``ARDUBRIDGE_HOST``, ``ARDUBRIDGE_MODEL``, ``ARDUBRIDGE_LOG_LEVEL``).
    """
    import sys

    import uvicorn

    configure_logging()
    host = get_env_str("ARDUBRIDGE_HOST", "0.0.0.0") or "0.0.0.0"
    port = get_env_int("PORT", DEFAULT_PORT)
    logger.info(f"Starting ArduBridge relay {__version__} on {host}:{port}")

    try:
        uvicorn.run(app, host=host, port=port, log_config=get_uvicorn_log_config())
    except Exception as e:
        logger.exception(f"FATAL ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
