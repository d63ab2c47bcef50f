"""Local HTTP surface of the bridge process.

Exposes the bridge status and lets a developer on the same machine drive the
attached board directly, detect boards and flash firmware without going
through the relay.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from pydantic import BaseModel, ConfigDict, Field

from .. import __version__
from ..api.exceptions import (
    arduino_not_connected,
    handle_command_errors,
    no_boards_detected,
    upload_failed,
)
from ..constants import BRIDGE_VERSION, DEFAULT_BAUDRATE
from ..device import DEFAULT_FQBN, DeviceLink, detect_arduino_boards, upload_firmware
from ..logging_config import configure_logging, get_uvicorn_log_config
from ..utils import get_env_int, get_env_str, now_iso
from .agent import DEFAULT_RELAY_URL, BridgeAgent

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE_PORT = 8080


class CommandRequest(BaseModel):
    """Body of ``POST /arduino/command``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    command: str = Field(..., min_length=1)
    params: Dict[str, Any] = Field(default_factory=dict)
    expect_response: bool = Field(True, alias="expectResponse")


class UploadRequest(BaseModel):
    """Body of ``POST /arduino/upload``."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    sketch_path: str = Field(..., alias="sketchPath", min_length=1)
    port: Optional[str] = None
    fqbn: str = DEFAULT_FQBN


def create_app(agent: BridgeAgent) -> FastAPI:
    """Build the local bridge application; its lifespan drives ``agent``."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.agent = agent
        await agent.start()
        try:
            yield
        finally:
            await agent.stop()

    app = FastAPI(title="ArduBridge Bridge", version=__version__, lifespan=lifespan)

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        """Health check endpoint for container monitoring."""
        current: BridgeAgent = request.app.state.agent
        return {
            "status": "ok",
            "bridgeId": current.bridge_id,
            "relayConnected": current.relay_connected,
            "arduinoConnected": current.link.is_connected,
            "timestamp": now_iso(),
        }

    @app.get("/status")
    async def status(request: Request) -> Dict[str, Any]:
        return request.app.state.agent.status()

    @app.post("/arduino/command")
    @handle_command_errors
    async def send_command(request: Request, body: CommandRequest) -> Dict[str, Any]:
        """Run one command against the attached board."""
        current: BridgeAgent = request.app.state.agent
        if not current.link.is_connected:
            raise arduino_not_connected()
        result = await current.dispatcher.dispatch(body.command, body.params, body.expect_response)
        return {"success": True, "result": result}

    @app.get("/arduino/detect")
    async def detect() -> Dict[str, Any]:
        """List serial ports that look like Arduino boards."""
        boards = detect_arduino_boards()
        if not boards:
            raise no_boards_detected()
        return {"boards": [board.to_dict() for board in boards], "count": len(boards)}

    @app.post("/arduino/upload")
    @handle_command_errors
    async def upload(request: Request, body: UploadRequest) -> Dict[str, Any]:
        """Compile and flash a sketch, reconnecting the serial link afterwards.

        The serial port is released during the upload since the programmer
        needs exclusive access to it.
        """
        current: BridgeAgent = request.app.state.agent
        port = body.port or current.serial_port
        if port is None:
            boards = detect_arduino_boards()
            if not boards:
                raise no_boards_detected()
            port = boards[0].path

        was_connected = current.link.is_connected
        await current.link.disconnect()
        result = await upload_firmware(body.sketch_path, port, body.fqbn)
        if was_connected or result.success:
            try:
                await current.connect_device(port)
            except OSError as e:
                logger.warning(f"Reconnect after upload failed: {e}")
        if not result.success:
            raise upload_failed(result.error or "unknown error")
        return {**result.to_dict(), "port": port}

    return app


def build_agent() -> BridgeAgent:
    """Create a bridge agent configured from the environment."""
    return BridgeAgent(
        get_env_str("ARDUBRIDGE_RELAY_URL", DEFAULT_RELAY_URL) or DEFAULT_RELAY_URL,
        DeviceLink(baudrate=get_env_int("ARDUBRIDGE_BAUDRATE", DEFAULT_BAUDRATE)),
        bridge_id=get_env_str("ARDUBRIDGE_BRIDGE_ID"),
        serial_port=get_env_str("ARDUBRIDGE_SERIAL_PORT"),
    )


def main() -> None:  # pragma: no cover
    """Run the bridge agent and its local status app under Uvicorn.

    Configuration is handled via environment variables (``ARDUBRIDGE_RELAY_URL``,
    ``ARDUBRIDGE_SERIAL_PORT``, ``ARDUBRIDGE_BRIDGE_ID``, ``ARDUBRIDGE_BRIDGE_PORT``).
    """
    import sys

    import uvicorn

    configure_logging()
    agent = build_agent()
    port = get_env_int("ARDUBRIDGE_BRIDGE_PORT", DEFAULT_BRIDGE_PORT)
    logger.info(f"Starting ArduBridge bridge {BRIDGE_VERSION} ({agent.bridge_id}) on port {port}")

    try:
        uvicorn.run(create_app(agent), host="127.0.0.1", port=port, log_config=get_uvicorn_log_config())
    except Exception as e:
        logger.exception(f"FATAL ERROR: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
