"""Local bridge process connecting one serial device to the cloud relay.

The agent keeps a WebSocket open to the relay (reconnecting every few
seconds when it drops), registers under a stable machine identifier, runs
relay commands against the serial :class:`~ardubridge.device.link.DeviceLink`
and forwards unsolicited device output back to the relay.
"""

import asyncio
import hashlib
import json
import logging
import platform
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional, Set

import websockets

from ..commands import CommandDispatcher
from ..constants import (
    BRIDGE_HEARTBEAT_INTERVAL,
    BRIDGE_VERSION,
    DEFAULT_BAUDRATE,
    DEVICE_SETTLE_DELAY,
    RELAY_RECONNECT_DELAY,
)
from ..device import BoardInfo, DeviceLink, detect_arduino_boards
from ..errors import ArduBridgeError, ErrorCode, NotConnectedError
from ..utils import iso_from_epoch, now_ms

logger = logging.getLogger(__name__)

DEFAULT_RELAY_URL = "ws://localhost:3000/ws"
MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


def machine_id() -> str:
    """Return a stable identifier for this host."""
    raw = ""
    for candidate in MACHINE_ID_PATHS:
        try:
            raw = Path(candidate).read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if raw:
            break
    if not raw:
        raw = f"{platform.node()}-{uuid.getnode():012x}"
    return "bridge-" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class BridgeAgent:
    """WebSocket client for the relay, bound to one serial device."""

    def __init__(
        self,
        relay_url: str = DEFAULT_RELAY_URL,
        link: Optional[DeviceLink] = None,
        *,
        bridge_id: Optional[str] = None,
        serial_port: Optional[str] = None,
        reconnect_delay: float = RELAY_RECONNECT_DELAY,
        heartbeat_interval: float = BRIDGE_HEARTBEAT_INTERVAL,
        settle_delay: float = DEVICE_SETTLE_DELAY,
    ):
        self.relay_url = relay_url
        self.link = link or DeviceLink(baudrate=DEFAULT_BAUDRATE)
        self.dispatcher = CommandDispatcher(self.link)
        self.bridge_id = bridge_id or machine_id()
        self.serial_port = serial_port
        self.reconnect_delay = reconnect_delay
        self.heartbeat_interval = heartbeat_interval
        self.settle_delay = settle_delay
        self.board: Optional[BoardInfo] = None
        self.started_at = time.time()
        self.commands_processed = 0
        self._ws: Optional[Any] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self.link.add_listener(self._on_device_event)

    @property
    def relay_connected(self) -> bool:
        return self._ws is not None

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Device side
    # ------------------------------------------------------------------

    async def connect_device(self, port: Optional[str] = None) -> None:
        """Open the serial device, auto-detecting the port when none is given.

        Raises:
            NotConnectedError: If no board can be found
        """
        port = port or self.serial_port
        if port is None:
            boards = detect_arduino_boards()
            if not boards:
                raise NotConnectedError("No Arduino boards detected")
            self.board = boards[0]
            port = self.board.path
            logger.info("Found %d Arduino board(s), using %s (%s)", len(boards), port, self.board.boardType)
        await self.link.connect(port)
        self.serial_port = port
        await asyncio.sleep(self.settle_delay)
        try:
            await self.dispatcher.ping()
            logger.info("Arduino communication test successful")
        except ArduBridgeError as e:
            logger.warning(f"Arduino communication test failed: {e.message}")

    def arduino_info(self) -> Dict[str, Any]:
        """Hardware summary sent with registration and status."""
        info = self.link.summary()
        info["boardType"] = self.board.boardType if self.board else None
        info["hardware"] = self.dispatcher.state.to_dict()
        return info

    def status(self) -> Dict[str, Any]:
        return {
            "bridgeId": self.bridge_id,
            "version": BRIDGE_VERSION,
            "relay": {"url": self.relay_url, "connected": self.relay_connected},
            "arduino": self.arduino_info(),
            "commandsProcessed": self.commands_processed,
            "startedAt": iso_from_epoch(self.started_at),
            "uptime": round(time.time() - self.started_at, 1),
        }

    def _on_device_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "arduino_response":
            data = event.get("data")
            if isinstance(data, dict) and data.get("type") == "status" and isinstance(data.get("data"), dict):
                self.dispatcher.state.merge_status(data["data"])
            frame = {"type": "arduino_response", "bridgeId": self.bridge_id, "data": data, "timestamp": now_ms()}
        elif event_type == "arduino_message":
            frame = {
                "type": "arduino_response",
                "bridgeId": self.bridge_id,
                "data": {"type": "message", **(event.get("data") or {})},
                "timestamp": now_ms(),
            }
        else:
            frame = {"type": "bridge_status", "bridgeId": self.bridge_id, "status": self.status(), "event": event_type}
        if self._ws is not None:
            self._spawn(self.send(frame))

    # ------------------------------------------------------------------
    # Relay side
    # ------------------------------------------------------------------

    async def send(self, message: Dict[str, Any]) -> bool:
        """Send a frame to the relay; False when not connected."""
        ws = self._ws
        if ws is None:
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except websockets.exceptions.ConnectionClosed:
            logger.debug("Relay connection closed while sending %s", message.get("type"))
            return False

    async def start(self) -> None:
        """Connect the device (best effort) and start the relay loop."""
        if self._running:
            logger.warning("Bridge agent already running")
            return
        try:
            await self.connect_device()
        except (ArduBridgeError, OSError) as e:
            logger.warning(f"Initial Arduino connection failed: {e}")
        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info(f"Bridge {self.bridge_id} started, relay {self.relay_url}")

    async def stop(self) -> None:
        self._running = False
        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in list(self._tasks):
            task.cancel()
        await self.link.disconnect()
        logger.info("Bridge agent stopped")

    async def _run(self) -> None:
        """Main relay connection loop with reconnection logic"""
        while self._running:
            try:
                await self._connect_and_listen()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Relay connection error: {e}")
            if self._running:
                logger.info(f"Reconnecting to relay in {self.reconnect_delay:g} seconds...")
                await asyncio.sleep(self.reconnect_delay)

    async def _connect_and_listen(self) -> None:
        async with websockets.connect(self.relay_url) as ws:
            self._ws = ws
            heartbeat = asyncio.create_task(self._heartbeat())
            try:
                logger.info("Connected to relay")
                await self.register()
                async for raw in ws:
                    try:
                        message = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning("Ignoring malformed frame from relay")
                        continue
                    if isinstance(message, dict):
                        await self.handle_relay_message(message)
            except websockets.exceptions.ConnectionClosed:
                logger.warning("Relay connection closed")
            finally:
                heartbeat.cancel()
                self._ws = None

    async def register(self) -> None:
        await self.send(
            {
                "type": "bridge_register",
                "bridgeId": self.bridge_id,
                "version": BRIDGE_VERSION,
                "arduino": self.arduino_info(),
            }
        )

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.send({"type": "ping", "bridgeId": self.bridge_id, "timestamp": now_ms()})

    async def handle_relay_message(self, message: Dict[str, Any]) -> None:
        """Handle one frame from the relay."""
        message_type = message.get("type")
        if message_type == "arduino_command":
            # Commands run as tasks so a slow device does not block the socket.
            self._spawn(self.execute_command(message))
        elif message_type == "ping":
            await self.send({"type": "pong", "bridgeId": self.bridge_id, "timestamp": now_ms()})
        elif message_type == "status_request":
            await self.send({"type": "bridge_status", "bridgeId": self.bridge_id, "status": self.status()})
        elif message_type == "bridge_registered":
            logger.info("Registered with relay as %s", message.get("bridgeId"))
        elif message_type == "error":
            logger.warning(f"Relay reported an error: {message.get('message')}")
        elif message_type in ("welcome", "pong"):
            return
        else:
            logger.debug(f"Ignoring relay message type {message_type}")

    async def execute_command(self, message: Dict[str, Any]) -> None:
        """Run a relay command on the device and report its outcome."""
        command_id = message.get("id")
        command = message.get("command")
        params = message.get("params")
        logger.info(f"Executing command: {command} {params or {}}")
        try:
            result = await self.dispatcher.dispatch(command, params if params is not None else {})
        except ArduBridgeError as e:
            logger.warning(f"Command {command} failed: {e.message}")
            await self.send(
                {
                    "type": "command_error",
                    "bridgeId": self.bridge_id,
                    "commandId": command_id,
                    "error": e.to_dict(),
                    "timestamp": now_ms(),
                }
            )
            return
        except Exception as e:
            logger.exception(f"Unexpected error executing {command}")
            await self.send(
                {
                    "type": "command_error",
                    "bridgeId": self.bridge_id,
                    "commandId": command_id,
                    "error": {"code": ErrorCode.INTERNAL_ERROR.value, "message": str(e), "details": {}},
                    "timestamp": now_ms(),
                }
            )
            return
        self.commands_processed += 1
        await self.send(
            {
                "type": "command_result",
                "bridgeId": self.bridge_id,
                "commandId": command_id,
                "result": result,
                "timestamp": now_ms(),
            }
        )
