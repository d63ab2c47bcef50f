"""Serial link to a single microcontroller.

The link owns exactly one serial transport. Outbound commands are written as
newline-delimited JSON objects ``{id, command, params, timestamp}``; inbound
lines are parsed as JSON when possible and passed through as raw text
otherwise. Responses carrying a known ``id`` settle the matching pending
request; everything else is handed to listeners as telemetry.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Set

import serial_asyncio

from ..constants import DEFAULT_BAUDRATE, DEVICE_COMMAND_TIMEOUT, LINE_TERMINATOR, ResponseType
from ..correlation import PendingRequests
from ..errors import CommandFailedError, NotConnectedError
from ..utils import now_ms

logger = logging.getLogger(__name__)

DeviceListener = Callable[[Dict[str, Any]], None]

_OUTCOME_TYPES = {item.value for item in ResponseType}


def encode_request(request_id: str, command: str, params: Dict[str, Any]) -> bytes:
    """Encode one command request as a newline-terminated JSON line."""
    message = {
        "id": request_id,
        "command": command,
        "params": params,
        "timestamp": now_ms(),
    }
    return (json.dumps(message, separators=(",", ":")) + LINE_TERMINATOR).encode("utf-8")


def decode_line(line: str) -> Dict[str, Any] | str | None:
    """Decode one inbound line.

    Returns:
        The parsed JSON object, the stripped raw text when the line is not a
        JSON object, or None for blank lines
    """
    text = line.strip()
    if not text:
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return text
    if not isinstance(parsed, dict):
        return text
    return parsed


class DeviceLink:
    """Owns one serial connection and correlates command responses."""

    def __init__(
        self,
        *,
        baudrate: int = DEFAULT_BAUDRATE,
        timeout: float = DEVICE_COMMAND_TIMEOUT,
    ) -> None:
        """Create a disconnected link.

        Args:
            baudrate: Serial speed used by :meth:`connect`
            timeout: Seconds to wait for a correlated response
        """
        self.baudrate = baudrate
        self.port: Optional[str] = None
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._pending = PendingRequests(timeout, name="device")
        self._listeners: Set[DeviceListener] = set()
        self.last_activity: Optional[float] = None
        self.last_seen: Optional[float] = None
        self.last_command: Optional[Dict[str, Any]] = None
        self.last_response: Optional[Dict[str, Any]] = None
        self.commands_processed = 0

    @property
    def is_connected(self) -> bool:
        """True while the serial transport is open."""
        return self._writer is not None and not self._writer.is_closing()

    @property
    def pending(self) -> PendingRequests:
        """Outstanding requests awaiting a device response."""
        return self._pending

    def add_listener(self, listener: DeviceListener) -> None:
        """Register a callback for unsolicited device messages and link events."""
        self._listeners.add(listener)

    def remove_listener(self, listener: DeviceListener) -> None:
        """Remove a previously registered callback."""
        self._listeners.discard(listener)

    def _emit(self, event: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Device listener failed for %s event", event.get("type"))

    async def connect(self, port: str) -> None:
        """Open ``port`` (a device path or any pyserial URL) and start reading.

        Any previously open handle is closed first.
        """
        await self.disconnect()
        logger.info("Connecting to Arduino on %s at %d baud", port, self.baudrate)
        reader, writer = await serial_asyncio.open_serial_connection(
            url=port, baudrate=self.baudrate
        )
        self.attach(reader, writer, port)

    def attach(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        port: str,
    ) -> None:
        """Adopt an already opened stream pair as the serial transport."""
        self._reader = reader
        self._writer = writer
        self.port = port
        self.last_seen = time.time()
        self._read_task = asyncio.create_task(self._read_loop(reader))
        logger.info("Serial port opened: %s", port)
        self._emit({"type": "arduino_connected", "data": {"port": port}})

    async def disconnect(self) -> None:
        """Close the serial transport and fail every outstanding request."""
        task, self._read_task = self._read_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        writer = self._writer
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, asyncio.CancelledError) as exc:
                logger.debug("Error while closing serial port: %s", exc)
        self._mark_closed()

    def _mark_closed(self) -> None:
        if self._writer is None and self._reader is None:
            return
        port = self.port
        self._reader = None
        self._writer = None
        failed = self._pending.reject_all(
            lambda pending: NotConnectedError(
                f"Arduino disconnected before answering {pending.command}"
            )
        )
        if failed:
            logger.warning("Rejected %d pending commands after disconnect", failed)
        logger.info("Serial port closed: %s", port)
        self._emit({"type": "arduino_disconnected", "data": {"port": port}})

    async def _read_loop(self, reader: asyncio.StreamReader) -> None:
        try:
            while True:
                raw = await reader.readline()
                if not raw:
                    break
                self.handle_line(raw.decode("utf-8", errors="replace"))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Serial port error: %s", exc)
            self._emit({"type": "arduino_error", "data": {"error": str(exc)}})
        if self._reader is reader:
            self._read_task = None
            self._mark_closed()

    def handle_line(self, line: str) -> None:
        """Process one inbound line from the device."""
        decoded = decode_line(line)
        if decoded is None:
            return
        self.last_seen = time.time()

        if isinstance(decoded, str):
            logger.debug("Arduino: %s", decoded)
            self.last_response = {"text": decoded, "timestamp": now_ms()}
            self._emit(
                {
                    "type": "arduino_message",
                    "data": {"message": decoded, "timestamp": now_ms()},
                }
            )
            return

        self.last_response = decoded
        request_id = decoded.get("id")
        if isinstance(request_id, str) and request_id in self._pending and self._has_outcome(decoded):
            self._settle(request_id, decoded)
            return

        self._emit({"type": "arduino_response", "data": decoded})

    @staticmethod
    def _has_outcome(message: Dict[str, Any]) -> bool:
        return isinstance(message.get("success"), bool) or message.get("type") in _OUTCOME_TYPES

    def _settle(self, request_id: str, message: Dict[str, Any]) -> None:
        failed = message.get("success") is False or message.get("type") == ResponseType.ERROR.value
        if failed:
            error = CommandFailedError(
                str(message.get("message") or "Command failed"),
                details={"id": request_id, "response": message},
            )
            self._pending.reject(request_id, error)
            return
        if self._pending.resolve(request_id, message):
            self.last_activity = time.time()

    async def send_command(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        expect_response: bool = True,
    ) -> Dict[str, Any]:
        """Send a command and, by default, wait for its correlated response.

        Args:
            name: Symbolic command name (e.g. ``LED_BLINK``)
            params: Command parameters
            expect_response: When False, return as soon as the line is written

        Returns:
            The device response object, or a write acknowledgement when no
            response is expected

        Raises:
            NotConnectedError: If the transport is not open or the write fails
            CommandTimeoutError: If no response arrives in time
            CommandFailedError: If the device reports failure
        """
        writer = self._writer
        if writer is None or writer.is_closing():
            raise NotConnectedError()

        params = dict(params or {})
        pending = None
        if expect_response:
            pending = self._pending.register(name, params)
            request_id = pending.id
        else:
            request_id = self._pending.new_id()

        self.last_command = {"command": name, "params": params, "timestamp": now_ms()}
        logger.debug("Sending to Arduino: %s %s", name, params)
        try:
            writer.write(encode_request(request_id, name, params))
            await writer.drain()
        except (OSError, ConnectionError) as exc:
            if pending is not None:
                self._pending.discard(request_id)
            raise NotConnectedError(f"Failed to send command: {exc}") from exc

        self.commands_processed += 1
        if pending is None:
            self.last_activity = time.time()
            return {"success": True, "id": request_id, "command": name, "params": params}
        return await self._pending.wait(pending)

    def summary(self) -> Dict[str, Any]:
        """Return a JSON-safe snapshot used for status and registration."""
        return {
            "connected": self.is_connected,
            "port": self.port,
            "baudrate": self.baudrate,
            "pending": len(self._pending),
            "commandsProcessed": self.commands_processed,
            "lastActivity": self.last_activity,
            "lastSeen": self.last_seen,
        }
