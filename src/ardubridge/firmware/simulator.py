"""TCP server exposing a :class:`VirtualDevice` as a serial port.

Point the bridge at ``socket://localhost:7000`` (pyserial URL syntax) to run
the whole system without hardware. One client is served at a time, like a
physical serial port; a new connection takes the port over.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from ..constants import LINE_TERMINATOR, SCHEDULER_TICK_MS
from ..logging_config import configure_logging
from ..utils import get_env_int, get_env_str
from .device import VirtualDevice

logger = logging.getLogger(__name__)

DEFAULT_SIM_PORT = 7000


class DeviceSimulator:
    """Serves one virtual device over TCP and runs its polling loop."""

    def __init__(
        self,
        device: Optional[VirtualDevice] = None,
        host: str = "127.0.0.1",
        port: int = DEFAULT_SIM_PORT,
        tick_ms: int = SCHEDULER_TICK_MS,
    ) -> None:
        self.device = device or VirtualDevice()
        self.device.output = self._write_frame
        self.host = host
        self.port = port
        self.tick_ms = tick_ms
        self._server: Optional[asyncio.AbstractServer] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.StreamWriter] = None

    @property
    def address(self) -> tuple[str, int]:
        """Actual listening address (useful when started on port 0)."""
        if self._server is None or not self._server.sockets:
            return (self.host, self.port)
        host, port = self._server.sockets[0].getsockname()[:2]
        return (host, port)

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self._loop_task = asyncio.create_task(self._poll_loop())
        host, port = self.address
        logger.info("Virtual Arduino listening on socket://%s:%d", host, port)

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        finally:
            await self.stop()

    async def _poll_loop(self) -> None:
        pause = self.tick_ms / 1000
        while True:
            try:
                self.device.poll()
            except Exception:
                logger.exception("Virtual device loop iteration failed")
            await asyncio.sleep(pause)

    def _write_frame(self, frame: Dict[str, Any]) -> None:
        writer = self._writer
        if writer is None or writer.is_closing():
            return
        writer.write((json.dumps(frame, separators=(",", ":")) + LINE_TERMINATOR).encode("utf-8"))

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        if self._writer is not None:
            logger.info("New host connection %s replaces the previous one", peer)
            self._writer.close()
        self._writer = writer
        logger.info("Host connected: %s", peer)
        try:
            while True:
                chunk = await reader.read(256)
                if not chunk:
                    break
                self.device.feed(chunk.decode("utf-8", errors="replace"))
                await writer.drain()
        except ConnectionError as exc:
            logger.info("Host connection %s lost: %s", peer, exc)
        finally:
            if self._writer is writer:
                self._writer = None
            writer.close()
            logger.info("Host disconnected: %s", peer)


def main() -> None:  # pragma: no cover
    """Run the virtual Arduino until interrupted."""
    configure_logging()
    simulator = DeviceSimulator(
        host=get_env_str("ARDUBRIDGE_SIM_HOST", "127.0.0.1"),
        port=get_env_int("ARDUBRIDGE_SIM_PORT", DEFAULT_SIM_PORT),
    )
    try:
        asyncio.run(simulator.serve_forever())
    except KeyboardInterrupt:
        logger.info("Simulator stopped")


if __name__ == "__main__":
    main()
