"""Test configuration ensuring the src package is importable."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, List

import pytest

SRC_PATH = Path(__file__).resolve().parents[1] / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


VALID_API_KEY = "AIza" + "x" * 35


# ========== Test Doubles ==========
# Lightweight stand-ins for serial ports, WebSockets and the language model.
# They are NOT used in production code.


class FakeClock:
    """Manually advanced clock returning integer milliseconds or float seconds."""

    def __init__(self, start: float = 0) -> None:
        self.now = start

    def __call__(self) -> Any:
        return self.now

    def advance(self, delta: float) -> None:
        self.now += delta


class LoopbackWriter:
    """Serial writer that hands every written line to a virtual device.

    The device answers synchronously through its output callback, so a
    response is delivered to the link while ``write`` is still running.
    """

    def __init__(self, device: Any) -> None:
        self.device = device
        self.written: List[Dict[str, Any]] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("port closed")
        text = data.decode("utf-8")
        for line in text.splitlines():
            if line.strip():
                self.written.append(json.loads(line))
        self.device.feed(text)

    async def drain(self) -> None:
        return None

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class SilentWriter(LoopbackWriter):
    """Serial writer that records lines but never gets an answer."""

    def __init__(self) -> None:
        super().__init__(device=None)

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("port closed")
        for line in data.decode("utf-8").splitlines():
            if line.strip():
                self.written.append(json.loads(line))


def attach_virtual_device(link: Any, device: Any, port: str = "loop://") -> LoopbackWriter:
    """Wire ``link`` to ``device`` through a loopback writer.

    Must be called from inside a running event loop.
    """
    device.output = lambda frame: link.handle_line(json.dumps(frame))
    writer = LoopbackWriter(device)
    link.attach(asyncio.StreamReader(), writer, port)
    return writer


class FakeConnection:
    """Relay-side connection recording every frame sent to it."""

    def __init__(self, connection_id: str, *, fail_send: bool = False) -> None:
        self.id = connection_id
        self.sent: List[Dict[str, Any]] = []
        self.closed_with: Any = None
        self.fail_send = fail_send

    async def send(self, message: Any) -> None:
        if self.fail_send:
            raise ConnectionError("socket closed")
        self.sent.append(dict(message))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.sent if frame.get("type") == message_type]

    def last(self, message_type: str) -> Dict[str, Any]:
        frames = self.of_type(message_type)
        assert frames, f"no {message_type} frame sent to {self.id}"
        return frames[-1]


class ScriptedModel:
    """Language model replaying a fixed list of turns."""

    def __init__(self, turns: List[Any]) -> None:
        self.turns = list(turns)
        self.calls: List[List[Dict[str, Any]]] = []
        self.closed = False

    async def generate(self, contents: Any, tools: Any) -> Any:
        self.calls.append([dict(entry) for entry in contents])
        if not self.turns:
            raise AssertionError("model asked for more turns than scripted")
        return self.turns.pop(0)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
