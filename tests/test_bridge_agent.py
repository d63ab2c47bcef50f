"""Tests for the bridge agent's relay protocol handling."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List
from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeClock, attach_virtual_device

from ardubridge.bridge import BridgeAgent, machine_id
from ardubridge.device import BoardInfo, DeviceLink
from ardubridge.errors import NotConnectedError
from ardubridge.firmware import VirtualDevice


class FakeSocket:
    """Stand-in for the relay WebSocket."""

    def __init__(self) -> None:
        self.frames: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, raw: str) -> None:
        self.frames.append(json.loads(raw))

    async def close(self) -> None:
        self.closed = True

    def of_type(self, message_type: str) -> List[Dict[str, Any]]:
        return [frame for frame in self.frames if frame["type"] == message_type]


def _agent(device: VirtualDevice | None = None) -> BridgeAgent:
    agent = BridgeAgent("ws://relay.test/ws", DeviceLink(timeout=1.0), bridge_id="bridge-test", settle_delay=0)
    if device is not None:
        attach_virtual_device(agent.link, device)
    agent._ws = FakeSocket()
    return agent


async def _settle(agent: BridgeAgent) -> None:
    while agent._tasks:
        await asyncio.gather(*list(agent._tasks))


def test_machine_id_is_stable():
    first = machine_id()

    assert first == machine_id()
    assert first.startswith("bridge-")
    assert len(first) == len("bridge-") + 16


@pytest.mark.asyncio
async def test_registration_frame_describes_the_device():
    agent = _agent(VirtualDevice(clock=FakeClock()))

    await agent.register()

    frame = agent._ws.frames[-1]
    assert frame["type"] == "bridge_register"
    assert frame["bridgeId"] == "bridge-test"
    assert frame["version"] == "1.0.0"
    assert frame["arduino"]["connected"] is True
    assert frame["arduino"]["port"] == "loop://"


@pytest.mark.asyncio
async def test_relay_command_is_executed_and_answered():
    device = VirtualDevice(clock=FakeClock())
    agent = _agent(device)

    await agent.handle_relay_message(
        {"type": "arduino_command", "id": "c1", "command": "LED_BLINK", "params": {"rate": 300}}
    )
    await _settle(agent)

    result = agent._ws.of_type("command_result")[-1]
    assert result["commandId"] == "c1"
    assert result["bridgeId"] == "bridge-test"
    assert result["result"]["success"] is True
    assert device.scheduler.current == "blink"
    assert agent.commands_processed == 1
    assert agent.dispatcher.state.effects["blinking"] is True


@pytest.mark.asyncio
async def test_invalid_relay_command_is_reported_without_touching_device():
    device = VirtualDevice(clock=FakeClock())
    agent = _agent(device)

    await agent.handle_relay_message(
        {"type": "arduino_command", "id": "c2", "command": "ANALOG_WRITE", "params": {"pin": 4, "value": 10}}
    )
    await _settle(agent)

    error = agent._ws.of_type("command_error")[-1]
    assert error["commandId"] == "c2"
    assert error["error"]["code"] == "invalid_parameter"
    assert device.commands_handled == 0


@pytest.mark.asyncio
async def test_command_without_device_reports_not_connected():
    agent = _agent()

    await agent.handle_relay_message({"type": "arduino_command", "id": "c3", "command": "PING"})
    await _settle(agent)

    assert agent._ws.of_type("command_error")[-1]["error"]["code"] == "not_connected"


@pytest.mark.asyncio
async def test_unsolicited_device_output_is_forwarded():
    device = VirtualDevice(clock=FakeClock())
    agent = _agent(device)

    agent.link.handle_line("sensor warming up\n")
    device.send_status()
    await _settle(agent)

    forwarded = agent._ws.of_type("arduino_response")
    assert forwarded[0]["data"]["type"] == "message"
    assert forwarded[0]["data"]["message"] == "sensor warming up"
    assert forwarded[1]["data"]["type"] == "status"
    assert forwarded[1]["bridgeId"] == "bridge-test"


@pytest.mark.asyncio
async def test_ping_and_status_requests():
    agent = _agent(VirtualDevice(clock=FakeClock()))

    await agent.handle_relay_message({"type": "ping"})
    await agent.handle_relay_message({"type": "status_request"})
    await agent.handle_relay_message({"type": "welcome", "sessionId": "x"})

    assert agent._ws.frames[0]["type"] == "pong"
    status = agent._ws.frames[1]
    assert status["type"] == "bridge_status"
    assert status["status"]["arduino"]["connected"] is True
    assert len(agent._ws.frames) == 2


@pytest.mark.asyncio
async def test_send_without_relay_connection():
    agent = _agent()
    agent._ws = None

    assert await agent.send({"type": "ping"}) is False


@pytest.mark.asyncio
async def test_connect_device_without_boards():
    agent = BridgeAgent("ws://relay.test/ws", bridge_id="bridge-test", settle_delay=0)

    with patch("ardubridge.bridge.agent.detect_arduino_boards", return_value=[]):
        with pytest.raises(NotConnectedError, match="No Arduino boards detected"):
            await agent.connect_device()


@pytest.mark.asyncio
async def test_connect_device_uses_first_detected_board():
    agent = BridgeAgent("ws://relay.test/ws", bridge_id="bridge-test", settle_delay=0)
    board = BoardInfo("/dev/ttyACM0", "Arduino", "2341", "0043", "Arduino Uno")
    device = VirtualDevice(clock=FakeClock())

    async def fake_connect(port: str) -> None:
        attach_virtual_device(agent.link, device, port)

    with patch("ardubridge.bridge.agent.detect_arduino_boards", return_value=[board]), patch.object(
        agent.link, "connect", AsyncMock(side_effect=fake_connect)
    ):
        await agent.connect_device()

    assert agent.serial_port == "/dev/ttyACM0"
    assert agent.arduino_info()["boardType"] == "Arduino Uno"
    # Communication probe reached the device.
    assert device.commands_handled == 1
    await agent.link.disconnect()
