"""Tests for the bridge's local HTTP endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from conftest import FakeClock, attach_virtual_device
from fastapi.testclient import TestClient

from ardubridge.bridge import BridgeAgent
from ardubridge.bridge.status_app import create_app
from ardubridge.device import BoardInfo, UploadResult
from ardubridge.firmware import VirtualDevice


@pytest.fixture()
def agent(monkeypatch: pytest.MonkeyPatch) -> BridgeAgent:
    """Agent whose lifespan attaches a virtual device instead of real hardware."""
    agent = BridgeAgent("ws://relay.test/ws", bridge_id="bridge-test", settle_delay=0)

    async def fake_start() -> None:
        attach_virtual_device(agent.link, VirtualDevice(clock=FakeClock()))

    monkeypatch.setattr(agent, "start", fake_start)
    monkeypatch.setattr(agent, "stop", AsyncMock())
    return agent


@pytest.fixture()
def test_client(agent: BridgeAgent):
    with TestClient(create_app(agent)) as client:
        yield client


def test_health_and_status(test_client: TestClient) -> None:
    health = test_client.get("/health").json()
    status = test_client.get("/status").json()

    assert health["bridgeId"] == "bridge-test"
    assert health["arduinoConnected"] is True
    assert health["relayConnected"] is False
    assert status["arduino"]["port"] == "loop://"


def test_command_endpoint_drives_the_device(test_client: TestClient) -> None:
    response = test_client.post("/arduino/command", json={"command": "LED_BLINK", "params": {"rate": 100}})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["result"]["message"] == "LED blinking every 100ms"
    assert test_client.get("/status").json()["arduino"]["hardware"]["effects"]["blinking"] is True


def test_command_endpoint_maps_errors(test_client: TestClient) -> None:
    invalid = test_client.post("/arduino/command", json={"command": "SERVO_WRITE", "params": {"pin": 9, "angle": 999}})
    unknown = test_client.post("/arduino/command", json={"command": "SELF_DESTRUCT"})

    assert invalid.status_code == 422
    assert invalid.json()["detail"]["code"] == "invalid_parameter"
    assert unknown.status_code == 400
    assert unknown.json()["detail"]["message"] == "Unknown command: SELF_DESTRUCT"


def test_command_without_device_is_503(agent: BridgeAgent, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(agent, "start", AsyncMock())

    with TestClient(create_app(agent)) as client:
        response = client.post("/arduino/command", json={"command": "PING"})

    assert response.status_code == 503
    assert response.json()["detail"] == "Arduino not connected"


def test_detect_endpoint(test_client: TestClient) -> None:
    board = BoardInfo("/dev/ttyACM0", "Arduino", "2341", "0043", "Arduino Uno")

    with patch("ardubridge.bridge.status_app.detect_arduino_boards", return_value=[board]):
        found = test_client.get("/arduino/detect")
    with patch("ardubridge.bridge.status_app.detect_arduino_boards", return_value=[]):
        missing = test_client.get("/arduino/detect")

    assert found.json() == {"boards": [board.to_dict()], "count": 1}
    assert missing.status_code == 404


def test_upload_failure_reconnects_and_reports(test_client: TestClient, agent: BridgeAgent) -> None:
    reconnect = AsyncMock()

    with patch(
        "ardubridge.bridge.status_app.upload_firmware",
        AsyncMock(return_value=UploadResult(success=False, output=["error: boom"], error="Compilation failed with exit code 1")),
    ) as upload, patch.object(agent, "connect_device", reconnect):
        response = test_client.post("/arduino/upload", json={"sketchPath": "/tmp/sketch", "port": "/dev/ttyACM0"})

    assert response.status_code == 500
    assert response.json()["detail"] == "Upload failed: Compilation failed with exit code 1"
    upload.assert_awaited_once_with("/tmp/sketch", "/dev/ttyACM0", "arduino:avr:uno")
    reconnect.assert_awaited_once_with("/dev/ttyACM0")
