"""Tests for the simulated board and its TCP server."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import FakeClock

from ardubridge.commands import CommandDispatcher
from ardubridge.device import DeviceLink
from ardubridge.firmware import DeviceSimulator, LineIntake, VirtualDevice


def _command(request_id: str, command: str, **params) -> str:
    return json.dumps({"id": request_id, "command": command, "params": params}) + "\n"


@pytest.fixture
def device() -> VirtualDevice:
    return VirtualDevice(clock=FakeClock(1000))


def _responses(device: VirtualDevice) -> list:
    return [frame for frame in device.outbox if frame.get("type") != "status" or "id" in frame]


def test_intake_accepts_lines_up_to_the_limit():
    intake = LineIntake(max_length=500)

    assert intake.feed("a" * 500 + "\r\n") == ["a" * 500]


def test_intake_discards_overlong_lines_and_recovers():
    intake = LineIntake(max_length=500)

    assert intake.feed("x" * 400) == []
    assert intake.feed("x" * 200 + "\nok\n") == [None, "ok"]
    assert len(intake) == 0


def test_overlong_command_reports_an_error(device: VirtualDevice):
    device.feed("{" + " " * 600 + "}\n")

    frame = device.outbox[-1]
    assert frame["success"] is False
    assert frame["id"] is None
    assert frame["message"] == "Command too long (max 500 characters)"


def test_invalid_json_reports_an_error(device: VirtualDevice):
    device.feed("LED_ON\n")

    assert device.outbox[-1]["message"] == "Invalid JSON"
    assert device.outbox[-1]["type"] == "error"


def test_unknown_command_and_bad_params(device: VirtualDevice):
    device.feed(_command("1", "LED_EXPLODE"))
    device.feed(_command("2", "SERVO_WRITE", pin=9, angle=200))

    unknown, invalid = list(device.outbox)
    assert unknown["id"] == "1"
    assert unknown["message"] == "Unknown command: LED_EXPLODE"
    assert invalid["id"] == "2"
    assert invalid["success"] is False
    assert "angle" in invalid["message"]
    assert device.pins == {}


def test_state_changes_push_a_status_frame(device: VirtualDevice):
    device.feed(_command("1", "LED_ON"))

    response, status = list(device.outbox)
    assert response == {
        "id": "1",
        "success": True,
        "message": "LED on",
        "type": "result",
        "timestamp": 1000,
    }
    assert status["type"] == "status"
    assert status["data"]["led"] is True
    assert status["data"]["ledBrightness"] == 255
    assert status["data"]["firmwareVersion"] == "1.0.0"


def test_reads_return_readings_without_status(device: VirtualDevice):
    device.set_analog_input(3, 777)
    device.feed(_command("1", "ANALOG_READ", pin=3))
    device.feed(_command("2", "PIN_MODE", pin=4, mode="INPUT_PULLUP"))
    device.feed(_command("3", "DIGITAL_READ", pin=4))

    frames = _responses(device)
    assert frames[0]["type"] == "reading"
    assert frames[0]["value"] == 777
    assert frames[0]["pin"] == 3
    assert frames[-1]["value"] == 1
    # Only PIN_MODE changes state.
    assert sum(1 for frame in device.outbox if frame["type"] == "status") == 1


def test_output_pin_reads_back_written_value(device: VirtualDevice):
    device.feed(_command("1", "PIN_MODE", pin=7, mode="OUTPUT"))
    device.feed(_command("2", "DIGITAL_WRITE", pin=7, value=1))
    device.feed(_command("3", "DIGITAL_READ", pin=7))

    assert device.outbox[-1]["value"] == 1


def test_digital_write_to_led_pin_drives_the_led(device: VirtualDevice):
    device.feed(_command("1", "DIGITAL_WRITE", pin=13, value=1))

    assert device.scheduler.is_high
    device.feed(_command("2", "DIGITAL_READ", pin=13))
    assert device.outbox[-1]["value"] == 1


def test_led_pin_is_refused_while_an_effect_runs(device: VirtualDevice):
    device.feed(_command("1", "LED_BLINK", rate=100))
    device.feed(_command("2", "SERVO_WRITE", pin=13, angle=90))

    refused = device.outbox[-1]
    assert refused["id"] == "2"
    assert refused["success"] is False
    assert "blink" in refused["message"]
    assert 13 not in device.pins


def test_status_and_ping(device: VirtualDevice):
    device.feed(_command("1", "STATUS"))
    device.feed(_command("2", "PING"))

    status, pong = list(device.outbox)
    assert status["type"] == "status"
    assert status["success"] is True
    assert set(status["data"]["sensors"]) == {"A0", "A1", "A2", "A3", "A4", "A5"}
    assert pong["message"] == "pong"


def test_reset_stops_effects_and_clears_pins(device: VirtualDevice):
    device.set_analog_input(0, 42)
    device.feed(_command("1", "LED_FADE", speed=2))
    device.feed(_command("2", "ANALOG_WRITE", pin=3, value=10))
    device.feed(_command("3", "RESET"))

    assert device.pins == {}
    assert not device.scheduler.active
    assert device.scheduler.level == 0
    assert device.analog_inputs[0] == 42


def test_poll_pushes_periodic_status():
    clock = FakeClock(0)
    device = VirtualDevice(clock=clock, status_interval=5000)
    device.feed(_command("1", "LED_BLINK", rate=1000))
    device.outbox.clear()

    clock.advance(4999)
    device.poll()
    assert not device.outbox

    clock.advance(1)
    device.poll()
    status = device.outbox[-1]
    assert status["type"] == "status"
    assert status["data"]["effects"]["blinking"] is True
    assert status["data"]["uptime"] == 5000


@pytest.mark.asyncio
async def test_link_talks_to_simulator_over_tcp():
    simulator = DeviceSimulator(host="127.0.0.1", port=0, tick_ms=5)
    await simulator.start()
    link = DeviceLink(timeout=2.0)
    try:
        host, port = simulator.address
        reader, writer = await asyncio.open_connection(host, port)
        link.attach(reader, writer, f"socket://{host}:{port}")
        dispatcher = CommandDispatcher(link)

        pong = await dispatcher.ping()
        await dispatcher.led_pattern("1100")
        status = await dispatcher.status()

        assert pong["message"] == "pong"
        assert status["data"]["effects"]["pattern"] is True
        assert dispatcher.state.effects["pattern"] is True
    finally:
        await link.disconnect()
        await simulator.stop()
