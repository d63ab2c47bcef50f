"""Tests for the serial device link and its line protocol."""

from __future__ import annotations

import asyncio
import json

import pytest
from conftest import FakeClock, SilentWriter, attach_virtual_device

from ardubridge.commands import CommandDispatcher
from ardubridge.device.link import DeviceLink, decode_line, encode_request
from ardubridge.errors import CommandFailedError, CommandTimeoutError, NotConnectedError
from ardubridge.firmware import VirtualDevice


def test_encode_request_is_one_compact_json_line():
    raw = encode_request("abc", "LED_BLINK", {"rate": 200})

    assert raw.endswith(b"\n")
    assert raw.count(b"\n") == 1
    assert b" " not in raw
    message = json.loads(raw)
    assert message["id"] == "abc"
    assert message["command"] == "LED_BLINK"
    assert message["params"] == {"rate": 200}
    assert isinstance(message["timestamp"], int)


def test_decode_line_variants():
    assert decode_line("   \r\n") is None
    assert decode_line("Arduino ready\r\n") == "Arduino ready"
    assert decode_line("[1, 2]") == "[1, 2]"
    assert decode_line('{"type": "status"}\n') == {"type": "status"}


@pytest.mark.asyncio
async def test_send_without_transport_fails_fast():
    link = DeviceLink()

    with pytest.raises(NotConnectedError):
        await link.send_command("PING")


@pytest.mark.asyncio
async def test_round_trip_through_virtual_device():
    link = DeviceLink()
    device = VirtualDevice(clock=FakeClock())
    writer = attach_virtual_device(link, device)

    response = await link.send_command("LED_BLINK", {"rate": 200})

    assert response["success"] is True
    assert response["id"] == writer.written[0]["id"]
    assert writer.written[0]["command"] == "LED_BLINK"
    assert device.scheduler.current == "blink"
    assert len(link.pending) == 0
    assert link.commands_processed == 1
    assert link.last_activity is not None


@pytest.mark.asyncio
async def test_device_error_reply_rejects_the_request():
    link = DeviceLink()
    device = VirtualDevice(clock=FakeClock())
    attach_virtual_device(link, device)
    await link.send_command("LED_FADE", {"speed": 3})

    with pytest.raises(CommandFailedError, match="in use by the fade effect"):
        await link.send_command("DIGITAL_WRITE", {"pin": 13, "value": 1})


@pytest.mark.asyncio
async def test_unsolicited_frames_reach_listeners():
    link = DeviceLink()
    device = VirtualDevice(clock=FakeClock())
    events = []
    link.add_listener(events.append)
    attach_virtual_device(link, device)

    await link.send_command("LED_ON")
    link.handle_line("Booting...\n")
    link.handle_line('{"id": "unknown", "success": true}\n')

    types = [event["type"] for event in events]
    assert types[0] == "arduino_connected"
    # Status frame pushed after the state change is not a command response.
    status_events = [e for e in events if e["type"] == "arduino_response" and e["data"].get("type") == "status"]
    assert status_events and status_events[0]["data"]["data"]["led"] is True
    assert events[-2]["type"] == "arduino_message"
    assert events[-2]["data"]["message"] == "Booting..."
    assert events[-1] == {"type": "arduino_response", "data": {"id": "unknown", "success": True}}


@pytest.mark.asyncio
async def test_fire_and_forget_does_not_track_a_request():
    link = DeviceLink()
    writer = SilentWriter()
    link.attach(asyncio.StreamReader(), writer, "test")

    ack = await link.send_command("LED_OFF", expect_response=False)

    assert ack["success"] is True
    assert ack["id"] == writer.written[0]["id"]
    assert len(link.pending) == 0


@pytest.mark.asyncio
async def test_missing_response_times_out():
    link = DeviceLink(timeout=0.01)
    link.attach(asyncio.StreamReader(), SilentWriter(), "test")

    with pytest.raises(CommandTimeoutError):
        await link.send_command("PING")
    assert len(link.pending) == 0


@pytest.mark.asyncio
async def test_disconnect_rejects_outstanding_requests():
    link = DeviceLink(timeout=5.0)
    events = []
    link.add_listener(events.append)
    link.attach(asyncio.StreamReader(), SilentWriter(), "test")

    request = asyncio.create_task(link.send_command("STATUS"))
    await asyncio.sleep(0)
    assert len(link.pending) == 1

    await link.disconnect()

    with pytest.raises(NotConnectedError):
        await request
    assert not link.is_connected
    assert events[-1] == {"type": "arduino_disconnected", "data": {"port": "test"}}


@pytest.mark.asyncio
async def test_write_failure_reports_not_connected():
    class BrokenWriter(SilentWriter):
        def write(self, data: bytes) -> None:
            raise OSError("device unplugged")

    link = DeviceLink()
    link.attach(asyncio.StreamReader(), BrokenWriter(), "test")

    with pytest.raises(NotConnectedError, match="Failed to send command"):
        await link.send_command("PING")
    assert len(link.pending) == 0


@pytest.mark.asyncio
async def test_read_loop_feeds_lines_and_detects_eof():
    link = DeviceLink()
    events = []
    link.add_listener(events.append)
    reader = asyncio.StreamReader()
    link.attach(reader, SilentWriter(), "test")

    reader.feed_data(b"hello from the board\n")
    reader.feed_eof()
    for _ in range(5):
        await asyncio.sleep(0)

    types = [event["type"] for event in events]
    assert types == ["arduino_connected", "arduino_message", "arduino_disconnected"]
    assert not link.is_connected


@pytest.mark.asyncio
async def test_dispatcher_mirror_follows_device_replies():
    link = DeviceLink()
    device = VirtualDevice(clock=FakeClock())
    device.set_analog_input(2, 512)
    attach_virtual_device(link, device)
    dispatcher = CommandDispatcher(link)

    await dispatcher.led_morse("sos")
    reading = await dispatcher.analog_read(2)

    assert reading["value"] == 512
    assert dispatcher.state.effects["morse"] is True
    assert dispatcher.state.sensors["A2"] == 512
    assert device.scheduler.text == "SOS"
