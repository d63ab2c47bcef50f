"""Tests for command validation and dispatch."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from ardubridge.commands import CommandDispatcher, validate_command
from ardubridge.constants import Command
from ardubridge.errors import ErrorCode, InvalidParameterError, UnknownCommandError


@pytest.fixture
def link() -> AsyncMock:
    mock = AsyncMock()
    mock.send_command.return_value = {"success": True, "type": "result"}
    return mock


@pytest.mark.parametrize(
    ("command", "params"),
    [
        ("LED_BLINK", {"rate": 50}),
        ("LED_BLINK", {"rate": 5000}),
        ("LED_FADE", {"speed": 1}),
        ("LED_FADE", {"speed": 10}),
        ("PIN_MODE", {"pin": 0, "mode": "OUTPUT"}),
        ("PIN_MODE", {"pin": 19, "mode": "INPUT_PULLUP"}),
        ("DIGITAL_WRITE", {"pin": 7, "value": 0}),
        ("ANALOG_WRITE", {"pin": 3, "value": 255}),
        ("ANALOG_READ", {"pin": 5}),
        ("SERVO_WRITE", {"pin": 2, "angle": 0}),
        ("SERVO_WRITE", {"pin": 13, "angle": 180}),
    ],
)
def test_boundary_values_are_accepted(command, params):
    resolved, clean = validate_command(command, params)

    assert resolved is Command(command)
    assert clean == params


@pytest.mark.parametrize(
    ("command", "params"),
    [
        ("LED_BLINK", {"rate": 49}),
        ("LED_BLINK", {"rate": 5001}),
        ("LED_FADE", {"speed": 0}),
        ("LED_FADE", {"speed": 11}),
        ("PIN_MODE", {"pin": 20, "mode": "OUTPUT"}),
        ("PIN_MODE", {"pin": 4, "mode": "ANALOG"}),
        ("DIGITAL_WRITE", {"pin": 7, "value": 2}),
        ("DIGITAL_READ", {"pin": -1}),
        ("ANALOG_WRITE", {"pin": 4, "value": 100}),
        ("ANALOG_WRITE", {"pin": 3, "value": 256}),
        ("ANALOG_READ", {"pin": 6}),
        ("SERVO_WRITE", {"pin": 1, "angle": 90}),
        ("SERVO_WRITE", {"pin": 9, "angle": 181}),
        ("SERVO_WRITE", {"pin": 9}),
        ("LED_ON", {"unexpected": 1}),
        ("LED_MORSE", {"text": "   "}),
        ("LED_PATTERN", {"pattern": "abc"}),
    ],
)
def test_out_of_range_values_are_rejected(command, params):
    with pytest.raises(InvalidParameterError) as excinfo:
        validate_command(command, params)

    assert excinfo.value.code is ErrorCode.INVALID_PARAMETER
    assert excinfo.value.details["command"] == command
    assert excinfo.value.details["errors"]


def test_defaults_fill_optional_parameters():
    assert validate_command("LED_BLINK", {}) == (Command.LED_BLINK, {"rate": 500})
    assert validate_command("LED_FADE", None) == (Command.LED_FADE, {"speed": 5})


def test_text_parameters_are_normalised():
    _, morse = validate_command("LED_MORSE", {"text": "hello world " * 10})
    _, pattern = validate_command("LED_PATTERN", {"pattern": "1 0-1x1" + "10" * 80})
    _, numeric = validate_command("LED_PATTERN", {"pattern": 1010})
    _, mode = validate_command("PIN_MODE", {"pin": 4, "mode": "output"})

    assert morse["text"] == ("HELLO WORLD " * 10)[:50]
    assert pattern["pattern"].startswith("1011")
    assert len(pattern["pattern"]) == 100
    assert set(pattern["pattern"]) <= {"0", "1"}
    assert numeric["pattern"] == "1010"
    assert mode["mode"] == "OUTPUT"


def test_unknown_command_is_rejected():
    with pytest.raises(UnknownCommandError) as excinfo:
        validate_command("LED_EXPLODE", {})

    assert excinfo.value.to_dict() == {
        "code": "unknown_command",
        "message": "Unknown command: LED_EXPLODE",
        "details": {"command": "LED_EXPLODE"},
    }


def test_params_must_be_an_object():
    with pytest.raises(InvalidParameterError, match="expected an object"):
        validate_command("LED_BLINK", [500])


@pytest.mark.asyncio
async def test_invalid_command_never_reaches_the_link(link: AsyncMock):
    dispatcher = CommandDispatcher(link)

    with pytest.raises(InvalidParameterError):
        await dispatcher.servo_write(9, 200)

    link.send_command.assert_not_awaited()
    assert dispatcher.state.pins == {}


@pytest.mark.asyncio
async def test_dispatch_sends_normalised_params_and_updates_mirror(link: AsyncMock):
    dispatcher = CommandDispatcher(link)

    await dispatcher.led_morse("sos")
    await dispatcher.servo_write(9, 90)

    link.send_command.assert_any_await("LED_MORSE", {"text": "SOS"}, True)
    link.send_command.assert_any_await("SERVO_WRITE", {"pin": 9, "angle": 90}, True)
    assert dispatcher.state.effects["morse"] is True
    assert dispatcher.state.pins[9] == {"servoAngle": 90}


@pytest.mark.asyncio
async def test_convenience_methods_map_onto_commands(link: AsyncMock):
    dispatcher = CommandDispatcher(link)

    await dispatcher.led_on()
    await dispatcher.led_blink()
    await dispatcher.set_pin_mode(7, "INPUT")
    await dispatcher.digital_write(7, 1)
    await dispatcher.analog_write(5, 128)
    await dispatcher.stop_effects()
    await dispatcher.ping()

    sent = [call.args[0] for call in link.send_command.await_args_list]
    assert sent == ["LED_ON", "LED_BLINK", "PIN_MODE", "DIGITAL_WRITE", "ANALOG_WRITE", "STOP_EFFECTS", "PING"]
    assert dispatcher.state.pins[7] == {"mode": "INPUT", "digitalValue": 1}
    assert dispatcher.state.pins[5] == {"analogValue": 128}
    assert not any(dispatcher.state.effects.values())
