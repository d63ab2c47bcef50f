"""Model-facing function catalog.

The language model sees a set of camelCase functions (``ledBlink``,
``servoWrite`` ...). Each one maps onto exactly one wire command; argument
names are shared with the wire parameters so the argument bag is passed
through unchanged and validated by the dispatcher.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ..constants import Command
from ..errors import UnknownCommandError
from .dispatcher import CommandDispatcher


@dataclass(slots=True, frozen=True)
class FunctionSpec:
    """One model-callable function and the wire command behind it."""

    name: str
    command: Command
    description: str
    properties: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def declaration(self) -> Dict[str, Any]:
        """Return the function declaration in the model's tool format."""
        declaration: Dict[str, Any] = {"name": self.name, "description": self.description}
        if self.properties:
            declaration["parameters"] = {
                "type": "object",
                "properties": self.properties,
                "required": list(self.required),
            }
        return declaration


def _pin(description: str) -> Dict[str, Any]:
    return {"type": "integer", "description": description}


FUNCTIONS: Dict[str, FunctionSpec] = {
    spec.name: spec
    for spec in (
        FunctionSpec("ledOn", Command.LED_ON, "Turn the Arduino LED on"),
        FunctionSpec("ledOff", Command.LED_OFF, "Turn the Arduino LED off"),
        FunctionSpec(
            "ledBlink",
            Command.LED_BLINK,
            "Make the LED blink at a specified rate",
            {
                "rate": {
                    "type": "integer",
                    "description": "Blink rate in milliseconds (50-5000). Lower values = faster blinking",
                }
            },
            ("rate",),
        ),
        FunctionSpec(
            "ledFade",
            Command.LED_FADE,
            "Make the LED fade in and out smoothly",
            {"speed": {"type": "integer", "description": "Fade speed from 1 (slow) to 10 (fast)"}},
            ("speed",),
        ),
        FunctionSpec(
            "ledMorse",
            Command.LED_MORSE,
            "Display text as morse code using the LED",
            {"text": {"type": "string", "description": "Text to display in morse code (max 50 characters)"}},
            ("text",),
        ),
        FunctionSpec(
            "ledPattern",
            Command.LED_PATTERN,
            "Display a custom on/off pattern using the LED",
            {
                "pattern": {
                    "type": "string",
                    "description": 'Pattern string using 1 for on and 0 for off (e.g. "101010"). Each digit lasts 100ms',
                }
            },
            ("pattern",),
        ),
        FunctionSpec(
            "setPinMode",
            Command.PIN_MODE,
            "Set the mode of an Arduino pin",
            {
                "pin": _pin("Pin number (0-19)"),
                "mode": {
                    "type": "string",
                    "enum": ["INPUT", "OUTPUT", "INPUT_PULLUP"],
                    "description": "Pin mode",
                },
            },
            ("pin", "mode"),
        ),
        FunctionSpec(
            "digitalWrite",
            Command.DIGITAL_WRITE,
            "Write a digital value (HIGH/LOW) to a pin",
            {
                "pin": _pin("Pin number (0-19)"),
                "value": {"type": "integer", "description": "0 for LOW, 1 for HIGH"},
            },
            ("pin", "value"),
        ),
        FunctionSpec(
            "digitalRead",
            Command.DIGITAL_READ,
            "Read a digital value from a pin",
            {"pin": _pin("Pin number (0-19)")},
            ("pin",),
        ),
        FunctionSpec(
            "analogWrite",
            Command.ANALOG_WRITE,
            "Write an analog value to a PWM pin",
            {
                "pin": _pin("PWM pin number (3, 5, 6, 9, 10, or 11)"),
                "value": {"type": "integer", "description": "Analog value (0-255)"},
            },
            ("pin", "value"),
        ),
        FunctionSpec(
            "analogRead",
            Command.ANALOG_READ,
            "Read an analog value from a pin",
            {"pin": _pin("Analog pin number (0-5)")},
            ("pin",),
        ),
        FunctionSpec(
            "servoWrite",
            Command.SERVO_WRITE,
            "Control a servo motor connected to a pin",
            {
                "pin": _pin("Pin number (2-13)"),
                "angle": {"type": "integer", "description": "Servo angle (0-180 degrees)"},
            },
            ("pin", "angle"),
        ),
        FunctionSpec("stopEffects", Command.STOP_EFFECTS, "Stop all LED effects (blinking, fading, patterns, morse)"),
        FunctionSpec(
            "resetArduino",
            Command.RESET,
            "Reset Arduino to default state and turn off all pins",
        ),
        FunctionSpec(
            "getStatus",
            Command.STATUS,
            "Get current Arduino status including pin states and sensor readings",
        ),
    )
}


def function_declarations() -> List[Dict[str, Any]]:
    """Return the declarations of every model-callable function."""
    return [spec.declaration() for spec in FUNCTIONS.values()]


def resolve_function(name: str) -> FunctionSpec:
    """Look up a model function by name.

    Raises:
        UnknownCommandError: If the model asked for a function that does not exist
    """
    spec = FUNCTIONS.get(name)
    if spec is None:
        raise UnknownCommandError(name, details={"function": name})
    return spec


async def call_function(
    dispatcher: CommandDispatcher,
    name: str,
    args: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Execute one model function call through ``dispatcher``."""
    spec = resolve_function(name)
    return await dispatcher.dispatch(spec.command, dict(args or {}))
