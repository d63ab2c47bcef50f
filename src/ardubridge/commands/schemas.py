"""Argument schemas for the command catalog.

Every wire command has one pydantic model describing its parameters. The
models both validate and normalise (Morse text is upper-cased and truncated,
bit patterns are stripped to 0/1), so the dictionary dumped from a validated
model is exactly what goes on the wire.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Literal, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..constants import (
    ANALOG_PIN_RANGE,
    ANALOG_VALUE_RANGE,
    BLINK_RATE_RANGE,
    DEFAULT_BLINK_RATE,
    DEFAULT_FADE_SPEED,
    DIGITAL_PIN_RANGE,
    FADE_SPEED_RANGE,
    MORSE_MAX_LENGTH,
    PATTERN_MAX_LENGTH,
    PWM_PINS,
    SERVO_ANGLE_RANGE,
    SERVO_PIN_RANGE,
    Command,
)

PinModeName = Literal["INPUT", "OUTPUT", "INPUT_PULLUP"]

_NON_BINARY = re.compile(r"[^01]")


class CommandParams(BaseModel):
    """Base for all parameter models; unknown keys are rejected."""

    model_config = ConfigDict(extra="forbid")


class NoParams(CommandParams):
    """Commands that take no parameters."""


class BlinkParams(CommandParams):
    rate: int = Field(default=DEFAULT_BLINK_RATE, ge=BLINK_RATE_RANGE[0], le=BLINK_RATE_RANGE[1])


class FadeParams(CommandParams):
    speed: int = Field(default=DEFAULT_FADE_SPEED, ge=FADE_SPEED_RANGE[0], le=FADE_SPEED_RANGE[1])


class MorseParams(CommandParams):
    text: str

    @field_validator("text", mode="before")
    @classmethod
    def normalise_text(cls, value: Any) -> str:
        """Truncate to the Morse length limit and fold to upper case."""
        if not isinstance(value, str):
            raise ValueError("Morse text must be a string")
        text = value[:MORSE_MAX_LENGTH].upper()
        if not text.strip():
            raise ValueError("Morse text must not be empty")
        return text


class PatternParams(CommandParams):
    pattern: str

    @field_validator("pattern", mode="before")
    @classmethod
    def normalise_pattern(cls, value: Any) -> str:
        """Drop every character other than 0/1 and truncate."""
        if isinstance(value, int) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str):
            raise ValueError("Pattern must be a string of 0 and 1")
        pattern = _NON_BINARY.sub("", value)[:PATTERN_MAX_LENGTH]
        if not pattern:
            raise ValueError("Pattern must contain at least one 0 or 1")
        return pattern


class PinModeParams(CommandParams):
    pin: int = Field(ge=DIGITAL_PIN_RANGE[0], le=DIGITAL_PIN_RANGE[1])
    mode: PinModeName

    @field_validator("mode", mode="before")
    @classmethod
    def upper_mode(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class DigitalWriteParams(CommandParams):
    pin: int = Field(ge=DIGITAL_PIN_RANGE[0], le=DIGITAL_PIN_RANGE[1])
    value: int = Field(ge=0, le=1)


class DigitalReadParams(CommandParams):
    pin: int = Field(ge=DIGITAL_PIN_RANGE[0], le=DIGITAL_PIN_RANGE[1])


class AnalogWriteParams(CommandParams):
    pin: int
    value: int = Field(ge=ANALOG_VALUE_RANGE[0], le=ANALOG_VALUE_RANGE[1])

    @field_validator("pin")
    @classmethod
    def pwm_capable(cls, value: int) -> int:
        """Only PWM-capable pins accept analog writes."""
        if value not in PWM_PINS:
            raise ValueError(f"Pin {value} is not PWM capable (use one of {sorted(PWM_PINS)})")
        return value


class AnalogReadParams(CommandParams):
    pin: int = Field(ge=ANALOG_PIN_RANGE[0], le=ANALOG_PIN_RANGE[1])


class ServoWriteParams(CommandParams):
    pin: int = Field(ge=SERVO_PIN_RANGE[0], le=SERVO_PIN_RANGE[1])
    angle: int = Field(ge=SERVO_ANGLE_RANGE[0], le=SERVO_ANGLE_RANGE[1])


COMMAND_SCHEMAS: Dict[Command, Type[CommandParams]] = {
    Command.LED_ON: NoParams,
    Command.LED_OFF: NoParams,
    Command.LED_BLINK: BlinkParams,
    Command.LED_FADE: FadeParams,
    Command.LED_MORSE: MorseParams,
    Command.LED_PATTERN: PatternParams,
    Command.PIN_MODE: PinModeParams,
    Command.DIGITAL_WRITE: DigitalWriteParams,
    Command.DIGITAL_READ: DigitalReadParams,
    Command.ANALOG_WRITE: AnalogWriteParams,
    Command.ANALOG_READ: AnalogReadParams,
    Command.SERVO_WRITE: ServoWriteParams,
    Command.STOP_EFFECTS: NoParams,
    Command.RESET: NoParams,
    Command.STATUS: NoParams,
    Command.PING: NoParams,
}
