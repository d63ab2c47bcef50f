"""Host-side mirror of the device's hardware state."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping

from ..constants import Command

EFFECT_KINDS = ("blinking", "fading", "pattern", "morse", "rainbow")

# Which effect flag each effect command raises.
EFFECT_FLAGS = {
    Command.LED_BLINK: "blinking",
    Command.LED_FADE: "fading",
    Command.LED_PATTERN: "pattern",
    Command.LED_MORSE: "morse",
}


def _idle_effects() -> Dict[str, bool]:
    return {kind: False for kind in EFFECT_KINDS}


def _pin_key(key: Any) -> Any:
    if isinstance(key, str) and key.isdigit():
        return int(key)
    return key


@dataclass(slots=True)
class HardwareState:
    """Last known LED, pin, sensor and effect state of one device.

    Updated after every successful dispatch and merged from unsolicited
    status frames, so status can be reported without a device round-trip.
    """

    led: bool = False
    pins: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    sensors: Dict[str, Any] = field(default_factory=dict)
    effects: Dict[str, bool] = field(default_factory=_idle_effects)

    def clear_effects(self) -> None:
        self.effects = _idle_effects()

    def reset(self) -> None:
        self.led = False
        self.pins = {}
        self.sensors = {}
        self.clear_effects()

    def _pin(self, pin: int) -> Dict[str, Any]:
        return self.pins.setdefault(pin, {})

    def apply(self, command: Command, params: Mapping[str, Any], result: Any = None) -> None:
        """Record the effect of a successfully dispatched command."""
        if command is Command.LED_ON:
            self.led = True
            self.clear_effects()
        elif command is Command.LED_OFF:
            self.led = False
            self.clear_effects()
        elif command in EFFECT_FLAGS:
            self.clear_effects()
            self.effects[EFFECT_FLAGS[command]] = True
        elif command is Command.STOP_EFFECTS:
            self.clear_effects()
        elif command is Command.RESET:
            self.reset()
        elif command is Command.PIN_MODE:
            self._pin(params["pin"])["mode"] = params["mode"]
        elif command is Command.DIGITAL_WRITE:
            self._pin(params["pin"])["digitalValue"] = params["value"]
        elif command is Command.ANALOG_WRITE:
            self._pin(params["pin"])["analogValue"] = params["value"]
        elif command is Command.SERVO_WRITE:
            self._pin(params["pin"])["servoAngle"] = params["angle"]
        elif command in (Command.DIGITAL_READ, Command.ANALOG_READ):
            if isinstance(result, Mapping) and "value" in result:
                prefix = "A" if command is Command.ANALOG_READ else "D"
                self.sensors[f"{prefix}{params['pin']}"] = result["value"]
        elif command is Command.STATUS:
            if isinstance(result, Mapping) and isinstance(result.get("data"), Mapping):
                self.merge_status(result["data"])

    def merge_status(self, data: Mapping[str, Any]) -> None:
        """Merge a device status payload into the mirror.

        Keys missing from ``data`` keep their current value.
        """
        if "led" in data:
            self.led = bool(data["led"])
        pins = data.get("pins")
        if isinstance(pins, Mapping):
            for key, value in pins.items():
                if isinstance(value, Mapping):
                    self._pin(_pin_key(key)).update(value)
        sensors = data.get("sensors")
        if isinstance(sensors, Mapping):
            self.sensors.update(sensors)
        effects = data.get("effects")
        if isinstance(effects, Mapping):
            for kind, active in effects.items():
                self.effects[kind] = bool(active)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "led": self.led,
            "pins": {str(pin): dict(record) for pin, record in self.pins.items()},
            "sensors": dict(self.sensors),
            "effects": dict(self.effects),
        }
