"""Virtual microcontroller speaking the serial line protocol.

:class:`VirtualDevice` is a faithful host-side rendition of the board
firmware: characters are buffered into bounded lines, each line is parsed as
a JSON command, validated against the command catalog and applied to the
simulated pins and the :class:`~ardubridge.firmware.effects.EffectScheduler`.
It is driven by :meth:`VirtualDevice.feed` (inbound bytes) and
:meth:`VirtualDevice.poll` (the firmware main loop body).
"""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from ..commands.dispatcher import validate_command
from ..constants import (
    ANALOG_PIN_RANGE,
    FIRMWARE_VERSION,
    LED_PIN,
    MAX_LINE_LENGTH,
    STATUS_INTERVAL_MS,
    Command,
    ResponseType,
)
from ..errors import ArduBridgeError
from .effects import EffectScheduler

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
FrameSink = Callable[[Dict[str, Any]], None]

# Commands after which an unsolicited status frame is pushed.
STATE_CHANGING = frozenset(
    {
        Command.LED_ON,
        Command.LED_OFF,
        Command.LED_BLINK,
        Command.LED_FADE,
        Command.LED_MORSE,
        Command.LED_PATTERN,
        Command.PIN_MODE,
        Command.DIGITAL_WRITE,
        Command.ANALOG_WRITE,
        Command.SERVO_WRITE,
        Command.STOP_EFFECTS,
        Command.RESET,
    }
)

# Commands that touch a pin directly and must not fight a running effect.
PIN_WRITES = frozenset({Command.PIN_MODE, Command.DIGITAL_WRITE, Command.ANALOG_WRITE, Command.SERVO_WRITE})


def _monotonic_ms() -> int:
    return int(time.monotonic() * 1000)


class LineIntake:
    """Assembles characters into lines, bounded by ``max_length``.

    A line longer than the bound is discarded up to its terminating newline
    and reported as ``None``.
    """

    def __init__(self, max_length: int = MAX_LINE_LENGTH) -> None:
        self.max_length = max_length
        self._buffer: List[str] = []
        self._overflow = False

    def __len__(self) -> int:
        return len(self._buffer)

    def feed(self, data: str) -> List[Optional[str]]:
        completed: List[Optional[str]] = []
        for char in data:
            if char == "\n":
                completed.append(None if self._overflow else "".join(self._buffer))
                self._buffer.clear()
                self._overflow = False
            elif char == "\r" or self._overflow:
                continue
            elif len(self._buffer) >= self.max_length:
                self._buffer.clear()
                self._overflow = True
            else:
                self._buffer.append(char)
        return completed


class VirtualDevice:
    """Simulated board: pins, analog inputs, LED effects and command intake."""

    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        output: Optional[FrameSink] = None,
        status_interval: int = STATUS_INTERVAL_MS,
    ) -> None:
        """Create a freshly booted device.

        Args:
            clock: Millisecond clock; defaults to the monotonic clock
            output: Called with every outbound frame
            status_interval: Milliseconds between unsolicited status frames
        """
        self._clock = clock or _monotonic_ms
        self.output = output
        self.status_interval = status_interval
        self.boot_time = self._clock()
        self.last_status = self.boot_time
        self.scheduler = EffectScheduler()
        self.intake = LineIntake()
        self.pins: Dict[int, Dict[str, Any]] = {}
        self.analog_inputs: List[int] = [0] * (ANALOG_PIN_RANGE[1] + 1)
        self.digital_inputs: Dict[int, int] = {}
        self.commands_handled = 0
        self.outbox: Deque[Dict[str, Any]] = deque(maxlen=256)

    def now(self) -> int:
        return self._clock()

    @property
    def uptime(self) -> int:
        return self.now() - self.boot_time

    def _send(self, frame: Dict[str, Any]) -> None:
        self.outbox.append(frame)
        if self.output is not None:
            self.output(frame)

    # Environment hooks --------------------------------------------------

    def set_analog_input(self, pin: int, value: int) -> None:
        """Set the raw reading returned for analog input ``pin``."""
        self.analog_inputs[pin] = value

    def set_digital_input(self, pin: int, value: int) -> None:
        self.digital_inputs[pin] = 1 if value else 0

    # Main loop ----------------------------------------------------------

    def feed(self, data: str) -> None:
        """Feed raw characters received on the serial port."""
        for line in self.intake.feed(data):
            if line is None:
                logger.warning("Discarded command line longer than %d characters", self.intake.max_length)
                self._send(self._error(None, f"Command too long (max {self.intake.max_length} characters)"))
                continue
            if line.strip():
                self.handle_line(line)

    def poll(self) -> None:
        """One iteration of the firmware loop: advance effects, push status."""
        now = self.now()
        self.scheduler.tick(now)
        if now - self.last_status >= self.status_interval:
            self.send_status()

    def send_status(self) -> None:
        self.last_status = self.now()
        self._send({"type": ResponseType.STATUS.value, "data": self.status_data(), "timestamp": self.last_status})

    def status_data(self) -> Dict[str, Any]:
        return {
            "led": self.scheduler.is_high,
            "ledBrightness": self.scheduler.level,
            "pins": {str(pin): dict(record) for pin, record in self.pins.items()},
            "sensors": {f"A{pin}": value for pin, value in enumerate(self.analog_inputs)},
            "effects": self.scheduler.flags(),
            "uptime": self.uptime,
            "firmwareVersion": FIRMWARE_VERSION,
        }

    # Command handling ---------------------------------------------------

    def _error(self, request_id: Optional[str], message: str) -> Dict[str, Any]:
        return {
            "id": request_id,
            "success": False,
            "message": message,
            "type": ResponseType.ERROR.value,
            "timestamp": self.now(),
        }

    def _result(self, request_id: Optional[str], message: str, **extra: Any) -> Dict[str, Any]:
        frame = {
            "id": request_id,
            "success": True,
            "message": message,
            "type": ResponseType.RESULT.value,
            "timestamp": self.now(),
        }
        frame.update(extra)
        return frame

    def handle_line(self, line: str) -> None:
        """Parse and execute one complete command line."""
        try:
            message = json.loads(line)
        except json.JSONDecodeError:
            self._send(self._error(None, "Invalid JSON"))
            return
        if not isinstance(message, dict):
            self._send(self._error(None, "Invalid JSON"))
            return

        request_id = message.get("id")
        request_id = str(request_id) if request_id is not None else None
        try:
            command, params = validate_command(message.get("command"), message.get("params"))
            if command in PIN_WRITES and params.get("pin") == LED_PIN and self.scheduler.active:
                raise _Refused(f"LED pin {LED_PIN} is in use by the {self.scheduler.current} effect")
            response = self.execute(command, params, request_id)
        except ArduBridgeError as exc:
            self._send(self._error(request_id, exc.message))
            return
        except _Refused as exc:
            self._send(self._error(request_id, str(exc)))
            return

        self.commands_handled += 1
        self._send(response)
        if command in STATE_CHANGING:
            self.send_status()

    def _pin(self, pin: int) -> Dict[str, Any]:
        return self.pins.setdefault(pin, {})

    def execute(self, command: Command, params: Dict[str, Any], request_id: Optional[str]) -> Dict[str, Any]:
        """Apply a validated command and build its response frame."""
        now = self.now()
        scheduler = self.scheduler
        if command is Command.LED_ON:
            scheduler.set_led(True)
            return self._result(request_id, "LED on")
        if command is Command.LED_OFF:
            scheduler.set_led(False)
            return self._result(request_id, "LED off")
        if command is Command.LED_BLINK:
            scheduler.start_blink(params["rate"], now)
            return self._result(request_id, f"LED blinking every {params['rate']}ms")
        if command is Command.LED_FADE:
            scheduler.start_fade(params["speed"], now)
            return self._result(request_id, f"LED fading at speed {params['speed']}")
        if command is Command.LED_MORSE:
            scheduler.start_morse(params["text"], now)
            return self._result(request_id, f"Morse: {params['text']}")
        if command is Command.LED_PATTERN:
            scheduler.start_pattern(params["pattern"], now)
            return self._result(request_id, f"Pattern: {params['pattern']}")
        if command is Command.PIN_MODE:
            self._pin(params["pin"])["mode"] = params["mode"]
            return self._result(request_id, f"Pin {params['pin']} set to {params['mode']}")
        if command is Command.DIGITAL_WRITE:
            self._pin(params["pin"])["digitalValue"] = params["value"]
            if params["pin"] == LED_PIN:
                scheduler.set_led(bool(params["value"]))
            state = "HIGH" if params["value"] else "LOW"
            return self._result(request_id, f"Pin {params['pin']} set {state}")
        if command is Command.DIGITAL_READ:
            value = self._digital_value(params["pin"])
            return self._reading(request_id, params["pin"], value)
        if command is Command.ANALOG_WRITE:
            self._pin(params["pin"])["analogValue"] = params["value"]
            return self._result(request_id, f"Pin {params['pin']} PWM {params['value']}")
        if command is Command.ANALOG_READ:
            return self._reading(request_id, params["pin"], self.analog_inputs[params["pin"]])
        if command is Command.SERVO_WRITE:
            self._pin(params["pin"])["servoAngle"] = params["angle"]
            return self._result(request_id, f"Servo on pin {params['pin']} at {params['angle']} degrees")
        if command is Command.STOP_EFFECTS:
            scheduler.stop_all()
            return self._result(request_id, "All effects stopped")
        if command is Command.RESET:
            scheduler.stop_all()
            self.pins.clear()
            return self._result(request_id, "Arduino reset")
        if command is Command.STATUS:
            frame = self._result(request_id, "Status", data=self.status_data())
            frame["type"] = ResponseType.STATUS.value
            return frame
        if command is Command.PING:
            return self._result(request_id, "pong")
        raise _Refused(f"Unsupported command: {command.value}")

    def _digital_value(self, pin: int) -> int:
        if pin == LED_PIN:
            return 1 if self.scheduler.is_high else 0
        record = self.pins.get(pin, {})
        mode = record.get("mode")
        if mode == "OUTPUT" and "digitalValue" in record:
            return record["digitalValue"]
        default = 1 if mode == "INPUT_PULLUP" else 0
        return self.digital_inputs.get(pin, default)

    def _reading(self, request_id: Optional[str], pin: int, value: int) -> Dict[str, Any]:
        frame = self._result(request_id, f"Pin {pin} reads {value}", value=value, pin=pin)
        frame["type"] = ResponseType.READING.value
        return frame


class _Refused(Exception):
    """Command refused by the device itself."""
