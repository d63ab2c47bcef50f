"""Application constants including wire protocol and timing definitions.

Centralized constants to ensure consistency across relay, bridge, and device layers.
"""

from __future__ import annotations

from enum import Enum

# ============================================================================
# Versions
# ============================================================================

BRIDGE_VERSION = "1.0.0"
RELAY_VERSION = "1.0.0"
FIRMWARE_VERSION = "1.0.0"


# ============================================================================
# Serial Protocol Constants
# ============================================================================

DEFAULT_BAUDRATE = 9600
LINE_TERMINATOR = "\n"
MAX_LINE_LENGTH = 500  # Device-side intake bound (characters)


class Command(str, Enum):
    """Symbolic command names understood by the firmware."""

    LED_ON = "LED_ON"
    LED_OFF = "LED_OFF"
    LED_BLINK = "LED_BLINK"
    LED_FADE = "LED_FADE"
    LED_MORSE = "LED_MORSE"
    LED_PATTERN = "LED_PATTERN"
    PIN_MODE = "PIN_MODE"
    DIGITAL_WRITE = "DIGITAL_WRITE"
    DIGITAL_READ = "DIGITAL_READ"
    ANALOG_WRITE = "ANALOG_WRITE"
    ANALOG_READ = "ANALOG_READ"
    SERVO_WRITE = "SERVO_WRITE"
    STOP_EFFECTS = "STOP_EFFECTS"
    RESET = "RESET"
    STATUS = "STATUS"
    PING = "PING"


class ResponseType(str, Enum):
    """Values of the ``type`` field in device responses."""

    RESULT = "result"
    READING = "reading"
    STATUS = "status"
    ERROR = "error"


# ============================================================================
# Hardware Limits
# ============================================================================

LED_PIN = 13
PWM_PINS = frozenset({3, 5, 6, 9, 10, 11})
PIN_MODES = ("INPUT", "OUTPUT", "INPUT_PULLUP")
DIGITAL_PIN_RANGE = (0, 19)
ANALOG_PIN_RANGE = (0, 5)
SERVO_PIN_RANGE = (2, 13)
SERVO_ANGLE_RANGE = (0, 180)
ANALOG_VALUE_RANGE = (0, 255)

BLINK_RATE_RANGE = (50, 5000)  # milliseconds
FADE_SPEED_RANGE = (1, 10)
MORSE_MAX_LENGTH = 50
PATTERN_MAX_LENGTH = 100

DEFAULT_BLINK_RATE = 500
DEFAULT_FADE_SPEED = 5


# ============================================================================
# Effect Timing (milliseconds)
# ============================================================================

PATTERN_STEP_MS = 100
MORSE_DOT_MS = 100
MORSE_DASH_MS = 300
MORSE_SYMBOL_GAP_MS = 100
MORSE_LETTER_GAP_MS = 300
MORSE_WORD_GAP_MS = 700
FADE_BASE_INTERVAL_MS = 100
SCHEDULER_TICK_MS = 10
STATUS_INTERVAL_MS = 5000


# ============================================================================
# Timeout Constants (seconds)
# ============================================================================

DEVICE_COMMAND_TIMEOUT = 5.0  # Bridge-to-device hop
RELAY_COMMAND_TIMEOUT = 10.0  # Relay-to-device end-to-end hop
BRIDGE_STALE_AFTER = 30.0  # Liveness threshold for registered bridges
BRIDGE_SWEEP_INTERVAL = 10.0  # How often stale bridges are swept
BRIDGE_HEARTBEAT_INTERVAL = 10.0  # Bridge-side ping cadence
RELAY_RECONNECT_DELAY = 5.0
DEVICE_SETTLE_DELAY = 1.0  # Wait after opening serial before the PING probe


# ============================================================================
# Language Model
# ============================================================================

MAX_TOOL_ROUNDS = 10
DEFAULT_MODEL = "gemini-2.0-flash"
CREDENTIAL_PREFIX = "AIza"
CREDENTIAL_MIN_LENGTH = 30
