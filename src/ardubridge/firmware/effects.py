"""Cooperative effect scheduler for the single indicator LED.

The scheduler never sleeps. The owner calls :meth:`EffectScheduler.tick` with
the current time in milliseconds from a polling loop, and the scheduler
advances whichever effect is active. All effects drive the same LED, so
starting one effect supersedes any other and explicit on/off stops them all.

Morse and bit patterns are both expressed as a cyclic timeline of
``(level, duration_ms)`` steps; blink and fade are simple periodic counters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..constants import (
    FADE_BASE_INTERVAL_MS,
    MORSE_DASH_MS,
    MORSE_DOT_MS,
    MORSE_LETTER_GAP_MS,
    MORSE_SYMBOL_GAP_MS,
    MORSE_WORD_GAP_MS,
    PATTERN_STEP_MS,
)

logger = logging.getLogger(__name__)

HIGH = 255
LOW = 0

MORSE_CODE: Dict[str, str] = {
    "A": ".-",
    "B": "-...",
    "C": "-.-.",
    "D": "-..",
    "E": ".",
    "F": "..-.",
    "G": "--.",
    "H": "....",
    "I": "..",
    "J": ".---",
    "K": "-.-",
    "L": ".-..",
    "M": "--",
    "N": "-.",
    "O": "---",
    "P": ".--.",
    "Q": "--.-",
    "R": ".-.",
    "S": "...",
    "T": "-",
    "U": "..-",
    "V": "...-",
    "W": ".--",
    "X": "-..-",
    "Y": "-.--",
    "Z": "--..",
}

Step = Tuple[bool, int]

# Effect selector -> flag name reported in status frames.
EFFECT_FLAGS = {
    "blink": "blinking",
    "fade": "fading",
    "pattern": "pattern",
    "morse": "morse",
    "rainbow": "rainbow",
}


def morse_timeline(text: str) -> List[Step]:
    """Encode ``text`` as a cyclic list of ``(on, duration_ms)`` steps.

    Letters are separated by the letter gap, words (spaces) by the word gap.
    Characters outside A-Z and space are skipped; repeated spaces collapse.
    The final step is the gap that precedes the restart of the message.

    Example:
        >>> morse_timeline("E")
        [(True, 100), (False, 300)]
    """
    steps: List[Step] = []
    for char in text.upper():
        if char == " ":
            if steps:
                steps[-1] = (False, MORSE_WORD_GAP_MS)
            continue
        code = MORSE_CODE.get(char)
        if code is None:
            continue
        for index, symbol in enumerate(code):
            steps.append((True, MORSE_DOT_MS if symbol == "." else MORSE_DASH_MS))
            last = index == len(code) - 1
            steps.append((False, MORSE_LETTER_GAP_MS if last else MORSE_SYMBOL_GAP_MS))
    return steps


def pattern_timeline(pattern: str) -> List[Step]:
    """Expand a 0/1 string into one 100 ms step per character."""
    return [(char == "1", PATTERN_STEP_MS) for char in pattern if char in "01"]


@dataclass(slots=True)
class _Timeline:
    steps: List[Step]
    index: int = 0
    step_started: int = 0

    def level(self) -> int:
        if not self.steps:
            return LOW
        return HIGH if self.steps[self.index][0] else LOW

    def advance(self, now: int) -> bool:
        """Move past every step that has elapsed; True if the step changed."""
        if not self.steps:
            return False
        changed = False
        while now - self.step_started >= self.steps[self.index][1]:
            self.step_started += self.steps[self.index][1]
            self.index = (self.index + 1) % len(self.steps)
            changed = True
        return changed


@dataclass(slots=True)
class EffectScheduler:
    """Advances the active LED effect on each tick."""

    level: int = LOW
    current: Optional[str] = None
    blink_rate: int = 0
    next_toggle: int = 0
    fade_speed: int = 0
    fade_direction: int = 1
    fade_interval: int = 0
    next_fade: int = 0
    timeline: Optional[_Timeline] = field(default=None, repr=False)
    text: str = ""

    @property
    def active(self) -> bool:
        """True while an effect owns the LED."""
        return self.current is not None

    @property
    def is_high(self) -> bool:
        return self.level > LOW

    def flags(self) -> Dict[str, bool]:
        """Per-kind active flags as reported in status frames."""
        return {flag: self.current == kind for kind, flag in EFFECT_FLAGS.items()}

    def _clear(self) -> None:
        self.current = None
        self.blink_rate = 0
        self.next_toggle = 0
        self.fade_speed = 0
        self.fade_direction = 1
        self.fade_interval = 0
        self.next_fade = 0
        self.timeline = None
        self.text = ""

    def stop_all(self) -> None:
        """Stop every effect, reset every counter and leave the LED off."""
        if self.current is not None:
            logger.debug("Stopping %s effect", self.current)
        self._clear()
        self.level = LOW

    def set_led(self, on: bool) -> None:
        """Explicit on/off: stops all effects first."""
        self._clear()
        self.level = HIGH if on else LOW

    def start_blink(self, rate: int, now: int) -> None:
        self._clear()
        self.current = "blink"
        self.blink_rate = rate
        self.level = HIGH
        self.next_toggle = now + rate

    def start_fade(self, speed: int, now: int) -> None:
        self._clear()
        self.current = "fade"
        self.fade_speed = speed
        self.fade_interval = max(1, FADE_BASE_INTERVAL_MS // speed)
        self.level = LOW
        self.next_fade = now + self.fade_interval

    def start_pattern(self, pattern: str, now: int) -> None:
        self._clear()
        self.current = "pattern"
        self.text = pattern
        self.timeline = _Timeline(pattern_timeline(pattern), step_started=now)
        self.level = self.timeline.level()

    def start_morse(self, text: str, now: int) -> None:
        self._clear()
        self.current = "morse"
        self.text = text
        self.timeline = _Timeline(morse_timeline(text), step_started=now)
        self.level = self.timeline.level()

    def tick(self, now: int) -> bool:
        """Advance the active effect to ``now``.

        Returns:
            True if the LED level changed
        """
        before = self.level
        if self.current == "blink":
            while now >= self.next_toggle:
                self.level = LOW if self.level else HIGH
                self.next_toggle += self.blink_rate
        elif self.current == "fade":
            while now >= self.next_fade:
                self._fade_step()
                self.next_fade += self.fade_interval
        elif self.timeline is not None:
            if self.timeline.advance(now):
                self.level = self.timeline.level()
        return self.level != before

    def _fade_step(self) -> None:
        level = self.level + self.fade_direction * self.fade_speed
        if level >= HIGH:
            level = HIGH
            self.fade_direction = -1
        elif level <= LOW:
            level = LOW
            self.fade_direction = 1
        self.level = level
