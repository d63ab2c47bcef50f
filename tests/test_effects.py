"""Tests for the LED effect scheduler and its timelines."""

from __future__ import annotations

from ardubridge.firmware import EffectScheduler, morse_timeline, pattern_timeline
from ardubridge.firmware.effects import HIGH, LOW


def test_sos_timeline():
    letter_s = [(True, 100), (False, 100), (True, 100), (False, 100), (True, 100), (False, 300)]
    letter_o = [(True, 300), (False, 100), (True, 300), (False, 100), (True, 300), (False, 300)]

    assert morse_timeline("SOS") == letter_s + letter_o + letter_s


def test_word_gap_replaces_letter_gap():
    assert morse_timeline("e  e") == [(True, 100), (False, 700), (True, 100), (False, 300)]


def test_unknown_characters_are_skipped():
    assert morse_timeline("E1!") == morse_timeline("E")
    assert morse_timeline("123") == []


def test_pattern_timeline_uses_fixed_steps():
    assert pattern_timeline("101") == [(True, 100), (False, 100), (True, 100)]


def test_pattern_cycles_every_100ms():
    scheduler = EffectScheduler()
    scheduler.start_pattern("101010", now=1000)

    levels = [scheduler.level]
    for now in range(1100, 1800, 100):
        scheduler.tick(now)
        levels.append(scheduler.level)

    assert levels == [HIGH, LOW, HIGH, LOW, HIGH, LOW, HIGH, LOW]
    assert scheduler.flags()["pattern"] is True


def test_pattern_holds_level_within_a_step():
    scheduler = EffectScheduler()
    scheduler.start_pattern("10", now=0)

    assert scheduler.tick(99) is False
    assert scheduler.level == HIGH
    assert scheduler.tick(100) is True
    assert scheduler.level == LOW


def test_morse_plays_sos_then_repeats():
    scheduler = EffectScheduler()
    scheduler.start_morse("SOS", now=0)
    total = sum(duration for _, duration in morse_timeline("SOS"))

    assert scheduler.is_high
    scheduler.tick(100)
    assert not scheduler.is_high
    scheduler.tick(total)
    assert scheduler.is_high
    assert scheduler.timeline.index == 0


def test_blink_toggles_at_rate():
    scheduler = EffectScheduler()
    scheduler.start_blink(200, now=0)

    assert scheduler.level == HIGH
    assert scheduler.tick(199) is False
    assert scheduler.tick(200) is True
    assert scheduler.level == LOW
    scheduler.tick(400)
    assert scheduler.level == HIGH
    assert scheduler.flags() == {
        "blinking": True,
        "fading": False,
        "pattern": False,
        "morse": False,
        "rainbow": False,
    }


def test_fade_ping_pongs_between_limits():
    scheduler = EffectScheduler()
    scheduler.start_fade(10, now=0)

    assert scheduler.fade_interval == 10
    scheduler.tick(250)
    assert scheduler.level == 250
    scheduler.tick(260)
    assert scheduler.level == HIGH
    scheduler.tick(270)
    assert scheduler.level == 245


def test_slow_fade_interval():
    scheduler = EffectScheduler()
    scheduler.start_fade(1, now=0)

    assert scheduler.fade_interval == 100
    scheduler.tick(300)
    assert scheduler.level == 3


def test_starting_an_effect_supersedes_the_previous_one():
    scheduler = EffectScheduler()
    scheduler.start_blink(100, now=0)
    scheduler.start_morse("E", now=50)

    flags = scheduler.flags()
    assert flags["morse"] is True
    assert flags["blinking"] is False
    assert scheduler.blink_rate == 0


def test_set_led_is_idempotent_and_stops_effects():
    scheduler = EffectScheduler()
    scheduler.start_fade(5, now=0)

    scheduler.set_led(True)
    scheduler.set_led(True)
    assert scheduler.level == HIGH
    assert not scheduler.active
    assert scheduler.tick(10_000) is False

    scheduler.set_led(False)
    scheduler.set_led(False)
    assert scheduler.level == LOW


def test_stop_all_turns_the_led_off():
    scheduler = EffectScheduler()
    scheduler.start_blink(100, now=0)

    scheduler.stop_all()

    assert scheduler.level == LOW
    assert not any(scheduler.flags().values())


def test_morse_without_letters_keeps_led_low():
    scheduler = EffectScheduler()
    scheduler.start_morse("!!!", now=0)

    assert scheduler.level == LOW
    assert scheduler.tick(1000) is False
