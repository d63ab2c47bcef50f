"""Host-side rendition of the board firmware: effects, virtual device, simulator."""

from .device import LineIntake, VirtualDevice
from .effects import EffectScheduler, morse_timeline, pattern_timeline
from .simulator import DeviceSimulator

__all__ = [
    "DeviceSimulator",
    "EffectScheduler",
    "LineIntake",
    "VirtualDevice",
    "morse_timeline",
    "pattern_timeline",
]
