"""Local bridge: relay client plus the bridge's own HTTP status surface."""

from .agent import BridgeAgent, machine_id

__all__ = ["BridgeAgent", "machine_id"]
