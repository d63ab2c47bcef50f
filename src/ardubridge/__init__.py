"""ArduBridge: natural-language Arduino control over a cloud relay and a local serial bridge."""

__version__ = "1.0.0"
