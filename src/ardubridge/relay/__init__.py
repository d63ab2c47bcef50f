"""Relay: bridge and session registries plus the routing core."""

from .core import Connection, RelayCore, RemoteBridgeLink, is_valid_credential, new_connection_id
from .registry import BridgeRecord, BridgeRegistry, Session, SessionRegistry

__all__ = [
    "BridgeRecord",
    "BridgeRegistry",
    "Connection",
    "RelayCore",
    "RemoteBridgeLink",
    "Session",
    "SessionRegistry",
    "is_valid_credential",
    "new_connection_id",
]
