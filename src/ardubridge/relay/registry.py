"""In-memory registries of connected bridges and user sessions.

Both stores are plain dictionaries mutated only from the event loop thread,
so every operation is synchronous and needs no locking. The bridge registry
owns its liveness sweep: a periodic task removes bridges that have been
silent for longer than the staleness threshold and notifies listeners.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from ..constants import BRIDGE_STALE_AFTER, BRIDGE_SWEEP_INTERVAL

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(slots=True)
class BridgeRecord:
    """A registered bridge and the transport it is reachable through."""

    id: str
    version: str
    arduino: Dict[str, Any]
    transport: Any = field(repr=False)
    registered_at: float
    last_seen: float
    status: str = "connected"
    last_status: Optional[Dict[str, Any]] = None

    def age(self, now: float) -> float:
        """Seconds since the bridge was last heard from."""
        return now - self.last_seen

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "arduino": self.arduino,
            "status": self.status,
            "lastSeen": int(self.last_seen * 1000),
            "registeredAt": int(self.registered_at * 1000),
        }


RemovalListener = Callable[[BridgeRecord], None]


class BridgeRegistry:
    """Live bridges keyed by machine identifier."""

    def __init__(
        self,
        *,
        stale_after: float = BRIDGE_STALE_AFTER,
        sweep_interval: float = BRIDGE_SWEEP_INTERVAL,
        clock: Clock = time.time,
    ) -> None:
        self.stale_after = stale_after
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._bridges: Dict[str, BridgeRecord] = {}
        self._listeners: Set[RemovalListener] = set()
        self._sweep_task: Optional[asyncio.Task] = None

    def __contains__(self, bridge_id: object) -> bool:
        return bridge_id in self._bridges

    def __len__(self) -> int:
        return len(self._bridges)

    def add_removal_listener(self, listener: RemovalListener) -> None:
        """Be told about bridges removed by the liveness sweep."""
        self._listeners.add(listener)

    def register(
        self,
        bridge_id: str,
        transport: Any,
        version: str = "unknown",
        arduino: Optional[Dict[str, Any]] = None,
    ) -> tuple[BridgeRecord, Optional[BridgeRecord]]:
        """Register a bridge, replacing any earlier entry with the same id.

        Returns:
            The new record and the replaced one (or None)
        """
        now = self._clock()
        previous = self._bridges.get(bridge_id)
        record = BridgeRecord(
            id=bridge_id,
            version=version,
            arduino=dict(arduino or {}),
            transport=transport,
            registered_at=now,
            last_seen=now,
        )
        self._bridges[bridge_id] = record
        if previous is not None:
            logger.info("Bridge %s re-registered on a new transport", bridge_id)
        else:
            logger.info("Bridge registered: %s (v%s)", bridge_id, version)
        return record, previous

    def get(self, bridge_id: Optional[str]) -> Optional[BridgeRecord]:
        if bridge_id is None:
            return None
        return self._bridges.get(bridge_id)

    def list(self) -> List[BridgeRecord]:
        """Snapshot of the registered bridges."""
        return list(self._bridges.values())

    def ids(self) -> List[str]:
        return list(self._bridges)

    def remove(self, bridge_id: str, transport: Any = None) -> Optional[BridgeRecord]:
        """Remove a bridge.

        When ``transport`` is given the entry is only removed if it still
        belongs to that transport, so a closing stale connection cannot
        evict the connection that replaced it.
        """
        record = self._bridges.get(bridge_id)
        if record is None:
            return None
        if transport is not None and record.transport is not transport:
            return None
        del self._bridges[bridge_id]
        logger.info("Bridge removed: %s", bridge_id)
        return record

    def touch(self, bridge_id: str) -> bool:
        """Refresh a bridge's liveness; False if it is not registered."""
        record = self._bridges.get(bridge_id)
        if record is None:
            return False
        record.last_seen = self._clock()
        return True

    def sweep(self) -> List[BridgeRecord]:
        """Remove every bridge silent for longer than the threshold."""
        now = self._clock()
        stale = [record for record in self._bridges.values() if record.age(now) > self.stale_after]
        for record in stale:
            logger.warning("Bridge timeout: %s (silent for %.1fs)", record.id, record.age(now))
            del self._bridges[record.id]
            record.status = "stale"
            for listener in list(self._listeners):
                try:
                    listener(record)
                except Exception:
                    logger.exception("Bridge removal listener failed for %s", record.id)
        return stale

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic liveness sweep."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass


@dataclass(slots=True)
class Session:
    """Per-connection user state; the credential never leaves memory."""

    id: str
    credential: str = field(repr=False)
    created_at: float
    context: List[Dict[str, Any]] = field(default_factory=list, repr=False)
    selected_bridge: Optional[str] = None
    model: Any = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": int(self.created_at * 1000),
            "selectedBridge": self.selected_bridge,
            "contextLength": len(self.context),
        }


class SessionRegistry:
    """User sessions keyed by connection identifier."""

    def __init__(self, *, clock: Clock = time.time) -> None:
        self._clock = clock
        self._sessions: Dict[str, Session] = {}

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, session_id: str, credential: str) -> Session:
        """Create the session for a connection, or update its credential.

        Reconfiguring keeps the conversation and bridge selection but drops
        any model client bound to the old credential.
        """
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(id=session_id, credential=credential, created_at=self._clock())
            self._sessions[session_id] = session
            logger.info("Session created: %s", session_id)
        else:
            session.credential = credential
            session.model = None
            logger.info("Session credential updated: %s", session_id)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def list(self) -> List[Session]:
        return list(self._sessions.values())

    def remove(self, session_id: str) -> Optional[Session]:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            logger.info("Session closed: %s", session_id)
        return session
