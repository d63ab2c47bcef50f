"""Correlation of asynchronous command/response pairs.

Both hops of the system (bridge to device over serial, relay to bridge over
WebSocket) send a request carrying a fresh identifier and later receive a
response carrying the same identifier. :class:`PendingRequests` keeps one
future per outstanding identifier and guarantees that each of them settles
exactly once: resolved, rejected, or expired by its timer. Whichever of these
happens first removes the entry, so a late response finds nothing and is
reported as unmatched.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .errors import ArduBridgeError, CommandTimeoutError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingRequest:
    """An outstanding command awaiting its correlated response."""

    id: str
    command: str
    params: Dict[str, Any]
    created_at: float
    future: asyncio.Future = field(repr=False)
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

    @property
    def age(self) -> float:
        """Seconds elapsed since the request was registered."""
        return time.monotonic() - self.created_at


class PendingRequests:
    """Table of outstanding requests keyed by correlation identifier."""

    def __init__(
        self,
        timeout: float,
        *,
        id_factory: Callable[[], str] | None = None,
        name: str = "pending",
    ) -> None:
        """Create an empty table.

        Args:
            timeout: Seconds before an unanswered request is rejected
            id_factory: Optional identifier generator (defaults to uuid4 hex)
            name: Label used in log messages
        """
        self.timeout = timeout
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self._name = name
        self._pending: Dict[str, PendingRequest] = {}

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def ids(self) -> list[str]:
        """Return a snapshot of the outstanding identifiers."""
        return list(self._pending)

    def get(self, request_id: str) -> Optional[PendingRequest]:
        """Return the pending entry for an identifier, if any."""
        return self._pending.get(request_id)

    def new_id(self) -> str:
        """Generate an identifier that is not currently outstanding."""
        while True:
            candidate = self._id_factory()
            if candidate not in self._pending:
                return candidate

    def register(
        self,
        command: str,
        params: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ) -> PendingRequest:
        """Record a new outstanding request and arm its timeout.

        Raises:
            ValueError: If ``request_id`` is already outstanding
        """
        loop = asyncio.get_running_loop()
        request_id = request_id or self.new_id()
        if request_id in self._pending:
            raise ValueError(f"Correlation id {request_id} is already outstanding")

        pending = PendingRequest(
            id=request_id,
            command=command,
            params=dict(params or {}),
            created_at=time.monotonic(),
            future=loop.create_future(),
        )
        pending.timer = loop.call_later(self.timeout, self._expire, request_id)
        self._pending[request_id] = pending
        return pending

    def _pop(self, request_id: str) -> Optional[PendingRequest]:
        pending = self._pending.pop(request_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning(
            "%s: %s (%s) timed out after %.1fs",
            self._name,
            pending.command,
            request_id,
            self.timeout,
        )
        pending.future.set_exception(
            CommandTimeoutError(pending.command, self.timeout, details={"id": request_id})
        )

    def resolve(self, request_id: str, result: Any) -> bool:
        """Settle a request successfully.

        Returns:
            True if the identifier was outstanding, False if unmatched
        """
        pending = self._pop(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(result)
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        """Settle a request with an error.

        Returns:
            True if the identifier was outstanding, False if unmatched
        """
        pending = self._pop(request_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_exception(error)
        return True

    def discard(self, request_id: str) -> bool:
        """Drop a request without settling it (e.g. its write failed)."""
        pending = self._pop(request_id)
        if pending is None:
            return False
        if not pending.future.done():
            pending.future.cancel()
        return True

    def reject_all(self, error_factory: Callable[[PendingRequest], ArduBridgeError]) -> int:
        """Reject every outstanding request, returning how many were settled."""
        count = 0
        for request_id in list(self._pending):
            pending = self._pending.get(request_id)
            if pending is not None and self.reject(request_id, error_factory(pending)):
                count += 1
        return count

    async def wait(self, pending: PendingRequest) -> Any:
        """Await the outcome of a registered request.

        If the waiting task is cancelled the entry is dropped so the table
        never holds requests nobody is waiting for.
        """
        try:
            return await pending.future
        except asyncio.CancelledError:
            self.discard(pending.id)
            raise
