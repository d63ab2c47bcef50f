"""Message routing between user connections, bridges and the language model.

The relay accepts every connection on one WebSocket endpoint. A connection
becomes a *bridge* by sending ``bridge_register``; any other connection is a
*user* connection, which moves from unauthenticated to ready once it has
configured a credential with ``set_api_key``.

Each inbound message is handled inside its own exception boundary: failures
are reported to the originating connection as an ``error`` frame and never
affect other connections.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set

from ..commands import CommandDispatcher, HardwareState, call_function, function_declarations
from ..constants import (
    CREDENTIAL_MIN_LENGTH,
    CREDENTIAL_PREFIX,
    MAX_TOOL_ROUNDS,
    RELAY_COMMAND_TIMEOUT,
    RELAY_VERSION,
)
from ..correlation import PendingRequests
from ..errors import (
    ArduBridgeError,
    BridgeUnavailableError,
    CredentialRequiredError,
    ErrorCode,
    InvalidCredentialError,
    InvalidParameterError,
    ModelError,
    ProtocolError,
    error_from_dict,
)
from ..llm import (
    FunctionCall,
    FunctionOutcome,
    LanguageModel,
    function_response_content,
    user_content,
)
from ..utils import now_iso, now_ms
from .registry import BridgeRecord, BridgeRegistry, Session, SessionRegistry

logger = logging.getLogger(__name__)

ModelFactory = Callable[[str], LanguageModel]

BRIDGE_MESSAGES = frozenset({"command_result", "command_error", "arduino_response", "bridge_status"})
USER_MESSAGES = frozenset(
    {
        "set_api_key",
        "bridge_discovery",
        "get_bridge_status",
        "select_bridge",
        "chat_message",
        "arduino_command",
    }
)


class Connection(Protocol):
    """A bidirectional message transport (one WebSocket)."""

    id: str

    async def send(self, message: Mapping[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


def is_valid_credential(credential: Any) -> bool:
    """Superficial format check; the credential is never verified."""
    return (
        isinstance(credential, str)
        and credential.startswith(CREDENTIAL_PREFIX)
        and len(credential) >= CREDENTIAL_MIN_LENGTH
    )


class RemoteBridgeLink:
    """Command link to a device reached through a registered bridge.

    Commands are sent as ``arduino_command`` frames and answered by
    ``command_result`` / ``command_error`` frames carrying the same id.
    """

    def __init__(self, bridge_id: str, connection: Connection, timeout: float = RELAY_COMMAND_TIMEOUT) -> None:
        self.bridge_id = bridge_id
        self.connection = connection
        self.pending = PendingRequests(timeout, name=f"bridge {bridge_id}")

    async def send_command(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        expect_response: bool = True,
    ) -> Dict[str, Any]:
        params = dict(params or {})
        pending = self.pending.register(name, params)
        frame = {"type": "arduino_command", "id": pending.id, "command": name, "params": params}
        try:
            await self.connection.send(frame)
        except Exception as exc:
            self.pending.discard(pending.id)
            logger.warning("Failed to send %s to bridge %s: %s", name, self.bridge_id, exc)
            raise BridgeUnavailableError(self.bridge_id) from exc
        if not expect_response:
            self.pending.discard(pending.id)
            return {"success": True, "id": pending.id, "command": name, "params": params}
        return await self.pending.wait(pending)

    def handle_result(self, message: Mapping[str, Any]) -> bool:
        command_id = message.get("commandId")
        if not isinstance(command_id, str) or not self.pending.resolve(command_id, message.get("result")):
            logger.debug("Unmatched command_result %s from bridge %s", command_id, self.bridge_id)
            return False
        return True

    def handle_error(self, message: Mapping[str, Any]) -> bool:
        command_id = message.get("commandId")
        error = error_from_dict(message.get("error"))
        if not isinstance(command_id, str) or not self.pending.reject(command_id, error):
            logger.debug("Unmatched command_error %s from bridge %s", command_id, self.bridge_id)
            return False
        return True

    def fail_all(self) -> int:
        """Reject every outstanding command because the bridge went away."""
        return self.pending.reject_all(lambda pending: BridgeUnavailableError(self.bridge_id))


@dataclass(slots=True)
class BridgeHandle:
    """Relay-side view of a registered bridge: its link and hardware mirror."""

    link: RemoteBridgeLink
    dispatcher: CommandDispatcher


@dataclass(slots=True)
class ConnectionState:
    connection: Connection
    connected_at: float
    bridge_id: Optional[str] = None
    messages: int = 0

    @property
    def is_bridge(self) -> bool:
        return self.bridge_id is not None


@dataclass(slots=True)
class ChatResult:
    text: str
    functions_called: List[Dict[str, Any]] = field(default_factory=list)
    rounds: int = 0


class RelayCore:
    """Routing state machine for the relay process."""

    def __init__(
        self,
        bridges: BridgeRegistry,
        sessions: SessionRegistry,
        model_factory: ModelFactory,
        *,
        command_timeout: float = RELAY_COMMAND_TIMEOUT,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
    ) -> None:
        """Create a relay over injected stores.

        Args:
            bridges: Registry of live bridges
            sessions: Registry of user sessions
            model_factory: Builds a language model client from a credential
            command_timeout: End-to-end deadline for commands sent to bridges
            max_tool_rounds: Cap on model function-call rounds per chat turn
        """
        self.bridges = bridges
        self.sessions = sessions
        self.model_factory = model_factory
        self.command_timeout = command_timeout
        self.max_tool_rounds = max_tool_rounds
        self.started_at = time.time()
        self._connections: Dict[str, ConnectionState] = {}
        self._handles: Dict[str, BridgeHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Callable[[ConnectionState, Dict[str, Any]], Awaitable[None]]] = {
            "bridge_register": self._handle_bridge_register,
            "command_result": self._handle_command_result,
            "command_error": self._handle_command_error,
            "arduino_response": self._handle_arduino_response,
            "bridge_status": self._handle_bridge_status,
            "ping": self._handle_ping,
            "pong": self._handle_pong,
            "set_api_key": self._handle_set_api_key,
            "bridge_discovery": self._handle_bridge_discovery,
            "get_bridge_status": self._handle_get_bridge_status,
            "select_bridge": self._handle_select_bridge,
            "chat_message": self._handle_chat_message,
            "arduino_command": self._handle_arduino_command,
        }
        bridges.add_removal_listener(self._on_bridge_stale)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.bridges.start()

    async def stop(self) -> None:
        await self.bridges.stop()
        for handle in list(self._handles.values()):
            handle.link.fail_all()
        self._handles.clear()
        for session in self.sessions.list():
            await self._close_model(session)
        for task in list(self._tasks):
            task.cancel()

    @property
    def uptime(self) -> float:
        return time.time() - self.started_at

    def health(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "bridges": len(self.bridges),
            "sessions": len(self.sessions),
            "connections": len(self._connections),
            "uptime": round(self.uptime, 1),
            "timestamp": now_iso(),
        }

    def handle_for(self, bridge_id: str) -> Optional[BridgeHandle]:
        return self._handles.get(bridge_id)

    def bridge_summary(self, record: BridgeRecord) -> Dict[str, Any]:
        summary = record.to_dict()
        handle = self._handles.get(record.id)
        if handle is not None:
            summary["hardware"] = handle.dispatcher.state.to_dict()
            summary["pendingCommands"] = len(handle.link.pending)
        if record.last_status is not None:
            summary["reportedStatus"] = record.last_status
        return summary

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def connect(self, connection: Connection) -> None:
        """Track a new connection and greet it."""
        self._connections[connection.id] = ConnectionState(connection=connection, connected_at=time.time())
        logger.info("New connection: %s", connection.id)
        await self._safe_send(
            connection,
            {
                "type": "welcome",
                "sessionId": connection.id,
                "message": "Connected to ArduBridge relay",
                "version": RELAY_VERSION,
            },
        )

    async def disconnect(self, connection: Connection) -> None:
        """Release everything owned by a closed connection."""
        state = self._connections.pop(connection.id, None)
        logger.info("Connection closed: %s", connection.id)
        if state is not None and state.bridge_id is not None:
            record = self.bridges.remove(state.bridge_id, transport=connection)
            if record is not None:
                await self._drop_bridge(record)
        session = self.sessions.remove(connection.id)
        if session is not None:
            await self._close_model(session)

    async def handle_message(self, connection: Connection, raw: Any) -> None:
        """Handle one inbound frame; never raises."""
        state = self._connections.get(connection.id)
        if state is None:
            state = ConnectionState(connection=connection, connected_at=time.time())
            self._connections[connection.id] = state
        message: Dict[str, Any] = {}
        state.messages += 1
        if state.bridge_id is not None:
            self.bridges.touch(state.bridge_id)
        try:
            message = self._parse(raw)
            message_type = message["type"]
            handler = self._handlers.get(message_type)
            if handler is None:
                raise ProtocolError(f"Unknown message type: {message_type}", details={"type": message_type})
            self._check_role(state, message_type)
            logger.debug("Message from %s: %s", connection.id, message_type)
            await handler(state, message)
        except ArduBridgeError as exc:
            log = logger.warning if exc.code is ErrorCode.PROTOCOL_ERROR else logger.info
            log("Request from %s failed: %s", connection.id, exc.message)
            await self._send_error(connection, exc, message)
        except Exception as exc:
            logger.exception("Unexpected error handling message from %s", connection.id)
            error = ArduBridgeError(ErrorCode.INTERNAL_ERROR, "Internal error", cause=exc)
            await self._send_error(connection, error, message)

    @staticmethod
    def _parse(raw: Any) -> Dict[str, Any]:
        if isinstance(raw, (str, bytes, bytearray)):
            try:
                raw = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise ProtocolError("Invalid message format") from exc
        if not isinstance(raw, dict):
            raise ProtocolError("Invalid message format")
        if not isinstance(raw.get("type"), str):
            raise ProtocolError("Message has no type")
        return raw

    @staticmethod
    def _check_role(state: ConnectionState, message_type: str) -> None:
        if message_type in BRIDGE_MESSAGES and not state.is_bridge:
            raise ProtocolError(f"{message_type} is only accepted from a registered bridge")
        if message_type in USER_MESSAGES and state.is_bridge:
            raise ProtocolError(f"{message_type} is not accepted from a bridge")

    async def _safe_send(self, connection: Connection, message: Mapping[str, Any]) -> bool:
        try:
            await connection.send(message)
            return True
        except Exception as exc:
            logger.debug("Send to %s failed: %s", connection.id, exc)
            return False

    async def _send_error(self, connection: Connection, error: ArduBridgeError, request: Mapping[str, Any]) -> None:
        frame = {"type": "error", **error.to_dict()}
        frame["requestType"] = request.get("type")
        frame["requestId"] = request.get("requestId")
        await self._safe_send(connection, frame)

    async def _reply(self, state: ConnectionState, request: Mapping[str, Any], frame: Dict[str, Any]) -> None:
        if request.get("requestId") is not None:
            frame["requestId"] = request["requestId"]
        await self._safe_send(state.connection, frame)

    async def broadcast_to_users(self, message: Mapping[str, Any]) -> int:
        """Send a frame to every user connection (bridges excluded)."""
        targets = [state.connection for state in self._connections.values() if not state.is_bridge]
        if not targets:
            return 0
        results = await asyncio.gather(*(self._safe_send(target, message) for target in targets))
        return sum(1 for delivered in results if delivered)

    # ------------------------------------------------------------------
    # Bridge messages
    # ------------------------------------------------------------------

    async def _handle_bridge_register(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        if state.is_bridge:
            raise ProtocolError(f"Connection is already registered as bridge {state.bridge_id}")
        if state.connection.id in self.sessions:
            raise ProtocolError("A user connection cannot register as a bridge")
        bridge_id = message.get("bridgeId")
        if not isinstance(bridge_id, str) or not bridge_id:
            raise ProtocolError("bridge_register requires a bridgeId")
        arduino = message.get("arduino")
        version = str(message.get("version") or "unknown")

        record, previous = self.bridges.register(
            bridge_id,
            state.connection,
            version=version,
            arduino=arduino if isinstance(arduino, dict) else {},
        )
        state.bridge_id = bridge_id

        hardware = HardwareState()
        if previous is not None:
            old = self._handles.pop(bridge_id, None)
            if old is not None:
                old.link.fail_all()
                hardware = old.dispatcher.state
            previous_state = self._connections.get(previous.transport.id)
            if previous_state is not None and previous_state.bridge_id == bridge_id:
                previous_state.bridge_id = None
        link = RemoteBridgeLink(bridge_id, state.connection, timeout=self.command_timeout)
        self._handles[bridge_id] = BridgeHandle(link=link, dispatcher=CommandDispatcher(link, hardware))

        await self._safe_send(
            state.connection,
            {"type": "bridge_registered", "bridgeId": bridge_id, "timestamp": now_ms()},
        )
        await self.broadcast_to_users(
            {
                "type": "bridge_available",
                "bridge": {"id": bridge_id, "version": version, "arduino": record.arduino},
            }
        )

    async def _handle_command_result(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        handle = self._handles.get(state.bridge_id or "")
        if handle is not None:
            handle.link.handle_result(message)

    async def _handle_command_error(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        handle = self._handles.get(state.bridge_id or "")
        if handle is not None:
            handle.link.handle_error(message)

    async def _handle_arduino_response(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        data = message.get("data")
        handle = self._handles.get(state.bridge_id or "")
        if handle is not None and isinstance(data, dict) and data.get("type") == "status":
            status = data.get("data")
            if isinstance(status, dict):
                handle.dispatcher.state.merge_status(status)
        await self.broadcast_to_users(
            {
                "type": "arduino_response",
                "bridgeId": state.bridge_id,
                "data": data,
                "timestamp": message.get("timestamp") or now_ms(),
            }
        )

    async def _handle_bridge_status(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        record = self.bridges.get(state.bridge_id)
        if record is not None:
            status = message.get("status")
            record.last_status = status if isinstance(status, dict) else {
                key: value for key, value in message.items() if key != "type"
            }

    async def _handle_ping(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        await self._reply(state, message, {"type": "pong", "timestamp": now_ms()})

    async def _handle_pong(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        # Liveness was already refreshed on receipt.
        return None

    def _on_bridge_stale(self, record: BridgeRecord) -> None:
        state = self._connections.get(getattr(record.transport, "id", ""))
        if state is not None and state.bridge_id == record.id:
            state.bridge_id = None
        self._spawn(self._drop_bridge(record, close_transport=True))

    async def _drop_bridge(self, record: BridgeRecord, close_transport: bool = False) -> None:
        handle = self._handles.get(record.id)
        if handle is not None and handle.link.connection is record.transport:
            del self._handles[record.id]
            failed = handle.link.fail_all()
            if failed:
                logger.warning("Failed %d pending commands for bridge %s", failed, record.id)
        for session in self.sessions.list():
            if session.selected_bridge == record.id:
                session.selected_bridge = None
        await self.broadcast_to_users({"type": "bridge_disconnected", "bridgeId": record.id})
        if close_transport:
            try:
                await record.transport.close(code=1001, reason="Bridge heartbeat timeout")
            except Exception as exc:
                logger.debug("Closing stale bridge %s failed: %s", record.id, exc)

    # ------------------------------------------------------------------
    # User messages
    # ------------------------------------------------------------------

    async def _handle_set_api_key(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        credential = message.get("apiKey")
        if not is_valid_credential(credential):
            error = InvalidCredentialError()
            await self._reply(
                state,
                message,
                {"type": "api_key_error", "code": error.code.value, "message": error.message},
            )
            return
        previous = self.sessions.get(state.connection.id)
        if previous is not None:
            await self._close_model(previous)
        self.sessions.create(state.connection.id, credential)
        logger.info("API key configured for session %s", state.connection.id)
        await self._reply(state, message, {"type": "api_key_success", "message": "API key configured successfully"})

    def _bridge_list(self) -> List[Dict[str, Any]]:
        return [self.bridge_summary(record) for record in self.bridges.list()]

    async def _handle_bridge_discovery(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        bridges = self._bridge_list()
        await self._reply(state, message, {"type": "bridge_list", "bridges": bridges, "count": len(bridges)})

    async def _handle_get_bridge_status(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        bridge_id = message.get("bridgeId")
        if bridge_id:
            record = self.bridges.get(bridge_id)
            if record is None:
                raise BridgeUnavailableError(bridge_id)
            bridges = [self.bridge_summary(record)]
        else:
            bridges = self._bridge_list()
        await self._reply(state, message, {"type": "bridge_status", "bridges": bridges})

    async def _handle_select_bridge(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        bridge_id = message.get("bridgeId")
        if not isinstance(bridge_id, str) or bridge_id not in self.bridges:
            raise BridgeUnavailableError(bridge_id if isinstance(bridge_id, str) else None)
        session = self._require_session(state)
        session.selected_bridge = bridge_id
        await self._reply(state, message, {"type": "bridge_selected", "bridgeId": bridge_id})

    def _require_session(self, state: ConnectionState) -> Session:
        session = self.sessions.get(state.connection.id)
        if session is None:
            raise CredentialRequiredError()
        return session

    def resolve_bridge(self, connection_id: str, requested: Any = None) -> BridgeHandle:
        """Pick the target bridge for a user request.

        Order: explicit ``bridgeId``, the session's selected bridge, then the
        only registered bridge.

        Raises:
            BridgeUnavailableError: If no live bridge matches
        """
        if requested:
            handle = self._handles.get(str(requested)) if str(requested) in self.bridges else None
            if handle is None:
                raise BridgeUnavailableError(str(requested))
            return handle
        session = self.sessions.get(connection_id)
        if session is not None and session.selected_bridge:
            handle = self._handles.get(session.selected_bridge)
            if handle is not None and session.selected_bridge in self.bridges:
                return handle
            raise BridgeUnavailableError(session.selected_bridge)
        live = [bridge_id for bridge_id in self.bridges.ids() if bridge_id in self._handles]
        if len(live) == 1:
            return self._handles[live[0]]
        if not live:
            raise BridgeUnavailableError()
        raise BridgeUnavailableError(
            None,
            details={"reason": "Several bridges are connected; select one first", "bridges": live},
        )

    async def _handle_arduino_command(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        handle = self.resolve_bridge(state.connection.id, message.get("bridgeId"))
        self._require_session(state)
        command = message.get("command")
        params = message.get("params")
        result = await handle.dispatcher.dispatch(command, params if params is not None else {})
        await self._reply(
            state,
            message,
            {
                "type": "command_result",
                "bridgeId": handle.link.bridge_id,
                "command": command,
                "result": result,
                "timestamp": now_ms(),
            },
        )

    async def _handle_chat_message(self, state: ConnectionState, message: Dict[str, Any]) -> None:
        handle = self.resolve_bridge(state.connection.id, message.get("bridgeId"))
        session = self._require_session(state)
        text = message.get("text")
        if not isinstance(text, str) or not text.strip():
            raise InvalidParameterError("chat_message requires non-empty text")
        if session.model is None:
            session.model = self.model_factory(session.credential)
        result = await self.run_chat_turn(session, handle.dispatcher, text)
        await self._reply(
            state,
            message,
            {
                "type": "chat_response",
                "bridgeId": handle.link.bridge_id,
                "text": result.text,
                "functionsCalled": result.functions_called,
                "rounds": result.rounds,
            },
        )

    # ------------------------------------------------------------------
    # Model loop
    # ------------------------------------------------------------------

    async def execute_function(self, dispatcher: CommandDispatcher, call: FunctionCall) -> FunctionOutcome:
        """Run one model function call, capturing its error instead of raising."""
        try:
            result = await call_function(dispatcher, call.name, call.args)
        except ArduBridgeError as exc:
            logger.info("Function %s failed: %s", call.name, exc.message)
            return FunctionOutcome(call=call, error=exc.to_dict())
        except Exception as exc:
            logger.exception("Function %s raised unexpectedly", call.name)
            return FunctionOutcome(
                call=call,
                error={"code": ErrorCode.INTERNAL_ERROR.value, "message": str(exc), "details": {}},
            )
        return FunctionOutcome(call=call, result=result)

    async def run_chat_turn(self, session: Session, dispatcher: CommandDispatcher, text: str) -> ChatResult:
        """Drive the model until it stops calling functions or the round cap hits.

        All function calls from one model turn run concurrently; each keeps
        its own result or error, and all of them are fed back together. If the
        turn fails, the context is restored to what it was before the turn.
        """
        start = len(session.context)
        try:
            return await self._chat_rounds(session, dispatcher, text)
        except BaseException:
            del session.context[start:]
            raise

    async def _chat_rounds(self, session: Session, dispatcher: CommandDispatcher, text: str) -> ChatResult:
        model: LanguageModel = session.model
        tools = function_declarations()
        session.context.append(user_content(text))
        result = ChatResult(text="")

        while True:
            turn = await model.generate(session.context, tools)
            if not turn.content.get("parts"):
                raise ModelError("AI returned no answer")
            session.context.append(turn.content)
            result.text = turn.text
            if not turn.function_calls:
                return result
            if result.rounds >= self.max_tool_rounds:
                logger.warning("Session %s hit the limit of %d function rounds", session.id, self.max_tool_rounds)
                # Drop the unanswered calls so the context stays well formed.
                session.context.pop()
                if not result.text:
                    result.text = f"Stopped after {self.max_tool_rounds} rounds of hardware commands."
                return result

            result.rounds += 1
            outcomes = await asyncio.gather(
                *(self.execute_function(dispatcher, call) for call in turn.function_calls)
            )
            result.functions_called.extend(outcome.summary() for outcome in outcomes)
            session.context.append(function_response_content(outcomes))

    async def _close_model(self, session: Session) -> None:
        model, session.model = session.model, None
        if model is None:
            return
        try:
            await model.close()
        except Exception as exc:
            logger.debug("Closing model client for %s failed: %s", session.id, exc)


def new_connection_id() -> str:
    return str(uuid.uuid4())
