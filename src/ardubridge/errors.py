"""Error types and constants for consistent error handling across the application."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standardized error codes for consistent error handling."""

    # Validation errors
    INVALID_PARAMETER = "invalid_parameter"
    UNKNOWN_COMMAND = "unknown_command"

    # Connectivity errors
    NOT_CONNECTED = "not_connected"
    BRIDGE_UNAVAILABLE = "bridge_unavailable"

    # Command-related errors
    COMMAND_TIMEOUT = "command_timeout"
    COMMAND_FAILED = "command_failed"

    # Session errors
    CREDENTIAL_REQUIRED = "credential_required"
    INVALID_CREDENTIAL = "invalid_credential"

    # Protocol errors
    PROTOCOL_ERROR = "protocol_error"

    # Language model errors
    MODEL_ERROR = "model_error"

    # Generic errors
    INTERNAL_ERROR = "internal_error"


class ArduBridgeError(Exception):
    """Base exception class for ArduBridge errors."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        """Initialize the error.

        Args:
            code: Error code identifier
            message: Human-readable error message
            details: Additional error context and data
            cause: Original exception that caused this error
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for wire responses."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class InvalidParameterError(ArduBridgeError):
    """Raised when command parameters fail validation before transmission."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.INVALID_PARAMETER, message, details)


class UnknownCommandError(ArduBridgeError):
    """Raised when a symbolic command or function name is not in the catalog."""

    def __init__(self, name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            ErrorCode.UNKNOWN_COMMAND,
            f"Unknown command: {name}",
            details={"command": name, **(details or {})},
        )


class NotConnectedError(ArduBridgeError):
    """Raised when the serial transport is not open."""

    def __init__(self, message: str = "Arduino not connected", details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.NOT_CONNECTED, message, details)


class BridgeUnavailableError(ArduBridgeError):
    """Raised when no live bridge can serve a request."""

    def __init__(self, bridge_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        message = "No Arduino bridge connected"
        if bridge_id:
            message = f"Bridge {bridge_id} is not available"
        super().__init__(
            ErrorCode.BRIDGE_UNAVAILABLE,
            message,
            details={"bridgeId": bridge_id, **(details or {})},
        )


class CommandTimeoutError(ArduBridgeError):
    """Raised when a command gets no correlated response before its deadline."""

    def __init__(
        self,
        command: str,
        timeout: float,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize command timeout error.

        Args:
            command: Command name that timed out
            timeout: Timeout duration in seconds
            details: Additional error context
        """
        super().__init__(
            ErrorCode.COMMAND_TIMEOUT,
            f"Command timeout: {command} (no response after {timeout} seconds)",
            details={"command": command, "timeout": timeout, **(details or {})},
        )


class CommandFailedError(ArduBridgeError):
    """Raised when the far side answers a command with an error outcome."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.COMMAND_FAILED, message, details)


class CredentialRequiredError(ArduBridgeError):
    """Raised when a user connection has not configured its credential."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            ErrorCode.CREDENTIAL_REQUIRED,
            "Please configure your API key first",
            details,
        )


class InvalidCredentialError(ArduBridgeError):
    """Raised when a supplied credential fails the format check."""

    def __init__(self, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.INVALID_CREDENTIAL, "Invalid API key format", details)


class ProtocolError(ArduBridgeError):
    """Raised when an inbound frame cannot be parsed or is structurally invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCode.PROTOCOL_ERROR, message, details)


class ModelError(ArduBridgeError):
    """Raised when the language model service fails or answers unexpectedly."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(ErrorCode.MODEL_ERROR, message, details, cause)


def error_from_dict(data: Any, default_message: str = "Command failed") -> ArduBridgeError:
    """Rebuild an error received on the wire.

    Accepts either an error dictionary as produced by
    :meth:`ArduBridgeError.to_dict` or a bare message string.
    """
    if isinstance(data, dict):
        try:
            code = ErrorCode(data.get("code"))
        except ValueError:
            code = ErrorCode.COMMAND_FAILED
        details = data.get("details")
        return ArduBridgeError(
            code,
            str(data.get("message") or default_message),
            details if isinstance(details, dict) else None,
        )
    if data:
        return CommandFailedError(str(data))
    return CommandFailedError(default_message)
