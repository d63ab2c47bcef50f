"""Command catalog: validation, dispatch, hardware mirror and model functions."""

from .dispatcher import CommandDispatcher, CommandLink, resolve_command, validate_command
from .functions import FUNCTIONS, FunctionSpec, call_function, function_declarations, resolve_function
from .schemas import COMMAND_SCHEMAS
from .state import EFFECT_KINDS, HardwareState

__all__ = [
    "COMMAND_SCHEMAS",
    "EFFECT_KINDS",
    "FUNCTIONS",
    "CommandDispatcher",
    "CommandLink",
    "FunctionSpec",
    "HardwareState",
    "call_function",
    "function_declarations",
    "resolve_command",
    "resolve_function",
    "validate_command",
]
