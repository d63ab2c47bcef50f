"""Validated dispatch of catalog commands onto a command link."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple

from pydantic import ValidationError

from ..constants import Command
from ..errors import InvalidParameterError, UnknownCommandError
from .schemas import COMMAND_SCHEMAS
from .state import HardwareState

logger = logging.getLogger(__name__)


class CommandLink(Protocol):
    """Anything that can carry a command to a device and return its answer."""

    async def send_command(
        self,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        expect_response: bool = True,
    ) -> Dict[str, Any]: ...


def resolve_command(name: Any) -> Command:
    """Map a symbolic name onto the catalog.

    Raises:
        UnknownCommandError: If the name is not a catalog command
    """
    if isinstance(name, Command):
        return name
    try:
        return Command(str(name))
    except ValueError:
        raise UnknownCommandError(str(name)) from None


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "params"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


def validate_command(name: Any, params: Optional[Mapping[str, Any]] = None) -> Tuple[Command, Dict[str, Any]]:
    """Validate and normalise a command's parameters.

    Returns:
        The catalog command and the normalised parameter dictionary

    Raises:
        UnknownCommandError: If the name is not in the catalog
        InvalidParameterError: If any parameter violates its constraint
    """
    command = resolve_command(name)
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        raise InvalidParameterError(
            f"Invalid parameters for {command.value}: expected an object",
            details={"command": command.value},
        )
    schema = COMMAND_SCHEMAS[command]
    try:
        model = schema.model_validate(dict(params))
    except ValidationError as exc:
        raise InvalidParameterError(
            f"Invalid parameters for {command.value}: {_describe(exc)}",
            details={
                "command": command.value,
                "errors": exc.errors(include_url=False, include_context=False, include_input=False),
            },
        ) from exc
    return command, model.model_dump()


class CommandDispatcher:
    """Validates catalog commands, sends them and mirrors their effect."""

    def __init__(self, link: CommandLink, state: Optional[HardwareState] = None) -> None:
        """Create a dispatcher bound to one link.

        Args:
            link: Device link (serial on the bridge, remote on the relay)
            state: Hardware mirror to update; a fresh one is created if omitted
        """
        self.link = link
        self.state = state or HardwareState()

    async def dispatch(
        self,
        name: Any,
        params: Optional[Mapping[str, Any]] = None,
        expect_response: bool = True,
    ) -> Dict[str, Any]:
        """Validate, send and record one command.

        Nothing is written to the link when validation fails.
        """
        command, clean = validate_command(name, params)
        logger.debug("Dispatching %s %s", command.value, clean)
        result = await self.link.send_command(command.value, clean, expect_response)
        self.state.apply(command, clean, result)
        return result

    async def led_on(self) -> Dict[str, Any]:
        return await self.dispatch(Command.LED_ON)

    async def led_off(self) -> Dict[str, Any]:
        return await self.dispatch(Command.LED_OFF)

    async def led_blink(self, rate: Any = None) -> Dict[str, Any]:
        return await self.dispatch(Command.LED_BLINK, {} if rate is None else {"rate": rate})

    async def led_fade(self, speed: Any = None) -> Dict[str, Any]:
        return await self.dispatch(Command.LED_FADE, {} if speed is None else {"speed": speed})

    async def led_morse(self, text: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.LED_MORSE, {"text": text})

    async def led_pattern(self, pattern: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.LED_PATTERN, {"pattern": pattern})

    async def set_pin_mode(self, pin: Any, mode: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.PIN_MODE, {"pin": pin, "mode": mode})

    async def digital_write(self, pin: Any, value: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.DIGITAL_WRITE, {"pin": pin, "value": value})

    async def digital_read(self, pin: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.DIGITAL_READ, {"pin": pin})

    async def analog_write(self, pin: Any, value: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.ANALOG_WRITE, {"pin": pin, "value": value})

    async def analog_read(self, pin: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.ANALOG_READ, {"pin": pin})

    async def servo_write(self, pin: Any, angle: Any) -> Dict[str, Any]:
        return await self.dispatch(Command.SERVO_WRITE, {"pin": pin, "angle": angle})

    async def stop_effects(self) -> Dict[str, Any]:
        return await self.dispatch(Command.STOP_EFFECTS)

    async def reset(self) -> Dict[str, Any]:
        return await self.dispatch(Command.RESET)

    async def status(self) -> Dict[str, Any]:
        return await self.dispatch(Command.STATUS)

    async def ping(self) -> Dict[str, Any]:
        return await self.dispatch(Command.PING)
