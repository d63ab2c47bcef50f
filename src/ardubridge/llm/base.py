"""Language model contract used by the relay's tool-call loop.

The conversation context is a list of Gemini-style ``contents`` entries
(``{"role": ..., "parts": [...]}``). The relay only appends to it; the model
client is the only component that reads it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence


@dataclass(slots=True)
class FunctionCall:
    """A single function call requested by the model."""

    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass(slots=True)
class FunctionOutcome:
    """Result or error of one executed function call."""

    call: FunctionCall
    result: Any = None
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.error is None

    def response(self) -> Dict[str, Any]:
        """Payload handed back to the model."""
        if self.error is not None:
            return {"error": self.error.get("message", "Function failed"), "code": self.error.get("code")}
        return {"result": self.result}

    def summary(self) -> Dict[str, Any]:
        """Entry reported to the user in ``functionsCalled``."""
        entry: Dict[str, Any] = {"name": self.call.name, "args": self.call.args, "success": self.success}
        if self.error is not None:
            entry["error"] = self.error
        else:
            entry["result"] = self.result
        return entry


@dataclass(slots=True)
class ModelTurn:
    """One model reply: final text and/or function calls."""

    text: str = ""
    function_calls: List[FunctionCall] = field(default_factory=list)
    content: Dict[str, Any] = field(default_factory=dict)


class LanguageModel(Protocol):
    """Opaque generate + function-call collaborator."""

    async def generate(
        self,
        contents: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
    ) -> ModelTurn: ...

    async def close(self) -> None: ...


def user_content(text: str) -> Dict[str, Any]:
    return {"role": "user", "parts": [{"text": text}]}


def function_response_content(outcomes: Sequence[FunctionOutcome]) -> Dict[str, Any]:
    """Build the context entry carrying every function result of one turn."""
    parts = []
    for outcome in outcomes:
        part: Dict[str, Any] = {"name": outcome.call.name, "response": outcome.response()}
        if outcome.call.id:
            part["id"] = outcome.call.id
        parts.append({"functionResponse": part})
    return {"role": "user", "parts": parts}


def model_content(text: str, calls: Sequence[FunctionCall]) -> Dict[str, Any]:
    """Build a model context entry from text and function calls."""
    parts: List[Dict[str, Any]] = []
    if text:
        parts.append({"text": text})
    for call in calls:
        function_call: Dict[str, Any] = {"name": call.name, "args": call.args}
        if call.id:
            function_call["id"] = call.id
        parts.append({"functionCall": function_call})
    return {"role": "model", "parts": parts}
