"""Gemini REST client implementing :class:`~ardubridge.llm.base.LanguageModel`."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from ..constants import DEFAULT_MODEL
from ..errors import ModelError
from .base import FunctionCall, ModelTurn, model_content

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

SYSTEM_INSTRUCTION = (
    "You control an Arduino board through the provided functions. "
    "Call functions to act on the hardware instead of describing code, "
    "then briefly confirm what was done. If a function returns an error, "
    "explain it to the user in plain words."
)


class GeminiClient:
    """Client for the Gemini ``generateContent`` endpoint."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        *,
        base_url: str = GEMINI_BASE_URL,
        timeout: float = 30.0,
        system_instruction: Optional[str] = SYSTEM_INSTRUCTION,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.system_instruction = system_instruction
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def __repr__(self) -> str:
        return f"GeminiClient(model={self.model!r})"

    def _get_headers(self) -> Dict[str, str]:
        return {
            "x-goog-api-key": self._api_key,
            "Content-Type": "application/json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_request(
        self,
        contents: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"contents": list(contents)}
        if tools:
            body["tools"] = [{"functionDeclarations": list(tools)}]
        if self.system_instruction:
            body["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        return body

    async def generate(
        self,
        contents: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
    ) -> ModelTurn:
        """
        Generate the next model turn.

        Args:
            contents: Conversation so far
            tools: Function declarations the model may call

        Returns:
            ModelTurn with text and any requested function calls

        Raises:
            ModelError: On transport failure, HTTP error or an empty answer
        """
        url = f"{self.base_url}/models/{self.model}:generateContent"
        try:
            client = await self._get_client()
            response = await client.post(
                url,
                headers=self._get_headers(),
                json=self.build_request(contents, tools),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Gemini request failed with HTTP {status}")
            raise ModelError(
                f"AI processing failed: HTTP {status}",
                details={"status": status, "body": _error_message(e.response)},
                cause=e,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Gemini request failed: {e}")
            raise ModelError(f"AI processing failed: {e}", cause=e) from e

        return parse_response(payload)


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        return response.json().get("error", {}).get("message")
    except (ValueError, AttributeError):
        return None


def parse_response(payload: Mapping[str, Any]) -> ModelTurn:
    """Convert a ``generateContent`` response body into a :class:`ModelTurn`."""
    candidates = payload.get("candidates") or []
    if not candidates:
        feedback = payload.get("promptFeedback") or {}
        raise ModelError("AI returned no answer", details={"promptFeedback": feedback})

    parts: List[Mapping[str, Any]] = (candidates[0].get("content") or {}).get("parts") or []
    texts: List[str] = []
    calls: List[FunctionCall] = []
    for part in parts:
        if "functionCall" in part:
            call = part["functionCall"] or {}
            calls.append(
                FunctionCall(
                    name=str(call.get("name", "")),
                    args=dict(call.get("args") or {}),
                    id=call.get("id"),
                )
            )
        elif part.get("text"):
            texts.append(part["text"])

    if not texts and not calls:
        raise ModelError(
            "AI returned no answer",
            details={"finishReason": candidates[0].get("finishReason")},
        )

    text = "".join(texts)
    return ModelTurn(text=text, function_calls=calls, content=model_content(text, calls))
