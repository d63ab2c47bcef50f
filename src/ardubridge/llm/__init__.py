"""Language model integration."""

from .base import (
    FunctionCall,
    FunctionOutcome,
    LanguageModel,
    ModelTurn,
    function_response_content,
    model_content,
    user_content,
)
from .gemini import GeminiClient, parse_response

__all__ = [
    "FunctionCall",
    "FunctionOutcome",
    "GeminiClient",
    "LanguageModel",
    "ModelTurn",
    "function_response_content",
    "model_content",
    "parse_response",
    "user_content",
]
