"""
LLM module for evoprompt.

Gemini-backed reflection model, instruction proposer and program.
"""

from .llm import (
    GeminiLLMClient,
    GeminiProgram,
    LLMUsageStats,
    LLMGenerationError,
    create_llm_client
)

__all__ = [
    "GeminiLLMClient",
    "GeminiProgram",
    "LLMUsageStats",
    "LLMGenerationError",
    "create_llm_client"
]
