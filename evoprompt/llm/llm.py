"""
Gemini collaborators for the evoprompt optimizer.

GeminiLLMClient generates text with Google Gemini and implements both the
reflection-model contract (reflect) and the instruction-proposal contract
used by rewrite mutations (propose_instruction). GeminiProgram is an
instruction-evolvable program that answers examples through the client.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence, Tuple

from ..core.programs import InstructionProgram
from ..core.prompts import INSTRUCTION_PROPOSAL_PROMPT, PREDICT_PROMPT
from ..core.reflection import ReflectionRequest
from ..entities import Example


logger = logging.getLogger(__name__)


@dataclass
class LLMUsageStats:
    """Basic LLM usage tracking, safe to update from worker threads."""
    total_requests: int = 0
    failed_requests: int = 0
    total_tokens: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_request(self, failed: bool = False, tokens: int = 0):
        """Add a request to the usage statistics."""
        with self._lock:
            self.total_requests += 1
            self.total_tokens += tokens
            if failed:
                self.failed_requests += 1

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of usage statistics."""
        with self._lock:
            total, failed, tokens = self.total_requests, self.failed_requests, self.total_tokens

        return {
            "total_requests": total,
            "successful_requests": total - failed,
            "failed_requests": failed,
            "success_rate": (total - failed) / max(1, total),
            "total_tokens": tokens,
        }


class LLMGenerationError(Exception):
    """Exception raised when LLM generation fails."""
    pass


class GeminiLLMClient:
    """
    Google Gemini client.

    Requires google-generativeai package to be installed.
    """

    def __init__(self, model_name: str = "gemini-1.5-pro", api_key: Optional[str] = None, **kwargs):
        self.model_name = model_name
        self.api_key = api_key
        self.config = kwargs
        self.usage_stats = LLMUsageStats()
        self._client = None
        self._safety_settings = []
        self._initialize_client()

    def _initialize_client(self):
        """Initialize the Gemini client."""
        try:
            import google.generativeai as genai

            if self.api_key:
                genai.configure(api_key=self.api_key)
            else:
                # Will try to use GOOGLE_API_KEY environment variable
                genai.configure()

            self._safety_settings = [
                {"category": "HARM_CATEGORY_HARASSMENT", "threshold": "BLOCK_NONE"},
                {"category": "HARM_CATEGORY_HATE_SPEECH", "threshold": "BLOCK_NONE"},
                {"category": "HARM_CATEGORY_SEXUALLY_EXPLICIT", "threshold": "BLOCK_NONE"},
                {"category": "HARM_CATEGORY_DANGEROUS_CONTENT", "threshold": "BLOCK_NONE"},
            ]

            self._client = genai.GenerativeModel(
                model_name=self.model_name,
                generation_config=self._generation_config(),
                safety_settings=self._safety_settings
            )

            logger.info(f"Initialized Gemini client with model: {self.model_name}")

        except ImportError:
            raise LLMGenerationError(
                "google-generativeai package not found. Install with: pip install google-generativeai"
            )
        except Exception as e:
            raise LLMGenerationError(f"Failed to initialize Gemini client: {e}")

    def _generation_config(self, **overrides) -> Dict[str, Any]:
        return {
            "temperature": overrides.get("temperature", self.config.get("temperature", 0.7)),
            "top_p": overrides.get("top_p", self.config.get("top_p", 0.8)),
            "top_k": overrides.get("top_k", self.config.get("top_k", 40)),
            "max_output_tokens": overrides.get("max_output_tokens",
                                               self.config.get("max_output_tokens", 2048)),
        }

    def generate(self, prompt: str, **kwargs) -> str:
        """
        Generate a response using Gemini.

        Args:
            prompt: The input prompt
            **kwargs: Generation parameters that override the defaults

        Returns:
            Generated content as string

        Raises:
            LLMGenerationError: If generation fails
        """
        content, _ = self.generate_with_usage(prompt, **kwargs)
        return content

    def generate_with_usage(self, prompt: str, **kwargs) -> Tuple[str, int]:
        """Generate a response and report the total token count of the call."""
        if not self._client:
            raise LLMGenerationError("Gemini client not initialized")

        try:
            if kwargs:
                import google.generativeai as genai
                model = genai.GenerativeModel(
                    model_name=self.model_name,
                    generation_config=self._generation_config(**kwargs),
                    safety_settings=self._safety_settings
                )
                response = model.generate_content(prompt)
            else:
                response = self._client.generate_content(prompt)

            if response.candidates and response.candidates[0].content.parts:
                content = response.candidates[0].content.parts[0].text
            else:
                raise LLMGenerationError("No content in Gemini response")

            tokens = self._total_tokens(response)
            self.usage_stats.add_request(failed=False, tokens=tokens)
            logger.debug(f"Gemini generation successful ({tokens} tokens)")

            return content, tokens

        except Exception as e:
            self.usage_stats.add_request(failed=True)
            logger.error(f"Gemini generation failed: {e}")
            raise LLMGenerationError(f"Gemini generation failed: {e}")

    def reflect(self, request: ReflectionRequest) -> str:
        """Reflection-model contract: returns the model's JSON analysis as text."""
        return self.generate(request.to_prompt(), temperature=self.config.get("reflection_temperature", 0.2))

    def propose_instruction(self, original_instruction: str, trace_analysis: str,
                            failure_analysis: str) -> str:
        """Ask the model for an improved instruction."""
        prompt = INSTRUCTION_PROPOSAL_PROMPT.format(
            original_instruction=original_instruction,
            trace_analysis=trace_analysis,
            failure_analysis=failure_analysis,
        )
        return self.generate(prompt).strip().strip('"').strip()

    def get_usage_stats(self) -> Dict[str, Any]:
        """Get current usage statistics."""
        return self.usage_stats.get_summary()

    def reset_usage_stats(self):
        """Reset usage statistics."""
        self.usage_stats = LLMUsageStats()

    @staticmethod
    def _total_tokens(response: Any) -> int:
        usage = getattr(response, "usage_metadata", None)
        try:
            return int(getattr(usage, "total_token_count", 0) or 0)
        except (TypeError, ValueError):
            return 0


class GeminiProgram(InstructionProgram):
    """Program that answers an example by prompting Gemini with its instruction."""

    def __init__(self, client: GeminiLLMClient, instruction: str,
                 demonstrations: Sequence[Example] = ()):
        self.client = client
        self.instruction = instruction
        self.demonstrations = tuple(demonstrations)

    def instruction_text(self) -> str:
        return self.instruction

    def with_instruction(self, instruction: str) -> "GeminiProgram":
        return GeminiProgram(self.client, instruction, self.demonstrations)

    def few_shot_examples(self) -> Sequence[Example]:
        return self.demonstrations

    def render_prompt(self, **inputs: Any) -> str:
        demonstrations = ""
        for demo in self.demonstrations:
            demonstrations += self._format_fields(demo.inputs)
            demonstrations += self._format_fields(demo.expected) + "\n"
        return PREDICT_PROMPT.format(
            instruction=self.instruction,
            demonstrations=demonstrations,
            inputs=self._format_fields(inputs),
        )

    def call(self, **inputs: Any) -> Dict[str, Any]:
        answer, tokens = self.client.generate_with_usage(self.render_prompt(**inputs))
        return {
            "answer": answer.strip(),
            "usage": {"total_tokens": tokens, "model": self.client.model_name},
        }

    @staticmethod
    def _format_fields(fields: Any) -> str:
        return "".join(f"{name.replace('_', ' ').title()}: {value}\n" for name, value in fields.items())


# Factory function for creating the client
def create_llm_client(provider: str = "gemini", model_name: str = None, **kwargs) -> GeminiLLMClient:
    """
    Create an LLM client for use in the optimizer.

    Args:
        provider: LLM provider (currently only "gemini" supported)
        model_name: Model name (defaults to "gemini-1.5-pro")
        **kwargs: Additional configuration parameters

    Returns:
        GeminiLLMClient instance ready for use

    Raises:
        ValueError: If provider is not supported
    """
    if provider.lower() == "gemini":
        default_model = "gemini-1.5-pro"
        return GeminiLLMClient(model_name or default_model, **kwargs)
    else:
        raise ValueError(f"Unsupported LLM provider: {provider}. Available: 'gemini'")
