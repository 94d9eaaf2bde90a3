"""
Test the Gemini client, the Gemini-backed program and their use by the optimizer components.
"""

import json
import sys
import threading
from unittest.mock import Mock, patch, MagicMock

import pytest

from evoprompt.entities import Example, ExecutionTrace, MutationType
from evoprompt.core import ReflectionEngine
from evoprompt.llm import (
    GeminiLLMClient,
    GeminiProgram,
    LLMUsageStats,
    LLMGenerationError,
    create_llm_client
)


def gemini_response(text, total_tokens=42):
    """Build a mock Gemini response with one candidate."""
    mock_part = Mock()
    mock_part.text = text

    mock_content = Mock()
    mock_content.parts = [mock_part]

    mock_candidate = Mock()
    mock_candidate.content = mock_content

    mock_response = Mock()
    mock_response.candidates = [mock_candidate]
    mock_response.usage_metadata = Mock(total_token_count=total_tokens)
    return mock_response


@pytest.fixture
def mock_genai():
    """Patch google.generativeai with a mock whose model returns a fixed answer."""
    mock_genai = MagicMock()
    mock_model = Mock()
    mock_model.generate_content.return_value = gemini_response("4")
    mock_genai.GenerativeModel.return_value = mock_model

    with patch.dict(sys.modules, {'google.generativeai': mock_genai}):
        yield mock_genai


class TestLLMUsageStats:
    """Test basic usage statistics tracking."""

    def test_usage_stats_creation(self):
        """Test creating and using usage stats."""
        stats = LLMUsageStats()

        assert stats.total_requests == 0
        assert stats.failed_requests == 0

        stats.add_request(failed=False, tokens=100)
        stats.add_request(failed=False, tokens=50)
        stats.add_request(failed=True)

        summary = stats.get_summary()
        assert summary["total_requests"] == 3
        assert summary["successful_requests"] == 2
        assert summary["failed_requests"] == 1
        assert summary["success_rate"] == 2/3
        assert summary["total_tokens"] == 150

    def test_empty_success_rate(self):
        assert LLMUsageStats().get_summary()["success_rate"] == 0.0

    def test_concurrent_updates_not_lost(self):
        """Test counts stay exact when many threads record requests at once."""
        stats = LLMUsageStats()

        def record():
            for i in range(2000):
                stats.add_request(failed=(i % 4 == 0), tokens=3)

        threads = [threading.Thread(target=record) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        summary = stats.get_summary()
        assert summary["total_requests"] == 16000
        assert summary["failed_requests"] == 4000
        assert summary["total_tokens"] == 48000


class TestGeminiLLMClient:
    """Test Gemini LLM client functionality."""

    def test_client_creation_without_google_module(self):
        """Test that client raises error when google module not available."""
        with patch.dict(sys.modules, {'google.generativeai': None}):
            with patch('builtins.__import__', side_effect=ImportError("No module named 'google'")):
                with pytest.raises(LLMGenerationError, match="google-generativeai package not found"):
                    GeminiLLMClient(api_key="test_key")

    def test_gemini_client_initialization(self, mock_genai):
        """Test GeminiLLMClient initialization."""
        client = GeminiLLMClient(api_key="test_key")

        assert client.model_name == "gemini-1.5-pro"
        assert client.api_key == "test_key"
        mock_genai.configure.assert_called_once_with(api_key="test_key")

        generation_config = mock_genai.GenerativeModel.call_args.kwargs["generation_config"]
        assert generation_config["max_output_tokens"] == 2048

    def test_environment_api_key(self, mock_genai):
        GeminiLLMClient()
        mock_genai.configure.assert_called_once_with()

    def test_gemini_generation_success(self, mock_genai):
        """Test successful Gemini generation with token accounting."""
        client = GeminiLLMClient()
        content, tokens = client.generate_with_usage("What is 2+2?")

        assert content == "4"
        assert tokens == 42

        stats = client.get_usage_stats()
        assert stats["total_requests"] == 1
        assert stats["successful_requests"] == 1
        assert stats["total_tokens"] == 42

    def test_generation_overrides(self, mock_genai):
        """Test per-call parameters build a model with the overridden config."""
        client = GeminiLLMClient()
        client.generate("test prompt", temperature=0.1)

        generation_config = mock_genai.GenerativeModel.call_args.kwargs["generation_config"]
        assert generation_config["temperature"] == 0.1
        assert mock_genai.GenerativeModel.call_count == 2

    def test_gemini_generation_failure(self, mock_genai):
        """Test failed Gemini generation."""
        mock_genai.GenerativeModel.return_value.generate_content.side_effect = Exception("API Error")
        client = GeminiLLMClient()

        with pytest.raises(LLMGenerationError, match="Gemini generation failed"):
            client.generate("test prompt")

        stats = client.get_usage_stats()
        assert stats["total_requests"] == 1
        assert stats["failed_requests"] == 1
        assert stats["success_rate"] == 0.0

    def test_empty_response(self, mock_genai):
        empty = Mock()
        empty.candidates = []
        mock_genai.GenerativeModel.return_value.generate_content.return_value = empty
        client = GeminiLLMClient()

        with pytest.raises(LLMGenerationError, match="No content"):
            client.generate("test prompt")

    def test_propose_instruction(self, mock_genai):
        """Test proposals are stripped of whitespace and quotes."""
        mock_genai.GenerativeModel.return_value.generate_content.return_value = gemini_response(
            '  "Answer with a single number."\n'
        )
        client = GeminiLLMClient()

        proposal = client.propose_instruction(
            original_instruction="Answer",
            trace_analysis="- Total traces: 2",
            failure_analysis="No failed examples to analyze",
        )

        assert proposal == "Answer with a single number."
        prompt = mock_genai.GenerativeModel.return_value.generate_content.call_args.args[0]
        assert "Answer" in prompt
        assert "- Total traces: 2" in prompt

    def test_reset_usage_stats(self, mock_genai):
        client = GeminiLLMClient()
        client.generate("test prompt")
        client.reset_usage_stats()

        assert client.get_usage_stats()["total_requests"] == 0


class TestGeminiProgram:
    """Test the Gemini-backed program."""

    def test_call(self, mock_genai):
        program = GeminiProgram(GeminiLLMClient(model_name="gemini-1.5-flash"), "Answer the question")
        prediction = program.call(question="What is 2+2?")

        assert prediction["answer"] == "4"
        assert prediction["usage"] == {"total_tokens": 42, "model": "gemini-1.5-flash"}

    def test_with_instruction(self, mock_genai):
        """Test re-instructing keeps the client and demonstrations."""
        demo = Example(inputs={"question": "What is 1+1?"}, expected={"answer": "2"})
        program = GeminiProgram(GeminiLLMClient(), "Answer", demonstrations=[demo])

        changed = program.with_instruction("Answer concisely")

        assert changed.instruction_text() == "Answer concisely"
        assert program.instruction_text() == "Answer"
        assert changed.client is program.client
        assert changed.few_shot_examples() == (demo,)

    def test_render_prompt(self, mock_genai):
        demo = Example(inputs={"question": "What is 1+1?"}, expected={"answer": "2"})
        program = GeminiProgram(GeminiLLMClient(), "Answer the question", demonstrations=[demo])

        prompt = program.render_prompt(question="What is 2+2?", user_name="Sam")

        assert prompt.startswith("Answer the question")
        assert "Question: What is 1+1?\nAnswer: 2\n" in prompt
        assert "Question: What is 2+2?" in prompt
        assert "User Name: Sam" in prompt


class TestLLMClientFactory:
    """Test the LLM client factory function."""

    def test_create_gemini_client(self, mock_genai):
        """Test creating Gemini client."""
        client = create_llm_client("gemini", api_key="test")

        assert isinstance(client, GeminiLLMClient)
        assert client.model_name == "gemini-1.5-pro"

    def test_create_custom_model(self, mock_genai):
        client = create_llm_client("Gemini", model_name="gemini-1.5-flash", temperature=0.3)

        assert client.model_name == "gemini-1.5-flash"
        assert client.config["temperature"] == 0.3

    def test_create_invalid_provider(self):
        """Test creating client with invalid provider."""
        with pytest.raises(ValueError, match="Unsupported LLM provider"):
            create_llm_client("invalid_provider")


class TestIntegrationWithReflection:
    """Test the client as the reflection model."""

    def test_reflection_flow(self, mock_genai):
        """Test traces -> reflection prompt -> Gemini -> parsed reflection."""
        mock_genai.GenerativeModel.return_value.generate_content.return_value = gemini_response(
            "```json\n" + json.dumps({
                "diagnosis": "Answers lack units",
                "improvements": ["Ask for units"],
                "confidence": 0.75,
                "reasoning": "Several answers were bare numbers",
                "suggested_mutations": ["expand"],
            }) + "\n```"
        )
        client = create_llm_client("gemini")
        engine = ReflectionEngine(reflection_lm=client)
        traces = [
            ExecutionTrace(trace_id="t1", event_name="llm.predict",
                           attributes={"tokens": 30, "model": "gemini-1.5-pro", "response": "4"}),
        ]

        result = engine.reflect_with_llm(traces, {"generation": 2})

        assert result.diagnosis == "Answers lack units"
        assert result.suggested_mutations == (MutationType.EXPAND,)
        assert result.metadata["llm_based"] is True

        prompt = mock_genai.GenerativeModel.return_value.generate_content.call_args.args[0]
        assert "Total traces: 1" in prompt
        generation_config = mock_genai.GenerativeModel.call_args.kwargs["generation_config"]
        assert generation_config["temperature"] == 0.2
        assert client.get_usage_stats()["successful_requests"] == 1
