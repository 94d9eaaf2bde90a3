"""
Test trace reflection, rule-based and through a reflection model.
"""

import json
from unittest.mock import Mock

import pytest

from evoprompt.entities import ExecutionTrace, MutationType
from evoprompt.core import ReflectionConfig, ReflectionEngine, ReflectionRequest


VALID_MUTATIONS = set(MutationType)


def llm_trace(trace_id, tokens=100, model="gemini-1.5-pro", response="ok", timestamp=100.0):
    return ExecutionTrace(
        trace_id=trace_id,
        event_name="llm.predict",
        timestamp=timestamp,
        attributes={"tokens": tokens, "model": model, "response": response, "prompt": "Answer"},
    )


def module_trace(trace_id, timestamp=100.0):
    return ExecutionTrace(trace_id=trace_id, event_name="module.predict_complete",
                          timestamp=timestamp, attributes={"response": "a fairly long response text"})


@pytest.fixture
def short_traces():
    """Two LLM calls with brief responses and modest token usage."""
    return [llm_trace("t1", timestamp=100.0), llm_trace("t2", timestamp=101.5)]


@pytest.fixture
def heavy_traces():
    return [
        llm_trace("h1", tokens=400, response="A detailed and long answer to the question"),
        llm_trace("h2", tokens=300, model="gemini-1.5-flash",
                  response="Another detailed and long answer here"),
        llm_trace("h3", tokens=300, response="Yet another long explanation of the answer"),
        module_trace("m1"),
    ]


def reflection_json(**overrides):
    payload = {
        "diagnosis": "Responses are too terse",
        "improvements": ["Ask for a short justification", "State the answer format"],
        "confidence": 0.8,
        "reasoning": "Most responses were a single word",
        "suggested_mutations": ["expand", "rephrase"],
        "insights": {"pattern_detected": "terse_output"},
    }
    payload.update(overrides)
    return json.dumps(payload)


class TestRuleBasedReflection:
    """Test reflection without a reflection model."""

    def test_no_traces(self):
        """Test the terminal result for an empty trace list."""
        result = ReflectionEngine().reflect_on_traces([])

        assert result.confidence == 0.0
        assert "No traces" in result.diagnosis
        assert result.improvements == ()
        assert result.suggested_mutations == ()
        assert result.trace_id.startswith("reflection-")

    def test_analyze_execution_patterns(self, heavy_traces):
        patterns = ReflectionEngine().analyze_execution_patterns(heavy_traces)

        assert patterns["llm_traces_count"] == 3
        assert patterns["module_traces_count"] == 1
        assert patterns["total_tokens"] == 1000
        assert patterns["unique_models"] == ["gemini-1.5-flash", "gemini-1.5-pro"]
        assert patterns["avg_response_length"] > 15

    def test_timespan(self, short_traces):
        patterns = ReflectionEngine().analyze_execution_patterns(short_traces)
        assert patterns["trace_timespan"] == pytest.approx(1.5)

    def test_suggestions_differ_by_token_usage(self):
        """Test high and low token patterns produce different suggestions."""
        engine = ReflectionEngine()
        base = {"llm_traces_count": 2, "module_traces_count": 1, "unique_models": ["m"],
                "avg_response_length": 50}
        high = engine.generate_improvement_suggestions({**base, "total_tokens": 5000})
        low = engine.generate_improvement_suggestions({**base, "total_tokens": 10})

        assert high != low
        assert any("token" in s.lower() for s in high)

    def test_suggest_mutations_in_fixed_set(self):
        """Test every suggestion comes from the fixed mutation set."""
        engine = ReflectionEngine()
        for patterns in [
            {},
            {"avg_response_length": 5},
            {"total_tokens": 1000, "llm_traces_count": 5, "avg_response_length": 100},
            {"llm_traces_count": 1, "avg_response_length": 100},
            {"avg_response_length": 100},
        ]:
            mutations = engine.suggest_mutations(patterns)
            assert mutations
            assert set(mutations) <= VALID_MUTATIONS

    def test_suggest_mutations_rules(self):
        engine = ReflectionEngine()

        assert engine.suggest_mutations({"avg_response_length": 5}) == [MutationType.EXPAND]
        assert engine.suggest_mutations({"avg_response_length": 100, "total_tokens": 1000,
                                         "llm_traces_count": 3}) == [MutationType.SIMPLIFY,
                                                                     MutationType.COMBINE]
        assert engine.suggest_mutations({"avg_response_length": 100}) == [MutationType.REPHRASE]

    def test_thresholds_configurable(self):
        """Test rule thresholds come from configuration."""
        engine = ReflectionEngine(ReflectionConfig(expand_response_length=1))
        assert MutationType.EXPAND not in engine.suggest_mutations({"avg_response_length": 5})

    def test_reflect_on_traces(self, heavy_traces):
        result = ReflectionEngine(ReflectionConfig(reflection_model="gemini-1.5-pro")).reflect_on_traces(heavy_traces)

        assert "token usage" in result.diagnosis.lower()
        assert 0.0 < result.confidence <= 1.0
        assert result.suggested_mutations
        assert result.metadata["trace_count"] == 4
        assert result.reflection_model == "gemini-1.5-pro"

    def test_optimization_insights(self, heavy_traces):
        insights = ReflectionEngine().extract_optimization_insights(heavy_traces)

        assert insights["token_efficiency"]["status"] == "moderate"
        assert insights["model_consistency"]["unique_models"] == 2

    def test_reflection_prompt(self, short_traces):
        prompt = ReflectionEngine().generate_reflection_prompt(short_traces, {"generation": 4})

        assert "Total traces: 2" in prompt
        assert "generation: 4" in prompt
        assert '"suggested_mutations"' in prompt


class TestLLMReflection:
    """Test reflection through a reflection model."""

    def test_without_model_is_rule_based(self, short_traces):
        result = ReflectionEngine().reflect_with_llm(short_traces)
        assert result.metadata["llm_based"] is False

    def test_valid_response(self, short_traces):
        """Test a well-formed response becomes the reflection result."""
        lm = Mock()
        lm.reflect.return_value = reflection_json()
        result = ReflectionEngine(reflection_lm=lm).reflect_with_llm(short_traces, {"generation": 1})

        assert result.diagnosis == "Responses are too terse"
        assert result.confidence == pytest.approx(0.8)
        assert result.suggested_mutations == (MutationType.EXPAND, MutationType.REPHRASE)
        assert result.metadata["insights"]["pattern_detected"] == "terse_output"

        request = lm.reflect.call_args.args[0]
        assert isinstance(request, ReflectionRequest)
        assert "Total traces: 2" in request.trace_summary
        assert request.optimization_context == {"generation": 1}

    def test_invalid_mutations_filtered(self, short_traces):
        """Test unknown mutation names are dropped."""
        lm = Mock()
        lm.reflect.return_value = reflection_json(suggested_mutations=["teleport", "simplify"])
        result = ReflectionEngine(reflection_lm=lm).reflect_with_llm(short_traces)

        assert result.suggested_mutations == (MutationType.SIMPLIFY,)

    def test_all_mutations_invalid(self, short_traces):
        lm = Mock()
        lm.reflect.return_value = reflection_json(suggested_mutations=["teleport"])
        result = ReflectionEngine(reflection_lm=lm).reflect_with_llm(short_traces)

        assert result.suggested_mutations == (MutationType.REWRITE,)

    @pytest.mark.parametrize("response", [
        "this is not json",
        "[1, 2, 3]",
        '{"unexpected": true}',
        '{"diagnosis": "x", "confidence": "very"}',
        '{"diagnosis": "x", "improvements": 5}',
    ])
    def test_malformed_response(self, short_traces, response):
        """Test malformed responses degrade to a low-confidence result."""
        result = ReflectionEngine().parse_llm_reflection(response, short_traces)

        assert "parsing error" in result.diagnosis
        assert result.confidence < 0.5
        assert result.suggested_mutations == (MutationType.REWRITE,)

    def test_fenced_and_mapping_responses(self, short_traces):
        engine = ReflectionEngine()
        fenced = engine.parse_llm_reflection("```json\n" + reflection_json() + "\n```", short_traces)
        mapping = engine.parse_llm_reflection(json.loads(reflection_json()), short_traces)

        assert fenced.diagnosis == "Responses are too terse"
        assert mapping.diagnosis == "Responses are too terse"

    def test_confidence_clamped(self, short_traces):
        result = ReflectionEngine().parse_llm_reflection(reflection_json(confidence=1.7), short_traces)
        assert result.confidence == 1.0

    def test_model_failure_falls_back(self, short_traces):
        """Test a failing reflection model yields a halved-confidence rule-based result."""
        lm = Mock()
        lm.reflect.side_effect = RuntimeError("quota exceeded")
        result = ReflectionEngine(reflection_lm=lm).reflect_with_llm(short_traces)

        assert result.confidence <= 0.5
        assert result.metadata["fallback_used"] is True
        assert "quota exceeded" in result.diagnosis


class TestContextualReflection:
    """Test reflection informed by optimization history."""

    def test_overused_mutations_dropped(self, short_traces):
        """Test kinds used repeatedly in recent history are removed."""
        engine = ReflectionEngine()
        assert engine.reflect_on_traces(short_traces).suggested_mutations == (MutationType.EXPAND,)

        result = engine.reflection_with_context(short_traces, {
            "generation": 3,
            "population_size": 4,
            "mutation_history": ["expand", "simplify", "expand"],
        })

        assert MutationType.EXPAND not in result.suggested_mutations
        assert result.suggested_mutations == (MutationType.REWRITE,)
        assert result.reasoning.startswith("Generation 3 analysis.")
        assert result.metadata["optimization_context"]["generation"] == 3

    def test_old_history_ignored(self, short_traces):
        """Test only the recent history window counts."""
        history = ["expand", "expand", "combine", "combine", "combine", "rewrite", "rewrite"]
        result = ReflectionEngine().reflection_with_context(short_traces, {"mutation_history": history})

        assert MutationType.EXPAND in result.suggested_mutations

    def test_declining_trend(self, short_traces):
        result = ReflectionEngine().reflection_with_context(short_traces, {
            "recent_performance_trend": "declining",
        })

        assert MutationType.EXPAND not in result.suggested_mutations
        assert MutationType.SIMPLIFY in result.suggested_mutations
        assert MutationType.REPHRASE in result.suggested_mutations

    def test_no_traces_terminal(self):
        result = ReflectionEngine().reflection_with_context([], {"generation": 1})

        assert result.confidence == 0.0
        assert result.suggested_mutations == ()
