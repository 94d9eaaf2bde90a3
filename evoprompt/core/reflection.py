"""
Reflective analysis of execution traces.

ReflectionEngine diagnoses weaknesses in a generation's execution traces and
suggests which mutation kinds to apply next. Analysis is rule-based by
default; when a reflection language model is attached, it is asked for a
structured JSON judgement which is validated on receipt and degrades to a
low-confidence result when it cannot be parsed.
"""

import json
import logging
import re
import secrets
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

from ..entities import ExecutionTrace, MutationType, ReflectionResult
from .prompts import REFLECTION_PROMPT


logger = logging.getLogger(__name__)


class ReflectionParseError(Exception):
    """The reflection model's response did not match the expected structure."""
    pass


@dataclass
class ReflectionConfig:
    """Tuning constants for rule-based reflection."""
    reflection_model: Optional[str] = None
    high_token_threshold: int = 500
    diagnosis_token_threshold: int = 400
    simplify_token_threshold: int = 300
    confidence_token_threshold: int = 1000
    brief_response_length: int = 10
    expand_response_length: int = 15
    llm_to_module_ratio: int = 3
    combine_llm_count: int = 2
    base_confidence: float = 0.7
    poor_avg_tokens: float = 400.0
    moderate_avg_tokens: float = 200.0
    length_variance_threshold: float = 1000.0
    history_window: int = 5
    overuse_threshold: int = 2
    sample_trace_count: int = 3


@dataclass(frozen=True)
class ReflectionRequest:
    """Structured request sent to a reflection language model."""
    trace_summary: str
    optimization_context: Mapping[str, Any] = field(default_factory=dict)
    insights: Mapping[str, Any] = field(default_factory=dict)
    sample_traces: Sequence[str] = ()

    def to_prompt(self) -> str:
        context_lines = "\n".join(
            f"- {key}: {value}" for key, value in self.optimization_context.items()
        )
        insight_lines = "\n".join(
            f"- {key}: {value}" for key, value in self.insights.items()
        ) or "- none"
        return REFLECTION_PROMPT.format(
            trace_summary=self.trace_summary,
            context_lines=context_lines,
            insight_lines=insight_lines,
            sample_traces="\n".join(self.sample_traces) or "N/A",
        )


class ReflectionLM(Protocol):
    """Reflection model: returns a JSON string or mapping with the fixed field set."""

    def reflect(self, request: ReflectionRequest) -> Union[str, Mapping[str, Any]]:
        ...


RESPONSE_FIELDS = ("diagnosis", "improvements", "confidence", "reasoning", "suggested_mutations")


class ReflectionEngine:
    """Analyzes traces and proposes mutation kinds."""

    def __init__(self, config: Optional[ReflectionConfig] = None,
                 reflection_lm: Optional[ReflectionLM] = None):
        self.config = config or ReflectionConfig()
        self.reflection_lm = reflection_lm

    def reflect_on_traces(self, traces: Sequence[ExecutionTrace]) -> ReflectionResult:
        """
        Rule-based reflection over execution traces.

        Args:
            traces: Execution traces to analyze

        Returns:
            ReflectionResult; with no traces the result has zero confidence
            and no improvements.
        """
        reflection_id = self._generate_reflection_id()
        start = time.time()

        if not traces:
            return ReflectionResult(
                trace_id=reflection_id,
                diagnosis="No traces available for analysis",
                improvements=(),
                confidence=0.0,
                reasoning="Cannot provide reflection without execution traces",
                suggested_mutations=(),
                metadata={
                    "reflection_model": self.config.reflection_model,
                    "analysis_timestamp": time.time(),
                    "trace_count": 0,
                },
            )

        patterns = self.analyze_execution_patterns(traces)
        return ReflectionResult(
            trace_id=reflection_id,
            diagnosis=self._generate_diagnosis(patterns),
            improvements=tuple(self.generate_improvement_suggestions(patterns)),
            confidence=self._calculate_confidence(patterns),
            reasoning=self._generate_reasoning(patterns, traces),
            suggested_mutations=tuple(self.suggest_mutations(patterns)),
            metadata={
                "reflection_model": self.config.reflection_model,
                "analysis_timestamp": time.time(),
                "analysis_duration_ms": int((time.time() - start) * 1000),
                "trace_count": len(traces),
                "token_usage": 0,
                "llm_based": False,
            },
        )

    def analyze_execution_patterns(self, traces: Sequence[ExecutionTrace]) -> Dict[str, Any]:
        """Counts, token totals and model usage across the traces."""
        llm_traces = [t for t in traces if t.is_llm_trace()]
        module_traces = [t for t in traces if t.is_module_trace()]

        return {
            "llm_traces_count": len(llm_traces),
            "module_traces_count": len(module_traces),
            "total_tokens": sum(t.token_usage for t in llm_traces),
            "unique_models": sorted({t.model_name for t in llm_traces if t.model_name}),
            "avg_response_length": self._avg_response_length(traces),
            "trace_timespan": self._timespan(traces),
            "error_count": sum(1 for t in traces if t.attributes.get("error")),
        }

    def generate_improvement_suggestions(self, patterns: Mapping[str, Any]) -> List[str]:
        cfg = self.config
        suggestions = []
        total_tokens = patterns.get("total_tokens", 0)

        if total_tokens > cfg.high_token_threshold:
            suggestions.append("Consider reducing prompt length to lower token usage")
        if patterns.get("avg_response_length", 0) < cfg.brief_response_length:
            suggestions.append("Responses seem brief - consider asking for more detailed explanations")
        if patterns.get("llm_traces_count", 0) > patterns.get("module_traces_count", 0) * cfg.llm_to_module_ratio:
            suggestions.append("High LLM usage detected - consider optimizing reasoning chains")
        if len(patterns.get("unique_models", [])) > 1:
            suggestions.append("Multiple models used - consider standardizing on one model for consistency")
        if patterns.get("error_count", 0) > 0:
            suggestions.append("Some calls failed - make the expected output format explicit")

        if not suggestions:
            suggestions.append("Add step-by-step reasoning instructions")
        elif total_tokens <= cfg.high_token_threshold:
            suggestions.append("Token budget allows richer guidance - consider adding worked reasoning")
        return suggestions

    def suggest_mutations(self, patterns: Mapping[str, Any]) -> List[MutationType]:
        cfg = self.config
        mutations = []
        avg_length = patterns.get("avg_response_length", 0) or 0
        total_tokens = patterns.get("total_tokens", 0) or 0
        llm_count = patterns.get("llm_traces_count", 0) or 0

        if avg_length < cfg.expand_response_length:
            mutations.append(MutationType.EXPAND)
        if total_tokens > cfg.simplify_token_threshold:
            mutations.append(MutationType.SIMPLIFY)
        if llm_count > cfg.combine_llm_count:
            mutations.append(MutationType.COMBINE)
        if llm_count == 1:
            mutations.append(MutationType.REWRITE)
        if not mutations:
            mutations.append(MutationType.REPHRASE)

        return list(dict.fromkeys(mutations))

    def reflect_with_llm(self, traces: Sequence[ExecutionTrace],
                         context: Optional[Mapping[str, Any]] = None) -> ReflectionResult:
        """
        Reflection through the attached reflection model.

        Without a model this is the rule-based analysis. If the model call
        fails, the rule-based result is returned with its confidence halved.
        """
        if not traces or self.reflection_lm is None:
            return self.reflect_on_traces(traces)

        request = self.build_reflection_request(traces, context)
        try:
            response = self.reflection_lm.reflect(request)
        except Exception as e:
            logger.warning(f"LLM reflection failed, using rule-based analysis: {e}")
            fallback = self.reflect_on_traces(traces)
            return ReflectionResult(
                trace_id=fallback.trace_id,
                diagnosis=f"LLM reflection failed ({e}), using fallback analysis: {fallback.diagnosis}",
                improvements=fallback.improvements,
                confidence=min(fallback.confidence * 0.5, 0.5),
                reasoning=f"Fallback to rule-based analysis after LLM error: {fallback.reasoning}",
                suggested_mutations=fallback.suggested_mutations,
                metadata={**fallback.metadata, "llm_error": str(e), "fallback_used": True},
            )

        return self.parse_llm_reflection(response, traces)

    def build_reflection_request(self, traces: Sequence[ExecutionTrace],
                                 context: Optional[Mapping[str, Any]] = None) -> ReflectionRequest:
        return ReflectionRequest(
            trace_summary=self.trace_summary_for_reflection(traces),
            optimization_context=dict(context or {}),
            insights=self.extract_optimization_insights(traces),
            sample_traces=self._format_traces(traces[:self.config.sample_trace_count]),
        )

    def generate_reflection_prompt(self, traces: Sequence[ExecutionTrace],
                                   context: Optional[Mapping[str, Any]] = None) -> str:
        return self.build_reflection_request(traces, context).to_prompt()

    def parse_llm_reflection(self, response: Union[str, Mapping[str, Any]],
                             original_traces: Sequence[ExecutionTrace]) -> ReflectionResult:
        """
        Turn a reflection model response into a ReflectionResult.

        Malformed responses never raise; they produce a result whose diagnosis
        reports the parsing error and whose confidence is 0.3. Mutation names
        outside the fixed set are dropped.
        """
        reflection_id = self._generate_reflection_id()
        try:
            payload = self._validate_response(response)
        except ReflectionParseError as e:
            logger.warning(f"Could not parse reflection response: {e}")
            raw = response if isinstance(response, str) else repr(response)
            return ReflectionResult(
                trace_id=reflection_id,
                diagnosis=f"LLM reflection parsing error: {e}",
                improvements=("Review prompt structure and LLM response format",),
                confidence=0.3,
                reasoning="Failed to parse LLM reflection response as valid JSON",
                suggested_mutations=(MutationType.REWRITE,),
                metadata={
                    "reflection_model": self.config.reflection_model,
                    "analysis_timestamp": time.time(),
                    "trace_count": len(original_traces),
                    "token_usage": 0,
                    "parsing_error": str(e),
                    "raw_response": raw[:500] + "..." if len(raw) > 500 else raw,
                },
            )

        mutations = []
        for name in payload["suggested_mutations"]:
            try:
                mutations.append(MutationType.parse(name))
            except ValueError:
                logger.debug(f"Dropping unknown mutation suggestion {name!r}")
        mutations = list(dict.fromkeys(mutations)) or [MutationType.REWRITE]

        text = response if isinstance(response, str) else json.dumps(payload, default=str)
        return ReflectionResult(
            trace_id=reflection_id,
            diagnosis=payload["diagnosis"],
            improvements=tuple(payload["improvements"]),
            confidence=payload["confidence"],
            reasoning=payload["reasoning"],
            suggested_mutations=tuple(mutations),
            metadata={
                "reflection_model": self.config.reflection_model,
                "analysis_timestamp": time.time(),
                "trace_count": len(original_traces),
                "token_usage": self._estimate_token_usage(text),
                "llm_based": True,
                "insights": payload["insights"],
            },
        )

    def trace_summary_for_reflection(self, traces: Sequence[ExecutionTrace]) -> str:
        if not traces:
            return "No execution traces available"

        patterns = self.analyze_execution_patterns(traces)
        return "\n".join([
            f"Total traces: {len(traces)}",
            f"LLM interactions: {patterns['llm_traces_count']}",
            f"Module calls: {patterns['module_traces_count']}",
            f"Total tokens: {patterns['total_tokens']}",
            f"Models used: {', '.join(patterns['unique_models'])}",
            f"Average response length: {patterns['avg_response_length']} characters",
            f"Failed calls: {patterns['error_count']}",
            f"Execution timespan: {patterns['trace_timespan']:.2f} seconds",
        ])

    def extract_optimization_insights(self, traces: Sequence[ExecutionTrace]) -> Dict[str, Any]:
        llm_traces = [t for t in traces if t.is_llm_trace()]
        return {
            "token_efficiency": self._analyze_token_efficiency(llm_traces),
            "response_quality": self._analyze_response_quality(llm_traces),
            "model_consistency": self._analyze_model_consistency(llm_traces),
        }

    def reflection_with_context(self, traces: Sequence[ExecutionTrace],
                                context: Mapping[str, Any]) -> ReflectionResult:
        """
        Reflection informed by the state of the optimization run.

        Context keys: generation, population_size, current_best_score,
        mutation_history, recent_performance_trend. Mutation kinds that were
        used repeatedly in recent history are dropped from the suggestions.
        """
        base = self.reflect_with_llm(traces, context)
        if not traces:
            return base

        context_reasoning = (f"Generation {context.get('generation', 'unknown')} analysis. "
                             f"Population size: {context.get('population_size', 'unknown')}. ")
        if context.get("current_best_score") is not None:
            context_reasoning += f"Current best score: {context['current_best_score']}. "

        adjusted = self._adjust_mutations_for_history(
            base.suggested_mutations,
            context.get("mutation_history") or [],
            context.get("recent_performance_trend"),
        )

        return ReflectionResult(
            trace_id=base.trace_id,
            diagnosis=base.diagnosis,
            improvements=base.improvements,
            confidence=base.confidence,
            reasoning=context_reasoning + base.reasoning,
            suggested_mutations=tuple(adjusted),
            metadata={**base.metadata, "optimization_context": dict(context)},
        )

    def _validate_response(self, response: Union[str, Mapping[str, Any]]) -> Dict[str, Any]:
        if isinstance(response, str):
            text = response.strip()
            fenced = re.match(r"^```(?:json)?\s*(.*?)\s*```$", text, re.DOTALL)
            if fenced:
                text = fenced.group(1)
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                raise ReflectionParseError(f"invalid JSON: {e}")
        else:
            data = response

        if not isinstance(data, Mapping):
            raise ReflectionParseError(f"expected a JSON object, got {type(data).__name__}")

        missing = [name for name in RESPONSE_FIELDS if name not in data]
        if len(missing) == len(RESPONSE_FIELDS):
            raise ReflectionParseError("response contains none of the expected fields")

        try:
            confidence = float(data.get("confidence", 0.5))
        except (TypeError, ValueError, OverflowError):
            raise ReflectionParseError(f"confidence is not a number: {data.get('confidence')!r}")
        if confidence != confidence:
            raise ReflectionParseError("confidence is NaN")

        improvements = data.get("improvements") or []
        mutations = data.get("suggested_mutations") or []
        if isinstance(improvements, str):
            improvements = [improvements]
        if isinstance(mutations, str):
            mutations = [mutations]
        if not isinstance(improvements, list) or not isinstance(mutations, list):
            raise ReflectionParseError("improvements and suggested_mutations must be lists")

        insights = data.get("insights") or {}
        return {
            "diagnosis": str(data.get("diagnosis") or "LLM reflection analysis"),
            "improvements": [i for i in improvements if isinstance(i, str) and i.strip()],
            "confidence": min(max(confidence, 0.0), 1.0),
            "reasoning": str(data.get("reasoning") or "LLM-based analysis of execution traces"),
            "suggested_mutations": mutations,
            "insights": dict(insights) if isinstance(insights, Mapping) else {},
        }

    def _adjust_mutations_for_history(self, suggested: Sequence[MutationType],
                                      history: Sequence[Any],
                                      trend: Optional[str]) -> List[MutationType]:
        recent = []
        for item in list(history)[-self.config.history_window:]:
            try:
                recent.append(MutationType.parse(item))
            except ValueError:
                continue
        usage = Counter(recent)

        adjusted = [m for m in suggested if usage[m] < self.config.overuse_threshold]
        if trend == "declining":
            adjusted = [m for m in adjusted if m != MutationType.EXPAND]
            if MutationType.SIMPLIFY not in adjusted and MutationType.REPHRASE not in adjusted:
                adjusted += [MutationType.SIMPLIFY, MutationType.REPHRASE]

        return list(dict.fromkeys(adjusted)) or [MutationType.REWRITE]

    def _generate_diagnosis(self, patterns: Mapping[str, Any]) -> str:
        if patterns["total_tokens"] > self.config.diagnosis_token_threshold:
            return "High token usage indicates potential inefficiency in prompt design"
        if patterns["llm_traces_count"] == 0 and patterns["module_traces_count"] == 0:
            return "No LLM interactions found - execution may not be working as expected"
        if patterns["error_count"] > 0:
            return f"{patterns['error_count']} calls failed during evaluation, indicating unclear or fragile instructions"
        if patterns["avg_response_length"] < self.config.brief_response_length:
            return "Responses are unusually brief which may indicate prompt clarity issues"
        return "Execution patterns appear normal with room for optimization"

    @staticmethod
    def _generate_reasoning(patterns: Mapping[str, Any], traces: Sequence[ExecutionTrace]) -> str:
        parts = [
            f"Analyzed {len(traces)} execution traces",
            f"{patterns['llm_traces_count']} LLM interactions",
            f"{patterns['module_traces_count']} module operations",
            f"Total token usage: {patterns['total_tokens']}",
        ]
        return ". ".join(parts) + "."

    def _calculate_confidence(self, patterns: Mapping[str, Any]) -> float:
        trace_bonus = min(patterns["llm_traces_count"] + patterns["module_traces_count"], 10) * 0.02
        token_penalty = -0.1 if patterns["total_tokens"] > self.config.confidence_token_threshold else 0.0
        return min(max(self.config.base_confidence + trace_bonus + token_penalty, 0.0), 1.0)

    def _analyze_token_efficiency(self, llm_traces: List[ExecutionTrace]) -> Dict[str, Any]:
        if not llm_traces:
            return {"status": "no_data", "suggestions": []}

        avg_tokens = sum(t.token_usage for t in llm_traces) / len(llm_traces)
        if avg_tokens > self.config.poor_avg_tokens:
            return {"status": "poor", "average_tokens": avg_tokens,
                    "suggestions": ["Consider reducing prompt length", "Optimize instruction clarity"]}
        if avg_tokens > self.config.moderate_avg_tokens:
            return {"status": "moderate", "average_tokens": avg_tokens,
                    "suggestions": ["Monitor token usage trends", "Consider prompt optimization"]}
        return {"status": "good", "average_tokens": avg_tokens,
                "suggestions": ["Token usage appears efficient"]}

    def _analyze_response_quality(self, llm_traces: List[ExecutionTrace]) -> Dict[str, Any]:
        if not llm_traces:
            return {"consistency": "no_data", "recommendations": []}

        lengths = [len(t.response_text or "") for t in llm_traces]
        mean = sum(lengths) / len(lengths)
        variance = sum((n - mean) ** 2 for n in lengths) / len(lengths)
        if variance > self.config.length_variance_threshold:
            return {"consistency": "inconsistent", "variance": variance,
                    "recommendations": ["Add response format guidelines",
                                        "Consider structured output templates"]}
        return {"consistency": "consistent", "variance": variance,
                "recommendations": ["Response quality appears consistent"]}

    @staticmethod
    def _analyze_model_consistency(llm_traces: List[ExecutionTrace]) -> Dict[str, Any]:
        models = sorted({t.model_name for t in llm_traces if t.model_name})
        return {
            "unique_models": len(models),
            "models_used": models,
            "recommendation": ("Consider using single model for consistency" if len(models) > 1
                               else "Model usage is consistent"),
        }

    @staticmethod
    def _avg_response_length(traces: Sequence[ExecutionTrace]) -> int:
        # module traces from the evaluator carry responses too
        with_responses = [t for t in traces if t.is_llm_trace() or t.is_module_trace()]
        if not with_responses:
            return 0
        return sum(len(t.response_text or "") for t in with_responses) // len(with_responses)

    @staticmethod
    def _timespan(traces: Sequence[ExecutionTrace]) -> float:
        if len(traces) < 2:
            return 0.0
        timestamps = [t.timestamp for t in traces]
        return float(max(timestamps) - min(timestamps))

    @staticmethod
    def _format_traces(traces: Sequence[ExecutionTrace]) -> List[str]:
        def truncate(text: str, length: int = 100) -> str:
            return text if len(text) <= length else text[:length] + "..."

        return [
            f"{idx}. [{t.event_name}] {truncate(t.prompt_text or 'N/A')} -> "
            f"{truncate(t.response_text or 'N/A')}"
            for idx, t in enumerate(traces, 1)
        ]

    @staticmethod
    def _estimate_token_usage(text: str) -> int:
        return -(-len(text) // 4)

    @staticmethod
    def _generate_reflection_id() -> str:
        return f"reflection-{secrets.token_hex(4)}"
