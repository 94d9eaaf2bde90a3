"""
Entity definitions for the evoprompt evolutionary system.

This module contains the immutable value records that flow between the
optimizer components: training examples, fitness scores, execution traces,
reflection results and candidate configurations.
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


class ConfigurationError(ValueError):
    """Raised when a value object or configuration is constructed with invalid fields."""
    pass


class MutationType(str, Enum):
    """Instruction mutation kinds."""
    REWRITE = "rewrite"
    EXPAND = "expand"
    SIMPLIFY = "simplify"
    COMBINE = "combine"
    REPHRASE = "rephrase"

    @classmethod
    def parse(cls, value: Any) -> "MutationType":
        """Coerce a string or enum member into a MutationType."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown mutation type: {value!r}")


class CrossoverType(str, Enum):
    """Instruction crossover operators."""
    UNIFORM = "uniform"
    BLEND = "blend"
    STRUCTURED = "structured"

    @classmethod
    def parse(cls, value: Any) -> "CrossoverType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unknown crossover type: {value!r}")


def freeze(value: Any) -> Any:
    """Deep-copy a nested structure into read-only mappings and tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze, producing plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    if isinstance(value, frozenset):
        return set(thaw(v) for v in value)
    return value


def _check_unit_interval(name: str, value: float) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if value != value or value < 0.0 or value > 1.0:
        raise ConfigurationError(f"{name} must be between 0.0 and 1.0, got {value}")
    return value


@dataclass(frozen=True)
class Example:
    """A training example: input fields plus expected output fields."""
    inputs: Mapping[str, Any]
    expected: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "inputs", freeze(self.inputs))
        object.__setattr__(self, "expected", freeze(self.expected))

    def __hash__(self):
        return hash(_canonical_json({"inputs": self.inputs, "expected": self.expected}))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Example":
        """Build an example from {"inputs": {...}, "expected": {...}}."""
        if "inputs" not in data:
            raise ConfigurationError("Example requires an 'inputs' mapping")
        return cls(inputs=data["inputs"], expected=data.get("expected", {}))

    def to_dict(self) -> Dict[str, Any]:
        return {"inputs": thaw(self.inputs), "expected": thaw(self.expected)}


@dataclass(frozen=True)
class FitnessScore:
    """
    Multi-dimensional evaluation result for one candidate.

    Equality and hashing only consider the objective values, so two scores
    with the same primary, secondary and overall values collapse to the same
    key regardless of their metadata.
    """
    primary_score: float
    secondary_scores: Mapping[str, float] = field(default_factory=dict)
    overall_score: float = 0.0
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        primary = _check_unit_interval("primary_score", self.primary_score)
        overall = _check_unit_interval("overall_score", self.overall_score)
        secondary = {
            str(name): _check_unit_interval(f"secondary score {name}", score)
            for name, score in dict(self.secondary_scores).items()
        }
        object.__setattr__(self, "primary_score", primary)
        object.__setattr__(self, "overall_score", overall)
        object.__setattr__(self, "secondary_scores", MappingProxyType(secondary))
        object.__setattr__(self, "metadata", freeze(self.metadata or {}))

    def __hash__(self):
        return hash((
            self.primary_score,
            tuple(sorted(self.secondary_scores.items())),
            self.overall_score,
        ))

    @classmethod
    def combine(cls, primary_score: float, secondary_scores: Mapping[str, float],
                primary_weight: float = 0.6, secondary_weight: float = 0.4,
                metadata: Optional[Mapping[str, Any]] = None) -> "FitnessScore":
        """
        Build a score whose overall value is a weighted combination.

        Args:
            primary_score: Average primary metric value in [0, 1]
            secondary_scores: Named secondary objectives in [0, 1]
            primary_weight: Weight of the primary score
            secondary_weight: Weight of the mean secondary score
            metadata: Optional evaluation metadata

        Returns:
            FitnessScore with overall_score = w_p * primary + w_s * mean(secondary)
        """
        if secondary_scores:
            avg_secondary = sum(secondary_scores.values()) / len(secondary_scores)
            overall = primary_score * primary_weight + avg_secondary * secondary_weight
        else:
            overall = primary_score
        return cls(
            primary_score=primary_score,
            secondary_scores=secondary_scores,
            overall_score=min(max(overall, 0.0), 1.0),
            metadata=metadata or {},
        )

    @classmethod
    def failure(cls, errors_count: int, cap: float = 0.0, **metadata) -> "FitnessScore":
        """Score assigned to a candidate whose evaluation failed outright."""
        return cls(
            primary_score=0.0,
            secondary_scores={},
            overall_score=min(max(cap, 0.0), 1.0),
            metadata={"errors_count": errors_count, **metadata},
        )

    @property
    def errors_count(self) -> int:
        return int(self.metadata.get("errors_count", 0))

    def objective_names(self) -> List[str]:
        return ["primary_score", "overall_score"] + sorted(self.secondary_scores)

    def objective_value(self, objective: str) -> float:
        if objective == "primary_score":
            return self.primary_score
        if objective == "overall_score":
            return self.overall_score
        return self.secondary_scores.get(objective, 0.0)

    def objective_vector(self, objectives: Iterable[str]) -> Tuple[float, ...]:
        return tuple(self.objective_value(name) for name in objectives)

    def dominates(self, other: "FitnessScore") -> bool:
        """True if this score is at least as good everywhere and better somewhere."""
        objectives = sorted(set(self.objective_names()) | set(other.objective_names()))
        mine = self.objective_vector(objectives)
        theirs = other.objective_vector(objectives)
        return (all(a >= b for a, b in zip(mine, theirs))
                and any(a > b for a, b in zip(mine, theirs)))

    def dominated_by(self, other: "FitnessScore") -> bool:
        return other.dominates(self)

    def score_for_objectives(self, objectives: List[str]) -> float:
        """Average of the primary score and the named secondary objectives."""
        relevant = [self.secondary_scores.get(name, 0.0) for name in objectives]
        if not relevant:
            return self.primary_score
        return (self.primary_score + sum(relevant)) / (len(objectives) + 1)


# Token attribute keys in priority order
TOKEN_KEYS = ("gen_ai.usage.total_tokens", "gen_ai.usage.prompt_tokens", "tokens")
MODULE_EVENT_MARKERS = ("chain_of_thought", "react", "codeact", "predict")


@dataclass(frozen=True)
class ExecutionTrace:
    """Immutable record of one execution event observed during evaluation."""
    trace_id: str
    event_name: str
    timestamp: float = field(default_factory=time.time)
    span_id: Optional[str] = None
    attributes: Mapping[str, Any] = field(default_factory=dict)
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.trace_id:
            raise ConfigurationError("ExecutionTrace requires a trace_id")
        if not self.event_name:
            raise ConfigurationError("ExecutionTrace requires an event_name")
        object.__setattr__(self, "attributes", freeze(self.attributes or {}))
        object.__setattr__(self, "metadata", freeze(self.metadata or {}))

    def __hash__(self):
        return hash(self.trace_id)

    def is_llm_trace(self) -> bool:
        return self.event_name.startswith("llm.") or self.event_name.startswith("lm.")

    def is_module_trace(self) -> bool:
        return not self.is_llm_trace() and any(
            marker in self.event_name for marker in MODULE_EVENT_MARKERS
        )

    @property
    def token_usage(self) -> int:
        if not self.is_llm_trace():
            return 0
        for key in TOKEN_KEYS:
            value = self.attributes.get(key)
            if value:
                try:
                    return int(value)
                except (TypeError, ValueError):
                    continue
        return 0

    @property
    def prompt_text(self) -> Optional[str]:
        return self.attributes.get("prompt")

    @property
    def response_text(self) -> Optional[str]:
        return self.attributes.get("response")

    @property
    def model_name(self) -> Optional[str]:
        return self.attributes.get("gen_ai.request.model") or self.attributes.get("model")

    @property
    def signature_name(self) -> Optional[str]:
        return self.attributes.get("dspy.signature") or self.attributes.get("signature")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "event_name": self.event_name,
            "timestamp": self.timestamp,
            "span_id": self.span_id,
            "attributes": thaw(self.attributes),
            "metadata": thaw(self.metadata),
        }


@dataclass(frozen=True)
class ReflectionResult:
    """Immutable outcome of reflecting on a batch of execution traces."""
    trace_id: str
    diagnosis: str
    improvements: Tuple[str, ...] = ()
    confidence: float = 0.0
    reasoning: str = ""
    suggested_mutations: Tuple[MutationType, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.confidence, bool) or not isinstance(self.confidence, (int, float)):
            raise ConfigurationError(f"confidence must be a number, got {self.confidence!r}")
        if self.confidence < 0.0 or self.confidence > 1.0:
            raise ConfigurationError(
                f"confidence must be between 0 and 1, got {self.confidence}"
            )
        object.__setattr__(self, "confidence", float(self.confidence))
        object.__setattr__(self, "improvements", tuple(str(i) for i in self.improvements))
        object.__setattr__(
            self, "suggested_mutations",
            tuple(MutationType.parse(m) for m in self.suggested_mutations)
        )
        object.__setattr__(self, "metadata", freeze(self.metadata or {}))

    def __hash__(self):
        return hash((self.trace_id, self.diagnosis, self.improvements,
                     self.confidence, self.reasoning, self.suggested_mutations))

    def is_high_confidence(self) -> bool:
        return self.confidence >= 0.8

    def is_actionable(self) -> bool:
        return bool(self.improvements) or bool(self.suggested_mutations)

    def mutation_priority(self) -> List[MutationType]:
        return sorted(self.suggested_mutations, key=lambda m: m.value)

    @property
    def reflection_model(self) -> Optional[str]:
        return self.metadata.get("reflection_model")

    @property
    def token_usage(self) -> int:
        return int(self.metadata.get("token_usage", 0) or 0)

    @property
    def analysis_duration_ms(self) -> int:
        return int(self.metadata.get("analysis_duration_ms", 0) or 0)

    def summary(self) -> str:
        """One-line human readable summary."""
        confidence_pct = round(self.confidence * 100)
        mutation_list = ", ".join(m.value for m in self.suggested_mutations)
        first_sentence = self.diagnosis.split(".")[0]
        return (f"{first_sentence}. Confidence: {confidence_pct}%. "
                f"{len(self.improvements)} improvements suggested. "
                f"Mutations: {mutation_list}.")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "diagnosis": self.diagnosis,
            "improvements": list(self.improvements),
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "suggested_mutations": [m.value for m in self.suggested_mutations],
            "metadata": thaw(self.metadata),
        }


def _canonical_json(value: Any) -> str:
    return json.dumps(thaw(value), sort_keys=True, default=str)


@dataclass(frozen=True)
class CandidateConfig:
    """Content-addressed description of a candidate, used to memoize fitness."""
    instruction: str
    few_shot_examples: Tuple[Example, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    config_id: str = field(default="", init=False)

    def __post_init__(self):
        if not isinstance(self.instruction, str):
            raise ConfigurationError("CandidateConfig instruction must be a string")
        examples = tuple(
            ex if isinstance(ex, Example) else Example.from_dict(ex)
            for ex in self.few_shot_examples
        )
        object.__setattr__(self, "few_shot_examples", examples)
        object.__setattr__(self, "metadata", freeze(self.metadata or {}))
        payload = _canonical_json({
            "instruction": self.instruction,
            "few_shot_examples": [ex.to_dict() for ex in examples],
            "metadata": self.metadata,
        })
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]
        object.__setattr__(self, "config_id", f"cand_{digest}")

    def __hash__(self):
        return hash(self.config_id)
