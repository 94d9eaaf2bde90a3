"""
Fitness evaluation for instruction candidates.

FitnessEvaluator runs a candidate program over a training set and produces a
multi-objective FitnessScore: the averaged primary metric plus secondary
objectives (token efficiency, response consistency, latency). Example calls
are I/O bound, so (candidate, example) pairs are evaluated on a bounded
thread pool; results always come back in input order.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..entities import ConfigurationError, Example, FitnessScore
from .programs import call_program, candidate_config, instruction_of
from .traces import TraceCollector


logger = logging.getLogger(__name__)

Metric = Callable[[Example, Any], float]


class EvaluationError(Exception):
    """A single example failed or timed out while being scored."""
    pass


@dataclass
class EvaluationConfig:
    """Configuration for fitness evaluation."""
    primary_weight: float = 0.6
    secondary_weight: float = 0.4
    token_threshold: float = 200.0  # tokens per example before efficiency drops
    latency_baseline: float = 2.0  # seconds per call scoring 0.5
    max_workers: int = 4
    example_timeout: Optional[float] = None
    error_score_cap: float = 0.0

    def __post_init__(self):
        if self.primary_weight < 0 or self.secondary_weight < 0:
            raise ConfigurationError("Fitness weights must be non-negative")
        if self.primary_weight < self.secondary_weight:
            raise ConfigurationError(
                f"primary_weight ({self.primary_weight}) must be >= "
                f"secondary_weight ({self.secondary_weight})"
            )
        if self.primary_weight + self.secondary_weight > 1.0 + 1e-9:
            raise ConfigurationError("Fitness weights must sum to at most 1.0")
        if self.token_threshold <= 0 or self.latency_baseline <= 0:
            raise ConfigurationError("token_threshold and latency_baseline must be positive")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if self.example_timeout is not None and self.example_timeout <= 0:
            raise ConfigurationError("example_timeout must be positive when set")
        if not 0.0 <= self.error_score_cap <= 1.0:
            raise ConfigurationError("error_score_cap must be between 0 and 1")


@dataclass
class ExampleOutcome:
    """Result of running one candidate on one example."""
    example: Example
    prediction: Any = None
    score: float = 0.0
    latency: float = 0.0
    tokens: int = 0
    model: Optional[str] = None
    response: str = ""
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


SecondaryMetric = Callable[[Sequence[ExampleOutcome], EvaluationConfig], float]


def response_text(prediction: Any) -> str:
    """Flatten a prediction into text for consistency analysis."""
    if prediction is None:
        return ""
    if isinstance(prediction, str):
        return prediction
    if isinstance(prediction, Mapping):
        if "answer" in prediction:
            return str(prediction["answer"])
        return " ".join(str(v) for k, v in prediction.items() if k != "usage")
    answer = getattr(prediction, "answer", None)
    return str(answer) if answer is not None else str(prediction)


def prediction_usage(prediction: Any) -> Tuple[int, Optional[str]]:
    """Token count and model name reported by a prediction, if any."""
    if isinstance(prediction, Mapping):
        usage = prediction.get("usage")
    else:
        usage = getattr(prediction, "usage", None)
    if not isinstance(usage, Mapping):
        return 0, None

    tokens = 0
    for key in ("total_tokens", "tokens", "prompt_tokens"):
        if usage.get(key):
            try:
                tokens = int(usage[key])
                break
            except (TypeError, ValueError):
                continue
    return tokens, usage.get("model")


def token_efficiency(outcomes: Sequence[ExampleOutcome], config: EvaluationConfig) -> float:
    """1.0 up to the token threshold per example, then threshold / average."""
    if not outcomes:
        return 1.0
    avg_tokens = sum(o.tokens for o in outcomes) / len(outcomes)
    if avg_tokens <= config.token_threshold:
        return 1.0
    return config.token_threshold / avg_tokens


def response_consistency(outcomes: Sequence[ExampleOutcome], config: EvaluationConfig) -> float:
    """Mean pairwise word-set overlap combined with response length stability."""
    responses = [o.response for o in outcomes]
    if len(responses) <= 1:
        return 1.0

    word_sets = [set(r.lower().split()) for r in responses]
    total_similarity = 0.0
    comparisons = 0
    for i, first in enumerate(word_sets):
        for second in word_sets[i + 1:]:
            union = first | second
            total_similarity += len(first & second) / len(union) if union else 1.0
            comparisons += 1
    overlap = total_similarity / comparisons

    lengths = [len(r) for r in responses]
    mean_length = sum(lengths) / len(lengths)
    if mean_length == 0:
        length_stability = 1.0
    else:
        variance = sum((n - mean_length) ** 2 for n in lengths) / len(lengths)
        # coefficient of variation mapped into (0, 1]
        length_stability = 1.0 / (1.0 + math.sqrt(variance) / mean_length)

    return 0.5 * overlap + 0.5 * length_stability


def latency_score(outcomes: Sequence[ExampleOutcome], config: EvaluationConfig) -> float:
    """baseline / (baseline + average latency)."""
    if not outcomes:
        return 1.0
    avg_latency = sum(o.latency for o in outcomes) / len(outcomes)
    return config.latency_baseline / (config.latency_baseline + avg_latency)


def default_secondary_metrics() -> Dict[str, SecondaryMetric]:
    return {
        "token_efficiency": token_efficiency,
        "consistency": response_consistency,
        "latency": latency_score,
    }


def _expected_answer(example: Example) -> str:
    if "answer" in example.expected:
        return str(example.expected["answer"])
    return " ".join(str(v) for v in example.expected.values())


def exact_match(example: Example, prediction: Any) -> float:
    """1.0 when the predicted answer equals the expected answer, ignoring case."""
    return float(response_text(prediction).strip().lower() == _expected_answer(example).strip().lower())


def answer_contains(example: Example, prediction: Any) -> float:
    """1.0 when the expected answer appears anywhere in the prediction."""
    expected = _expected_answer(example).strip().lower()
    return float(bool(expected) and expected in response_text(prediction).lower())


METRICS: Dict[str, Metric] = {
    "exact_match": exact_match,
    "contains": answer_contains,
}


def get_metric(name: str) -> Metric:
    if name not in METRICS:
        raise ConfigurationError(f"Unknown metric: {name}. Available: {', '.join(METRICS)}")
    return METRICS[name]


class FitnessEvaluator:
    """
    Multi-dimensional evaluation of instruction candidates.

    Every example call is isolated: an exception, a timeout or a metric
    failure scores that example 0 and increments errors_count, and the
    remaining examples still run.
    """

    def __init__(self, primary_metric: Metric,
                 config: Optional[EvaluationConfig] = None,
                 secondary_metrics: Optional[Dict[str, SecondaryMetric]] = None,
                 trace_collector: Optional[TraceCollector] = None):
        if primary_metric is None:
            raise ConfigurationError("FitnessEvaluator requires a primary metric")
        self.primary_metric = primary_metric
        self.config = config or EvaluationConfig()
        self.secondary_metrics = (
            default_secondary_metrics() if secondary_metrics is None else dict(secondary_metrics)
        )
        self.trace_collector = trace_collector or TraceCollector()
        self.run_id: Optional[str] = None
        self.generation: Optional[int] = None

    def set_context(self, run_id: Optional[str] = None, generation: Optional[int] = None):
        """Tag subsequently emitted traces with the optimization run and generation."""
        self.run_id = run_id
        self.generation = generation

    def evaluate_candidate(self, program: Any, trainset: Sequence[Example]) -> FitnessScore:
        """
        Evaluate a single candidate program.

        Args:
            program: Candidate program
            trainset: Examples to score against

        Returns:
            FitnessScore with primary, secondary and overall scores
        """
        return self.batch_evaluate([program], trainset)[0]

    def batch_evaluate(self, programs: Sequence[Any],
                       trainset: Sequence[Example]) -> List[FitnessScore]:
        """Evaluate several candidates, sharing one worker pool; order-preserving."""
        if not programs:
            return []

        start_time = time.time()
        pairs = [(c, e) for c in range(len(programs)) for e in range(len(trainset))]
        outcomes = self._run_pairs(programs, trainset, pairs)

        scores = []
        for candidate_index, program in enumerate(programs):
            candidate_outcomes = [
                outcomes[i] for i, (c, _) in enumerate(pairs) if c == candidate_index
            ]
            self._record_traces(program, candidate_outcomes)
            scores.append(self._score(candidate_outcomes, program, start_time))
        return scores

    def compare_candidates(self, score1: FitnessScore, score2: FitnessScore) -> int:
        """1 if score1 is better, -1 if worse, 0 if tied on overall score."""
        if score1.overall_score > score2.overall_score:
            return 1
        if score1.overall_score < score2.overall_score:
            return -1
        return 0

    def rank_candidates(self, scores: Sequence[FitnessScore]) -> List[int]:
        """Indices sorted best-first; ties keep their original order."""
        return sorted(range(len(scores)), key=lambda i: -scores[i].overall_score)

    def _run_pairs(self, programs: Sequence[Any], trainset: Sequence[Example],
                   pairs: List[Tuple[int, int]]) -> List[ExampleOutcome]:
        if not pairs:
            return []

        if self.config.max_workers <= 1 and self.config.example_timeout is None:
            return [self._run_example(programs[c], trainset[e]) for c, e in pairs]

        # pair index -> time its call actually started on a worker
        started: Dict[int, float] = {}
        executor = ThreadPoolExecutor(max_workers=self.config.max_workers)
        try:
            futures = [
                executor.submit(self._run_started_example, i, started, programs[c], trainset[e])
                for i, (c, e) in enumerate(pairs)
            ]
            outcomes = []
            for i, (future, (c, e)) in enumerate(zip(futures, pairs)):
                try:
                    outcomes.append(self._await_outcome(future, started, i))
                except FutureTimeoutError:
                    future.cancel()
                    outcomes.append(self._timeout_outcome(
                        trainset[e], time.time() - started.get(i, time.time())
                    ))
            return outcomes
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _run_started_example(self, index: int, started: Dict[int, float],
                             program: Any, example: Example) -> ExampleOutcome:
        started[index] = time.time()
        return self._run_example(program, example)

    def _await_outcome(self, future, started: Dict[int, float], index: int) -> ExampleOutcome:
        """Wait for a call until example_timeout has passed since it started."""
        timeout = self.config.example_timeout
        if timeout is None:
            return future.result()
        while True:
            start = started.get(index)
            remaining = timeout if start is None else start + timeout - time.time()
            try:
                return future.result(timeout=max(remaining, 0.0))
            except FutureTimeoutError:
                start = started.get(index)
                if start is not None and time.time() - start >= timeout:
                    raise

    def _timeout_outcome(self, example: Example, elapsed: float) -> ExampleOutcome:
        error = EvaluationError(f"example timed out after {self.config.example_timeout}s")
        logger.warning(f"Evaluation error: {error}")
        return ExampleOutcome(example=example, latency=max(elapsed, 0.0), error=str(error))

    def _run_example(self, program: Any, example: Example) -> ExampleOutcome:
        prediction_start = time.time()
        try:
            prediction = call_program(program, example.inputs)
        except Exception as e:
            return self._error_outcome(example, e, time.time() - prediction_start)
        latency = time.time() - prediction_start

        # a call that overran its budget fails even if it eventually answered
        timeout = self.config.example_timeout
        if timeout is not None and latency > timeout:
            return self._timeout_outcome(example, latency)

        try:
            score = float(self.primary_metric(example, prediction))
        except Exception as e:
            return self._error_outcome(example, e, latency)

        if score != score:
            score = 0.0
        tokens, model = prediction_usage(prediction)
        return ExampleOutcome(
            example=example,
            prediction=prediction,
            score=min(max(score, 0.0), 1.0),
            latency=latency,
            tokens=tokens,
            model=model,
            response=response_text(prediction),
        )

    @staticmethod
    def _error_outcome(example: Example, exc: Exception, latency: float) -> ExampleOutcome:
        error = EvaluationError(f"{type(exc).__name__}: {exc}")
        logger.warning(f"Evaluation error: {error}")
        return ExampleOutcome(example=example, latency=latency, error=str(error))

    def _score(self, outcomes: List[ExampleOutcome], program: Any,
               start_time: float) -> FitnessScore:
        successful = [o for o in outcomes if o.succeeded]
        errors = [o.error for o in outcomes if not o.succeeded]
        primary_score = sum(o.score for o in outcomes) / len(outcomes) if outcomes else 0.0

        secondary_scores = {}
        for name, metric in self.secondary_metrics.items():
            if not successful:
                secondary_scores[name] = 0.0
                continue
            try:
                value = float(metric(successful, self.config))
            except Exception as e:
                logger.warning(f"Secondary metric {name} failed: {e}")
                value = 0.0
            secondary_scores[name] = min(max(value, 0.0), 1.0)

        metadata = {
            "evaluation_time": time.time() - start_time,
            "examples_count": len(outcomes),
            "errors_count": len(errors),
            "errors": errors[:5],
            "candidate_id": candidate_config(program).config_id,
            "token_usage": sum(o.tokens for o in outcomes),
        }
        if not successful and outcomes:
            return FitnessScore.failure(
                len(errors), cap=self.config.error_score_cap, **{
                    k: v for k, v in metadata.items() if k != "errors_count"
                }
            )

        return FitnessScore.combine(
            primary_score,
            secondary_scores,
            primary_weight=self.config.primary_weight,
            secondary_weight=self.config.secondary_weight,
            metadata=metadata,
        )

    def _record_traces(self, program: Any, outcomes: List[ExampleOutcome]):
        instruction = instruction_of(program)
        candidate_id = candidate_config(program).config_id
        for index, outcome in enumerate(outcomes):
            event_name = "llm.predict" if outcome.tokens or outcome.model else "module.predict_complete"
            attributes = {
                "prompt": instruction,
                "response": outcome.response,
                "latency": outcome.latency,
                "score": outcome.score,
            }
            if outcome.tokens:
                attributes["tokens"] = outcome.tokens
            if outcome.model:
                attributes["model"] = outcome.model
            if outcome.error:
                attributes["error"] = outcome.error
            self.trace_collector.collect_trace(event_name, {
                "attributes": attributes,
                "metadata": {
                    "optimization_run_id": self.run_id,
                    "generation": self.generation,
                    "candidate_id": candidate_id,
                    "example_index": index,
                },
            })
