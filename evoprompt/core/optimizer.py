"""
Top-level optimizer for evoprompt.

GEPAOptimizer compiles a program into an optimized one:
- builds a GeneticEngine from its configuration
- runs the generational loop under MLflow experiment tracking
- reflects once more over the whole run's traces
- scores the best candidate on a validation set when one is given

An unexpected engine failure never reaches the caller; the unmodified
program is returned with its own score instead.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import mlflow

from ..entities import Example, FitnessScore
from .config import EvolutionConfig
from .crossover import CrossoverEngine
from .fitness import EvaluationConfig, FitnessEvaluator, Metric
from .genetic_engine import GeneticEngine, as_examples
from .mutation import InstructionProposer, MutationEngine
from .pareto import ParetoSelector
from .programs import instruction_of
from .reflection import ReflectionConfig, ReflectionEngine, ReflectionLM
from .traces import TraceCollector


logger = logging.getLogger(__name__)


@dataclass
class OptimizationResult:
    """Outcome of an optimization run."""
    optimized_program: Any
    scores: Dict[str, float] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)
    best_score_name: str = "overall_score"
    best_score_value: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def best_instruction(self) -> str:
        return instruction_of(self.optimized_program)


class GEPAOptimizer:
    """
    Genetic-Pareto optimizer for program instructions.

    Wires a FitnessEvaluator, the genetic operators and a ReflectionEngine
    together and tracks every compile() call as an MLflow run.
    """

    def __init__(self,
                 metric: Metric,
                 config: Optional[EvolutionConfig] = None,
                 evaluation_config: Optional[EvaluationConfig] = None,
                 reflection_config: Optional[ReflectionConfig] = None,
                 reflection_lm: Optional[ReflectionLM] = None,
                 instruction_proposer: Optional[InstructionProposer] = None):
        self.metric = metric
        self.config = config or EvolutionConfig()
        self.evaluation_config = evaluation_config or EvaluationConfig()
        self.reflection_config = reflection_config or ReflectionConfig(
            reflection_model=self.config.reflection_model_ref
        )
        self.reflection_lm = reflection_lm
        self.instruction_proposer = instruction_proposer
        self.engine: Optional[GeneticEngine] = None

        self._setup_mlflow()

    def _setup_mlflow(self):
        """Set up the MLflow experiment."""
        if self.config.tracking_uri:
            mlflow.set_tracking_uri(self.config.tracking_uri)

        experiment = mlflow.get_experiment_by_name(self.config.experiment_name)
        if experiment is None:
            experiment_id = mlflow.create_experiment(self.config.experiment_name)
            logger.info(f"Created new MLflow experiment: {self.config.experiment_name}")
        else:
            experiment_id = experiment.experiment_id
            logger.info(f"Using existing MLflow experiment: {self.config.experiment_name}")

        mlflow.set_experiment(experiment_id=experiment_id)

    def build_engine(self) -> GeneticEngine:
        """Create a fresh GeneticEngine with all components sharing one random generator."""
        engine = GeneticEngine(
            config=self.config,
            fitness_evaluator=FitnessEvaluator(
                self.metric,
                config=self.evaluation_config,
                trace_collector=TraceCollector(),
            ),
            reflection_engine=(
                ReflectionEngine(self.reflection_config, reflection_lm=self.reflection_lm)
                if self.config.use_reflection else None
            ),
        )
        engine.mutation_engine = MutationEngine(
            self.config, rng=engine.rng, instruction_proposer=self.instruction_proposer
        )
        engine.crossover_engine = CrossoverEngine(self.config, rng=engine.rng)
        engine.pareto_selector = ParetoSelector(self.config, rng=engine.rng)
        return engine

    def compile(self, program: Any, trainset: Sequence[Any],
                valset: Optional[Sequence[Any]] = None) -> OptimizationResult:
        """
        Optimize a program's instruction.

        Args:
            program: Seed program
            trainset: Examples used for fitness during evolution
            valset: Optional held-out examples for scoring the best candidate

        Returns:
            OptimizationResult with the best program found
        """
        trainset = as_examples(trainset)
        valset = as_examples(valset) if valset else None
        logger.info(f"Compiling program with {len(trainset)} training examples")

        with mlflow.start_run():
            try:
                return self._run_optimization(program, trainset, valset)
            except Exception as e:
                logger.error(f"Optimization failed, returning unmodified program: {e}")
                mlflow.log_param("fallback_used", True)
                return self._fallback_result(program, trainset, e)

    def _run_optimization(self, program: Any, trainset: List[Example],
                          valset: Optional[List[Example]]) -> OptimizationResult:
        self.engine = engine = self.build_engine()
        self._log_config(trainset, valset)

        results = engine.run_evolution(program, trainset, on_generation=self._log_generation)
        best_program = results["best_candidate"]
        best_score: FitnessScore = results["best_score"]

        scores = {"train_overall_score": best_score.overall_score,
                  "train_primary_score": best_score.primary_score}
        for name, value in best_score.secondary_scores.items():
            scores[f"train_{name}"] = value
        best_score_name, best_score_value = "train_overall_score", best_score.overall_score

        if valset:
            val_score = engine.fitness_evaluator.evaluate_candidate(best_program, valset)
            scores["val_overall_score"] = val_score.overall_score
            scores["val_primary_score"] = val_score.primary_score
            best_score_name, best_score_value = "val_overall_score", val_score.overall_score

        run_traces = engine.trace_collector.traces_for_run(engine.run_id)
        metadata = {
            "run_id": engine.run_id,
            "generation_count": results["generation_count"],
            "best_instruction": instruction_of(best_program),
            "final_diversity": engine.population_diversity(),
            "trace_count": len(run_traces),
            "reflection_count": len(engine.reflections),
            "fallback": False,
        }
        if engine.reflection_engine is not None and run_traces:
            final_reflection = engine.reflection_engine.reflect_with_llm(run_traces)
            metadata["final_reflection"] = final_reflection.to_dict()
            metadata["reflection_summary"] = final_reflection.summary()

        result = OptimizationResult(
            optimized_program=best_program,
            scores=scores,
            history=results["generation_history"],
            best_score_name=best_score_name,
            best_score_value=best_score_value,
            metadata=metadata,
        )
        self._log_final_results(result)
        return result

    def _fallback_result(self, program: Any, trainset: List[Example],
                         error: Exception) -> OptimizationResult:
        evaluator = FitnessEvaluator(self.metric, config=self.evaluation_config)
        try:
            score = evaluator.evaluate_candidate(program, trainset)
        except Exception as e:
            logger.warning(f"Baseline evaluation failed: {e}")
            score = FitnessScore.failure(len(trainset), cap=self.evaluation_config.error_score_cap)

        return OptimizationResult(
            optimized_program=program,
            scores={"train_overall_score": score.overall_score,
                    "train_primary_score": score.primary_score},
            history=[],
            best_score_name="train_overall_score",
            best_score_value=score.overall_score,
            metadata={"fallback": True, "error": str(error)},
        )

    def _log_config(self, trainset: List[Example], valset: Optional[List[Example]]):
        config_dict = asdict(self.config)
        for key, value in config_dict.items():
            if value is not None:
                if isinstance(value, list):
                    value = ",".join(str(getattr(v, "value", v)) for v in value)
                mlflow.log_param(key, value)
        mlflow.log_params({
            "primary_weight": self.evaluation_config.primary_weight,
            "secondary_weight": self.evaluation_config.secondary_weight,
            "max_workers": self.evaluation_config.max_workers,
            "trainset_size": len(trainset),
            "valset_size": len(valset) if valset else 0,
            "reflection_lm": type(self.reflection_lm).__name__ if self.reflection_lm else "rule_based",
        })

    def _log_generation(self, entry: Dict[str, Any]):
        mlflow.log_metrics({
            "best_fitness": entry["best_fitness"],
            "avg_fitness": entry["avg_fitness"],
            "diversity": entry["diversity"],
            "errors_count": entry["errors_count"],
            "mutations": len(entry["mutations"]),
            "crossovers": entry["crossovers"],
        }, step=entry["generation"])

    def _log_final_results(self, result: OptimizationResult):
        """Log final metrics and, when enabled, the best instruction and history."""
        mlflow.log_metrics({f"final_{name}": value for name, value in result.scores.items()})
        mlflow.log_metric("final_generation_count", result.metadata["generation_count"])
        mlflow.log_metric("final_diversity", result.metadata["final_diversity"])

        if not self.config.log_artifacts:
            return

        try:
            with tempfile.TemporaryDirectory() as tmp_dir:
                instruction_path = os.path.join(tmp_dir, "best_instruction.txt")
                with open(instruction_path, "w") as f:
                    f.write(result.best_instruction)
                mlflow.log_artifact(instruction_path)

                history_path = os.path.join(tmp_dir, "generation_history.json")
                with open(history_path, "w") as f:
                    json.dump(result.history, f, indent=2, default=str)
                mlflow.log_artifact(history_path)
        except Exception as e:
            logger.warning(f"Failed to log optimization artifacts: {e}")

    def cleanup(self):
        """End the MLflow run if one is still active."""
        try:
            if mlflow.active_run():
                mlflow.end_run()
        except Exception as e:
            logger.warning(f"Error ending MLflow run: {e}")


def create_optimizer(metric: Metric,
                     config: Optional[EvolutionConfig] = None,
                     evaluation_config: Optional[EvaluationConfig] = None,
                     reflection_config: Optional[ReflectionConfig] = None,
                     reflection_lm: Optional[ReflectionLM] = None,
                     use_llm: bool = False,
                     llm_api_key: Optional[str] = None,
                     experiment_name: str = "evoprompt_evolution",
                     mlflow_tracking_uri: Optional[str] = None) -> GEPAOptimizer:
    """
    Factory function to create a configured optimizer.

    Args:
        metric: Primary metric (example, prediction) -> float in [0, 1]
        config: Evolution configuration
        evaluation_config: Fitness evaluation configuration
        reflection_config: Rule-based reflection thresholds
        reflection_lm: Reflection model; overrides the Gemini client when given
        use_llm: Create a Gemini client for reflection and rewrite mutations
        llm_api_key: API key for Gemini (or use GOOGLE_API_KEY env var)
        experiment_name: Name for MLflow experiment
        mlflow_tracking_uri: MLflow tracking URI (if None, uses local tracking)

    Returns:
        Configured GEPAOptimizer
    """
    if config is None:
        config = EvolutionConfig(
            experiment_name=experiment_name,
            tracking_uri=mlflow_tracking_uri
        )
    else:
        if experiment_name != "evoprompt_evolution":
            config.experiment_name = experiment_name
        if mlflow_tracking_uri is not None:
            config.tracking_uri = mlflow_tracking_uri

    instruction_proposer = None
    if use_llm:
        from ..llm import create_llm_client
        llm_client = create_llm_client(
            "gemini", model_name=config.reflection_model_ref, api_key=llm_api_key
        )
        instruction_proposer = llm_client
        reflection_lm = reflection_lm or llm_client

    return GEPAOptimizer(
        metric=metric,
        config=config,
        evaluation_config=evaluation_config,
        reflection_config=reflection_config,
        reflection_lm=reflection_lm,
        instruction_proposer=instruction_proposer,
    )
