"""
Generational loop for instruction evolution.

GeneticEngine owns the population and drives the other components once per
generation:
1. evaluate the population on the training set (memoized per candidate)
2. reflect on the generation's execution traces
3. carry elite survivors over and select parents for the remaining slots
4. recombine parent pairs and mutate the offspring
5. replace the population wholesale and advance the generation counter

Population state only changes between generations; every evaluation of a
generation completes before the population is replaced.
"""

import logging
import random
import secrets
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..entities import ConfigurationError, Example, FitnessScore, MutationType
from .config import EvolutionConfig
from .crossover import CrossoverEngine
from .fitness import FitnessEvaluator, Metric
from .mutation import MutationEngine
from .pareto import ParetoSelector
from .programs import (
    StaticInstructionProgram,
    as_instruction_program,
    candidate_config,
    instruction_of,
    population_instructions,
    with_instruction,
)
from .reflection import ReflectionConfig, ReflectionEngine


logger = logging.getLogger(__name__)


# Perturbations used to seed the initial population
VARIANT_TEMPLATES = [
    "{instruction} Think step by step.",
    "{instruction} Provide detailed reasoning.",
    "Be careful and accurate. {instruction}",
    "{instruction} Use examples in your response.",
    "Be precise and specific. {instruction}",
]


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    EVALUATED = "evaluated"
    EVOLVED = "evolved"


def as_examples(dataset: Sequence[Any]) -> List[Example]:
    """Accept Example objects or {"inputs", "expected"} mappings."""
    return [ex if isinstance(ex, Example) else Example.from_dict(ex) for ex in dataset]


def _sentence(instruction: str) -> str:
    text = instruction.strip()
    if text and text[-1] not in ".!?":
        text += "."
    return text


class GeneticEngine:
    """
    Genetic algorithm over program instructions with Pareto selection.

    Either a ready FitnessEvaluator or a primary metric must be supplied.
    Operators that are not supplied are built from the config and share the
    engine's random generator, so a fixed random_seed makes runs repeatable
    for deterministic programs.
    """

    def __init__(self,
                 config: Optional[EvolutionConfig] = None,
                 fitness_evaluator: Optional[FitnessEvaluator] = None,
                 metric: Optional[Metric] = None,
                 crossover_engine: Optional[CrossoverEngine] = None,
                 mutation_engine: Optional[MutationEngine] = None,
                 pareto_selector: Optional[ParetoSelector] = None,
                 reflection_engine: Optional[ReflectionEngine] = None,
                 rng: Optional[random.Random] = None):
        self.config = config or EvolutionConfig()
        self.rng = rng or random.Random(self.config.random_seed)

        if fitness_evaluator is None:
            if metric is None:
                raise ConfigurationError("GeneticEngine requires a fitness evaluator or a metric")
            fitness_evaluator = FitnessEvaluator(metric)
        self.fitness_evaluator = fitness_evaluator

        self.crossover_engine = crossover_engine or CrossoverEngine(self.config, rng=self.rng)
        self.mutation_engine = mutation_engine or MutationEngine(self.config, rng=self.rng)
        self.pareto_selector = pareto_selector or ParetoSelector(self.config, rng=self.rng)
        if reflection_engine is None and self.config.use_reflection:
            reflection_engine = ReflectionEngine(
                ReflectionConfig(reflection_model=self.config.reflection_model_ref)
            )
        self.reflection_engine = reflection_engine

        self.run_id = f"gepa-run-{secrets.token_hex(4)}"
        self.state = EngineState.UNINITIALIZED
        self.population: List[Any] = []
        self.fitness_scores: List[FitnessScore] = []
        self.generation = 0
        self.generation_history: List[Dict[str, Any]] = []
        self.reflections = []
        self.mutation_history: List[MutationType] = []

        self._fitness_cache: Dict[Tuple[str, int], FitnessScore] = {}
        self._last_operations = {"mutations": [], "crossovers": 0}
        self._best: Optional[Tuple[Any, FitnessScore]] = None

    @property
    def trace_collector(self):
        return self.fitness_evaluator.trace_collector

    def initialize_population(self, seed_program: Any) -> List[Any]:
        """
        Build the initial population from a seed program.

        The unmodified seed is always the first member; the rest carry
        perturbed instructions.

        Raises:
            ConfigurationError: If a re-instructable seed yields fewer than two
                distinct instructions for a population larger than one
        """
        size = self.config.population_size
        seed_instruction = instruction_of(seed_program)
        variants = self._instruction_variants(seed_instruction, size - 1)

        self.population = [seed_program] + [with_instruction(seed_program, v) for v in variants]
        self.fitness_scores = []
        self.generation = 0
        self.generation_history = []
        self.reflections = []
        self.mutation_history = []
        self._last_operations = {"mutations": [], "crossovers": 0}
        self._best = None
        self.state = EngineState.INITIALIZED

        distinct = len(set(population_instructions(self.population)))
        if size > 1 and distinct < 2:
            if isinstance(as_instruction_program(seed_program), StaticInstructionProgram):
                logger.warning("Seed program cannot change its instruction; "
                               "population members will be identical")
            else:
                raise ConfigurationError(
                    "Population initialization produced fewer than 2 distinct instructions"
                )

        logger.info(f"Initialized population of {len(self.population)} "
                    f"({distinct} distinct instructions)")
        return self.population

    def evaluate_population(self, trainset: Sequence[Example]) -> List[FitnessScore]:
        """
        Score every population member on the training set.

        Candidates already scored on the same training set reuse their cached
        score. A candidate whose evaluation fails outright gets a failure
        score instead of aborting the generation.
        """
        if self.state == EngineState.UNINITIALIZED:
            raise RuntimeError("Population has not been initialized")

        trainset = as_examples(trainset)
        dataset_key = hash(tuple(trainset))
        self.fitness_evaluator.set_context(self.run_id, self.generation)

        keys = [(self._candidate_id(p), dataset_key) for p in self.population]
        pending: Dict[Tuple[str, int], Any] = {}
        for key, program in zip(keys, self.population):
            if key not in self._fitness_cache and key not in pending:
                pending[key] = program

        if pending:
            logger.debug(f"Evaluating {len(pending)} new candidates "
                         f"({len(self.population) - len(pending)} cached)")
            scores = self._evaluate_programs(list(pending.values()), trainset)
            for key, score in zip(pending, scores):
                self._fitness_cache[key] = score

        self.fitness_scores = [self._fitness_cache[key] for key in keys]
        self.state = EngineState.EVALUATED
        return list(self.fitness_scores)

    def evolve_generation(self, trainset: Sequence[Example]) -> List[Any]:
        """
        Produce the next generation and replace the population with it.

        Args:
            trainset: Examples used to score the current population if it has
                not been scored yet

        Returns:
            The new population (same size as the configured population)
        """
        if self.state == EngineState.UNINITIALIZED:
            raise RuntimeError("Population has not been initialized")
        if self.state != EngineState.EVALUATED or len(self.fitness_scores) != len(self.population):
            self.evaluate_population(trainset)

        pairs = list(zip(self.population, self.fitness_scores))
        size = self.config.population_size
        suggested = self._reflect_on_generation()

        elite_count = min(self.config.elite_count, size)
        survivors = self.pareto_selector.select_survivors(pairs, elite_count) if elite_count else []
        offspring_needed = size - len(survivors)

        parents = self._select_parents(pairs, offspring_needed + offspring_needed % 2)
        offspring, crossovers = self._recombine(parents)

        traces = self._generation_traces()
        mutations = []
        next_population = list(survivors)
        for child in offspring[:offspring_needed]:
            mutated, kind = self.mutation_engine.mutate_program(child, suggested, traces)
            if kind is not None:
                mutations.append(kind)
            next_population.append(mutated)

        self.population = next_population
        self.fitness_scores = []
        self.generation += 1
        self.mutation_history.extend(mutations)
        self._last_operations = {"mutations": mutations, "crossovers": crossovers}
        self.state = EngineState.EVOLVED

        logger.info(f"Generation {self.generation}: {len(survivors)} survivors, "
                    f"{crossovers} crossovers, {len(mutations)} mutations")
        return self.population

    def run_evolution(self, seed_program: Any, trainset: Sequence[Example],
                      on_generation: Optional[Callable[[Dict[str, Any]], None]] = None) -> Dict[str, Any]:
        """
        Run the complete generational loop.

        Args:
            seed_program: Program whose instruction seeds the population
            trainset: Training examples
            on_generation: Optional callback receiving each history entry

        Returns:
            Dictionary with best_candidate, best_fitness, best_score,
            generation_history, final_population and generation_count
        """
        trainset = as_examples(trainset)
        logger.info(f"Starting evolution for {self.config.num_generations} generations "
                    f"(population {self.config.population_size}, run {self.run_id})")

        self.initialize_population(seed_program)
        self._record_generation(self.evaluate_population(trainset), on_generation)

        for _ in range(self.config.num_generations):
            self.evolve_generation(trainset)
            self._record_generation(self.evaluate_population(trainset), on_generation)

        best_candidate, best_score = self._best
        logger.info(f"Evolution complete: best fitness {best_score.overall_score:.4f} "
                    f"after {self.generation} generations")
        return {
            "best_candidate": best_candidate,
            "best_fitness": best_score.overall_score,
            "best_score": best_score,
            "generation_history": list(self.generation_history),
            "final_population": list(self.population),
            "generation_count": self.generation,
        }

    def get_best_candidate(self) -> Tuple[Any, FitnessScore]:
        """Highest overall score in the current population; earliest index wins ties."""
        if not self.fitness_scores or len(self.fitness_scores) != len(self.population):
            raise RuntimeError("Population has not been evaluated")
        best_index = max(range(len(self.fitness_scores)),
                         key=lambda i: self.fitness_scores[i].overall_score)
        return self.population[best_index], self.fitness_scores[best_index]

    def population_diversity(self) -> float:
        """0.0 for a uniform population, 1.0 when every instruction is distinct."""
        size = len(self.population)
        if size <= 1:
            return 0.0
        distinct = len(set(population_instructions(self.population)))
        return (distinct - 1) / (size - 1)

    def _instruction_variants(self, instruction: str, count: int) -> List[str]:
        variants: List[str] = []
        frontier = [_sentence(instruction)]
        while len(variants) < count and frontier:
            next_frontier = []
            for base in frontier:
                for template in VARIANT_TEMPLATES:
                    candidate = template.format(instruction=base)
                    if candidate == instruction or candidate in variants:
                        continue
                    variants.append(candidate)
                    next_frontier.append(candidate)
                    if len(variants) >= count:
                        return variants
            frontier = next_frontier
        return variants

    def _evaluate_programs(self, programs: List[Any], trainset: List[Example]) -> List[FitnessScore]:
        try:
            return self.fitness_evaluator.batch_evaluate(programs, trainset)
        except Exception as e:
            logger.warning(f"Batch evaluation failed, evaluating candidates individually: {e}")

        scores = []
        for program in programs:
            try:
                scores.append(self.fitness_evaluator.evaluate_candidate(program, trainset))
            except Exception as e:
                logger.warning(f"Candidate evaluation failed: {e}")
                scores.append(FitnessScore.failure(
                    len(trainset),
                    cap=self.fitness_evaluator.config.error_score_cap,
                    errors=[str(e)],
                ))
        return scores

    def _select_parents(self, pairs: List[Tuple[Any, FitnessScore]], count: int) -> List[Any]:
        if count <= 0:
            return []
        if self.config.use_pareto_selection:
            parents = self.pareto_selector.select_parents(pairs, count)
        else:
            parents = []
        while len(parents) < count:
            parents.append(self.pareto_selector.tournament_selection(pairs))
        self.rng.shuffle(parents)
        return parents

    def _recombine(self, parents: List[Any]) -> Tuple[List[Any], int]:
        offspring = []
        crossovers = 0
        for i in range(0, len(parents) - 1, 2):
            children = self.crossover_engine.crossover_programs(parents[i], parents[i + 1])
            if children[0] is not parents[i] or children[1] is not parents[i + 1]:
                crossovers += 1
            offspring.extend(children)
        if len(parents) % 2 == 1:
            offspring.append(parents[-1])
        return offspring, crossovers

    def _reflect_on_generation(self) -> List[MutationType]:
        if self.reflection_engine is None or not self.config.use_reflection:
            return []

        traces = self._generation_traces()
        if not traces:
            return []

        context = {
            "generation": self.generation,
            "population_size": len(self.population),
            "current_best_score": max(s.overall_score for s in self.fitness_scores),
            "mutation_history": [m.value for m in self.mutation_history[-10:]],
            "recent_performance_trend": self._performance_trend(),
        }
        try:
            reflection = self.reflection_engine.reflection_with_context(traces, context)
        except Exception as e:
            logger.warning(f"Reflection failed for generation {self.generation}: {e}")
            return []

        self.reflections.append(reflection)
        logger.debug(f"Reflection: {reflection.summary()}")
        return list(reflection.suggested_mutations)

    def _generation_traces(self):
        return self.trace_collector.traces_where(
            optimization_run_id=self.run_id, generation=self.generation
        )

    def _performance_trend(self) -> str:
        if len(self.generation_history) < 2:
            return "stable"
        previous = self.generation_history[-2]["best_fitness"]
        latest = self.generation_history[-1]["best_fitness"]
        if latest > previous:
            return "improving"
        if latest < previous:
            return "declining"
        return "stable"

    def _record_generation(self, scores: List[FitnessScore],
                           on_generation: Optional[Callable[[Dict[str, Any]], None]] = None):
        best_candidate, best_score = self.get_best_candidate()
        if self._best is None or best_score.overall_score > self._best[1].overall_score:
            self._best = (best_candidate, best_score)

        entry = {
            "generation": self.generation,
            "best_fitness": best_score.overall_score,
            "avg_fitness": sum(s.overall_score for s in scores) / len(scores),
            "diversity": self.population_diversity(),
            "scores": [s.overall_score for s in scores],
            "errors_count": sum(s.errors_count for s in scores),
            "mutations": [m.value for m in self._last_operations["mutations"]],
            "crossovers": self._last_operations["crossovers"],
            "best_instruction": instruction_of(best_candidate),
        }
        self.generation_history.append(entry)

        if self.config.verbose:
            print(f"Gen {self.generation:3d}: best {entry['best_fitness']:.4f} "
                  f"avg {entry['avg_fitness']:.4f} diversity {entry['diversity']:.2f} "
                  f"errors {entry['errors_count']}")
        if on_generation is not None:
            on_generation(entry)

    @staticmethod
    def _candidate_id(program: Any) -> str:
        return candidate_config(program).config_id
