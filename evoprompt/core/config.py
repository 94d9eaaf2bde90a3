"""
Configuration for the evolutionary process.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from ..entities import ConfigurationError, CrossoverType, MutationType


def _default_crossover_types() -> List[CrossoverType]:
    return [CrossoverType.UNIFORM, CrossoverType.BLEND, CrossoverType.STRUCTURED]


def _default_mutation_types() -> List[MutationType]:
    return [MutationType.REWRITE, MutationType.EXPAND, MutationType.SIMPLIFY,
            MutationType.COMBINE, MutationType.REPHRASE]


@dataclass
class EvolutionConfig:
    """Configuration for the genetic loop."""
    num_generations: int = 10
    population_size: int = 8
    mutation_rate: float = 0.7
    crossover_rate: float = 0.6
    crossover_types: List[CrossoverType] = field(default_factory=_default_crossover_types)
    mutation_types: List[MutationType] = field(default_factory=_default_mutation_types)
    use_pareto_selection: bool = True
    reflection_model_ref: Optional[str] = "gemini-1.5-pro"
    use_reflection: bool = True
    tournament_size: int = 3
    elite_count: int = 1  # survivors carried unchanged into the next generation
    random_seed: Optional[int] = None
    verbose: bool = False

    # MLflow configuration
    experiment_name: str = "evoprompt_evolution"
    log_artifacts: bool = True
    tracking_uri: Optional[str] = None  # Use default local tracking if None

    def __post_init__(self):
        if self.num_generations < 0:
            raise ConfigurationError("num_generations must be >= 0")
        if self.population_size < 1:
            raise ConfigurationError("population_size must be >= 1")
        for name in ("mutation_rate", "crossover_rate"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be between 0 and 1, got {value}")
        if self.tournament_size < 1:
            raise ConfigurationError("tournament_size must be >= 1")
        if self.elite_count < 0:
            raise ConfigurationError("elite_count must be >= 0")

        self.crossover_types = [CrossoverType.parse(t) for t in self.crossover_types]
        self.mutation_types = [MutationType.parse(t) for t in self.mutation_types]
        if not self.crossover_types:
            raise ConfigurationError("At least one crossover type is required")
        if not self.mutation_types:
            raise ConfigurationError("At least one mutation type is required")
