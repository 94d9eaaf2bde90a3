"""
Core components for evoprompt - genetic-Pareto evolution of program instructions.
"""

from .programs import (
    DEFAULT_INSTRUCTION,
    Program,
    InstructionProgram,
    StaticInstructionProgram,
    candidate_config
)

from .traces import TraceCollector

from .fitness import (
    FitnessEvaluator,
    EvaluationConfig,
    EvaluationError
)

from .config import EvolutionConfig

from .crossover import (
    CrossoverEngine,
    OperatorFailure
)

from .mutation import MutationEngine

from .pareto import ParetoSelector

from .reflection import (
    ReflectionEngine,
    ReflectionConfig,
    ReflectionRequest,
    ReflectionParseError
)

from .genetic_engine import (
    GeneticEngine,
    EngineState
)

from .optimizer import (
    GEPAOptimizer,
    OptimizationResult,
    create_optimizer
)

__all__ = [
    "DEFAULT_INSTRUCTION",
    "Program",
    "InstructionProgram",
    "StaticInstructionProgram",
    "candidate_config",
    "TraceCollector",
    "FitnessEvaluator",
    "EvaluationConfig",
    "EvaluationError",
    "EvolutionConfig",
    "CrossoverEngine",
    "OperatorFailure",
    "MutationEngine",
    "ParetoSelector",
    "ReflectionEngine",
    "ReflectionConfig",
    "ReflectionRequest",
    "ReflectionParseError",
    "GeneticEngine",
    "EngineState",
    "GEPAOptimizer",
    "OptimizationResult",
    "create_optimizer"
]
