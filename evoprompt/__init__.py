"""
evoprompt - genetic-Pareto evolution of LLM program instructions.
"""

from .entities import (
    ConfigurationError,
    CrossoverType,
    MutationType,
    Example,
    FitnessScore,
    ExecutionTrace,
    ReflectionResult,
    CandidateConfig
)

__all__ = [
    "ConfigurationError",
    "CrossoverType",
    "MutationType",
    "Example",
    "FitnessScore",
    "ExecutionTrace",
    "ReflectionResult",
    "CandidateConfig"
]
