"""
Crossover operators for instruction evolution.

CrossoverEngine recombines the instructions of two parent programs into two
offspring instructions. Operator failures never reach the caller: the
parents pass through unchanged.
"""

import logging
import random
import re
from typing import Any, List, Optional, Sequence, Tuple, Union

from ..entities import ConfigurationError, CrossoverType
from .config import EvolutionConfig
from .programs import instruction_of, with_instruction


logger = logging.getLogger(__name__)


class OperatorFailure(Exception):
    """A genetic operator could not produce offspring."""
    pass


STOPWORDS = {
    "the", "and", "with", "that", "this", "from", "your", "into", "each", "for",
    "are", "you", "all", "any", "its", "not", "but", "then", "than", "when",
    "what", "will", "should", "please", "about", "make", "sure", "given",
}

ACTION_VERBS = (
    "solve", "answer", "calculate", "determine", "analyze", "compute", "resolve",
    "examine", "classify", "summarize", "explain", "identify", "extract", "translate",
    "respond", "write", "generate", "evaluate", "predict", "describe",
)


def salient_terms(instruction: str) -> List[str]:
    """Content words of an instruction in order of first appearance."""
    terms = []
    for word in re.findall(r"[A-Za-z][A-Za-z'-]*", instruction):
        lowered = word.lower()
        if len(lowered) > 3 and lowered not in STOPWORDS and lowered not in terms:
            terms.append(lowered)
    return terms


class CrossoverEngine:
    """Genetic recombination of program instructions."""

    def __init__(self, config: Optional[EvolutionConfig] = None,
                 rng: Optional[random.Random] = None):
        self.config = config or EvolutionConfig()
        self.rng = rng or random.Random(self.config.random_seed)
        self.type_history: List[CrossoverType] = []

    def crossover_programs(self, parent_a: Any, parent_b: Any) -> List[Any]:
        """
        Produce two offspring programs from two parents.

        With probability 1 - crossover_rate, or on any operator failure, the
        parents are returned unchanged.
        """
        if self.rng.random() >= self.config.crossover_rate:
            return [parent_a, parent_b]

        try:
            instruction_a = instruction_of(parent_a)
            instruction_b = instruction_of(parent_b)

            crossover_type = self.select_crossover_type(instruction_a, instruction_b)
            offspring_a, offspring_b = self.apply_crossover(
                instruction_a, instruction_b, crossover_type
            )
            if not offspring_a.strip() or not offspring_b.strip():
                raise OperatorFailure(f"{crossover_type.value} crossover produced an empty instruction")

            offspring = [
                with_instruction(parent_a, offspring_a),
                with_instruction(parent_b, offspring_b),
            ]
        except Exception as e:
            logger.warning(f"Crossover failed, keeping parents: {e}")
            return [parent_a, parent_b]

        self.type_history.append(crossover_type)
        return offspring

    def batch_crossover(self, population: Sequence[Any]) -> List[Any]:
        """Cross sequential pairs; an unpaired final member passes through."""
        offspring = []
        for i in range(0, len(population) - 1, 2):
            offspring.extend(self.crossover_programs(population[i], population[i + 1]))
        if len(population) % 2 == 1:
            offspring.append(population[-1])
        return offspring

    def select_crossover_type(self, instruction_a: Optional[str] = None,
                              instruction_b: Optional[str] = None) -> CrossoverType:
        """Pick a configured operator, biased by the combined instruction length."""
        configured = self.config.crossover_types
        preferred = configured
        if instruction_a is not None and instruction_b is not None:
            combined_length = len(instruction_a) + len(instruction_b)
            if combined_length < 40:
                preferred = [CrossoverType.BLEND, CrossoverType.UNIFORM]
            elif combined_length > 200:
                preferred = [CrossoverType.STRUCTURED, CrossoverType.UNIFORM]
        candidates = [t for t in preferred if t in configured] or configured
        return self.rng.choice(candidates)

    def apply_crossover(self, instruction_a: str, instruction_b: str,
                        crossover_type: Union[CrossoverType, str]) -> Tuple[str, str]:
        """Apply one operator; unknown operators return the inputs unchanged."""
        try:
            crossover_type = CrossoverType.parse(crossover_type)
        except ConfigurationError:
            return instruction_a, instruction_b

        if crossover_type == CrossoverType.UNIFORM:
            return self.uniform_crossover(instruction_a, instruction_b)
        if crossover_type == CrossoverType.BLEND:
            return self.blend_crossover(instruction_a, instruction_b)
        if crossover_type == CrossoverType.STRUCTURED:
            return self.structured_crossover(instruction_a, instruction_b)
        return instruction_a, instruction_b

    def uniform_crossover(self, instruction_a: str, instruction_b: str) -> Tuple[str, str]:
        """Exchange words position by position, choosing the source at random."""
        if instruction_a == instruction_b:
            return instruction_a, instruction_b

        words_a = instruction_a.split()
        words_b = instruction_b.split()
        offspring_a, offspring_b = [], []

        for i in range(max(len(words_a), len(words_b))):
            word_a = words_a[i] if i < len(words_a) else None
            word_b = words_b[i] if i < len(words_b) else None
            if self.rng.random() < 0.5:
                first, second = word_a or word_b, word_b or word_a
            else:
                first, second = word_b or word_a, word_a or word_b
            offspring_a.append(first)
            offspring_b.append(second)

        return " ".join(offspring_a), " ".join(offspring_b)

    def blend_crossover(self, instruction_a: str, instruction_b: str) -> Tuple[str, str]:
        """Keep each parent's instruction and fold in the other's distinctive terms."""
        terms_a = salient_terms(instruction_a)
        terms_b = salient_terms(instruction_b)
        only_in_a = [t for t in terms_a if t not in terms_b][:3]
        only_in_b = [t for t in terms_b if t not in terms_a][:3]

        return (self._blend(instruction_a, only_in_b),
                self._blend(instruction_b, only_in_a))

    def structured_crossover(self, instruction_a: str, instruction_b: str) -> Tuple[str, str]:
        """Swap the action verbs of the two instructions, keeping each template."""
        action_a, modifiers_a = self._components(instruction_a)
        action_b, modifiers_b = self._components(instruction_b)

        return (self._assemble(action_a, modifiers_b),
                self._assemble(action_b, modifiers_a))

    def crossover_diversity(self, type_history: Optional[Sequence[Any]] = None,
                            window: int = 10) -> float:
        """
        Variety of recently used operators.

        0.0 for an empty or single-operator history, 1.0 when every
        configured operator appears in the recent window.
        """
        history = list(self.type_history if type_history is None else type_history)[-window:]
        unique = len({CrossoverType.parse(t) for t in history})
        if unique <= 1:
            return 0.0
        total = max(len(self.config.crossover_types), unique)
        return min((unique - 1) / (total - 1), 1.0)

    def _blend(self, instruction: str, borrowed: List[str]) -> str:
        if not borrowed:
            return instruction
        base = instruction.strip().rstrip(".")
        pattern = self.rng.choice([
            "{base}, paying attention to {terms}.",
            "{base}. Emphasize {terms}.",
            "{base} while considering {terms}.",
        ])
        return pattern.format(base=base, terms=", ".join(borrowed))

    def _components(self, instruction: str) -> Tuple[str, str]:
        words = instruction.split()
        if not words:
            return "complete", ""
        action_idx = next(
            (i for i, w in enumerate(words) if any(v in w.lower() for v in ACTION_VERBS)),
            0,
        )
        action = words[action_idx].strip(".,;:")
        modifiers = " ".join(words[:action_idx] + words[action_idx + 1:])
        return action or "complete", modifiers

    @staticmethod
    def _assemble(action: str, modifiers: str) -> str:
        if not modifiers.strip():
            return f"{action.capitalize()} the task"
        return f"{action.capitalize()} {modifiers}"
