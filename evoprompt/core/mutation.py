"""
Mutation operators for instruction evolution.

MutationEngine transforms a program's instruction with one of the fixed
mutation kinds. Rule-based transformations are always available; when an
instruction proposer (an LLM client) is attached, rewrite mutations ask it
for an improved instruction and fall back to the rules if it fails.
"""

import logging
import random
import re
from typing import Any, List, Optional, Protocol, Sequence, Tuple

from ..entities import ExecutionTrace, MutationType
from .config import EvolutionConfig
from .crossover import OperatorFailure
from .programs import instruction_of, with_instruction


logger = logging.getLogger(__name__)


class InstructionProposer(Protocol):
    def propose_instruction(self, original_instruction: str, trace_analysis: str,
                            failure_analysis: str) -> str:
        ...


EXPANSIONS = [
    "Think step by step.",
    "Provide detailed reasoning.",
    "Consider all aspects carefully.",
    "Explain your thought process.",
]

STRATEGIES = [
    "Break down the problem systematically.",
    "Use logical reasoning.",
    "Apply domain knowledge.",
    "Consider edge cases.",
]

SYNONYMS = {
    "solve": "resolve",
    "answer": "respond to",
    "analyze": "examine",
    "calculate": "compute",
    "determine": "identify",
    "explain": "describe",
}

COMPLEXITY_WORDS = re.compile(r"\b(carefully|detailed|comprehensive|thorough|thoroughly)\b",
                              re.IGNORECASE)


def summarize_traces(traces: Sequence[ExecutionTrace]) -> str:
    """Short textual analysis of traces for instruction proposals."""
    if not traces:
        return "No execution traces available"

    llm_traces = [t for t in traces if t.is_llm_trace()]
    lines = [
        "Execution Trace Analysis:",
        f"- Total traces: {len(traces)}",
        f"- LLM interactions: {len(llm_traces)}",
        f"- Module calls: {sum(1 for t in traces if t.is_module_trace())}",
    ]
    if llm_traces:
        lines.append(f"- Total tokens used: {sum(t.token_usage for t in llm_traces)}")
        models = sorted({t.model_name for t in llm_traces if t.model_name})
        if models:
            lines.append(f"- Models used: {', '.join(models)}")
    failures = [t for t in traces if t.attributes.get("error")]
    if failures:
        lines.append(f"- Failed calls: {len(failures)}")
    return "\n".join(lines)


def summarize_failures(traces: Sequence[ExecutionTrace], limit: int = 3) -> str:
    """Describe low-scoring or failed calls found in the traces."""
    failed = [t for t in traces
              if t.attributes.get("error") or float(t.attributes.get("score", 1.0)) < 0.5]
    if not failed:
        return "No failed examples to analyze"

    lines = ["Failure Pattern Analysis:", f"- Failed examples count: {len(failed)}"]
    for idx, trace in enumerate(failed[:limit], 1):
        detail = trace.attributes.get("error") or (trace.response_text or "")[:50]
        lines.append(f"  {idx}. {detail}")
    return "\n".join(lines)


class MutationEngine:
    """Applies instruction mutations to programs."""

    def __init__(self, config: Optional[EvolutionConfig] = None,
                 rng: Optional[random.Random] = None,
                 instruction_proposer: Optional[InstructionProposer] = None):
        self.config = config or EvolutionConfig()
        self.rng = rng or random.Random(self.config.random_seed)
        self.instruction_proposer = instruction_proposer
        self.type_history: List[MutationType] = []

    def mutate_program(self, program: Any,
                       suggested: Optional[Sequence[MutationType]] = None,
                       traces: Sequence[ExecutionTrace] = ()) -> Tuple[Any, Optional[MutationType]]:
        """
        Mutate a program with probability mutation_rate.

        Returns:
            Tuple of (program, applied mutation kind or None). The original
            program is returned when no mutation happens or it fails.
        """
        if self.rng.random() >= self.config.mutation_rate:
            return program, None

        try:
            instruction = instruction_of(program)
            mutation_type = self.select_mutation_type(instruction, suggested)
            mutated = self.apply_mutation(instruction, mutation_type, traces)
            if not mutated.strip():
                raise OperatorFailure(f"{mutation_type.value} produced an empty instruction")
            offspring = with_instruction(program, mutated)
        except Exception as e:
            logger.warning(f"Mutation failed, keeping program: {e}")
            return program, None

        self.type_history.append(mutation_type)
        return offspring, mutation_type

    def select_mutation_type(self, instruction: Optional[str] = None,
                             suggested: Optional[Sequence[MutationType]] = None) -> MutationType:
        """Prefer reflection suggestions, otherwise bias on instruction length."""
        configured = self.config.mutation_types
        if suggested:
            candidates = [MutationType.parse(m) for m in suggested]
            candidates = [m for m in candidates if m in configured]
            if candidates:
                return self.rng.choice(candidates)

        preferred = configured
        if instruction is not None and len(instruction) < 20:
            preferred = [MutationType.EXPAND, MutationType.COMBINE]
        elif instruction is not None and len(instruction) > 100:
            preferred = [MutationType.SIMPLIFY, MutationType.REPHRASE]
        candidates = [m for m in preferred if m in configured] or configured
        return self.rng.choice(candidates)

    def apply_mutation(self, instruction: str, mutation_type: MutationType,
                       traces: Sequence[ExecutionTrace] = ()) -> str:
        mutation_type = MutationType.parse(mutation_type)
        if mutation_type == MutationType.REWRITE:
            return self._rewrite(instruction, traces)
        if mutation_type == MutationType.EXPAND:
            return self._append_clause(instruction, EXPANSIONS)
        if mutation_type == MutationType.SIMPLIFY:
            return self._simplify(instruction)
        if mutation_type == MutationType.COMBINE:
            return self._append_clause(instruction, STRATEGIES)
        if mutation_type == MutationType.REPHRASE:
            return self._rephrase(instruction)
        return instruction

    def mutation_diversity(self, history: Optional[Sequence[Any]] = None,
                           window: int = 10) -> float:
        """Variety of recently applied mutation kinds in [0, 1]."""
        recent = list(self.type_history if history is None else history)[-window:]
        unique = len({MutationType.parse(m) for m in recent})
        if unique <= 1:
            return 0.0
        total = max(len(self.config.mutation_types), unique)
        return min((unique - 1) / (total - 1), 1.0)

    def _rewrite(self, instruction: str, traces: Sequence[ExecutionTrace]) -> str:
        if self.instruction_proposer is not None:
            try:
                proposed = self.instruction_proposer.propose_instruction(
                    original_instruction=instruction,
                    trace_analysis=summarize_traces(traces),
                    failure_analysis=summarize_failures(traces),
                )
                if proposed and proposed.strip():
                    return proposed.strip()
            except Exception as e:
                logger.warning(f"Instruction proposal failed, using rule-based rewrite: {e}")

        lowered = instruction[:1].lower() + instruction[1:]
        pattern = self.rng.choice([
            "Carefully {lowered}",
            "Please {lowered}",
            "{original} with precision",
        ])
        return pattern.format(lowered=lowered, original=instruction.rstrip("."))

    def _append_clause(self, instruction: str, clauses: List[str]) -> str:
        missing = [c for c in clauses if c.lower() not in instruction.lower()]
        if not missing:
            return instruction
        base = instruction.strip()
        if base and base[-1] not in ".!?":
            base += "."
        return f"{base} {self.rng.choice(missing)}"

    @staticmethod
    def _simplify(instruction: str) -> str:
        simplified = COMPLEXITY_WORDS.sub("", instruction)
        simplified = re.sub(r"\s+", " ", simplified).strip()
        simplified = re.sub(r"\s+([.,;:])", r"\1", simplified)
        return simplified or instruction

    def _rephrase(self, instruction: str) -> str:
        result = instruction
        for original, replacement in SYNONYMS.items():
            pattern = re.compile(rf"\b{original}\b", re.IGNORECASE)
            if pattern.search(result) and self.rng.random() < 0.5:
                result = pattern.sub(replacement, result)
        if result == instruction:
            # nothing replaced; vary the framing instead
            result = f"Your task: {instruction[:1].lower() + instruction[1:]}"
        return result
