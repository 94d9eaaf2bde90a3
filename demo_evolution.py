"""
Demo script showing the GeneticEngine loop without any LLM or tracking server.

A keyword-driven fake program stands in for an LLM: it answers more
questions correctly when its instruction asks for careful, step-by-step
work, so the evolutionary loop has a real signal to climb.
"""

import random

from evoprompt.entities import Example
from evoprompt.core import (
    EvolutionConfig,
    FitnessEvaluator,
    EvaluationConfig,
    GeneticEngine,
    InstructionProgram,
)
from evoprompt.core.fitness import exact_match


KEYWORD_SKILL = {
    "step": 0.3,
    "careful": 0.2,
    "precise": 0.2,
    "reasoning": 0.1,
    "examples": 0.1,
}


class KeywordProgram(InstructionProgram):
    """Answers correctly with a probability that grows with useful keywords."""

    def __init__(self, instruction: str, seed: int = 0):
        self.instruction = instruction
        self.seed = seed

    def instruction_text(self) -> str:
        return self.instruction

    def with_instruction(self, instruction: str) -> "KeywordProgram":
        return KeywordProgram(instruction, self.seed)

    def skill(self) -> float:
        lowered = self.instruction.lower()
        return min(0.2 + sum(w for k, w in KEYWORD_SKILL.items() if k in lowered), 1.0)

    def call(self, **inputs):
        question = inputs["question"]
        # deterministic per (instruction, question)
        rng = random.Random(f"{self.seed}:{self.instruction}:{question}")
        a, b = (int(x) for x in question.split("+"))
        answer = a + b if rng.random() < self.skill() else a + b + 1
        return {
            "answer": str(answer),
            "usage": {"total_tokens": 20 + len(self.instruction) // 4, "model": "keyword-demo"},
        }


def demo_genetic_engine():
    """Run a short evolution and print the generation history."""
    print("=== GeneticEngine Demo ===\n")

    trainset = [
        Example(inputs={"question": f"{a}+{b}"}, expected={"answer": str(a + b)})
        for a, b in [(2, 3), (10, 7), (21, 21), (5, 9), (13, 30), (8, 8)]
    ]

    config = EvolutionConfig(
        num_generations=5,
        population_size=6,
        random_seed=7,
        verbose=True,
    )
    engine = GeneticEngine(
        config=config,
        fitness_evaluator=FitnessEvaluator(exact_match, config=EvaluationConfig(max_workers=4)),
    )

    results = engine.run_evolution(KeywordProgram("Answer the question"), trainset)

    print(f"\nBest fitness: {results['best_fitness']:.4f}")
    print(f"Best instruction: {results['best_candidate'].instruction_text()}")

    print("\n=== Generation History ===")
    for entry in results["generation_history"]:
        print(f"Gen {entry['generation']}: best={entry['best_fitness']:.3f} "
              f"avg={entry['avg_fitness']:.3f} diversity={entry['diversity']:.2f} "
              f"mutations={entry['mutations']} crossovers={entry['crossovers']}")

    if engine.reflections:
        print(f"\nLast reflection: {engine.reflections[-1].summary()}")


if __name__ == "__main__":
    demo_genetic_engine()
