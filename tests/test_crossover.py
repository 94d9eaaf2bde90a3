"""
Test instruction crossover operators.
"""

import random

import pytest
from conftest import FakeProgram

from evoprompt.entities import CrossoverType
from evoprompt.core import CrossoverEngine, EvolutionConfig
from evoprompt.core.crossover import salient_terms


class BrokenProgram(FakeProgram):
    def with_instruction(self, instruction):
        raise RuntimeError("immutable")


def make_engine(seed=0, **overrides):
    config = EvolutionConfig(random_seed=seed, **overrides)
    return CrossoverEngine(config, rng=random.Random(seed))


class TestCrossoverPrograms:
    """Test program-level crossover."""

    def test_zero_rate_returns_parents(self):
        """Test crossover_rate 0 returns the unmodified parent pair."""
        engine = make_engine(crossover_rate=0.0)
        a = FakeProgram("Solve the math problem")
        b = FakeProgram("Explain your reasoning clearly")

        for _ in range(10):
            offspring = engine.crossover_programs(a, b)
            assert offspring[0] is a
            assert offspring[1] is b

    def test_full_rate_produces_offspring(self):
        """Test crossover_rate 1 always produces two non-empty offspring."""
        engine = make_engine(crossover_rate=1.0)
        a = FakeProgram("Solve the math problem step by step")
        b = FakeProgram("Explain your reasoning clearly and concisely")

        offspring = engine.crossover_programs(a, b)

        assert len(offspring) == 2
        assert all(child.instruction_text().strip() for child in offspring)
        assert len(engine.type_history) == 1

    def test_operator_failure_passes_parents(self):
        """Test an operator failure never reaches the caller."""
        engine = make_engine(crossover_rate=1.0)
        a = BrokenProgram("Solve the math problem")
        b = BrokenProgram("Explain your reasoning")

        assert engine.crossover_programs(a, b) == [a, b]
        assert engine.type_history == []

    def test_batch_crossover_odd(self):
        """Test an odd final member passes through and size is preserved."""
        engine = make_engine(crossover_rate=1.0)
        population = [FakeProgram(f"Answer question number {i}") for i in range(5)]

        offspring = engine.batch_crossover(population)

        assert len(offspring) == 5
        assert offspring[-1] is population[-1]

    def test_batch_crossover_empty(self):
        assert make_engine().batch_crossover([]) == []


class TestCrossoverOperators:
    """Test string-level operators."""

    def test_uniform_identical_inputs(self):
        """Test identical parents give identical offspring."""
        engine = make_engine()
        assert engine.uniform_crossover("Answer the question", "Answer the question") == (
            "Answer the question", "Answer the question")

    def test_uniform_uses_parent_words(self):
        engine = make_engine()
        a, b = "alpha beta gamma", "one two three four"
        child_a, child_b = engine.uniform_crossover(a, b)

        vocabulary = set(a.split()) | set(b.split())
        assert set(child_a.split()) <= vocabulary
        assert len(child_a.split()) == 4
        assert len(child_b.split()) == 4

    def test_blend_mixes_vocabulary(self):
        """Test offspring reflect vocabulary from both parents."""
        engine = make_engine()
        a = "Solve the arithmetic problem"
        b = "Explain reasoning clearly"
        child_a, child_b = engine.blend_crossover(a, b)

        combined = (child_a + " " + child_b).lower()
        assert "arithmetic" in combined
        assert "reasoning" in combined
        assert "reasoning" in child_a.lower()

    def test_structured_output_shape(self):
        """Test structured crossover yields non-empty tokenizable strings."""
        engine = make_engine()
        child_a, child_b = engine.structured_crossover(
            "Carefully solve the problem", "Please explain the answer in detail"
        )

        assert child_a.split()
        assert child_b.split()
        assert child_a.startswith("Solve")
        assert child_b.startswith("Explain")

    def test_structured_single_word(self):
        engine = make_engine()
        child_a, child_b = engine.structured_crossover("Solve", "Explain")

        assert child_a == "Solve the task"
        assert child_b == "Explain the task"

    def test_unknown_type_returns_inputs(self):
        """Test unknown operators leave instructions unchanged."""
        engine = make_engine()
        assert engine.apply_crossover("a b", "c d", "splice") == ("a b", "c d")

    def test_select_restricted_to_configured(self):
        """Test selection never returns an unconfigured operator."""
        engine = make_engine(crossover_types=["structured"])
        for a, b in [("short", "tiny"), ("x" * 150, "y" * 150), ("medium length one", "another")]:
            assert engine.select_crossover_type(a, b) == CrossoverType.STRUCTURED

    def test_salient_terms(self):
        assert salient_terms("Solve the math problem with care") == ["solve", "math", "problem", "care"]


class TestCrossoverDiversity:
    """Test operator usage diversity."""

    def test_empty_history(self):
        assert make_engine().crossover_diversity([]) == 0.0

    def test_uniform_history(self):
        assert make_engine().crossover_diversity(["blend"] * 6) == 0.0

    def test_varied_history(self):
        engine = make_engine()
        two = engine.crossover_diversity(["blend", "uniform"] * 3)
        three = engine.crossover_diversity(["blend", "uniform", "structured"])

        assert 0.0 < two < three
        assert three == pytest.approx(1.0)
