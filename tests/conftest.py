"""
Shared fixtures: fake programs and training data, no LLM involved.
"""

import pytest

from evoprompt.entities import Example, FitnessScore
from evoprompt.core import InstructionProgram
from evoprompt.core.fitness import exact_match


class FakeProgram(InstructionProgram):
    """Looks answers up in a table and reports fixed token usage."""

    def __init__(self, instruction="Answer the question", answers=None,
                 tokens=10, model="fake-model"):
        self.instruction = instruction
        self.answers = answers or {}
        self.tokens = tokens
        self.model = model
        self.calls = []

    def instruction_text(self):
        return self.instruction

    def with_instruction(self, instruction):
        return FakeProgram(instruction, self.answers, self.tokens, self.model)

    def call(self, **inputs):
        self.calls.append(inputs)
        answer = self.answers.get(inputs.get("question"), "I don't know")
        usage = {"total_tokens": self.tokens}
        if self.model:
            usage["model"] = self.model
        return {"answer": answer, "usage": usage}


class FailingProgram(InstructionProgram):
    """Raises on every call."""

    def __init__(self, instruction="Answer the question"):
        self.instruction = instruction

    def instruction_text(self):
        return self.instruction

    def with_instruction(self, instruction):
        return FailingProgram(instruction)

    def call(self, **inputs):
        raise RuntimeError("model unavailable")


@pytest.fixture
def answer_key():
    return {
        "What is 2+2?": "4",
        "What is the capital of France?": "Paris",
    }


@pytest.fixture
def trainset(answer_key):
    return [
        Example(inputs={"question": q}, expected={"answer": a})
        for q, a in answer_key.items()
    ]


@pytest.fixture
def fake_program(answer_key):
    return FakeProgram("Answer the question", answers=answer_key)


@pytest.fixture
def failing_program():
    return FailingProgram()


@pytest.fixture
def metric():
    return exact_match


@pytest.fixture
def make_score():
    """Build a FitnessScore with the given primary/secondary values and weighted overall."""
    def _make(primary, **secondary):
        return FitnessScore.combine(primary, secondary)
    return _make
