"""
Program representations for the evoprompt evolutionary system.

The optimizer never mutates a program in place. Programs that support
instruction evolution implement the InstructionProgram capability; anything
else is wrapped in StaticInstructionProgram, which reports a default
instruction and ignores instruction changes.
"""

from abc import ABC, abstractmethod
from typing import Any, Sequence, Tuple

from ..entities import CandidateConfig, Example


DEFAULT_INSTRUCTION = "Analyze the input and complete the task accurately"


class Program(ABC):
    """Anything that can be called with input fields and returns a prediction."""

    @abstractmethod
    def call(self, **inputs: Any) -> Any:
        pass


class InstructionProgram(Program):
    """Program capability: exposes its instruction and can be re-instructed."""

    @abstractmethod
    def instruction_text(self) -> str:
        pass

    @abstractmethod
    def with_instruction(self, instruction: str) -> "InstructionProgram":
        """Return a new program carrying the given instruction."""
        pass

    def few_shot_examples(self) -> Sequence[Example]:
        return ()


class StaticInstructionProgram(InstructionProgram):
    """
    Adapter for programs that cannot change their instruction.

    Instruction mutation is a no-op: with_instruction returns the same
    adapter, so offspring of such programs behave exactly like their parent.
    """

    def __init__(self, program: Any, instruction: str = DEFAULT_INSTRUCTION):
        self.program = program
        self._instruction = instruction

    def call(self, **inputs: Any) -> Any:
        if isinstance(self.program, Program):
            return self.program.call(**inputs)
        return self.program(**inputs)

    def instruction_text(self) -> str:
        return self._instruction

    def with_instruction(self, instruction: str) -> "StaticInstructionProgram":
        return self


def as_instruction_program(program: Any) -> InstructionProgram:
    """Return the program itself if it has the capability, otherwise the no-op adapter."""
    if isinstance(program, InstructionProgram):
        return program
    return StaticInstructionProgram(program)


def instruction_of(program: Any) -> str:
    """Instruction text of a program, falling back to the default description."""
    text = as_instruction_program(program).instruction_text()
    return text if text and text.strip() else DEFAULT_INSTRUCTION


def with_instruction(program: Any, instruction: str) -> InstructionProgram:
    return as_instruction_program(program).with_instruction(instruction)


def candidate_config(program: Any) -> CandidateConfig:
    """Content-derived identity of a program's instruction and demonstrations."""
    adapted = as_instruction_program(program)
    underlying = adapted.program if isinstance(adapted, StaticInstructionProgram) else adapted
    return CandidateConfig(
        instruction=instruction_of(adapted),
        few_shot_examples=tuple(adapted.few_shot_examples()),
        metadata={"program_type": type(underlying).__name__},
    )


def call_program(program: Any, inputs: Any) -> Any:
    """Invoke a program with an example's input fields."""
    return as_instruction_program(program).call(**dict(inputs))


def population_instructions(population: Sequence[Any]) -> Tuple[str, ...]:
    return tuple(instruction_of(p) for p in population)
