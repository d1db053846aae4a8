"""
Copyright 2023 Quarkslab

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

In-memory loader backend used by the tests.

Functions are written in a tiny assembly syntax, one instruction per line:

  * ``name:`` defines a label at the next instruction;
  * ``@name`` is a reference to a label (a code operand);
  * ``$name`` is a called symbol;
  * ``[...]`` is a memory operand, a number is an immediate, anything else is a
    register;
  * ``value=@name`` is a switch case, a bare ``@name`` of a switch is its default;
  * ``.byte ...`` is an undecodable instruction.

The control flow of an instruction is derived from its mnemonic.
"""

from __future__ import annotations
from collections.abc import Iterator

from cfgdiff import Program, Function, canonicalize
from cfgdiff.cfg import FunctionCFG
from cfgdiff.loader.backend import (
    AbstractOperandBackend,
    AbstractInstructionBackend,
    AbstractFunctionBackend,
    AbstractProgramBackend,
)
from cfgdiff.loader.types import FlowType, InputFormat, OperandType

INSTRUCTION_SIZE = 4


class OperandBackendMock(AbstractOperandBackend):
    def __init__(self, text: str, type: OperandType, value=None):
        self.text = text
        self._type = type
        self._value = value

    def __str__(self) -> str:
        return self.text

    @property
    def type(self) -> OperandType:
        return self._type

    @property
    def value(self):
        return self._value


class InstructionBackendMock(AbstractInstructionBackend):
    def __init__(
        self,
        addr: int,
        text: str,
        mnemonic: str,
        operands: list[OperandBackendMock],
        flow: FlowType,
        targets: list[int],
        target_values: list[int | None] | None = None,
        opaque: bool = False,
    ):
        self._addr = addr
        self.text = text
        self._mnemonic = mnemonic
        self._operands = operands
        self._flow = flow
        self._targets = targets
        self._target_values = target_values
        self.opaque = opaque

    @property
    def addr(self) -> int:
        return self._addr

    @property
    def mnemonic(self) -> str:
        return self._mnemonic

    @property
    def operands(self) -> Iterator[OperandBackendMock]:
        return iter(self._operands)

    @property
    def flow(self) -> FlowType:
        return self._flow

    @property
    def targets(self) -> list[int]:
        return self._targets

    @property
    def target_values(self) -> list[int | None]:
        if self._target_values is None:
            return super().target_values
        return self._target_values

    @property
    def is_opaque(self) -> bool:
        return self.opaque

    def __str__(self) -> str:
        return self.text


def _flow(mnemonic: str, nb_targets: int) -> FlowType:
    if mnemonic == "ret":
        return FlowType.ret
    if mnemonic in ("ud2", "unreachable"):
        return FlowType.trap
    if mnemonic == "call":
        return FlowType.call
    if mnemonic == "invoke":
        return FlowType.call_with_unwind
    if mnemonic == "switch":
        return FlowType.switch
    if mnemonic in ("jmp", "br") and nb_targets == 1:
        return FlowType.jump
    if mnemonic == "jmp":
        return FlowType.indirect_jump
    if mnemonic.startswith("j") or mnemonic == "br":
        return FlowType.cond_jump
    return FlowType.sequential


def _operand(
    text: str, labels: dict[str, int]
) -> tuple[OperandBackendMock, int | None, int | None]:
    """Parse one operand, returns it with its code target and its switch value"""

    value = None
    if "=@" in text:
        case, text = text.split("=", 1)
        value = int(case, 0)
    if text.startswith("@"):
        return OperandBackendMock(text, OperandType.code), labels[text[1:]], value
    if text.startswith("$"):
        return OperandBackendMock(text, OperandType.symbol, text[1:]), None, None
    if text.startswith("["):
        return OperandBackendMock(text, OperandType.memory), None, None
    try:
        return OperandBackendMock(text, OperandType.immediate, int(text, 0)), None, None
    except ValueError:
        return OperandBackendMock(text, OperandType.register), None, None


def assemble(
    lines: list[str], addr: int = 0x1000
) -> tuple[list[InstructionBackendMock], dict[int, str]]:
    """
    Assemble the lines of a function

    :return: the instructions and the labels keyed by address
    """

    labels: dict[str, int] = {}
    current = addr
    for line in lines:
        if line.endswith(":"):
            labels[line[:-1]] = current
        else:
            current += INSTRUCTION_SIZE

    instructions = []
    current = addr
    for line in lines:
        if line.endswith(":"):
            continue
        if line.startswith(".byte"):
            opaque = InstructionBackendMock(
                current, line, ".byte", [], FlowType.sequential, [], opaque=True
            )
            instructions.append(opaque)
            current += INSTRUCTION_SIZE
            continue

        mnemonic, _, rest = line.partition(" ")
        operands, targets, values = [], [], []
        for text in filter(None, (x.strip() for x in rest.split(","))):
            operand, target, value = _operand(text, labels)
            operands.append(operand)
            if target is not None:
                targets.append(target)
                values.append(value)
        instructions.append(
            InstructionBackendMock(
                current,
                line,
                mnemonic,
                operands,
                _flow(mnemonic, len(targets)),
                targets,
                values if mnemonic == "switch" else None,
            )
        )
        current += INSTRUCTION_SIZE
    return instructions, {a: name for name, a in labels.items()}


class FunctionBackendMock(AbstractFunctionBackend):
    def __init__(self, name: str, lines: list[str], addr: int = 0x1000, named_blocks: bool = False):
        self._name = name
        self._addr = addr
        self._instructions, labels = assemble(lines, addr)
        self._labels = labels if named_blocks else {}

    @property
    def addr(self) -> int:
        return self._addr

    @property
    def name(self) -> str:
        return self._name

    @property
    def instructions(self) -> Iterator[InstructionBackendMock]:
        return iter(self._instructions)

    @property
    def labels(self) -> dict[int, str]:
        return self._labels


class ProgramBackendMock(AbstractProgramBackend):
    def __init__(
        self,
        name: str,
        functions: dict[str, list[str]],
        fmt: InputFormat = InputFormat.x86_64,
        named_blocks: bool = False,
    ):
        self._name = name
        self._format = fmt
        self._functions = [
            FunctionBackendMock(fname, lines, 0x1000 * (i + 1), named_blocks)
            for i, (fname, lines) in enumerate(functions.items())
        ]

    @property
    def functions(self) -> Iterator[FunctionBackendMock]:
        return iter(self._functions)

    @property
    def name(self) -> str:
        return self._name

    @property
    def format(self) -> InputFormat:
        return self._format


def make_program(
    functions: dict[str, list[str]], fmt: InputFormat = InputFormat.x86_64, name: str = "test"
) -> Program:
    return Program.from_backend(ProgramBackendMock(name, functions, fmt))


def make_function(
    lines: list[str],
    fmt: InputFormat = InputFormat.x86_64,
    name: str = "f",
    addr: int = 0x1000,
    named_blocks: bool = False,
) -> Function:
    return Function.from_backend(FunctionBackendMock(name, lines, addr, named_blocks), fmt)


def make_cfg(lines: list[str], fmt: InputFormat = InputFormat.x86_64, **kwargs) -> FunctionCFG:
    return canonicalize(make_function(lines, fmt, **kwargs))
