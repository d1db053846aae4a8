# Copyright 2023 Quarkslab
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""LLVM bitcode backend

Reads ``.bc`` files (or archives of them) with llvmlite. Every defined function
is extracted eagerly into plain Python objects, the LLVM module is not used once
loaded. Instructions are addressed by their index within the function.
"""

from __future__ import annotations
import logging
import re
import struct
from collections.abc import Iterator
from typing import Any, TypeAlias, TYPE_CHECKING

import llvmlite.binding as llvm  # type: ignore[import-untyped]

from cfgdiff.errors import ArchitectureMismatchError, InputError, UnsupportedBitcodeError
from cfgdiff.loader.backend import (
    AbstractFunctionBackend,
    AbstractInstructionBackend,
    AbstractOperandBackend,
    AbstractProgramBackend,
)
from cfgdiff.loader.backend.container import iter_archive, sniff
from cfgdiff.loader.backend.utils import demangle
from cfgdiff.loader.types import ContainerType, FlowType, InputFormat, OperandType

if TYPE_CHECKING:
    from pathlib import Path
    from cfgdiff.types import Addr, LiteralValue

# Type aliases
llvmValue: TypeAlias = Any  # Relaxed typing

# Label line of a block as printed by LLVM (`name:` or `; <label>:name:`)
_BLOCK_LABEL = re.compile(r'^(?:; <label>:)?("[^"]*"|[^\s:;]+):')
_PREDICATE = re.compile(r"\b[fi]cmp\s+(\w+)")

# Terminators handled by the generic rule: every block operand is a target
OTHER_TERMINATORS = ("callbr", "catchswitch", "catchret", "cleanupret")


def _block_label(block: llvmValue) -> str | None:
    """Name of a basic block, numbered blocks included. None for an unnamed entry block"""
    if block.name:
        return block.name
    first_line = str(block).lstrip("\n").split("\n", 1)[0]
    if match := _BLOCK_LABEL.match(first_line):
        return match.group(1).strip('"')
    return None


def _constant_int(text: str) -> int:
    token = text.split()[-1]
    if token in ("true", "false"):
        return int(token == "true")
    return int(token)


def _constant_fp(text: str) -> LiteralValue:
    token = text.split()[-1]
    if token.startswith("0x") and len(token) == 18:  # IEEE bits of a double
        return struct.unpack(">d", bytes.fromhex(token[2:]))[0]
    try:
        return float(token)
    except ValueError:
        return token  # x86_fp80, fp128, ... kept verbatim


class OperandBackendBitcode(AbstractOperandBackend):
    """Operand of an IR instruction, extracted from a llvmlite value"""

    def __init__(self, operand_type: OperandType, text: str, value: LiteralValue = None):
        super(OperandBackendBitcode, self).__init__()

        self._type = operand_type
        self._text = text
        self._value = value

    @staticmethod
    def from_value(operand: llvmValue) -> OperandBackendBitcode:
        """Build the operand from a llvmlite ValueRef"""

        kind = operand.value_kind.name
        name = operand.name
        if kind in ("argument", "instruction"):
            return OperandBackendBitcode(OperandType.register, f"%{name}" if name else "%?")
        if kind == "constant_int":
            text = str(operand)
            return OperandBackendBitcode(OperandType.immediate, text, _constant_int(text))
        if kind == "constant_fp":
            text = str(operand)
            return OperandBackendBitcode(OperandType.float_point, text, _constant_fp(text))
        if kind == "constant_pointer_null":
            return OperandBackendBitcode(OperandType.immediate, "null", 0)
        if kind == "basic_block":
            return OperandBackendBitcode(OperandType.code, f"%{_block_label(operand)}")
        if kind == "function":
            symbol = demangle(name)
            return OperandBackendBitcode(OperandType.symbol, f"@{name}", symbol)
        if kind in ("global_variable", "global_alias"):
            return OperandBackendBitcode(OperandType.memory, f"@{name}")
        if kind in ("undef_value", "poison_value"):
            return OperandBackendBitcode(OperandType.unknown, kind.split("_")[0])
        return OperandBackendBitcode(OperandType.register, kind)

    def __str__(self) -> str:
        return self._text

    @property
    def type(self) -> OperandType:
        return self._type

    @property
    def value(self) -> LiteralValue:
        return self._value


class InstructionBackendBitcode(AbstractInstructionBackend):
    """IR instruction extracted from a llvmlite value"""

    def __init__(
        self,
        addr: Addr,
        mnemonic: str,
        text: str,
        operands: list[OperandBackendBitcode],
        flow: FlowType,
        targets: list[Addr],
        target_values: list[int | None] | None = None,
    ):
        super(InstructionBackendBitcode, self).__init__()

        self._addr = addr
        self._mnemonic = mnemonic
        self._text = text
        self._operands = operands
        self._flow = flow
        self._targets = targets
        self._target_values = target_values

    @property
    def addr(self) -> Addr:
        return self._addr

    @property
    def mnemonic(self) -> str:
        return self._mnemonic

    @property
    def operands(self) -> Iterator[OperandBackendBitcode]:
        return iter(self._operands)

    @property
    def flow(self) -> FlowType:
        return self._flow

    @property
    def targets(self) -> list[Addr]:
        return self._targets

    @property
    def target_values(self) -> list[int | None]:
        if self._target_values is None:
            return super().target_values
        return self._target_values

    def __str__(self) -> str:
        return self._text


class FunctionBackendBitcode(AbstractFunctionBackend):
    """
    A defined function of the module

    :param function: the llvmlite function value
    :param addr: index of the function in the module
    """

    def __init__(self, function: llvmValue, addr: Addr):
        super(FunctionBackendBitcode, self).__init__()

        self._addr = addr
        self._name = function.name
        self._labels: dict[Addr, str] = {}
        self._instructions = self._extract(function)

    def _extract(self, function: llvmValue) -> list[InstructionBackendBitcode]:
        blocks = list(function.blocks)

        # First pass: the index of the first instruction of each block
        starts: dict[str, Addr] = {}
        index = 0
        for position, block in enumerate(blocks):
            label = _block_label(block) or str(position)
            starts[label] = index
            self._labels[index] = label
            index += len(list(block.instructions))

        def target(operand: llvmValue) -> Addr:
            return starts[_block_label(operand) or "0"]

        instructions = []
        index = 0
        for block in blocks:
            for instr in block.instructions:
                instructions.append(self._instruction(instr, index, target))
                index += 1
        return instructions

    @staticmethod
    def _instruction(instr: llvmValue, addr: Addr, target) -> InstructionBackendBitcode:
        opcode = instr.opcode
        text = str(instr).strip()
        values = list(instr.operands)
        operands = [OperandBackendBitcode.from_value(v) for v in values]
        blocks = [v for v in values if v.value_kind.name == "basic_block"]
        flow, targets, target_values = FlowType.sequential, [], None

        mnemonic = opcode
        if opcode in ("icmp", "fcmp") and (match := _PREDICATE.search(text)):
            mnemonic = f"{opcode}.{match.group(1)}"

        match opcode:
            case "br" if len(values) == 3:
                # Operands are stored as (condition, false destination, true destination)
                flow, targets = FlowType.cond_jump, [target(values[2]), target(values[1])]
            case "br":
                flow, targets = FlowType.jump, [target(values[0])]
            case "switch":
                flow = FlowType.switch
                targets = [target(values[1])]
                target_values = [None]
                for case_value, case_dest in zip(values[2::2], values[3::2]):
                    targets.append(target(case_dest))
                    target_values.append(_constant_int(str(case_value)))
            case "indirectbr":
                flow, targets = FlowType.indirect_jump, [target(b) for b in blocks]
            case "invoke":
                flow, targets = FlowType.call_with_unwind, [target(b) for b in blocks]
            case "ret" | "resume":
                flow = FlowType.ret
            case "unreachable":
                flow = FlowType.trap
            case "call":
                flow = FlowType.call
            case _ if opcode in OTHER_TERMINATORS:
                if blocks:
                    flow, targets = FlowType.indirect_jump, [target(b) for b in blocks]
                else:
                    flow = FlowType.ret

        return InstructionBackendBitcode(
            addr, mnemonic, text, operands, flow, targets, target_values
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__}:{self.name}>"

    @property
    def addr(self) -> Addr:
        return self._addr

    @property
    def name(self) -> str:
        return self._name

    @property
    def instructions(self) -> Iterator[InstructionBackendBitcode]:
        return iter(self._instructions)

    @property
    def labels(self) -> dict[Addr, str]:
        """Block names keyed by the index of their first instruction"""
        return self._labels


def _parse_module(data: bytes, description: str) -> list[FunctionBackendBitcode]:
    try:
        module = llvm.parse_bitcode(data)
    except RuntimeError as e:
        raise UnsupportedBitcodeError(
            f"cannot parse the bitcode of {description} ({str(e).strip()}). It may come "
            "from a newer LLVM version or use a pointer format not supported here"
        ) from e

    functions = []
    for function in module.functions:
        if function.is_declaration:
            continue
        functions.append(FunctionBackendBitcode(function, len(functions)))
    logging.debug(f"Loaded {len(functions)} functions from {description}")
    return functions


class ProgramBackendBitcode(AbstractProgramBackend):
    """
    Backend loader of LLVM bitcode files

    :param path: a bitcode file or an archive of bitcode files
    """

    def __init__(self, path: Path):
        super(ProgramBackendBitcode, self).__init__()

        self.path = path
        try:
            data = path.read_bytes()
        except OSError as e:
            raise InputError(f"cannot read file ({e.strerror})", path) from e

        try:
            self._functions = self._load(data)
        except InputError as e:
            if e.path is not None:
                raise
            raise type(e)(str(e), path) from e

    @staticmethod
    def _load(data: bytes) -> list[FunctionBackendBitcode]:
        container = sniff(data)
        if container == ContainerType.bitcode:
            return _parse_module(data, "the file")
        if container == ContainerType.archive:
            functions = []
            for member, content in iter_archive(data):
                if sniff(content) != ContainerType.bitcode:
                    logging.debug(f"Skipping non bitcode archive member {member}")
                    continue
                functions.extend(_parse_module(content, f"archive member {member}"))
            return functions
        if container == ContainerType.unknown:
            raise InputError("the file is not LLVM bitcode")
        raise ArchitectureMismatchError(
            f"the file is a native {container.name} file but {InputFormat.llvm_bitcode.tag} "
            "was requested"
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__}:{self.name}>"

    @property
    def functions(self) -> Iterator[FunctionBackendBitcode]:
        return iter(self._functions)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def format(self) -> InputFormat:
        return InputFormat.llvm_bitcode
