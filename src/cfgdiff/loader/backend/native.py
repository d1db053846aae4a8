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

"""Backend of the native code formats (ARM64, ARM32, AVR, x86, x86-64)
"""

from __future__ import annotations
import logging
import weakref
from collections import deque
from collections.abc import Iterator
from functools import cached_property
from typing import TYPE_CHECKING

from cfgdiff.loader.backend import AbstractFunctionBackend, AbstractProgramBackend
from cfgdiff.loader.backend.avr import InstructionBackendAVR, decode as decode_avr
from cfgdiff.loader.backend.container import FunctionSlice, read_functions
from cfgdiff.loader.backend.disassembler import (
    CapstoneDecoder,
    InstructionBackendCapstone,
    JumpTable,
    x86_jump_table,
)
from cfgdiff.loader.backend.utils import demangle
from cfgdiff.loader.types import FlowType, InputFormat

if TYPE_CHECKING:
    from pathlib import Path
    from cfgdiff.types import Addr

    NativeInstruction = InstructionBackendCapstone | InstructionBackendAVR

# Instructions searched backward for the set up of a jump table
JUMP_TABLE_LOOKBEHIND = 16
MAX_JUMP_TABLE_ENTRIES = 1024


class FunctionBackendNative(AbstractFunctionBackend):
    def __init__(self, program: weakref.ref[ProgramBackendNative], fslice: FunctionSlice):
        super(FunctionBackendNative, self).__init__()

        self._program = program
        self.slice = fslice

    def __repr__(self) -> str:
        return f"<{type(self).__name__}:{self.name}>"

    @property
    def addr(self) -> Addr:
        """The address of the function"""
        return self.slice.addr

    @property
    def name(self) -> str:
        return self.slice.name

    def _decode(self) -> Iterator[NativeInstruction]:
        fmt = self._program().format
        if fmt == InputFormat.avr:
            return decode_avr(self.slice.data, self.slice.addr)
        # One capstone context per function, functions may be decoded concurrently
        decoder = CapstoneDecoder(fmt, self.slice.thumb)
        return decoder.disassemble(self.slice.data, self.slice.addr)

    def _relocation(self, instruction: NativeInstruction) -> str | None:
        """Symbol of the first relocation applied within the instruction bytes"""
        for offset in range(instruction.size):
            if (name := self.slice.relocations.get(instruction.addr + offset)) is not None:
                return name
        return None

    @property
    def instructions(self) -> Iterator[NativeInstruction]:
        """
        Returns an iterator over the decoded instructions.

        The targets of direct calls are named using the relocations of the object
        or its function symbols. Relocated jumps leave the function (tail calls),
        their targets are dropped. The x86 jump tables found in the image give the
        targets of the indirect jumps reading them.
        """

        fmt = self._program().format
        previous: deque[NativeInstruction] = deque(maxlen=JUMP_TABLE_LOOKBEHIND)
        for instruction in self._decode():
            if instruction.is_opaque:
                previous.append(instruction)
                yield instruction
                continue

            symbol = self._relocation(instruction) if self.slice.relocations else None
            if isinstance(instruction, InstructionBackendCapstone):
                instruction.memory = self.slice.memory
                instruction.relocated = frozenset(
                    offset
                    for offset in range(instruction.size)
                    if instruction.addr + offset in self.slice.relocations
                )

            if instruction.flow == FlowType.call:
                if symbol is None and instruction.targets:
                    symbol = self.slice.symbols.get(instruction.targets[0])
                if symbol is not None:
                    instruction.callee = demangle(symbol)
            elif instruction.flow in (FlowType.jump, FlowType.cond_jump) and symbol is not None:
                instruction.targets = []
            elif (
                instruction.flow == FlowType.indirect_jump
                and fmt in (InputFormat.x86, InputFormat.x86_64)
                and (table := x86_jump_table(instruction, list(previous))) is not None
            ):
                instruction.targets = self._jump_table_targets(table)
            previous.append(instruction)
            yield instruction

    def _jump_table_targets(self, table: JumpTable) -> list[Addr]:
        """
        Read the entries of a jump table while they point inside the function.

        :param table: the table to read
        :return: the distinct targets in table order
        """

        start, end = self.slice.addr, self.slice.addr + len(self.slice.data)
        targets = []
        for i in range(MAX_JUMP_TABLE_ENTRIES):
            raw = self.slice.memory.read(table.addr + i * table.entry_size, table.entry_size)
            if raw is None:
                break
            value = int.from_bytes(raw, "little", signed=table.relative)
            target = table.addr + value if table.relative else value
            if not start <= target < end:
                break
            targets.append(target)
        if not targets:
            logging.debug(f"Empty jump table at {table.addr:#x} in `{self.name}`")
        return list(dict.fromkeys(targets))


class ProgramBackendNative(AbstractProgramBackend):
    """
    Backend loader of the native code formats

    :param path: the file to load: an ELF, MachO, PE file or an archive of those
    :param fmt: the architecture of the code to load
    """

    def __init__(self, path: Path, fmt: InputFormat):
        super(ProgramBackendNative, self).__init__()

        self.path = path
        self._format = fmt
        self._slices = read_functions(path, fmt)

    def __repr__(self) -> str:
        return f"<{type(self).__name__}:{self.name}>"

    @cached_property
    def _functions(self) -> list[FunctionBackendNative]:
        return [FunctionBackendNative(weakref.ref(self), s) for s in self._slices]

    @property
    def functions(self) -> Iterator[FunctionBackendNative]:
        """Returns an iterator over backend function objects"""
        return iter(self._functions)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def format(self) -> InputFormat:
        return self._format
