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

"""Types
"""

from __future__ import annotations
from enum import IntEnum
import enum_tools.documentation


@enum_tools.documentation.document_enum
class InputFormat(IntEnum):
    """
    Enum of the supported input formats. Every member but ``llvm_bitcode``
    designates machine code of one architecture inside an ELF, MachO, PE or
    archive container.
    """

    llvm_bitcode = 0  # doc: LLVM bitcode
    arm64 = 1  # doc: 64-bit ARM
    arm32 = 2  # doc: 32-bit ARM (ARM and Thumb)
    avr = 3  # doc: AVR microcontrollers
    x86 = 4  # doc: 32-bit x86
    x86_64 = 5  # doc: 64-bit x86

    @property
    def tag(self) -> str:
        """The canonical command line spelling of the format"""
        return FORMAT_TAGS[self]

    @property
    def family(self) -> str:
        """Name of the instruction set family used to qualify opcodes"""
        if self in (InputFormat.x86, InputFormat.x86_64):
            return "x86"
        if self == InputFormat.llvm_bitcode:
            return "llvm"
        return self.name

    @classmethod
    def from_string(cls, value: str) -> InputFormat:
        """
        Parse a format tag or one of its synonyms (case insensitive)

        :param value: the user supplied tag
        :raises ValueError: if the tag is unknown
        """
        value = value.strip().casefold()
        for fmt, synonyms in FORMAT_SYNONYMS.items():
            if value in synonyms:
                return fmt
        raise ValueError(f"Can't parse `{value}` files")


FORMAT_TAGS = {
    InputFormat.llvm_bitcode: "llvm-bitcode",
    InputFormat.arm64: "arm64",
    InputFormat.arm32: "arm32",
    InputFormat.avr: "avr",
    InputFormat.x86: "x86",
    InputFormat.x86_64: "x86-64",
}

FORMAT_SYNONYMS = {
    InputFormat.llvm_bitcode: ("llvm-bitcode", "ll-bc", "llbc", "bitcode", "llvm"),
    InputFormat.arm64: ("arm64", "aarch64", "armv8"),
    InputFormat.arm32: ("arm32", "aarch32", "armv7", "arm"),
    InputFormat.avr: ("avr",),
    InputFormat.x86: ("x86", "x86-32", "x86_32", "i386", "i686"),
    InputFormat.x86_64: ("x86-64", "x64", "x86_64", "amd64"),
}


@enum_tools.documentation.document_enum
class OperandType(IntEnum):
    """
    All the operand types a backend can report
    """

    unknown = 0  # doc: type is unknown
    register = 1  # doc: register or SSA value
    memory = 2  # doc: Direct or indirect memory reference
    immediate = 3  # doc: Immediate integer value
    float_point = 4  # doc: Floating point constant
    code = 5  # doc: Reference to a code location (branch target, block label)
    symbol = 6  # doc: Reference to a named function (call target)


@enum_tools.documentation.document_enum
class FlowType(IntEnum):
    """
    Control flow semantics of an instruction, independent of its spelling
    """

    sequential = 0  # doc: Execution continues with the next instruction
    call = 1  # doc: Call returning to the next instruction
    call_with_unwind = 2  # doc: Call with a normal and an exceptional destination
    jump = 3  # doc: Direct unconditional jump
    cond_jump = 4  # doc: Conditional jump, first target is the taken side
    indirect_jump = 5  # doc: Jump to a computed address
    switch = 6  # doc: Multi-way branch on a value
    ret = 7  # doc: Return from the function
    trap = 8  # doc: Instruction that never falls through (trap, unreachable)

    def is_terminator(self) -> bool:
        """Whether the instruction always ends a basic block"""
        return self not in (FlowType.sequential, FlowType.call)


@enum_tools.documentation.document_enum
class ContainerType(IntEnum):
    """
    File formats recognized by the container reader
    """

    unknown = 0  # doc: Unrecognized content
    elf = 1  # doc: ELF object or executable
    macho = 2  # doc: MachO object or executable
    fat_macho = 3  # doc: Universal MachO with several slices
    pe = 4  # doc: PE/COFF image
    archive = 5  # doc: ``ar`` archive of objects
    bitcode = 6  # doc: LLVM bitcode (raw or wrapped)
