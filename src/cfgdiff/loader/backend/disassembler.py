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

"""Capstone based disassembler

Decodes ARM64, ARM32 (ARM and Thumb), x86 and x86-64 machine code and
classifies the control flow of each instruction.
"""

# builtin imports
from __future__ import annotations
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import Any, TypeAlias, TYPE_CHECKING

# third-party imports
import capstone  # type: ignore[import-untyped]

# local imports
from cfgdiff.loader.backend import AbstractInstructionBackend, AbstractOperandBackend
from cfgdiff.loader.backend.utils import convert_operand_type
from cfgdiff.loader.types import FlowType, InputFormat, OperandType

if TYPE_CHECKING:
    from cfgdiff.loader.backend.container import MemoryMap
    from cfgdiff.types import Addr, LiteralValue

# Type aliases
capstoneOperand: TypeAlias = Any  # Relaxed typing

ARM_CONDITION_SUFFIXES = (
    "eq", "ne", "hs", "cs", "lo", "cc", "mi", "pl", "vs", "vc", "hi", "ls", "ge", "lt", "gt", "le",
)  # fmt: skip

# Immediate operand type of each supported capstone architecture
IMMEDIATE_OPERANDS = {
    capstone.CS_ARCH_X86: capstone.x86_const.X86_OP_IMM,
    capstone.CS_ARCH_ARM: capstone.arm_const.ARM_OP_IMM,
    capstone.CS_ARCH_ARM64: capstone.arm64_const.ARM64_OP_IMM,
}


# === General purpose utils functions ===
def get_capstone_disassembler(fmt: InputFormat, thumb: bool = False) -> capstone.Cs:
    """
    Instanciate a capstone context with details and skipdata mode enabled, so
    that undecodable bytes are reported instead of stopping the disassembly.
    """

    def capstone_context(arch, mode):
        context = capstone.Cs(arch, mode)
        context.detail = True
        context.skipdata = True
        return context

    if fmt == InputFormat.x86:
        return capstone_context(capstone.CS_ARCH_X86, capstone.CS_MODE_32)
    elif fmt == InputFormat.x86_64:
        return capstone_context(capstone.CS_ARCH_X86, capstone.CS_MODE_64)
    elif fmt == InputFormat.arm32:
        mode = capstone.CS_MODE_THUMB if thumb else capstone.CS_MODE_ARM
        return capstone_context(capstone.CS_ARCH_ARM, mode)
    elif fmt == InputFormat.arm64:
        return capstone_context(capstone.CS_ARCH_ARM64, capstone.CS_MODE_ARM)

    raise NotImplementedError(f"Format {fmt.tag} cannot be disassembled with capstone")


def _immediates(arch: int, cs_instr: capstone.CsInsn) -> list[int]:
    imm_type = IMMEDIATE_OPERANDS[arch]
    return [op.value.imm for op in cs_instr.operands if op.type == imm_type]


def _classify_x86(cs_instr: capstone.CsInsn) -> tuple[FlowType, list[Addr]]:
    mnemonic = cs_instr.mnemonic.split()[-1]  # drop the prefixes (notrack, bnd, rep)
    targets = _immediates(capstone.CS_ARCH_X86, cs_instr)[-1:]

    if cs_instr.group(capstone.CS_GRP_RET) or cs_instr.group(capstone.CS_GRP_IRET):
        return FlowType.ret, []
    if cs_instr.group(capstone.CS_GRP_CALL):
        return FlowType.call, targets
    if cs_instr.group(capstone.CS_GRP_JUMP):
        if mnemonic in ("jmp", "ljmp"):
            return (FlowType.jump, targets) if targets else (FlowType.indirect_jump, [])
        return FlowType.cond_jump, targets
    if mnemonic in ("ud2", "hlt", "int3"):
        return FlowType.trap, []
    return FlowType.sequential, []


def _classify_arm64(cs_instr: capstone.CsInsn) -> tuple[FlowType, list[Addr]]:
    mnemonic = cs_instr.mnemonic
    targets = _immediates(capstone.CS_ARCH_ARM64, cs_instr)[-1:]

    if mnemonic in ("brk", "udf", "hlt"):
        return FlowType.trap, []
    if cs_instr.group(capstone.CS_GRP_RET) or mnemonic in ("ret", "retaa", "retab", "eret"):
        return FlowType.ret, []
    if mnemonic == "bl":
        return FlowType.call, targets
    if mnemonic.startswith("blr"):
        return FlowType.call, []
    if mnemonic == "b":
        return FlowType.jump, targets
    if mnemonic.startswith("br"):
        return FlowType.indirect_jump, []
    if mnemonic.startswith("b.") or mnemonic in ("cbz", "cbnz", "tbz", "tbnz"):
        return FlowType.cond_jump, targets
    return FlowType.sequential, []


def _classify_arm32(cs_instr: capstone.CsInsn) -> tuple[FlowType, list[Addr]]:
    mnemonic = cs_instr.mnemonic.removesuffix(".w").removesuffix(".n")
    op_str = cs_instr.op_str
    conditional = cs_instr.cc not in (
        capstone.arm_const.ARM_CC_AL,
        capstone.arm_const.ARM_CC_INVALID,
    )
    if conditional and mnemonic.endswith(ARM_CONDITION_SUFFIXES):
        mnemonic = mnemonic[:-2]
    targets = _immediates(capstone.CS_ARCH_ARM, cs_instr)[-1:]

    def leave(flow: FlowType, targets: list[Addr]) -> tuple[FlowType, list[Addr]]:
        # A conditional exit only falls through on this side
        if conditional:
            return FlowType.cond_jump, []
        return flow, targets

    if mnemonic in ("bl", "blx"):
        return FlowType.call, targets
    if mnemonic == "b":
        return (FlowType.cond_jump if conditional else FlowType.jump), targets
    if mnemonic in ("cbz", "cbnz"):
        return FlowType.cond_jump, targets
    if mnemonic == "bx":
        return leave(FlowType.ret if op_str == "lr" else FlowType.indirect_jump, [])
    if mnemonic in ("pop", "ldm", "ldmia", "ldmfd") and "pc" in op_str:
        return leave(FlowType.ret, [])
    if mnemonic.startswith("ldr") and op_str.startswith("pc"):
        return leave(FlowType.indirect_jump, [])
    if mnemonic == "mov" and op_str.startswith("pc"):
        return leave(FlowType.ret if op_str.endswith("lr") else FlowType.indirect_jump, [])
    if mnemonic in ("tbb", "tbh"):
        return leave(FlowType.indirect_jump, [])
    if mnemonic in ("udf", "bkpt"):
        return FlowType.trap, []
    return FlowType.sequential, []


@dataclass(frozen=True)
class JumpTable:
    """
    Location and encoding of the table read by an indirect jump

    :param addr: address of the first entry
    :param entry_size: size in bytes of an entry
    :param relative: entries are signed offsets from ``addr`` instead of addresses
    """

    addr: Addr
    entry_size: int
    relative: bool = False


def x86_jump_table(
    jump: InstructionBackendCapstone, previous: Sequence[InstructionBackendCapstone]
) -> JumpTable | None:
    """
    Recognize the two jump table idioms of x86 compilers:

      * ``jmp [table + index*size]`` with a table of absolute addresses;
      * ``lea table, [rip + disp]; movsxd target, [table + index*4]; add target,
        table; jmp target`` with a table of offsets (position independent code).

    :param jump: the indirect jump
    :param previous: the instructions decoded before the jump, closest last
    :return: the table, None if the jump does not match any idiom
    """

    x86 = capstone.x86_const
    operands = jump.cs_instr.operands
    if len(operands) != 1:
        return None
    wide = bool(jump.cs.mode & capstone.CS_MODE_64)
    entry_size = 8 if wide else 4

    operand = operands[0]
    if operand.type == x86.X86_OP_MEM:
        mem = operand.value.mem
        if mem.base != x86.X86_REG_INVALID or mem.index == x86.X86_REG_INVALID:
            return None
        if mem.scale != entry_size:
            return None
        return JumpTable(mem.disp & ((1 << (8 * entry_size)) - 1), entry_size)

    if operand.type != x86.X86_OP_REG or not wide:
        return None
    target = operand.value.reg
    table = None
    for instr in reversed(previous):
        if instr.is_opaque:
            return None
        cs_instr = instr.cs_instr
        ops = cs_instr.operands
        if len(ops) != 2 or ops[0].type != x86.X86_OP_REG or ops[1].type != x86.X86_OP_MEM:
            continue
        mem = ops[1].value.mem
        if table is None:
            if cs_instr.mnemonic == "movsxd" and ops[0].value.reg == target and mem.scale == 4:
                table = mem.base
        elif cs_instr.mnemonic == "lea" and ops[0].value.reg == table:
            if mem.base != x86.X86_REG_RIP or mem.index != x86.X86_REG_INVALID:
                return None
            return JumpTable(cs_instr.address + cs_instr.size + mem.disp, 4, relative=True)
    return None


class OperandBackendCapstone(AbstractOperandBackend):
    def __init__(
        self,
        instruction: InstructionBackendCapstone,
        cs_operand: capstoneOperand,
        cs_operand_position: int,
    ):
        super(OperandBackendCapstone, self).__init__()

        self.instruction = instruction
        self.cs_operand = cs_operand
        self.cs_operand_position = cs_operand_position

    def __str__(self) -> str:
        ops = self.instruction.cs_instr.op_str.split(",")
        if self.cs_operand_position < len(ops):
            return ops[self.cs_operand_position].strip()
        return ""

    @property
    def _is_address(self) -> bool:
        """Whether the operand is a code address rather than a value"""
        cs_instr = self.instruction.cs_instr
        if (
            self.cs_operand.type == capstone.x86_const.X86_OP_MEM
            and self.instruction.cs.arch == capstone.CS_ARCH_X86
        ):
            # A RIP relative lea computes an address, other accesses stay memory
            return (
                cs_instr.mnemonic == "lea"
                and self.cs_operand.value.mem.base == capstone.x86_const.X86_REG_RIP
            )
        if self.cs_operand.type != IMMEDIATE_OPERANDS[self.instruction.cs.arch]:
            return False
        return (
            self.instruction.flow in (FlowType.call, FlowType.jump, FlowType.cond_jump)
            or cs_instr.mnemonic in ("adr", "adrp")
            or self._is_absolute_address
        )

    @property
    def _is_absolute_address(self) -> bool:
        """
        Whether an immediate is the absolute address of some data: it is patched by
        a relocation or it points inside the mapped image.
        """

        instruction = self.instruction
        if instruction.relocated:
            if instruction.cs.arch != capstone.CS_ARCH_X86:
                return True
            # The immediate comes last in the x86 encoding, after the displacement
            end = instruction.size
            has_memory = any(
                op.type == capstone.x86_const.X86_OP_MEM for op in instruction.cs_instr.operands
            )
            return (end - 4) in instruction.relocated or (
                not has_memory and (end - 8) in instruction.relocated
            )
        if instruction.memory is None:
            return False
        return instruction.memory.is_address(self.cs_operand.value.imm)

    @property
    def type(self) -> OperandType:
        """Returns the operand type"""
        if self._is_address:
            if self.instruction.flow == FlowType.call and self.instruction.callee:
                return OperandType.symbol
            return OperandType.code
        return convert_operand_type(self.instruction.cs.arch, self.cs_operand)

    @property
    def value(self) -> LiteralValue:
        """
        Return the constant value (not addresses) used by the operand, or the name
        of the called function.
        """

        operand_type = self.type
        if operand_type == OperandType.symbol:
            return self.instruction.callee
        if operand_type == OperandType.immediate:
            return self.cs_operand.value.imm
        if operand_type == OperandType.float_point:
            return self.cs_operand.value.fp
        return None


class InstructionBackendCapstone(AbstractInstructionBackend):
    def __init__(self, cs: capstone.Cs, cs_instruction: capstone.CsInsn, fmt: InputFormat):
        super(InstructionBackendCapstone, self).__init__()

        self.cs = cs
        self.cs_instr = cs_instruction
        #: Name of the called function, resolved by the function backend
        self.callee: str | None = None
        #: Offsets within the instruction patched by a relocation
        self.relocated: frozenset[int] = frozenset()
        #: Mapped sections of the image the instruction comes from
        self.memory: MemoryMap | None = None

        if self.is_opaque:
            self._flow, self._targets = FlowType.sequential, []
        elif fmt in (InputFormat.x86, InputFormat.x86_64):
            self._flow, self._targets = _classify_x86(cs_instruction)
        elif fmt == InputFormat.arm64:
            self._flow, self._targets = _classify_arm64(cs_instruction)
        else:
            self._flow, self._targets = _classify_arm32(cs_instruction)

    @property
    def addr(self) -> Addr:
        return self.cs_instr.address

    @property
    def size(self) -> int:
        return self.cs_instr.size

    @property
    def mnemonic(self) -> str:
        return self.cs_instr.mnemonic

    @property
    def operands(self) -> Iterator[OperandBackendCapstone]:
        """Returns an iterator over backend operand objects"""
        if self.is_opaque:
            return iter([])
        return (
            OperandBackendCapstone(self, o, i) for i, o in enumerate(self.cs_instr.operands)
        )

    @property
    def flow(self) -> FlowType:
        return self._flow

    @property
    def targets(self) -> list[Addr]:
        return self._targets

    @targets.setter
    def targets(self, value: list[Addr]) -> None:
        self._targets = value

    @property
    def is_opaque(self) -> bool:
        """Data decoded in skipdata mode has the instruction id 0"""
        return self.cs_instr.id == 0

    def __str__(self) -> str:
        return f"{self.cs_instr.mnemonic} {self.cs_instr.op_str}".strip()


class CapstoneDecoder:
    """
    Decoder of a byte range for one of the architectures supported by capstone

    :param fmt: the architecture
    :param thumb: for ARM32, whether the code is Thumb code
    """

    def __init__(self, fmt: InputFormat, thumb: bool = False):
        self.fmt = fmt
        self.cs = get_capstone_disassembler(fmt, thumb)

    def disassemble(self, data: bytes, addr: Addr) -> Iterator[InstructionBackendCapstone]:
        """
        Decode all the instructions of ``data`` loaded at ``addr``

        :param data: the machine code
        :param addr: address of the first byte
        :return: iterator over the instruction backends
        """

        for cs_instr in self.cs.disasm(data, addr):
            yield InstructionBackendCapstone(self.cs, cs_instr, self.fmt)
