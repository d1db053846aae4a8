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

"""AVR decoder

Capstone has no AVR support, the 8-bit AVR instruction set is decoded here.
Instructions are made of one or two little-endian 16-bit words. Words that do
not decode to a known instruction are reported as opaque ``.word`` data.
"""

from __future__ import annotations
from collections.abc import Iterator
from typing import TypeAlias, TYPE_CHECKING

from cfgdiff.loader.backend import AbstractInstructionBackend, AbstractOperandBackend
from cfgdiff.loader.types import FlowType, OperandType

if TYPE_CHECKING:
    from cfgdiff.types import Addr, LiteralValue


# Two-register ALU instructions, keyed by the opcode bits of (word & 0xFC00)
TWO_REGISTERS = {
    0x0400: "cpc",
    0x0800: "sbc",
    0x0C00: "add",
    0x1000: "cpse",
    0x1400: "cp",
    0x1800: "sub",
    0x1C00: "adc",
    0x2000: "and",
    0x2400: "eor",
    0x2800: "or",
    0x2C00: "mov",
    0x9C00: "mul",
}

# Aliases used when both registers are the same
SAME_REGISTER_ALIASES = {"add": "lsl", "adc": "rol", "and": "tst"}

# Register-immediate instructions, keyed by the upper nibble
REGISTER_IMMEDIATE = {0x3: "cpi", 0x4: "sbci", 0x5: "subi", 0x6: "ori", 0x7: "andi", 0xE: "ldi"}

# One-register instructions of the 0x94xx/0x95xx range, keyed by the lower nibble
ONE_REGISTER = {
    0x0: "com",
    0x1: "neg",
    0x2: "swap",
    0x3: "inc",
    0x5: "asr",
    0x6: "lsr",
    0x7: "ror",
    0xA: "dec",
}

# Words without operands
NO_OPERANDS = {
    0x0000: ("nop", FlowType.sequential),
    0x9409: ("ijmp", FlowType.indirect_jump),
    0x9419: ("eijmp", FlowType.indirect_jump),
    0x9508: ("ret", FlowType.ret),
    0x9518: ("reti", FlowType.ret),
    0x9509: ("icall", FlowType.call),
    0x9519: ("eicall", FlowType.call),
    0x9588: ("sleep", FlowType.sequential),
    0x9598: ("break", FlowType.trap),
    0x95A8: ("wdr", FlowType.sequential),
    0x95C8: ("lpm", FlowType.sequential),
    0x95D8: ("elpm", FlowType.sequential),
    0x95E8: ("spm", FlowType.sequential),
}

# SREG bit aliases of bset/bclr
SET_FLAGS = ("sec", "sez", "sen", "sev", "ses", "seh", "set", "sei")
CLEAR_FLAGS = ("clc", "clz", "cln", "clv", "cls", "clh", "clt", "cli")

# Branches on a SREG bit, for a set and a cleared bit
BRANCH_IF_SET = ("brcs", "breq", "brmi", "brvs", "brlt", "brhs", "brts", "brie")
BRANCH_IF_CLEAR = ("brcc", "brne", "brpl", "brvc", "brge", "brhc", "brtc", "brid")

# Pointer addressing modes of ld/st, keyed by the lower nibble
POINTER_MODES = {0x1: "Z+", 0x2: "-Z", 0x9: "Y+", 0xA: "-Y", 0xC: "X", 0xD: "X+", 0xE: "-X"}

# Skip instructions jump over the next instruction when their condition holds
SKIPS = ("cpse", "sbic", "sbis", "sbrc", "sbrs")


class OperandBackendAVR(AbstractOperandBackend):
    """Operand of a decoded AVR instruction"""

    def __init__(self, operand_type: OperandType, text: str, value: LiteralValue = None):
        super(OperandBackendAVR, self).__init__()

        self._type = operand_type
        self._text = text
        self._value = value

    def __str__(self) -> str:
        return self._text

    @property
    def type(self) -> OperandType:
        return self._type

    @property
    def value(self) -> LiteralValue:
        return self._value


def _reg(number: int) -> OperandBackendAVR:
    return OperandBackendAVR(OperandType.register, f"r{number}")


def _imm(value: int) -> OperandBackendAVR:
    return OperandBackendAVR(OperandType.immediate, f"{value:#x}", value)


def _mem(text: str) -> OperandBackendAVR:
    return OperandBackendAVR(OperandType.memory, text)


def _code(target: Addr) -> OperandBackendAVR:
    return OperandBackendAVR(OperandType.code, f"{target:#x}")


Decoded: TypeAlias = tuple[str, list[OperandBackendAVR], FlowType, list["Addr"]]


def _plain(mnemonic: str, operands: list[OperandBackendAVR]) -> Decoded:
    return mnemonic, operands, FlowType.sequential, []


def _signed(value: int, bits: int) -> int:
    if value & (1 << (bits - 1)):
        return value - (1 << bits)
    return value


def is_two_words(word: int) -> bool:
    """Whether the instruction starting with ``word`` is 32 bits long (lds, sts, jmp, call)"""
    return (word & 0xFE0F) in (0x9000, 0x9200) or (word & 0xFE0C) == 0x940C


class InstructionBackendAVR(AbstractInstructionBackend):
    """A decoded AVR instruction"""

    def __init__(
        self,
        addr: Addr,
        size: int,
        mnemonic: str,
        operands: list[OperandBackendAVR] | None = None,
        flow: FlowType = FlowType.sequential,
        targets: list[Addr] | None = None,
        opaque: bool = False,
    ):
        super(InstructionBackendAVR, self).__init__()

        self._addr = addr
        self.size = size
        self._mnemonic = mnemonic
        self._operands = operands or []
        self._flow = flow
        self._targets = targets or []
        self._opaque = opaque
        #: Name of the called function, resolved by the function backend
        self.callee: str | None = None

    @property
    def addr(self) -> Addr:
        return self._addr

    @property
    def mnemonic(self) -> str:
        return self._mnemonic

    @property
    def operands(self) -> Iterator[OperandBackendAVR]:
        for operand in self._operands:
            if operand.type == OperandType.code and self._flow == FlowType.call and self.callee:
                yield OperandBackendAVR(OperandType.symbol, self.callee, self.callee)
            else:
                yield operand

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
        return self._opaque

    def __str__(self) -> str:
        operands = ", ".join(str(op) for op in self.operands)
        return f"{self._mnemonic} {operands}".strip()


def _decode_word(
    word: int, extra: int | None, addr: Addr
) -> Decoded | None:
    """
    Decode a single instruction.

    :param word: first 16-bit word of the instruction
    :param extra: the following word, None at the end of the data
    :param addr: address of the instruction
    :return: the mnemonic, the operands, the flow type and the jump targets, or
             None if the word is not a valid instruction
    """

    next_addr = addr + 2
    rd = (word >> 4) & 0x1F
    rr = (word & 0xF) | ((word >> 5) & 0x10)

    if word in NO_OPERANDS:
        mnemonic, flow = NO_OPERANDS[word]
        return mnemonic, [], flow, []

    # Multiplications and register pairs
    if word & 0xFF00 == 0x0100:
        return _plain("movw", [_reg(2 * ((word >> 4) & 0xF)), _reg(2 * (word & 0xF))])
    if word & 0xFF00 == 0x0200:
        return _plain("muls", [_reg(16 + ((word >> 4) & 0xF)), _reg(16 + (word & 0xF))])
    if word & 0xFF00 == 0x0300:
        mnemonic = ("mulsu", "fmul", "fmuls", "fmulsu")[((word >> 6) & 0x2) | ((word >> 3) & 0x1)]
        return _plain(mnemonic, [_reg(16 + ((word >> 4) & 0x7)), _reg(16 + (word & 0x7))])

    if word & 0xFC00 in TWO_REGISTERS:
        mnemonic = TWO_REGISTERS[word & 0xFC00]
        if rd == rr and mnemonic in SAME_REGISTER_ALIASES:
            return _plain(SAME_REGISTER_ALIASES[mnemonic], [_reg(rd)])
        return _plain(mnemonic, [_reg(rd), _reg(rr)])

    if word >> 12 in REGISTER_IMMEDIATE:
        value = ((word >> 4) & 0xF0) | (word & 0xF)
        return _plain(REGISTER_IMMEDIATE[word >> 12], [_reg(16 + ((word >> 4) & 0xF)), _imm(value)])

    # ldd/std with displacement (ld/st through Y or Z when the displacement is 0)
    if word & 0xD000 == 0x8000:
        disp = ((word >> 8) & 0x20) | ((word >> 7) & 0x18) | (word & 0x7)
        pointer = "Y" if word & 0x8 else "Z"
        mem = _mem(f"{pointer}+{disp}" if disp else pointer)
        store = bool(word & 0x200)
        if disp:
            mnemonic = "std" if store else "ldd"
        else:
            mnemonic = "st" if store else "ld"
        operands = [mem, _reg(rd)] if store else [_reg(rd), mem]
        return _plain(mnemonic, operands)

    if word & 0xFE00 in (0x9000, 0x9200):
        store = word & 0xFE00 == 0x9200
        mode = word & 0xF
        if mode == 0x0:
            if extra is None:
                return None
            mem = _mem(f"{extra:#x}")
            if store:
                return _plain("sts", [mem, _reg(rd)])
            return _plain("lds", [_reg(rd), mem])
        if mode == 0xF:
            return _plain(("push" if store else "pop"), [_reg(rd)])
        if mode in POINTER_MODES:
            mem = _mem(POINTER_MODES[mode])
            operands = [mem, _reg(rd)] if store else [_reg(rd), mem]
            return _plain(("st" if store else "ld"), operands)
        if not store and mode in (0x4, 0x5, 0x6, 0x7):
            mnemonic = "lpm" if mode < 0x6 else "elpm"
            return _plain(mnemonic, [_reg(rd), _mem("Z+" if mode & 1 else "Z")])
        if store and mode in (0x4, 0x5, 0x6, 0x7):
            mnemonic = ("xch", "las", "lac", "lat")[mode - 0x4]
            return _plain(mnemonic, [_mem("Z"), _reg(rd)])
        return None

    if word & 0xFE0C == 0x940C:
        if extra is None:
            return None
        target = ((((word >> 4) & 0x1F) << 17) | ((word & 0x1) << 16) | extra) * 2
        if word & 0x2:
            return "call", [_code(target)], FlowType.call, [target]
        return "jmp", [_code(target)], FlowType.jump, [target]

    if word & 0xFF8F == 0x9408:
        return _plain(SET_FLAGS[(word >> 4) & 0x7], [])
    if word & 0xFF8F == 0x9488:
        return _plain(CLEAR_FLAGS[(word >> 4) & 0x7], [])
    if word & 0xFF0F == 0x940B:
        return _plain("des", [_imm((word >> 4) & 0xF)])
    if word & 0xFE00 == 0x9400 and word & 0xF in ONE_REGISTER:
        return _plain(ONE_REGISTER[word & 0xF], [_reg(rd)])

    if word & 0xFE00 == 0x9600:
        mnemonic = "sbiw" if word & 0x100 else "adiw"
        value = ((word >> 2) & 0x30) | (word & 0xF)
        return _plain(mnemonic, [_reg(24 + 2 * ((word >> 4) & 0x3)), _imm(value)])

    if word & 0xFC00 == 0x9800:
        mnemonic = ("cbi", "sbic", "sbi", "sbis")[(word >> 8) & 0x3]
        io = _mem(f"{(word >> 3) & 0x1F:#x}")
        return _plain(mnemonic, [io, _imm(word & 0x7)])

    if word & 0xF000 == 0xB000:
        io = _mem(f"{((word >> 5) & 0x30) | (word & 0xF):#x}")
        if word & 0x800:
            return _plain("out", [io, _reg(rd)])
        return _plain("in", [_reg(rd), io])

    if word & 0xE000 == 0xC000:
        target = next_addr + 2 * _signed(word & 0xFFF, 12)
        if word & 0x1000:
            return "rcall", [_code(target)], FlowType.call, [target]
        return "rjmp", [_code(target)], FlowType.jump, [target]

    if word & 0xF800 == 0xF000:
        target = next_addr + 2 * _signed((word >> 3) & 0x7F, 7)
        names = BRANCH_IF_CLEAR if word & 0x400 else BRANCH_IF_SET
        return names[word & 0x7], [_code(target)], FlowType.cond_jump, [target]

    if word & 0xF808 == 0xF800:
        mnemonic = ("bld", "bst", "sbrc", "sbrs")[(word >> 9) & 0x3]
        return _plain(mnemonic, [_reg(rd), _imm(word & 0x7)])

    return None


def decode(data: bytes, addr: Addr) -> Iterator[InstructionBackendAVR]:
    """
    Decode the AVR machine code ``data`` loaded at ``addr``.
    A trailing odd byte is ignored.

    :param data: the machine code
    :param addr: address of the first byte
    :return: iterator over the decoded instructions
    """

    words = [int.from_bytes(data[i : i + 2], "little") for i in range(0, len(data) - 1, 2)]
    index = 0
    while index < len(words):
        word = words[index]
        extra = words[index + 1] if index + 1 < len(words) else None
        current = addr + 2 * index
        decoded = _decode_word(word, extra, current)
        if decoded is None:
            yield InstructionBackendAVR(current, 2, ".word", [_imm(word)], opaque=True)
            index += 1
            continue

        mnemonic, operands, flow, targets = decoded
        size = 4 if is_two_words(word) else 2

        if mnemonic in SKIPS:
            # The skipped instruction can be one or two words long
            following = index + size // 2
            skipped = 0
            if following < len(words):
                skipped = 4 if is_two_words(words[following]) else 2
            flow = FlowType.cond_jump
            targets = [current + size + skipped]

        yield InstructionBackendAVR(current, size, mnemonic, operands, flow, targets)
        index += size // 2
