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

"""Instruction normalizer

Maps a decoded instruction of any supported format to a :py:class:`Token`.
Register and value names are replaced by their role, branch targets and
address literals are dropped while constants and called symbols are kept.

Opcodes are mapped to a small architecture-neutral vocabulary. Instructions
without an equivalent in the other architectures are qualified by their
instruction set family (``x86.cpuid``, ``llvm.phi``) so that two different
architectures are never considered structurally identical by accident.
"""

from __future__ import annotations
import logging
from typing import TYPE_CHECKING

from cfgdiff.cfg import Token
from cfgdiff.loader.types import FlowType, OperandType
from cfgdiff.types import OperandRole
from cfgdiff.utils import log_once

if TYPE_CHECKING:
    from cfgdiff.loader import Instruction


# Opcode classes fixed by the control flow semantics, whatever the mnemonic
FLOW_CLASSES = {
    FlowType.call: "call",
    FlowType.call_with_unwind: "invoke",
    FlowType.jump: "branch",
    FlowType.indirect_jump: "indirect_branch",
    FlowType.switch: "switch",
    FlowType.ret: "return",
    FlowType.trap: "trap",
}

OPERAND_ROLES = {
    OperandType.unknown: OperandRole.register,
    OperandType.register: OperandRole.register,
    OperandType.memory: OperandRole.memory,
    OperandType.immediate: OperandRole.immediate,
    OperandType.float_point: OperandRole.immediate,
    OperandType.code: OperandRole.label,
    OperandType.symbol: OperandRole.label,
}

# Condition codes, normalized to the LLVM integer predicates where possible
X86_CONDITIONS = {
    "e": "eq", "z": "eq", "ne": "ne", "nz": "ne",
    "l": "lt", "nge": "lt", "ge": "ge", "nl": "ge",
    "le": "le", "ng": "le", "g": "gt", "nle": "gt",
    "b": "ult", "c": "ult", "nae": "ult", "ae": "uge", "nb": "uge", "nc": "uge",
    "be": "ule", "na": "ule", "a": "ugt", "nbe": "ugt",
    "s": "mi", "ns": "pl", "o": "vs", "no": "vc",
    "p": "p", "pe": "p", "np": "np", "po": "np",
}
ARM_CONDITIONS = {
    "eq": "eq", "ne": "ne", "lt": "lt", "ge": "ge", "le": "le", "gt": "gt",
    "lo": "ult", "cc": "ult", "hs": "uge", "cs": "uge", "ls": "ule", "hi": "ugt",
    "mi": "mi", "pl": "pl", "vs": "vs", "vc": "vc",
}
AVR_BRANCHES = {
    "breq": "eq", "brne": "ne", "brlt": "lt", "brge": "ge",
    "brlo": "ult", "brcs": "ult", "brsh": "uge", "brcc": "uge",
    "brmi": "mi", "brpl": "pl", "brvs": "vs", "brvc": "vc",
}
LLVM_PREDICATES = {
    "eq": "eq", "ne": "ne", "sgt": "gt", "sge": "ge", "slt": "lt", "sle": "le",
    "ugt": "ugt", "uge": "uge", "ult": "ult", "ule": "ule",
}

# Opcode classes shared by several instruction sets
X86_CLASSES = {
    "add": "add", "inc": "add", "sub": "sub", "dec": "sub",
    "imul": "mul", "mul": "mul", "idiv": "div", "div": "udiv",
    "and": "and", "or": "or", "xor": "xor", "not": "not", "neg": "neg",
    "shl": "shl", "sal": "shl", "shr": "lshr", "sar": "ashr", "rol": "rotate", "ror": "rotate",
    "mov": "move", "movabs": "move", "movzx": "zext", "movsx": "sext", "movsxd": "sext",
    "cdq": "sext", "cqo": "sext", "cdqe": "sext", "cwde": "sext", "cwd": "sext",
    "lea": "address", "cmp": "compare", "test": "test",
    "push": "push", "pop": "pop", "nop": "nop", "endbr64": "nop", "endbr32": "nop",
    "int3": "trap", "ud2": "trap", "hlt": "trap",
    "addss": "fadd", "addsd": "fadd", "subss": "fsub", "subsd": "fsub",
    "mulss": "fmul", "mulsd": "fmul", "divss": "fdiv", "divsd": "fdiv",
    "movss": "move", "movsd": "move", "movaps": "move", "movapd": "move",
    "movups": "move", "movupd": "move", "movd": "move", "movq": "move",
    "cvtsi2sd": "convert", "cvtsi2ss": "convert", "cvttsd2si": "convert",
    "cvttss2si": "convert", "cvtss2sd": "convert", "cvtsd2ss": "convert",
    "ucomiss": "fcompare", "ucomisd": "fcompare", "comiss": "fcompare", "comisd": "fcompare",
    "pxor": "xor", "xorps": "xor", "xorpd": "xor",
}
ARM_CLASSES = {
    "add": "add", "adds": "add", "sub": "sub", "subs": "sub", "rsb": "sub", "rsbs": "sub",
    "mul": "mul", "muls": "mul", "sdiv": "div", "udiv": "udiv",
    "and": "and", "ands": "and", "orr": "or", "orrs": "or", "eor": "xor", "eors": "xor",
    "mvn": "not", "mvns": "not", "neg": "neg", "negs": "neg",
    "lsl": "shl", "lsls": "shl", "lsr": "lshr", "lsrs": "lshr",
    "asr": "ashr", "asrs": "ashr", "ror": "rotate", "rors": "rotate",
    "mov": "move", "movs": "move", "movw": "move", "movz": "move",
    "adr": "address", "adrp": "address", "cmp": "compare", "cmn": "compare",
    "tst": "test", "teq": "test", "csel": "select",
    "sxtw": "sext", "sxth": "sext", "sxtb": "sext", "uxtw": "zext", "uxth": "zext", "uxtb": "zext",
    "push": "push", "pop": "pop", "nop": "nop",
    "fadd": "fadd", "fsub": "fsub", "fmul": "fmul", "fdiv": "fdiv",
    "vadd": "fadd", "vsub": "fsub", "vmul": "fmul", "vdiv": "fdiv",
    "fcmp": "fcompare", "vcmp": "fcompare",
    "fcvtzs": "convert", "fcvtzu": "convert", "scvtf": "convert", "ucvtf": "convert",
    "fcvt": "convert", "vcvt": "convert", "fmov": "move", "vmov": "move",
    "brk": "trap", "udf": "trap", "bkpt": "trap", "hlt": "trap",
}
ARM_LOAD_PREFIXES = ("ldr", "ldur", "ldp", "ldm", "ldx", "lda", "vldr", "vld")
ARM_STORE_PREFIXES = ("str", "stur", "stp", "stm", "stx", "stl", "vstr", "vst")
AVR_CLASSES = {
    "add": "add", "adiw": "add", "inc": "add", "sub": "sub", "subi": "sub", "sbiw": "sub",
    "dec": "sub", "and": "and", "andi": "and", "or": "or", "ori": "or", "eor": "xor",
    "com": "not", "neg": "neg", "lsl": "shl", "lsr": "lshr", "asr": "ashr",
    "rol": "rotate", "ror": "rotate", "mov": "move", "movw": "move", "ldi": "move",
    "ld": "load", "ldd": "load", "lds": "load", "lpm": "load", "elpm": "load", "in": "load",
    "st": "store", "std": "store", "sts": "store", "out": "store",
    "push": "push", "pop": "pop", "cp": "compare", "cpc": "compare", "cpi": "compare",
    "tst": "test", "mul": "mul", "muls": "mul", "mulsu": "mul", "nop": "nop", "break": "trap",
}
LLVM_CLASSES = {
    "add": "add", "sub": "sub", "mul": "mul", "sdiv": "div", "udiv": "udiv",
    "srem": "rem", "urem": "urem", "and": "and", "or": "or", "xor": "xor",
    "shl": "shl", "lshr": "lshr", "ashr": "ashr", "fneg": "neg",
    "fadd": "fadd", "fsub": "fsub", "fmul": "fmul", "fdiv": "fdiv",
    "load": "load", "store": "store", "getelementptr": "address", "select": "select",
    "zext": "zext", "sext": "sext", "trunc": "truncate", "fptrunc": "convert",
    "fpext": "convert", "fptosi": "convert", "fptoui": "convert", "sitofp": "convert",
    "uitofp": "convert", "unreachable": "trap",
}

FAMILY_CLASSES = {
    "x86": X86_CLASSES,
    "arm64": ARM_CLASSES,
    "arm32": ARM_CLASSES,
    "avr": AVR_CLASSES,
    "llvm": LLVM_CLASSES,
}


def _strip_arm_suffixes(mnemonic: str) -> tuple[str, str | None]:
    """
    Remove the width qualifier and the condition code of an ARM32 mnemonic.

    :return: the base mnemonic and the normalized condition, if any
    """

    mnemonic = mnemonic.removesuffix(".w").removesuffix(".n")
    if mnemonic in ARM_CLASSES:
        return mnemonic, None
    for cc, condition in ARM_CONDITIONS.items():
        base = mnemonic.removesuffix(cc)
        if base != mnemonic and (base in ARM_CLASSES or base.startswith(ARM_LOAD_PREFIXES)):
            return base, condition
    return mnemonic, None


def _condition(family: str, mnemonic: str) -> str | None:
    """Normalized condition of a conditional branch, None when not a flag test"""

    match family:
        case "x86":
            if mnemonic.startswith("j"):
                return X86_CONDITIONS.get(mnemonic[1:])
        case "arm64":
            if mnemonic.startswith("b."):
                return ARM_CONDITIONS.get(mnemonic[2:])
            if mnemonic == "cbz":
                return "eq"
            if mnemonic == "cbnz":
                return "ne"
        case "arm32":
            mnemonic = mnemonic.removesuffix(".w").removesuffix(".n")
            if mnemonic == "cbz":
                return "eq"
            if mnemonic == "cbnz":
                return "ne"
            if mnemonic.startswith("b"):
                return ARM_CONDITIONS.get(mnemonic[1:])
        case "avr":
            return AVR_BRANCHES.get(mnemonic)
    return None


def opcode_class(family: str, instruction: Instruction) -> str:
    """
    Compute the architecture-neutral opcode class of an instruction

    :param family: instruction set family (see :py:attr:`InputFormat.family`)
    :param instruction: the decoded instruction
    :return: the opcode class
    """

    mnemonic = instruction.mnemonic.lower()
    flow = instruction.flow

    if flow in FLOW_CLASSES:
        return FLOW_CLASSES[flow]
    if flow == FlowType.cond_jump:
        condition = _condition(family, mnemonic)
        if condition is not None:
            return f"cond_branch.{condition}"
        if family == "llvm":
            return "cond_branch"
        # Skip instructions and bit tests have no neutral equivalent
        return f"{family}.{mnemonic}"

    if family == "llvm" and "." in mnemonic:
        opcode, predicate = mnemonic.split(".", 1)
        if opcode == "icmp":
            return f"compare.{LLVM_PREDICATES.get(predicate, predicate)}"
        if opcode == "fcmp":
            return f"fcompare.{predicate}"

    condition = None
    if family == "arm32":
        mnemonic, condition = _strip_arm_suffixes(mnemonic)

    classes = FAMILY_CLASSES[family]
    if family == "x86" and mnemonic.startswith("cmov"):
        cls = "select"
    elif family == "x86" and mnemonic.startswith("set") and mnemonic[3:] in X86_CONDITIONS:
        cls = f"setcc.{X86_CONDITIONS[mnemonic[3:]]}"
    elif family == "arm64" and mnemonic == "cset":
        cls = "setcc"
    elif mnemonic in classes:
        cls = classes[mnemonic]
    elif family in ("arm64", "arm32") and mnemonic.startswith(ARM_LOAD_PREFIXES):
        cls = "load"
    elif family in ("arm64", "arm32") and mnemonic.startswith(ARM_STORE_PREFIXES):
        cls = "store"
    else:
        cls = f"{family}.{mnemonic}"

    # Moves touching memory are loads or stores
    if cls == "move":
        types = [op.type for op in instruction.operands]
        if types and types[0] == OperandType.memory:
            cls = "store"
        elif OperandType.memory in types:
            cls = "load"

    if condition is not None:
        cls = f"{cls}.{condition}"
    return cls


def normalize(instruction: Instruction, family: str) -> Token:
    """
    Map an instruction to its canonical token.

    Undecodable instructions become opaque tokens carrying their raw text, they
    are reported with a warning and never dropped.

    :param instruction: the decoded instruction
    :param family: instruction set family (see :py:attr:`InputFormat.family`)
    :return: the canonical token
    """

    if instruction.is_opaque:
        log_once(
            logging.WARNING,
            f"Undecodable {family} instruction `{instruction}` at {instruction.addr:#x} "
            "kept as an opaque token",
        )
        return Token(f"opaque.{family}", mnemonic=str(instruction))

    roles = []
    literals = []
    for operand in instruction.operands:
        role = OPERAND_ROLES[operand.type]
        roles.append(role)
        if operand.type == OperandType.symbol or operand.is_immediate():
            literals.append(operand.value)
        else:
            literals.append(None)

    return Token(opcode_class(family, instruction), tuple(roles), tuple(literals))
