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

"""Helpers shared by the backend loaders
"""

from __future__ import annotations
import logging
import re
from functools import cache
from typing import Any, TypeAlias

import capstone  # type: ignore[import-untyped]
import itanium_demangler  # type: ignore[import-untyped]

from cfgdiff.loader.types import OperandType
from cfgdiff.utils import log_once

capstoneOperand: TypeAlias = Any  # Relaxed typing


def convert_operand_type(arch: int, cs_operand: capstoneOperand) -> OperandType:
    """
    Function that convert the capstone operand type to Operand type.
    The conversion is specific to the architecture because capstone operand
    type differs from one arch to another.

    Coprocessor and system operands are folded into the closest generic type:
    system registers are registers, barrier/prefetch/coprocessor numbers are
    immediates.
    """

    operands = {
        capstone.CS_ARCH_ARM: {
            capstone.arm_const.ARM_OP_INVALID: OperandType.unknown,
            capstone.arm_const.ARM_OP_REG: OperandType.register,
            capstone.arm_const.ARM_OP_IMM: OperandType.immediate,
            capstone.arm_const.ARM_OP_MEM: OperandType.memory,
            capstone.arm_const.ARM_OP_FP: OperandType.float_point,
            capstone.arm_const.ARM_OP_CIMM: OperandType.immediate,
            capstone.arm_const.ARM_OP_PIMM: OperandType.immediate,
            capstone.arm_const.ARM_OP_SETEND: OperandType.immediate,
            capstone.arm_const.ARM_OP_SYSREG: OperandType.register,
        },
        capstone.CS_ARCH_ARM64: {
            capstone.arm64_const.ARM64_OP_INVALID: OperandType.unknown,
            capstone.arm64_const.ARM64_OP_REG: OperandType.register,
            capstone.arm64_const.ARM64_OP_IMM: OperandType.immediate,
            capstone.arm64_const.ARM64_OP_MEM: OperandType.memory,
            capstone.arm64_const.ARM64_OP_FP: OperandType.float_point,
            capstone.arm64_const.ARM64_OP_CIMM: OperandType.immediate,
            capstone.arm64_const.ARM64_OP_REG_MRS: OperandType.register,
            capstone.arm64_const.ARM64_OP_REG_MSR: OperandType.register,
            capstone.arm64_const.ARM64_OP_PSTATE: OperandType.register,
            capstone.arm64_const.ARM64_OP_SYS: OperandType.immediate,
            capstone.arm64_const.ARM64_OP_SVCR: OperandType.register,
            capstone.arm64_const.ARM64_OP_PREFETCH: OperandType.immediate,
            capstone.arm64_const.ARM64_OP_BARRIER: OperandType.immediate,
            capstone.arm64_const.ARM64_OP_SME_INDEX: OperandType.register,
        },
        capstone.CS_ARCH_X86: {
            capstone.x86_const.X86_OP_INVALID: OperandType.unknown,
            capstone.x86_const.X86_OP_REG: OperandType.register,
            capstone.x86_const.X86_OP_IMM: OperandType.immediate,
            capstone.x86_const.X86_OP_MEM: OperandType.memory,
        },
    }

    arch_specific_operands = operands.get(arch)
    if not arch_specific_operands:
        raise NotImplementedError(f"Unrecognized capstone arch {arch}")
    operand_type = arch_specific_operands.get(cs_operand.type)
    if operand_type is None:
        log_once(
            logging.WARNING, f"Unrecognized capstone operand {cs_operand.type} for arch {arch}"
        )
        return OperandType.unknown
    return operand_type


# Legacy Rust symbols are Itanium mangled with a trailing hash and `$..$` escapes
_RUST_HASH = re.compile(r"::h[0-9a-f]{16}$")
_RUST_ESCAPES = {
    "$SP$": "@",
    "$BP$": "*",
    "$RF$": "&",
    "$LT$": "<",
    "$GT$": ">",
    "$LP$": "(",
    "$RP$": ")",
    "$C$": ",",
}
_RUST_UNICODE_ESCAPE = re.compile(r"\$u([0-9a-f]{2,6})\$")


def _clean_rust_symbol(demangled: str) -> str:
    """Remove the hash of a legacy Rust symbol and decode its escapes"""

    demangled = _RUST_HASH.sub("", demangled)
    for escape, char in _RUST_ESCAPES.items():
        demangled = demangled.replace(escape, char)
    demangled = _RUST_UNICODE_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), demangled)
    return demangled.replace("..", "::")


@cache
def demangle(name: str) -> str:
    """
    Demangle a C++ or a (legacy) Rust symbol name.
    Falls back to the name itself when it is not mangled or cannot be demangled.

    :param name: the symbol name
    :return: the human readable name
    """

    # MachO symbols carry an extra leading underscore
    symbol = name[1:] if name.startswith("__Z") else name
    if not symbol.startswith("_Z"):
        return name

    try:
        ast = itanium_demangler.parse(symbol)
    except Exception as e:
        logging.debug(f"Cannot demangle `{name}`: {e}")
        return name
    if ast is None:
        return name

    demangled = str(ast)
    if _RUST_HASH.search(demangled):
        return _clean_rust_symbol(demangled)
    return demangled
