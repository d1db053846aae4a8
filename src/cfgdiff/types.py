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

"""Contains all the type alias/definitions used by the module

This module contains all definitions of the type aliases and the generic enums
used by cfgdiff.
"""

from __future__ import annotations
from typing import TypeAlias

import numpy
from pathlib import Path
import enum_tools.documentation
from enum import IntEnum


Positive: TypeAlias = float
"""Float greater than zero"""

Ratio: TypeAlias = float
"""Float bewteen 0 and 1"""

Idx: TypeAlias = int
"""An integer representing an index in a matrix."""

Addr: TypeAlias = int
"""An integer representing an address within a program"""

BlockId: TypeAlias = int
"""Positional identifier of a block, its index in the canonical linearization"""

PathLike: TypeAlias = str | Path
"""A path to a file on disk"""

LiteralValue: TypeAlias = int | float | str | None
"""Value of an operand kept in a token (``None`` when not preserved)"""

Matrix: TypeAlias = numpy.ndarray
"""
Arbitrary floating point matrix (two dimensional :py:class:`numpy.ndarray`).
"""

SimMatrix: TypeAlias = Matrix
"""
Block similarity matrix, the value at ``(i, j)`` is the structural similarity
in [0, 1] of the block ``i`` of the primary function with the block ``j`` of the
secondary one.
"""

CostMatrix: TypeAlias = Matrix
"""
Per cell substitution cost used by the alignment dynamic program.
"""

RawAlignment: TypeAlias = list[tuple[BlockId | None, BlockId | None]]
"""
Ordered list of block pairs ``(primary, secondary)`` where a ``None`` marks a gap
"""


@enum_tools.documentation.document_enum
class EdgeKind(IntEnum):
    """
    Kind of a control-flow edge. The integer value is the visiting priority used
    by the linearization (lowest first).
    """

    fallthrough = 0  # doc: Implicit flow to the next block
    branch_true = 1  # doc: Taken side of a conditional branch
    branch_false = 2  # doc: Not taken side of a conditional branch
    unconditional = 3  # doc: Direct unconditional jump
    switch_case = 4  # doc: One case of a multi-way branch (default case has no value)
    indirect = 5  # doc: Indirect, computed or exceptional flow


@enum_tools.documentation.document_enum
class OperandRole(IntEnum):
    """
    Structural role of an operand once register and value names have been stripped
    """

    register = 0  # doc: Register or local value
    memory = 1  # doc: Memory reference
    immediate = 2  # doc: Integer or floating point constant
    label = 3  # doc: Reference to a code location or a called symbol


@enum_tools.documentation.document_enum
class BlockStatus(IntEnum):
    """
    Classification of an aligned block pair
    """

    matched = 0  # doc: Paired block with identical structure
    modified = 1  # doc: Paired block with token differences
    inserted = 2  # doc: Block only present in the secondary function
    deleted = 3  # doc: Block only present in the primary function


@enum_tools.documentation.document_enum
class EditOp(IntEnum):
    """
    Operation of an edit script between two token sequences
    """

    keep = 0  # doc: Structurally equal tokens
    substitute = 1  # doc: Tokens paired but different
    insert = 2  # doc: Token only in the secondary sequence
    delete = 3  # doc: Token only in the primary sequence


@enum_tools.documentation.document_enum
class FunctionStatus(IntEnum):
    """
    Outcome of the comparison of two functions
    """

    identical = 0  # doc: Every block matched
    changed = 1  # doc: At least one block modified, inserted or deleted
    error = 2  # doc: The comparison failed with an internal error
