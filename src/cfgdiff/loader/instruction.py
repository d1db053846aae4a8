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

"""Instruction
"""

from __future__ import annotations
from functools import cached_property
from typing import TYPE_CHECKING

from cfgdiff.loader.operand import Operand

if TYPE_CHECKING:
    from cfgdiff.loader.backend import AbstractInstructionBackend
    from cfgdiff.loader.types import FlowType
    from cfgdiff.types import Addr


class Instruction:
    """
    Defines an Instruction object that wrap the backend using under the scene.
    """

    def __init__(self, backend: AbstractInstructionBackend):
        self._backend = backend  # Load directly from instanciated backend

    @staticmethod
    def from_backend(backend: AbstractInstructionBackend) -> Instruction:
        """
        Load the Instruction from an instanciated instruction backend object
        """

        return Instruction(backend)

    @property
    def addr(self) -> Addr:
        """
        Returns the address of the instruction
        """

        return self._backend.addr

    @property
    def mnemonic(self) -> str:
        """
        Returns the instruction mnemonic as a string
        """

        return self._backend.mnemonic

    @cached_property
    def operands(self) -> list[Operand]:
        """
        Returns the list of operands as Operand object.
        """

        return [Operand.from_backend(o) for o in self._backend.operands]

    @property
    def flow(self) -> FlowType:
        """
        Returns the control flow semantics of the instruction
        """

        return self._backend.flow

    @cached_property
    def targets(self) -> list[Addr]:
        """
        Code locations the instruction may transfer control to
        """

        return list(self._backend.targets)

    @cached_property
    def target_values(self) -> list[int | None]:
        """
        Case values associated to the targets of a switch
        """

        return list(self._backend.target_values)

    @property
    def is_opaque(self) -> bool:
        """
        Whether the instruction could not be decoded
        """

        return self._backend.is_opaque

    def __str__(self) -> str:
        return str(self._backend)

    def __repr__(self) -> str:
        return "<Inst:%s>" % str(self)
