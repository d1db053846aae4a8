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

"""Operand
"""

from __future__ import annotations
from typing import TYPE_CHECKING

from cfgdiff.loader.types import OperandType

if TYPE_CHECKING:
    from cfgdiff.loader.backend import AbstractOperandBackend
    from cfgdiff.types import LiteralValue


class Operand:
    """
    Represent an operand object which hide the underlying backend implementation
    """

    def __init__(self, backend: AbstractOperandBackend):
        self._backend = backend  # Load directly from instanciated backend

    @staticmethod
    def from_backend(backend: AbstractOperandBackend) -> Operand:
        """
        Load the Operand from an instanciated operand backend object
        """

        return Operand(backend)

    @property
    def type(self) -> OperandType:
        """
        The operand type, see :py:class:`OperandType`
        """

        return self._backend.type

    @property
    def value(self) -> LiteralValue:
        """
        The literal carried by the operand (constant value or called symbol name).
        If not returns None.
        """

        return self._backend.value

    def is_immediate(self) -> bool:
        """
        Whether the operand is a constant (not considering addresses)
        """

        return self.type in (OperandType.immediate, OperandType.float_point)

    def __str__(self) -> str:
        return str(self._backend)

    def __repr__(self) -> str:
        return "<Op:%s>" % str(self)
