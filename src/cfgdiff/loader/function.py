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

"""Function
"""

from __future__ import annotations
from collections.abc import Mapping, Iterator
from functools import cached_property
from typing import TYPE_CHECKING

from cfgdiff.loader.instruction import Instruction
from cfgdiff.loader.backend.utils import demangle
from cfgdiff.types import Addr

if TYPE_CHECKING:
    from cfgdiff.loader.backend.abstract import AbstractFunctionBackend
    from cfgdiff.loader.types import InputFormat


class Function(Mapping[Addr, Instruction]):
    """
    Representation of a function as a flat stream of instructions.

    This class is a dict of instruction addresses to the instruction. Iterating
    over it yields the instructions (not the addresses) in address order. The
    instructions are decoded on first access and kept afterwards.

    :param backend: the function backend
    :param fmt: format of the program the function belongs to
    """

    def __init__(self, backend: AbstractFunctionBackend, fmt: InputFormat):
        super(Function, self).__init__()

        self._backend = backend  # Load directly from instanciated backend
        self._format = fmt

    @staticmethod
    def from_backend(backend: AbstractFunctionBackend, fmt: InputFormat) -> Function:
        """
        Load the Function from an instanciated function backend object
        """

        return Function(backend, fmt)

    @cached_property
    def _instructions(self) -> dict[Addr, Instruction]:
        return {i.addr: i for i in map(Instruction.from_backend, self._backend.instructions)}

    def __hash__(self):
        return hash((self.addr, self.raw_name))

    def __getitem__(self, key: Addr) -> Instruction:
        return self._instructions[key]

    def __iter__(self) -> Iterator[Instruction]:
        """
        Iterate over instructions, not addresses
        """

        yield from self._instructions.values()

    def __len__(self) -> int:
        return len(self._instructions)

    @property
    def instructions(self) -> list[Instruction]:
        """
        The instructions of the function in address order
        """

        return list(self._instructions.values())

    @property
    def addr(self) -> Addr:
        """
        Address of the function
        """

        return self._backend.addr

    @property
    def format(self) -> InputFormat:
        """
        Format of the program the function has been loaded from
        """

        return self._format

    @property
    def labels(self) -> dict[Addr, str]:
        """
        Display names of code locations within the function, if any
        """

        return self._backend.labels

    @property
    def raw_name(self) -> str:
        """
        Name of the function as found in the symbol table
        """

        return self._backend.name

    @cached_property
    def name(self) -> str:
        """
        Demangled name of the function
        """

        return demangle(self._backend.name)

    def __repr__(self) -> str:
        return "<Function: %s>" % self.name
