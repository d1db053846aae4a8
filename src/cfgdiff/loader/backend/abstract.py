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

"""Interface of a backend loader
"""

from __future__ import annotations
from abc import ABCMeta, abstractmethod
from collections.abc import Iterator

from cfgdiff.loader.types import OperandType, FlowType, InputFormat
from cfgdiff.types import Addr, LiteralValue


class AbstractOperandBackend(metaclass=ABCMeta):
    """
    This is an abstract class and should not be used as is.
    It represents a generic backend loader for a Operand
    """

    @abstractmethod
    def __str__(self) -> str:
        raise NotImplementedError()

    @property
    @abstractmethod
    def type(self) -> OperandType:
        """
        Returns the operand type.
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def value(self) -> LiteralValue:
        """
        Returns the literal carried by the operand: the integer or float of a
        constant, the symbol name of a call target. None otherwise.
        """
        raise NotImplementedError()


class AbstractInstructionBackend(metaclass=ABCMeta):
    """
    This is an abstract class and should not be used as is.
    It represents a generic backend loader for a Instruction
    """

    @property
    @abstractmethod
    def addr(self) -> Addr:
        """
        The address of the instruction (an index for IR instructions)
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def mnemonic(self) -> str:
        """
        Returns the instruction mnemonic as a string
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def operands(self) -> Iterator[AbstractOperandBackend]:
        """
        Returns an iterator over backend operand objects
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def flow(self) -> FlowType:
        """
        Returns the control flow semantics of the instruction
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def targets(self) -> list[Addr]:
        """
        Returns the resolved code targets of a control flow instruction, in operand
        order. For a conditional jump the first one is the taken side, for a call with
        unwind destination the first one is the normal destination.
        """
        raise NotImplementedError()

    @property
    def target_values(self) -> list[int | None]:
        """
        For a switch, the case value of each target (None for the default case).
        """
        return [None] * len(self.targets)

    @property
    def is_opaque(self) -> bool:
        """
        Whether the bytes could not be decoded as an instruction
        """
        return False

    @abstractmethod
    def __str__(self) -> str:
        raise NotImplementedError()


class AbstractFunctionBackend(metaclass=ABCMeta):
    """
    This is an abstract class and should not be used as is.
    It represents a generic backend loader for a Function
    """

    @property
    @abstractmethod
    def addr(self) -> Addr:
        """
        The address of the function.
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def name(self) -> str:
        """
        The (possibly mangled) name of the function
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def instructions(self) -> Iterator[AbstractInstructionBackend]:
        """
        Returns an iterator over the instructions of the function in address order
        """
        raise NotImplementedError()

    @property
    def labels(self) -> dict[Addr, str]:
        """
        Display names of code locations (for instance the IR block names).
        Locations without a name are displayed using their offset.
        """
        return {}


class AbstractProgramBackend(metaclass=ABCMeta):
    """
    This is an abstract class and should not be used as is.
    It represents a generic backend loader for a Program
    """

    @property
    @abstractmethod
    def functions(self) -> Iterator[AbstractFunctionBackend]:
        """
        Returns an iterator over backend function objects.
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def name(self) -> str:
        """
        The name of the program.
        """
        raise NotImplementedError()

    @property
    @abstractmethod
    def format(self) -> InputFormat:
        """
        The format the program has been loaded with
        """
        raise NotImplementedError()
