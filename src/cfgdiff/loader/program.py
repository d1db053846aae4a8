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

"""Program
"""

from __future__ import annotations
import logging
from collections.abc import MutableMapping
from typing import TYPE_CHECKING
from pathlib import Path

from cfgdiff.loader.function import Function
from cfgdiff.loader.types import InputFormat

if TYPE_CHECKING:
    from collections.abc import Iterator
    from cfgdiff.loader.backend.abstract import AbstractProgramBackend
    from cfgdiff.types import PathLike


class Program(MutableMapping):
    """
    Program class that shadows the underlying program backend used.

    It is a :py:class:`MutableMapping`, where keys are demangled function names and
    values are :py:class:`Function` objects.

    :param path: Path to the file to load
    :param fmt: the input format, either a :py:class:`InputFormat` or one of its tags
    :param backend: object instance implementing the appropriate interface. When
                    given, ``path`` and ``fmt`` are ignored.
    """

    def __init__(
        self,
        path: PathLike | None,
        fmt: InputFormat | str | None = None,
        backend: AbstractProgramBackend | None = None,
    ):
        super().__init__()

        if backend is not None:
            self._backend = backend  # Load directly from instanciated backend
        else:
            if isinstance(fmt, str):
                fmt = InputFormat.from_string(fmt)
            path = Path(path)

            # The set of formats is closed, dispatch on it
            match fmt:
                case InputFormat.llvm_bitcode:
                    from cfgdiff.loader.backend.bitcode import ProgramBackendBitcode

                    self._backend = ProgramBackendBitcode(path)

                case (
                    InputFormat.arm64
                    | InputFormat.arm32
                    | InputFormat.avr
                    | InputFormat.x86
                    | InputFormat.x86_64
                ):
                    from cfgdiff.loader.backend.native import ProgramBackendNative

                    self._backend = ProgramBackendNative(path, fmt)

                case _:
                    raise NotImplementedError(f"Format: {fmt} not implemented")

        self._functions: dict[str, Function] = {}  # underlying dictionary containing the functions
        self._load_functions()

    @staticmethod
    def from_backend(backend: AbstractProgramBackend) -> Program:
        """
        Load the Program from an instanciated program backend object
        """

        return Program(None, backend=backend)

    def __repr__(self) -> str:
        return "<Program:%s>" % self.name

    def __iter__(self) -> Iterator[Function]:
        """
        Iterate over all functions located in the program.

        :return: Iterator of all the functions
        """

        yield from self._functions.values()

    def __len__(self) -> int:
        return len(self._functions)

    def __getitem__(self, key: str) -> Function:
        return self._functions.__getitem__(key)

    def __setitem__(self, key: str, value: Function) -> None:
        self._functions.__setitem__(key, value)

    def __delitem__(self, key: str) -> None:
        self._functions.__delitem__(key)

    def __contains__(self, key: object) -> bool:
        return key in self._functions

    def _load_functions(self) -> None:
        """Load the functions from the backend"""

        for backend in self._backend.functions:
            function = Function.from_backend(backend, self.format)
            if function.name in self._functions:
                logging.warning(
                    f"Duplicate function `{function.name}` in {self.name}, "
                    f"keeping the one at {self._functions[function.name].addr:#x}"
                )
                continue
            self[function.name] = function

    def items(self) -> Iterator[tuple[str, Function]]:  # type: ignore[override]
        """
        Iterate over the items. Each item is {name: :py:class:`Function`}

        :returns: A :py:class:`Iterator` over the functions. Each element
                  is a tuple (function_name, function_obj)
        """

        yield from self._functions.items()

    def keys(self):  # type: ignore[override]
        return self._functions.keys()

    def values(self):  # type: ignore[override]
        return self._functions.values()

    @property
    def name(self) -> str:
        """
        Returns the name of the program as defined by the backend
        """

        return self._backend.name

    @property
    def format(self) -> InputFormat:
        """
        The format used to load the program
        """

        return self._backend.format

    def get_function(self, name: str) -> Function | None:
        """
        Returns the function by its name. Both the demangled and the raw symbol
        names are accepted.

        :param name: name of the function
        :return: the function, None if there is none with this name
        """

        if name in self._functions:
            return self._functions[name]
        for function in self._functions.values():
            if function.raw_name == name:
                return function
        return None
