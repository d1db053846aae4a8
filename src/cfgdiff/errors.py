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

"""Exceptions

Input errors abort the whole run, internal alignment errors only abort the
comparison of the function they have been raised for.
"""

from __future__ import annotations
from pathlib import Path


class CFGDiffError(Exception):
    """Base class of every error raised by cfgdiff"""


class InputError(CFGDiffError):
    """
    An input file cannot be used: unreadable, corrupt or unsupported.

    :param message: diagnosis shown to the user
    :param path: the offending file, if known
    """

    def __init__(self, message: str, path: Path | str | None = None):
        self.path = Path(path) if path is not None else None
        if self.path is not None:
            message = f"{self.path}: {message}"
        super().__init__(message)


class ArchitectureMismatchError(InputError):
    """The file does not contain code for the requested architecture"""


class UnsupportedBitcodeError(InputError):
    """The bitcode cannot be read by the bundled LLVM (version or pointer format)"""


class NoFunctionsError(CFGDiffError):
    """
    There is nothing to compare.

    :param location: where the function(s) could not be found, one of
                     ``"left-hand"``, ``"right-hand"`` or ``"either"``
    :param name: the requested function name, if any
    """

    def __init__(self, location: str, name: str | None = None):
        self.location = location
        self.name = name
        if name is None:
            message = f"No functions to compare in {location} file"
        else:
            message = f"Cannot find function `{name}` in {location} file"
        super().__init__(message)


class InternalAlignmentError(CFGDiffError):
    """An invariant of the canonical model or of an alignment has been violated"""


class InvalidCFGError(InternalAlignmentError):
    """A canonical control-flow graph is malformed"""
