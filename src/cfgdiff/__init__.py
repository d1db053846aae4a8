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

"""Structural control-flow graph differ

cfgdiff compares two compiled representations of the same functions (object
files, executables, archives or LLVM bitcode, for ARM64, ARM32, AVR, x86 and
x86-64) and produces a side by side diff of their control-flow graphs.

Every function is first turned into a canonical control-flow graph where the
instructions only keep their structure: registers, local values, block names
and addresses are stripped. The blocks of two canonical functions are then
aligned with a global sequence alignment over their reverse postorder,
refined with the graph topology, and each block is classified as matched,
modified, inserted or deleted. Paired blocks finally get an instruction level
diff.

The comparison is therefore invariant to register allocation, block renaming
and code placement while still detecting added or removed blocks, changed
branching and reordered code.
"""

from cfgdiff.version import __version__
from cfgdiff.builder import canonicalize
from cfgdiff.differ import Differ, make_diff
from cfgdiff.errors import (
    CFGDiffError,
    InputError,
    ArchitectureMismatchError,
    UnsupportedBitcodeError,
    NoFunctionsError,
    InternalAlignmentError,
    InvalidCFGError,
)
from cfgdiff.loader import Program, Function
from cfgdiff.loader.types import InputFormat
from cfgdiff.mapping import Alignment, DiffRow, FunctionDiff, ProgramDiff
from cfgdiff.matcher import Matcher
