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

"""Common interface to a compiled program

This module contains the common interface used by cfgdiff to access the
functions and instructions of an input file, whatever its format.
The data is being loaded by the backend loaders.
"""

from cfgdiff.loader.operand import Operand
from cfgdiff.loader.instruction import Instruction
from cfgdiff.loader.function import Function
from cfgdiff.loader.program import Program
from cfgdiff.loader.types import InputFormat, OperandType, FlowType
