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

"""Block alignment engine

Similarity of token sequences and alignment of the blocks of two functions.
"""

from cfgdiff.matcher.similarity import BlockSimilarity, edit_distance, edit_script
from cfgdiff.matcher.matcher import (
    Matcher,
    align,
    global_alignment,
    DEFAULT_MATCH_THRESHOLD,
    DEFAULT_MODIFY_THRESHOLD,
    DEFAULT_GAP_COST,
    DEFAULT_TOPOLOGY_WEIGHT,
    DEFAULT_EDGE_PENALTY,
    DEFAULT_MAXITER,
    DEFAULT_MAX_BLOCKS,
)
