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

"""Function graph builder

Turns the raw blocks of a function into its canonical control-flow graph: the
unreachable blocks are dropped, the remaining ones are linearized in reverse
postorder and renumbered by position. Names and addresses only survive in the
side table.
"""

from __future__ import annotations
import logging
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING

import networkx

from cfgdiff.canonicalizer import RawBlock, split_blocks
from cfgdiff.cfg import Block, Edge, FunctionCFG, SideTable
from cfgdiff.errors import InvalidCFGError
from cfgdiff.normalizer import normalize

if TYPE_CHECKING:
    from cfgdiff.loader import Function
    from cfgdiff.types import Addr


def linearize(raw_blocks: Sequence[RawBlock]) -> list[int]:
    """
    Reverse postorder of a depth first search from the entry block (the first
    one). The successors are ordered by edge-kind priority, ties keep the operand
    order of the terminator. Blocks that are not reachable from the entry are
    left out.

    :param raw_blocks: the blocks of a function, the entry first
    :return: indices of the reachable blocks in linearization order
    """

    index = {block.addr: i for i, block in enumerate(raw_blocks)}
    graph = networkx.DiGraph()
    graph.add_nodes_from(range(len(raw_blocks)))
    for i, block in enumerate(raw_blocks):
        edges = sorted(
            (Edge(i, index[dst], kind, value) for dst, kind, value in block.edges),
            key=lambda e: e.sort_key,
        )
        successors = list(dict.fromkeys(e.dst for e in edges))
        # The last visited successor comes first in reverse postorder
        graph.add_edges_from((i, dst) for dst in reversed(successors))

    postorder = list(networkx.dfs_postorder_nodes(graph, source=0))
    return postorder[::-1]


def build(
    name: str,
    raw_blocks: Sequence[RawBlock],
    family: str,
    labels: Mapping[Addr, str] | None = None,
    base_addr: Addr = 0,
) -> FunctionCFG:
    """
    Build the canonical control-flow graph of a function

    :param name: display name of the function
    :param raw_blocks: the blocks of the function, the entry first
    :param family: instruction set family used to normalize the instructions
    :param labels: display names of the blocks keyed by their address. Blocks
                   without a name are labelled with their offset from ``base_addr``
    :param base_addr: address of the function
    :return: the canonical graph
    :raises InvalidCFGError: if the function has no instruction
    """

    if not raw_blocks:
        raise InvalidCFGError(f"Function `{name}` has no instruction")
    labels = labels or {}

    order = linearize(raw_blocks)
    warnings = []
    if len(order) != len(raw_blocks):
        dropped = len(raw_blocks) - len(order)
        message = f"Dropped {dropped} unreachable block(s) in `{name}`"
        logging.warning(message)
        warnings.append(message)

    index = {block.addr: i for i, block in enumerate(raw_blocks)}
    position = {raw: pos for pos, raw in enumerate(order)}

    blocks = []
    for pos, raw in enumerate(order):
        raw_block = raw_blocks[raw]
        edges = [
            Edge(pos, position[index[dst]], kind, value) for dst, kind, value in raw_block.edges
        ]
        edges.sort(key=lambda e: e.sort_key)
        tokens = tuple(normalize(instr, family) for instr in raw_block.instructions)
        blocks.append(Block(pos, tokens, tuple(edges)))

    side_table = SideTable(
        labels=tuple(
            labels.get(raw_blocks[raw].addr, f"+{raw_blocks[raw].addr - base_addr:#x}")
            for raw in order
        ),
        texts=tuple(tuple(str(i) for i in raw_blocks[raw].instructions) for raw in order),
        addresses=tuple(tuple(i.addr for i in raw_blocks[raw].instructions) for raw in order),
    )

    cfg = FunctionCFG(name, tuple(blocks), side_table, tuple(warnings))
    cfg.validate()
    return cfg


def canonicalize(function: Function) -> FunctionCFG:
    """
    Canonical control-flow graph of a loaded function. This is the single entry
    point of the canonicalization: normalization, block recovery and graph
    building.

    :param function: the function to canonicalize
    :return: the canonical graph
    :raises InvalidCFGError: if the function cannot be turned into a valid graph
    """

    raw_blocks = split_blocks(function.instructions)
    return build(
        function.name,
        raw_blocks,
        function.format.family,
        labels=function.labels,
        base_addr=function.addr,
    )
