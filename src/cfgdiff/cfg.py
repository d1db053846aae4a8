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

"""Canonical control-flow graph model

The structures of this module only carry structural content: opcode classes,
operand roles, preserved constants and positional block identifiers. The
original names and addresses are kept aside in a :py:class:`SideTable` that is
only consulted for display.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from functools import cached_property
from typing import TYPE_CHECKING

import networkx

from cfgdiff.errors import InvalidCFGError
from cfgdiff.types import EdgeKind, OperandRole

if TYPE_CHECKING:
    from cfgdiff.types import Addr, BlockId, LiteralValue


@dataclass(frozen=True)
class Token:
    """
    Canonical form of an instruction.

    Two tokens are structurally equal iff their opcode class, operand roles and
    preserved literals are equal. ``mnemonic`` is only set for opaque tokens.
    """

    opcode: str
    roles: tuple[OperandRole, ...] = ()
    literals: tuple[LiteralValue, ...] = ()
    mnemonic: str | None = None

    @property
    def is_opaque(self) -> bool:
        return self.mnemonic is not None

    def __str__(self) -> str:
        operands = []
        for role, literal in zip(self.roles, self.literals):
            operands.append(role.name if literal is None else f"{role.name}={literal!r}")
        if self.is_opaque:
            operands.append(repr(self.mnemonic))
        return f"{self.opcode} {', '.join(operands)}".rstrip()


@dataclass(frozen=True)
class Edge:
    """Directed control-flow edge between two positional block ids"""

    src: BlockId
    dst: BlockId
    kind: EdgeKind
    value: int | None = None  # case value of a switch edge, None for the default

    @property
    def sort_key(self) -> tuple[int, float]:
        """Visiting priority, switch cases by ascending value with the default last"""
        if self.kind == EdgeKind.switch_case:
            return (self.kind, float("inf") if self.value is None else self.value)
        return (self.kind, 0)

    @property
    def label(self) -> str:
        if self.kind == EdgeKind.switch_case:
            return f"case {'default' if self.value is None else self.value}"
        return self.kind.name


@dataclass(frozen=True)
class Block:
    """A basic block identified by its position in the canonical linearization"""

    id: BlockId
    tokens: tuple[Token, ...]
    edges: tuple[Edge, ...] = ()

    def __len__(self) -> int:
        return len(self.tokens)

    @cached_property
    def edge_kinds(self) -> frozenset[tuple[EdgeKind, int | None]]:
        """Set of the outgoing edge kinds (switch edges keep their case value)"""
        return frozenset((e.kind, e.value) for e in self.edges)


@dataclass(frozen=True)
class SideTable:
    """
    Display data of a canonical function, indexed by block position. It is never
    used by the comparison itself.

    :param labels: display name of each block
    :param texts: original text of the instructions of each block
    :param addresses: original address of each instruction of each block
    """

    labels: tuple[str, ...]
    texts: tuple[tuple[str, ...], ...]
    addresses: tuple[tuple[Addr, ...], ...]


@dataclass(frozen=True)
class FunctionCFG:
    """
    Canonical control-flow graph of a function. Block ``0`` is the entry and the
    blocks are stored in linearization order.
    """

    name: str
    blocks: tuple[Block, ...]
    side_table: SideTable
    warnings: tuple[str, ...] = field(default=())

    entry: BlockId = 0

    def __len__(self) -> int:
        return len(self.blocks)

    def __getitem__(self, block_id: BlockId) -> Block:
        return self.blocks[block_id]

    @cached_property
    def graph(self) -> networkx.MultiDiGraph:
        """
        The networkx MultiDiGraph of the function. This is used to perform networkx
        based algorithm. Edges are keyed by their kind.
        """

        graph = networkx.MultiDiGraph()
        graph.add_nodes_from(range(len(self.blocks)))
        for block in self.blocks:
            for edge in block.edges:
                graph.add_edge(edge.src, edge.dst, key=(edge.kind, edge.value), kind=edge.kind)
        return graph

    @cached_property
    def successors(self) -> tuple[frozenset[BlockId], ...]:
        """Successors of every block"""
        return tuple(frozenset(self.graph.successors(n)) for n in range(len(self.blocks)))

    @cached_property
    def predecessors(self) -> tuple[frozenset[BlockId], ...]:
        """Predecessors of every block"""
        return tuple(frozenset(self.graph.predecessors(n)) for n in range(len(self.blocks)))

    @property
    def nb_tokens(self) -> int:
        return sum(len(b) for b in self.blocks)

    def validate(self) -> None:
        """
        Check the invariants of a canonical graph: positional ids, a single entry
        and every block reachable from it.

        :raises InvalidCFGError: if an invariant is violated
        """

        if not self.blocks:
            raise InvalidCFGError(f"Function `{self.name}` has no block")
        for position, block in enumerate(self.blocks):
            if block.id != position:
                raise InvalidCFGError(
                    f"Function `{self.name}`: block {block.id} stored at position {position}"
                )
            for edge in block.edges:
                if edge.src != position or not 0 <= edge.dst < len(self.blocks):
                    raise InvalidCFGError(f"Function `{self.name}`: dangling edge {edge}")
        if len(self.side_table.labels) != len(self.blocks):
            raise InvalidCFGError(f"Function `{self.name}`: side table out of sync")
        reachable = networkx.descendants(self.graph, self.entry) | {self.entry}
        if len(reachable) != len(self.blocks):
            raise InvalidCFGError(
                f"Function `{self.name}` has {len(self.blocks) - len(reachable)} "
                "block(s) unreachable from the entry"
            )
