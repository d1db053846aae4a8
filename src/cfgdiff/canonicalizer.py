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

"""Basic block recovery

Splits the flat instruction stream of a function into basic blocks and derives
the typed outgoing edges of each block from the flow semantics of its last
instruction.
"""

from __future__ import annotations
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from cfgdiff.loader.types import FlowType
from cfgdiff.types import EdgeKind

if TYPE_CHECKING:
    from cfgdiff.loader import Instruction
    from cfgdiff.types import Addr


@dataclass
class RawBlock:
    """
    A basic block before canonicalization, still identified by the address of its
    first instruction.

    :param addr: address of the first instruction (the leader)
    :param instructions: the instructions of the block
    :param edges: outgoing edges as (destination address, kind, switch value)
    """

    addr: Addr
    instructions: list[Instruction] = field(default_factory=list)
    edges: list[tuple[Addr, EdgeKind, int | None]] = field(default_factory=list)

    @property
    def terminator(self) -> Instruction:
        return self.instructions[-1]


def _find_leaders(instructions: Sequence[Instruction], addresses: set[Addr]) -> set[Addr]:
    leaders = {instructions[0].addr}
    for current, following in zip(instructions, instructions[1:]):
        if not current.flow.is_terminator():
            continue
        leaders.add(following.addr)
        leaders.update(t for t in current.targets if t in addresses)
    # The last instruction can still jump backward
    last = instructions[-1]
    if last.flow.is_terminator():
        leaders.update(t for t in last.targets if t in addresses)
    return leaders


def _outgoing_edges(
    instr: Instruction, next_addr: Addr | None, addresses: set[Addr]
) -> list[tuple[Addr, EdgeKind, int | None]]:
    """
    Typed edges leaving a block that ends with ``instr``. Targets outside of the
    function are tail calls and produce no edge.
    """

    edges: list[tuple[Addr, EdgeKind, int | None]] = []

    def add(target: Addr | None, kind: EdgeKind, value: int | None = None) -> None:
        if target is not None and target in addresses and (target, kind, value) not in edges:
            edges.append((target, kind, value))

    targets = instr.targets
    match instr.flow:
        case FlowType.cond_jump:
            # Explicit (true, false) targets in the IR, (taken,) + fall-through otherwise
            add(targets[0] if targets else None, EdgeKind.branch_true)
            add(targets[1] if len(targets) > 1 else next_addr, EdgeKind.branch_false)
        case FlowType.jump:
            add(targets[0] if targets else None, EdgeKind.unconditional)
        case FlowType.indirect_jump:
            for target in targets:
                add(target, EdgeKind.indirect)
        case FlowType.switch:
            for target, value in zip(targets, instr.target_values):
                add(target, EdgeKind.switch_case, value)
        case FlowType.call_with_unwind:
            add(targets[0] if targets else next_addr, EdgeKind.unconditional)
            for target in targets[1:]:
                add(target, EdgeKind.indirect)
        case FlowType.ret | FlowType.trap:
            pass
        case _:
            add(next_addr, EdgeKind.fallthrough)
    return edges


def _connect_orphans(blocks: list[RawBlock]) -> None:
    """
    Give the indirect jumps whose targets are unknown (unresolved jump tables) an
    ``indirect`` edge to every block that nothing else reaches. Without them the
    case bodies behind such a jump would look unreachable.
    """

    unresolved = [
        b for b in blocks if b.terminator.flow == FlowType.indirect_jump and not b.edges
    ]
    if not unresolved:
        return

    reached = {blocks[0].addr}
    reached.update(dst for b in blocks for dst, _, _ in b.edges)
    orphans = [b.addr for b in blocks if b.addr not in reached]
    if not orphans:
        return

    logging.debug(
        f"{len(unresolved)} unresolved indirect jump(s), linked to {len(orphans)} block(s)"
    )
    for block in unresolved:
        block.edges = [(addr, EdgeKind.indirect, None) for addr in orphans]


def split_blocks(instructions: Sequence[Instruction]) -> list[RawBlock]:
    """
    Group the instructions of a function into basic blocks.

    Leaders are the first instruction, every in-function target of a control
    flow instruction and every instruction following a block terminator.

    :param instructions: instructions of the function in address order
    :return: the blocks in address order, the first one is the entry
    """

    if not instructions:
        return []

    addresses = {i.addr for i in instructions}
    leaders = _find_leaders(instructions, addresses)

    blocks: list[RawBlock] = []
    for instr in instructions:
        if instr.addr in leaders:
            blocks.append(RawBlock(instr.addr))
        blocks[-1].instructions.append(instr)

    for block, following in zip(blocks, blocks[1:] + [None]):
        next_addr = following.addr if following is not None else None
        block.edges = _outgoing_edges(block.terminator, next_addr, addresses)
    _connect_orphans(blocks)

    outside = sum(
        1
        for i in instructions
        if i.flow in (FlowType.jump, FlowType.cond_jump)
        and any(t not in addresses for t in i.targets)
    )
    if outside:
        logging.debug(f"{outside} jump(s) leave the function (tail calls)")
    return blocks
