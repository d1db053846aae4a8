"""
Copyright 2023 Quarkslab

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import logging

import pytest

from cfgdiff import canonicalize
from cfgdiff.builder import linearize
from cfgdiff.canonicalizer import split_blocks
from cfgdiff.errors import InvalidCFGError
from cfgdiff.types import EdgeKind

from mock_backend import make_cfg, make_function

# if (x) r = 2 else r = 1
BRANCH = [
    "entry:",
    "push rbp",
    "test edi, edi",
    "je @then",
    "else:",
    "mov eax, 1",
    "jmp @end",
    "then:",
    "mov eax, 2",
    "end:",
    "pop rbp",
    "ret",
]

# Same function with other registers, other names and at another address
BRANCH_RENAMED = [
    "start:",
    "push rbx",
    "test esi, esi",
    "je @yes",
    "no:",
    "mov ecx, 1",
    "jmp @out",
    "yes:",
    "mov ecx, 2",
    "out:",
    "pop rbx",
    "ret",
]

# switch (x) { case 0: r = 10; case 1: r = 20; default: r = 0 } through a jump
# table whose entries are unknown
JUMP_TABLE = [
    "cmp rdi, 1",
    "ja @default",
    "jmp [table + rdi*8]",
    "case0:",
    "mov eax, 10",
    "ret",
    "case1:",
    "mov eax, 20",
    "ret",
    "default:",
    "xor eax, eax",
    "ret",
]


class TestCanonicalizer:
    """Basic block recovery"""

    def test_split_blocks(self):
        blocks = split_blocks(make_function(BRANCH).instructions)
        assert [len(b.instructions) for b in blocks] == [3, 2, 1, 2]
        assert blocks[0].edges == [
            (blocks[2].addr, EdgeKind.branch_true, None),
            (blocks[1].addr, EdgeKind.branch_false, None),
        ]
        assert blocks[1].edges == [(blocks[3].addr, EdgeKind.unconditional, None)]
        assert blocks[2].edges == [(blocks[3].addr, EdgeKind.fallthrough, None)]
        assert blocks[3].edges == []

    def test_empty_function(self):
        assert split_blocks([]) == []

    def test_switch(self):
        lines = [
            "switch edi, @other, 2=@two, 1=@one",
            "one:",
            "ret",
            "two:",
            "ret",
            "other:",
            "ud2",
        ]
        entry = split_blocks(make_function(lines).instructions)[0]
        assert [(kind, value) for _, kind, value in entry.edges] == [
            (EdgeKind.switch_case, None),
            (EdgeKind.switch_case, 2),
            (EdgeKind.switch_case, 1),
        ]

    def test_invoke(self):
        lines = ["invoke $may_throw, @normal, @unwind", "normal:", "ret", "unwind:", "ret"]
        blocks = split_blocks(make_function(lines).instructions)
        assert [kind for _, kind, _ in blocks[0].edges] == [
            EdgeKind.unconditional,
            EdgeKind.indirect,
        ]

    def test_tail_call(self):
        # A jump leaving the function has no edge
        blocks = split_blocks(make_function(["mov eax, 1", "jmp rax"]).instructions)
        assert len(blocks) == 1
        assert blocks[0].edges == []

    def test_unresolved_indirect_jump(self):
        blocks = split_blocks(make_function(JUMP_TABLE).instructions)
        assert len(blocks) == 5
        # Both case bodies are only reachable through the table
        assert blocks[1].edges == [
            (blocks[2].addr, EdgeKind.indirect, None),
            (blocks[3].addr, EdgeKind.indirect, None),
        ]

    def test_unresolved_indirect_jump_without_orphan(self):
        lines = ["test edi, edi", "je @out", "jmp [rdi]", "out:", "ret"]
        blocks = split_blocks(make_function(lines).instructions)
        assert blocks[1].edges == []

    def test_backward_jump(self):
        lines = ["mov eax, 0", "loop:", "add eax, 1", "cmp eax, 10", "jne @loop", "ret"]
        blocks = split_blocks(make_function(lines).instructions)
        assert len(blocks) == 3
        assert (blocks[1].addr, EdgeKind.branch_true, None) in blocks[1].edges


class TestBuilder:
    """Canonical control-flow graphs"""

    def test_reverse_postorder(self):
        cfg = make_cfg(BRANCH, named_blocks=True)
        # The taken side of the branch comes first
        assert cfg.side_table.labels == ("entry", "then", "else", "end")
        assert [(e.dst, e.kind) for e in cfg[0].edges] == [
            (1, EdgeKind.branch_true),
            (2, EdgeKind.branch_false),
        ]

    def test_linearize_switch(self):
        lines = [
            "switch edi, @other, 2=@two, 1=@one",
            "other:",
            "ud2",
            "two:",
            "ret",
            "one:",
            "ret",
        ]
        cfg = make_cfg(lines, named_blocks=True)
        # Cases by ascending value, the default last
        assert cfg.side_table.labels[1:] == ("one", "two", "other")
        assert [e.value for e in cfg[0].edges] == [1, 2, None]

    def test_positional_ids(self):
        cfg = make_cfg(BRANCH)
        assert [b.id for b in cfg.blocks] == list(range(4))
        assert cfg.entry == 0
        assert cfg.successors[0] == frozenset({1, 2})
        assert cfg.predecessors[3] == frozenset({1, 2})

    def test_default_labels(self):
        cfg = make_cfg(BRANCH)
        assert cfg.side_table.labels[0] == "+0x0"
        assert cfg.side_table.texts[0] == ("push rbp", "test edi, edi", "je @then")

    def test_renaming_invariance(self):
        first = make_cfg(BRANCH, named_blocks=True)
        second = make_cfg(BRANCH_RENAMED, addr=0x8000, named_blocks=True)
        assert first.blocks == second.blocks
        assert first.side_table.labels != second.side_table.labels

    def test_unreachable_blocks(self, caplog):
        caplog.set_level(logging.WARNING)
        lines = ["mov eax, 1", "ret", "mov eax, 2", "ret"]
        cfg = make_cfg(lines)
        assert len(cfg) == 1
        assert len(cfg.warnings) == 1
        assert "unreachable" in cfg.warnings[0]
        assert "unreachable" in caplog.text

    def test_jump_table_cases_kept(self, caplog):
        caplog.set_level(logging.WARNING)
        cfg = make_cfg(JUMP_TABLE)
        assert len(cfg) == 5
        assert cfg.warnings == ()
        assert "unreachable" not in caplog.text
        assert cfg.graph.number_of_edges() == 4

    def test_linearize_skips_unreachable(self):
        blocks = split_blocks(make_function(["ret", "nop", "ret"]).instructions)
        assert linearize(blocks) == [0]

    def test_no_instruction(self):
        with pytest.raises(InvalidCFGError):
            canonicalize(make_function([]))

    def test_graph(self):
        cfg = make_cfg(BRANCH)
        assert cfg.graph.number_of_nodes() == 4
        assert cfg.graph.number_of_edges() == 4
        assert cfg.nb_tokens == 8
