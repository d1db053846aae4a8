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

import numpy as np
import pytest

from cfgdiff.cfg import Token
from cfgdiff.errors import InternalAlignmentError
from cfgdiff.loader.types import InputFormat
from cfgdiff.matcher import (
    BlockSimilarity,
    Matcher,
    align,
    edit_distance,
    edit_script,
    global_alignment,
)
from cfgdiff.matcher.matcher import longest_increasing_subsequence
from cfgdiff.matcher.similarity import distance_rows
from cfgdiff.types import BlockStatus, EditOp, OperandRole

from mock_backend import make_cfg
from test_builder import BRANCH, BRANCH_RENAMED, JUMP_TABLE

# Same function with one more statement on the taken path
BRANCH_SPLIT = [
    "entry:",
    "push rbp",
    "test edi, edi",
    "je @then",
    "else:",
    "mov eax, 1",
    "jmp @end",
    "then:",
    "mov eax, 2",
    "add eax, edi",
    "end:",
    "pop rbp",
    "ret",
]

# x * y + y with 32-bit then 64-bit parameters
MULADD_I32 = ["mul t, x, y", "add r, t, y", "ret r"]
MULADD_I64 = ["mul t, x, y", "add r, t, y", "trunc s, r", "ret s"]

JUMPS = ["a:", "mov eax, 1", "jmp @b", "b:", "add eax, 2", "ret"]
JUMPS_INSERTED = [
    "a:",
    "mov eax, 1",
    "jmp @c",
    "c:",
    "xor ecx, ecx",
    "cpuid",
    "jmp @b",
    "b:",
    "add eax, 2",
    "ret",
]


def statuses(alignment):
    return [p.status for p in alignment]


class TestSimilarity:
    """Token sequence distances"""

    @pytest.mark.parametrize(
        "primary, secondary, expected",
        [
            ([1, 2, 3], [1, 2, 3], 0),
            ([1, 2, 3], [1, 3], 1),
            ([], [1, 2], 2),
            ([1, 2], [2, 1], 2),
            ([1, 2, 3, 4], [5, 2, 3], 2),
        ],
    )
    def test_edit_distance(self, primary, secondary, expected):
        assert edit_distance(primary, secondary) == expected
        assert edit_distance(secondary, primary) == expected

    def test_edit_script(self):
        a, b, c = Token("move"), Token("add"), Token("return")
        script = edit_script([a, b, c], [a, c, c])
        assert script == [
            (EditOp.keep, 0, 0),
            (EditOp.substitute, 1, 1),
            (EditOp.keep, 2, 2),
        ]

        script = edit_script([a, c], [a, b, c])
        assert [op for op, _, _ in script] == [EditOp.keep, EditOp.insert, EditOp.keep]
        assert script[1] == (EditOp.insert, None, 1)

        assert edit_script([a], []) == [(EditOp.delete, 0, None)]

    @pytest.mark.parametrize(
        "primary, secondary",
        [
            ("abc", "abc"),
            ("abcd", "ebc"),
            ("kitten", "sitting"),
            ("", "ab"),
            ("ab", ""),
            ("abab", "baba"),
        ],
    )
    def test_edit_script_cost(self, primary, secondary):
        tokens = {c: Token(f"x86.{c}") for c in set(primary + secondary)}
        script = edit_script([tokens[c] for c in primary], [tokens[c] for c in secondary])
        cost = sum(1 for op, _, _ in script if op != EditOp.keep)

        codes = {c: i for i, c in enumerate(sorted(tokens))}
        left, right = [codes[c] for c in primary], [codes[c] for c in secondary]
        assert cost == edit_distance(left, right)

        rows = list(distance_rows(left, right))
        assert len(rows) == len(primary) + 1
        assert rows[-1][-1] == cost
        assert list(rows[0]) == list(range(len(secondary) + 1))

    def test_similarity(self):
        similarity = BlockSimilarity()
        move = Token("move", (OperandRole.register, OperandRole.immediate), (None, 1))
        other = Token("move", (OperandRole.register, OperandRole.immediate), (None, 2))
        ret = Token("return")
        assert similarity.similarity([move, ret], [move, ret]) == 1.0
        assert similarity.similarity([move, ret], [other, ret]) == 0.5
        assert similarity.similarity([], []) == 1.0
        assert similarity.similarity([ret], []) == 0.0
        assert similarity.encode([move, ret, move]) == (0, 1, 0)

    def test_matrix(self):
        cfg = make_cfg(BRANCH)
        sim_matrix = BlockSimilarity().matrix(cfg, cfg)
        assert sim_matrix.shape == (4, 4)
        assert np.allclose(np.diag(sim_matrix), 1.0)
        assert ((sim_matrix >= 0) & (sim_matrix <= 1)).all()


class TestAlignment:
    """Global alignment and its building blocks"""

    def test_pairs_first(self):
        alignment, cost = global_alignment(np.array([[0.0, 0.0]]), 0.5)
        assert alignment == [(0, 0), (None, 1)]
        assert cost == pytest.approx(0.5)

    def test_deletion_before_insertion(self):
        alignment, cost = global_alignment(np.array([[2.0]]), 0.5)
        assert alignment == [(0, None), (None, 0)]
        assert cost == pytest.approx(1.0)

    def test_no_crossing(self):
        costs = np.array([[1.0, 0.0], [0.0, 1.0]])
        alignment, _ = global_alignment(costs, 0.5)
        paired = [(p, s) for p, s in alignment if p is not None and s is not None]
        assert paired == sorted(paired)
        assert [p for p, _ in alignment if p is not None] == [0, 1]
        assert [s for _, s in alignment if s is not None] == [0, 1]

    def test_empty_side(self):
        alignment, cost = global_alignment(np.zeros((0, 2)), 0.5)
        assert alignment == [(None, 0), (None, 1)]
        assert cost == pytest.approx(1.0)

    def test_longest_increasing_subsequence(self):
        assert longest_increasing_subsequence([3, 1, 2, 5, 4]) == [1, 2, 4]
        assert longest_increasing_subsequence([]) == []
        assert longest_increasing_subsequence([2, 2, 2]) == [2]


class TestMatcher:
    """Block alignment of two functions"""

    def test_identity(self):
        cfg = make_cfg(BRANCH)
        alignment = align(cfg, cfg)
        assert alignment.is_identical
        assert [(p.primary, p.secondary) for p in alignment] == [(i, i) for i in range(4)]
        assert alignment.cost == pytest.approx(0.0)

    def test_renamed(self):
        alignment = align(make_cfg(BRANCH), make_cfg(BRANCH_RENAMED, addr=0x8000))
        assert alignment.is_identical

    def test_block_split(self):
        primary = make_cfg(BRANCH, named_blocks=True)
        secondary = make_cfg(BRANCH_SPLIT, named_blocks=True)
        alignment = align(primary, secondary)

        assert statuses(alignment) == [
            BlockStatus.matched,
            BlockStatus.modified,
            BlockStatus.matched,
            BlockStatus.matched,
        ]
        modified = alignment[1]
        assert primary.side_table.labels[modified.primary] == "then"
        assert secondary.side_table.labels[modified.secondary] == "then"
        assert modified.similarity == pytest.approx(0.5)

    def test_inserted_block(self):
        alignment = align(make_cfg(JUMPS), make_cfg(JUMPS_INSERTED))
        assert [(p.primary, p.secondary) for p in alignment] == [(0, 0), (None, 1), (1, 2)]
        assert statuses(alignment) == [
            BlockStatus.matched,
            BlockStatus.inserted,
            BlockStatus.matched,
        ]
        assert alignment.cost == pytest.approx(0.5)

    def test_deleted_block(self):
        alignment = align(make_cfg(JUMPS_INSERTED), make_cfg(JUMPS))
        assert statuses(alignment) == [
            BlockStatus.matched,
            BlockStatus.deleted,
            BlockStatus.matched,
        ]

    def test_cost_below_naive(self):
        primary, secondary = make_cfg(JUMPS), make_cfg(BRANCH_SPLIT)
        alignment = align(primary, secondary)
        assert alignment.cost <= alignment.naive_cost
        assert alignment.naive_cost == pytest.approx(0.5 * (2 + 4))

    def test_order(self):
        alignment = align(make_cfg(BRANCH), make_cfg(JUMPS_INSERTED))
        assert [p.primary for p in alignment if p.primary is not None] == [0, 1, 2, 3]
        assert [p.secondary for p in alignment if p.secondary is not None] == [0, 1, 2]

    def test_deterministic(self):
        first = align(make_cfg(BRANCH), make_cfg(BRANCH_SPLIT))
        second = align(make_cfg(BRANCH), make_cfg(BRANCH_SPLIT))
        assert list(first) == list(second)

    def test_single_block(self):
        matcher = Matcher(make_cfg(["mov eax, 1", "ret"]), make_cfg(["mov eax, 2", "ret"]))
        matcher.process()
        assert list(matcher.compute()) == []
        assert matcher.iterations == 0
        assert statuses(matcher.alignment) == [BlockStatus.modified]

    def test_refinement_iterations(self):
        matcher = Matcher(make_cfg(BRANCH), make_cfg(BRANCH_SPLIT))
        matcher.process()
        iterations = list(matcher.compute(maxiter=3))
        assert 1 <= len(iterations) <= 3
        assert iterations == list(range(1, matcher.iterations + 1))

    def test_no_refinement(self):
        alignment = align(make_cfg(BRANCH), make_cfg(BRANCH_SPLIT), maxiter=0)
        assert alignment.count(BlockStatus.modified) == 1

    def test_match_threshold(self):
        # Below 1.0 a modified pair is still reported modified, tokens differ
        alignment = align(make_cfg(BRANCH), make_cfg(BRANCH_SPLIT), match_threshold=0.4)
        assert alignment.count(BlockStatus.modified) == 1

    def test_modify_threshold(self):
        # Pairing the split block is no longer allowed
        alignment = align(make_cfg(BRANCH), make_cfg(BRANCH_SPLIT), modify_threshold=0.9)
        assert alignment.count(BlockStatus.modified) == 0
        assert alignment.count(BlockStatus.deleted) == 1
        assert alignment.count(BlockStatus.inserted) == 1

    def test_name_fallback(self):
        primary = make_cfg(BRANCH, named_blocks=True)
        secondary = make_cfg(BRANCH, named_blocks=True)
        matcher = Matcher(primary, secondary, max_blocks=1)
        matcher.process()
        for _ in matcher.compute():
            pass

        assert matcher.degraded
        assert matcher.sim_matrix is None
        assert len(matcher.warnings) == 1
        assert matcher.alignment.degraded
        assert matcher.alignment.is_identical

    def test_name_fallback_unnamed(self):
        # Default labels are offsets, they differ when a block is inserted
        alignment = align(make_cfg(JUMPS), make_cfg(JUMPS_INSERTED), max_blocks=1)
        assert alignment.degraded
        alignment.validate()
        assert alignment.count(BlockStatus.matched) == 1

    def test_not_computed(self):
        matcher = Matcher(make_cfg(BRANCH), make_cfg(BRANCH))
        with pytest.raises(InternalAlignmentError):
            matcher.alignment


class TestScenarios:
    """End to end comparisons of typical code changes"""

    def test_differently_typed(self):
        primary = make_cfg(MULADD_I32, fmt=InputFormat.llvm_bitcode)
        secondary = make_cfg(MULADD_I64, fmt=InputFormat.llvm_bitcode)
        alignment = align(primary, secondary)

        assert alignment.count(BlockStatus.inserted) == 0
        assert alignment.count(BlockStatus.deleted) == 0
        assert statuses(alignment) == [BlockStatus.modified]
        assert primary[0].edge_kinds == secondary[0].edge_kinds

    def test_jump_table_case_changed(self):
        changed = [line.replace("mov eax, 20", "mov eax, 99") for line in JUMP_TABLE]
        alignment = align(make_cfg(JUMP_TABLE), make_cfg(changed))

        assert not alignment.is_identical
        assert statuses(alignment).count(BlockStatus.modified) == 1
        assert alignment.count(BlockStatus.matched) == 4

    def test_dead_code_removed(self):
        dead = BRANCH + ["mov eax, 3", "ret"]
        primary = make_cfg(dead)
        secondary = make_cfg(BRANCH)
        assert len(primary.warnings) == 1

        alignment = align(primary, secondary)
        assert alignment.is_identical
        assert alignment.count(BlockStatus.deleted) == 0
