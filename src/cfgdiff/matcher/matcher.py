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

"""Matcher

Block alignment engine: a global alignment of the two block linearizations,
refined with the topology of the control-flow graphs.
"""

# built-in imports
from __future__ import annotations
import bisect
import logging
from collections import Counter
from collections.abc import Generator
from typing import Any, TYPE_CHECKING

# Third-party imports
import numpy as np

# Local imports
from cfgdiff.errors import InternalAlignmentError
from cfgdiff.mapping.alignment import AlignedPair, Alignment
from cfgdiff.matcher.similarity import BlockSimilarity
from cfgdiff.types import BlockStatus

if TYPE_CHECKING:
    from cfgdiff.cfg import FunctionCFG
    from cfgdiff.types import CostMatrix, Positive, Ratio, RawAlignment, SimMatrix

DEFAULT_MATCH_THRESHOLD = 1.0
DEFAULT_MODIFY_THRESHOLD = 0.5
DEFAULT_GAP_COST = 0.5
DEFAULT_TOPOLOGY_WEIGHT = 0.25
DEFAULT_EDGE_PENALTY = 0.25
DEFAULT_MAXITER = 8
DEFAULT_MAX_BLOCKS = 2000

# Tolerance of the floating point comparisons
EPSILON = 1e-9


def global_alignment(cost_matrix: CostMatrix, gap_cost: Positive) -> tuple[RawAlignment, float]:
    """
    Optimal global alignment of two sequences given the substitution cost of every
    pair of elements and a constant gap cost. The result never contains crossing
    pairs.

    When several alignments have the same cost, gaps are placed as late as possible
    so that the pairs appearing earlier in both sequences win, deletions being
    listed before insertions.

    :param cost_matrix: substitution costs, one row per primary element
    :param gap_cost: cost of an element without counterpart
    :return: the raw alignment and its cost
    """

    n, m = cost_matrix.shape
    gaps = np.arange(m + 1) * gap_cost
    dist = np.empty((n + 1, m + 1), dtype=np.float64)
    dist[0] = gaps
    tmp = np.empty(m + 1, dtype=np.float64)
    for i in range(1, n + 1):
        tmp[0] = i * gap_cost
        np.minimum(dist[i - 1, 1:] + gap_cost, dist[i - 1, :-1] + cost_matrix[i - 1], out=tmp[1:])
        # Insertions: running minimum along the row
        dist[i] = gaps + np.minimum.accumulate(tmp - gaps)

    alignment: RawAlignment = []
    i, j = n, m
    while i > 0 or j > 0:
        if j > 0 and abs(dist[i, j] - dist[i, j - 1] - gap_cost) <= EPSILON:
            alignment.append((None, j - 1))
            j -= 1
        elif i > 0 and abs(dist[i, j] - dist[i - 1, j] - gap_cost) <= EPSILON:
            alignment.append((i - 1, None))
            i -= 1
        elif (
            i > 0
            and j > 0
            and abs(dist[i, j] - dist[i - 1, j - 1] - cost_matrix[i - 1, j - 1]) <= EPSILON
        ):
            alignment.append((i - 1, j - 1))
            i, j = i - 1, j - 1
        else:
            raise InternalAlignmentError(f"Inconsistent alignment table at cell ({i}, {j})")
    alignment.reverse()
    return alignment, float(dist[n, m])


def longest_increasing_subsequence(values: list[int]) -> list[int]:
    """
    Indices of a longest strictly increasing subsequence, in O(n log n). Among the
    longest ones, the subsequence ending with the smallest values is returned.

    :param values: the sequence
    :return: the indices (in ``values``) of the subsequence elements
    """

    tails: list[int] = []  # smallest tail value of an increasing subsequence of each length
    tails_idx: list[int] = []
    parent = [-1] * len(values)
    for idx, value in enumerate(values):
        pos = bisect.bisect_left(tails, value)
        if pos > 0:
            parent[idx] = tails_idx[pos - 1]
        if pos == len(tails):
            tails.append(value)
            tails_idx.append(idx)
        else:
            tails[pos] = value
            tails_idx[pos] = idx

    result = []
    idx = tails_idx[-1] if tails_idx else -1
    while idx >= 0:
        result.append(idx)
        idx = parent[idx]
    return result[::-1]


def _jaccard_distance(first: frozenset, second: frozenset) -> float:
    union = first | second
    if not union:
        return 0.0
    return 1.0 - len(first & second) / len(union)


class Matcher:
    """
    Block alignment of two canonical functions.

    The alignment is computed in two steps, like a generator based solver:
    :py:meth:`process` prepares the similarity and the cost matrices, then
    :py:meth:`compute` yields at every refinement iteration.

    :param primary: the primary function
    :param secondary: the secondary function
    :param match_threshold: minimum similarity of a matched pair
    :param modify_threshold: minimum similarity of a paired block
    :param gap_cost: cost of a block without counterpart
    :param topology_weight: cost reduction of a pair whose neighbours are paired
    :param edge_penalty: cost increase of a pair whose outgoing edge kinds differ
    :param max_blocks: above this number of blocks on either side, the blocks are
                       matched by name only
    """

    def __init__(
        self,
        primary: FunctionCFG,
        secondary: FunctionCFG,
        match_threshold: Ratio = DEFAULT_MATCH_THRESHOLD,
        modify_threshold: Ratio = DEFAULT_MODIFY_THRESHOLD,
        gap_cost: Positive = DEFAULT_GAP_COST,
        topology_weight: Positive = DEFAULT_TOPOLOGY_WEIGHT,
        edge_penalty: Positive = DEFAULT_EDGE_PENALTY,
        max_blocks: int = DEFAULT_MAX_BLOCKS,
    ):
        self._alignment: Alignment | None = None
        self.primary = primary
        self.secondary = secondary
        self.match_threshold = match_threshold
        self.modify_threshold = modify_threshold
        self.gap_cost = gap_cost
        self.topology_weight = topology_weight
        self.edge_penalty = edge_penalty
        self.max_blocks = max_blocks

        #: Cost of a pair that must never be chosen (more than two gaps)
        self.ineligible_cost = 2 * gap_cost + 1
        self.similarity = BlockSimilarity()
        #: Similarity matrix used by the Matcher
        self.sim_matrix: SimMatrix | None = None
        #: Substitution cost of the base alignment
        self.base_cost_matrix: CostMatrix | None = None
        #: Pairs that the alignment may choose
        self.eligible: np.ndarray | None = None
        #: Jaccard distance of the outgoing edge kinds of every pair
        self.kind_distance: CostMatrix | None = None
        #: Messages about the precision of the result
        self.warnings: list[str] = []
        #: Number of refinement iterations performed
        self.iterations = 0

    @property
    def degraded(self) -> bool:
        """Whether the functions are too large for the full alignment"""
        return max(len(self.primary), len(self.secondary)) > self.max_blocks

    @property
    def alignment(self) -> Alignment:
        """
        Final block alignment, available once :py:meth:`compute` is exhausted
        """
        if self._alignment is None:
            raise InternalAlignmentError("The alignment has not been computed")
        return self._alignment

    def _is_eligible(self, similarity: Ratio) -> bool:
        return (
            similarity >= self.modify_threshold - EPSILON
            and 1 - similarity <= 2 * self.gap_cost + EPSILON
        )

    def process(self) -> None:
        """
        Compute the block similarity matrix and the cost matrices of the alignment.
        Nothing is computed for functions above the block ceiling.
        """

        if self.degraded:
            message = (
                f"`{self.primary.name}` has {len(self.primary)}/{len(self.secondary)} blocks, "
                f"above the limit of {self.max_blocks}: blocks matched by name only "
                "(degraded precision)"
            )
            logging.warning(message)
            self.warnings.append(message)
            return

        logging.debug(
            f"Computing the similarity matrix of `{self.primary.name}` "
            f"({len(self.primary)}x{len(self.secondary)} blocks)"
        )
        self.sim_matrix = self.similarity.matrix(self.primary, self.secondary)

        self.eligible = (self.sim_matrix >= self.modify_threshold - EPSILON) & (
            1 - self.sim_matrix <= 2 * self.gap_cost + EPSILON
        )
        self.base_cost_matrix = np.where(
            self.eligible, 1 - self.sim_matrix, self.ineligible_cost
        )

        # Distinct edge kind sets are few, compute the distances between them only
        kind_sets: dict[frozenset, int] = {}
        primary_kinds = [
            kind_sets.setdefault(b.edge_kinds, len(kind_sets)) for b in self.primary.blocks
        ]
        secondary_kinds = [
            kind_sets.setdefault(b.edge_kinds, len(kind_sets)) for b in self.secondary.blocks
        ]
        distinct = list(kind_sets)
        distances = np.array(
            [[_jaccard_distance(a, b) for b in distinct] for a in distinct], dtype=np.float64
        )
        self.kind_distance = distances[np.ix_(primary_kinds, secondary_kinds)]

    def _topology_costs(self, alignment: RawAlignment) -> CostMatrix:
        """
        Cost matrix adjusted with the current alignment: a pair is rewarded by the
        fraction of its successor and predecessor pairs that are aligned together,
        and penalized by the distance of their outgoing edge kinds.

        :param alignment: the current alignment
        :return: a fresh cost matrix
        """

        primary, secondary = self.primary, self.secondary
        n, m = len(primary), len(secondary)
        partner = np.full(n, -1, dtype=np.int64)
        for p, s in alignment:
            if p is not None and s is not None:
                partner[p] = s

        # [i, v]: number of neighbours of primary block i aligned with the secondary block v
        aligned_succ = np.zeros((n, m), dtype=np.float64)
        aligned_pred = np.zeros((n, m), dtype=np.float64)
        for i in range(n):
            for u in primary.successors[i]:
                if partner[u] >= 0:
                    aligned_succ[i, partner[u]] += 1
            for u in primary.predecessors[i]:
                if partner[u] >= 0:
                    aligned_pred[i, partner[u]] += 1

        agreeing = np.zeros((n, m), dtype=np.float64)
        for j in range(m):
            if secondary.successors[j]:
                agreeing[:, j] += aligned_succ[:, list(secondary.successors[j])].sum(axis=1)
            if secondary.predecessors[j]:
                agreeing[:, j] += aligned_pred[:, list(secondary.predecessors[j])].sum(axis=1)

        def degrees(neighbours) -> np.ndarray:
            return np.array([len(x) for x in neighbours], dtype=np.float64)

        neighbourhood = np.maximum.outer(
            degrees(primary.successors), degrees(secondary.successors)
        ) + np.maximum.outer(degrees(primary.predecessors), degrees(secondary.predecessors))
        agreement = np.divide(
            agreeing, neighbourhood, out=np.ones((n, m), dtype=np.float64), where=neighbourhood > 0
        )

        cost = (
            self.base_cost_matrix
            - self.topology_weight * agreement
            + self.edge_penalty * self.kind_distance
        )
        cost[~self.eligible] = self.ineligible_cost
        return cost

    def _name_alignment(self) -> RawAlignment:
        """
        Name-only alignment used above the block ceiling: blocks whose display label
        is unique on both sides are paired, keeping the longest order-preserving
        chain of such pairs.
        """

        primary_labels = self.primary.side_table.labels
        secondary_labels = self.secondary.side_table.labels
        primary_count = Counter(primary_labels)
        secondary_count = Counter(secondary_labels)
        secondary_index = {label: j for j, label in enumerate(secondary_labels)}

        anchors = []
        for i, label in enumerate(primary_labels):
            if primary_count[label] != 1 or secondary_count[label] != 1:
                continue
            j = secondary_index[label]
            sim = self.similarity.similarity(self.primary[i].tokens, self.secondary[j].tokens)
            if self._is_eligible(sim):
                anchors.append((i, j))
        chain = [anchors[k] for k in longest_increasing_subsequence([j for _, j in anchors])]

        alignment: RawAlignment = []
        last_i, last_j = 0, 0
        for i, j in chain + [(len(self.primary), len(self.secondary))]:
            alignment.extend((p, None) for p in range(last_i, i))
            alignment.extend((None, s) for s in range(last_j, j))
            if i < len(self.primary):
                alignment.append((i, j))
            last_i, last_j = i + 1, j + 1
        return alignment

    def _classify(self, alignment: RawAlignment) -> Alignment:
        pairs = []
        for p, s in alignment:
            if p is None:
                pairs.append(AlignedPair(None, s, BlockStatus.inserted, 0.0))
                continue
            if s is None:
                pairs.append(AlignedPair(p, None, BlockStatus.deleted, 0.0))
                continue

            first, second = self.primary[p], self.secondary[s]
            if self.sim_matrix is not None:
                sim = float(self.sim_matrix[p, s])
            else:
                sim = self.similarity.similarity(first.tokens, second.tokens)
            identical = (
                sim >= self.match_threshold - EPSILON
                and first.tokens == second.tokens
                and first.edge_kinds == second.edge_kinds
            )
            status = BlockStatus.matched if identical else BlockStatus.modified
            pairs.append(AlignedPair(p, s, status, sim))

        return Alignment(
            self.primary, self.secondary, pairs, self.gap_cost, degraded=self.degraded
        )

    def compute(self, maxiter: int = DEFAULT_MAXITER) -> Generator[int, Any, Any]:
        """
        Compute the alignment, refining it with the topology for at most ``maxiter``
        iterations. The refinement stops as soon as the alignment (or its cost) is
        stable and is skipped when both functions have a single block.

        :param maxiter: maximum number of refinement iterations
        :return: generator that yield at each iteration
        """

        if self.degraded:
            self._alignment = self._classify(self._name_alignment())
            self._alignment.validate()
            return

        alignment, _ = global_alignment(self.base_cost_matrix, self.gap_cost)

        if len(self.primary) > 1 or len(self.secondary) > 1:
            previous_cost = None
            for niter in range(1, maxiter + 1):
                refined, cost = global_alignment(self._topology_costs(alignment), self.gap_cost)
                self.iterations = niter
                yield niter
                stable = refined == alignment or (
                    previous_cost is not None and abs(cost - previous_cost) <= EPSILON
                )
                alignment, previous_cost = refined, cost
                if stable:
                    logging.debug(f"Alignment converged after {niter} iterations")
                    break
            else:
                logging.debug(f"Alignment did not converge after {maxiter} iterations")

        self._alignment = self._classify(alignment)
        self._alignment.validate()


def align(
    primary: FunctionCFG, secondary: FunctionCFG, maxiter: int = DEFAULT_MAXITER, **kwargs
) -> Alignment:
    """
    Align the blocks of two functions

    :param primary: the primary function
    :param secondary: the secondary function
    :param maxiter: maximum number of refinement iterations
    :param kwargs: parameters of the :py:class:`Matcher`
    :return: the final alignment
    """

    matcher = Matcher(primary, secondary, **kwargs)
    matcher.process()
    for _ in matcher.compute(maxiter):
        pass
    return matcher.alignment
