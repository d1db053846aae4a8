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

"""Block similarity

The similarity of two blocks is ``1 - d / max(len)`` where ``d`` is the edit
distance between their token sequences (unit insertion, deletion and
substitution costs, equal tokens substitute for free).
"""

from __future__ import annotations
from collections.abc import Iterator, Sequence
from typing import TYPE_CHECKING

import numpy as np

from cfgdiff.types import EditOp

if TYPE_CHECKING:
    from cfgdiff.cfg import FunctionCFG, Token
    from cfgdiff.types import Ratio, SimMatrix


def distance_rows(primary: Sequence[int], secondary: Sequence[int]) -> Iterator[np.ndarray]:
    """
    Rows of the edit distance dynamic program between two sequences of token
    codes, starting with the row of the empty prefix of ``primary``.
    Each row is computed at once with numpy: deletions and substitutions are
    vectorized, insertions are a running minimum along the row.

    :param primary: first sequence
    :param secondary: second sequence
    :return: iterator over the ``len(primary) + 1`` rows
    """

    target = np.asarray(secondary, dtype=np.int64)
    steps = np.arange(len(target) + 1)
    row = steps.copy()
    yield row
    for i, code in enumerate(primary, start=1):
        tmp = np.empty_like(row)
        tmp[0] = i
        np.minimum(row[1:] + 1, row[:-1] + (target != code), out=tmp[1:])
        row = steps + np.minimum.accumulate(tmp - steps)
        yield row


def edit_distance(primary: Sequence[int], secondary: Sequence[int]) -> int:
    """
    Levenshtein distance between two sequences of token codes

    :param primary: first sequence
    :param secondary: second sequence
    :return: the edit distance
    """

    if len(primary) == 0 or len(secondary) == 0:
        return max(len(primary), len(secondary))

    for row in distance_rows(primary, secondary):
        pass
    return int(row[-1])


def edit_script(
    primary: Sequence[Token], secondary: Sequence[Token]
) -> list[tuple[EditOp, int | None, int | None]]:
    """
    Edit operations turning ``primary`` into ``secondary``, in order. The table is
    the one of :py:func:`edit_distance`, traced back from its last cell.
    Ties are resolved in favour of pairing tokens and deletions are listed before
    the insertions they neighbour.

    :param primary: first token sequence
    :param secondary: second token sequence
    :return: list of (operation, primary index, secondary index), the index of the
             missing side is None
    """

    codes: dict[Token, int] = {}
    left = [codes.setdefault(t, len(codes)) for t in primary]
    right = [codes.setdefault(t, len(codes)) for t in secondary]
    dist = [row.tolist() for row in distance_rows(left, right)]

    script = []
    i, j = len(left), len(right)
    while i > 0 or j > 0:
        if i > 0 and j > 0:
            equal = left[i - 1] == right[j - 1]
            if dist[i][j] == dist[i - 1][j - 1] + (not equal):
                script.append((EditOp.keep if equal else EditOp.substitute, i - 1, j - 1))
                i, j = i - 1, j - 1
                continue
        if j > 0 and dist[i][j] == dist[i][j - 1] + 1:
            script.append((EditOp.insert, None, j - 1))
            j -= 1
        else:
            script.append((EditOp.delete, i - 1, None))
            i -= 1
    script.reverse()
    return script


class BlockSimilarity:
    """
    Similarity of token sequences. Tokens are encoded as integers and the results
    are cached per pair of distinct sequences.
    """

    def __init__(self):
        self._codes: dict[Token, int] = {}
        self._cache: dict[tuple[tuple[int, ...], tuple[int, ...]], Ratio] = {}

    def encode(self, tokens: Sequence[Token]) -> tuple[int, ...]:
        """Integer code of each token, structurally equal tokens share the same code"""
        return tuple(self._codes.setdefault(t, len(self._codes)) for t in tokens)

    def similarity(self, primary: Sequence[Token], secondary: Sequence[Token]) -> Ratio:
        """
        Similarity in [0, 1] of two token sequences, two empty sequences are fully
        similar

        :param primary: first token sequence
        :param secondary: second token sequence
        :return: the similarity
        """

        return self._similarity(self.encode(primary), self.encode(secondary))

    def _similarity(self, primary: tuple[int, ...], secondary: tuple[int, ...]) -> Ratio:
        key = (primary, secondary)
        if key not in self._cache:
            longest = max(len(primary), len(secondary))
            if longest == 0 or primary == secondary:
                self._cache[key] = 1.0
            else:
                self._cache[key] = 1.0 - edit_distance(primary, secondary) / longest
        return self._cache[key]

    def matrix(self, primary: FunctionCFG, secondary: FunctionCFG) -> SimMatrix:
        """
        Similarity of every pair of blocks of two functions

        :param primary: the primary function
        :param secondary: the secondary function
        :return: the ``len(primary) x len(secondary)`` similarity matrix
        """

        primary_codes = [self.encode(b.tokens) for b in primary.blocks]
        secondary_codes = [self.encode(b.tokens) for b in secondary.blocks]
        sim_matrix = np.zeros((len(primary), len(secondary)), dtype=np.float64)
        for i, codes in enumerate(primary_codes):
            for j, other in enumerate(secondary_codes):
                sim_matrix[i, j] = self._similarity(codes, other)
        return sim_matrix
