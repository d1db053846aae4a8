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

"""Program differ

The :py:class:`Differ` pairs the functions of two programs by name and compares
every pair: both functions are canonicalized then their blocks are aligned by
the :py:class:`Matcher`.
"""

from __future__ import annotations
import logging
import tqdm
from collections.abc import Generator
from functools import cached_property
from typing import Any, TYPE_CHECKING

from cfgdiff.builder import canonicalize
from cfgdiff.errors import InternalAlignmentError, NoFunctionsError
from cfgdiff.loader import Program
from cfgdiff.mapping import FunctionDiff, ProgramDiff
from cfgdiff.matcher import (
    Matcher,
    DEFAULT_MATCH_THRESHOLD,
    DEFAULT_MODIFY_THRESHOLD,
    DEFAULT_GAP_COST,
    DEFAULT_TOPOLOGY_WEIGHT,
    DEFAULT_EDGE_PENALTY,
    DEFAULT_MAXITER,
    DEFAULT_MAX_BLOCKS,
)
from cfgdiff.utils import is_debug, ordered_map

if TYPE_CHECKING:
    from cfgdiff.loader import Function, InputFormat
    from cfgdiff.mapping import DiffRow
    from cfgdiff.types import PathLike, Positive, Ratio


class Differ:
    def __init__(
        self,
        primary: Program,
        secondary: Program,
        *,
        name: str | None = None,
        right_name: str | None = None,
        match_threshold: Ratio = DEFAULT_MATCH_THRESHOLD,
        modify_threshold: Ratio = DEFAULT_MODIFY_THRESHOLD,
        gap_cost: Positive = DEFAULT_GAP_COST,
        topology_weight: Positive = DEFAULT_TOPOLOGY_WEIGHT,
        edge_penalty: Positive = DEFAULT_EDGE_PENALTY,
        maxiter: int = DEFAULT_MAXITER,
        max_blocks: int = DEFAULT_MAX_BLOCKS,
        jobs: int = 1,
    ):
        """
        Compare the functions of two programs.

        :param primary: primary program
        :param secondary: secondary program
        :param name: only compare the function with this name
        :param right_name: name of the function of the secondary program to compare
            with the function ``name`` of the primary one (requires ``name``)
        :param match_threshold: minimum similarity of a matched block pair
        :param modify_threshold: minimum similarity of a paired block
        :param gap_cost: cost of a block without counterpart
        :param topology_weight: cost reduction of a block pair with aligned neighbours
        :param edge_penalty: cost increase of a block pair with different edge kinds
        :param maxiter: maximum number of refinement iterations of the alignment
        :param max_blocks: block count above which the blocks are matched by name only
        :param jobs: number of worker threads
        """

        if right_name is not None and name is None:
            raise ValueError("Right-hand function provided, but left is missing")

        #: Primary program
        self.primary = primary
        #: Secondary program
        self.secondary = secondary
        self.name = name
        self.right_name = right_name
        self.maxiter = maxiter
        self.jobs = jobs
        self.matcher_options: dict[str, Any] = {
            "match_threshold": match_threshold,
            "modify_threshold": modify_threshold,
            "gap_cost": gap_cost,
            "topology_weight": topology_weight,
            "edge_penalty": edge_penalty,
            "max_blocks": max_blocks,
        }
        self._results: list[FunctionDiff] = []

    def match_functions(self) -> list[tuple[Function, Function]]:
        """
        Pairs of functions to compare, in name order. Without an explicit name, the
        functions are paired by demangled name.

        :return: list of (primary function, secondary function)
        :raises NoFunctionsError: if a requested function is missing or if the
                                  programs have no function in common
        """

        if self.name is not None:
            right_name = self.right_name if self.right_name is not None else self.name
            left = self.primary.get_function(self.name)
            right = self.secondary.get_function(right_name)
            if left is None and right is None:
                raise NoFunctionsError("either", self.name)
            if left is None:
                raise NoFunctionsError("left-hand", self.name)
            if right is None:
                raise NoFunctionsError("right-hand", right_name)
            return [(left, right)]

        common = sorted(self.primary.keys() & self.secondary.keys())
        if not common:
            raise NoFunctionsError("either")
        return [(self.primary[name], self.secondary[name]) for name in common]

    @property
    def added(self) -> list[str]:
        """Functions only present in the secondary program"""
        if self.name is not None:
            return []
        return sorted(self.secondary.keys() - self.primary.keys())

    @property
    def removed(self) -> list[str]:
        """Functions only present in the primary program"""
        if self.name is not None:
            return []
        return sorted(self.primary.keys() - self.secondary.keys())

    def diff_functions(self, primary: Function, secondary: Function) -> FunctionDiff:
        """
        Compare two functions. An internal error only aborts the comparison of this
        pair and is reported in the result.

        :param primary: the primary function
        :param secondary: the secondary function
        :return: the function diff
        """

        try:
            primary_cfg = canonicalize(primary)
            secondary_cfg = canonicalize(secondary)

            matcher = Matcher(primary_cfg, secondary_cfg, **self.matcher_options)
            matcher.process()
            for _ in matcher.compute(self.maxiter):
                pass
        except InternalAlignmentError as e:
            logging.error(f"Internal error while comparing `{primary.name}`: {e}")
            return FunctionDiff(primary.name, secondary.name, error=str(e))

        warnings = [*primary_cfg.warnings, *secondary_cfg.warnings, *matcher.warnings]
        return FunctionDiff(primary.name, secondary.name, matcher.alignment, warnings=warnings)

    @cached_property
    def pairs(self) -> list[tuple[Function, Function]]:
        """The pairs of functions to compare, see :py:meth:`match_functions`"""
        return self.match_functions()

    def diff_iterator(self) -> Generator[FunctionDiff, Any, Any]:
        """
        Compare every pair of functions, possibly in parallel. The results are
        yielded in name order.

        :return: generator that yield the diff of each pair
        """

        logging.info(f"[+] Comparing {len(self.pairs)} function pair(s)")
        self._results = []
        for result in ordered_map(lambda pair: self.diff_functions(*pair), self.pairs, self.jobs):
            self._results.append(result)
            yield result

    @property
    def diff(self) -> ProgramDiff:
        """The diff of the two programs, from the pairs compared so far"""
        return ProgramDiff(
            self.primary.name,
            self.secondary.name,
            list(self._results),
            added=self.added,
            removed=self.removed,
        )

    def compute(self) -> ProgramDiff:
        """
        Run the whole comparison

        :return: the diff of the two programs
        """

        for _ in tqdm.tqdm(self.diff_iterator(), total=len(self.pairs), disable=not is_debug()):
            pass
        return self.diff


def make_diff(
    format: InputFormat | str,
    primary: PathLike,
    secondary: PathLike,
    name: str | None = None,
    right_name: str | None = None,
    **options,
) -> tuple[bool, dict[tuple[str, str], list[DiffRow]]]:
    """
    Load and compare two files.

    :param format: the input format, or one of its tags
    :param primary: path of the primary file
    :param secondary: path of the secondary file
    :param name: only compare the function with this name
    :param right_name: name of the function to compare in the secondary file
    :param options: parameters of the :py:class:`Differ`
    :return: whether any difference exists and the side by side rows of every
             compared pair of functions keyed by their names. Block header rows have
             a ``kind`` set to None.
    :raises ValueError: for an unknown format or a ``right_name`` without ``name``
    :raises InputError: if a file cannot be loaded
    :raises NoFunctionsError: if there is nothing to compare
    """

    if right_name is not None and name is None:
        raise ValueError("Right-hand function provided, but left is missing")

    differ = Differ(
        Program(primary, format),
        Program(secondary, format),
        name=name,
        right_name=right_name,
        **options,
    )
    diff = differ.compute()
    return diff.has_diff, diff.rows()
