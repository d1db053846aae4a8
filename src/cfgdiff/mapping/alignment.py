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

"""Block alignment of two functions
"""

from __future__ import annotations
import csv
import logging
from collections import namedtuple
from pathlib import Path
from typing import Any, TYPE_CHECKING

from cfgdiff.errors import InternalAlignmentError
from cfgdiff.types import BlockStatus

if TYPE_CHECKING:
    from collections.abc import Iterator
    from cfgdiff.cfg import FunctionCFG
    from cfgdiff.types import BlockId, Positive

AlignedPair = namedtuple("AlignedPair", "primary secondary status similarity")
"""
One entry of an alignment: the primary and secondary block ids (``None`` for a gap),
the :py:class:`BlockStatus` of the pair and the similarity of the two blocks
(``0.0`` for a gap).
"""


class Alignment:
    """
    Ordered correspondence between the blocks of two canonical functions.
    Every block of both functions appears in exactly one pair and the pair order
    is consistent with the linearization of both functions.

    :param primary: the primary function
    :param secondary: the secondary function
    :param pairs: the aligned pairs in order
    :param gap_cost: cost of a block without counterpart
    :param degraded: whether the alignment comes from the name-only fallback
    """

    def __init__(
        self,
        primary: FunctionCFG,
        secondary: FunctionCFG,
        pairs: list[AlignedPair],
        gap_cost: Positive,
        degraded: bool = False,
    ):
        self.primary = primary
        self.secondary = secondary
        self._pairs = list(pairs)
        self.gap_cost = gap_cost
        self.degraded = degraded

    def __iter__(self) -> Iterator[AlignedPair]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __getitem__(self, index: int) -> AlignedPair:
        return self._pairs[index]

    def __repr__(self) -> str:
        counts = ", ".join(f"{s.name}={self.count(s)}" for s in BlockStatus)
        return f"<Alignment {self.primary.name} / {self.secondary.name}: {counts}>"

    @property
    def cost(self) -> float:
        """
        Total base cost: ``1 - similarity`` for every paired block plus the gap cost
        for every block without counterpart
        """

        return sum(
            self.gap_cost if p.primary is None or p.secondary is None else 1 - p.similarity
            for p in self._pairs
        )

    @property
    def naive_cost(self) -> float:
        """Cost of the correspondence where every block is deleted then inserted"""
        return self.gap_cost * (len(self.primary) + len(self.secondary))

    def count(self, status: BlockStatus) -> int:
        """Number of pairs with the given status"""
        return sum(1 for p in self._pairs if p.status == status)

    @property
    def is_identical(self) -> bool:
        """Whether every block is matched"""
        return all(p.status == BlockStatus.matched for p in self._pairs)

    def match_primary(self, block: BlockId) -> AlignedPair | None:
        """
        Returns the pair of the given primary block (if any).

        :param block: id of the block in the primary function
        :return: optional pair
        """
        for p in self._pairs:
            if p.primary == block:
                return p
        return None

    def match_secondary(self, block: BlockId) -> AlignedPair | None:
        """
        Returns the pair of the given secondary block (if any).

        :param block: id of the block in the secondary function
        :return: optional pair
        """
        for p in self._pairs:
            if p.secondary == block:
                return p
        return None

    def validate(self) -> None:
        """
        Check that every block of both functions appears exactly once and that the
        order of the pairs preserves both linearizations.

        :raises InternalAlignmentError: if the alignment is inconsistent
        """

        for side, size in (("primary", len(self.primary)), ("secondary", len(self.secondary))):
            ids = [getattr(p, side) for p in self._pairs if getattr(p, side) is not None]
            if ids != list(range(size)):
                raise InternalAlignmentError(
                    f"Alignment of `{self.primary.name}` does not cover the {side} blocks "
                    "exactly once in linearization order"
                )
        for p in self._pairs:
            gap = p.primary is None or p.secondary is None
            if p.primary is None and p.secondary is None:
                raise InternalAlignmentError("Empty aligned pair")
            if gap != (p.status in (BlockStatus.inserted, BlockStatus.deleted)):
                raise InternalAlignmentError(f"Inconsistent status of the pair {p}")

    def to_dict(self) -> dict[str, Any]:
        """Serializable representation of the alignment"""

        def label(cfg: FunctionCFG, block: BlockId | None) -> str | None:
            return None if block is None else cfg.side_table.labels[block]

        return {
            "primary": self.primary.name,
            "secondary": self.secondary.name,
            "cost": self.cost,
            "degraded": self.degraded,
            "blocks": [
                {
                    "primary": label(self.primary, p.primary),
                    "secondary": label(self.secondary, p.secondary),
                    "status": p.status.name,
                    "similarity": p.similarity,
                }
                for p in self._pairs
            ],
        }

    def to_csv(self, path: Path | str) -> None:
        """
        Write the alignment into a csv file, one row per aligned pair with the block
        labels, the status and the similarity.

        :param path: The file path of the csv file to write
        """

        # Check the path
        if isinstance(path, str):
            path = Path(path)
        if path.exists() and not path.is_file():
            raise ValueError(f"path `{path}` already exists and is not a file.")
        if path.exists():
            logging.info(f"Overwriting file {path}")

        with open(path, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(("primary_block", "secondary_block", "status", "similarity"))
            for entry in self.to_dict()["blocks"]:
                writer.writerow(
                    (entry["primary"], entry["secondary"], entry["status"], entry["similarity"])
                )
