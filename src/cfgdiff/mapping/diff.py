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

"""Diff results

Instruction level diff of aligned blocks and the results of the comparison of
two programs.
"""

from __future__ import annotations
import csv
import logging
from collections import namedtuple
from pathlib import Path
from typing import Any, TYPE_CHECKING

from cfgdiff.matcher.similarity import edit_script
from cfgdiff.types import BlockStatus, EditOp, FunctionStatus

if TYPE_CHECKING:
    from collections.abc import Iterator
    from cfgdiff.cfg import FunctionCFG
    from cfgdiff.mapping.alignment import AlignedPair, Alignment

DiffRow = namedtuple("DiffRow", "kind primary secondary")
"""
One row of a side by side diff. ``kind`` is the :py:class:`EditOp` of the row or
``None`` for the header row of a block, the texts of a missing side are empty.
"""


def _texts(cfg: FunctionCFG, block: int | None) -> tuple[str, ...]:
    return () if block is None else cfg.side_table.texts[block]


class BlockDiff:
    """
    Instruction level diff of one aligned pair of blocks.

    :param pair: the aligned pair
    :param primary_label: display name of the primary block, empty for an inserted block
    :param secondary_label: display name of the secondary block, empty for a deleted block
    :param rows: the instruction rows
    """

    def __init__(
        self, pair: AlignedPair, primary_label: str, secondary_label: str, rows: list[DiffRow]
    ):
        self.pair = pair
        self.primary_label = primary_label
        self.secondary_label = secondary_label
        self.rows = rows

    def __repr__(self) -> str:
        labels = f"{self.primary_label or '-'} / {self.secondary_label or '-'}"
        return f"<BlockDiff {labels}: {self.status.name}>"

    @staticmethod
    def from_pair(alignment: Alignment, pair: AlignedPair) -> BlockDiff:
        """
        Compute the instruction diff of an aligned pair. The rows of a paired block
        follow the edit script of its tokens, a gap lists every instruction of the
        present side.

        :param alignment: the alignment the pair belongs to
        :param pair: the pair
        :return: the block diff
        """

        primary, secondary = alignment.primary, alignment.secondary
        primary_texts = _texts(primary, pair.primary)
        secondary_texts = _texts(secondary, pair.secondary)

        if pair.status == BlockStatus.deleted:
            rows = [DiffRow(EditOp.delete, text, "") for text in primary_texts]
        elif pair.status == BlockStatus.inserted:
            rows = [DiffRow(EditOp.insert, "", text) for text in secondary_texts]
        else:
            rows = []
            script = edit_script(primary[pair.primary].tokens, secondary[pair.secondary].tokens)
            for op, i, j in script:
                rows.append(
                    DiffRow(
                        op,
                        "" if i is None else primary_texts[i],
                        "" if j is None else secondary_texts[j],
                    )
                )

        return BlockDiff(
            pair,
            "" if pair.primary is None else primary.side_table.labels[pair.primary],
            "" if pair.secondary is None else secondary.side_table.labels[pair.secondary],
            rows,
        )

    @property
    def status(self) -> BlockStatus:
        return self.pair.status

    @property
    def header(self) -> DiffRow:
        """Header row of the block"""
        return DiffRow(None, self.primary_label, self.secondary_label)

    @property
    def nb_changes(self) -> int:
        """Number of rows that are not kept unchanged"""
        return sum(1 for row in self.rows if row.kind != EditOp.keep)


class FunctionDiff:
    """
    Result of the comparison of two functions.

    :param primary_name: name of the primary function
    :param secondary_name: name of the secondary function
    :param alignment: the block alignment, None if the comparison failed
    :param warnings: messages about the precision of the result
    :param error: message of the internal error that aborted the comparison
    """

    def __init__(
        self,
        primary_name: str,
        secondary_name: str,
        alignment: Alignment | None = None,
        warnings: list[str] | None = None,
        error: str | None = None,
    ):
        self.primary_name = primary_name
        self.secondary_name = secondary_name
        self.alignment = alignment
        self.warnings = list(warnings or [])
        self.error = error
        #: Instruction diff of every aligned pair, in alignment order
        self.blocks: list[BlockDiff] = (
            [BlockDiff.from_pair(alignment, pair) for pair in alignment] if alignment else []
        )

    def __repr__(self) -> str:
        return f"<FunctionDiff {self.primary_name} / {self.secondary_name}: {self.status.name}>"

    @property
    def status(self) -> FunctionStatus:
        if self.error is not None or self.alignment is None:
            return FunctionStatus.error
        if self.alignment.is_identical:
            return FunctionStatus.identical
        return FunctionStatus.changed

    @property
    def degraded(self) -> bool:
        """Whether the blocks have been matched by name only"""
        return self.alignment is not None and self.alignment.degraded

    @property
    def has_diff(self) -> bool:
        return self.status != FunctionStatus.identical

    def count(self, status: BlockStatus) -> int:
        """Number of blocks with the given status"""
        return sum(1 for b in self.blocks if b.status == status)

    def group(self, status: BlockStatus) -> list[BlockDiff]:
        """Blocks with the given status, in alignment order"""
        return [b for b in self.blocks if b.status == status]

    def rows(self) -> list[DiffRow]:
        """
        Flat side by side rows of the function: the header row of every block
        followed by its instruction rows.
        """

        rows = []
        for block in self.blocks:
            rows.append(block.header)
            rows.extend(block.rows)
        return rows

    def to_dict(self) -> dict[str, Any]:
        """Serializable representation of the function diff"""

        return {
            "primary": self.primary_name,
            "secondary": self.secondary_name,
            "status": self.status.name,
            "degraded": self.degraded,
            "cost": None if self.alignment is None else self.alignment.cost,
            "warnings": self.warnings,
            "error": self.error,
            "blocks": [
                {
                    "primary": b.primary_label or None,
                    "secondary": b.secondary_label or None,
                    "status": b.status.name,
                    "similarity": b.pair.similarity,
                    "rows": [[row.kind.name, row.primary, row.secondary] for row in b.rows],
                }
                for b in self.blocks
            ],
        }


class ProgramDiff:
    """
    Results of the comparison of two programs: the diff of every compared function
    pair, in name order, and the functions only present on one side.

    :param primary_name: name of the primary program
    :param secondary_name: name of the secondary program
    :param functions: diff of the compared function pairs
    :param added: functions only present in the secondary program
    :param removed: functions only present in the primary program
    """

    def __init__(
        self,
        primary_name: str,
        secondary_name: str,
        functions: list[FunctionDiff],
        added: list[str] | None = None,
        removed: list[str] | None = None,
    ):
        self.primary_name = primary_name
        self.secondary_name = secondary_name
        self.functions = functions
        self.added = sorted(added or [])
        self.removed = sorted(removed or [])

    def __iter__(self) -> Iterator[FunctionDiff]:
        return iter(self.functions)

    def __len__(self) -> int:
        return len(self.functions)

    def __repr__(self) -> str:
        return (
            f"<ProgramDiff {self.primary_name} / {self.secondary_name}: "
            f"{len(self.functions)} functions, +{len(self.added)} -{len(self.removed)}>"
        )

    @property
    def has_diff(self) -> bool:
        """Whether any difference has been found"""
        return bool(self.added or self.removed) or any(f.has_diff for f in self.functions)

    @property
    def errors(self) -> list[FunctionDiff]:
        """Function pairs whose comparison failed"""
        return [f for f in self.functions if f.status == FunctionStatus.error]

    def rows(self) -> dict[tuple[str, str], list[DiffRow]]:
        """Side by side rows of every compared pair keyed by the pair of names"""
        return {(f.primary_name, f.secondary_name): f.rows() for f in self.functions}

    def to_dict(self) -> dict[str, Any]:
        """Serializable representation of the whole diff"""

        return {
            "primary": self.primary_name,
            "secondary": self.secondary_name,
            "has_diff": self.has_diff,
            "added": self.added,
            "removed": self.removed,
            "functions": [f.to_dict() for f in self.functions],
        }

    def to_csv(self, path: Path | str) -> None:
        """
        Write the diff into a csv file. Each row contains the two function names,
        the two block labels, the block status, the row kind (empty for a block
        header) and the two instruction texts.

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
            write_csv(self, f)


def write_csv(diff: ProgramDiff, stream) -> None:
    """
    Write the rows of a diff in csv format into a text stream

    :param diff: the diff
    :param stream: a text stream opened with ``newline=""``
    """

    writer = csv.writer(stream)
    writer.writerow(
        (
            "primary_function",
            "secondary_function",
            "primary_block",
            "secondary_block",
            "status",
            "kind",
            "primary",
            "secondary",
        )
    )
    for function in diff:
        for block in function.blocks:
            prefix = (
                function.primary_name,
                function.secondary_name,
                block.primary_label,
                block.secondary_label,
                block.status.name,
            )
            writer.writerow(prefix + ("", block.primary_label, block.secondary_label))
            for row in block.rows:
                writer.writerow(prefix + (row.kind.name, row.primary, row.secondary))
