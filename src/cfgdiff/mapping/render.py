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

"""Rendering of the diff results

The text rendering is a side by side table per function, grouped by block
status. The ``json`` and ``csv`` renderings carry the same rows.
"""

from __future__ import annotations
import json
from typing import TextIO, TYPE_CHECKING

from rich.console import Console
from rich.table import Table
from rich.text import Text

from cfgdiff.mapping.diff import write_csv
from cfgdiff.types import BlockStatus, EditOp, FunctionStatus

if TYPE_CHECKING:
    from cfgdiff.mapping.diff import FunctionDiff, ProgramDiff

OUTPUT_FORMATS = ("text", "json", "csv")

# Order of the block groups in the text output
STATUS_ORDER = (
    BlockStatus.modified,
    BlockStatus.inserted,
    BlockStatus.deleted,
    BlockStatus.matched,
)

STATUS_STYLES = {
    BlockStatus.matched: "dim",
    BlockStatus.modified: "yellow",
    BlockStatus.inserted: "green",
    BlockStatus.deleted: "red",
}

ROW_MARKS = {
    EditOp.keep: (" ", ""),
    EditOp.substitute: ("~", "yellow"),
    EditOp.insert: ("+", "green"),
    EditOp.delete: ("-", "red"),
}


def _function_table(function: FunctionDiff, status: BlockStatus) -> Table:
    table = Table(
        title=f"{status.name} blocks",
        title_style=STATUS_STYLES[status],
        title_justify="left",
        expand=True,
    )
    table.add_column("", width=1, no_wrap=True)
    table.add_column(function.primary_name, ratio=1)
    table.add_column(function.secondary_name, ratio=1)

    for block in function.group(status):
        table.add_row(
            "",
            Text(block.primary_label, style="bold"),
            Text(block.secondary_label, style="bold"),
        )
        for row in block.rows:
            mark, style = ROW_MARKS[row.kind]
            table.add_row(mark, Text(row.primary), Text(row.secondary), style=style)
        table.add_section()
    return table


def render_function(function: FunctionDiff, console: Console) -> None:
    """
    Print the side by side diff of one function

    :param function: the function diff
    :param console: the rich console to print to
    """

    console.rule(Text(f"{function.primary_name} / {function.secondary_name}", style="bold"))
    for warning in function.warnings:
        console.print(Text(f"warning: {warning}", style="yellow"))
    if function.status == FunctionStatus.error:
        console.print(Text(f"internal error: {function.error}", style="bold red"))
        return

    counts = ", ".join(f"{function.count(s)} {s.name}" for s in BlockStatus)
    console.print(Text(f"{function.status.name}: {counts}"))

    for status in STATUS_ORDER:
        blocks = function.group(status)
        if not blocks:
            continue
        if status == BlockStatus.matched:
            # Identical blocks are only listed
            labels = ", ".join(f"{b.primary_label}={b.secondary_label}" for b in blocks)
            console.print(Text(f"matched blocks: {labels}", style=STATUS_STYLES[status]))
        else:
            console.print(_function_table(function, status))


def render_text(diff: ProgramDiff, console: Console) -> None:
    """
    Print the whole diff: every compared function then the functions only present
    on one side.

    :param diff: the diff
    :param console: the rich console to print to
    """

    for function in diff:
        render_function(function, console)

    if diff.removed:
        console.rule(Text("functions only in the primary file", style="red"))
        for name in diff.removed:
            console.print(Text(f"- {name}", style="red"))
    if diff.added:
        console.rule(Text("functions only in the secondary file", style="green"))
        for name in diff.added:
            console.print(Text(f"+ {name}", style="green"))
    if not diff.has_diff:
        console.print(Text("No difference found", style="bold green"))


def render(diff: ProgramDiff, output_format: str, stream: TextIO) -> None:
    """
    Write the diff into a text stream

    :param diff: the diff
    :param output_format: one of ``text``, ``json`` or ``csv``
    :param stream: the output stream
    """

    match output_format:
        case "text":
            render_text(diff, Console(file=stream, highlight=False))
        case "json":
            json.dump(diff.to_dict(), stream, indent=2)
            stream.write("\n")
        case "csv":
            write_csv(diff, stream)
        case _:
            raise ValueError(f"Unknown output format {output_format}")
