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

# builtin-imports
from __future__ import annotations
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

# Third-party imports
import rich_click as click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress
from rich.table import Table

# Local imports
from cfgdiff import __version__ as cfgdiff_version
from cfgdiff import Differ, Program
from cfgdiff.errors import InputError, NoFunctionsError
from cfgdiff.loader.types import FORMAT_SYNONYMS, InputFormat
from cfgdiff.mapping import OUTPUT_FORMATS, render
from cfgdiff.matcher import (
    DEFAULT_MATCH_THRESHOLD,
    DEFAULT_MODIFY_THRESHOLD,
    DEFAULT_GAP_COST,
    DEFAULT_TOPOLOGY_WEIGHT,
    DEFAULT_EDGE_PENALTY,
    DEFAULT_MAXITER,
    DEFAULT_MAX_BLOCKS,
)

if TYPE_CHECKING:
    from typing import Any

# Exit codes
EXIT_INPUT_ERROR = 3
EXIT_RIGHT_NAME_WITHOUT_NAME = 4
EXIT_INTERNAL_ERROR = 5

DEFAULT_JOBS = 1
DEFAULT_OUTPUT_FORMAT = "text"


def configure_logging(verbose: int, quiet: bool = False):
    logging.basicConfig(
        format="%(message)s",
        level=logging.INFO,
        handlers=[
            RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_time=False)
        ],
    )

    logger = logging.getLogger()
    if quiet:
        logger.setLevel(logging.ERROR)
    elif verbose >= 2:
        logger.setLevel(logging.DEBUG)
    elif verbose == 1:
        logger.setLevel(logging.INFO)
    else:
        logger.setLevel(logging.WARNING)


CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])


click.rich_click.SHOW_METAVARS_COLUMN = False
click.rich_click.APPEND_METAVARS_HELP = True
click.rich_click.STYLE_METAVAR_APPEND = "yellow"
click.rich_click.OPTION_GROUPS = {
    "cfgdiff": [
        {"name": "Input options", "options": ["--format", "--list-formats"]},
        {"name": "Function selection", "options": ["--name", "--right-name"]},
        {"name": "Output parameters", "options": ["--output", "--output-format"]},
        {
            "name": "Diffing parameters",
            "options": [
                "--match-threshold",
                "--modify-threshold",
                "--gap-cost",
                "--topology-weight",
                "--edge-penalty",
                "--maxiter",
                "--max-blocks",
                "--jobs",
            ],
        },
        {"name": "Global options", "options": ["--verbose", "--quiet", "--help", "--version"]},
    ]
}


def list_formats(ctx: click.Context, param: click.Parameter, value: Any) -> None:
    if not value or ctx.resilient_parsing:
        return

    table = Table(title="Supported formats")
    table.add_column("Format")
    table.add_column("Synonyms")
    table.add_column("Description", style="dim")
    for fmt in InputFormat:
        synonyms = ", ".join(s for s in FORMAT_SYNONYMS[fmt] if s != fmt.tag)
        table.add_row(fmt.tag, synonyms, fmt.__doc__ or "")
    Console().print(table)
    ctx.exit()


def parse_format(ctx: click.Context, param: click.Parameter, value: str | None) -> InputFormat:
    if value is None:
        raise click.BadParameter("a format is required, see --list-formats")
    try:
        return InputFormat.from_string(value)
    except ValueError:
        raise click.BadParameter(f"unknown format `{value}`, see --list-formats")


def check_range(
    label: str, value: float, default: float, low: float, high: float | None = None, strict=False
) -> float:
    """
    Check that a parameter is within its range, reset it to its default otherwise
    """

    too_low = value <= low if strict else value < low
    if not too_low and (high is None or value <= high):
        return value

    if high is not None:
        bounds = f"within {low}..{high}"
    elif strict:
        bounds = f"greater than {low}"
    else:
        bounds = f"at least {low}"
    logging.warning(f"[-] {label} should be {bounds} (set it to {default})")
    return default


@click.command(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-f",
    "--format",
    "fmt",
    callback=parse_format,
    metavar="<format>",
    help="Format of both input files (llvm-bitcode, arm64, arm32, avr, x86, x86-64). "
    "Case insensitive, see --list-formats for the synonyms.",
)
@click.option(
    "--list-formats",
    is_flag=True,
    callback=list_formats,
    expose_value=False,
    is_eager=True,
    help="List the supported formats and their synonyms.",
)
@click.option(
    "-n",
    "--name",
    type=str,
    help="Only compare the function with this name.",
)
@click.option(
    "--right-name",
    type=str,
    help="Name of the function of the secondary file to compare with --name.",
)
@click.option(
    "--match-threshold",
    type=float,
    show_default=True,
    default=DEFAULT_MATCH_THRESHOLD,
    help="Minimum similarity of two blocks reported as matched.",
)
@click.option(
    "--modify-threshold",
    type=float,
    show_default=True,
    default=DEFAULT_MODIFY_THRESHOLD,
    help="Minimum similarity of two blocks paired as modified.",
)
@click.option(
    "--gap-cost",
    type=float,
    show_default=True,
    default=DEFAULT_GAP_COST,
    help="Cost of a block without counterpart.",
)
@click.option(
    "--topology-weight",
    type=float,
    show_default=True,
    default=DEFAULT_TOPOLOGY_WEIGHT,
    help="Cost reduction of two blocks whose neighbours are paired together.",
)
@click.option(
    "--edge-penalty",
    type=float,
    show_default=True,
    default=DEFAULT_EDGE_PENALTY,
    help="Cost increase of two blocks with different kinds of outgoing edges.",
)
@click.option(
    "-i",
    "--maxiter",
    type=int,
    show_default=True,
    default=DEFAULT_MAXITER,
    help="Maximum number of topology refinement iterations.",
)
@click.option(
    "--max-blocks",
    type=int,
    show_default=True,
    default=DEFAULT_MAX_BLOCKS,
    help="Above this number of blocks, the blocks are matched by name only.",
)
@click.option(
    "-j",
    "--jobs",
    type=int,
    show_default=True,
    default=DEFAULT_JOBS,
    help="Number of worker threads.",
)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=True, dir_okay=False, path_type=Path),
    help="Output file path (standard output by default).",
)
@click.option(
    "--output-format",
    show_default=True,
    default=DEFAULT_OUTPUT_FORMAT,
    type=click.Choice(OUTPUT_FORMATS),
    help="Output format.",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    metavar="-v|-vv",
    help="Activate debugging messages.",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    default=False,
    type=click.BOOL,
    help="Only display errors and no progress bar.",
)
@click.version_option(cfgdiff_version)
@click.argument("primary", type=Path, metavar="<primary file>")
@click.argument("secondary", type=Path, metavar="<secondary file>")
def main(
    fmt,
    name,
    right_name,
    match_threshold,
    modify_threshold,
    gap_cost,
    topology_weight,
    edge_penalty,
    maxiter,
    max_blocks,
    jobs,
    output,
    output_format,
    verbose,
    quiet,
    primary,
    secondary,
):
    """
        cfgdiff compares the control-flow graphs of the functions of two compiled
    files and displays a side by side diff of their blocks.

        Examples:

    - Compare all the functions of two object files:
    cfgdiff -f x86-64 old.o new.o

    - Compare two monomorphizations of a function in LLVM bitcode:
    cfgdiff -f llvm-bitcode -n foo_i32 --right-name foo_i64 lib.bc lib.bc
    """

    configure_logging(verbose, quiet)

    if right_name is not None and name is None:
        logging.error("Right-hand function provided, but left is missing (use --name)")
        sys.exit(EXIT_RIGHT_NAME_WITHOUT_NAME)

    match_threshold = check_range(
        "Match threshold", match_threshold, DEFAULT_MATCH_THRESHOLD, 0.0, 1.0
    )
    modify_threshold = check_range(
        "Modify threshold", modify_threshold, DEFAULT_MODIFY_THRESHOLD, 0.0, 1.0
    )
    gap_cost = check_range("Gap cost", gap_cost, DEFAULT_GAP_COST, 0.0, strict=True)
    topology_weight = check_range(
        "Topology weight", topology_weight, DEFAULT_TOPOLOGY_WEIGHT, 0.0
    )
    edge_penalty = check_range("Edge penalty", edge_penalty, DEFAULT_EDGE_PENALTY, 0.0)
    maxiter = int(check_range("Maxiter", maxiter, DEFAULT_MAXITER, 0))
    max_blocks = int(check_range("Max blocks", max_blocks, DEFAULT_MAX_BLOCKS, 1))
    jobs = int(check_range("Jobs", jobs, DEFAULT_JOBS, 1))

    try:
        logging.info(f"[+] Loading primary: {primary}")
        primary_program = Program(primary, fmt)
        logging.info(f"[+] Loading secondary: {secondary}")
        secondary_program = Program(secondary, fmt)

        differ = Differ(
            primary_program,
            secondary_program,
            name=name,
            right_name=right_name,
            match_threshold=match_threshold,
            modify_threshold=modify_threshold,
            gap_cost=gap_cost,
            topology_weight=topology_weight,
            edge_penalty=edge_penalty,
            maxiter=maxiter,
            max_blocks=max_blocks,
            jobs=jobs,
        )

        with Progress(console=Console(stderr=True), transient=True, disable=quiet) as progress:
            diff_bar = progress.add_task("Diffing", total=len(differ.pairs))
            for _ in differ.diff_iterator():
                progress.update(diff_bar, advance=1)
    except (InputError, NoFunctionsError) as e:
        logging.error(e)
        sys.exit(EXIT_INPUT_ERROR)

    diff = differ.diff
    if output is None:
        render(diff, output_format, sys.stdout)
    else:
        if output.exists():
            logging.info(f"Overwriting file {output}")
        with open(output, "w", newline="") as f:
            render(diff, output_format, f)
        logging.info(f"[+] Diff successfully saved to: {output}")

    if diff.errors:
        logging.error(f"{len(diff.errors)} function pair(s) could not be compared")
        sys.exit(EXIT_INTERNAL_ERROR)


if __name__ == "__main__":
    main()
