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

"""Collection of utilities

Collection of utilities used internally.
"""

from __future__ import annotations
from functools import cache
import logging
import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Callable
    from typing import Any


DEBUG_ENV_VAR = "CFGDIFF_DEBUG"


def is_debug() -> bool:
    """
    Returns True if the current logging level is set to debug or if the
    ``CFGDIFF_DEBUG`` environment variable is set
    """
    return logging.root.level <= logging.DEBUG or bool(os.environ.get(DEBUG_ENV_VAR))


@cache
def log_once(level: int, message: str) -> None:
    """
    Log a message with the corresponding level only once.

    :param level: The severity level of the logging
    :param message: The message to log
    """

    logging.log(level, message)


def ordered_map(func: Callable[[Any], Any], items: Iterable[Any], jobs: int = 1) -> Iterator[Any]:
    """
    Apply ``func`` on every item, possibly with a pool of ``jobs`` threads.
    The results are always yielded in the order of ``items``.

    :param func: function to apply
    :param items: the arguments
    :param jobs: number of worker threads, 1 runs everything in the caller thread
    :returns: an iterator over the results
    """

    if jobs <= 1:
        yield from map(func, items)
        return

    from concurrent.futures import ThreadPoolExecutor

    with ThreadPoolExecutor(max_workers=jobs) as executor:
        yield from executor.map(func, items)
