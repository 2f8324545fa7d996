# Copyright 2019-2021 The Matrix.org Foundation C.I.C.
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

"""Helpers shared by the unit tests."""
import sys
import warnings
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from syncore.api.errors import StoreError

TV = TypeVar("TV")


def get_awaitable_result(awaitable: Awaitable[TV]) -> TV:
    """Return the result of an awaitable which must already be complete."""
    it = awaitable.__await__()
    try:
        next(it)
    except StopIteration as e:
        return e.value
    raise AssertionError("%r has not completed" % (awaitable,))


def setup_awaitable_errors() -> Callable[[], None]:
    """Turn "coroutine was never awaited" warnings into test failures.

    Returns a cleanup function which puts things back and raises the last
    exception python could not raise while the test ran, if any.
    """
    warnings.simplefilter("error", RuntimeWarning)

    unraisable: List[BaseException] = []
    previous_hook = sys.unraisablehook

    def record(exc: Any) -> None:
        unraisable.append(exc.exc_value)

    def cleanup() -> None:
        sys.unraisablehook = previous_hook
        if unraisable:
            raise unraisable.pop()

    sys.unraisablehook = record
    return cleanup


class MemoryDatabasePool:
    """A `DatabasePool` which keeps its tables in lists of row dicts."""

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}

    async def simple_insert(
        self,
        table: str,
        values: Dict[str, Any],
        desc: str = "simple_insert",
    ) -> None:
        self.tables.setdefault(table, []).append(dict(values))

    async def simple_select_one_onecol(
        self,
        table: str,
        keyvalues: Dict[str, Any],
        retcol: str,
        allow_none: bool = False,
        desc: str = "simple_select_one_onecol",
    ) -> Optional[Any]:
        rows = [
            row
            for row in self.tables.get(table, [])
            if all(row.get(k) == v for k, v in keyvalues.items())
        ]
        if len(rows) > 1:
            raise StoreError(500, "More than one row matched (%s)" % (table,))
        if not rows:
            if allow_none:
                return None
            raise StoreError(404, "No row found (%s)" % (table,))
        return rows[0][retcol]
