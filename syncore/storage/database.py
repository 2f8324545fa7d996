# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2017-2018 New Vector Ltd
# Copyright 2019 The Matrix.org Foundation C.I.C.
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
import logging
from typing import Any, Dict, Optional, Union

from typing_extensions import Protocol

from syncore.util import json_decoder

logger = logging.getLogger(__name__)


class DatabasePool(Protocol):
    """The two queries the stores run.

    Connections, transactions and the schema belong to whoever embeds us; they
    hand in an object with these methods.
    """

    async def simple_insert(
        self, table: str, values: Dict[str, Any], desc: str = "simple_insert"
    ) -> None:
        """Insert one row, given as a map from column name to value."""
        ...

    async def simple_select_one_onecol(
        self,
        table: str,
        keyvalues: Dict[str, Any],
        retcol: str,
        allow_none: bool = False,
        desc: str = "simple_select_one_onecol",
    ) -> Optional[Any]:
        """Fetch column `retcol` of the single row whose columns equal
        `keyvalues`.

        If no row matches, returns None when `allow_none` is set and raises
        StoreError otherwise. `desc` names the query in logs.
        """
        ...


def db_to_json(db_content: Union[memoryview, bytes, bytearray, str]) -> Any:
    """Decode a JSON column, whichever of the buffer types the driver gave us.

    Raises:
        ValueError: if the column does not hold valid JSON.
    """
    if isinstance(db_content, memoryview):
        db_content = db_content.tobytes()
    if isinstance(db_content, (bytes, bytearray)):
        db_content = db_content.decode("utf8")

    try:
        return json_decoder.decode(db_content)
    except ValueError:
        logger.warning("Could not decode %r as JSON", db_content)
        raise
