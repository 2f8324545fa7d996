# Copyright 2015, 2016 OpenMarket Ltd
# Copyright 2021 The Matrix.org Foundation C.I.C.
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

from canonicaljson import encode_canonical_json

from syncore.api.errors import NotFoundError, StoreError
from syncore.storage.database import DatabasePool, db_to_json
from syncore.types import JsonDict, JsonMapping
from syncore.util.stringutils import random_string

logger = logging.getLogger(__name__)

FILTER_ID_LENGTH = 16


class FilteringStore:
    """Persists users' filters in the `user_filters` table:

        user_filters(user_id TEXT, filter_id TEXT, filter_json BYTEA)

    Filters are stored as canonical JSON, so two uploads of the same filter
    are byte-for-byte identical and can share an ID.
    """

    def __init__(self, database: DatabasePool):
        self.db_pool = database

    async def get_user_filter(self, user_id: str, filter_id: str) -> JsonMapping:
        def_json = await self.db_pool.simple_select_one_onecol(
            table="user_filters",
            keyvalues={"user_id": user_id, "filter_id": filter_id},
            retcol="filter_json",
            allow_none=True,
            desc="get_user_filter",
        )
        if def_json is None:
            raise NotFoundError("No such filter %s" % (filter_id,))

        try:
            return db_to_json(def_json)
        except ValueError:
            raise StoreError(500, "Stored filter %s is corrupt" % (filter_id,))

    async def add_user_filter(self, user_id: str, user_filter: JsonDict) -> str:
        def_json = bytearray(encode_canonical_json(user_filter))

        filter_id = await self.db_pool.simple_select_one_onecol(
            table="user_filters",
            keyvalues={"user_id": user_id, "filter_json": def_json},
            retcol="filter_id",
            allow_none=True,
            desc="find_user_filter",
        )
        if filter_id is not None:
            return filter_id

        filter_id = random_string(FILTER_ID_LENGTH)
        await self.db_pool.simple_insert(
            table="user_filters",
            values={
                "user_id": user_id,
                "filter_id": filter_id,
                "filter_json": def_json,
            },
            desc="add_user_filter",
        )
        logger.debug("Stored filter %s for %s", filter_id, user_id)
        return filter_id
