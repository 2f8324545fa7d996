# Copyright 2018-2021 The Matrix.org Foundation C.I.C.
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
from typing import Any, Dict, Optional, Tuple, cast

from twisted.internet.testing import MemoryReactorClock

from syncore.config.homeserver import SyncCoreConfig
from syncore.server import SyncCoreServer
from syncore.storage.database import DatabasePool
from syncore.types import ISyncCoreReactor
from syncore.util import Clock

from tests.test_utils import MemoryDatabasePool


def get_clock() -> Tuple[MemoryReactorClock, Clock]:
    clock = MemoryReactorClock()
    server_clock = Clock(clock)
    return clock, server_clock


def default_config() -> Dict[str, Any]:
    """Create a reasonable test config."""
    return {
        "sync": {
            "default_filter_limit": 10,
            "max_filter_limit": 50,
            "unused_stream_expiry": "10m",
        },
    }


def setup_test_server(
    reactor: MemoryReactorClock,
    config: Optional[Dict[str, Any]] = None,
    database: Optional[DatabasePool] = None,
) -> SyncCoreServer:
    """Build a server running on the given fake reactor, backed by an
    in-memory database unless one is given."""
    if config is None:
        config = default_config()

    server_config = SyncCoreConfig()
    server_config.parse_config_dict(config, "", "")

    if database is None:
        database = MemoryDatabasePool()

    return SyncCoreServer(
        server_config, database, reactor=cast(ISyncCoreReactor, reactor)
    )
