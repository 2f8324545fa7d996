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

# The server object builds the notifier, the filter handler and what they
# depend on, once each.

import functools
from typing import Any, Callable, Optional, Set, TypeVar, cast

from syncore.api.filtering import Filtering
from syncore.config.homeserver import SyncCoreConfig
from syncore.notifier import Notifier
from syncore.storage.database import DatabasePool
from syncore.storage.filtering import FilteringStore
from syncore.types import ISyncCoreReactor
from syncore.util import Clock

T = TypeVar("T", bound=Callable[..., Any])

_NOT_BUILT = object()


def cache_in_self(builder: T) -> T:
    """Make a `get_<name>` method build its result once and keep it as
    `self._<name>`.

    A getter which ends up needing its own result raises ValueError rather
    than recursing forever.
    """
    prefix = "get_"
    if not builder.__name__.startswith(prefix):
        raise Exception(
            "@cache_in_self can only wrap methods named get_<something>, not %s"
            % (builder.__name__,)
        )

    attr_name = "_" + builder.__name__[len(prefix) :]
    in_progress: Set[int] = set()

    @functools.wraps(builder)
    def _get(self):
        cached = getattr(self, attr_name, _NOT_BUILT)
        if cached is not _NOT_BUILT:
            return cached

        if id(self) in in_progress:
            raise ValueError("Cyclic dependency while building %s" % (attr_name,))

        in_progress.add(id(self))
        try:
            built = builder(self)
        finally:
            in_progress.discard(id(self))

        setattr(self, attr_name, built)
        return built

    return cast(T, _get)


class SyncCoreServer:
    """Owns the components of the sync core and wires them together.

    Each component has a `get_<name>` method wrapped in `@cache_in_self`, so
    there is one of each per server.

    Attributes:
        config: The full config for the server.
    """

    def __init__(
        self,
        config: SyncCoreConfig,
        database: DatabasePool,
        reactor: Optional[ISyncCoreReactor] = None,
    ):
        """
        Args:
            config: The full config for the server.
            database: Where filters are stored.
            reactor: The reactor to run on. Defaults to the global reactor.
        """
        if not reactor:
            from twisted.internet import reactor as _reactor

            reactor = cast(ISyncCoreReactor, _reactor)

        self._reactor = reactor
        self.config = config
        self._database = database

    def get_reactor(self) -> ISyncCoreReactor:
        """
        Fetch the Twisted reactor in use by this server.
        """
        return self._reactor

    @cache_in_self
    def get_clock(self) -> Clock:
        return Clock(self._reactor)

    @cache_in_self
    def get_notifier(self) -> Notifier:
        return Notifier(self)

    @cache_in_self
    def get_filtering_store(self) -> FilteringStore:
        return FilteringStore(self._database)

    @cache_in_self
    def get_filtering(self) -> Filtering:
        return Filtering(self)
