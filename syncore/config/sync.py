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

from typing import Any

from syncore.api.filtering import DEFAULT_LIMIT, MAX_LIMIT
from syncore.types import JsonDict

from ._base import Config, ConfigError


class SyncConfig(Config):
    section = "sync"

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        sync_config = config.get("sync") or {}
        if not isinstance(sync_config, dict):
            raise ConfigError("Must be a dictionary", ("sync",))

        self.max_filter_limit = self._read_limit(
            sync_config, "max_filter_limit", MAX_LIMIT
        )
        self.default_filter_limit = self._read_limit(
            sync_config, "default_filter_limit", DEFAULT_LIMIT
        )
        if self.default_filter_limit > self.max_filter_limit:
            raise ConfigError(
                "Must not be greater than max_filter_limit",
                ("sync", "default_filter_limit"),
            )

        # How long a user's event stream is kept after it was last used.
        expiry = sync_config.get("unused_stream_expiry", "10m")
        try:
            self.unused_stream_expiry_ms = self.parse_duration(expiry)
        except (TypeError, ValueError, IndexError) as e:
            raise ConfigError(
                "Invalid duration %r" % (expiry,), ("sync", "unused_stream_expiry")
            ) from e
        if self.unused_stream_expiry_ms <= 0:
            raise ConfigError(
                "Must be a positive duration", ("sync", "unused_stream_expiry")
            )

    @staticmethod
    def _read_limit(sync_config: JsonDict, key: str, default: int) -> int:
        limit = sync_config.get(key, default)
        if not isinstance(limit, int) or isinstance(limit, bool) or limit < 1:
            raise ConfigError("Must be a positive integer", ("sync", key))
        return limit
