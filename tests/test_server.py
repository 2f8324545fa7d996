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
from syncore.server import cache_in_self

from tests import unittest


class CacheInSelfTestCase(unittest.TestCase):
    def test_caches_result(self) -> None:
        calls = []

        class Thing:
            @cache_in_self
            def get_widget(self) -> object:
                calls.append(1)
                return object()

        thing = Thing()

        self.assertIs(thing.get_widget(), thing.get_widget())
        self.assertEqual(len(calls), 1)
        self.assertIs(thing._widget, thing.get_widget())  # type: ignore[attr-defined]

    def test_requires_get_prefix(self) -> None:
        with self.assertRaises(Exception):

            @cache_in_self
            def widget(self: object) -> object:
                return object()

    def test_detects_cycles(self) -> None:
        class Thing:
            @cache_in_self
            def get_chicken(self) -> object:
                return self.get_egg()

            @cache_in_self
            def get_egg(self) -> object:
                return self.get_chicken()

        with self.assertRaises(ValueError):
            Thing().get_chicken()


class SyncCoreServerTestCase(unittest.ServerTestCase):
    def test_components_are_shared(self) -> None:
        self.assertIs(self.server.get_reactor(), self.reactor)
        self.assertIs(self.server.get_notifier(), self.server.get_notifier())
        self.assertIs(
            self.server.get_filtering().store, self.server.get_filtering_store()
        )

    def test_clock_follows_reactor(self) -> None:
        clock = self.server.get_clock()

        self.reactor.advance(12.5)

        self.assertEqual(clock.time_msec(), 12500)
