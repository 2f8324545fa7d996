# Copyright 2014-2016 OpenMarket Ltd
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
from typing import List, Optional
from unittest.mock import patch

from twisted.internet import defer
from twisted.internet.testing import MemoryReactorClock

from syncore.api.errors import NotFoundError
from syncore.notifier import UpdateNotifier
from syncore.server import SyncCoreServer
from syncore.types import RoomStreamToken, StreamKeyType, StreamToken
from syncore.util import Clock

from tests import unittest


class UpdateNotifierTestCase(unittest.TestCase):
    def test_notify_wakes_waiters(self) -> None:
        notifier = UpdateNotifier()
        token = StreamToken.START.copy_and_advance(StreamKeyType.TYPING, 1)

        d1 = notifier.wait_for_next_event()
        d2 = notifier.wait_for_next_event()
        self.assertEqual(notifier.count_listeners(), 2)
        self.assertNoResult(d1)

        notifier.notify(token)

        self.assertEqual(self.successResultOf(d1), token)
        self.assertEqual(self.successResultOf(d2), token)
        self.assertEqual(notifier.count_listeners(), 0)

    def test_rearms_after_notify(self) -> None:
        notifier = UpdateNotifier()
        first = StreamToken.START.copy_and_advance(StreamKeyType.TYPING, 1)
        second = first.copy_and_advance(StreamKeyType.TYPING, 2)

        notifier.notify(first)

        d = notifier.wait_for_next_event()
        self.assertNoResult(d)

        notifier.notify(second)
        self.assertEqual(self.successResultOf(d), second)

    def test_waiting_from_a_callback_waits_for_next_notify(self) -> None:
        notifier = UpdateNotifier()
        token = StreamToken.START.copy_and_advance(StreamKeyType.TYPING, 1)
        rewaits: List["defer.Deferred[StreamToken]"] = []

        def rewait(result: StreamToken) -> StreamToken:
            rewaits.append(notifier.wait_for_next_event())
            return result

        notifier.wait_for_next_event().addCallback(rewait)
        notifier.notify(token)

        self.assertEqual(len(rewaits), 1)
        self.assertNoResult(rewaits[0])
        self.assertEqual(notifier.count_listeners(), 1)

    def test_cancelled_waiters_stop_listening(self) -> None:
        notifier = UpdateNotifier()

        d = notifier.wait_for_next_event()
        self.assertEqual(notifier.count_listeners(), 1)

        d.cancel()

        self.failureResultOf(d, defer.CancelledError)
        self.assertEqual(notifier.count_listeners(), 0)


class NotifierTestCase(unittest.ServerTestCase):
    def prepare(
        self, reactor: MemoryReactorClock, clock: Clock, server: SyncCoreServer
    ) -> None:
        self.notifier = server.get_notifier()

    def test_wakes_users_in_room(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", ["!room:test"])
        listener = stream.new_listener(StreamToken.START)
        self.assertNoResult(listener.deferred)

        self.notifier.on_new_event(StreamKeyType.ROOM, 5, rooms=["!room:test"])

        token = self.successResultOf(listener.deferred)
        self.assertEqual(token.room_key, RoomStreamToken(None, 5))
        self.assertEqual(stream.current_token, token)
        self.assertEqual(self.notifier.get_current_token().room_stream_id, 5)

    def test_wakes_named_users(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", [])
        listener = stream.new_listener(StreamToken.START)

        self.notifier.on_new_event(StreamKeyType.TYPING, 2, users=["@alice:test"])

        self.assertEqual(self.successResultOf(listener.deferred).typing_key, 2)

    def test_does_not_wake_other_users(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", ["!room:test"])
        listener = stream.new_listener(StreamToken.START)

        self.notifier.on_new_event(
            StreamKeyType.ROOM, 5, users=["@bob:test"], rooms=["!other:test"]
        )

        self.assertNoResult(listener.deferred)
        self.assertEqual(stream.current_token, StreamToken.START)
        # The notifier itself still saw the event.
        self.assertEqual(self.notifier.get_current_token().room_stream_id, 5)

    def test_each_user_is_woken_once(self) -> None:
        stream = self.notifier.register_user_stream(
            "@alice:test", ["!room1:test", "!room2:test"]
        )

        with patch.object(stream, "notify", wraps=stream.notify) as notify:
            self.notifier.on_new_event(
                StreamKeyType.ROOM,
                5,
                users=["@alice:test"],
                rooms=["!room1:test", "!room2:test"],
            )

        notify.assert_called_once_with(StreamKeyType.ROOM, 5, 0)

    def test_failing_user_stream_does_not_stop_others(self) -> None:
        broken = self.notifier.register_user_stream("@alice:test", ["!room:test"])
        stream = self.notifier.register_user_stream("@bob:test", ["!room:test"])
        listener = stream.new_listener(StreamToken.START)

        with patch.object(broken, "notify", side_effect=Exception("boom")):
            with self.assertLogs("syncore.notifier", level="ERROR"):
                self.notifier.on_new_event(StreamKeyType.ROOM, 5, rooms=["!room:test"])

        self.assertEqual(self.successResultOf(listener.deferred).room_stream_id, 5)

    def test_register_existing_user_adds_rooms(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", ["!room1:test"])

        again = self.notifier.register_user_stream("@alice:test", ["!room2:test"])

        self.assertIs(again, stream)
        self.assertEqual(stream.rooms, {"!room1:test", "!room2:test"})
        self.assertIn(stream, self.notifier.room_to_user_streams["!room2:test"])

    def test_get_user_stream(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", [])

        self.assertIs(self.notifier.get_user_stream("@alice:test"), stream)

        with self.assertRaises(NotFoundError):
            self.notifier.get_user_stream("@bob:test")

    def test_delete_user_stream(self) -> None:
        self.notifier.register_user_stream(
            "@alice:test", ["!room1:test", "!room2:test"]
        )
        bob = self.notifier.register_user_stream("@bob:test", ["!room1:test"])

        self.notifier.delete_user_stream("@alice:test")

        with self.assertRaises(NotFoundError):
            self.notifier.get_user_stream("@alice:test")
        self.assertEqual(self.notifier.room_to_user_streams, {"!room1:test": {bob}})

        # Deleting an unknown user is a no-op.
        self.notifier.delete_user_stream("@alice:test")

    def test_joining_and_leaving_rooms(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", [])
        self.notifier.user_joined_room("@alice:test", "!room:test")

        listener = stream.new_listener(StreamToken.START)
        self.notifier.on_new_event(StreamKeyType.ROOM, 1, rooms=["!room:test"])
        self.successResultOf(listener.deferred)

        self.notifier.user_left_room("@alice:test", "!room:test")
        self.assertEqual(stream.rooms, set())
        self.assertNotIn("!room:test", self.notifier.room_to_user_streams)

        listener = stream.new_listener(stream.current_token)
        self.notifier.on_new_event(StreamKeyType.ROOM, 2, rooms=["!room:test"])
        self.assertNoResult(listener.deferred)

        # Users without a stream are ignored.
        self.notifier.user_joined_room("@bob:test", "!room:test")
        self.notifier.user_left_room("@bob:test", "!room:test")
        self.assertNotIn("!room:test", self.notifier.room_to_user_streams)

    def test_stale_token_wakes_immediately(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", ["!room:test"])
        self.notifier.on_new_event(StreamKeyType.ROOM, 3, rooms=["!room:test"])

        listener = stream.new_listener(StreamToken.START)

        self.assertEqual(self.successResultOf(listener.deferred), stream.current_token)

    def test_unused_streams_expire(self) -> None:
        self.notifier.register_user_stream("@alice:test", ["!room:test"])

        # The expiry check runs every ten minutes, and only removes streams
        # which have been idle for longer than that.
        self.reactor.advance(600)
        self.notifier.get_user_stream("@alice:test")

        self.reactor.advance(600)
        with self.assertRaises(NotFoundError):
            self.notifier.get_user_stream("@alice:test")
        self.assertEqual(self.notifier.room_to_user_streams, {})

    def test_streams_with_listeners_do_not_expire(self) -> None:
        stream = self.notifier.register_user_stream("@alice:test", ["!room:test"])
        listener = stream.new_listener(StreamToken.START)

        self.reactor.advance(1200)

        self.assertIs(self.notifier.get_user_stream("@alice:test"), stream)
        self.assertNoResult(listener.deferred)


class WaitForEventsTestCase(unittest.ServerTestCase):
    def prepare(
        self, reactor: MemoryReactorClock, clock: Clock, server: SyncCoreServer
    ) -> None:
        self.notifier = server.get_notifier()
        self.calls: List[StreamToken] = []

    async def _room_events(
        self, prev_token: StreamToken, current_token: StreamToken
    ) -> Optional[List[int]]:
        self.calls.append(current_token)
        if current_token.room_stream_id > prev_token.room_stream_id:
            return list(
                range(prev_token.room_stream_id + 1, current_token.room_stream_id + 1)
            )
        return []

    def _wait_for_events(
        self, timeout: int
    ) -> "defer.Deferred[Optional[List[int]]]":
        return defer.ensureDeferred(
            self.notifier.wait_for_events(
                "@alice:test",
                timeout,
                self._room_events,
                room_ids=["!room:test"],
                from_token=self.notifier.get_current_token(),
            )
        )

    def test_returns_when_events_arrive(self) -> None:
        d = self._wait_for_events(10000)
        self.assertNoResult(d)

        self.notifier.on_new_event(StreamKeyType.ROOM, 2, rooms=["!room:test"])

        self.assertEqual(self.successResultOf(d), [1, 2])

    def test_keeps_waiting_while_callback_returns_nothing(self) -> None:
        d = self._wait_for_events(10000)

        self.notifier.on_new_event(StreamKeyType.TYPING, 1, users=["@alice:test"])
        self.assertNoResult(d)
        self.assertEqual(len(self.calls), 1)

        self.notifier.on_new_event(StreamKeyType.ROOM, 1, rooms=["!room:test"])
        self.assertEqual(self.successResultOf(d), [1])

    def test_times_out(self) -> None:
        d = self._wait_for_events(10000)

        self.reactor.advance(9)
        self.assertNoResult(d)

        self.reactor.advance(1)
        self.assertEqual(self.successResultOf(d), [])
        stream = self.notifier.get_user_stream("@alice:test")
        self.assertEqual(stream.count_listeners(), 0)

    def test_zero_timeout_returns_immediately(self) -> None:
        d = self._wait_for_events(0)

        self.assertEqual(self.successResultOf(d), [])
        self.assertEqual(len(self.calls), 1)

    def test_registers_user_stream(self) -> None:
        d = self._wait_for_events(10000)

        stream = self.notifier.get_user_stream("@alice:test")
        self.assertEqual(stream.rooms, {"!room:test"})
        self.assertEqual(stream.count_listeners(), 1)

        self.reactor.advance(10)
        self.successResultOf(d)
