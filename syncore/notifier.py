# Copyright 2014 - 2016 OpenMarket Ltd
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
from typing import (
    TYPE_CHECKING,
    Awaitable,
    Callable,
    Collection,
    Dict,
    Iterable,
    Optional,
    Set,
    TypeVar,
    Union,
)

from prometheus_client import Counter

from twisted.internet import defer

from syncore.api.errors import NotFoundError
from syncore.metrics import LaterGauge
from syncore.types import RoomStreamToken, StreamToken
from syncore.util.async_helpers import ObservableDeferred, timeout_deferred

if TYPE_CHECKING:
    from syncore.server import SyncCoreServer

logger = logging.getLogger(__name__)

notified_events_counter = Counter(
    "syncore_notifier_notified_events", "User streams woken by new events"
)

users_woken_by_stream_counter = Counter(
    "syncore_notifier_users_woken_by_stream",
    "User streams woken, by the stream that advanced",
    ["stream"],
)

T = TypeVar("T")


class UpdateNotifier:
    """A signal which any number of waiters can wait on, released all at once
    by `notify`.

    Every call to `notify` wakes the waiters registered since the previous
    call, and only those: a waiter which registers after a `notify` waits for
    the next one.
    """

    __slots__ = ["_deferred", "_observable"]

    def __init__(self) -> None:
        self._rearm()

    def _rearm(self) -> None:
        self._deferred: "defer.Deferred[StreamToken]" = defer.Deferred()
        self._observable = ObservableDeferred(self._deferred)

    def wait_for_next_event(self) -> "defer.Deferred[StreamToken]":
        """Returns a deferred which resolves with the token passed to the next
        call to `notify`.

        Cancelling the returned deferred stops it counting as a listener.
        """
        return self._observable.observe()

    def notify(self, token: StreamToken) -> None:
        releasing = self._deferred

        # Rearm first, so anything which starts waiting from a callback waits
        # for the next notify.
        self._rearm()
        releasing.callback(token)

    def count_listeners(self) -> int:
        return len(self._observable.observers())


class _NotificationListener:
    """One pending long-poll: `deferred` resolves with the user's token once
    there is something newer than what the client has seen.
    """

    __slots__ = ["deferred"]

    def __init__(self, deferred: "defer.Deferred[StreamToken]"):
        self.deferred = deferred


class _NotifierUserStream:
    """The event stream of one user, shared by all of that user's pending
    requests.

    Attributes:
        current_token: the newest position seen on any stream the user is
            woken for.
        last_notified_token: `current_token` as of the last wake-up. A client
            holding any other token has missed something.
        last_notified_ms: when the stream was last woken, or created.
        rooms: the rooms whose events wake this stream.
    """

    def __init__(
        self,
        user_id: str,
        rooms: Collection[str],
        current_token: StreamToken,
        time_now_ms: int,
    ):
        self.user_id = user_id
        self.rooms = set(rooms)
        self.current_token = current_token
        self.last_notified_token = current_token
        self.last_notified_ms = time_now_ms

        self.update_notifier = UpdateNotifier()

    def __repr__(self) -> str:
        return "<UserStream %s at %s>" % (self.user_id, self.current_token)

    def notify(
        self,
        stream_key: str,
        stream_id: Union[int, RoomStreamToken],
        time_now_ms: int,
    ) -> None:
        """Move `stream_key` on to `stream_id` and wake everything waiting on
        this stream.
        """
        self.current_token = self.current_token.copy_and_advance(stream_key, stream_id)
        self.last_notified_token = self.current_token
        self.last_notified_ms = time_now_ms

        logger.debug(
            "Waking %d listeners for %s on %s at %s",
            self.count_listeners(),
            self.user_id,
            stream_key,
            stream_id,
        )
        users_woken_by_stream_counter.labels(stream_key).inc()

        self.update_notifier.notify(self.current_token)

    def remove(self, notifier: "Notifier") -> None:
        """Drop this stream from the user index and every room index of
        `notifier`.
        """
        for room_id in list(self.rooms):
            notifier._unsubscribe(self, room_id)
        notifier.user_to_user_stream.pop(self.user_id, None)

    def count_listeners(self) -> int:
        return self.update_notifier.count_listeners()

    def new_listener(self, token: StreamToken) -> _NotificationListener:
        """Wait for something newer than `token`, the position the client has
        already seen.

        A client whose token is not the last one we woke listeners with has
        missed a wake-up, so its listener is resolved straight away with the
        current token.
        """
        if token != self.last_notified_token:
            return _NotificationListener(defer.succeed(self.current_token))
        return _NotificationListener(self.update_notifier.wait_for_next_event())


UserStream = _NotifierUserStream


class Notifier:
    """Tracks who is waiting for events and wakes them when there are new ones.

    Each connected user has one `UserStream`, indexed by user ID in
    `user_to_user_stream` and by room in `room_to_user_streams`. A stream in
    a room index is always in the user index too, and empty room entries are
    deleted.
    """

    def __init__(self, hs: "SyncCoreServer"):
        self.user_to_user_stream: Dict[str, _NotifierUserStream] = {}
        self.room_to_user_streams: Dict[str, Set[_NotifierUserStream]] = {}

        self.hs = hs
        self.clock = hs.get_clock()
        self._reactor = hs.get_reactor()

        # The newest position seen on each stream.
        self.current_token = StreamToken.START

        self.unused_stream_expiry_ms = hs.config.sync.unused_stream_expiry_ms
        self.clock.looping_call(
            self.remove_expired_streams, self.unused_stream_expiry_ms
        )

        LaterGauge("syncore_notifier_listeners", "", [], self._count_all_listeners)
        LaterGauge(
            "syncore_notifier_rooms", "", [], lambda: len(self.room_to_user_streams)
        )
        LaterGauge(
            "syncore_notifier_users", "", [], lambda: len(self.user_to_user_stream)
        )

    def _count_all_listeners(self) -> int:
        streams = list(self.user_to_user_stream.values())
        return sum(stream.count_listeners() for stream in streams)

    def on_new_event(
        self,
        stream_key: str,
        new_token: Union[int, RoomStreamToken],
        users: Optional[Collection[str]] = None,
        rooms: Optional[Collection[str]] = None,
    ) -> None:
        """Announce that `stream_key` has moved on to `new_token`.

        Wakes the streams of `users` and of everyone in `rooms`. A user found
        both ways is woken once.
        """
        self.current_token = self.current_token.copy_and_advance(stream_key, new_token)

        to_wake = set(self._streams_for(users or (), rooms or ()))
        if not to_wake:
            return

        now = self.clock.time_msec()
        for user_stream in to_wake:
            try:
                user_stream.notify(stream_key, new_token, now)
            except Exception:
                logger.exception("Failed to notify %r", user_stream)
            else:
                notified_events_counter.inc()

    def _streams_for(
        self, users: Iterable[str], rooms: Iterable[str]
    ) -> Iterable[_NotifierUserStream]:
        for user_id in users:
            user_stream = self.user_to_user_stream.get(str(user_id))
            if user_stream is not None:
                yield user_stream

        for room_id in rooms:
            yield from self.room_to_user_streams.get(room_id, ())

    def get_current_token(self) -> StreamToken:
        return self.current_token

    def register_user_stream(
        self,
        user_id: str,
        room_ids: Collection[str],
        current_token: Optional[StreamToken] = None,
    ) -> _NotifierUserStream:
        """Start tracking a user, returning their stream.

        If the user already has a stream it is kept, and subscribed to any of
        `room_ids` it wasn't already in.
        """
        user_stream = self.user_to_user_stream.get(user_id)
        if user_stream is None:
            user_stream = _NotifierUserStream(
                user_id=user_id,
                rooms=(),
                current_token=current_token or self.current_token,
                time_now_ms=self.clock.time_msec(),
            )
            self.user_to_user_stream[user_id] = user_stream

        for room_id in room_ids:
            self._subscribe(user_stream, room_id)

        return user_stream

    def get_user_stream(self, user_id: str) -> _NotifierUserStream:
        """
        Raises:
            NotFoundError: if the user has no stream.
        """
        try:
            return self.user_to_user_stream[user_id]
        except KeyError:
            raise NotFoundError("No event stream for user %s" % (user_id,))

    def delete_user_stream(self, user_id: str) -> None:
        user_stream = self.user_to_user_stream.get(user_id)
        if user_stream is None:
            logger.debug("No event stream to delete for %s", user_id)
            return

        user_stream.remove(self)

    def user_joined_room(self, user_id: str, room_id: str) -> None:
        user_stream = self.user_to_user_stream.get(user_id)
        if user_stream is not None:
            self._subscribe(user_stream, room_id)

    def user_left_room(self, user_id: str, room_id: str) -> None:
        user_stream = self.user_to_user_stream.get(user_id)
        if user_stream is not None:
            self._unsubscribe(user_stream, room_id)

    def _subscribe(self, user_stream: _NotifierUserStream, room_id: str) -> None:
        user_stream.rooms.add(room_id)
        self.room_to_user_streams.setdefault(room_id, set()).add(user_stream)

    def _unsubscribe(self, user_stream: _NotifierUserStream, room_id: str) -> None:
        user_stream.rooms.discard(room_id)

        room_streams = self.room_to_user_streams.get(room_id)
        if room_streams is None:
            return
        room_streams.discard(user_stream)
        if not room_streams:
            del self.room_to_user_streams[room_id]

    async def wait_for_events(
        self,
        user_id: str,
        timeout: int,
        callback: Callable[[StreamToken, StreamToken], Awaitable[T]],
        room_ids: Optional[Collection[str]] = None,
        from_token: StreamToken = StreamToken.START,
    ) -> T:
        """Long-poll for events.

        `callback(before, after)` is asked what is new between two tokens,
        first once the user's stream has moved on from `from_token`, and
        again on every later wake-up, until it returns something truthy or
        `timeout` milliseconds have passed. If time runs out, or there is no
        timeout, the callback is called one final time and its answer
        returned whatever it is.

        Args:
            user_id: The user to wait for. A stream is registered for them,
                in `room_ids`, if they don't have one.
            timeout: How long to wait, in milliseconds.
            callback: Works out the response between two tokens.
            room_ids: The rooms to subscribe a new stream to.
            from_token: The token the client has already seen up to.
        """
        user_stream = self.user_to_user_stream.get(user_id)
        if user_stream is None:
            user_stream = self.register_user_stream(user_id, room_ids or ())

        prev_token = from_token
        deadline = self.clock.time_msec() + timeout if timeout else 0

        while True:
            remaining_ms = deadline - self.clock.time_msec()
            if remaining_ms <= 0:
                break

            listener = user_stream.new_listener(prev_token)
            listener.deferred = timeout_deferred(
                listener.deferred, remaining_ms / 1000.0, self._reactor
            )

            logger.debug("Waiting for events for %s from %s", user_id, prev_token)
            try:
                await listener.deferred
            except defer.TimeoutError:
                logger.debug("Timed out waiting for events for %s", user_id)
                break
            except defer.CancelledError:
                logger.debug("Cancelled waiting for events for %s", user_id)
                break

            current_token = user_stream.current_token
            result = await callback(prev_token, current_token)
            if result:
                return result

            # Nothing for the client between these two, so wait from here.
            prev_token = current_token

        return await callback(prev_token, user_stream.current_token)

    def remove_expired_streams(self) -> None:
        """Forget streams nobody is waiting on that have not been woken within
        `unused_stream_expiry_ms`.
        """
        expire_before_ms = self.clock.time_msec() - self.unused_stream_expiry_ms

        expired = [
            stream
            for stream in self.user_to_user_stream.values()
            if not stream.count_listeners()
            and stream.last_notified_ms < expire_before_ms
        ]
        if expired:
            logger.debug("Expiring %d unused event streams", len(expired))

        for stream in expired:
            stream.remove(self)
