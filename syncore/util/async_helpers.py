# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2018 New Vector Ltd
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
from typing import Generic, List, Optional, Set, Tuple, TypeVar, Union

from twisted.internet import defer
from twisted.internet.defer import CancelledError
from twisted.internet.interfaces import IReactorTime
from twisted.python.failure import Failure

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


class ObservableDeferred(Generic[_T]):
    """Fans the result of a deferred out to any number of observers.

    Each call to `observe` returns a new deferred which gets the result. What
    an observer does with its result, or cancelling it, has no effect on the
    wrapped deferred or on the other observers.

    With consumeErrors, a failure of the wrapped deferred stops at this
    object instead of carrying on down its callback chain.
    """

    __slots__ = ["_observers", "_result"]

    def __init__(self, deferred: "defer.Deferred[_T]", consumeErrors: bool = False):
        self._observers: "Set[defer.Deferred[_T]]" = set()
        self._result: Optional[Tuple[bool, Union[_T, Failure]]] = None

        def on_success(result: _T) -> _T:
            self._resolve(True, result)
            return result

        def on_failure(failure: Failure) -> Optional[Failure]:
            self._resolve(False, failure)
            return None if consumeErrors else failure

        deferred.addCallbacks(on_success, on_failure)

    def _resolve(self, success: bool, result: Union[_T, Failure]) -> None:
        self._result = (success, result)

        # Nothing is added to _observers once _result is set.
        observers, self._observers = self._observers, set()
        for observer in observers:
            try:
                if success:
                    observer.callback(result)
                else:
                    observer.errback(result)
            except Exception:
                logger.exception("Failed to pass %r on to %r", result, observer)

    def observe(self) -> "defer.Deferred[_T]":
        """Returns a new deferred which resolves with the wrapped deferred's
        result, or immediately if there already is one.
        """
        if self._result is not None:
            success, result = self._result
            return defer.succeed(result) if success else defer.fail(result)

        d: "defer.Deferred[_T]" = defer.Deferred()

        def forget(r: object) -> object:
            self._observers.discard(d)
            return r

        d.addBoth(forget)
        self._observers.add(d)
        return d

    def observers(self) -> "List[defer.Deferred[_T]]":
        return list(self._observers)

    def has_called(self) -> bool:
        return self._result is not None

    def has_succeeded(self) -> bool:
        return self._result is not None and self._result[0]

    def get_result(self) -> Union[_T, Failure]:
        if self._result is None:
            raise ValueError("%r has no result yet" % (self,))
        return self._result[1]

    def __repr__(self) -> str:
        return "<ObservableDeferred at %s, result=%r, %d observers>" % (
            id(self),
            self._result,
            len(self._observers),
        )


def timeout_deferred(
    deferred: "defer.Deferred[_T]", timeout: float, reactor: IReactorTime
) -> "defer.Deferred[_T]":
    """Returns a new deferred which follows `deferred`, but fails with
    twisted.internet.defer.TimeoutError if `timeout` seconds pass first.

    On timeout `deferred` is cancelled. Unlike `Deferred.addTimeout`, the
    returned deferred still times out if the canceller raises.
    """
    result: "defer.Deferred[_T]" = defer.Deferred()
    timed_out = False

    def on_timeout() -> None:
        nonlocal timed_out
        timed_out = True

        try:
            deferred.cancel()
        except Exception:
            logger.exception("Canceller raised while timing out %r", deferred)

        if not result.called:
            result.errback(defer.TimeoutError("Timed out after %gs" % (timeout,)))

    delayed_call = reactor.callLater(timeout, on_timeout)

    def on_failure(failure: Failure) -> None:
        if timed_out and failure.check(CancelledError):
            failure = Failure(defer.TimeoutError("Timed out after %gs" % (timeout,)))
        if not result.called:
            result.errback(failure)

    def on_success(value: _T) -> None:
        if not result.called:
            result.callback(value)

    def stop_timer(r: object) -> object:
        if delayed_call.active():
            delayed_call.cancel()
        return r

    deferred.addBoth(stop_timer)
    deferred.addCallbacks(on_success, on_failure)

    return result
