# Copyright 2014-2016 OpenMarket Ltd
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

import json
import logging
from typing import Any, Callable

import attr

from twisted.internet.interfaces import IReactorTime
from twisted.internet.task import LoopingCall
from twisted.python.failure import Failure

logger = logging.getLogger(__name__)


def _reject_invalid_json(val: Any) -> None:
    raise ValueError("Invalid JSON value: '%s'" % val)


# Stored filters never contain NaN or the infinities, so treat them as corrupt.
json_decoder = json.JSONDecoder(parse_constant=_reject_invalid_json)


@attr.s(slots=True)
class Clock:
    """Time and scheduling, read from a Twisted reactor.

    Tests hand in a fake reactor so that they can move time forward by hand.
    """

    _reactor: IReactorTime = attr.ib()

    def time(self) -> float:
        """Seconds since the epoch, according to the reactor."""
        return self._reactor.seconds()

    def time_msec(self) -> int:
        """Milliseconds since the epoch, according to the reactor."""
        return int(self.time() * 1000)

    def looping_call(
        self, f: Callable[..., object], msec: float, *args: Any, **kwargs: Any
    ) -> LoopingCall:
        """Run `f(*args, **kwargs)` every `msec` milliseconds.

        The first run is one interval from now. If `f` raises, the failure is
        logged and the loop stops.
        """
        call = LoopingCall(f, *args, **kwargs)
        call.clock = self._reactor
        d = call.start(msec / 1000.0, now=False)
        d.addErrback(_log_looping_call_failure, f)
        return call


def _log_looping_call_failure(failure: Failure, f: Callable[..., object]) -> None:
    exc_info = (failure.type, failure.value, failure.getTracebackObject())
    logger.error("Looping call to %r died", f, exc_info=exc_info)
