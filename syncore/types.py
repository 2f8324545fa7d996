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
import abc
import logging
import re
from typing import (
    Any,
    ClassVar,
    Dict,
    Mapping,
    Optional,
    Pattern,
    Tuple,
    Type,
    TypeVar,
    Union,
)

import attr
from typing_extensions import Final
from zope.interface import Interface

from twisted.internet.interfaces import IReactorCore, IReactorTime

from syncore.api.constants import MAX_ROOMID_LENGTH, MAX_USERID_LENGTH
from syncore.api.errors import Codes, StreamTokenParseError, SyncCoreError
from syncore.util.stringutils import parse_and_validate_server_name

logger = logging.getLogger(__name__)

# JSON types. These could be made stronger, but will do for now.
# A JSON-serialisable dict.
JsonDict = Dict[str, Any]
# A JSON-serialisable mapping; roughly speaking an immutable JSONDict.
JsonMapping = Mapping[str, Any]


# Define a reactor interface so that we can type-check the reactor that is
# handed to the Clock and the notifier.
class ISyncCoreReactor(IReactorCore, IReactorTime, Interface):
    """The interfaces necessary for the notifier to run."""


DS = TypeVar("DS", bound="DomainSpecificString")


@attr.s(slots=True, frozen=True, repr=False, auto_attribs=True)
class DomainSpecificString(metaclass=abc.ABCMeta):
    """An identifier of the form `<sigil><localpart>:<domain>`.

    Subclasses set `SIGIL`, the `LOCALPART_PATTERN` checked by `is_valid`, and
    `MAX_LENGTH` in UTF-8 bytes. `is_valid` accepts any server name as the
    domain, ports and IPv6 literals included.
    """

    SIGIL: ClassVar[str] = abc.abstractproperty()  # type: ignore
    LOCALPART_PATTERN: ClassVar[Pattern[str]] = abc.abstractproperty()  # type: ignore
    MAX_LENGTH: ClassVar[int] = 255

    localpart: str
    domain: str

    @classmethod
    def from_string(cls: Type[DS], s: str) -> DS:
        """Split `s` into its localpart and domain.

        Only the sigil and the presence of a ':' are checked here; use
        `is_valid` for the full grammar.

        Raises:
            SyncCoreError: if `s` is not shaped like one of these IDs.
        """
        if not s.startswith(cls.SIGIL) or ":" not in s:
            raise SyncCoreError(
                400,
                "%s must look like '%slocalpart:domain', not %r"
                % (cls.__name__, cls.SIGIL, s),
                Codes.INVALID_PARAM,
            )

        localpart, domain = s[len(cls.SIGIL) :].split(":", 1)
        return cls(localpart=localpart, domain=domain)

    def to_string(self) -> str:
        return self.SIGIL + self.localpart + ":" + self.domain

    @classmethod
    def is_valid(cls, s: Any) -> bool:
        if not isinstance(s, str) or len(s.encode("utf-8")) > cls.MAX_LENGTH:
            return False
        if not s.startswith(cls.SIGIL) or ":" not in s:
            return False

        localpart, domain = s[len(cls.SIGIL) :].split(":", 1)
        if not cls.LOCALPART_PATTERN.fullmatch(localpart):
            return False

        try:
            parse_and_validate_server_name(domain)
        except ValueError:
            return False
        return True

    __repr__ = to_string


@attr.s(slots=True, frozen=True, repr=False)
class UserID(DomainSpecificString):
    """Structure representing a user ID."""

    SIGIL = "@"
    LOCALPART_PATTERN = re.compile(r"[0-9a-zA-Z._=-]+")
    MAX_LENGTH = MAX_USERID_LENGTH


@attr.s(slots=True, frozen=True, repr=False)
class RoomID(DomainSpecificString):
    """Structure representing a room id."""

    SIGIL = "!"
    LOCALPART_PATTERN = re.compile(r"[0-9a-zA-Z._=/+-]+")
    MAX_LENGTH = MAX_ROOMID_LENGTH


# Used with fullmatch: "$" would also match before a trailing newline.
_LIVE_ROOM_TOKEN_RE = re.compile(r"s([0-9]+)")
_HISTORICAL_ROOM_TOKEN_RE = re.compile(r"t([0-9]+)-([0-9]+)")
_STREAM_ID_RE = re.compile(r"[0-9]+")


@attr.s(slots=True, frozen=True, auto_attribs=True)
class RoomStreamToken:
    """A position in the room event stream, between two events: "s1" is just
    after the event with stream ordering 1.

            s0    s1
            |     |
        [0] ▼ [1] ▼ [2]

    A live token, `s<stream>`, points into the live stream, where events are
    ordered by `stream_ordering`, the order in which they were persisted.

    A historical token, `t<topological>-<stream>`, is a cursor for paginating
    back through the room, where events are ordered by depth in the event
    graph and then by stream ordering. New events arriving never move a
    historical token; see `copy_and_advance`.

    Tokens are hashable, so they can be used as cache keys.
    """

    topological: Optional[int] = attr.ib(
        validator=attr.validators.optional(attr.validators.instance_of(int)),
    )
    stream: int = attr.ib(validator=attr.validators.instance_of(int))

    @classmethod
    def parse(cls, string: str) -> "RoomStreamToken":
        if isinstance(string, str):
            match = _LIVE_ROOM_TOKEN_RE.fullmatch(string)
            if match:
                return cls(topological=None, stream=int(match.group(1)))

            match = _HISTORICAL_ROOM_TOKEN_RE.fullmatch(string)
            if match:
                return cls(
                    topological=int(match.group(1)), stream=int(match.group(2))
                )

        raise StreamTokenParseError("Invalid room stream token %r" % (string,))

    def is_historical(self) -> bool:
        return self.topological is not None

    def copy_and_advance(
        self, other: Union["RoomStreamToken", int]
    ) -> "RoomStreamToken":
        """Return a new live token positioned at the later of this token and
        `other`.

        Historical tokens cannot be advanced: in that case an error is logged
        and this token is returned unchanged, as it is when `other` is not
        ahead of us.

        Args:
            other: either another token or a bare stream ordering.
        """
        if not isinstance(other, RoomStreamToken):
            other = RoomStreamToken(None, other)

        if self.topological is not None or other.topological is not None:
            logger.error(
                "Cannot advance historical room token %s to %s", self, other
            )
            return self

        if other.stream > self.stream:
            return RoomStreamToken(None, other.stream)

        return self

    def as_historical_tuple(self) -> Tuple[int, int]:
        """Returns a tuple of `(topological, stream)` for historical tokens.

        Raises if not an historical token (i.e. doesn't have a topological part).
        """
        if self.topological is None:
            raise Exception(
                "Cannot call `RoomStreamToken.as_historical_tuple` on live token"
            )

        return self.topological, self.stream

    def to_string(self) -> str:
        if self.topological is not None:
            return "t%d-%d" % (self.topological, self.stream)
        else:
            return "s%d" % (self.stream,)

    def __str__(self) -> str:
        return self.to_string()


class StreamKeyType:
    """Known stream types.

    A stream is a list of entities ordered by an incrementing "stream token".
    """

    ROOM: Final = "room_key"
    PRESENCE: Final = "presence_key"
    TYPING: Final = "typing_key"
    RECEIPT: Final = "receipt_key"
    ACCOUNT_DATA: Final = "account_data_key"
    PUSH_RULES: Final = "push_rules_key"
    TO_DEVICE: Final = "to_device_key"
    DEVICE_LIST: Final = "device_list_key"
    UN_PARTIAL_STATED_ROOMS: Final = "un_partial_stated_rooms_key"

    # In serialization order.
    ALL: Final = (
        ROOM,
        PRESENCE,
        TYPING,
        RECEIPT,
        ACCOUNT_DATA,
        PUSH_RULES,
        TO_DEVICE,
        DEVICE_LIST,
        UN_PARTIAL_STATED_ROOMS,
    )


@attr.s(slots=True, frozen=True, auto_attribs=True)
class StreamToken:
    """A position in every stream the client syncs, serialized as the
    per-stream positions joined with underscores in `StreamKeyType.ALL` order:

        s2633508_17_338_6732159_1082514_541479_274711_265584_1

    The first part is a `RoomStreamToken`, and may be historical
    (`t426-2633508_17_...`). The rest are plain stream ids.

    Tokens are hashable, so they can be used as cache keys.
    """

    room_key: RoomStreamToken = attr.ib(
        validator=attr.validators.instance_of(RoomStreamToken)
    )
    presence_key: int
    typing_key: int
    receipt_key: int
    account_data_key: int
    push_rules_key: int
    to_device_key: int
    device_list_key: int
    un_partial_stated_rooms_key: int

    _SEPARATOR = "_"
    START: ClassVar["StreamToken"]

    @classmethod
    def from_string(cls, string: str) -> "StreamToken":
        """
        Raises:
            StreamTokenParseError: if the token is malformed.
        """
        if not isinstance(string, str):
            raise StreamTokenParseError("Stream token must be a string")

        room_part, *other_parts = string.split(cls._SEPARATOR)
        if len(other_parts) != len(StreamKeyType.ALL) - 1:
            raise StreamTokenParseError(
                "Expected %d stream positions in %r" % (len(StreamKeyType.ALL), string)
            )
        if not all(_STREAM_ID_RE.fullmatch(part) for part in other_parts):
            raise StreamTokenParseError("Invalid stream token %r" % (string,))

        return cls(RoomStreamToken.parse(room_part), *map(int, other_parts))

    def to_string(self) -> str:
        parts = [self.room_key.to_string()]
        parts.extend(str(getattr(self, key)) for key in StreamKeyType.ALL[1:])
        return self._SEPARATOR.join(parts)

    def __str__(self) -> str:
        return self.to_string()

    @property
    def room_stream_id(self) -> int:
        return self.room_key.stream

    def copy_and_advance(self, key: str, new_value: Any) -> "StreamToken":
        """Returns a token with stream `key` moved on to `new_value`.

        Positions only go forwards: if `new_value` is not after the current
        position, a warning is logged and this token is returned as is.

        Raises:
            TypeError: if `key` is not one of `StreamKeyType.ALL`.
        """
        if key not in StreamKeyType.ALL:
            raise TypeError("Unknown stream key %r" % (key,))

        current = getattr(self, key)
        advanced: Union[int, RoomStreamToken]
        if key == StreamKeyType.ROOM:
            advanced = self.room_key.copy_and_advance(new_value)
            moved = advanced is not current
        else:
            advanced = int(new_value)
            moved = advanced > current

        if not moved:
            logger.warning(
                "Not moving stream token %s back from %s to %s", key, current, new_value
            )
            return self

        logger.debug("Advanced stream token %s to %s", key, new_value)
        return self.copy_and_replace(key, advanced)

    def copy_and_replace(self, key: str, new_value: Any) -> "StreamToken":
        return attr.evolve(self, **{key: new_value})


StreamToken.START = StreamToken(RoomStreamToken(None, 0), 0, 0, 0, 0, 0, 0, 0, 0)
