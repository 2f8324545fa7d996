# Copyright 2015, 2016 OpenMarket Ltd
# Copyright 2017 Vector Creations Ltd
# Copyright 2018-2019 New Vector Ltd
# Copyright 2019-2021 The Matrix.org Foundation C.I.C.
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
import re
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    TypeVar,
)

import jsonschema
from jsonschema import FormatChecker

from syncore.api.constants import (
    CLIENT_EVENT_FIELDS,
    ROOM_EVENT_CATEGORIES,
    TOP_LEVEL_EVENT_CATEGORIES,
    EventContentFields,
    EventFormat,
    EventTypes,
    FilterCategories,
)
from syncore.api.errors import Codes, SyncCoreError, UnknownEventTypeError
from syncore.types import JsonDict, JsonMapping, RoomID, UserID

if TYPE_CHECKING:
    from syncore.server import SyncCoreServer

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10
MAX_LIMIT = 50

# Sub-fields of `event_fields` entries longer than this are dropped.
MAX_EVENT_SUBFIELD_LENGTH = 30

# The namespaced grammar event types follow, e.g. `m.room.message`.
_EVENT_TYPE_RE = re.compile(r"[a-z]+(?:\.[a-z][a-z0-9_]*)*")
# A prefix wildcard such as `*`, `m.room.*` or `m.ro*`.
_EVENT_TYPE_WILDCARD_RE = re.compile(r"(?:[a-z]+(?:\.[a-z][a-z0-9_]*)*\.?)?\*")
MAX_EVENT_TYPE_LENGTH = 255

FILTER_SCHEMA = {
    "additionalProperties": True,
    "type": "object",
    "properties": {
        "limit": {"type": "number"},
        "senders": {"$ref": "#/definitions/user_id_array"},
        "not_senders": {"$ref": "#/definitions/user_id_array"},
        "types": {"type": "array", "items": {"type": "string"}},
        "not_types": {"type": "array", "items": {"type": "string"}},
    },
}

ROOM_FILTER_SCHEMA = {
    "additionalProperties": True,
    "type": "object",
    "properties": {
        "not_rooms": {"$ref": "#/definitions/room_id_array"},
        "rooms": {"$ref": "#/definitions/room_id_array"},
        "ephemeral": {"$ref": "#/definitions/room_event_filter"},
        "include_leave": {"type": "boolean"},
        "state": {"$ref": "#/definitions/room_event_filter"},
        "timeline": {"$ref": "#/definitions/room_event_filter"},
        "account_data": {"$ref": "#/definitions/room_event_filter"},
    },
}

ROOM_EVENT_FILTER_SCHEMA = {
    "additionalProperties": True,
    "type": "object",
    "properties": {
        "limit": {"type": "number"},
        "senders": {"$ref": "#/definitions/user_id_array"},
        "not_senders": {"$ref": "#/definitions/user_id_array"},
        "types": {"type": "array", "items": {"type": "string"}},
        "not_types": {"type": "array", "items": {"type": "string"}},
        "rooms": {"$ref": "#/definitions/room_id_array"},
        "not_rooms": {"$ref": "#/definitions/room_id_array"},
        "contains_url": {"type": "boolean"},
        "lazy_load_members": {"type": "boolean"},
        "include_redundant_members": {"type": "boolean"},
        "unread_thread_notifications": {"type": "boolean"},
    },
}

USER_ID_ARRAY_SCHEMA = {
    "type": "array",
    "items": {"type": "string", "format": "matrix_user_id"},
}

ROOM_ID_ARRAY_SCHEMA = {
    "type": "array",
    "items": {"type": "string", "format": "matrix_room_id"},
}

USER_FILTER_SCHEMA = {
    "$schema": "http://json-schema.org/draft-04/schema#",
    "description": "schema for a Sync filter",
    "type": "object",
    "definitions": {
        "room_id_array": ROOM_ID_ARRAY_SCHEMA,
        "user_id_array": USER_ID_ARRAY_SCHEMA,
        "filter": FILTER_SCHEMA,
        "room_filter": ROOM_FILTER_SCHEMA,
        "room_event_filter": ROOM_EVENT_FILTER_SCHEMA,
    },
    "properties": {
        "presence": {"$ref": "#/definitions/filter"},
        "account_data": {"$ref": "#/definitions/filter"},
        "room": {"$ref": "#/definitions/room_filter"},
        "event_format": {"type": "string", "enum": list(EventFormat.ALL)},
        "event_fields": {
            "type": "array",
            "items": {
                "type": "string",
                # Don't allow '\\' in event field filters. This makes matching
                # events a lot easier as we can then split on '.' directly.
                #
                # Note that because this is a regular expression, we have to escape
                # each backslash in the pattern.
                "pattern": r"^((?!\\\\).)*$",
            },
        },
    },
    "additionalProperties": True,
}

FilterFormatChecker = FormatChecker()


@FilterFormatChecker.checks("matrix_room_id")
def matrix_room_id_validator(room_id: object) -> bool:
    return isinstance(room_id, str) and RoomID.is_valid(room_id)


@FilterFormatChecker.checks("matrix_user_id")
def matrix_user_id_validator(user_id: object) -> bool:
    return isinstance(user_id, str) and _is_valid_sender_pattern(user_id)


def matches_wildcard(actual_value: Optional[str], filter_value: str) -> bool:
    if filter_value.endswith("*") and isinstance(actual_value, str):
        type_prefix = filter_value[:-1]
        return actual_value.startswith(type_prefix)
    else:
        return actual_value == filter_value


def _is_valid_type_pattern(value: object) -> bool:
    if not isinstance(value, str):
        return False
    if len(value.encode("utf-8")) > MAX_EVENT_TYPE_LENGTH:
        return False
    return bool(
        _EVENT_TYPE_RE.fullmatch(value) or _EVENT_TYPE_WILDCARD_RE.fullmatch(value)
    )


def _is_valid_sender_pattern(value: object) -> bool:
    # Prefix wildcards can't be full user IDs, so only their length is checked.
    if isinstance(value, str) and value.endswith("*"):
        return len(value.encode("utf-8")) <= UserID.MAX_LENGTH
    return UserID.is_valid(value)


class Filtering:
    """Validates, stores and loads the filters users upload."""

    def __init__(self, hs: "SyncCoreServer"):
        self.store = hs.get_filtering_store()

        sync_config = hs.config.sync
        self._default_limit = sync_config.default_filter_limit
        self._max_limit = sync_config.max_filter_limit

    def build_filter(self, filter_json: JsonMapping) -> "Filter":
        """Build a `Filter` using the configured limits."""
        return Filter(
            filter_json,
            max_limit=self._max_limit,
            default_limit=self._default_limit,
        )

    async def get_user_filter(self, user_id: str, filter_id: str) -> "Filter":
        """Load a previously stored filter.

        Raises:
            NotFoundError: if the user has no filter with that ID.
        """
        result = await self.store.get_user_filter(user_id, filter_id)
        return self.build_filter(result)

    async def add_user_filter(self, user_id: str, user_filter: JsonDict) -> str:
        """Validate and store a filter, returning its ID.

        Uploading the same filter twice returns the ID it was first stored
        under.
        """
        self.check_valid_filter(user_filter)
        return await self.store.add_user_filter(user_id, user_filter)

    def check_valid_filter(self, user_filter_json: JsonDict) -> None:
        """Check if the provided filter is valid.

        This inspects all definitions contained within the filter.

        Args:
            user_filter_json: The filter
        Raises:
            SyncCoreError: If the filter is not valid.
        """
        # NB: Filters are the complete json blobs. "Definitions" are an
        # individual top-level key e.g. presence. Filters are made of
        # many definitions.
        try:
            jsonschema.validate(
                user_filter_json,
                USER_FILTER_SCHEMA,
                format_checker=FilterFormatChecker,
            )
        except jsonschema.ValidationError as e:
            raise SyncCoreError(400, str(e), Codes.BAD_JSON)


# Filters work across events, ephemeral events and account data, all of which
# are plain JSON objects.
FilterEvent = TypeVar("FilterEvent", bound=Mapping[str, Any])


def _get_sub_filter_json(filter_json: JsonMapping, key: str) -> JsonMapping:
    value = filter_json.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        logger.warning("Ignoring %r filter which is not an object: %r", key, value)
        return {}
    return value


def _get_limit(filter_json: JsonMapping, default_limit: int, max_limit: int) -> int:
    limit = filter_json.get("limit")
    if limit is None:
        limit = default_limit
    elif not isinstance(limit, int) or isinstance(limit, bool):
        logger.warning("Ignoring non-integer filter limit %r", limit)
        limit = default_limit

    if limit < 1:
        logger.warning("Raising filter limit %d to 1", limit)
        return 1
    if limit > max_limit:
        logger.warning("Clamping filter limit %d to %d", limit, max_limit)
        return max_limit
    return limit


def _get_patterns(
    filter_json: JsonMapping, key: str, is_valid: Callable[[object], bool]
) -> Optional[FrozenSet[str]]:
    """Read a list of patterns from the filter, dropping any invalid entries.

    Returns None if the list is absent (or not a list at all).
    """
    values = filter_json.get(key)
    if values is None:
        return None
    if not isinstance(values, list):
        logger.warning("Ignoring filter %r which is not a list: %r", key, values)
        return None

    patterns = set()
    for value in values:
        if is_valid(value):
            patterns.add(value)
        else:
            logger.warning("Removing invalid entry %r from filter %r", value, key)
    return frozenset(patterns)


def _get_bool(filter_json: JsonMapping, key: str) -> Optional[bool]:
    value = filter_json.get(key)
    if value is None or isinstance(value, bool):
        return value
    logger.warning("Ignoring non-boolean filter %r: %r", key, value)
    return None


class BasicFilter:
    """Matches events on their sender and type.

    Each field has an allow-list (`senders`, `types`), where None means
    unrestricted, and a deny-list (`not_senders`, `not_types`). Patterns ending
    in `*` match any value with that prefix.
    """

    def __init__(
        self,
        filter_json: JsonMapping,
        max_limit: int = MAX_LIMIT,
        default_limit: int = DEFAULT_LIMIT,
    ):
        self.filter_json = filter_json
        self._max_limit = max_limit
        self._default_limit = default_limit

        self.limit = _get_limit(filter_json, default_limit, max_limit)

        self.types = _get_patterns(filter_json, "types", _is_valid_type_pattern)
        self.not_types = (
            _get_patterns(filter_json, "not_types", _is_valid_type_pattern)
            or frozenset()
        )

        self.senders = _get_patterns(filter_json, "senders", _is_valid_sender_pattern)
        self.not_senders = (
            _get_patterns(filter_json, "not_senders", _is_valid_sender_pattern)
            or frozenset()
        )

    def __repr__(self) -> str:
        return "<%s %s>" % (self.__class__.__name__, json.dumps(self.filter_json))

    def filters_all_types(self) -> bool:
        return "*" in self.not_types or self.types == frozenset()

    def filters_all_senders(self) -> bool:
        return "*" in self.not_senders or self.senders == frozenset()

    def _get_field_matchers(
        self, event: JsonMapping, content: JsonMapping
    ) -> Dict[str, Callable[[str], bool]]:
        sender = event.get("sender", None)
        if not sender:
            # Presence events carry their sender in content.user_id.
            sender = content.get(EventContentFields.USER_ID)

        ev_type = event.get("type", None)

        return {
            "senders": lambda v: matches_wildcard(sender, v),
            "types": lambda v: matches_wildcard(ev_type, v),
        }

    def check(self, event: JsonMapping) -> bool:
        """Checks whether the filter matches the given event.

        Args:
            event: The event, ephemeral event or account data to check against
                this filter.

        Returns:
            True if the event matches the filter.
        """
        content = event.get("content")
        # Content is assumed to be a mapping below, so ensure it is. This should
        # always be true for events, but account_data has been allowed to
        # have non-dict content.
        if not isinstance(content, Mapping):
            content = {}

        return self._check_fields(self._get_field_matchers(event, content))

    def _check_fields(self, field_matchers: Dict[str, Callable[[str], bool]]) -> bool:
        """Checks whether the filter matches the given event fields.

        All of the disallowed values are checked before any of the allowed
        values, so a value that is both allowed and disallowed is rejected.

        Args:
            field_matchers: A map of attribute name to callable to use for checking
                particular fields.

                The attribute name and an inverse (not_<attribute name>) must
                exist on the Filter.

                The callable should return true if the event's value matches the
                filter's value.

        Returns:
            True if the event fields match
        """
        # If the event matches one of the disallowed values, reject it.
        for name, match_func in field_matchers.items():
            disallowed_values = getattr(self, "not_%s" % (name,))
            if any(map(match_func, disallowed_values)):
                return False

        # If the event does not match at least one of the allowed values,
        # reject it.
        for name, match_func in field_matchers.items():
            allowed_values = getattr(self, name)
            if allowed_values is not None:
                if not any(map(match_func, allowed_values)):
                    return False

        # Otherwise, accept it.
        return True

    def filter(self, events: Iterable[FilterEvent]) -> List[FilterEvent]:
        return [event for event in events if self.check(event)]


class PresenceFilter(BasicFilter):
    """The top-level `presence` filter."""


class AccountDataFilter(BasicFilter):
    """The top-level `account_data` filter."""


class RoomEventFilter(BasicFilter):
    """A `BasicFilter` which also matches on the room an event is in, and on
    whether it links to some content.
    """

    def __init__(
        self,
        filter_json: JsonMapping,
        max_limit: int = MAX_LIMIT,
        default_limit: int = DEFAULT_LIMIT,
    ):
        super().__init__(filter_json, max_limit, default_limit)

        self.rooms = _get_patterns(filter_json, "rooms", RoomID.is_valid)
        self.not_rooms = (
            _get_patterns(filter_json, "not_rooms", RoomID.is_valid) or frozenset()
        )

        self.contains_url = _get_bool(filter_json, "contains_url")

        self.lazy_load_members = bool(_get_bool(filter_json, "lazy_load_members"))
        self.include_redundant_members = bool(
            _get_bool(filter_json, "include_redundant_members")
        )
        self.unread_thread_notifications = bool(
            _get_bool(filter_json, "unread_thread_notifications")
        )

    def filters_all_rooms(self) -> bool:
        return self.rooms == frozenset()

    def _get_field_matchers(
        self, event: JsonMapping, content: JsonMapping
    ) -> Dict[str, Callable[[str], bool]]:
        field_matchers = super()._get_field_matchers(event, content)

        room_id = event.get("room_id", None)
        field_matchers["rooms"] = lambda v: room_id == v
        return field_matchers

    def check(self, event: JsonMapping) -> bool:
        # Clients lazy-loading members without dedup want every membership
        # event they are sent.
        if (
            self.lazy_load_members
            and self.include_redundant_members
            and event.get("type") == EventTypes.Member
        ):
            return True

        if not super().check(event):
            return False

        contains_url_filter = self.contains_url
        if contains_url_filter is not None:
            content = event.get("content")
            if not isinstance(content, Mapping):
                content = {}

            # check if there is a string url field in the content for filtering purposes
            contains_url = isinstance(content.get(EventContentFields.URL), str)
            if contains_url_filter != contains_url:
                return False

        return True

    def filter_rooms(self, room_ids: Iterable[str]) -> Set[str]:
        """Apply the 'rooms' filter to a given list of rooms.

        Args:
            room_ids: A list of room_ids.

        Returns:
            A list of room_ids that match the filter
        """
        return _filter_rooms(room_ids, self.rooms, self.not_rooms)

    def with_room_ids(self, room_ids: Iterable[str]) -> "RoomEventFilter":
        """Returns a new filter with the given room IDs appended.

        Args:
            room_ids: The room_ids to add

        Returns:
            filter: A new filter including the given rooms and the old
                    filter's rooms.
        """
        new_json = dict(self.filter_json)
        new_json["rooms"] = sorted(set(self.rooms or ()) | set(room_ids))
        return type(self)(new_json, self._max_limit, self._default_limit)


def _filter_rooms(
    room_ids: Iterable[str],
    allowed_rooms: Optional[FrozenSet[str]],
    disallowed_rooms: FrozenSet[str],
) -> Set[str]:
    room_ids = set(room_ids)
    room_ids -= disallowed_rooms

    if allowed_rooms is not None:
        room_ids &= allowed_rooms

    return room_ids


def _classify_event(event: JsonMapping) -> str:
    ev_type = event.get("type")
    for category in (FilterCategories.ACCOUNT_DATA, FilterCategories.PRESENCE):
        if ev_type in TOP_LEVEL_EVENT_CATEGORIES[category]:
            return category
    return FilterCategories.ROOM


def _classify_room_event(event: JsonMapping) -> str:
    """Work out which of a room filter's sub-filters applies to the event.

    Raises:
        UnknownEventTypeError: if the event doesn't belong in any of them.
    """
    ev_type = event.get("type")
    for category in (FilterCategories.ACCOUNT_DATA, FilterCategories.EPHEMERAL):
        if ev_type in ROOM_EVENT_CATEGORIES[category]:
            return category

    if isinstance(event.get("state_key"), str):
        return FilterCategories.STATE

    if (
        ev_type in ROOM_EVENT_CATEGORIES[FilterCategories.STATE]
        or ev_type in ROOM_EVENT_CATEGORIES[FilterCategories.TIMELINE]
    ):
        return FilterCategories.TIMELINE

    raise UnknownEventTypeError(ev_type)


class RoomFilter:
    def __init__(
        self,
        filter_json: JsonMapping,
        max_limit: int = MAX_LIMIT,
        default_limit: int = DEFAULT_LIMIT,
    ):
        self.filter_json = filter_json

        def sub_filter(key: str) -> RoomEventFilter:
            return RoomEventFilter(
                _get_sub_filter_json(filter_json, key), max_limit, default_limit
            )

        self.account_data = sub_filter(FilterCategories.ACCOUNT_DATA)
        self.ephemeral = sub_filter(FilterCategories.EPHEMERAL)
        self.state = sub_filter(FilterCategories.STATE)
        self.timeline = sub_filter(FilterCategories.TIMELINE)

        self.include_leave = bool(_get_bool(filter_json, "include_leave"))

        self.rooms = _get_patterns(filter_json, "rooms", RoomID.is_valid)
        self.not_rooms = (
            _get_patterns(filter_json, "not_rooms", RoomID.is_valid) or frozenset()
        )

    def filter_rooms(self, room_ids: Iterable[str]) -> Set[str]:
        return _filter_rooms(room_ids, self.rooms, self.not_rooms)

    def check(self, event: JsonMapping) -> bool:
        """Checks the event against the room lists, then against the
        sub-filter for its category.

        Raises:
            UnknownEventTypeError: if the event cannot be categorised.
        """
        room_id = event.get("room_id")
        if room_id in self.not_rooms:
            return False
        if self.rooms is not None and room_id not in self.rooms:
            return False

        sub_filter: RoomEventFilter = getattr(self, _classify_room_event(event))
        return sub_filter.check(event)


class Filter:
    """A complete filter, as uploaded by a client."""

    def __init__(
        self,
        filter_json: JsonMapping,
        max_limit: int = MAX_LIMIT,
        default_limit: int = DEFAULT_LIMIT,
    ):
        if not isinstance(filter_json, Mapping):
            logger.warning("Ignoring filter which is not an object: %r", filter_json)
            filter_json = {}
        self._filter_json = filter_json

        self.account_data = AccountDataFilter(
            _get_sub_filter_json(filter_json, FilterCategories.ACCOUNT_DATA),
            max_limit,
            default_limit,
        )
        self.presence = PresenceFilter(
            _get_sub_filter_json(filter_json, FilterCategories.PRESENCE),
            max_limit,
            default_limit,
        )
        self.room = RoomFilter(
            _get_sub_filter_json(filter_json, FilterCategories.ROOM),
            max_limit,
            default_limit,
        )

        self.event_format = filter_json.get("event_format", EventFormat.CLIENT)
        if self.event_format not in EventFormat.ALL:
            logger.warning(
                "Unknown event_format %r, using %r",
                self.event_format,
                EventFormat.CLIENT,
            )
            self.event_format = EventFormat.CLIENT

        self.event_fields = self._get_event_fields(filter_json)

    def _get_event_fields(self, filter_json: JsonMapping) -> List[str]:
        fields = filter_json.get("event_fields", [])
        if not isinstance(fields, list):
            logger.warning("Ignoring event_fields which is not a list: %r", fields)
            return []

        result = []
        for field in fields:
            if not isinstance(field, str):
                logger.warning("Removing invalid event field %r", field)
                continue

            # Federation-format events have no fixed set of top-level keys.
            if self.event_format == EventFormat.CLIENT:
                parts = field.split(".")
                if parts[0] not in CLIENT_EVENT_FIELDS or (
                    len(parts) > 1 and len(parts[1]) > MAX_EVENT_SUBFIELD_LENGTH
                ):
                    logger.warning("Removing invalid event field %r", field)
                    continue

            result.append(field)
        return result

    def __repr__(self) -> str:
        return "<Filter %s>" % (json.dumps(self._filter_json),)

    def get_filter_json(self) -> JsonMapping:
        return self._filter_json

    @property
    def include_leave(self) -> bool:
        return self.room.include_leave

    def check(self, event: JsonMapping) -> bool:
        """Checks whether the event should be included by this filter.

        Events which cannot be categorised are logged and excluded.
        """
        try:
            category = _classify_event(event)
            if category == FilterCategories.ACCOUNT_DATA:
                return self.account_data.check(event)
            elif category == FilterCategories.PRESENCE:
                return self.presence.check(event)
            else:
                return self.room.check(event)
        except UnknownEventTypeError as e:
            logger.error("Excluding event %s: %s", event.get("event_id"), e)
            return False

    def filter(self, events: Iterable[FilterEvent]) -> List[FilterEvent]:
        return [event for event in events if self.check(event)]

    def timeline_limit(self) -> int:
        return self.room.timeline.limit

    def presence_limit(self) -> int:
        return self.presence.limit

    def ephemeral_limit(self) -> int:
        return self.room.ephemeral.limit

    def lazy_load_members(self) -> bool:
        return self.room.state.lazy_load_members

    def include_redundant_members(self) -> bool:
        return self.room.state.include_redundant_members

    def blocks_all_presence(self) -> bool:
        return (
            self.presence.filters_all_types() or self.presence.filters_all_senders()
        )

    def blocks_all_room_ephemeral(self) -> bool:
        return (
            self.room.ephemeral.filters_all_types()
            or self.room.ephemeral.filters_all_senders()
            or self.room.ephemeral.filters_all_rooms()
        )

    def blocks_all_room_timeline(self) -> bool:
        return (
            self.room.timeline.filters_all_types()
            or self.room.timeline.filters_all_senders()
            or self.room.timeline.filters_all_rooms()
        )
