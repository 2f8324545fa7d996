# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2017 Vector Creations Ltd
# Copyright 2018-2019 New Vector Ltd
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

"""Contains the Matrix protocol constants the filters and notifier use."""

from typing_extensions import Final

# the maximum length for a user or room id is 255 bytes
MAX_USERID_LENGTH = 255
MAX_ROOMID_LENGTH = 255


class EventTypes:
    Member: Final = "m.room.member"
    Create: Final = "m.room.create"
    Tombstone: Final = "m.room.tombstone"
    JoinRules: Final = "m.room.join_rules"
    PowerLevels: Final = "m.room.power_levels"
    Aliases: Final = "m.room.aliases"
    Redaction: Final = "m.room.redaction"
    ThirdPartyInvite: Final = "m.room.third_party_invite"
    RelatedGroups: Final = "m.room.related_groups"

    RoomHistoryVisibility: Final = "m.room.history_visibility"
    CanonicalAlias: Final = "m.room.canonical_alias"
    Encrypted: Final = "m.room.encrypted"
    RoomAvatar: Final = "m.room.avatar"
    RoomEncryption: Final = "m.room.encryption"
    GuestAccess: Final = "m.room.guest_access"

    Message: Final = "m.room.message"
    MessageFeedback: Final = "m.room.message.feedback"
    Topic: Final = "m.room.topic"
    Name: Final = "m.room.name"

    ServerACL: Final = "m.room.server_acl"
    Pinned: Final = "m.room.pinned_events"

    Sticker: Final = "m.sticker"
    Reaction: Final = "m.reaction"

    CallInvite: Final = "m.call.invite"
    CallCandidates: Final = "m.call.candidates"
    CallAnswer: Final = "m.call.answer"
    CallHangup: Final = "m.call.hangup"
    CallReject: Final = "m.call.reject"

    Custom: Final = "m.custom.event"

    SpaceChild: Final = "m.space.child"
    SpaceParent: Final = "m.space.parent"


class EduTypes:
    PRESENCE: Final = "m.presence"
    TYPING: Final = "m.typing"
    RECEIPT: Final = "m.receipt"


class AccountDataTypes:
    DIRECT: Final = "m.direct"
    IGNORED_USER_LIST: Final = "m.ignored_user_list"
    PUSH_RULES: Final = "m.push_rules"
    USER_DEVICES: Final = "m.user_devices"
    TAG_ORDER: Final = "m.tag_order"
    TAG: Final = "m.tag"
    FULLY_READ: Final = "m.fully_read"


class EventFormat:
    """The `event_format` values a filter may ask for."""

    CLIENT: Final = "client"
    FEDERATION: Final = "federation"
    ALL: Final = (CLIENT, FEDERATION)


class EventContentFields:
    """Fields found in events' content, regardless of type."""

    # The attachment URL checked by `contains_url` filters.
    URL: Final = "url"

    # Presence events used to carry their sender here.
    USER_ID: Final = "user_id"


# The fields of a client-format event which may be named in a filter's
# `event_fields`.
CLIENT_EVENT_FIELDS: Final = frozenset(
    {
        "content",
        "event_id",
        "origin_server_ts",
        "room_id",
        "sender",
        "state_key",
        "type",
        "unsigned",
    }
)


class FilterCategories:
    """The buckets a filter sorts events into, at the top level and within a
    room."""

    ACCOUNT_DATA: Final = "account_data"
    PRESENCE: Final = "presence"
    ROOM: Final = "room"

    EPHEMERAL: Final = "ephemeral"
    STATE: Final = "state"
    TIMELINE: Final = "timeline"


# Event types which are routed to the top-level `account_data` and `presence`
# filters. Everything else is treated as a room event.
TOP_LEVEL_EVENT_CATEGORIES: Final = {
    FilterCategories.ACCOUNT_DATA: frozenset(
        {
            AccountDataTypes.PUSH_RULES,
            AccountDataTypes.IGNORED_USER_LIST,
            AccountDataTypes.DIRECT,
            AccountDataTypes.USER_DEVICES,
            AccountDataTypes.TAG_ORDER,
        }
    ),
    FilterCategories.PRESENCE: frozenset({EduTypes.PRESENCE}),
}

# Event types recognised within a room, by the room sub-filter they belong to.
ROOM_EVENT_CATEGORIES: Final = {
    FilterCategories.ACCOUNT_DATA: frozenset(
        {AccountDataTypes.TAG, AccountDataTypes.FULLY_READ}
    ),
    FilterCategories.EPHEMERAL: frozenset(
        {
            EduTypes.TYPING,
            EduTypes.RECEIPT,
            EduTypes.PRESENCE,
            EventTypes.MessageFeedback,
        }
    ),
    FilterCategories.STATE: frozenset(
        {
            EventTypes.Name,
            EventTypes.Topic,
            EventTypes.RoomAvatar,
            EventTypes.CanonicalAlias,
            EventTypes.Aliases,
            EventTypes.Member,
            EventTypes.Create,
            EventTypes.JoinRules,
            EventTypes.PowerLevels,
            EventTypes.RoomHistoryVisibility,
            EventTypes.GuestAccess,
            EventTypes.RoomEncryption,
            EventTypes.ServerACL,
            EventTypes.ThirdPartyInvite,
            EventTypes.Pinned,
            EventTypes.Tombstone,
            EventTypes.RelatedGroups,
            EventTypes.SpaceChild,
            EventTypes.SpaceParent,
        }
    ),
    FilterCategories.TIMELINE: frozenset(
        {
            EventTypes.Message,
            EventTypes.Redaction,
            EventTypes.Encrypted,
            EventTypes.Sticker,
            EventTypes.CallInvite,
            EventTypes.CallCandidates,
            EventTypes.CallAnswer,
            EventTypes.CallHangup,
            EventTypes.CallReject,
            EventTypes.Reaction,
            EventTypes.Custom,
        }
    ),
}
