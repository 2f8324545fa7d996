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

"""Exceptions, and the Matrix error codes they carry."""

from enum import Enum
from http import HTTPStatus
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

if TYPE_CHECKING:
    from syncore.types import JsonDict


class Codes(str, Enum):
    """The Matrix `errcode`s we raise."""

    BAD_JSON = "M_BAD_JSON"
    UNKNOWN = "M_UNKNOWN"
    NOT_FOUND = "M_NOT_FOUND"
    INVALID_PARAM = "M_INVALID_PARAM"


class CodeMessageException(RuntimeError):
    """An error with an HTTP status `code` and a human readable `msg`."""

    def __init__(self, code: Union[int, HTTPStatus], msg: str):
        # str(HTTPStatus.NOT_FOUND) is "HTTPStatus.NOT_FOUND", not "404".
        self.code = int(code)
        self.msg = msg
        super().__init__("%d: %s" % (self.code, msg))


class SyncCoreError(CodeMessageException):
    """An error to be reported to the client as a Matrix error response.

    Args:
        code: the HTTP status.
        msg: the `error` text.
        errcode: the Matrix `errcode`.
        additional_fields: extra keys for the response body.
    """

    def __init__(
        self,
        code: int,
        msg: str,
        errcode: str = Codes.UNKNOWN,
        additional_fields: Optional[Dict] = None,
    ):
        super().__init__(code, msg)
        self.errcode = errcode
        self._additional_fields = dict(additional_fields or {})

    def error_dict(self) -> "JsonDict":
        return cs_error(self.msg, self.errcode, **self._additional_fields)


class StreamTokenParseError(SyncCoreError):
    """A stream token, or the room position inside one, is malformed.

    Raised for a wrong number of fields, a non-numeric component, or an
    unknown position prefix. Callers should treat it as a bad `since` value.
    """

    def __init__(self, msg: str = "Invalid stream token"):
        super().__init__(HTTPStatus.BAD_REQUEST, msg, Codes.INVALID_PARAM)


class NotFoundError(SyncCoreError):
    def __init__(self, msg: str = "Not found", errcode: str = Codes.NOT_FOUND):
        super().__init__(HTTPStatus.NOT_FOUND, msg, errcode=errcode)


class StoreError(SyncCoreError):
    """Reading or writing the database failed."""


class UnknownEventTypeError(Exception):
    """An event type could not be classified into any filter bucket.

    The classification tables are server-controlled, so this is an internal
    fault rather than something to report to the client.
    """

    def __init__(self, event_type: Optional[str]):
        super().__init__("Invalid event type %r" % (event_type,))
        self.event_type = event_type


def cs_error(msg: str, code: str = Codes.UNKNOWN, **kwargs: Any) -> "JsonDict":
    """Build a client-server API error body: `error` and `errcode`, plus any
    extra keys given as keyword arguments.
    """
    return {"error": msg, "errcode": code, **kwargs}
