# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2020 The Matrix.org Foundation C.I.C.
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
import re
import secrets
import string
from typing import Optional, Tuple

from netaddr import valid_ipv6


def random_string(length: int) -> str:
    """Generate a cryptographically secure string of random letters.

    Drawn from the characters: `a-z` and `A-Z`
    """
    return "".join(secrets.choice(string.ascii_letters) for _ in range(length))


# RFC 1035 section 2.3.1 host names, roughly. "\Z", not "$", so that a
# trailing newline does not match.
VALID_HOST_REGEX = re.compile(r"\A[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*\Z")


def parse_server_name(server_name: str) -> Tuple[str, Optional[int]]:
    """Split a server name into its host and optional port.

    Raises:
        ValueError: if the port is not a number.
    """
    if server_name.endswith("]"):
        # A bare IPv6 literal.
        return server_name, None

    host, sep, port = server_name.rpartition(":")
    if not sep:
        return server_name, None
    if not port.isdigit():
        raise ValueError("Invalid port in server name %r" % (server_name,))
    return host, int(port)


def parse_and_validate_server_name(server_name: str) -> Tuple[str, Optional[int]]:
    """As `parse_server_name`, but also checks the host is a plausible host
    name or a bracketed IPv6 address.

    Raises:
        ValueError: if it is neither.
    """
    host, port = parse_server_name(server_name)

    if host.startswith("["):
        address = host[1:-1]
        if not host.endswith("]") or not address or not valid_ipv6(address):
            raise ValueError("Invalid IPv6 literal in %r" % (server_name,))
    elif not VALID_HOST_REGEX.match(host):
        raise ValueError("Invalid host in server name %r" % (server_name,))

    return host, port
