# Copyright 2015, 2016 OpenMarket Ltd
# Copyright 2017 Vector Creations Ltd
# Copyright 2018 New Vector Ltd
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

import itertools

# REQUIREMENTS is a simple list of requirement specifiers[1], and must be
# installed. It is passed to setup() as install_requires in setup.py.
#
# CONDITIONAL_REQUIREMENTS is the optional dependencies, represented as a dict
# of lists. The dict key is the optional dependency name and can be passed to
# pip when installing. It is passed to setup() as extras_require in setup.py.
#
# setup.py execs this file, so stick to the standard library here.
#
# [1] https://pip.pypa.io/en/stable/reference/pip_install/#requirement-specifiers.

REQUIREMENTS = [
    "jsonschema>=3.0.0",
    "canonicaljson>=1.4.0",
    # we use task.Clock and the `Deferred[T]` generic type
    "Twisted>=21.2.0",
    "pyyaml>=3.11",
    "prometheus_client>=0.14.0",
    # we use attr.evolve and auto_attribs
    "attrs>=19.2.0",
    # the test helpers use ParamSpec and Concatenate
    "typing-extensions>=3.10.0",
    # Twisted depends on it, but we implement interfaces ourselves
    "zope.interface>=5.0.0",
    # IPv6 literals in server names
    "netaddr>=0.7.18",
]

CONDITIONAL_REQUIREMENTS = {
    # Only needed to run the test suite.
    "test": ["parameterized>=0.7.4"],
}

# ensure there are no double-quote characters in any of the deps (otherwise the
# 'pip install' incantation in the docs will break)
for dep in itertools.chain(
    REQUIREMENTS,
    *CONDITIONAL_REQUIREMENTS.values(),
):
    if '"' in dep:
        raise Exception(
            "Dependency `%s` contains double-quote; use single-quotes instead" % (dep,)
        )

