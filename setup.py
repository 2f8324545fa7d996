#!/usr/bin/env python

# Copyright 2014-2017 OpenMarket Ltd
# Copyright 2017 Vector Creations Ltd
# Copyright 2017-2018 New Vector Ltd
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

import os

from setuptools import Command, find_packages, setup

here = os.path.abspath(os.path.dirname(__file__))


class TestCommand(Command):
    """`setup.py test` only says how to run the tests with trial."""

    user_options = []

    def initialize_options(self):
        pass

    def finalize_options(self):
        pass

    def run(self):
        print('Run the tests with:\n    PYTHONPATH="." trial tests')


def load_module_globals(*path_segments):
    """Run one of the package's python files and return what it defines."""
    with open(os.path.join(here, *path_segments)) as f:
        source = f.read()
    namespace = {}
    exec(source, namespace)
    return namespace


with open(os.path.join(here, "README.rst")) as f:
    long_description = f.read()

version = load_module_globals("syncore", "__init__.py")["__version__"]
dependencies = load_module_globals("syncore", "python_dependencies.py")

setup(
    name="matrix-syncore",
    version=version,
    packages=find_packages(exclude=["tests", "tests.*"]),
    description="Event filtering and stream notification for Matrix homeservers",
    install_requires=dependencies["REQUIREMENTS"],
    extras_require=dependencies["CONDITIONAL_REQUIREMENTS"],
    include_package_data=True,
    zip_safe=False,
    long_description=long_description,
    python_requires="~=3.8",
    cmdclass={"test": TestCommand},
)
