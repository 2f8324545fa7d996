# Copyright 2021 The Matrix.org Foundation C.I.C.
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
import shutil
import tempfile
import unittest
from typing import Any, Dict


class ConfigFileTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.dir = tempfile.mkdtemp()
        self.config_file = os.path.join(self.dir, "syncore.yaml")

    def tearDown(self) -> None:
        shutil.rmtree(self.dir)

    def write_config(self, name: str, contents: str) -> str:
        path = os.path.join(self.dir, name)
        with open(path, "w") as f:
            f.write(contents)
        return path

    def add_lines_to_config(self, lines: Any) -> None:
        with open(self.config_file, "a") as f:
            for line in lines:
                f.write(line + "\n")


def sync_config(**kwargs: Any) -> Dict[str, Any]:
    return {"sync": kwargs}
