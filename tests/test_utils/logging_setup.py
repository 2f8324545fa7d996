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
import logging
import os

import twisted.logger

# twisted adds its own timestamp.
LOG_FORMAT = "%(name)s - %(lineno)d - %(levelname)s - %(message)s"


class ToTwistedHandler(logging.Handler):
    """Passes stdlib log records on to twisted's logger, so that they land in
    _trial_temp/test.log next to twisted's own.
    """

    tx_log = twisted.logger.Logger()

    def emit(self, record: logging.LogRecord) -> None:
        level_name = "warn" if record.levelno == logging.WARNING else None
        level = twisted.logger.LogLevel.levelWithName(
            level_name or record.levelname.lower()
        )
        self.tx_log.emit(level, "{entry}", entry=self.format(record))


def setup_logging() -> None:
    """Send everything logged during the tests to twisted's log, at the level
    given by $SYNCORE_TEST_LOG_LEVEL (ERROR by default).
    """
    handler = ToTwistedHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(os.environ.get("SYNCORE_TEST_LOG_LEVEL", "ERROR"))
