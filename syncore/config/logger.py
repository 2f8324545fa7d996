# Copyright 2014-2016 OpenMarket Ltd
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
import logging
import logging.config
import os
import sys
import threading
from string import Template
from typing import TYPE_CHECKING, Any, Dict

import yaml
from zope.interface import implementer

from twisted.logger import (
    ILogObserver,
    LogBeginner,
    STDLibLogObserver,
    eventAsText,
    globalLogBeginner,
)

from syncore.types import JsonDict

from ._base import Config, ConfigError

if TYPE_CHECKING:
    from syncore.config.homeserver import SyncCoreConfig

LOG_FORMAT = "%(asctime)s - %(name)s - %(lineno)d - %(levelname)s - %(message)s"

DEFAULT_LOG_CONFIG = Template(
    """\
# Logging for syncore, as a Python logging.config dictionary:
# https://docs.python.org/3/library/logging.config.html#configuration-dictionary-schema

version: 1

formatters:
    precise:
        format: '${log_format}'

handlers:
    file:
        class: logging.handlers.TimedRotatingFileHandler
        formatter: precise
        filename: ${log_file}
        when: midnight
        backupCount: 3
        encoding: utf8

    console:
        class: logging.StreamHandler
        formatter: precise

loggers:
    # DEBUG here logs every stream advance and every woken listener.
    syncore.notifier:
        level: INFO

root:
    level: INFO
    # Use [console] to log to stderr.
    handlers: [file]

disable_existing_loggers: false
"""
)


class LoggingConfig(Config):
    section = "logging"

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        log_config = config.get("log_config")
        if log_config is not None and not isinstance(log_config, str):
            raise ConfigError("Must be a path to a file", ("log_config",))
        self.log_config = self.abspath(log_config)

    def generate_files(self, config: Dict[str, Any], config_dir_path: str) -> None:
        log_config = config.get("log_config")
        if not log_config or os.path.exists(log_config):
            return

        log_file = self.abspath(os.path.join(config_dir_path, "syncore.log"))
        print(
            "Writing a default log config to %s (logs go to %s)"
            % (log_config, log_file)
        )
        with open(log_config, "w") as f:
            f.write(
                DEFAULT_LOG_CONFIG.substitute(log_file=log_file, log_format=LOG_FORMAT)
            )


def _load_logging_config(log_config_path: str) -> None:
    with open(log_config_path, "rb") as f:
        log_config = yaml.safe_load(f)

    if not log_config:
        logging.warning("Log config %s is empty", log_config_path)
        return

    if not isinstance(log_config, dict):
        raise ConfigError(
            "Log config %s is not a logging configuration dictionary"
            % (log_config_path,)
        )

    logging.config.dictConfig(log_config)


def _log_to_stderr() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("")
    root.setLevel(logging.INFO)
    root.addHandler(handler)


def _stdlib_observer() -> ILogObserver:
    """An observer which hands Twisted log events to the stdlib loggers.

    An event raised while a previous one is still being handled (a broken
    handler logging its own failure, say) is written straight to stderr.
    """
    forward = STDLibLogObserver()
    state = threading.local()

    @implementer(ILogObserver)
    def observe(event: dict) -> None:
        if getattr(state, "busy", False):
            print(
                "Log event while logging: %s" % (eventAsText(event),),
                file=sys.__stderr__,
            )
            return

        state.busy = True
        try:
            forward(event)
        finally:
            state.busy = False

    return observe


def setup_logging(
    config: "SyncCoreConfig", logBeginner: LogBeginner = globalLogBeginner
) -> None:
    """Configure stdlib logging from `log_config`, or log to stderr if there is
    none, then route Twisted's logs into it.
    """
    if config.logging.log_config is None:
        _log_to_stderr()
    else:
        _load_logging_config(config.logging.log_config)

    logBeginner.beginLoggingTo([_stdlib_observer()], redirectStandardIO=False)
