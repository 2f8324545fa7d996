# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2017-2018 New Vector Ltd
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
from typing import (
    Any,
    ClassVar,
    Collection,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Type,
    TypeVar,
    Union,
)

import yaml

logger = logging.getLogger(__name__)

_DURATION_SUFFIXES = {
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365 * 24 * 60 * 60 * 1000,
}


class ConfigError(Exception):
    """A configuration value could not be understood.

    Args:
        msg: what is wrong with the value.
        path: the keys leading to the value, e.g. ("sync", "max_filter_limit").
    """

    def __init__(self, msg: str, path: Optional[Iterable[str]] = None):
        super().__init__(msg)
        self.msg = msg
        self.path = path


def format_config_error(e: ConfigError) -> Iterator[str]:
    """Render a ConfigError, and the chain of exceptions behind it, for humans.

    The output looks like:

        Error in configuration at 'sync.unused_stream_expiry':
          Invalid duration 'ten minutes':
            invalid literal for int() with base 10: 'ten minute'
    """
    where = " at '%s'" % (".".join(e.path),) if e.path else ""
    yield "Error in configuration%s:\n  %s" % (where, e.msg)

    depth = 2
    cause = e.__cause__
    while cause is not None:
        yield ":\n%s%s" % ("  " * depth, cause)
        depth += 1
        cause = cause.__cause__


class Config:
    """One section of the configuration.

    Subclasses set `section`, which is also the attribute the section is
    reachable under on the RootConfig, and implement `read_config`. They may
    also implement `generate_files`.
    """

    section: ClassVar[str]

    def __init__(self, root_config: Optional["RootConfig"] = None):
        self.root = root_config

    @staticmethod
    def parse_duration(value: Union[str, int]) -> int:
        """Turn a duration into milliseconds.

        Integers are already milliseconds. Strings may end in one of s, m, h,
        d, w or y; without a suffix they are milliseconds too.
        """
        if isinstance(value, int):
            return value

        multiplier = _DURATION_SUFFIXES.get(value[-1])
        if multiplier is None:
            return int(value)
        return int(value[:-1]) * multiplier

    @staticmethod
    def abspath(file_path: Optional[str]) -> Optional[str]:
        if not file_path:
            return file_path
        return os.path.abspath(file_path)


TRootConfig = TypeVar("TRootConfig", bound="RootConfig")


class RootConfig:
    """The whole configuration, made up of one Config per class in
    `config_classes`.
    """

    config_classes: List[Type[Config]] = []

    def __init__(self, config_files: Collection[str] = ()):
        self.config_files = [os.path.abspath(path) for path in config_files]

        for config_class in self.config_classes:
            setattr(self, config_class.section, config_class(self))

    def invoke_all(self, func_name: str, *args: Any, **kwargs: Any) -> Dict[str, Any]:
        """Call `func_name` on each section that defines it.

        Returns:
            The results, keyed by section name, in `config_classes` order.
        """
        results = {}
        for config_class in self.config_classes:
            section = getattr(self, config_class.section)
            func = getattr(section, func_name, None)
            if func is not None:
                results[config_class.section] = func(*args, **kwargs)
        return results

    @classmethod
    def load_config(
        cls: Type[TRootConfig], config_files: Collection[str]
    ) -> TRootConfig:
        """Build a config from YAML files. Keys in later files win.

        Raises:
            ConfigError: if a value is invalid.
        """
        obj = cls(config_files)

        if obj.config_files:
            config_dir_path = os.path.dirname(obj.config_files[-1])
        else:
            config_dir_path = "."

        obj.parse_config_dict(
            read_config_files(obj.config_files), config_dir_path=config_dir_path
        )
        return obj

    def parse_config_dict(
        self,
        config_dict: Dict[str, Any],
        config_dir_path: str = "",
        data_dir_path: str = "",
    ) -> None:
        self.invoke_all(
            "read_config",
            config_dict,
            config_dir_path=config_dir_path,
            data_dir_path=data_dir_path,
        )

    def generate_missing_files(
        self, config_dict: Dict[str, Any], config_dir_path: str
    ) -> None:
        """Write out any files named in the config which do not exist yet."""
        self.invoke_all("generate_files", config_dict, config_dir_path)


def read_config_files(config_files: Iterable[str]) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for config_file in config_files:
        with open(config_file) as f:
            contents = yaml.safe_load(f)

        if isinstance(contents, dict):
            merged.update(contents)
        else:
            logger.warning(
                "Ignoring %r as it does not hold a map of config keys", config_file
            )

    return merged
