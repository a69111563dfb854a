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

"""Loading of the YAML config files.

Each config section is a `Config` subclass listed on a `RootConfig`. A section
may implement any of these hooks, which the root calls on every section that
has them:

    add_arguments(parser)           static: add command line flags
    generate_config_section(...)    return YAML for a freshly generated config
    read_config(config, ...)        read the merged dict of all config files
    read_arguments(args)            apply command line overrides
    generate_files(config, ...)     write out any files the config points at
"""

import argparse
import logging
import os
import re
from textwrap import dedent
from typing import (
    Any,
    ClassVar,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Type,
    TypeVar,
)

import yaml

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """A problem with the configuration.

    Args:
        msg: what is wrong.
        path: the keys leading to the bad setting, if there is one.
    """

    def __init__(self, msg: str, path: Optional[Iterable[str]] = None):
        self.msg = msg
        self.path = path


def format_config_error(e: ConfigError) -> Iterator[str]:
    """Renders `e` and the errors that caused it, indenting each cause a
    level further:

        Error in configuration at 'metrics_port':
          Invalid listener:
            bad port
    """
    yield "Error in configuration"
    if e.path:
        yield " at '%s'" % (".".join(e.path),)
    yield ":\n  %s" % (e.msg,)

    depth = 2
    cause = e.__cause__
    while cause is not None:
        yield ":\n%s%s" % ("  " * depth, cause)
        depth += 1
        cause = cause.__cause__


CONFIG_FILE_HEADER = """\
# Configuration file for the Matrix key server.
#
# This is a YAML file. Settings from later files given with -c override those
# from earlier ones.
"""


class Config:
    """One section of the configuration, available on the root config as
    `root.<section>`."""

    section: ClassVar[str]

    def __init__(self, root_config: Optional["RootConfig"] = None):
        self.root = root_config

    @staticmethod
    def abspath(file_path: str) -> str:
        return os.path.abspath(file_path) if file_path else file_path


TRootConfig = TypeVar("TRootConfig", bound="RootConfig")


class RootConfig:
    config_classes: List[Type[Config]] = []

    def __init__(self, config_files: Iterable[str] = ()):
        self.config_files = [os.path.abspath(path) for path in config_files]
        for config_class in self.config_classes:
            setattr(self, config_class.section, config_class(self))

    def invoke_all(self, hook: str, *args: Any, **kwargs: Any) -> Dict[str, Any]:
        """Calls `hook` on each section that defines it, in section order.

        Returns:
            The results, keyed by section name.
        """
        results = {}
        for config_class in self.config_classes:
            section = getattr(self, config_class.section)
            if hasattr(section, hook):
                results[config_class.section] = getattr(section, hook)(*args, **kwargs)
        return results

    def generate_config(
        self, config_dir_path: str, data_dir_path: str, server_name: str
    ) -> str:
        """Builds the text of a default config file.

        Args:
            config_dir_path: where files referenced from the config, such as the
                log config, should live.
            data_dir_path: where the sqlite database should live.
            server_name: the name of the server the config is for.
        """
        sections = self.invoke_all(
            "generate_config_section",
            config_dir_path=config_dir_path,
            data_dir_path=data_dir_path,
            server_name=server_name,
        )
        conf = CONFIG_FILE_HEADER + "\n".join(dedent(s) for s in sections.values())
        return re.sub("\n{2,}", "\n", conf)

    @classmethod
    def _make_parser(cls, description: str) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(description=description)
        parser.add_argument(
            "-c",
            "--config-path",
            action="append",
            metavar="CONFIG_FILE",
            help="Specify config file. Can be given multiple times and"
            " may specify directories containing *.yaml files.",
        )
        for config_class in cls.config_classes:
            add_arguments = getattr(config_class, "add_arguments", None)
            if add_arguments is not None:
                add_arguments(parser)
        return parser

    @classmethod
    def load_config(
        cls: Type[TRootConfig], description: str, argv: List[str]
    ) -> TRootConfig:
        """Parses the command line, then reads the config files it names."""
        parser = cls._make_parser(description)
        args = parser.parse_args(argv)

        config_files = find_config_files(args.config_path)
        if not config_files:
            parser.error("Must supply a config file.")

        obj = cls(config_files)
        obj.parse_config_dict(
            read_config_files(config_files),
            config_dir_path=os.path.abspath(os.path.dirname(config_files[-1])),
            data_dir_path=os.getcwd(),
        )
        obj.invoke_all("read_arguments", args)
        return obj

    @classmethod
    def load_or_generate_config(
        cls: Type[TRootConfig], description: str, argv: List[str]
    ) -> Optional[TRootConfig]:
        """Like `load_config`, but also handles `--generate-config`.

        Any files that the loaded config points at but which are missing,
        such as the log config, are written out.

        Returns:
            The config, or None if a config file was generated instead.
        """
        parser = cls._make_parser(description)
        group = parser.add_argument_group("Config generation")
        group.add_argument(
            "--generate-config",
            action="store_true",
            help="Generate a config file, then exit.",
        )
        group.add_argument(
            "-H", "--server-name", help="The server name to generate a config file for."
        )
        group.add_argument(
            "--config-directory",
            metavar="DIRECTORY",
            help="Where to put files such as the log config. Defaults to the"
            " directory of the last config file.",
        )
        group.add_argument(
            "--data-directory",
            metavar="DIRECTORY",
            help="Where to put the sqlite database. Defaults to the current"
            " working directory.",
        )
        args = parser.parse_args(argv)

        config_files = find_config_files(args.config_path)
        if not config_files:
            parser.error(
                "Must supply a config file.\nA config file can be generated"
                ' with "--generate-config -H SERVER_NAME -c CONFIG_FILE"'
            )

        config_dir_path = os.path.abspath(
            args.config_directory or os.path.dirname(config_files[-1])
        )
        data_dir_path = os.path.abspath(args.data_directory or os.getcwd())

        obj = cls(config_files)

        if args.generate_config:
            (config_path,) = config_files
            if os.path.exists(config_path):
                print("Config file %r already exists." % (config_path,))
                return None
            if not args.server_name:
                raise ConfigError(
                    "Must give a server name to generate a config for."
                    " Pass -H server.name."
                )

            print("Generating config file %s" % (config_path,))
            config_str = obj.generate_config(
                config_dir_path=config_dir_path,
                data_dir_path=data_dir_path,
                server_name=args.server_name,
            )
            os.makedirs(config_dir_path, exist_ok=True)
            with open(config_path, "w") as config_file:
                config_file.write(config_str)
                config_file.write("\n\n# vim:ft=yaml\n")

            obj.invoke_all("generate_files", yaml.safe_load(config_str))
            print(
                "A config file has been generated in %r for server name %r."
                % (config_path, args.server_name)
            )
            return None

        config_dict = read_config_files(config_files)
        obj.invoke_all("generate_files", config_dict)
        obj.parse_config_dict(
            config_dict, config_dir_path=config_dir_path, data_dir_path=data_dir_path
        )
        obj.invoke_all("read_arguments", args)
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


def read_config_files(config_files: Iterable[str]) -> Dict[str, Any]:
    """Merges the top-level keys of each file in turn, so later files win."""
    merged: Dict[str, Any] = {}
    for config_file in config_files:
        with open(config_file) as f:
            contents = yaml.safe_load(f)

        if not isinstance(contents, dict):
            logger.warning("Ignoring config file %r: not a mapping", config_file)
            continue
        merged.update(contents)

    if "server_name" not in merged:
        raise ConfigError("Missing mandatory `server_name` config option.")

    return merged


def find_config_files(search_paths: Optional[List[str]]) -> List[str]:
    """Expands the `-c` arguments into a list of files.

    Files are kept in the order given. A directory contributes the `*.yaml`
    files directly inside it, in sorted order.
    """
    config_files: List[str] = []
    for path in search_paths or ():
        if not os.path.isdir(path):
            config_files.append(path)
            continue

        found = []
        for entry in os.listdir(path):
            entry_path = os.path.join(path, entry)
            if os.path.isfile(entry_path) and entry.endswith(".yaml"):
                found.append(entry_path)
            else:
                logger.warning("Ignoring %r in config directory", entry_path)
        config_files.extend(sorted(found))
    return config_files
