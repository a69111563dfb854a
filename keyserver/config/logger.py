# Copyright 2014-2016 OpenMarket Ltd
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
from typing import TYPE_CHECKING, Any, Dict, Optional

import yaml
from zope.interface import implementer

from twisted.logger import (
    ILogObserver,
    LogBeginner,
    STDLibLogObserver,
    eventAsText,
    globalLogBeginner,
)

from keyserver.logging.context import LoggingContextFilter
from keyserver.types import JsonDict

from ._base import Config, ConfigError

if TYPE_CHECKING:
    from keyserver.config.keyserver import KeyServerConfig

LOG_FORMAT = (
    "%(asctime)s - %(name)s - %(lineno)d - %(levelname)s - %(request)s - %(message)s"
)

# Written next to the main config by --generate-config, or when the file the
# config points at has gone missing.
DEFAULT_LOG_CONFIG = Template(
    """\
# Python logging config for the key server, in dictConfig form:
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

    # Swap in for "file" below to log to stderr.
    console:
        class: logging.StreamHandler
        formatter: precise

loggers:
    # DEBUG logs every statement with its parameters, key documents included.
    keyserver.storage.SQL:
        level: INFO

root:
    level: INFO
    handlers: [file]

disable_existing_loggers: false
"""
)


class LoggingConfig(Config):
    section = "logging"

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        log_config = config.get("log_config")
        if log_config is not None and not isinstance(log_config, str):
            raise ConfigError("log_config must be a path", ("log_config",))
        self.log_config = self.abspath(log_config)

    def generate_config_section(
        self, config_dir_path: str, server_name: str, **kwargs: Any
    ) -> str:
        log_config = os.path.join(config_dir_path, server_name + ".log.config")
        return 'log_config: "%s"\n' % (log_config,)

    def generate_files(self, config: Dict[str, Any]) -> None:
        log_config = config.get("log_config")
        if not log_config or os.path.exists(log_config):
            return

        log_file = self.abspath("keyserver.log")
        logging.info("Writing log config %s, logging to %s", log_config, log_file)
        with open(log_config, "w") as f:
            f.write(
                DEFAULT_LOG_CONFIG.substitute(log_format=LOG_FORMAT, log_file=log_file)
            )


def _configure_handlers(log_config_path: Optional[str]) -> None:
    if log_config_path is None:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger = logging.getLogger("")
        root_logger.setLevel(logging.INFO)
        root_logger.addHandler(handler)
        return

    with open(log_config_path, "rb") as f:
        log_config = yaml.safe_load(f)
    if not log_config:
        raise ConfigError(
            "Log config %s is empty" % (log_config_path,), ("log_config",)
        )
    logging.config.dictConfig(log_config)


def _install_context_record_factory() -> None:
    # The context has to be read when the record is made, not when a handler
    # formats it, which may be on another thread.
    context_filter = LoggingContextFilter()
    make_record = logging.getLogRecordFactory()

    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = make_record(*args, **kwargs)
        context_filter.filter(record)
        return record

    logging.setLogRecordFactory(factory)


def _redirect_twisted_logs(log_beginner: LogBeginner) -> None:
    observer = STDLibLogObserver()
    in_observer = threading.local()

    @implementer(ILogObserver)
    def _log(event: dict) -> None:
        # A handler which itself logs via Twisted would otherwise recurse.
        if getattr(in_observer, "active", False):
            print(
                "logging during logging: %s" % eventAsText(event), file=sys.__stderr__
            )
            return

        in_observer.active = True
        try:
            observer(event)
        finally:
            in_observer.active = False

    log_beginner.beginLoggingTo([_log], redirectStandardIO=False)


def setup_logging(
    config: "KeyServerConfig", log_beginner: LogBeginner = globalLogBeginner
) -> None:
    """Configures stdlib logging from the log config, and sends Twisted's own
    log events through it.
    """
    from twisted.internet import reactor

    from keyserver import __version__

    _configure_handlers(config.logging.log_config)
    _install_context_record_factory()
    _redirect_twisted_logs(log_beginner)

    logging.warning("***** STARTING SERVER *****")
    logging.warning("Key server %s version %s", sys.argv[0], __version__)
    logging.info("Server name: %s", config.server.server_name)
    logging.info("Twisted reactor: %s", type(reactor).__name__)
