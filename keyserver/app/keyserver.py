# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2019 New Vector Ltd
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
import sys
from typing import List, NoReturn

from twisted.internet import reactor

from keyserver.config import ConfigError, format_config_error
from keyserver.config.keyserver import KeyServerConfig
from keyserver.config.logger import setup_logging
from keyserver.logging.context import LoggingContext
from keyserver.metrics import start_metrics_listener
from keyserver.server import KeyServer

logger = logging.getLogger("keyserver.app.keyserver")


def quit_with_error(error_string: str) -> NoReturn:
    message_lines = error_string.split("\n")
    line_length = min(max(len(line) for line in message_lines), 80) + 2
    sys.stderr.write("*" * line_length + "\n")
    for line in message_lines:
        sys.stderr.write(" %s\n" % (line.rstrip(),))
    sys.stderr.write("*" * line_length + "\n")
    sys.exit(1)


def setup(config_options: List[str]) -> KeyServer:
    """
    Args:
        config_options: The options passed on the command line. Usually
            `sys.argv[1:]`.

    Returns:
        A key server instance, connected to its database.
    """
    try:
        config = KeyServerConfig.load_or_generate_config(
            "Matrix key server", config_options
        )
    except ConfigError as e:
        sys.stderr.write("\n")
        for f in format_config_error(e):
            sys.stderr.write(f)
        sys.stderr.write("\n")
        sys.exit(1)

    if not config:
        # If a config isn't returned, and an exception isn't raised, we're just
        # generating config files and shouldn't try to continue.
        sys.exit(0)

    hs = KeyServer(config.server.server_name, config=config)

    setup_logging(config)

    logger.info("Setting up server")

    try:
        hs.setup()
    except Exception as e:
        # Written to the logs, followed by a summary to stderr.
        logger.exception("Exception during startup")
        quit_with_error(
            f"Error during initialisation:\n   {e}\n"
            "There may be more information in the logs."
        )

    return hs


def run(hs: KeyServer) -> None:
    config = hs.get_config().server
    if config.metrics_port is not None:
        start_metrics_listener(config.metrics_port, config.metrics_bind_address)

    logger.info("Running")
    reactor.run()


def main() -> None:
    with LoggingContext("main"):
        hs = setup(sys.argv[1:])
        run(hs)


if __name__ == "__main__":
    main()
