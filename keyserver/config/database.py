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
import argparse
import logging
import os
from typing import Any, List

from keyserver.config._base import Config, ConfigError
from keyserver.types import JsonDict

logger = logging.getLogger(__name__)

SUPPORTED_ENGINES = ("sqlite3", "psycopg2")


class DatabaseConnectionConfig:
    """Settings for connecting to one database.

    Args:
        name: label used in logs and metrics.
        db_config: the `database` section of the config. `name` is the DB-API
            module to use, `args` is passed to `connect` and to the adbapi
            pool, and `txn_limit` (if non-zero) is how many transactions a
            connection runs before it is replaced.
    """

    def __init__(self, name: str, db_config: JsonDict):
        engine = db_config.get("name", "sqlite3")
        if engine not in SUPPORTED_ENGINES:
            raise ConfigError(
                "Unsupported database type %r" % (engine,), ("database", "name")
            )

        if engine == "sqlite3":
            # One connection, handed between pool threads.
            db_config.setdefault("args", {}).update(
                {"cp_min": 1, "cp_max": 1, "check_same_thread": False}
            )

        txn_limit = db_config.get("txn_limit", 0)
        if type(txn_limit) is not int or txn_limit < 0:
            raise ConfigError(
                "txn_limit must be a non-negative integer", ("database", "txn_limit")
            )

        self.name = name
        self.config = db_config
        self.databases: List[str] = db_config.get("data_stores") or ["main"]


class DatabaseConfig(Config):
    section = "database"

    def __init__(self, *args: Any):
        super().__init__(*args)
        self.databases: List[DatabaseConnectionConfig] = []

    def read_config(self, config: JsonDict, **kwargs: Any) -> None:
        database_config = config.get("database")
        if database_config is not None and not isinstance(database_config, dict):
            raise ConfigError("database config must be a mapping", ("database",))
        if database_config:
            self.databases = [DatabaseConnectionConfig("master", database_config)]

        database_path = config.get("database_path")
        if database_path:
            self._use_sqlite_path(database_path)

    def read_arguments(self, args: argparse.Namespace) -> None:
        # -d points sqlite at a file, replacing the configured path. It is
        # ignored if the config names another engine.
        if args.database_path is not None:
            self._use_sqlite_path(args.database_path)
        elif not self.databases:
            raise ConfigError("No database config provided")

    def _use_sqlite_path(self, database_path: str) -> None:
        if not self.databases:
            self.databases = [
                DatabaseConnectionConfig("master", {"name": "sqlite3", "args": {}})
            ]
        elif self.databases[0].config["name"] != "sqlite3":
            logger.warning("Ignoring database path: not using a sqlite3 database")
            return

        if database_path != ":memory:":
            database_path = self.abspath(database_path)
        self.databases[0].config["args"]["database"] = database_path

    def generate_config_section(self, data_dir_path: str, **kwargs: Any) -> str:
        database_path = os.path.join(data_dir_path, "keyserver.db")
        return (
            "database:\n"
            "  name: sqlite3\n"
            "  args:\n"
            "    database: %s\n" % (database_path,)
        )

    @staticmethod
    def add_arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument_group("database").add_argument(
            "-d",
            "--database-path",
            metavar="SQLITE_DATABASE_PATH",
            help="The path to a sqlite database to use.",
        )

    def get_single_database(self) -> DatabaseConnectionConfig:
        if not self.databases:
            raise ConfigError("No database config provided")
        return self.databases[0]
