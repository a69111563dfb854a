# Copyright 2015, 2016 OpenMarket Ltd
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
import platform
import sqlite3
from typing import TYPE_CHECKING, Any, Mapping

from keyserver.storage.engines._base import BaseDatabaseEngine, IncorrectDatabaseSetup
from keyserver.storage.types import Cursor

if TYPE_CHECKING:
    from keyserver.storage.database import LoggingDatabaseConnection

logger = logging.getLogger(__name__)

# `INSERT ... ON CONFLICT ... DO UPDATE` arrived in 3.24. 3.27 is the oldest
# release the key server is tested against.
MIN_SQLITE_VERSION = (3, 27, 0)


class Sqlite3Engine(BaseDatabaseEngine[sqlite3.Connection]):
    dialect = "sqlite"

    def __init__(self, database_config: Mapping[str, Any]):
        super().__init__(sqlite3, database_config)

        database = database_config.get("args", {}).get("database")
        self._is_in_memory = database in (None, ":memory:")

        if platform.python_implementation() == "PyPy":
            # PyPy's sqlite3 can't bind bytearrays.
            sqlite3.register_adapter(bytearray, bytes)

    def check_database(
        self, db_conn: "LoggingDatabaseConnection", allow_outdated_version: bool = False
    ) -> None:
        if (
            not allow_outdated_version
            and sqlite3.sqlite_version_info < MIN_SQLITE_VERSION
        ):
            raise IncorrectDatabaseSetup(
                "The key server requires sqlite %s or above, found %s"
                % (".".join(map(str, MIN_SQLITE_VERSION)), sqlite3.sqlite_version)
            )

    def check_new_database(self, txn: Cursor) -> None:
        pass

    def convert_param_style(self, sql: str) -> str:
        return sql

    def on_new_connection(self, db_conn: "LoggingDatabaseConnection") -> None:
        if self._is_in_memory:
            # Each connection to ":memory:" opens a fresh, empty database.
            from keyserver.storage.prepare_database import prepare_database

            prepare_database(db_conn, self)

        db_conn.execute("PRAGMA journal_mode = WAL;")
        db_conn.commit()

    def is_connection_closed(self, conn: sqlite3.Connection) -> bool:
        return False

    def in_transaction(self, conn: sqlite3.Connection) -> bool:
        return conn.in_transaction
