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
from typing import TYPE_CHECKING, Any, Iterable, List, Mapping, Optional, Tuple, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras

from keyserver.storage.engines._base import BaseDatabaseEngine, IncorrectDatabaseSetup
from keyserver.storage.types import Cursor

if TYPE_CHECKING:
    from keyserver.storage.database import LoggingDatabaseConnection

logger = logging.getLogger(__name__)

# As reported by psycopg2: 110000 is 11.0.
MIN_POSTGRES_VERSION = 110000


class PostgresEngine(BaseDatabaseEngine[psycopg2.extensions.connection]):
    """
    Recognises these database config options, alongside `args`:

        allow_unsafe_locale: accept a database whose collation or ctype is
            not 'C'
        synchronous_commit: set to false to let commits return before the
            server has flushed them to disk
        statement_timeout: in milliseconds, defaulting to an hour. null turns
            it off.
    """

    dialect = "postgres"

    def __init__(self, database_config: Mapping[str, Any]):
        super().__init__(psycopg2, database_config)

        self.synchronous_commit: bool = database_config.get("synchronous_commit", True)
        self.statement_timeout: Optional[int] = database_config.get(
            "statement_timeout", 60 * 60 * 1000
        )

    def _get_locale(self, txn: Cursor) -> Tuple[str, str]:
        txn.execute(
            "SELECT datcollate, datctype FROM pg_database"
            " WHERE datname = current_database()"
        )
        return cast(Tuple[str, str], txn.fetchone())

    def _bad_locale_settings(self, txn: Cursor) -> List[str]:
        collation, ctype = self._get_locale(txn)
        return [
            "%s is %r, not 'C'" % (setting, value)
            for setting, value in (("COLLATE", collation), ("CTYPE", ctype))
            if value != "C"
        ]

    def check_database(
        self, db_conn: "LoggingDatabaseConnection", allow_outdated_version: bool = False
    ) -> None:
        version = db_conn.server_version
        if not allow_outdated_version and version < MIN_POSTGRES_VERSION:
            raise IncorrectDatabaseSetup(
                "The key server requires PostgreSQL 11 or above, found %d" % (version,)
            )

        with db_conn.cursor() as txn:
            txn.execute("SHOW SERVER_ENCODING")
            (encoding,) = txn.fetchone()  # type: ignore[misc]
            if encoding != "UTF8":
                raise IncorrectDatabaseSetup(
                    "Database encoding is %r, not 'UTF8'" % (encoding,)
                )

            problems = self._bad_locale_settings(txn)

        if problems and not self.config.get("allow_unsafe_locale", False):
            raise IncorrectDatabaseSetup(
                "Database locale is unsafe: %s. Set 'allow_unsafe_locale' in the "
                "database config to use it anyway." % ("; ".join(problems),)
            )
        for problem in problems:
            logger.warning("Database locale is unsafe: %s", problem)

    def check_new_database(self, txn: Cursor) -> None:
        problems = self._bad_locale_settings(txn)
        if problems:
            raise IncorrectDatabaseSetup(
                "Refusing to create the schema in a database whose %s"
                % ("; ".join(problems),)
            )

    def convert_param_style(self, sql: str) -> str:
        return sql.replace("?", "%s")

    def on_new_connection(self, db_conn: "LoggingDatabaseConnection") -> None:
        db_conn.conn.set_isolation_level(  # type: ignore[attr-defined]
            psycopg2.extensions.ISOLATION_LEVEL_REPEATABLE_READ
        )

        with db_conn.cursor() as txn:
            if not self.synchronous_commit:
                txn.execute("SET synchronous_commit TO OFF")
            if self.statement_timeout is not None:
                txn.execute("SET statement_timeout TO ?", (self.statement_timeout,))

        db_conn.commit()

    def is_connection_closed(self, conn: psycopg2.extensions.connection) -> bool:
        return bool(conn.closed)

    def in_transaction(self, conn: psycopg2.extensions.connection) -> bool:
        return conn.status != psycopg2.extensions.STATUS_READY

    def execute_batch(
        self, cursor: Cursor, sql: str, args: Iterable[Iterable[Any]]
    ) -> None:
        psycopg2.extras.execute_batch(cursor, sql, args)
