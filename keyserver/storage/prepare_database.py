# Copyright 2014-2016 OpenMarket Ltd
# Copyright 2018 New Vector Ltd
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
"""Creates the schema in a new database, and checks it in an existing one.

Each data store has a directory under `schema/`. When a database is first
prepared, the `.sql` files in the directories of its data stores are run in
file name order, along with any `.sql.<dialect>` files for the database's
engine (`.sql.sqlite` or `.sql.postgres`). The version of the schema they
create is then recorded in `schema_version`.
"""
import logging
import os
import re
from typing import Collection, Iterable, Iterator, List, Optional

from keyserver.storage.database import LoggingDatabaseConnection, LoggingTransaction
from keyserver.storage.engines import BaseDatabaseEngine

logger = logging.getLogger(__name__)

# Bump when the schema files change. A database holding any other version
# is refused.
SCHEMA_VERSION = 1

SCHEMA_DIR = os.path.join(os.path.abspath(os.path.dirname(__file__)), "schema")

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"--[^\n]*")


class PrepareDatabaseException(Exception):
    pass


class UpgradeDatabaseException(PrepareDatabaseException):
    pass


def prepare_database(
    db_conn: LoggingDatabaseConnection,
    database_engine: BaseDatabaseEngine,
    data_stores: Collection[str] = ("main",),
) -> None:
    """Gets a database ready for the given data stores.

    Raises:
        UpgradeDatabaseException: the database holds a schema version other
            than `SCHEMA_VERSION`.
        PrepareDatabaseException: the driver failed to create the schema.
    """
    txn = db_conn.cursor(txn_name="prepare_database")
    try:
        version = _get_or_create_schema_version(txn)

        if version is None:
            database_engine.check_new_database(txn)
            for path in schema_files(database_engine, data_stores):
                logger.debug("Applying schema %s", path)
                execute_schema_file(txn, path)
            txn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
        elif version != SCHEMA_VERSION:
            raise UpgradeDatabaseException(
                "Database has schema version %d, but this key server only "
                "understands version %d" % (version, SCHEMA_VERSION)
            )

        db_conn.commit()
    except database_engine.module.Error as e:
        db_conn.rollback()
        raise PrepareDatabaseException("Failed to prepare database: %s" % (e,)) from e
    except Exception:
        db_conn.rollback()
        raise
    finally:
        txn.close()


def schema_files(
    database_engine: BaseDatabaseEngine, data_stores: Collection[str]
) -> List[str]:
    """The schema files to run against a new database, in the order to run
    them."""
    suffixes = (".sql", ".sql." + database_engine.dialect)

    paths = []
    for data_store in data_stores:
        store_dir = os.path.join(SCHEMA_DIR, data_store)
        paths.extend(
            os.path.join(store_dir, file_name)
            for file_name in sorted(os.listdir(store_dir))
            if file_name.endswith(suffixes)
        )
    return paths


def get_statements(lines: Iterable[str]) -> Iterator[str]:
    """Splits the lines of an SQL script into its statements.

    Comments are dropped. A statement ends at a semicolon; text after the last
    semicolon is ignored.
    """
    script = _BLOCK_COMMENT.sub(" ", "".join(line + "\n" for line in lines))
    script = _LINE_COMMENT.sub("", script)

    *statements, _ = script.split(";")
    for statement in statements:
        statement = statement.strip()
        if statement:
            yield statement


def execute_schema_file(txn: LoggingTransaction, path: str) -> None:
    with open(path) as f:
        for statement in get_statements(f.read().splitlines()):
            txn.execute(statement)


def _get_or_create_schema_version(txn: LoggingTransaction) -> Optional[int]:
    execute_schema_file(txn, os.path.join(SCHEMA_DIR, "schema_version.sql"))

    txn.execute("SELECT version FROM schema_version")
    row = txn.fetchone()
    return int(row[0]) if row else None
